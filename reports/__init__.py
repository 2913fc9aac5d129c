"""Report orchestration for long-running upstream analytics reports.

Schedules which tracked entities need which period pulled, then drives each
report through request, status polling, download and import with retries,
rate limiting and a circuit breaker in front of the upstream API.

Usage:
    python -m reports run --config accounts.yaml
    python -m reports backfill --config accounts.yaml --period week
    python -m reports status --config accounts.yaml --account acme-us
"""

__version__ = "1.0.0"
