"""Default values for report orchestration.

Centralizes retry, backoff, rate limiting, circuit breaker and scheduling
defaults so settings, tests and the CLI agree on the same numbers.
"""

# =============================================================================
# Retry Defaults
# =============================================================================

# Attempts per workflow phase (request, status check, download)
DEFAULT_MAX_RETRIES: int = 3

# Wait between failed attempts inside the retry executor (in seconds)
DEFAULT_RETRY_WAIT_BASE_SECONDS: float = 1.0
DEFAULT_RETRY_WAIT_MAX_SECONDS: float = 10.0

# Backoff bounds used while a report is still being generated (in seconds)
DEFAULT_RETRY_BASE_DELAY_SECONDS: float = 30.0
DEFAULT_RETRY_MAX_DELAY_SECONDS: float = 120.0

# Multiplier for exponential backoff (base * multiplier^(attempt-1))
DEFAULT_BACKOFF_MULTIPLIER: float = 2.0

# No single computed wait may exceed this (in seconds)
MAX_WAIT_SECONDS: float = 300.0


# =============================================================================
# Courtesy Delays
# =============================================================================

# Pause after each upstream request (in seconds)
DEFAULT_REQUEST_DELAY_SECONDS: float = 30.0

# Pause between requesting a report and the first status check (in seconds)
DEFAULT_INITIAL_DELAY_SECONDS: float = 30.0


# =============================================================================
# Rate Limiter Defaults
# =============================================================================

DEFAULT_RATE_LIMIT_MAX_REQUESTS: int = 100
DEFAULT_RATE_LIMIT_WINDOW_MS: int = 15 * 60 * 1000


# =============================================================================
# Circuit Breaker Defaults
# =============================================================================

# Number of failures before the circuit opens
DEFAULT_CIRCUIT_BREAKER_THRESHOLD: int = 5

# Time the circuit stays open before probing (in milliseconds)
DEFAULT_CIRCUIT_BREAKER_TIMEOUT_MS: int = 60_000

# Successful half-open calls needed before closing
DEFAULT_HALF_OPEN_MAX_CALLS: int = 1


# =============================================================================
# Scheduling Defaults
# =============================================================================

DEFAULT_MAX_ENTITIES_PER_BATCH: int = 20
DEFAULT_MAX_STALENESS_DAYS_AGO: int = 7

# Upstream cap on the space-joined entity filter string
DEFAULT_MAX_ASIN_STRING_CHARS: int = 200

DEFAULT_TIMEZONE: str = "America/Denver"

# Historical periods requested by a backfill run
DEFAULT_WEEKS_TO_PULL: int = 52
DEFAULT_MONTHS_TO_PULL: int = 12
DEFAULT_QUARTERS_TO_PULL: int = 4

# Day a new reporting window opens and entity statuses for that period are
# cleared: weekly on Tuesday (Monday=0), monthly on the 3rd, quarterly on the
# 20th of the quarter's first month
DEFAULT_WEEK_RESET_WEEKDAY: int = 1
DEFAULT_MONTH_RESET_DAY: int = 3
DEFAULT_QUARTER_RESET_DAY: int = 20


# =============================================================================
# Upstream API Defaults
# =============================================================================

DEFAULT_API_BASE_URL: str = "https://sellingpartnerapi-na.amazon.com"
DEFAULT_API_TIMEOUT_SECONDS: float = 30.0
DEFAULT_REPORT_TYPE_NAME: str = "GET_BRAND_ANALYTICS_SEARCH_QUERY_PERFORMANCE_REPORT"

# Attempts for transport-level failures inside a single client call
DEFAULT_TRANSPORT_RETRIES: int = 2

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
NON_RETRYABLE_STATUS_CODES = frozenset({400, 401, 403, 404, 422})


# =============================================================================
# Download Tracking
# =============================================================================

DEFAULT_MAX_DOWNLOAD_ATTEMPTS: int = 3


# =============================================================================
# Local Paths
# =============================================================================

DEFAULT_STORAGE_DIR: str = "./reports_data"
DEFAULT_STATE_DIR: str = ".state"
