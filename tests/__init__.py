"""report-foundry test suite.

Unit tests live under tests/unit/ and share the fakes in conftest.py
(fixed clock, recording sleep, in-memory store, fake report API).
"""
