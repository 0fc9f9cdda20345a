"""
Gateway configuration.

All settings are read from the environment once at import time. Numeric
values that fail to parse fall back to their defaults.
"""
import math
import os


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


# Microsoft Graph
GRAPH_BASE_URL = os.getenv("GRAPH_BASE_URL", "https://graph.microsoft.com/v1.0").rstrip("/")
GRAPH_TIMEOUT_SECONDS = _env_float("GRAPH_TIMEOUT_SECONDS", 30.0)
GRAPH_MAX_RETRIES = _env_int("GRAPH_MAX_RETRIES", 2)
GRAPH_DEFAULT_RETRY_AFTER = _env_float("GRAPH_DEFAULT_RETRY_AFTER", 1.0)

# Token vending (Auth service)
AUTH_SERVICE_URL = os.getenv("AUTH_SERVICE_URL", "http://auth:8000")
SERVICE_SECRET = os.getenv("SERVICE_SECRET")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def default_retry_policy():
    """
    Build the process-wide RetryPolicy from environment settings.

    Out-of-range values (negative retries, non-positive backoff) are replaced
    by the built-in defaults rather than failing startup.

    Returns:
        RetryPolicy instance
    """
    from .adapters.ms365.models import RetryPolicy

    max_retries = GRAPH_MAX_RETRIES if GRAPH_MAX_RETRIES >= 0 else 2
    retry_after = GRAPH_DEFAULT_RETRY_AFTER
    if not math.isfinite(retry_after) or retry_after <= 0:
        retry_after = 1.0
    return RetryPolicy(max_retries=max_retries, default_retry_after_seconds=retry_after)
