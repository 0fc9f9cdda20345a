"""
MS365 error classification.

Turns raw transport and HTTP outcomes from Microsoft Graph into a closed
error taxonomy. Every failure leaving the adapter layer is a GraphError
subclass carrying a category, a severity and a sanitized context mapping.

Categories:
- validation: malformed request descriptor, nothing was sent
- auth: no bearer token available
- throttled: 429 persisted through every allowed attempt
- api_error: non-2xx, non-429 terminal response
- network_error: transport failure on the final attempt
- system: unexpected internal failure
"""

import json
import math
import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

import httpx


RAW_TEXT_LIMIT = 200
PATH_LOG_LIMIT = 50

# HTTP delta-seconds; HTTP-date and other forms use the default
_DELTA_SECONDS = re.compile(r"\d+(\.\d+)?")

_SENSITIVE_KEYS = {"password", "token", "secret", "accesstoken", "refreshtoken", "clientsecret"}


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    AUTH = "auth"
    THROTTLED = "throttled"
    API_ERROR = "api_error"
    NETWORK_ERROR = "network_error"
    SYSTEM = "system"


class Severity(str, Enum):
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


def sanitize_context(context: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Drop credential-bearing keys from an error context."""
    if not context:
        return {}
    return {k: v for k, v in context.items() if k.lower() not in _SENSITIVE_KEYS}


def truncate(text: Optional[str], limit: int = RAW_TEXT_LIMIT, suffix: str = "") -> str:
    if not text:
        return ""
    if len(text) <= limit:
        return text
    return text[:limit] + suffix


class GraphError(Exception):
    """
    Base exception for classified MS365 adapter failures.

    Subclasses fix the category and default severity; callers branch on the
    subclass (or ``category``) rather than on message text.
    """

    category: ErrorCategory = ErrorCategory.SYSTEM
    default_severity: Severity = Severity.ERROR

    def __init__(
        self,
        message: str,
        context: Optional[Mapping[str, Any]] = None,
        severity: Optional[Severity] = None,
        trace_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.severity = severity or self.default_severity
        self.context = sanitize_context(context)
        self.trace_id = trace_id
        self.user_id = user_id
        self.id = uuid.uuid4().hex
        self.timestamp = datetime.now(timezone.utc).isoformat()

    @property
    def retryable(self) -> bool:
        """Whether a caller may reasonably retry the same operation later."""
        return self.category in (ErrorCategory.THROTTLED, ErrorCategory.NETWORK_ERROR)

    def to_dict(self) -> Dict[str, Any]:
        record = {
            "id": self.id,
            "category": self.category.value,
            "message": self.message,
            "severity": self.severity.value,
            "context": dict(self.context),
            "timestamp": self.timestamp,
        }
        if self.trace_id:
            record["trace_id"] = self.trace_id
        if self.user_id:
            record["user_id"] = self.user_id
        return record

    def __repr__(self) -> str:
        return f"{type(self).__name__}(category={self.category.value!r}, message={self.message!r})"


class GraphValidationError(GraphError):
    category = ErrorCategory.VALIDATION
    default_severity = Severity.WARNING


class GraphAuthError(GraphError):
    category = ErrorCategory.AUTH
    default_severity = Severity.ERROR


class GraphThrottledError(GraphError):
    category = ErrorCategory.THROTTLED
    default_severity = Severity.WARNING


class GraphApiError(GraphError):
    category = ErrorCategory.API_ERROR
    default_severity = Severity.ERROR

    @property
    def status_code(self) -> Optional[int]:
        return self.context.get("status_code")

    @property
    def code(self) -> Optional[str]:
        return self.context.get("code")


class GraphNetworkError(GraphError):
    category = ErrorCategory.NETWORK_ERROR
    default_severity = Severity.ERROR


class GraphSystemError(GraphError):
    category = ErrorCategory.SYSTEM
    default_severity = Severity.CRITICAL


def parse_retry_after(value: Any, default: float) -> float:
    """
    Interpret a Retry-After hint as seconds.

    Args:
        value: Raw header value (string, number or None)
        default: Seconds to use when the value is absent, not plain
            delta-seconds, zero, negative or not finite

    Returns:
        Positive number of seconds to wait
    """
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, str):
        value = value.strip()
        if not _DELTA_SECONDS.fullmatch(value):
            return default
    elif not isinstance(value, (int, float)):
        return default
    try:
        seconds = float(value)
    except OverflowError:
        return default
    if not math.isfinite(seconds) or seconds <= 0:
        return default
    return seconds


def header_value(headers: Optional[Mapping[str, Any]], name: str) -> Any:
    """Case-insensitive lookup in a plain mapping of headers."""
    if not headers:
        return None
    wanted = name.lower()
    for key, value in headers.items():
        if str(key).lower() == wanted:
            return value
    return None


def classify_error_response(
    response: httpx.Response,
    method: str,
    path: str,
    attempts: int,
) -> GraphApiError:
    """
    Build a GraphApiError from a terminal non-2xx, non-429 response.

    Graph reports failures as ``{"error": {"code": ..., "message": ...}}``.
    When the body carries that structure the code and message are embedded
    in the error message; otherwise the raw text is kept, truncated.

    Args:
        response: The failing httpx response
        method: HTTP method of the request
        path: Request path or URL, used only for context
        attempts: Attempts made including this one

    Returns:
        GraphApiError ready to raise
    """
    text = response.text or ""
    context: Dict[str, Any] = {
        "status_code": response.status_code,
        "method": method,
        "path": truncate(path, PATH_LOG_LIMIT, "..."),
        "attempts": attempts,
    }

    try:
        payload = json.loads(text)
    except ValueError:
        payload = None

    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict) and (error.get("code") or error.get("message")):
        code = error.get("code") or "UnknownError"
        detail = error.get("message") or ""
        context["code"] = code
        context["raw_message"] = detail
        return GraphApiError(
            f"Graph API request failed: {response.status_code} {code} - {detail}",
            context=context,
        )

    context["raw_body"] = truncate(text)
    return GraphApiError(
        f"Graph API request failed: {response.status_code} - {truncate(text)}",
        context=context,
    )
