"""
Value objects shared by the MS365 request and batch executors.
"""

import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional

from .errors import GraphValidationError


ALLOWED_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry behaviour for one logical call.

    Attributes:
        max_retries: Retries after the first attempt (2 means 3 attempts total)
        default_retry_after_seconds: Backoff used when the server gives no
            usable Retry-After hint
    """

    max_retries: int = 2
    default_retry_after_seconds: float = 1.0

    def __post_init__(self):
        if isinstance(self.max_retries, bool) or not isinstance(self.max_retries, int):
            raise GraphValidationError(
                "max_retries must be an integer", context={"max_retries": repr(self.max_retries)}
            )
        if self.max_retries < 0:
            raise GraphValidationError(
                "max_retries must be >= 0", context={"max_retries": self.max_retries}
            )
        backoff = self.default_retry_after_seconds
        if (
            isinstance(backoff, bool)
            or not isinstance(backoff, (int, float))
            or not math.isfinite(backoff)
            or backoff <= 0
        ):
            raise GraphValidationError(
                "default_retry_after_seconds must be a positive finite number",
                context={"default_retry_after_seconds": repr(backoff)},
            )

    @property
    def total_attempts(self) -> int:
        return self.max_retries + 1


@dataclass(frozen=True)
class RequestDescriptor:
    """
    One Graph call, fully determined by its fields.

    Attributes:
        method: GET, POST, PUT, PATCH or DELETE
        path_or_url: Path relative to the Graph base (``/me/messages``) or an
            absolute URL such as an ``@odata.nextLink``
        body: JSON-serializable payload, or None
        headers: Extra request headers; these win over the defaults
        params: Optional query parameters
    """

    method: str
    path_or_url: str
    body: Optional[Any] = None
    headers: Mapping[str, str] = field(default_factory=dict)
    params: Optional[Mapping[str, Any]] = None

    def __post_init__(self):
        method = (self.method or "").upper() if isinstance(self.method, str) else ""
        if method not in ALLOWED_METHODS:
            raise GraphValidationError(
                f"Unsupported HTTP method: {self.method!r}",
                context={"method": repr(self.method), "allowed": list(ALLOWED_METHODS)},
            )
        if not isinstance(self.path_or_url, str) or not self.path_or_url.strip():
            raise GraphValidationError(
                "Request path must be a non-empty string",
                context={"path_or_url": repr(self.path_or_url)},
            )
        headers = self.headers or {}
        if not isinstance(headers, Mapping) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in headers.items()
        ):
            raise GraphValidationError(
                "Request headers must map strings to strings",
                context={"headers": sorted(map(str, headers)) if isinstance(headers, Mapping) else repr(headers)},
            )
        object.__setattr__(self, "method", method)
        object.__setattr__(self, "headers", MappingProxyType(dict(headers)))
        if self.params is not None:
            object.__setattr__(self, "params", MappingProxyType(dict(self.params)))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RequestDescriptor":
        """
        Build a descriptor from a loosely-typed mapping.

        Accepts ``path``, ``url`` or ``path_or_url`` for the target, which
        covers both tool parameters and Graph batch-style request entries.
        """
        if not isinstance(data, Mapping):
            raise GraphValidationError("Request must be an object", context={"type": type(data).__name__})
        target = data.get("path_or_url") or data.get("path") or data.get("url")
        return cls(
            method=data.get("method", "GET"),
            path_or_url=target,
            body=data.get("body"),
            headers=data.get("headers") or {},
            params=data.get("params"),
        )


@dataclass(frozen=True)
class BatchItem:
    """A descriptor tagged with its position in the caller's original sequence."""

    index: int
    descriptor: RequestDescriptor

    @property
    def request_id(self) -> str:
        return str(self.index)
