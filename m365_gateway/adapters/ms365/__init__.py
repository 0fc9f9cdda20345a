"""
Microsoft 365 adapter package.

Provides the resilient Graph request layer and normalized operations:
- session: ClientSession and create_session factory
- executor / batch: single-request and /$batch execution with throttle retry
- errors: classified GraphError hierarchy
- _auth: token providers for sessions
- mail: Email operations (get_message, get_messages, list_messages)
"""

from ._auth import AzureCredentialTokenProvider, ServiceTokenProvider, TokenProvider
from .batch import execute_batch
from .errors import (
    ErrorCategory,
    GraphApiError,
    GraphAuthError,
    GraphError,
    GraphNetworkError,
    GraphSystemError,
    GraphThrottledError,
    GraphValidationError,
    Severity,
)
from .executor import execute_with_policy
from .models import BatchItem, RequestDescriptor, RetryPolicy
from .session import ClientSession, RequestBuilder, create_session
from .telemetry import LoggingTelemetry, NullTelemetry, TelemetrySink
from . import mail

__all__ = [
    "AzureCredentialTokenProvider",
    "ServiceTokenProvider",
    "TokenProvider",
    "execute_batch",
    "execute_with_policy",
    "ErrorCategory",
    "Severity",
    "GraphError",
    "GraphValidationError",
    "GraphAuthError",
    "GraphThrottledError",
    "GraphApiError",
    "GraphNetworkError",
    "GraphSystemError",
    "BatchItem",
    "RequestDescriptor",
    "RetryPolicy",
    "ClientSession",
    "RequestBuilder",
    "create_session",
    "LoggingTelemetry",
    "NullTelemetry",
    "TelemetrySink",
    "mail",
]
