"""
MS365 request executor.

Executes a single RequestDescriptor against Microsoft Graph with
throttle-aware retry:

- 202 Accepted: success without a body
- other 2xx: success, JSON body returned (204 / empty body returns a
  success marker)
- 429: wait for Retry-After seconds and try again while attempts remain
- other non-2xx: fail immediately with GraphApiError
- transport failure: try again while attempts remain, then GraphNetworkError

All state lives in the call; sessions carry no mutable state, so concurrent
calls on one session are independent.
"""

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx

from ... import config
from .errors import (
    PATH_LOG_LIMIT,
    GraphAuthError,
    GraphError,
    GraphNetworkError,
    GraphSystemError,
    GraphThrottledError,
    GraphValidationError,
    classify_error_response,
    parse_retry_after,
    truncate,
)
from .models import RequestDescriptor, RetryPolicy
from .telemetry import LoggingTelemetry, TelemetrySink, emit_error, emit_metric

if TYPE_CHECKING:
    from .session import ClientSession


log = logging.getLogger("m365_gateway.graph")

Sleep = Callable[[float], Awaitable[Any]]


def build_url(path_or_url: str, base_url: Optional[str] = None) -> str:
    """
    Resolve a descriptor target to an absolute URL.

    Absolute http(s) URLs (for example ``@odata.nextLink`` values) are used
    as-is; anything else is appended to the Graph base.
    """
    if path_or_url.startswith(("https://", "http://")):
        return path_or_url
    base = (base_url or config.GRAPH_BASE_URL).rstrip("/")
    if not path_or_url.startswith("/"):
        path_or_url = "/" + path_or_url
    return base + path_or_url


def build_headers(token: str, extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Default Graph headers merged with caller headers (caller wins)."""
    headers = {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json",
    }
    if extra:
        # Case-insensitive override so "content-type" replaces "Content-Type"
        lowered = {k.lower(): k for k in headers}
        for key, value in extra.items():
            existing = lowered.get(key.lower())
            if existing is not None and existing != key:
                del headers[existing]
            headers[key] = value
    return headers


def _encode_body(descriptor: RequestDescriptor) -> Optional[bytes]:
    if descriptor.body is None:
        return None
    try:
        return json.dumps(descriptor.body).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise GraphValidationError(
            f"Request body is not JSON serializable: {e}",
            context={"method": descriptor.method, "path": truncate(descriptor.path_or_url, PATH_LOG_LIMIT, "...")},
        )


@asynccontextmanager
async def _client_scope(session: "ClientSession"):
    """Yield the session's shared client, or a per-call client that is closed afterwards."""
    shared = getattr(session, "http_client", None)
    if shared is not None:
        yield shared
        return
    async with httpx.AsyncClient(timeout=config.GRAPH_TIMEOUT_SECONDS) as client:
        yield client


def resolve_telemetry(session: "ClientSession", telemetry: Optional[TelemetrySink]) -> TelemetrySink:
    return telemetry or getattr(session, "telemetry", None) or LoggingTelemetry()


async def execute_with_policy(
    descriptor: RequestDescriptor,
    session: "ClientSession",
    policy: Optional[RetryPolicy] = None,
    *,
    telemetry: Optional[TelemetrySink] = None,
    sleep: Sleep = asyncio.sleep,
) -> Any:
    """
    Execute one Graph request with bounded retry on throttling.

    Args:
        descriptor: The request to issue
        session: ClientSession supplying the bearer token and base URL
        policy: RetryPolicy (defaults to the environment-configured policy)
        telemetry: Metric/error sink (defaults to the session's sink)
        sleep: Coroutine used for backoff waits

    Returns:
        Parsed JSON body, or ``{"success": True, "status": <code>}`` for
        202/204/empty responses

    Raises:
        GraphValidationError: Descriptor or policy is malformed
        GraphAuthError: Session has no token
        GraphThrottledError: 429 on every allowed attempt
        GraphApiError: Terminal non-2xx response
        GraphNetworkError: Transport failure on the final attempt
        GraphSystemError: Unexpected failure, e.g. invalid JSON on a 2xx

    Example:
        body = await execute_with_policy(
            RequestDescriptor("GET", "/me/messages", params={"$top": 10}),
            session,
        )
    """
    sink = resolve_telemetry(session, telemetry)
    user_id = getattr(session, "user_id", None)

    def fail(error: GraphError) -> GraphError:
        if error.user_id is None:
            error.user_id = user_id
        emit_error(sink, error)
        return error

    if not isinstance(descriptor, RequestDescriptor):
        raise fail(GraphValidationError(
            "Expected a RequestDescriptor",
            context={"type": type(descriptor).__name__},
        ))
    if policy is None:
        policy = config.default_retry_policy()
    if not getattr(session, "token", None):
        raise fail(GraphAuthError("No access token available for Graph request"))

    method = descriptor.method
    path = descriptor.path_or_url
    short_path = truncate(path, PATH_LOG_LIMIT, "...")
    url = build_url(path, getattr(session, "base_url", None))
    headers = build_headers(session.token, descriptor.headers)
    total_attempts = policy.total_attempts
    try:
        content = _encode_body(descriptor)
    except GraphValidationError as e:
        raise fail(e)

    try:
        params = dict(descriptor.params) if descriptor.params else None

        async with _client_scope(session) as client:
            for attempt in range(1, total_attempts + 1):
                started = time.monotonic()
                try:
                    response = await client.request(
                        method, url, headers=headers, content=content, params=params
                    )
                except httpx.RequestError as e:
                    elapsed_ms = (time.monotonic() - started) * 1000
                    emit_metric(sink, "graph_api_network_error", elapsed_ms, {
                        "method": method,
                        "endpoint": short_path,
                        "attempt": attempt,
                        "error_type": type(e).__name__,
                        "user_id": user_id,
                    })
                    if attempt < total_attempts:
                        log.warning(
                            "Graph %s %s transport failure on attempt %d/%d: %s",
                            method, short_path, attempt, total_attempts, e,
                        )
                        continue
                    raise fail(GraphNetworkError(
                        f"Graph API network error after {attempt} attempts: {e}",
                        context={
                            "method": method,
                            "path": short_path,
                            "attempts": attempt,
                            "error_type": type(e).__name__,
                            "original_message": str(e),
                        },
                    )) from e

                elapsed_ms = (time.monotonic() - started) * 1000
                status = response.status_code
                emit_metric(sink, "graph_api_request", elapsed_ms, {
                    "method": method,
                    "endpoint": short_path,
                    "status_code": status,
                    "success": response.is_success,
                    "attempt": attempt,
                    "user_id": user_id,
                })

                if status == 202:
                    return {"success": True, "status": 202}

                if response.is_success:
                    log.debug("Graph %s %s -> %d (attempt %d)", method, short_path, status, attempt)
                    if status == 204 or not response.content:
                        return {"success": True, "status": status}
                    try:
                        return response.json()
                    except ValueError as e:
                        raise fail(GraphSystemError(
                            f"Graph API returned invalid JSON for {status} response",
                            context={
                                "method": method,
                                "path": short_path,
                                "status_code": status,
                                "attempts": attempt,
                                "raw_body": truncate(response.text),
                            },
                        )) from e

                if status == 429:
                    retry_after = parse_retry_after(
                        response.headers.get("Retry-After"), policy.default_retry_after_seconds
                    )
                    emit_metric(sink, "graph_api_throttled", elapsed_ms, {
                        "method": method,
                        "endpoint": short_path,
                        "attempt": attempt,
                        "retry_after": retry_after,
                        "user_id": user_id,
                    })
                    if attempt < total_attempts:
                        log.warning(
                            "Graph %s %s throttled (429) on attempt %d/%d; retrying in %.1fs",
                            method, short_path, attempt, total_attempts, retry_after,
                        )
                        await sleep(retry_after)
                        continue
                    raise fail(GraphThrottledError(
                        f"Graph API throttled (429) after {attempt} attempts",
                        context={
                            "method": method,
                            "path": short_path,
                            "status_code": 429,
                            "attempts": attempt,
                            "retry_after": retry_after,
                        },
                    ))

                raise fail(classify_error_response(response, method, path, attempt))
    except GraphError:
        raise
    except Exception as e:
        raise fail(GraphSystemError(
            f"Unexpected error during Graph request: {e}",
            context={"method": method, "path": short_path, "error_type": type(e).__name__},
        )) from e

    # Unreachable: the loop either returns or raises on its final attempt
    raise fail(GraphSystemError("Graph request loop exited without a result"))
