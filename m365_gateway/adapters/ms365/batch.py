"""
MS365 batch executor.

Submits many RequestDescriptors through Graph's ``/$batch`` endpoint and
retries only the sub-requests the server throttled. Each item keeps the
index it had in the caller's sequence for the whole call, so results come
back in input order no matter how many rounds were needed or how the
server ordered its sub-responses.

A batch either resolves every item or fails as a unit with
GraphThrottledError once ``policy.max_retries`` extra rounds are used up.
Successful sub-responses from earlier rounds are discarded in that case.
"""

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence
from urllib.parse import urlencode

from ... import config
from .errors import (
    PATH_LOG_LIMIT,
    GraphError,
    GraphSystemError,
    GraphThrottledError,
    GraphValidationError,
    header_value,
    parse_retry_after,
    truncate,
)
from .executor import Sleep, resolve_telemetry, execute_with_policy
from .models import BatchItem, RequestDescriptor, RetryPolicy
from .telemetry import TelemetrySink, emit_error, emit_metric

if TYPE_CHECKING:
    from .session import ClientSession


log = logging.getLogger("m365_gateway.graph.batch")

BATCH_PATH = "/$batch"


def relative_url(descriptor: RequestDescriptor, base_url: Optional[str] = None) -> str:
    """
    Sub-request URL as the batch endpoint expects it: relative to the API base.

    Absolute URLs under the base are stripped back to their path; query
    parameters from the descriptor are appended.

    Raises:
        GraphValidationError: An absolute URL outside the base (another host
            or API version), which the batch endpoint cannot address
    """
    base = (base_url or config.GRAPH_BASE_URL).rstrip("/")
    url = descriptor.path_or_url
    if url.startswith(("https://", "http://")):
        rest = url[len(base):] if url.startswith(base) else None
        if rest is None or (rest and rest[0] not in "/?"):
            raise GraphValidationError(
                "Batch sub-requests must target the session's API base",
                context={"url": truncate(url, PATH_LOG_LIMIT, "..."), "base_url": base},
            )
        url = rest
    if not url.startswith("/"):
        url = "/" + url
    if descriptor.params:
        query = urlencode(dict(descriptor.params), safe="$,'()")
        if query:
            url = f"{url}{'&' if '?' in url else '?'}{query}"
    return url


def build_sub_request(item: BatchItem, base_url: Optional[str] = None) -> Dict[str, Any]:
    descriptor = item.descriptor
    entry: Dict[str, Any] = {
        "id": item.request_id,
        "method": descriptor.method,
        "url": relative_url(descriptor, base_url),
    }
    headers = dict(descriptor.headers)
    if descriptor.body is not None:
        entry["body"] = descriptor.body
        if header_value(headers, "Content-Type") is None:
            headers["Content-Type"] = "application/json"
    if headers:
        entry["headers"] = headers
    return entry


def _correlate(pending: List[BatchItem], responses: List[Any]) -> List[tuple]:
    """
    Pair each sub-response with the BatchItem it answers.

    Responses are matched by ``id``; a response without an id is matched by
    its position in the submitted round.
    """
    by_id = {item.request_id: item for item in pending}
    pairs = []
    seen = set()
    for position, sub in enumerate(responses):
        if not isinstance(sub, dict):
            continue
        rid = sub.get("id")
        if rid is not None:
            item = by_id.get(str(rid))
        else:
            item = pending[position] if position < len(pending) else None
        if item is None:
            log.warning("Ignoring batch sub-response with unknown id %r", rid)
            continue
        if item.index in seen:
            continue
        seen.add(item.index)
        pairs.append((item, sub))
    return pairs


async def execute_batch(
    descriptors: Sequence[RequestDescriptor],
    session: "ClientSession",
    policy: Optional[RetryPolicy] = None,
    *,
    telemetry: Optional[TelemetrySink] = None,
    sleep: Sleep = asyncio.sleep,
) -> List[Any]:
    """
    Execute descriptors through the batch endpoint, retrying throttled items.

    Args:
        descriptors: Requests in caller order
        session: ClientSession supplying the bearer token and base URL
        policy: RetryPolicy; ``max_retries`` bounds the extra rounds
        telemetry: Metric/error sink (defaults to the session's sink)
        sleep: Coroutine used for the wait between rounds

    Returns:
        List of sub-response bodies, ``result[i]`` answering ``descriptors[i]``

    Raises:
        GraphValidationError: An entry is not a RequestDescriptor, or is an
            absolute URL outside the session base
        GraphThrottledError: Items were still throttled after the last round
        GraphSystemError: The batch response was malformed or incomplete
        GraphError: Any failure of the ``/$batch`` call itself

    Example:
        results = await execute_batch([
            RequestDescriptor("GET", "/me/messages/AAMk1"),
            RequestDescriptor("GET", "/me/messages/AAMk2"),
        ], session)
    """
    sink = resolve_telemetry(session, telemetry)
    user_id = getattr(session, "user_id", None)

    def fail(error: GraphError) -> GraphError:
        if error.user_id is None:
            error.user_id = user_id
        emit_error(sink, error)
        return error

    if isinstance(descriptors, (str, bytes)) or not isinstance(descriptors, Sequence):
        raise fail(GraphValidationError(
            "Batch requests must be a sequence of RequestDescriptor",
            context={"type": type(descriptors).__name__},
        ))
    base_url = getattr(session, "base_url", None)
    for position, descriptor in enumerate(descriptors):
        if not isinstance(descriptor, RequestDescriptor):
            raise fail(GraphValidationError(
                f"Batch entry {position} is not a RequestDescriptor",
                context={"index": position, "type": type(descriptor).__name__},
            ))
        try:
            relative_url(descriptor, base_url)
        except GraphValidationError as e:
            e.context["index"] = position
            raise fail(e)
    if policy is None:
        policy = config.default_retry_policy()

    total = len(descriptors)
    if total == 0:
        return []

    started = time.monotonic()
    results: List[Any] = [None] * total
    pending = [BatchItem(index=i, descriptor=d) for i, d in enumerate(descriptors)]
    round_no = 0

    try:
        while True:
            round_started = time.monotonic()
            envelope = await execute_with_policy(
                RequestDescriptor(
                    "POST",
                    BATCH_PATH,
                    body={"requests": [build_sub_request(item, base_url) for item in pending]},
                ),
                session,
                policy,
                telemetry=sink,
                sleep=sleep,
            )
            responses = envelope.get("responses") if isinstance(envelope, dict) else None
            if not isinstance(responses, list):
                raise fail(GraphSystemError(
                    "Graph batch response has no 'responses' list",
                    context={"round": round_no, "request_count": len(pending)},
                ))

            pairs = _correlate(pending, responses)
            answered = {item.index for item, _ in pairs}
            missing = [item.index for item in pending if item.index not in answered]
            if missing:
                raise fail(GraphSystemError(
                    f"Graph batch response is missing {len(missing)} sub-responses",
                    context={"round": round_no, "missing_indices": missing[:20]},
                ))

            retry: List[BatchItem] = []
            max_retry_after = 0.0
            for item, sub in pairs:
                if sub.get("status") == 429:
                    retry_after = parse_retry_after(
                        header_value(sub.get("headers"), "Retry-After"),
                        policy.default_retry_after_seconds,
                    )
                    max_retry_after = max(max_retry_after, retry_after)
                    retry.append(item)
                else:
                    results[item.index] = sub.get("body")
            retry.sort(key=lambda item: item.index)

            emit_metric(sink, "graph_api_batch_request", (time.monotonic() - round_started) * 1000, {
                "round": round_no + 1,
                "request_count": len(pending),
                "success_count": len(pending) - len(retry),
                "throttled_count": len(retry),
                "pending_count": len(retry),
                "max_retry_after": max_retry_after,
                "user_id": user_id,
            })

            if not retry:
                emit_metric(sink, "graph_api_batch_success", (time.monotonic() - started) * 1000, {
                    "request_count": total,
                    "rounds": round_no + 1,
                    "user_id": user_id,
                })
                log.debug("Graph batch of %d completed in %d round(s)", total, round_no + 1)
                return results

            if round_no >= policy.max_retries:
                raise fail(GraphThrottledError(
                    "Graph API batch throttled (429) after max retries",
                    context={
                        "total_requests": total,
                        "still_throttled": len(retry),
                        "attempts": round_no + 1,
                        "max_retry_after": max_retry_after,
                        "throttled_indices": [item.index for item in retry][:20],
                    },
                ))

            log.warning(
                "Graph batch round %d: %d of %d throttled; retrying in %.1fs",
                round_no + 1, len(retry), len(pending), max_retry_after,
            )
            await sleep(max_retry_after)
            round_no += 1
            pending = retry
    except GraphError as e:
        emit_metric(sink, "graph_api_batch_failure", (time.monotonic() - started) * 1000, {
            "request_count": total,
            "rounds": round_no + 1,
            "category": e.category.value,
            "user_id": user_id,
        })
        raise
