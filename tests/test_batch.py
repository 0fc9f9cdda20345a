"""
Unit tests for the batch executor.

Covers partial throttling across rounds, ordering under arbitrary
sub-response order, exhaustion, and the shape of the /$batch payload.
"""

import itertools
import json
import time

import httpx
import pytest

from m365_gateway.adapters.ms365 import (
    GraphSystemError,
    GraphThrottledError,
    GraphValidationError,
    RequestDescriptor,
    RetryPolicy,
    execute_batch,
)
from m365_gateway.adapters.ms365.batch import build_sub_request, relative_url
from m365_gateway.adapters.ms365.models import BatchItem

from conftest import BASE_URL, batch_response, throttled


POLICY = RetryPolicy(max_retries=2, default_retry_after_seconds=1)


def descriptors(n):
    return [RequestDescriptor("GET", f"/me/messages/m{i}") for i in range(n)]


def ok(rid, label=None):
    return (rid, 200, {"id": label or f"m{rid}"})


def answer_round(throttle_ids, reverse=False, retry_after="1"):
    """Response callable: throttles the given ids, answers the rest, in request order or reversed."""
    def handler(request):
        submitted = [r["id"] for r in json.loads(request.content)["requests"]]
        if reverse:
            submitted = list(reversed(submitted))
        subs = [
            throttled(rid, retry_after) if int(rid) in throttle_ids else ok(int(rid))
            for rid in submitted
        ]
        return batch_response(*subs)
    return handler


class TestBatchRounds:

    @pytest.mark.asyncio
    async def test_all_succeed_in_one_round(self, graph, session, fake_sleep, sleeps):
        graph.queue(batch_response(ok(0), ok(1), ok(2)))

        results = await execute_batch(descriptors(3), session, POLICY, sleep=fake_sleep)

        assert results == [{"id": "m0"}, {"id": "m1"}, {"id": "m2"}]
        assert graph.call_count == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_only_throttled_items_are_resubmitted(self, graph, session, fake_sleep, sleeps):
        graph.queue(
            batch_response(ok(0), throttled(1, "3"), ok(2), throttled(3, "1"), ok(4)),
            batch_response(ok(3, "m3-late"), ok(1, "m1-late")),
        )

        results = await execute_batch(descriptors(5), session, POLICY, sleep=fake_sleep)

        assert len(results) == 5
        assert results == [
            {"id": "m0"}, {"id": "m1-late"}, {"id": "m2"}, {"id": "m3-late"}, {"id": "m4"},
        ]
        assert graph.call_count == 2
        # One wait per round, for the largest Retry-After seen
        assert sleeps == [3.0]

        second_round = graph.json_bodies()[1]["requests"]
        assert [r["id"] for r in second_round] == ["1", "3"]
        assert [r["url"] for r in second_round] == ["/me/messages/m1", "/me/messages/m3"]

    @pytest.mark.asyncio
    async def test_sub_responses_out_of_order(self, graph, session, fake_sleep):
        graph.queue(batch_response(ok(2), ok(0), ok(1)))

        results = await execute_batch(descriptors(3), session, POLICY, sleep=fake_sleep)

        assert results == [{"id": "m0"}, {"id": "m1"}, {"id": "m2"}]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "throttle_ids",
        [set(c) for r in (1, 2, 3) for c in itertools.combinations(range(4), r)],
    )
    async def test_order_independent_of_which_items_throttle(self, graph, session, fake_sleep, throttle_ids):
        graph.queue(answer_round(throttle_ids, reverse=True), answer_round(set(), reverse=True))

        results = await execute_batch(descriptors(4), session, POLICY, sleep=fake_sleep)

        assert results == [{"id": f"m{i}"} for i in range(4)]
        assert graph.call_count == 2

    @pytest.mark.asyncio
    async def test_throttled_until_exhaustion(self, graph, session, fake_sleep, sleeps, telemetry):
        graph.queue(
            batch_response(throttled(0, "2"), ok(1), ok(2)),
            batch_response(throttled(0, "2")),
            batch_response(throttled(0, "2")),
        )

        with pytest.raises(GraphThrottledError) as exc_info:
            await execute_batch(descriptors(3), session, POLICY, sleep=fake_sleep)

        error = exc_info.value
        assert error.context["still_throttled"] == 1
        assert error.context["attempts"] == 3
        assert error.context["total_requests"] == 3
        assert error.context["max_retry_after"] == 2.0
        assert graph.call_count == 3
        assert sleeps == [2.0, 2.0]
        assert len(telemetry.named("graph_api_batch_failure")) == 1
        assert telemetry.named("graph_api_batch_success") == []

    @pytest.mark.asyncio
    async def test_non_429_sub_failure_is_recorded(self, graph, session, fake_sleep):
        not_found = {"error": {"code": "ErrorItemNotFound", "message": "gone"}}
        graph.queue(batch_response(ok(0), (1, 404, not_found)))

        results = await execute_batch(descriptors(2), session, POLICY, sleep=fake_sleep)

        assert results == [{"id": "m0"}, not_found]
        assert graph.call_count == 1

    @pytest.mark.asyncio
    async def test_missing_retry_after_uses_default(self, graph, session, fake_sleep, sleeps):
        policy = RetryPolicy(max_retries=1, default_retry_after_seconds=5)
        graph.queue(
            batch_response((0, 429, None), ok(1)),
            batch_response(ok(0)),
        )

        await execute_batch(descriptors(2), session, policy, sleep=fake_sleep)

        assert sleeps == [5]

    @pytest.mark.asyncio
    async def test_lowercase_retry_after_header(self, graph, session, fake_sleep, sleeps):
        graph.queue(
            batch_response((0, 429, None, {"retry-after": "7"})),
            batch_response(ok(0)),
        )

        await execute_batch(descriptors(1), session, POLICY, sleep=fake_sleep)

        assert sleeps == [7.0]

    @pytest.mark.asyncio
    async def test_envelope_throttling_retried_by_executor(self, graph, session, fake_sleep, sleeps):
        graph.queue(
            httpx.Response(429, headers={"Retry-After": "4"}),
            batch_response(ok(0), ok(1)),
        )

        results = await execute_batch(descriptors(2), session, POLICY, sleep=fake_sleep)

        assert results == [{"id": "m0"}, {"id": "m1"}]
        assert sleeps == [4.0]

    @pytest.mark.asyncio
    async def test_round_metrics(self, graph, session, fake_sleep, telemetry):
        graph.queue(
            batch_response(ok(0), throttled(1), throttled(2)),
            batch_response(ok(1), ok(2)),
        )

        await execute_batch(descriptors(3), session, POLICY, sleep=fake_sleep)

        rounds = telemetry.named("graph_api_batch_request")
        assert [(r["round"], r["success_count"], r["throttled_count"]) for r in rounds] == [
            (1, 1, 2),
            (2, 2, 0),
        ]
        assert len(telemetry.named("graph_api_batch_success")) == 1

    @pytest.mark.asyncio
    async def test_round_metric_value_is_elapsed_milliseconds(self, graph, session, fake_sleep, telemetry):
        def slow_round(request):
            time.sleep(0.05)
            return batch_response(ok(0), ok(1), ok(2))
        graph.queue(slow_round)

        await execute_batch(descriptors(3), session, POLICY, sleep=fake_sleep)

        values = [value for name, value, _ in telemetry.metrics if name == "graph_api_batch_request"]
        assert len(values) == 1
        assert values[0] >= 45

    @pytest.mark.asyncio
    @pytest.mark.parametrize("header", ["inf", "Infinity", "1e999", "nan"])
    async def test_non_finite_sub_retry_after_uses_default(self, graph, session, fake_sleep, sleeps, header):
        graph.queue(
            batch_response(throttled(0, header), ok(1)),
            batch_response(ok(0)),
        )

        await execute_batch(descriptors(2), session, POLICY, sleep=fake_sleep)

        assert sleeps == [1]


class TestBatchEdgeCases:

    @pytest.mark.asyncio
    async def test_empty_batch_makes_no_call(self, graph, session, fake_sleep):
        assert await execute_batch([], session, POLICY, sleep=fake_sleep) == []
        assert graph.call_count == 0

    @pytest.mark.asyncio
    async def test_missing_sub_response_is_system_error(self, graph, session, fake_sleep):
        graph.queue(batch_response(ok(0)))

        with pytest.raises(GraphSystemError) as exc_info:
            await execute_batch(descriptors(2), session, POLICY, sleep=fake_sleep)

        assert exc_info.value.context["missing_indices"] == [1]

    @pytest.mark.asyncio
    async def test_envelope_without_responses_is_system_error(self, graph, session, fake_sleep):
        graph.queue(httpx.Response(200, json={"unexpected": True}))

        with pytest.raises(GraphSystemError):
            await execute_batch(descriptors(1), session, POLICY, sleep=fake_sleep)

    @pytest.mark.asyncio
    async def test_sub_responses_without_ids_match_by_position(self, graph, session, fake_sleep):
        graph.queue(httpx.Response(200, json={"responses": [
            {"status": 200, "body": {"id": "first"}},
            {"status": 200, "body": {"id": "second"}},
        ]}))

        results = await execute_batch(descriptors(2), session, POLICY, sleep=fake_sleep)

        assert results == [{"id": "first"}, {"id": "second"}]

    @pytest.mark.asyncio
    async def test_rejects_non_descriptor_entries(self, graph, session, fake_sleep):
        with pytest.raises(GraphValidationError) as exc_info:
            await execute_batch([RequestDescriptor("GET", "/me"), "/me/events"], session, POLICY, sleep=fake_sleep)

        assert exc_info.value.context["index"] == 1
        assert graph.call_count == 0


class TestBatchPayload:

    @pytest.mark.asyncio
    async def test_envelope_posted_to_batch_endpoint(self, graph, session, fake_sleep):
        graph.queue(batch_response(ok(0)))

        await execute_batch(descriptors(1), session, POLICY, sleep=fake_sleep)

        request = graph.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/v1.0/$batch"
        assert request.headers["Authorization"] == "Bearer test-token"

    def test_sub_request_with_body_gets_content_type(self):
        item = BatchItem(3, RequestDescriptor("PATCH", "/me/messages/a", body={"isRead": True}))

        assert build_sub_request(item) == {
            "id": "3",
            "method": "PATCH",
            "url": "/me/messages/a",
            "body": {"isRead": True},
            "headers": {"Content-Type": "application/json"},
        }

    def test_sub_request_without_body_has_no_headers(self):
        item = BatchItem(0, RequestDescriptor("GET", "/me"))

        assert build_sub_request(item) == {"id": "0", "method": "GET", "url": "/me"}

    def test_relative_url_strips_base_and_appends_params(self):
        descriptor = RequestDescriptor(
            "GET", f"{BASE_URL}/me/events", params={"$top": 5, "$select": "subject"}
        )

        assert relative_url(descriptor, BASE_URL) == "/me/events?$top=5&$select=subject"

    def test_relative_url_strips_base_root(self):
        descriptor = RequestDescriptor("GET", f"{BASE_URL}?$top=1")

        assert relative_url(descriptor, BASE_URL) == "/?$top=1"

    @pytest.mark.parametrize("url", [
        "https://graph.test/beta/me",
        "https://graph.test/v1.0foo/me",
        "https://elsewhere.test/v1.0/me",
    ])
    def test_relative_url_rejects_urls_outside_base(self, url):
        with pytest.raises(GraphValidationError):
            relative_url(RequestDescriptor("GET", url), BASE_URL)

    @pytest.mark.asyncio
    async def test_foreign_absolute_url_fails_before_any_call(self, graph, session, fake_sleep, telemetry):
        batch = [
            RequestDescriptor("GET", "/me"),
            RequestDescriptor("GET", "https://graph.test/beta/me/messages"),
        ]

        with pytest.raises(GraphValidationError) as exc_info:
            await execute_batch(batch, session, POLICY, sleep=fake_sleep)

        assert exc_info.value.context["index"] == 1
        assert graph.call_count == 0
        assert telemetry.errors == [exc_info.value]
