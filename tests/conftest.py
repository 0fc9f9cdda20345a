"""
Shared fixtures for the gateway tests.

Graph is simulated with httpx.MockTransport: a ScriptedGraph hands out queued
responses in order and records every request it receives. Backoff waits go
through a recording sleep so tests never actually wait.
"""

import json

import httpx
import pytest

from m365_gateway.adapters.ms365 import ClientSession


BASE_URL = "https://graph.test/v1.0"


class ScriptedGraph:
    """Serves queued responses (or raises queued exceptions) and records requests."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.requests = []

    def queue(self, *responses):
        self.responses.extend(responses)
        return self

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            raise AssertionError(f"Unexpected request: {request.method} {request.url}")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(request)
        return item

    @property
    def call_count(self) -> int:
        return len(self.requests)

    def json_bodies(self):
        return [json.loads(r.content) if r.content else None for r in self.requests]


class RecordingTelemetry:
    def __init__(self):
        self.metrics = []
        self.errors = []

    def track_metric(self, name, value, attributes):
        self.metrics.append((name, value, dict(attributes)))

    def log_error(self, error):
        self.errors.append(error)

    def named(self, name):
        return [attrs for metric, _, attrs in self.metrics if metric == name]


def batch_response(*subs):
    """Build a /$batch envelope from (id, status, body[, headers]) tuples."""
    responses = []
    for sub in subs:
        rid, status, body = sub[:3]
        entry = {"id": str(rid), "status": status, "body": body}
        if len(sub) > 3:
            entry["headers"] = sub[3]
        responses.append(entry)
    return httpx.Response(200, json={"responses": responses})


def throttled(rid, retry_after="1"):
    return (rid, 429, {"error": {"code": "TooManyRequests", "message": "throttled"}}, {"Retry-After": retry_after})


@pytest.fixture
def graph():
    return ScriptedGraph()


@pytest.fixture
def telemetry():
    return RecordingTelemetry()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds):
        sleeps.append(seconds)
    return _sleep


@pytest.fixture
def session(graph, telemetry):
    client = httpx.AsyncClient(transport=httpx.MockTransport(graph))
    return ClientSession(
        token="test-token",
        base_url=BASE_URL,
        http_client=client,
        telemetry=telemetry,
        user_id="user-1",
    )
