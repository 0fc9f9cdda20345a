"""
MS365 Graph Execution Routes

Exposes the resilient Graph executor to tool callers: one endpoint for a
single request and one for a batch, both scoped to a stored OAuth credential.
Classified failures are rendered by the GraphError handler in main.py.
"""

from typing import Any, Dict, List, Optional

import httpx
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..adapters.ms365 import (
    RequestDescriptor,
    RetryPolicy,
    ServiceTokenProvider,
    TokenProvider,
    create_session,
)
from .. import config


router = APIRouter(prefix="/api/ms365", tags=["MS365 Graph"])

_token_provider: Optional[ServiceTokenProvider] = None


def get_token_provider() -> TokenProvider:
    """Process-wide token provider (created lazily so env changes in tests apply)."""
    global _token_provider
    if _token_provider is None:
        _token_provider = ServiceTokenProvider()
    return _token_provider


def get_http_client() -> Optional[httpx.AsyncClient]:
    """Shared Graph HTTP client; None means one client per call."""
    return None


class GraphRequest(BaseModel):
    """One Graph call as sent by a tool"""
    method: str = Field(default="GET", examples=["GET", "POST", "PATCH"])
    path: str = Field(
        ...,
        description="Path relative to the Graph base, or an absolute nextLink URL",
        examples=["/me/messages", "/me/events/AAMkAG..."],
    )
    body: Optional[Any] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    params: Optional[Dict[str, Any]] = None

    def to_descriptor(self) -> RequestDescriptor:
        return RequestDescriptor(
            method=self.method,
            path_or_url=self.path,
            body=self.body,
            headers=self.headers,
            params=self.params,
        )


class SingleRequest(GraphRequest):
    max_retries: Optional[int] = Field(default=None, ge=0, le=10)


class BatchRequest(BaseModel):
    """Several Graph calls executed through /$batch"""
    requests: List[GraphRequest] = Field(..., description="Requests in the order results are returned")
    max_retries: Optional[int] = Field(default=None, ge=0, le=10)


def _policy(max_retries: Optional[int]) -> Optional[RetryPolicy]:
    if max_retries is None:
        return None
    return RetryPolicy(
        max_retries=max_retries,
        default_retry_after_seconds=config.default_retry_policy().default_retry_after_seconds,
    )


@router.post("/{credential_id}/request")
async def execute_request(
    credential_id: str,
    request: SingleRequest,
    token_provider: TokenProvider = Depends(get_token_provider),
    http_client: Optional[httpx.AsyncClient] = Depends(get_http_client),
):
    """
    Execute a single Graph request for a credential.

    Example:
        POST /api/ms365/37b08f02-.../request
        {"method": "GET", "path": "/me/messages", "params": {"$top": 10}}
    """
    descriptor = request.to_descriptor()
    session = await create_session(credential_id, token_provider, http_client=http_client, user_id=credential_id)
    result = await session.request(descriptor, _policy(request.max_retries))
    return {"result": result}


@router.post("/{credential_id}/batch")
async def execute_batch_request(
    credential_id: str,
    request: BatchRequest,
    token_provider: TokenProvider = Depends(get_token_provider),
    http_client: Optional[httpx.AsyncClient] = Depends(get_http_client),
):
    """
    Execute several Graph requests through /$batch for a credential.

    Responses are returned in request order. Throttled sub-requests are
    retried internally; the call fails as a whole if they stay throttled.

    Example:
        POST /api/ms365/37b08f02-.../batch
        {"requests": [{"path": "/me"}, {"path": "/me/messages?$top=5"}]}
    """
    descriptors = [r.to_descriptor() for r in request.requests]
    session = await create_session(credential_id, token_provider, http_client=http_client, user_id=credential_id)
    responses = await session.batch(descriptors, _policy(request.max_retries))
    return {"responses": responses}
