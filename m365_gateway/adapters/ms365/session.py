"""
MS365 client session.

A ClientSession is the immutable composition root for Graph calls made on
behalf of one authenticated context: it holds the bearer token and base URL
(plus optional shared httpx client and telemetry sink) and hands requests to
the single-request or batch executor.

Sessions are created per inbound request with ``create_session`` and thrown
away afterwards. They hold no mutable state and are safe to share between
concurrent tasks.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

import httpx

from ... import config
from .batch import execute_batch
from .errors import GraphAuthError, GraphError
from .executor import execute_with_policy
from .models import RequestDescriptor, RetryPolicy
from .telemetry import TelemetrySink
from ._auth import TokenProvider


log = logging.getLogger("m365_gateway.graph.session")


@dataclass(frozen=True)
class ClientSession:
    """
    Bearer token and base URL for one authenticated context.

    Attributes:
        token: Opaque OAuth access token
        base_url: Graph API root used for relative paths
        http_client: Optional shared httpx.AsyncClient; when None each call
            opens and closes its own client
        telemetry: Optional metric/error sink
        user_id: Optional user identifier attached to errors and metrics
        policy: Default RetryPolicy for calls that do not pass one
    """

    token: str
    base_url: str = field(default_factory=lambda: config.GRAPH_BASE_URL)
    http_client: Optional[httpx.AsyncClient] = field(default=None, repr=False, compare=False)
    telemetry: Optional[TelemetrySink] = field(default=None, repr=False, compare=False)
    user_id: Optional[str] = None
    policy: Optional[RetryPolicy] = None

    def __repr__(self) -> str:
        return f"ClientSession(base_url={self.base_url!r}, user_id={self.user_id!r}, token=***)"

    async def request(self, descriptor: RequestDescriptor, policy: Optional[RetryPolicy] = None) -> Any:
        """Execute one request. See ``execute_with_policy``."""
        return await execute_with_policy(descriptor, self, policy or self.policy)

    async def batch(
        self,
        descriptors: Sequence[RequestDescriptor],
        policy: Optional[RetryPolicy] = None,
    ) -> list:
        """Execute requests through ``/$batch``. See ``execute_batch``."""
        return await execute_batch(descriptors, self, policy or self.policy)

    def api(self, path: str) -> "RequestBuilder":
        """
        Fluent request builder for a Graph path.

        Example:
            me = await session.api("/me").get()
            await session.api(f"/me/messages/{msg_id}").patch({"isRead": True})
        """
        return RequestBuilder(self, path)


class RequestBuilder:
    """Per-path helper that turns verb calls into RequestDescriptors."""

    def __init__(self, session: ClientSession, path: str):
        self.session = session
        self.path = path

    def _descriptor(
        self,
        method: str,
        body: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> RequestDescriptor:
        return RequestDescriptor(method, self.path, body=body, headers=headers or {}, params=params)

    async def get(self, params=None, headers=None, policy: Optional[RetryPolicy] = None) -> Any:
        return await self.session.request(self._descriptor("GET", headers=headers, params=params), policy)

    async def post(self, body=None, headers=None, params=None, policy: Optional[RetryPolicy] = None) -> Any:
        return await self.session.request(self._descriptor("POST", body, headers, params), policy)

    async def put(self, body=None, headers=None, params=None, policy: Optional[RetryPolicy] = None) -> Any:
        return await self.session.request(self._descriptor("PUT", body, headers, params), policy)

    async def patch(self, body=None, headers=None, params=None, policy: Optional[RetryPolicy] = None) -> Any:
        return await self.session.request(self._descriptor("PATCH", body, headers, params), policy)

    async def delete(self, headers=None, params=None, policy: Optional[RetryPolicy] = None) -> Any:
        return await self.session.request(self._descriptor("DELETE", headers=headers, params=params), policy)


async def create_session(
    context: Any,
    token_provider: TokenProvider,
    *,
    base_url: Optional[str] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    telemetry: Optional[TelemetrySink] = None,
    user_id: Optional[str] = None,
    policy: Optional[RetryPolicy] = None,
) -> ClientSession:
    """
    Create a ClientSession for an authentication context.

    Args:
        context: Whatever the token provider keys tokens on (a credential
            id for ServiceTokenProvider)
        token_provider: TokenProvider supplying the bearer token
        base_url: Override for the Graph API root
        http_client: Optional shared httpx.AsyncClient
        telemetry: Optional metric/error sink
        user_id: Optional user identifier for errors and metrics
        policy: Default RetryPolicy for the session

    Returns:
        ClientSession bound to the acquired token

    Raises:
        GraphAuthError: The provider returned no token or failed

    Example:
        session = await create_session(credential_id, ServiceTokenProvider())
        inbox = await session.api("/me/mailFolders/inbox/messages").get()
    """
    try:
        token = await token_provider.get_token(context)
    except GraphError:
        raise
    except Exception as e:
        raise GraphAuthError(
            f"Failed to acquire access token: {e}",
            context={"error_type": type(e).__name__},
            user_id=user_id,
        ) from e

    if not token:
        raise GraphAuthError("No access token available for this context", user_id=user_id)

    log.debug("Created Graph session for user %s", user_id or "<anonymous>")
    return ClientSession(
        token=token,
        base_url=(base_url or config.GRAPH_BASE_URL).rstrip("/"),
        http_client=http_client,
        telemetry=telemetry,
        user_id=user_id,
        policy=policy,
    )
