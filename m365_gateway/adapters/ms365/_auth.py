"""
MS365 token providers.

A TokenProvider turns an authentication context into a bearer token for a
ClientSession. Two implementations are provided:

- ServiceTokenProvider: asks the Auth service to vend a token for a stored
  OAuth credential (the context is the credential id) and caches it until
  shortly before expiry.
- AzureCredentialTokenProvider: wraps any azure-core TokenCredential
  (for example one from azure-identity); the context is ignored.
"""

import asyncio
import inspect
import time
from typing import Any, Dict, Optional, Protocol, Sequence, runtime_checkable

import httpx
from azure.core.credentials import AccessToken, TokenCredential

from ... import config
from .errors import GraphAuthError


GRAPH_DEFAULT_SCOPE = "https://graph.microsoft.com/.default"

# Refresh cached tokens this many seconds before they expire
EXPIRY_BUFFER_SECONDS = 300


@runtime_checkable
class TokenProvider(Protocol):
    async def get_token(self, context: Any) -> Optional[str]:
        ...


class ServiceTokenProvider:
    """
    TokenProvider backed by the Auth service's credential token endpoint.

    Tokens are cached per credential id until five minutes before their
    ``expires_at`` timestamp.
    """

    def __init__(
        self,
        auth_service_url: Optional[str] = None,
        service_secret: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the provider.

        Args:
            auth_service_url: Auth service root (defaults to AUTH_SERVICE_URL)
            service_secret: Shared secret (defaults to SERVICE_SECRET)
            timeout: HTTP timeout in seconds for token requests
            transport: Optional httpx transport, used by tests
        """
        self.auth_service_url = (auth_service_url or config.AUTH_SERVICE_URL).rstrip("/")
        self.service_secret = service_secret if service_secret is not None else config.SERVICE_SECRET
        self.timeout = timeout
        self.transport = transport
        self._cache: Dict[str, AccessToken] = {}

    async def get_token(self, context: Any) -> Optional[str]:
        """
        Get an access token for a credential.

        Args:
            context: UUID of the credential in the Auth service

        Returns:
            Access token string

        Raises:
            GraphAuthError: If token vending fails
        """
        token = await self.get_access_token(str(context))
        return token.token

    async def get_access_token(self, credential_id: str, force_refresh: bool = False) -> AccessToken:
        if not self.service_secret:
            raise GraphAuthError("SERVICE_SECRET not configured")

        if not force_refresh:
            cached = self._cache.get(credential_id)
            if cached and cached.expires_on > time.time() + EXPIRY_BUFFER_SECONDS:
                return cached

        url = f"{self.auth_service_url}/auth/oauth/internal/credential-token"
        headers = {
            "X-Service-Token": self.service_secret,
            "Content-Type": "application/json",
        }
        data = {"credential_id": credential_id}

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.post(url, headers=headers, json=data)
                response.raise_for_status()
                token_data = response.json()
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if status == 404:
                    message = f"Credential {credential_id} not found or not connected"
                elif status == 401:
                    message = "Invalid SERVICE_SECRET"
                else:
                    message = f"Auth service error: {status}"
                raise GraphAuthError(message, context={"status_code": status, "credential_id": credential_id}) from e
            except httpx.RequestError as e:
                raise GraphAuthError(
                    f"Failed to reach Auth service: {e}",
                    context={"credential_id": credential_id},
                ) from e
            except ValueError as e:
                raise GraphAuthError(
                    "Auth service returned invalid JSON",
                    context={"credential_id": credential_id},
                ) from e

        access_token = token_data.get("access_token") if isinstance(token_data, dict) else None
        if not access_token:
            raise GraphAuthError(
                f"Auth service returned no token for credential {credential_id}",
                context={"credential_id": credential_id},
            )

        token = AccessToken(token=access_token, expires_on=int(token_data.get("expires_at") or 0))
        self._cache[credential_id] = token
        return token

    def clear_cache(self, credential_id: Optional[str] = None):
        """
        Clear cached tokens for one credential, or all of them.

        Useful when a token has been revoked or a credential disconnected.
        """
        if credential_id:
            self._cache.pop(credential_id, None)
        else:
            self._cache.clear()

    def get_cache_stats(self) -> dict:
        return {
            "cached_credentials": len(self._cache),
            "credential_ids": list(self._cache.keys()),
        }


class AzureCredentialTokenProvider:
    """
    TokenProvider adapter for azure-core credentials.

    Synchronous TokenCredential implementations are called in a worker
    thread so the event loop is never blocked; async credentials are awaited.
    """

    def __init__(self, credential: TokenCredential, scopes: Sequence[str] = (GRAPH_DEFAULT_SCOPE,)):
        self.credential = credential
        self.scopes = tuple(scopes)

    async def get_token(self, context: Any = None) -> Optional[str]:
        if inspect.iscoroutinefunction(self.credential.get_token):
            access_token = await self.credential.get_token(*self.scopes)
        else:
            access_token = await asyncio.to_thread(self.credential.get_token, *self.scopes)
        return access_token.token if access_token else None
