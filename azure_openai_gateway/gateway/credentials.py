from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import httpx

from azure_openai_gateway.gateway.errors import AuthUnavailableError
from azure_openai_gateway.settings import Settings

logger = logging.getLogger("uvicorn.error")

# Inbound headers the resolver owns; they are never forwarded as-is.
AUTH_HEADER_NAMES = {"authorization", "api-key"}


@dataclass(slots=True)
class CachedToken:
    access_token: str
    expires_at: int | None = None


class TokenSource(Protocol):
    async def fetch(self) -> CachedToken: ...


class StaticTokenSource:
    def __init__(self, token: str) -> None:
        self._token = token

    async def fetch(self) -> CachedToken:
        return CachedToken(access_token=self._token, expires_at=None)


class ClientCredentialsTokenSource:
    """OAuth2 client-credentials grant against an Entra ID token endpoint."""

    def __init__(
        self,
        *,
        token_url: str,
        client_id: str,
        client_secret: str,
        scope: str,
        client_getter: Callable[[], httpx.AsyncClient],
    ) -> None:
        self.token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._scope = scope
        self._client_getter = client_getter

    async def fetch(self) -> CachedToken:
        payload = {
            "grant_type": "client_credentials",
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "scope": self._scope,
        }
        logger.info("token_refresh_start token_url=%s", self.token_url)
        try:
            response = await self._client_getter().post(
                self.token_url,
                data=payload,
                headers={"Accept": "application/json"},
            )
        except httpx.RequestError as exc:
            logger.warning(
                "token_refresh_error reason=request_error error_type=%s",
                exc.__class__.__name__,
            )
            raise AuthUnavailableError(
                "Could not reach the token endpoint to obtain a backend credential."
            ) from exc

        if response.status_code >= 400:
            logger.warning("token_refresh_error status=%d", response.status_code)
            raise AuthUnavailableError(
                "Token endpoint rejected the backend credential request."
            )

        try:
            token_response = response.json()
        except ValueError as exc:
            raise AuthUnavailableError(
                "Token endpoint returned an unreadable response."
            ) from exc

        access_token = (
            token_response.get("access_token")
            if isinstance(token_response, dict)
            else None
        )
        if not isinstance(access_token, str) or not access_token.strip():
            raise AuthUnavailableError("Token endpoint response had no access_token.")

        expires_at = _extract_expires_at(token_response)
        logger.info("token_refresh_complete expires_at=%s", expires_at)
        return CachedToken(access_token=access_token.strip(), expires_at=expires_at)


class StaticKeyCredentialResolver:
    mode = "api_key"

    def __init__(self, api_key: str | None) -> None:
        self._api_key = api_key.strip() if api_key and api_key.strip() else None

    async def resolve(self, inbound_authorization: str | None) -> dict[str, str]:
        key = self._api_key or _bearer_value(inbound_authorization)
        if not key:
            raise AuthUnavailableError(
                "No backend API key is configured and the request carried no Bearer token."
            )
        return {"api-key": key}


class BearerTokenCredentialResolver:
    """Caches a bearer token and refreshes it at most once per expiry window.

    Concurrent callers that find the cache stale queue on a single lock. The
    first one refreshes; the rest observe the bumped generation and reuse its
    outcome instead of issuing their own token request.
    """

    mode = "bearer_token"

    def __init__(self, token_source: TokenSource, skew_seconds: int = 60) -> None:
        self._token_source = token_source
        self._skew_seconds = skew_seconds
        self._cached: CachedToken | None = None
        self._lock = asyncio.Lock()
        self._generation = 0
        self.refresh_count = 0

    async def resolve(self, inbound_authorization: str | None) -> dict[str, str]:
        token = await self.access_token()
        return {"Authorization": f"Bearer {token}"}

    async def access_token(self) -> str:
        cached = self._cached
        if cached is not None and not _is_token_expiring(
            cached.expires_at, self._skew_seconds
        ):
            return cached.access_token

        generation = self._generation
        async with self._lock:
            cached = self._cached
            if cached is not None and not _is_token_expiring(
                cached.expires_at, self._skew_seconds
            ):
                return cached.access_token
            if generation != self._generation:
                if cached is not None:
                    return cached.access_token
                raise AuthUnavailableError("Backend access token refresh failed.")

            self.refresh_count += 1
            try:
                self._cached = await self._token_source.fetch()
            except AuthUnavailableError:
                self._cached = None
                raise
            finally:
                self._generation += 1
            return self._cached.access_token


CredentialResolver = StaticKeyCredentialResolver | BearerTokenCredentialResolver


def build_credential_resolver(
    settings: Settings,
    client_getter: Callable[[], httpx.AsyncClient],
) -> CredentialResolver:
    if settings.azure_openai_auth_mode == "api_key":
        return StaticKeyCredentialResolver(settings.azure_openai_api_key)

    token_source: TokenSource
    if settings.azure_openai_token:
        token_source = StaticTokenSource(settings.azure_openai_token)
    elif settings.client_credentials_configured:
        token_source = ClientCredentialsTokenSource(
            token_url=str(settings.token_url),
            client_id=str(settings.azure_openai_client_id),
            client_secret=str(settings.azure_openai_client_secret),
            scope=settings.azure_openai_token_scope,
            client_getter=client_getter,
        )
    else:
        token_source = _UnavailableTokenSource()
    return BearerTokenCredentialResolver(token_source)


class _UnavailableTokenSource:
    async def fetch(self) -> CachedToken:
        raise AuthUnavailableError(
            "Bearer-token auth is enabled but no token or client credentials are configured."
        )


def _bearer_value(auth_header: str | None) -> str | None:
    if not auth_header:
        return None
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _is_token_expiring(expires_at: int | None, skew_seconds: int = 60) -> bool:
    if expires_at is None:
        return False
    return expires_at <= int(time.time()) + skew_seconds


def _extract_expires_at(token_response: dict[str, Any]) -> int | None:
    now = int(time.time())

    raw_expires_in = token_response.get("expires_in")
    if raw_expires_in is not None:
        try:
            return now + int(float(raw_expires_in))
        except (TypeError, ValueError):
            pass

    raw_expires_on = token_response.get("expires_on", token_response.get("expires_at"))
    if raw_expires_on is not None:
        try:
            return int(float(raw_expires_on))
        except (TypeError, ValueError):
            pass

    return None
