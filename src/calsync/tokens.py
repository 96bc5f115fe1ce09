"""OAuth access-token lifecycle for calendar connections.

The :class:`TokenManager` checks a connection's token expiry with a safety
margin before every authenticated call and refreshes it synchronously when
needed.  Refresh failures are counted on the connection row; once the count
reaches the failure threshold the connection is deactivated, which removes
it from scheduled sweeps without touching its mirrored events.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from calsync.config import ProviderOAuthConfig
from calsync.core.metrics import record_token_refresh_failure
from calsync.errors import TokenRefreshError, sanitize_error_message
from calsync.models import CalendarConnection, ProviderName
from calsync.store import CalendarStore

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
OUTLOOK_OAUTH_TOKEN_URL_TEMPLATE = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"

DEFAULT_REFRESH_MARGIN = timedelta(minutes=5)
DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_EXPIRES_IN_SECONDS = 3600


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    refresh_token: str | None
    expires_at: datetime


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


def _safe_oauth_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        for key in ("error_description", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return sanitize_error_message(value)
            if isinstance(value, dict):
                message = value.get("message")
                if isinstance(message, str) and message.strip():
                    return sanitize_error_message(message)

    raw_text = response.text.strip()
    if raw_text:
        return sanitize_error_message(raw_text)
    return "Request failed without an error payload"


class OAuthTokenClient(abc.ABC):
    """Exchanges a refresh token for a new access token at one provider."""

    provider: ProviderName

    def __init__(self, config: ProviderOAuthConfig, http_client: httpx.AsyncClient) -> None:
        self._config = config
        self._http_client = http_client

    @property
    @abc.abstractmethod
    def token_url(self) -> str: ...

    @abc.abstractmethod
    def refresh_form(self, refresh_token: str) -> dict[str, str]: ...

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """POST the refresh grant and parse the token response.

        Raises
        ------
        TokenRefreshError
            On transport failure, a non-2xx status, or a malformed payload.
        """
        provider = str(self.provider)
        try:
            response = await self._http_client.post(
                self.token_url,
                data=self.refresh_form(refresh_token),
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TokenRefreshError(
                f"{provider} OAuth token refresh request failed: {sanitize_error_message(exc)}",
                provider=provider,
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise TokenRefreshError(
                f"{provider} OAuth token refresh failed "
                f"({response.status_code}): {_safe_oauth_error_message(response)}",
                provider=provider,
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise TokenRefreshError(
                f"{provider} OAuth token endpoint returned invalid JSON",
                provider=provider,
            ) from exc

        if not isinstance(payload, dict):
            raise TokenRefreshError(
                f"{provider} OAuth token endpoint returned an unexpected payload shape",
                provider=provider,
            )

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise TokenRefreshError(
                f"{provider} OAuth token response is missing a non-empty access_token",
                provider=provider,
            )

        new_refresh_token = payload.get("refresh_token")
        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        return TokenGrant(
            access_token=access_token.strip(),
            refresh_token=new_refresh_token.strip()
            if isinstance(new_refresh_token, str) and new_refresh_token.strip()
            else None,
            expires_at=datetime.now(UTC) + timedelta(seconds=expires_in),
        )


class GoogleTokenClient(OAuthTokenClient):
    provider = ProviderName.GOOGLE

    @property
    def token_url(self) -> str:
        return GOOGLE_OAUTH_TOKEN_URL

    def refresh_form(self, refresh_token: str) -> dict[str, str]:
        return {
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }


class OutlookTokenClient(OAuthTokenClient):
    """Microsoft identity platform v2 token endpoint.

    Posts to the configured tenant, or to ``common`` for multi-tenant apps,
    with the configured scopes joined by spaces.
    """

    provider = ProviderName.OUTLOOK

    @property
    def token_url(self) -> str:
        return OUTLOOK_OAUTH_TOKEN_URL_TEMPLATE.format(tenant=self._config.tenant_id or "common")

    def refresh_form(self, refresh_token: str) -> dict[str, str]:
        form = {
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        if self._config.scopes:
            form["scope"] = " ".join(self._config.scopes)
        return form


class TokenManager:
    """Keeps one provider's connection tokens fresh and persisted."""

    def __init__(
        self,
        store: CalendarStore,
        token_client: OAuthTokenClient,
        *,
        refresh_margin: timedelta = DEFAULT_REFRESH_MARGIN,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self._store = store
        self._token_client = token_client
        self._refresh_margin = refresh_margin
        self._failure_threshold = failure_threshold
        # connection id -> (lock, number of callers holding or awaiting it)
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    @property
    def provider(self) -> ProviderName:
        return self._token_client.provider

    def needs_refresh(self, connection: CalendarConnection, *, now: datetime | None = None) -> bool:
        """True when the access token is missing, expired, or inside the margin.

        A connection without a recorded expiry is trusted as long as it has
        an access token.
        """
        if not connection.access_token:
            return True
        if connection.token_expires_at is None:
            return False
        current = now or datetime.now(UTC)
        return connection.token_expires_at - self._refresh_margin <= current

    async def ensure_valid_token(self, connection: CalendarConnection) -> CalendarConnection:
        """Return ``connection`` with a usable access token, refreshing if needed."""
        if not self.needs_refresh(connection):
            return connection

        async with self._connection_lock(connection.id):
            # Another caller may have refreshed while this one waited.
            latest = await self._store.get_connection(connection.id) or connection
            if not self.needs_refresh(latest):
                return latest
            return await self._refresh_locked(latest)

    async def refresh(self, connection: CalendarConnection) -> CalendarConnection:
        """Refresh the access token ``connection`` was holding.

        The stored row is re-read first, so the exchange always uses the
        latest refresh token.  When the stored access token already differs
        from ``connection``'s and is still valid, some other caller has
        replaced the token and the stored row is returned as is.
        """
        async with self._connection_lock(connection.id):
            latest = await self._store.get_connection(connection.id) or connection
            if latest.access_token != connection.access_token and not self.needs_refresh(latest):
                return latest
            return await self._refresh_locked(latest)

    @asynccontextmanager
    async def _connection_lock(self, connection_id: str) -> AsyncIterator[None]:
        entry = self._locks.get(connection_id)
        lock, users = entry if entry is not None else (asyncio.Lock(), 0)
        self._locks[connection_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            _, users = self._locks[connection_id]
            if users <= 1:
                del self._locks[connection_id]
            else:
                self._locks[connection_id] = (lock, users - 1)

    async def _refresh_locked(self, connection: CalendarConnection) -> CalendarConnection:
        provider = str(self.provider)
        try:
            if not connection.refresh_token:
                raise TokenRefreshError(
                    f"{provider} connection has no refresh token; reconnect required",
                    provider=provider,
                )
            grant = await self._token_client.refresh(connection.refresh_token)
        except TokenRefreshError as exc:
            await self._record_failure(connection, exc)
            raise

        updated = await self._store.update_connection(
            connection.id,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or connection.refresh_token,
            token_expires_at=grant.expires_at,
            consecutive_failures=0,
            last_error=None,
        )
        logger.info(
            "Refreshed %s access token for connection %s (expires %s)",
            provider,
            connection.id,
            grant.expires_at.isoformat(),
        )
        return updated

    async def _record_failure(self, connection: CalendarConnection, exc: TokenRefreshError) -> None:
        record_token_refresh_failure(str(self.provider))
        updated = await self._store.record_connection_failure(
            connection.id,
            f"Token refresh failed: {sanitize_error_message(exc)}",
            deactivate_at=self._failure_threshold,
        )
        if not updated.is_active:
            logger.warning(
                "Deactivated connection %s after %d consecutive token refresh failures",
                connection.id,
                updated.consecutive_failures,
            )
        else:
            logger.warning(
                "Token refresh failed for connection %s (%d/%d): %s",
                connection.id,
                updated.consecutive_failures,
                self._failure_threshold,
                sanitize_error_message(exc),
            )
