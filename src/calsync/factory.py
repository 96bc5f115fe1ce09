"""Provider dispatch: build the right :class:`CalendarService` for a connection.

Dispatch is keyed on the connection's stored ``provider`` value.  The
factory is stateless unless the caller hands it a ``cache`` mapping, in which
case constructed services are reused from (and owned by) that mapping.
Each service carries its own :class:`TokenManager`, so concurrent callers
only share refresh locks when they share a cached service.
"""

from __future__ import annotations

import logging
from datetime import timedelta

import httpx

from calsync.config import ConfigError, ProviderOAuthConfig, SyncConfig
from calsync.models import CalendarConnection, ProviderName
from calsync.providers.base import DEFAULT_HTTP_TIMEOUT_SECONDS, CalendarService
from calsync.providers.google import GoogleCalendarService
from calsync.providers.outlook import OutlookCalendarService
from calsync.store import CalendarStore
from calsync.tokens import GoogleTokenClient, OAuthTokenClient, OutlookTokenClient, TokenManager

logger = logging.getLogger(__name__)

_SERVICE_TYPES: dict[ProviderName, tuple[type[CalendarService], type[OAuthTokenClient]]] = {
    ProviderName.GOOGLE: (GoogleCalendarService, GoogleTokenClient),
    ProviderName.OUTLOOK: (OutlookCalendarService, OutlookTokenClient),
}


class CalendarServiceFactory:
    """Construct provider services sharing one store and one HTTP client."""

    def __init__(
        self,
        *,
        store: CalendarStore,
        http_client: httpx.AsyncClient | None = None,
        google: ProviderOAuthConfig | None = None,
        outlook: ProviderOAuthConfig | None = None,
        sync: SyncConfig | None = None,
        cache: dict[ProviderName, CalendarService] | None = None,
    ) -> None:
        self._store = store
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT_SECONDS)
        self._oauth: dict[ProviderName, ProviderOAuthConfig | None] = {
            ProviderName.GOOGLE: google,
            ProviderName.OUTLOOK: outlook,
        }
        self._sync = sync or SyncConfig()
        self._cache = cache

    @classmethod
    def from_config(
        cls,
        *,
        store: CalendarStore,
        providers: dict[ProviderName, ProviderOAuthConfig],
        sync: SyncConfig,
        http_client: httpx.AsyncClient | None = None,
        cache: dict[ProviderName, CalendarService] | None = None,
    ) -> CalendarServiceFactory:
        return cls(
            store=store,
            http_client=http_client,
            google=providers.get(ProviderName.GOOGLE),
            outlook=providers.get(ProviderName.OUTLOOK),
            sync=sync,
            cache=cache,
        )

    def for_provider(self, provider: ProviderName | str) -> CalendarService:
        try:
            name = ProviderName(provider)
        except ValueError as exc:
            raise ConfigError(f"Unsupported calendar provider: {provider!r}") from exc

        if self._cache is not None and name in self._cache:
            return self._cache[name]

        oauth = self._oauth.get(name)
        if oauth is None:
            raise ConfigError(f"No OAuth client configured for provider {name!s}")

        service_type, token_client_type = _SERVICE_TYPES[name]
        token_manager = TokenManager(
            self._store,
            token_client_type(oauth, self._http_client),
            refresh_margin=timedelta(seconds=self._sync.token_refresh_margin_seconds),
            failure_threshold=self._sync.token_failure_threshold,
        )
        service = service_type(
            store=self._store,
            token_manager=token_manager,
            http_client=self._http_client,
            batch_size=self._sync.batch_size,
            full_sync_window=timedelta(days=self._sync.full_sync_window_days),
        )
        if self._cache is not None:
            self._cache[name] = service
        logger.debug("Constructed %s calendar service", name)
        return service

    def for_connection(self, connection: CalendarConnection) -> CalendarService:
        return self.for_provider(connection.provider)

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
