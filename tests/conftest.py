"""Shared unit-test fixtures: in-memory store and mock-transport services."""

from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta

import httpx
import pytest

from calsync.config import ProviderOAuthConfig
from calsync.providers.base import CalendarService
from calsync.providers.google import GoogleCalendarService
from calsync.providers.outlook import OutlookCalendarService
from calsync.testing import InMemoryCalendarStore
from calsync.tokens import GoogleTokenClient, OutlookTokenClient, TokenManager

Handler = Callable[[httpx.Request], httpx.Response]

OAUTH = ProviderOAuthConfig(client_id="cid", client_secret="secret")


@pytest.fixture
def store() -> InMemoryCalendarStore:
    return InMemoryCalendarStore()


def build_service(
    service_type: type[CalendarService],
    store: InMemoryCalendarStore,
    handler: Handler,
    *,
    batch_size: int = 100,
    failure_threshold: int = 3,
    full_sync_window: timedelta = timedelta(days=183),
) -> CalendarService:
    """Wire a provider service to ``handler`` through an httpx MockTransport."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    token_client_type = (
        OutlookTokenClient if service_type is OutlookCalendarService else GoogleTokenClient
    )
    token_manager = TokenManager(
        store,
        token_client_type(OAUTH, client),
        failure_threshold=failure_threshold,
    )
    return service_type(
        store=store,
        token_manager=token_manager,
        http_client=client,
        batch_size=batch_size,
        full_sync_window=full_sync_window,
    )


@pytest.fixture
def google_service(store):
    """Factory: ``google_service(handler, **kwargs)``."""

    def _make(handler: Handler, **kwargs) -> GoogleCalendarService:
        return build_service(GoogleCalendarService, store, handler, **kwargs)

    return _make


@pytest.fixture
def outlook_service(store):
    """Factory: ``outlook_service(handler, **kwargs)``."""

    def _make(handler: Handler, **kwargs) -> OutlookCalendarService:
        return build_service(OutlookCalendarService, store, handler, **kwargs)

    return _make
