"""Tests for provider dispatch in CalendarServiceFactory."""

from __future__ import annotations

from datetime import timedelta

import httpx
import pytest

from calsync.config import ConfigError, ProviderOAuthConfig, SyncConfig
from calsync.factory import CalendarServiceFactory
from calsync.models import ProviderName
from calsync.providers import GoogleCalendarService, OutlookCalendarService
from calsync.testing import InMemoryCalendarStore, make_connection

pytestmark = pytest.mark.unit

OAUTH = ProviderOAuthConfig(client_id="cid", client_secret="secret")


def _factory(**kwargs) -> CalendarServiceFactory:
    kwargs.setdefault("store", InMemoryCalendarStore())
    kwargs.setdefault(
        "http_client",
        httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(204))),
    )
    return CalendarServiceFactory(**kwargs)


class TestDispatch:
    def test_dispatches_on_stored_provider(self):
        factory = _factory(google=OAUTH, outlook=OAUTH)
        google = factory.for_connection(make_connection(provider="google"))
        outlook = factory.for_connection(make_connection(provider="outlook"))
        assert isinstance(google, GoogleCalendarService)
        assert isinstance(outlook, OutlookCalendarService)

    def test_accepts_plain_provider_strings(self):
        assert isinstance(_factory(google=OAUTH).for_provider("google"), GoogleCalendarService)

    def test_unknown_provider_is_a_config_error(self):
        with pytest.raises(ConfigError, match="Unsupported calendar provider"):
            _factory(google=OAUTH).for_provider("caldav")

    def test_missing_oauth_client_is_a_config_error(self):
        with pytest.raises(ConfigError, match="No OAuth client configured for provider outlook"):
            _factory(google=OAUTH).for_provider(ProviderName.OUTLOOK)

    def test_sync_tuning_reaches_the_service(self):
        factory = _factory(
            google=OAUTH,
            sync=SyncConfig(batch_size=7, full_sync_window_days=30),
        )
        service = factory.for_provider("google")
        assert service._batch_size == 7
        assert service._full_sync_window == timedelta(days=30)


class TestCaching:
    def test_without_cache_each_call_builds_a_service(self):
        factory = _factory(google=OAUTH)
        assert factory.for_provider("google") is not factory.for_provider("google")

    def test_cache_reuses_services(self):
        cache: dict = {}
        factory = _factory(google=OAUTH, cache=cache)
        service = factory.for_provider("google")
        assert factory.for_provider(ProviderName.GOOGLE) is service
        assert cache == {ProviderName.GOOGLE: service}

    def test_from_config_maps_providers(self):
        factory = CalendarServiceFactory.from_config(
            store=InMemoryCalendarStore(),
            providers={ProviderName.OUTLOOK: OAUTH},
            sync=SyncConfig(),
        )
        assert isinstance(factory.for_provider("outlook"), OutlookCalendarService)
        with pytest.raises(ConfigError):
            factory.for_provider("google")


class TestClientOwnership:
    async def test_injected_client_is_left_open(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(204)))
        factory = _factory(google=OAUTH, http_client=client)
        await factory.aclose()
        assert client.is_closed is False
        await client.aclose()

    async def test_owned_client_is_closed(self):
        factory = CalendarServiceFactory(store=InMemoryCalendarStore(), google=OAUTH)
        await factory.aclose()
        assert factory._http_client.is_closed is True
