"""Tests for the calsync CLI commands."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

import httpx
import pytest
from click.testing import CliRunner

import calsync.cli as cli_module
from calsync.cli import _Runtime, cli
from calsync.factory import CalendarServiceFactory
from calsync.models import ExternalCalendarEvent
from calsync.sync import SyncOrchestrator
from calsync.testing import InMemoryCalendarStore, make_connection

pytestmark = pytest.mark.unit

CONFIG_TOML = """
[database]
name = "calsync_test"

[sync]
cleanup_older_than_days = 10

[providers.google]
client_id = "cid"
client_secret = "secret"
"""

KICKOFF = {
    "id": "evt-kickoff",
    "summary": "Kickoff",
    "start": {"dateTime": "2030-03-01T09:00:00Z"},
    "end": {"dateTime": "2030-03-01T09:30:00Z"},
}


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def _restore_root_logging():
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "calsync.toml"
    path.write_text(CONFIG_TOML)
    return path


@pytest.fixture
def memory_store():
    return InMemoryCalendarStore()


@pytest.fixture
def fake_runtime(monkeypatch, memory_store):
    """Swap the Postgres-backed runtime for an in-memory one.

    Returns a dict whose ``handler`` entry answers provider HTTP calls.
    """
    state = {
        "handler": lambda request: httpx.Response(
            200, json={"items": [KICKOFF], "nextSyncToken": "sync-1"}
        )
    }

    @asynccontextmanager
    async def _runtime(config):
        factory = CalendarServiceFactory.from_config(
            store=memory_store,
            providers=config.providers,
            sync=config.sync,
            http_client=httpx.AsyncClient(
                transport=httpx.MockTransport(lambda request: state["handler"](request))
            ),
            cache={},
        )

        async def _no_sleep(delay: float) -> None:
            return None

        yield _Runtime(
            db=None,
            store=memory_store,
            factory=factory,
            orchestrator=SyncOrchestrator(
                store=memory_store, factory=factory, config=config.sync, sleep=_no_sleep
            ),
        )

    monkeypatch.setattr(cli_module, "_runtime", _runtime)
    return state


class TestVersion:
    def test_version_flag(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestConfigErrors:
    def test_missing_config_exits_2(self, runner, tmp_path):
        result = runner.invoke(cli, ["sync", "--config", str(tmp_path / "absent.toml")])
        assert result.exit_code == 2
        assert "Configuration error" in result.output

    def test_invalid_config_exits_2(self, runner, tmp_path):
        path = tmp_path / "calsync.toml"
        path.write_text('[logging]\nformat = "xml"\n')
        result = runner.invoke(cli, ["sync", "--config", str(path)])
        assert result.exit_code == 2
        assert "logging.format" in result.output


class TestSyncCommand:
    def test_full_requires_connection_id(self, runner, config_file):
        result = runner.invoke(cli, ["sync", "--full", "--config", str(config_file)])
        assert result.exit_code == 2
        assert "--full requires CONNECTION_ID" in result.output

    def test_single_connection(self, runner, config_file, fake_runtime, memory_store):
        memory_store.add_connection(make_connection("conn-1"))

        result = runner.invoke(cli, ["sync", "conn-1", "--full", "--config", str(config_file)])

        assert result.exit_code == 0, result.output
        assert "full sync of conn-1: 1 updated, 0 deleted" in result.output
        assert len(memory_store.events_for("conn-1")) == 1

    def test_single_connection_failure_exits_1(
        self, runner, config_file, fake_runtime, memory_store
    ):
        memory_store.add_connection(make_connection("conn-1"))
        fake_runtime["handler"] = lambda request: httpx.Response(
            403, json={"error": {"message": "forbidden"}}
        )

        result = runner.invoke(cli, ["sync", "conn-1", "--config", str(config_file)])

        assert result.exit_code == 1
        assert "Sync failed (PERMISSION_DENIED)" in result.output

    def test_sweep_reports_counts(self, runner, config_file, fake_runtime, memory_store):
        memory_store.add_connection(make_connection("conn-a", calendar_id="cal-a"))
        memory_store.add_connection(make_connection("conn-b", calendar_id="cal-b"))

        def handler(request: httpx.Request) -> httpx.Response:
            if "/calendars/cal-b/" in request.url.path:
                return httpx.Response(404, json={"error": {"message": "gone"}})
            return httpx.Response(200, json={"items": [], "nextSyncToken": "sync-1"})

        fake_runtime["handler"] = handler

        result = runner.invoke(cli, ["sync", "--config", str(config_file)])

        assert result.exit_code == 1
        assert "Synced 1 connection(s), 1 failed, 0 skipped" in result.output
        assert "failed: conn-b: NOT_FOUND" in result.output


class TestCleanupCommand:
    def test_default_age_comes_from_config(
        self, runner, config_file, fake_runtime, memory_store
    ):
        memory_store.add_connection(make_connection("conn-1"))
        now = datetime.now(UTC)
        for event_id, days_ago in (("old", 20), ("new", 5)):
            start = now - timedelta(days=days_ago)
            memory_store.events[("conn-1", event_id)] = ExternalCalendarEvent(
                connection_id="conn-1",
                provider_event_id=event_id,
                provider_calendar_id="primary",
                start_time=start,
                end_time=start + timedelta(hours=1),
            )

        result = runner.invoke(cli, ["cleanup", "conn-1", "--config", str(config_file)])

        assert result.exit_code == 0, result.output
        assert "Removed 1 event(s) older than 10 day(s)" in result.output
        assert [e.provider_event_id for e in memory_store.events_for("conn-1")] == ["new"]

    def test_negative_age_is_rejected(self, runner, config_file):
        result = runner.invoke(
            cli, ["cleanup", "conn-1", "--older-than-days", "-1", "--config", str(config_file)]
        )
        assert result.exit_code == 2


class TestValidateCommand:
    def test_valid_connection(self, runner, config_file, fake_runtime, memory_store):
        memory_store.add_connection(make_connection("conn-1"))
        fake_runtime["handler"] = lambda request: httpx.Response(200, json={"items": []})

        result = runner.invoke(cli, ["validate", "conn-1", "--config", str(config_file)])

        assert result.exit_code == 0, result.output
        assert "Connection conn-1 is valid" in result.output

    def test_rejected_connection(self, runner, config_file, fake_runtime, memory_store):
        memory_store.add_connection(make_connection("conn-1"))
        fake_runtime["handler"] = lambda request: httpx.Response(
            403, json={"error": {"message": "forbidden"}}
        )

        result = runner.invoke(cli, ["validate", "conn-1", "--config", str(config_file)])

        assert result.exit_code == 1
        assert "NOT valid" in result.output

    def test_unknown_connection(self, runner, config_file, fake_runtime):
        result = runner.invoke(cli, ["validate", "missing", "--config", str(config_file)])
        assert result.exit_code == 1
        assert "missing" in result.output
