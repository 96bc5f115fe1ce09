"""Tests for calsync.toml loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from calsync.config import (
    GOOGLE_DEFAULT_SCOPES,
    OUTLOOK_DEFAULT_SCOPES,
    ConfigError,
    load_config,
    parse_config,
    resolve_env_vars,
)
from calsync.models import ProviderName

pytestmark = pytest.mark.unit

_ENV_KEYS = (
    "DATABASE_URL",
    "POSTGRES_HOST",
    "POSTGRES_PORT",
    "POSTGRES_USER",
    "POSTGRES_PASSWORD",
    "POSTGRES_DB",
    "POSTGRES_SSLMODE",
    "GOOGLE_CALENDAR_CLIENT_ID",
    "GOOGLE_CALENDAR_CLIENT_SECRET",
    "GOOGLE_CALENDAR_REDIRECT_URI",
    "OUTLOOK_CALENDAR_CLIENT_ID",
    "OUTLOOK_CALENDAR_CLIENT_SECRET",
    "OUTLOOK_CALENDAR_REDIRECT_URI",
    "OUTLOOK_TENANT_ID",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def _write_toml(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "calsync.toml"
    path.write_text(content)
    return path


# ---------------------------------------------------------------------------
# resolve_env_vars
# ---------------------------------------------------------------------------


class TestResolveEnvVars:
    def test_nested_values(self, monkeypatch):
        monkeypatch.setenv("CAL_SECRET", "hunter2")
        data = {"providers": {"google": {"client_secret": "${CAL_SECRET}", "n": 3}}}
        assert resolve_env_vars(data) == {
            "providers": {"google": {"client_secret": "hunter2", "n": 3}}
        }

    def test_lists_are_walked(self, monkeypatch):
        monkeypatch.setenv("SCOPE", "calendar")
        assert resolve_env_vars(["a", "${SCOPE}"]) == ["a", "calendar"]

    def test_missing_variables_are_reported_together(self):
        with pytest.raises(ConfigError, match="MISSING_A, MISSING_B"):
            resolve_env_vars("${MISSING_A}:${MISSING_B}")


# ---------------------------------------------------------------------------
# Defaults and sections
# ---------------------------------------------------------------------------


class TestDefaults:
    def test_empty_document(self):
        config = parse_config({})
        assert config.database.name == "calsync"
        assert config.database.host == "localhost"
        assert config.logging.level == "INFO"
        assert config.logging.format == "text"
        assert config.sync.interval_seconds == 300
        assert config.sync.full_sync_window_days == 183
        assert config.sync.retry_max_attempts == 3
        assert config.sync.token_failure_threshold == 3
        assert config.sync.max_concurrent_syncs == 4
        assert config.providers == {}

    def test_database_falls_back_to_database_url(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgres://u:p@db.internal:6543/mirror?sslmode=require")
        config = parse_config({})
        assert config.database.host == "db.internal"
        assert config.database.port == 6543
        assert config.database.user == "u"
        assert config.database.name == "mirror"
        assert config.database.sslmode == "require"

    def test_explicit_section_wins_over_env(self, monkeypatch):
        monkeypatch.setenv("POSTGRES_HOST", "from-env")
        config = parse_config({"database": {"host": "from-file"}})
        assert config.database.host == "from-file"


class TestSyncSection:
    def test_values_are_parsed(self):
        config = parse_config(
            {
                "sync": {
                    "interval_seconds": 60,
                    "batch_size": 50,
                    "retry_base_delay_seconds": 0.5,
                    "webhook_notification_url": "https://hooks.example.com/cal",
                }
            }
        )
        assert config.sync.interval_seconds == 60
        assert config.sync.batch_size == 50
        assert config.sync.retry_base_delay_seconds == 0.5
        assert config.sync.webhook_notification_url == "https://hooks.example.com/cal"

    @pytest.mark.parametrize("value", [0, -5, "abc", True])
    def test_non_positive_integers_are_rejected(self, value):
        with pytest.raises(ConfigError, match="sync.batch_size"):
            parse_config({"sync": {"batch_size": value}})

    def test_negative_base_delay_is_rejected(self):
        with pytest.raises(ConfigError, match="retry_base_delay_seconds"):
            parse_config({"sync": {"retry_base_delay_seconds": -1}})

    def test_blank_notification_url_means_none(self):
        config = parse_config({"sync": {"webhook_notification_url": "  "}})
        assert config.sync.webhook_notification_url is None


class TestLoggingSection:
    def test_level_and_format_are_normalized(self):
        config = parse_config({"logging": {"level": "debug", "format": "JSON"}})
        assert config.logging.level == "DEBUG"
        assert config.logging.format == "json"

    def test_unknown_format_is_rejected(self):
        with pytest.raises(ConfigError, match="logging.format"):
            parse_config({"logging": {"format": "xml"}})


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class TestProviders:
    def test_google_section(self):
        config = parse_config({"providers": {"google": {"client_id": "cid", "client_secret": "s"}}})
        google = config.providers[ProviderName.GOOGLE]
        assert google.client_id == "cid"
        assert google.scopes == GOOGLE_DEFAULT_SCOPES
        assert google.tenant_id is None

    def test_outlook_tenant_and_scopes(self):
        config = parse_config(
            {
                "providers": {
                    "outlook": {
                        "client_id": "cid",
                        "client_secret": "s",
                        "tenant_id": "contoso",
                        "scopes": ["Calendars.ReadWrite", " offline_access "],
                    }
                }
            }
        )
        outlook = config.providers[ProviderName.OUTLOOK]
        assert outlook.tenant_id == "contoso"
        assert outlook.scopes == ("Calendars.ReadWrite", "offline_access")

    def test_env_credentials_fill_missing_sections(self, monkeypatch):
        monkeypatch.setenv("OUTLOOK_CALENDAR_CLIENT_ID", "env-cid")
        monkeypatch.setenv("OUTLOOK_CALENDAR_CLIENT_SECRET", "env-secret")
        monkeypatch.setenv("OUTLOOK_TENANT_ID", "fabrikam")
        config = parse_config({})
        outlook = config.providers[ProviderName.OUTLOOK]
        assert outlook.client_id == "env-cid"
        assert outlook.tenant_id == "fabrikam"
        assert outlook.scopes == OUTLOOK_DEFAULT_SCOPES
        assert ProviderName.GOOGLE not in config.providers

    def test_missing_secret_is_rejected(self):
        with pytest.raises(ConfigError, match="providers.google.client_secret"):
            parse_config({"providers": {"google": {"client_id": "cid"}}})

    def test_unknown_provider_is_rejected(self):
        with pytest.raises(ConfigError, match="caldav"):
            parse_config({"providers": {"caldav": {"client_id": "x", "client_secret": "y"}}})

    def test_scopes_must_be_strings(self):
        with pytest.raises(ConfigError, match="scopes"):
            parse_config(
                {"providers": {"google": {"client_id": "c", "client_secret": "s", "scopes": [1]}}}
            )


# ---------------------------------------------------------------------------
# load_config
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_file_with_env_reference(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GCAL_SECRET", "from-env")
        path = _write_toml(
            tmp_path,
            '[providers.google]\nclient_id = "cid"\nclient_secret = "${GCAL_SECRET}"\n',
        )
        config = load_config(path)
        assert config.providers[ProviderName.GOOGLE].client_secret == "from-env"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Config file not found"):
            load_config(tmp_path / "absent.toml")

    def test_invalid_toml(self, tmp_path):
        path = _write_toml(tmp_path, "[sync\n")
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(path)

    def test_unresolved_reference_fails_load(self, tmp_path):
        path = _write_toml(
            tmp_path,
            '[providers.google]\nclient_id = "cid"\nclient_secret = "${NOPE_NOT_SET}"\n',
        )
        with pytest.raises(ConfigError, match="NOPE_NOT_SET"):
            load_config(path)
