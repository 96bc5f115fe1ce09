"""calsync configuration loading and validation.

Reads ``calsync.toml``, resolves ``${VAR}`` references from the environment,
parses every section and returns a validated :class:`CalsyncConfig`.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from calsync.db import db_params_from_env, normalize_ssl_mode
from calsync.models import ProviderName

DEFAULT_CONFIG_PATH = Path("calsync.toml")

GOOGLE_DEFAULT_SCOPES: tuple[str, ...] = ("https://www.googleapis.com/auth/calendar",)
OUTLOOK_DEFAULT_SCOPES: tuple[str, ...] = (
    "https://graph.microsoft.com/calendars.readwrite",
    "offline_access",
)

_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

_PROVIDER_ENV_PREFIX = {
    ProviderName.GOOGLE: "GOOGLE_CALENDAR",
    ProviderName.OUTLOOK: "OUTLOOK_CALENDAR",
}


class ConfigError(Exception):
    """Raised when calsync configuration is missing, malformed, or invalid."""


@dataclass
class DatabaseConfig:
    """Connection settings from the [database] section."""

    name: str = "calsync"
    host: str = "localhost"
    port: int = 5432
    user: str = "calsync"
    password: str = "calsync"
    sslmode: str | None = None
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class SyncConfig:
    """Sync engine tuning from the [sync] section."""

    interval_seconds: int = 300
    batch_size: int = 100
    full_sync_window_days: int = 183
    cleanup_older_than_days: int = 30
    max_sync_duration_seconds: int = 600
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    token_refresh_margin_seconds: int = 300
    token_failure_threshold: int = 3
    webhook_renewal_margin_hours: int = 24
    max_concurrent_syncs: int = 4
    webhook_notification_url: str | None = None


@dataclass(frozen=True)
class ProviderOAuthConfig:
    """OAuth client settings for one provider.

    Supplied at construction time; nothing in the engine hard-codes client
    credentials.  ``tenant_id`` is only meaningful for Outlook, where ``None``
    selects the multi-tenant ``common`` endpoint.
    """

    client_id: str
    client_secret: str
    redirect_uri: str | None = None
    scopes: tuple[str, ...] = ()
    tenant_id: str | None = None


@dataclass
class CalsyncConfig:
    """Parsed and validated calsync configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    providers: dict[ProviderName, ProviderOAuthConfig] = field(default_factory=dict)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values are returned
    unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a TOML table")
    return section


def _positive_int(section: dict[str, Any], key: str, default: int, *, path: str) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool):
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive integer.")
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive integer.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive integer.")
    return value


def _parse_database(data: dict[str, Any]) -> DatabaseConfig:
    """Parse [database], falling back to DATABASE_URL / POSTGRES_* for unset keys."""
    section = _section(data, "database")
    env = db_params_from_env()
    sslmode_raw = section.get("sslmode", env["ssl"])
    config = DatabaseConfig(
        name=str(section.get("name", env["db_name"])).strip(),
        host=str(section.get("host", env["host"])),
        port=_positive_int(section, "port", int(env["port"] or 5432), path="database"),
        user=str(section.get("user", env["user"])),
        password=str(section.get("password", env["password"])),
        sslmode=normalize_ssl_mode(sslmode_raw) if isinstance(sslmode_raw, str) else None,
        min_pool_size=_positive_int(section, "min_pool_size", 2, path="database"),
        max_pool_size=_positive_int(section, "max_pool_size", 10, path="database"),
    )
    if not config.name:
        raise ConfigError("database.name must be a non-empty string")
    if config.min_pool_size > config.max_pool_size:
        raise ConfigError("database.min_pool_size must not exceed database.max_pool_size")
    return config


def _parse_logging(data: dict[str, Any]) -> LoggingConfig:
    section = _section(data, "logging")
    log_level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Must be 'text' or 'json'.")
    log_root = section.get("log_root")
    return LoggingConfig(
        level=log_level,
        format=log_format,
        log_root=str(log_root) if log_root else None,
    )


def _parse_sync(data: dict[str, Any]) -> SyncConfig:
    section = _section(data, "sync")
    defaults = SyncConfig()

    base_delay_raw = section.get("retry_base_delay_seconds", defaults.retry_base_delay_seconds)
    try:
        base_delay = float(base_delay_raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(
            f"Invalid sync.retry_base_delay_seconds: {base_delay_raw!r}. Must be a number."
        ) from exc
    if base_delay < 0:
        raise ConfigError("sync.retry_base_delay_seconds must not be negative")

    notification_url = section.get("webhook_notification_url")
    if notification_url is not None and not str(notification_url).strip():
        notification_url = None

    int_fields = {
        name: _positive_int(section, name, getattr(defaults, name), path="sync")
        for name in (
            "interval_seconds",
            "batch_size",
            "full_sync_window_days",
            "cleanup_older_than_days",
            "max_sync_duration_seconds",
            "retry_max_attempts",
            "token_refresh_margin_seconds",
            "token_failure_threshold",
            "webhook_renewal_margin_hours",
            "max_concurrent_syncs",
        )
    }
    return SyncConfig(
        **int_fields,
        retry_base_delay_seconds=base_delay,
        webhook_notification_url=str(notification_url) if notification_url else None,
    )


def _provider_from_env(provider: ProviderName) -> ProviderOAuthConfig | None:
    prefix = _PROVIDER_ENV_PREFIX[provider]
    client_id = os.environ.get(f"{prefix}_CLIENT_ID")
    client_secret = os.environ.get(f"{prefix}_CLIENT_SECRET")
    if not client_id or not client_secret:
        return None
    return ProviderOAuthConfig(
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=os.environ.get(f"{prefix}_REDIRECT_URI") or None,
        scopes=default_scopes(provider),
        tenant_id=(
            os.environ.get("OUTLOOK_TENANT_ID") or None
            if provider == ProviderName.OUTLOOK
            else None
        ),
    )


def default_scopes(provider: ProviderName) -> tuple[str, ...]:
    if provider == ProviderName.OUTLOOK:
        return OUTLOOK_DEFAULT_SCOPES
    return GOOGLE_DEFAULT_SCOPES


def _parse_provider(provider: ProviderName, section: Any) -> ProviderOAuthConfig:
    path = f"providers.{provider}"
    if not isinstance(section, dict):
        raise ConfigError(f"[{path}] must be a TOML table")

    values: dict[str, str] = {}
    for key in ("client_id", "client_secret"):
        raw = section.get(key)
        if not isinstance(raw, str) or not raw.strip():
            raise ConfigError(f"{path}.{key} must be a non-empty string")
        values[key] = raw.strip()

    scopes_raw = section.get("scopes")
    if scopes_raw is None:
        scopes = default_scopes(provider)
    elif isinstance(scopes_raw, list) and all(isinstance(s, str) for s in scopes_raw):
        scopes = tuple(s.strip() for s in scopes_raw if s.strip())
    else:
        raise ConfigError(f"{path}.scopes must be a list of strings")

    redirect_uri = section.get("redirect_uri")
    tenant_id = section.get("tenant_id") if provider == ProviderName.OUTLOOK else None
    return ProviderOAuthConfig(
        client_id=values["client_id"],
        client_secret=values["client_secret"],
        redirect_uri=str(redirect_uri) if redirect_uri else None,
        scopes=scopes,
        tenant_id=str(tenant_id) if tenant_id else None,
    )


def _parse_providers(data: dict[str, Any]) -> dict[ProviderName, ProviderOAuthConfig]:
    section = _section(data, "providers")
    unknown = sorted(set(section) - {p.value for p in ProviderName})
    if unknown:
        raise ConfigError(f"Unknown provider section(s): {', '.join(unknown)}")

    providers: dict[ProviderName, ProviderOAuthConfig] = {}
    for provider in ProviderName:
        if provider.value in section:
            providers[provider] = _parse_provider(provider, section[provider.value])
            continue
        from_env = _provider_from_env(provider)
        if from_env is not None:
            providers[provider] = from_env
    return providers


def parse_config(data: dict[str, Any]) -> CalsyncConfig:
    """Validate an already-parsed TOML mapping."""
    data = resolve_env_vars(data)
    return CalsyncConfig(
        database=_parse_database(data),
        logging=_parse_logging(data),
        sync=_parse_sync(data),
        providers=_parse_providers(data),
    )


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> CalsyncConfig:
    """Load and validate ``calsync.toml`` from *path*.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or holds invalid values.
    """
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    return parse_config(data)
