"""Engine configuration loading and validation.

Reads an optional ``matterflow.toml``, resolves ``${VAR}`` references, applies
environment overrides and returns a validated ``Settings`` dataclass.

Example::

    [matterflow]
    db_name = "matterflow"
    port = 8080

    [matterflow.sync]
    lookback_days = 30
    cron = "*/15 * * * *"

    [matterflow.google]
    client_id = "${GOOGLE_CLIENT_ID}"
"""

from __future__ import annotations

import os
import re
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from croniter import croniter

# Pattern matching ${VAR_NAME}
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_VALID_LOG_FORMATS = ("text", "json")

DEFAULT_CONFIG_FILENAME = "matterflow.toml"


class ConfigError(Exception):
    """Raised when engine configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [matterflow.logging]."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class GoogleSettings:
    """OAuth client credentials shared by every practice."""

    client_id: str | None = None
    client_secret: str | None = None
    token_url: str = "https://oauth2.googleapis.com/token"
    calendar_base_url: str = "https://www.googleapis.com/calendar/v3"
    drive_base_url: str = "https://www.googleapis.com/drive/v3"
    drive_upload_url: str = "https://www.googleapis.com/upload/drive/v3"

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass
class SyncSettings:
    """Sync engine tuning from [matterflow.sync]."""

    lookback_days: int = 30
    inter_item_delay_seconds: float = 0.5
    request_timeout_seconds: float = 30.0
    transient_retries: int = 1
    retry_backoff_seconds: float = 1.0
    max_retry_after_seconds: float = 10.0
    precreate_lookup: bool = True
    push_batch_limit: int = 50
    cron: str = "*/15 * * * *"
    folder_claim_timeout_seconds: float = 300.0


@dataclass(frozen=True)
class RateLimitRule:
    max_requests: int
    window_seconds: float

    @property
    def window_ms(self) -> int:
        return int(self.window_seconds * 1000)


@dataclass
class RateLimitSettings:
    """Rate-limit presets from [matterflow.rate_limits]."""

    cron: RateLimitRule = field(default_factory=lambda: RateLimitRule(10, 60))
    upload: RateLimitRule = field(default_factory=lambda: RateLimitRule(20, 60))
    provider: RateLimitRule = field(default_factory=lambda: RateLimitRule(60, 60))


@dataclass
class Settings:
    """Parsed and validated engine configuration."""

    db_name: str = "matterflow"
    host: str = "0.0.0.0"
    port: int = 8080
    cron_secret: str | None = None
    service_token: str | None = None
    google: GoogleSettings = field(default_factory=GoogleSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)
    rate_limits: RateLimitSettings = field(default_factory=RateLimitSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def upload_token(self) -> str | None:
        """Bearer secret for the matter folder/document endpoints."""
        return self.service_token or self.cron_secret


def resolve_env_vars(value: Any, env: Mapping[str, str] | None = None) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    env = os.environ if env is None else env
    if isinstance(value, dict):
        return {k: resolve_env_vars(v, env) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_env_vars(item, env) for item in value]
    if isinstance(value, str):
        return _resolve_string(value, env)
    return value


def _resolve_string(s: str, env: Mapping[str, str]) -> str:
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = env.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)
    if missing:
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {', '.join(missing)}"
        )
    return result


def _positive_int(section: dict, key: str, default: int, path: str) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < 1:
        raise ConfigError(f"{path}.{key} must be a positive integer, got {raw!r}")
    return raw


def _non_negative_float(section: dict, key: str, default: float, path: str) -> float:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int | float) or raw < 0:
        raise ConfigError(f"{path}.{key} must be a non-negative number, got {raw!r}")
    return float(raw)


def _parse_sync(section: dict) -> SyncSettings:
    path = "matterflow.sync"
    defaults = SyncSettings()
    cron = section.get("cron", defaults.cron)
    if not isinstance(cron, str) or not croniter.is_valid(cron):
        raise ConfigError(f"{path}.cron must be a valid cron expression, got {cron!r}")

    transient_retries = section.get("transient_retries", defaults.transient_retries)
    if isinstance(transient_retries, bool) or transient_retries not in (0, 1):
        raise ConfigError(f"{path}.transient_retries must be 0 or 1, got {transient_retries!r}")

    precreate_lookup = section.get("precreate_lookup", defaults.precreate_lookup)
    if not isinstance(precreate_lookup, bool):
        raise ConfigError(f"{path}.precreate_lookup must be a boolean")

    timeout = _non_negative_float(
        section, "request_timeout_seconds", defaults.request_timeout_seconds, path
    )
    if timeout == 0:
        raise ConfigError(f"{path}.request_timeout_seconds must be greater than zero")

    return SyncSettings(
        lookback_days=_positive_int(section, "lookback_days", defaults.lookback_days, path),
        inter_item_delay_seconds=_non_negative_float(
            section, "inter_item_delay_seconds", defaults.inter_item_delay_seconds, path
        ),
        request_timeout_seconds=timeout,
        transient_retries=transient_retries,
        retry_backoff_seconds=_non_negative_float(
            section, "retry_backoff_seconds", defaults.retry_backoff_seconds, path
        ),
        max_retry_after_seconds=_non_negative_float(
            section, "max_retry_after_seconds", defaults.max_retry_after_seconds, path
        ),
        precreate_lookup=precreate_lookup,
        push_batch_limit=_positive_int(
            section, "push_batch_limit", defaults.push_batch_limit, path
        ),
        cron=cron,
        folder_claim_timeout_seconds=_non_negative_float(
            section,
            "folder_claim_timeout_seconds",
            defaults.folder_claim_timeout_seconds,
            path,
        ),
    )


def _parse_rate_limits(section: dict) -> RateLimitSettings:
    settings = RateLimitSettings()
    for name in ("cron", "upload", "provider"):
        raw = section.get(name)
        if raw is None:
            continue
        path = f"matterflow.rate_limits.{name}"
        if not isinstance(raw, dict):
            raise ConfigError(f"{path} must be a table")
        default: RateLimitRule = getattr(settings, name)
        window = _non_negative_float(raw, "window_seconds", default.window_seconds, path)
        if window == 0:
            raise ConfigError(f"{path}.window_seconds must be greater than zero")
        rule = RateLimitRule(
            max_requests=_positive_int(raw, "max_requests", default.max_requests, path),
            window_seconds=window,
        )
        setattr(settings, name, rule)
    return settings


def _parse_logging(section: dict, env: Mapping[str, str]) -> LoggingConfig:
    level = env.get("MATTERFLOW_LOG_LEVEL") or section.get("level", "INFO")
    fmt = env.get("MATTERFLOW_LOG_FORMAT") or section.get("format", "text")
    if fmt not in _VALID_LOG_FORMATS:
        raise ConfigError(f"matterflow.logging.format must be one of {_VALID_LOG_FORMATS}")
    return LoggingConfig(level=str(level).upper(), format=fmt, log_root=section.get("log_root"))


def load_settings(
    config_path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> Settings:
    """Load settings from an optional TOML file plus environment overrides.

    Parameters
    ----------
    config_path:
        Path to a TOML file. When ``None`` the ``MATTERFLOW_CONFIG`` variable
        is consulted; if that is unset only defaults and environment apply.
    env:
        Environment mapping, ``os.environ`` by default.

    Raises
    ------
    ConfigError
        If the file is missing or malformed, or a value is invalid.
    """
    env = os.environ if env is None else env
    if config_path is None and env.get("MATTERFLOW_CONFIG"):
        config_path = Path(env["MATTERFLOW_CONFIG"])

    data: dict[str, Any] = {}
    if config_path is not None:
        config_path = Path(config_path)
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")
        try:
            data = tomllib.loads(config_path.read_text())
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc
        data = resolve_env_vars(data, env)

    section = data.get("matterflow", {})
    if not isinstance(section, dict):
        raise ConfigError("[matterflow] must be a table")

    port = section.get("port", 8080)
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise ConfigError(f"matterflow.port must be a valid TCP port, got {port!r}")

    db_name = section.get("db_name", "matterflow")
    if not isinstance(db_name, str) or not db_name.strip():
        raise ConfigError("matterflow.db_name must be a non-empty string")

    google_section = section.get("google", {})
    google = GoogleSettings(
        client_id=env.get("GOOGLE_CLIENT_ID") or google_section.get("client_id"),
        client_secret=env.get("GOOGLE_CLIENT_SECRET") or google_section.get("client_secret"),
    )
    for key in ("token_url", "calendar_base_url", "drive_base_url", "drive_upload_url"):
        if key in google_section:
            setattr(google, key, str(google_section[key]).rstrip("/"))

    return Settings(
        db_name=db_name.strip(),
        host=str(section.get("host", "0.0.0.0")),
        port=port,
        cron_secret=env.get("CRON_SECRET") or section.get("cron_secret") or None,
        service_token=env.get("SERVICE_TOKEN") or section.get("service_token") or None,
        google=google,
        sync=_parse_sync(section.get("sync", {})),
        rate_limits=_parse_rate_limits(section.get("rate_limits", {})),
        logging=_parse_logging(section.get("logging", {}), env),
    )
