"""Delta sync configuration loading and validation.

Reads a TOML file, resolves ``${VAR_NAME}`` references against the
environment, parses every section, and returns a validated
:class:`DeltaSyncConfig`.  Every section is optional::

    [logging]
    level = "INFO"
    format = "json"

    [rate_limit]
    max_per_second = 4
    max_per_ten_minutes = 10000

    [backoff]
    max_retries = 3
    base_delay_s = 1.0

    [fetcher]
    base_url = "https://graph.microsoft.com/v1.0"
    inter_page_delay_s = 0.2

    [fetcher.feed_paths]
    calendar = "/me/events/delta"

    [engine]
    initial_window_days = 30
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# Matches ${VAR_NAME} references (alphanumerics and underscores).
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

DEFAULT_GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
# Provider Retry-After hints below this floor are raised to it.
DEFAULT_MIN_RETRY_AFTER_SECONDS = 5.0
DEFAULT_MAX_REQUESTS_PER_SECOND = 4
DEFAULT_MAX_REQUESTS_PER_TEN_MINUTES = 10_000
DEFAULT_INACTIVE_THRESHOLD_SECONDS = 30 * 60
DEFAULT_SWEEP_INTERVAL_SECONDS = 5 * 60
DEFAULT_MAX_POLL_INTERVAL_SECONDS = 1.0

RESOURCE_TYPES = ("calendar", "email")
DEFAULT_FEED_PATHS: dict[str, str] = {
    "calendar": "/me/events/delta",
    "email": "/me/mailFolders/inbox/messages/delta",
}
DEFAULT_DETAIL_PATHS: dict[str, str] = {
    "calendar": "/me/events/{id}",
}


class ConfigError(Exception):
    """Raised when delta sync configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class RateLimitConfig:
    """Per-account quota configuration from [rate_limit] section."""

    max_per_second: int = DEFAULT_MAX_REQUESTS_PER_SECOND
    max_per_ten_minutes: int = DEFAULT_MAX_REQUESTS_PER_TEN_MINUTES
    inactive_threshold_s: float = DEFAULT_INACTIVE_THRESHOLD_SECONDS
    sweep_interval_s: float = DEFAULT_SWEEP_INTERVAL_SECONDS
    max_poll_interval_s: float = DEFAULT_MAX_POLL_INTERVAL_SECONDS


@dataclass
class BackoffConfig:
    """Retry configuration from [backoff] section."""

    max_retries: int = 3
    base_delay_s: float = 1.0
    max_delay_s: float | None = None


@dataclass
class FetcherConfig:
    """Change-feed HTTP configuration from [fetcher] section.

    ``detail_paths`` maps a resource type to a per-item lookup template
    (``{id}`` is substituted).  Resource types without a template use the
    delta payload as-is.
    """

    base_url: str = DEFAULT_GRAPH_BASE_URL
    inter_page_delay_s: float = 0.2
    request_timeout_s: float = 30.0
    connect_timeout_s: float = 10.0
    max_page_size: int | None = None
    min_retry_after_s: float = DEFAULT_MIN_RETRY_AFTER_SECONDS
    feed_paths: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_FEED_PATHS))
    detail_paths: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_DETAIL_PATHS))


@dataclass
class EngineConfig:
    """Sync engine configuration from [engine] section.

    ``initial_window_days`` bounds cold-start imports to
    ``[now - window_lookback_s, now + initial_window_days]`` when the caller
    does not pass an explicit window.
    """

    initial_window_days: int | None = None
    window_lookback_s: float = 60.0


@dataclass
class DeltaSyncConfig:
    """Parsed and validated delta sync configuration."""

    logging: LoggingConfig = field(default_factory=LoggingConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    fetcher: FetcherConfig = field(default_factory=FetcherConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

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
        raise ConfigError(f"[{name}] must be a table")
    return section


def _number(section: dict[str, Any], key: str, default: float, *, name: str) -> float:
    raw = section.get(key, default)
    if isinstance(raw, bool):
        raise ConfigError(f"{name}.{key} must be a number, got {raw!r}")
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name}.{key} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ConfigError(f"{name}.{key} must be >= 0, got {value}")
    return value


def _integer(section: dict[str, Any], key: str, default: int, *, name: str, minimum: int) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool):
        raise ConfigError(f"{name}.{key} must be an integer, got {raw!r}")
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name}.{key} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ConfigError(f"{name}.{key} must be >= {minimum}, got {value}")
    return value


def _path_map(section: dict[str, Any], key: str, default: dict[str, str]) -> dict[str, str]:
    raw = section.get(key)
    if raw is None:
        return dict(default)
    if not isinstance(raw, dict):
        raise ConfigError(f"fetcher.{key} must be a table")
    merged = dict(default)
    valid = set(RESOURCE_TYPES)
    for resource, path in raw.items():
        if resource not in valid:
            raise ConfigError(
                f"fetcher.{key} has unknown resource type {resource!r} "
                f"(expected one of: {', '.join(sorted(valid))})"
            )
        if not isinstance(path, str):
            raise ConfigError(f"fetcher.{key}.{resource} must be a string")
        normalized = path.strip()
        if normalized:
            merged[resource] = normalized if normalized.startswith("/") else f"/{normalized}"
        else:
            merged.pop(resource, None)
    return merged


def _parse_logging(data: dict[str, Any]) -> LoggingConfig:
    section = _section(data, "logging")
    level = str(section.get("level", "INFO")).upper()
    fmt = str(section.get("format", "text")).lower()
    if fmt not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {fmt!r}. Must be 'text' or 'json'.")
    log_root = section.get("log_root")
    return LoggingConfig(
        level=level,
        format=fmt,
        log_root=str(log_root) if log_root is not None else None,
    )


def _parse_rate_limit(data: dict[str, Any]) -> RateLimitConfig:
    section = _section(data, "rate_limit")
    name = "rate_limit"
    return RateLimitConfig(
        max_per_second=_integer(
            section, "max_per_second", DEFAULT_MAX_REQUESTS_PER_SECOND, name=name, minimum=1
        ),
        max_per_ten_minutes=_integer(
            section,
            "max_per_ten_minutes",
            DEFAULT_MAX_REQUESTS_PER_TEN_MINUTES,
            name=name,
            minimum=1,
        ),
        inactive_threshold_s=_number(
            section, "inactive_threshold_s", DEFAULT_INACTIVE_THRESHOLD_SECONDS, name=name
        ),
        sweep_interval_s=_number(
            section, "sweep_interval_s", DEFAULT_SWEEP_INTERVAL_SECONDS, name=name
        ),
        max_poll_interval_s=_number(
            section, "max_poll_interval_s", DEFAULT_MAX_POLL_INTERVAL_SECONDS, name=name
        ),
    )


def _parse_backoff(data: dict[str, Any]) -> BackoffConfig:
    section = _section(data, "backoff")
    max_delay = section.get("max_delay_s")
    return BackoffConfig(
        max_retries=_integer(section, "max_retries", 3, name="backoff", minimum=0),
        base_delay_s=_number(section, "base_delay_s", 1.0, name="backoff"),
        max_delay_s=(
            _number(section, "max_delay_s", 0.0, name="backoff") if max_delay is not None else None
        ),
    )


def _parse_fetcher(data: dict[str, Any]) -> FetcherConfig:
    section = _section(data, "fetcher")
    name = "fetcher"
    base_url = str(section.get("base_url", DEFAULT_GRAPH_BASE_URL)).strip().rstrip("/")
    if not base_url.startswith(("http://", "https://")):
        raise ConfigError(f"fetcher.base_url must be an http(s) URL, got {base_url!r}")
    max_page_size = section.get("max_page_size")
    return FetcherConfig(
        base_url=base_url,
        inter_page_delay_s=_number(section, "inter_page_delay_s", 0.2, name=name),
        request_timeout_s=_number(section, "request_timeout_s", 30.0, name=name),
        connect_timeout_s=_number(section, "connect_timeout_s", 10.0, name=name),
        max_page_size=(
            _integer(section, "max_page_size", 0, name=name, minimum=1)
            if max_page_size is not None
            else None
        ),
        min_retry_after_s=_number(
            section, "min_retry_after_s", DEFAULT_MIN_RETRY_AFTER_SECONDS, name=name
        ),
        feed_paths=_path_map(section, "feed_paths", DEFAULT_FEED_PATHS),
        detail_paths=_path_map(section, "detail_paths", DEFAULT_DETAIL_PATHS),
    )


def _parse_engine(data: dict[str, Any]) -> EngineConfig:
    section = _section(data, "engine")
    window_days = section.get("initial_window_days")
    return EngineConfig(
        initial_window_days=(
            _integer(section, "initial_window_days", 0, name="engine", minimum=1)
            if window_days is not None
            else None
        ),
        window_lookback_s=_number(section, "window_lookback_s", 60.0, name="engine"),
    )


def parse_config(data: dict[str, Any]) -> DeltaSyncConfig:
    """Build a :class:`DeltaSyncConfig` from already-decoded TOML data."""
    data = resolve_env_vars(data)
    return DeltaSyncConfig(
        logging=_parse_logging(data),
        rate_limit=_parse_rate_limit(data),
        backoff=_parse_backoff(data),
        fetcher=_parse_fetcher(data),
        engine=_parse_engine(data),
    )


def load_config(path: Path) -> DeltaSyncConfig:
    """Load and validate a delta sync TOML file.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or has invalid values.
    """
    toml_path = Path(path)
    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
