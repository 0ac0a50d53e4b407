"""Runtime configuration and credential-file path resolution.

Everything is driven by environment variables so the layer can be embedded
in any host process.  ``load_settings()`` reads them once and returns a
validated :class:`CalbridgeSettings`.

Credential path priority:

1. ``CALBRIDGE_TOKEN_PATH`` (explicit override)
2. ``$XDG_CONFIG_HOME/calbridge/tokens.json``
3. the OS default config directory (``%APPDATA%`` on Windows,
   ``~/Library/Application Support`` on macOS, ``~/.config`` elsewhere)
"""

from __future__ import annotations

import os
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from calbridge.accounts import DEFAULT_ALIAS, validate_alias
from calbridge.errors import InvalidAliasError

APP_DIR_NAME = "calbridge"
TOKEN_FILE_NAME = "tokens.json"
LEGACY_TOKEN_FILE_NAME = ".gcp-saved-tokens.json"
OAUTH_KEYS_FILE_NAME = "gcp-oauth.keys.json"

ENV_TOKEN_PATH = "CALBRIDGE_TOKEN_PATH"
ENV_XDG_CONFIG_HOME = "XDG_CONFIG_HOME"
ENV_LEGACY_TOKEN_PATH = "CALBRIDGE_LEGACY_TOKEN_PATH"
ENV_OAUTH_CREDENTIALS = "GOOGLE_OAUTH_CREDENTIALS"
ENV_ACCOUNT_MODE = "CALBRIDGE_ACCOUNT_MODE"
ENV_CALENDAR_CACHE_TTL = "CALBRIDGE_CALENDAR_CACHE_TTL"
ENV_FETCH_TIMEOUT = "CALBRIDGE_FETCH_TIMEOUT"
ENV_WRITE_UNIT_TIMEOUT = "CALBRIDGE_WRITE_UNIT_TIMEOUT"
ENV_LOG_LEVEL = "CALBRIDGE_LOG_LEVEL"
ENV_LOG_FORMAT = "CALBRIDGE_LOG_FORMAT"

DEFAULT_CALENDAR_CACHE_TTL_SECONDS = 300.0
DEFAULT_FETCH_TIMEOUT_SECONDS = 10.0
DEFAULT_WRITE_UNIT_TIMEOUT_SECONDS = 30.0
_VALID_LOG_FORMATS = ("text", "json")


class ConfigError(Exception):
    """Raised when configuration values are missing, malformed, or invalid."""


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    format: str = "text"  # "text" or "json"


@dataclass(frozen=True)
class CalbridgeSettings:
    """Resolved configuration for one process."""

    token_path: Path
    legacy_token_path: Path
    oauth_keys_path: Path
    default_alias: str = DEFAULT_ALIAS
    calendar_cache_ttl: float = DEFAULT_CALENDAR_CACHE_TTL_SECONDS
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT_SECONDS
    write_unit_timeout: float = DEFAULT_WRITE_UNIT_TIMEOUT_SECONDS
    logging: LoggingConfig = LoggingConfig()


def default_config_dir(env: Mapping[str, str] | None = None, platform: str | None = None) -> Path:
    """Return the OS default config directory (without the app sub-directory)."""
    env = os.environ if env is None else env
    platform = sys.platform if platform is None else platform
    if platform.startswith("win"):
        appdata = env.get("APPDATA")
        if appdata:
            return Path(appdata)
        return Path.home() / "AppData" / "Roaming"
    if platform == "darwin":
        return Path.home() / "Library" / "Application Support"
    return Path.home() / ".config"


def resolve_token_path(env: Mapping[str, str] | None = None, platform: str | None = None) -> Path:
    """Resolve the credential file path using the documented priority order."""
    env = os.environ if env is None else env
    explicit = env.get(ENV_TOKEN_PATH)
    if explicit:
        return Path(explicit).expanduser().resolve()
    xdg = env.get(ENV_XDG_CONFIG_HOME)
    base = Path(xdg).expanduser() if xdg else default_config_dir(env, platform)
    return base / APP_DIR_NAME / TOKEN_FILE_NAME


def resolve_legacy_token_path(env: Mapping[str, str] | None = None) -> Path:
    env = os.environ if env is None else env
    explicit = env.get(ENV_LEGACY_TOKEN_PATH)
    if explicit:
        return Path(explicit).expanduser().resolve()
    return Path.cwd() / LEGACY_TOKEN_FILE_NAME


def resolve_oauth_keys_path(env: Mapping[str, str] | None = None) -> Path:
    env = os.environ if env is None else env
    explicit = env.get(ENV_OAUTH_CREDENTIALS)
    if explicit:
        return Path(explicit).expanduser().resolve()
    return Path.cwd() / OAUTH_KEYS_FILE_NAME


def _positive_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{key} must be positive, got {raw!r}")
    return value


def load_settings(
    env: Mapping[str, str] | None = None, platform: str | None = None
) -> CalbridgeSettings:
    """Build :class:`CalbridgeSettings` from *env* (defaults to ``os.environ``).

    Raises:
        ConfigError: if a numeric value, the log format or the default account
            alias is invalid.
    """
    env = os.environ if env is None else env

    default_alias = env.get(ENV_ACCOUNT_MODE, DEFAULT_ALIAS)
    try:
        # No lower-casing here: the configured mode must already be canonical.
        validate_alias(default_alias)
    except InvalidAliasError as exc:
        raise ConfigError(f"{ENV_ACCOUNT_MODE}: {exc}") from exc

    log_format = env.get(ENV_LOG_FORMAT, "text").strip().lower()
    if log_format not in _VALID_LOG_FORMATS:
        raise ConfigError(
            f"{ENV_LOG_FORMAT} must be one of {', '.join(_VALID_LOG_FORMATS)}, got {log_format!r}"
        )

    return CalbridgeSettings(
        token_path=resolve_token_path(env, platform),
        legacy_token_path=resolve_legacy_token_path(env),
        oauth_keys_path=resolve_oauth_keys_path(env),
        default_alias=default_alias,
        calendar_cache_ttl=_positive_float(
            env, ENV_CALENDAR_CACHE_TTL, DEFAULT_CALENDAR_CACHE_TTL_SECONDS
        ),
        fetch_timeout=_positive_float(env, ENV_FETCH_TIMEOUT, DEFAULT_FETCH_TIMEOUT_SECONDS),
        write_unit_timeout=_positive_float(
            env, ENV_WRITE_UNIT_TIMEOUT, DEFAULT_WRITE_UNIT_TIMEOUT_SECONDS
        ),
        logging=LoggingConfig(
            level=env.get(ENV_LOG_LEVEL, "INFO").strip().upper() or "INFO",
            format=log_format,
        ),
    )
