"""Shared configuration loader for polygon-agent.

Configuration is resolved exactly once per process and handed to components
explicitly.  Values come from, in order of precedence: explicit overrides,
environment variables, the optional YAML file, and baked-in defaults.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urlparse

import yaml

from .errors import AgentError


class ConfigurationError(AgentError):
    """Raised when configuration is invalid or a required value is missing."""

    code = "configuration_error"


DEFAULT_HOME = Path.home() / ".polygon-agent"
DEFAULT_CONFIG_PATH = DEFAULT_HOME / "config.yaml"
DEFAULT_INDEXER_URL = "https://indexer.sequence.app/rpc/IndexerGateway/GetTokenBalancesSummary"
DEFAULT_TOKEN_DIRECTORY_URL = "https://raw.githubusercontent.com/0xsequence/token-directory/main"
DEFAULT_BUILDER_API_URL = "https://api.sequence.build"
DEFAULT_CALLBACK_TIMEOUT = 300

_ENV_NAMES: dict[str, tuple[str, ...]] = {
    "home": ("POLYGON_AGENT_HOME",),
    "connector_url": ("POLYGON_AGENT_CONNECTOR_URL", "SEQUENCE_ECOSYSTEM_CONNECTOR_URL"),
    "access_key": ("SEQUENCE_PROJECT_ACCESS_KEY",),
    "dapp_origin": ("SEQUENCE_DAPP_ORIGIN",),
    "indexer_access_key": ("SEQUENCE_INDEXER_ACCESS_KEY",),
    "indexer_url": ("SEQUENCE_INDEXER_URL",),
    "token_directory_url": ("POLYGON_AGENT_TOKEN_DIRECTORY_URL",),
    "builder_api_url": ("SEQUENCE_BUILDER_API_URL",),
    "token_map": ("POLYGON_AGENT_TOKEN_MAP_JSON",),
    "default_chain": ("POLYGON_AGENT_CHAIN",),
    "callback_timeout": ("POLYGON_AGENT_CALLBACK_TIMEOUT",),
    "store_passphrase": ("POLYGON_AGENT_STORE_PASSPHRASE",),
    "debug_fetch": ("POLYGON_AGENT_DEBUG_FETCH",),
    "fetch_log_path": ("POLYGON_AGENT_FETCH_LOG_PATH",),
    "debug_fee": ("POLYGON_AGENT_DEBUG_FEE",),
    "fee_options_workaround": ("POLYGON_AGENT_FEE_WORKAROUND",),
    "log_level": ("POLYGON_AGENT_LOG_LEVEL",),
}


@dataclass(frozen=True)
class AgentConfig:
    """Immutable configuration shared by every component of a single run."""

    home: Path = DEFAULT_HOME
    connector_url: str | None = None
    access_key: str | None = None
    dapp_origin: str | None = None
    indexer_access_key: str | None = None
    indexer_url: str = DEFAULT_INDEXER_URL
    token_directory_url: str = DEFAULT_TOKEN_DIRECTORY_URL
    builder_api_url: str = DEFAULT_BUILDER_API_URL
    token_map: Mapping[str, Any] = field(default_factory=dict)
    default_chain: str = "polygon"
    callback_timeout: int = DEFAULT_CALLBACK_TIMEOUT
    store_passphrase: str | None = field(default=None, repr=False)
    debug_fetch: bool = False
    fetch_log_path: Path | None = None
    debug_fee: bool = False
    fee_options_workaround: bool = True
    log_level: str = "WARNING"

    @property
    def resolved_fetch_log_path(self) -> Path:
        return self.fetch_log_path or self.home / "fetch-debug.log"

    def require(self, name: str) -> Any:
        """Return the named field, raising when it is unset."""

        value = getattr(self, name)
        if value in (None, ""):
            env_names = " or ".join(_ENV_NAMES.get(name, ()))
            raise ConfigurationError(
                f"Missing required configuration value '{name}'",
                hint=f"Set {env_names} or add '{name}' to {DEFAULT_CONFIG_PATH.name}.",
            )
        return value


def _load_config_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigurationError(f"Config file not found: {path}")
        return {}

    try:
        loaded = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
        raise ConfigurationError(f"Invalid YAML in config file {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Expected {path} to contain a YAML mapping")
    return loaded


def _coerce_bool(value: Any, *, source: str) -> bool | None:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "y", "on"}:
            return True
        if normalized in {"0", "false", "no", "n", "off", ""}:
            return False
    raise ConfigurationError(f"Invalid boolean in {source}: {value!r}")


def _coerce_timeout(value: Any, *, source: str) -> int | None:
    if value is None:
        return None
    try:
        timeout = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid integer in {source}: {value!r}") from exc
    if timeout < 1:
        raise ConfigurationError(f"{source} must be >= 1 second")
    return timeout


def _check_url(value: str | None, *, source: str) -> str | None:
    if value is None:
        return None
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ConfigurationError(f"Invalid URL in {source}: {value}")
    return value.rstrip("/")


def _coerce_token_map(value: Any, *, source: str) -> dict[str, Any] | None:
    if value is None:
        return None
    if isinstance(value, str):
        if not value.strip():
            return {}
        try:
            value = json.loads(value)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid JSON in {source}") from exc
    if not isinstance(value, dict):
        raise ConfigurationError(f"{source} must be a mapping of chainId -> symbol -> token")
    return value


def _coerce_log_level(value: Any) -> str:
    level = str(value or "WARNING").upper()
    if not isinstance(logging.getLevelName(level), int):
        raise ConfigurationError(f"Unknown log level: {value}")
    return level


def _first_value(*values: Any, default: Any = None) -> Any:
    for value in values:
        if value is not None:
            return value
    return default


def load_config(
    *,
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> AgentConfig:
    """Resolve an :class:`AgentConfig` from overrides, environment and YAML."""

    env_map = os.environ if env is None else env
    override_map = {key: value for key, value in (overrides or {}).items() if value is not None}

    def from_env(name: str) -> str | None:
        for env_name in _ENV_NAMES[name]:
            raw = env_map.get(env_name)
            if raw:
                return raw
        return None

    home_raw = _first_value(override_map.get("home"), from_env("home"))
    home = Path(home_raw).expanduser() if home_raw else DEFAULT_HOME

    explicit_path = config_path is not None
    path = Path(config_path).expanduser() if explicit_path else home / DEFAULT_CONFIG_PATH.name
    file_config = _load_config_file(path, required=explicit_path)
    source = str(path)

    def pick(name: str) -> Any:
        return _first_value(override_map.get(name), from_env(name), file_config.get(name))

    fetch_log = pick("fetch_log_path")
    return AgentConfig(
        home=home,
        connector_url=_check_url(pick("connector_url"), source=f"{source} connector_url"),
        access_key=pick("access_key"),
        dapp_origin=pick("dapp_origin"),
        indexer_access_key=pick("indexer_access_key"),
        indexer_url=_check_url(pick("indexer_url"), source="indexer_url") or DEFAULT_INDEXER_URL,
        token_directory_url=(
            _check_url(pick("token_directory_url"), source="token_directory_url")
            or DEFAULT_TOKEN_DIRECTORY_URL
        ),
        builder_api_url=(
            _check_url(pick("builder_api_url"), source="builder_api_url") or DEFAULT_BUILDER_API_URL
        ),
        token_map=_coerce_token_map(pick("token_map"), source="token_map") or {},
        default_chain=str(pick("default_chain") or "polygon").lower(),
        callback_timeout=_first_value(
            _coerce_timeout(pick("callback_timeout"), source="callback_timeout"),
            default=DEFAULT_CALLBACK_TIMEOUT,
        ),
        store_passphrase=pick("store_passphrase"),
        debug_fetch=bool(_coerce_bool(pick("debug_fetch"), source="debug_fetch")),
        fetch_log_path=Path(fetch_log).expanduser() if fetch_log else None,
        debug_fee=bool(_coerce_bool(pick("debug_fee"), source="debug_fee")),
        fee_options_workaround=_first_value(
            _coerce_bool(pick("fee_options_workaround"), source="fee_options_workaround"),
            default=True,
        ),
        log_level=_coerce_log_level(pick("log_level")),
    )
