"""Client settings: timeouts, supervision intervals and the server table.

Values are resolved in three layers, later layers winning:

1. built-in defaults (``tomos.constants``, ``DEFAULT_LANGUAGE_SERVERS``)
2. ``<root>/.tomos/config.json`` (``"settings"`` and ``"servers"`` sections)
3. ``TOMOS_*`` environment variables (settings only)
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping

from tomos.constants import (
    CONFIG_DIR_NAME,
    CONFIG_FILE_NAME,
    DEFAULT_HANDSHAKE_TIMEOUT,
    DEFAULT_HEALTH_CHECK_INTERVAL,
    DEFAULT_HEARTBEAT_TIMEOUT,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_RESTART_BACKOFF,
    DEFAULT_SHUTDOWN_TIMEOUT,
    ENV_PREFIX,
)
from tomos.lsp.ls_config import LanguageServerConfig, default_language_servers
from tomos.types.errors import ConfigurationError, ErrorContext
from tomos.utils.security import validate_positive_number

log = logging.getLogger(__name__)

_BOOL_TRUE = {"1", "true", "yes", "on"}
_BOOL_FALSE = {"0", "false", "no", "off"}


@dataclass
class ClientSettings:
    """Tunables shared by every language server client of a workspace."""

    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT
    heartbeat_timeout: float = DEFAULT_HEARTBEAT_TIMEOUT
    health_check_interval: float = DEFAULT_HEALTH_CHECK_INTERVAL
    restart_backoff: float = DEFAULT_RESTART_BACKOFF
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    encoding: str = "utf-8"
    trace_lsp_communication: bool = False
    servers: dict[str, LanguageServerConfig] = field(default_factory=default_language_servers)

    def __post_init__(self) -> None:
        try:
            validate_positive_number(self.request_timeout, "request_timeout")
            validate_positive_number(self.handshake_timeout, "handshake_timeout")
            validate_positive_number(self.heartbeat_timeout, "heartbeat_timeout")
            validate_positive_number(self.health_check_interval, "health_check_interval")
            validate_positive_number(self.restart_backoff, "restart_backoff", allow_zero=True)
            validate_positive_number(self.shutdown_timeout, "shutdown_timeout")
        except ValueError as e:
            raise ConfigurationError(str(e), original_error=e) from e

    def get_server_config(self, language: str) -> LanguageServerConfig | None:
        return self.servers.get(language)

    def language_for_filename(self, filename: str) -> str | None:
        """Determine the language for a file based on its extension."""
        name = os.path.basename(filename)
        for language, config in self.servers.items():
            if config.get_source_fn_matcher().is_relevant_filename(name):
                return language
        return None

    def to_dict(self) -> dict[str, Any]:
        d = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "servers"}
        d["servers"] = {name: cfg.to_dict() for name, cfg in self.servers.items()}
        return d

    @classmethod
    def load(
        cls,
        root: str | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> ClientSettings:
        """Resolve settings for a workspace root (see module docstring)."""
        values: dict[str, Any] = {}
        servers = default_language_servers()

        if root is not None:
            file_data = _read_config_file(Path(root) / CONFIG_DIR_NAME / CONFIG_FILE_NAME)
            values.update(_coerce_settings(file_data.get("settings", {}), source="config.json"))
            for language, server_data in (file_data.get("servers") or {}).items():
                if server_data is None:
                    servers.pop(language, None)
                    continue
                servers[language] = LanguageServerConfig.from_dict(language, server_data)

        env = os.environ if environ is None else environ
        env_values = {
            f.name: env[ENV_PREFIX + f.name.upper()]
            for f in fields(cls)
            if f.name != "servers" and ENV_PREFIX + f.name.upper() in env
        }
        values.update(_coerce_settings(env_values, source="environment"))

        return cls(servers=servers, **values)


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(
            f"Could not read {path}: {e}",
            context=ErrorContext(component="settings", additional_info={"path": str(path)}),
            original_error=e,
        ) from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a JSON object")
    log.debug("Loaded workspace config from %s", path)
    return data


def _coerce_settings(raw: Mapping[str, Any], source: str) -> dict[str, Any]:
    """Convert raw (string or JSON) values to the field types of ClientSettings."""
    types = {f.name: f.type for f in fields(ClientSettings) if f.name != "servers"}
    result: dict[str, Any] = {}
    for key, value in raw.items():
        if key not in types:
            log.warning("Ignoring unknown setting '%s' from %s", key, source)
            continue
        field_type = types[key]
        try:
            if field_type in ("float", float):
                result[key] = float(value)
            elif field_type in ("bool", bool):
                result[key] = _to_bool(value)
            else:
                result[key] = str(value)
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid value for '{key}' from {source}: {value!r}", original_error=e
            ) from e
    return result


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _BOOL_TRUE:
        return True
    if text in _BOOL_FALSE:
        return False
    raise ValueError(f"not a boolean: {value!r}")
