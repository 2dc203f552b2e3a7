"""Bridge configuration: JSON file or environment, schema-checked dataclasses.

String values may contain ``${VAR}`` or ``${VAR:-default}``.  A placeholder
resolves from the CLI overrides first, then the environment, then its
default; a placeholder with no default and no value is a :class:`ConfigError`.

When no config file is given the bridge runs from the environment alone,
using :data:`ENV_TEMPLATE`.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import jsonschema
import orjson

from spaces_traxmate_bridge.errors import ConfigError

logger = logging.getLogger(__name__)

_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")

_SCHEMA_PATH = Path(__file__).resolve().parent.parent.parent / "config" / "config.schema.json"

DEFAULT_INGESTION_URL = "https://api.traxmate.io/v1/data/ingest"

ENV_TEMPLATE: dict[str, Any] = {
    "spaces": {
        "access_token": "${CISCO_SPACES_ACCESS_TOKEN:-}",
        "firehose_url": "${CISCO_SPACES_FIREHOSE_URL:-}",
    },
    "traxmate": {
        "api_key": "${TRAXMATE_API_KEY:-}",
        "ingestion_url": "${TRAXMATE_INGESTION_URL:-" + DEFAULT_INGESTION_URL + "}",
    },
    "status": {
        "port": "${PORT:-8080}",
    },
    "logging": {
        "level": "${BRIDGE_LOG_LEVEL:-info}",
    },
}


@dataclass
class ReconnectConfig:
    """Firehose reconnection backoff parameters."""

    base_delay_ms: int = 5000
    max_attempts: int = 10
    connect_timeout_ms: int = 10000


@dataclass
class SpacesConfig:
    """Cisco Spaces firehose settings."""

    access_token: str = ""
    firehose_url: str = ""
    event_type: str = "BLE_DEVICES"
    request_timeout_ms: int = 10000
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)


@dataclass
class TraxmateConfig:
    """Traxmate ingestion API settings."""

    api_key: str = ""
    ingestion_url: str = DEFAULT_INGESTION_URL
    max_retries: int = 3
    retry_delay_ms: int = 1000
    timeout_ms: int = 10000
    batch_pause_ms: int = 100


@dataclass
class FloorConfig:
    """One floor calibration entry."""

    location_hierarchy: str = ""
    origin_lat: float = 0.0
    origin_lng: float = 0.0
    scale_factor: float = 0.00001


@dataclass
class StatusConfig:
    """HTTP status/health endpoint settings."""

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class LogFileConfig:
    """Rotating log file, written alongside stderr when enabled."""

    enabled: bool = False
    path: str = "/var/log/spaces-traxmate-bridge/app.log"
    max_size_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5


DEFAULT_REDACT_PATTERNS = ("*key*", "*token*", "*secret*", "*password*")


@dataclass
class LoggingConfig:
    level: str = "info"
    format: str = "json"  # or "text"
    file: LogFileConfig = field(default_factory=LogFileConfig)
    redact_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_REDACT_PATTERNS))


@dataclass
class AppConfig:
    """Everything the bridge needs, as resolved by :func:`load_config`."""

    spaces: SpacesConfig = field(default_factory=SpacesConfig)
    traxmate: TraxmateConfig = field(default_factory=TraxmateConfig)
    floors: list[FloorConfig] = field(default_factory=list)
    status: StatusConfig = field(default_factory=StatusConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _resolve(name: str, default: Optional[str], overrides: dict[str, str]) -> str:
    if name in overrides:
        return overrides[name]
    value = os.environ.get(name, default)
    if value is None:
        raise ConfigError(f"${{{name}}} is not set and has no default")
    return value


def _interpolate(node: Any, overrides: dict[str, str]) -> Any:
    """Resolve placeholders in every string of a decoded JSON document."""
    if isinstance(node, str):
        return _VAR_RE.sub(lambda m: _resolve(m.group(1), m.group(2), overrides), node)
    if isinstance(node, dict):
        return {key: _interpolate(val, overrides) for key, val in node.items()}
    if isinstance(node, list):
        return [_interpolate(item, overrides) for item in node]
    return node


def _pick(cls, raw: dict[str, Any]) -> dict[str, Any]:
    """Keep only the keys of *raw* that are fields of dataclass *cls*."""
    return {k: raw[k] for k in raw if k in cls.__dataclass_fields__}


def _coerce_ints(raw: dict[str, Any], *names: str) -> dict[str, Any]:
    """Interpolated numbers arrive as strings; turn the named keys into ints."""
    out = dict(raw)
    for name in names:
        if isinstance(out.get(name), str):
            try:
                out[name] = int(out[name])
            except ValueError as exc:
                raise ConfigError(f"{name} must be an integer, got {out[name]!r}") from exc
    return out


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name)
    return value if isinstance(value, dict) else {}


_INT_FIELDS = {
    "status": ("port",),
    "traxmate": ("max_retries", "retry_delay_ms", "timeout_ms", "batch_pause_ms"),
    "spaces": ("request_timeout_ms",),
}
_RECONNECT_INT_FIELDS = ("base_delay_ms", "max_attempts", "connect_timeout_ms")


def _coerce_numbers(doc: dict[str, Any]) -> dict[str, Any]:
    """Convert interpolated integer settings (strings after substitution) to ints."""
    out = dict(doc)
    for name, fields in _INT_FIELDS.items():
        if isinstance(out.get(name), dict):
            out[name] = _coerce_ints(out[name], *fields)
    spaces = out.get("spaces")
    if isinstance(spaces, dict) and isinstance(spaces.get("reconnect"), dict):
        out["spaces"] = {
            **spaces,
            "reconnect": _coerce_ints(spaces["reconnect"], *_RECONNECT_INT_FIELDS),
        }
    return out


def _dict_to_config(raw: dict[str, Any]) -> AppConfig:
    spaces = _section(raw, "spaces")
    log_section = _section(raw, "logging")
    logging_cfg = LoggingConfig(**_pick(LoggingConfig, log_section))
    logging_cfg.file = LogFileConfig(**_pick(LogFileConfig, _section(log_section, "file")))

    return AppConfig(
        spaces=SpacesConfig(
            **_pick(SpacesConfig, {k: v for k, v in spaces.items() if k != "reconnect"}),
            reconnect=ReconnectConfig(**_pick(ReconnectConfig, _section(spaces, "reconnect"))),
        ),
        traxmate=TraxmateConfig(**_pick(TraxmateConfig, _section(raw, "traxmate"))),
        floors=[FloorConfig(**_pick(FloorConfig, entry)) for entry in raw.get("floors") or []],
        status=StatusConfig(**_pick(StatusConfig, _section(raw, "status"))),
        logging=logging_cfg,
    )


def require_settings(cfg: AppConfig) -> None:
    """Raise :class:`ConfigError` if a value needed to run the bridge is empty."""
    missing = []
    if not cfg.spaces.access_token:
        missing.append("spaces.access_token (CISCO_SPACES_ACCESS_TOKEN)")
    if not cfg.spaces.firehose_url:
        missing.append("spaces.firehose_url (CISCO_SPACES_FIREHOSE_URL)")
    if not cfg.traxmate.api_key:
        missing.append("traxmate.api_key (TRAXMATE_API_KEY)")
    if missing:
        raise ConfigError("Missing required configuration: " + ", ".join(missing))


def load_config(
    path: str | Path | None = None,
    overrides: dict[str, str] | None = None,
    schema_path: str | Path | None = None,
) -> AppConfig:
    """Read, resolve and check the bridge configuration.

    Parameters
    ----------
    path:
        JSON config file.  ``None`` means environment only, through
        :data:`ENV_TEMPLATE`.
    overrides:
        Placeholder values given on the command line; they win over the
        environment.
    schema_path:
        JSON Schema to validate against.  Defaults to the project's
        ``config/config.schema.json``.

    Raises
    ------
    ConfigError
        Unreadable or malformed file, or an unresolvable placeholder.
    jsonschema.ValidationError
        The resolved document does not match the schema.
    """
    if path is None:
        document: dict[str, Any] = ENV_TEMPLATE
        logger.debug("No config file given, using environment variables")
    else:
        try:
            document = orjson.loads(Path(path).read_bytes())
        except OSError as exc:
            raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
        except orjson.JSONDecodeError as exc:
            raise ConfigError(f"Config file {path} is not valid JSON: {exc}") from exc
        if not isinstance(document, dict):
            raise ConfigError(f"Config file {path} must contain a JSON object")

    resolved = _coerce_numbers(_interpolate(document, overrides or {}))

    schema_file = Path(schema_path) if schema_path else _SCHEMA_PATH
    if schema_file.exists():
        jsonschema.validate(instance=resolved, schema=orjson.loads(schema_file.read_bytes()))
    else:
        logger.warning("Schema file not found at %s, skipping validation", schema_file)

    return _dict_to_config(resolved)
