"""Settings loader for the Device Whisperer engine.

Configuration is layered: built-in defaults, then values from a TOML file
(section ``[whisperer]``), then explicit overrides. :func:`resolve_config`
is the single place where layers are merged and validated.
"""

from __future__ import annotations

import logging
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from marshmallow import ValidationError

from ..const import CONFIG_SECTION
from ..errors import ConfigError
from .model import EngineConfig
from .schema import EngineConfigSchema

logger = logging.getLogger(__name__)

ConfigOverlay = Mapping[str, Any] | EngineConfig | None


def _as_mapping(overlay: ConfigOverlay) -> dict[str, Any]:
    if overlay is None:
        return {}
    if isinstance(overlay, EngineConfig):
        return EngineConfigSchema().dump(overlay)
    return dict(overlay)


def _format_errors(messages: Any) -> str:
    if isinstance(messages, dict):
        return "; ".join(f"{key}: {_format_errors(value)}" for key, value in sorted(messages.items(), key=str))
    if isinstance(messages, (list, tuple)):
        return ", ".join(_format_errors(item) for item in messages)
    return str(messages)


def resolve_config(*overlays: ConfigOverlay, **overrides: Any) -> EngineConfig:
    """Merge *overlays* left to right over the defaults and validate.

    Later layers win key by key. Raises :class:`ConfigError` on any invalid
    value.
    """
    merged: dict[str, Any] = {}
    for overlay in overlays:
        merged.update(_as_mapping(overlay))
    merged.update(overrides)
    try:
        config = EngineConfigSchema().load(merged)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {_format_errors(exc.messages)}") from exc

    if not config.mqtt_tls and any(device.kind == "mqtt" for device in config.devices):
        logger.warning("MQTT TLS is disabled; credentials and payloads will be sent in plaintext.")
    return config


def read_config_file(path: str | Path, section: str = CONFIG_SECTION) -> dict[str, Any]:
    """Return the raw ``[section]`` table of a TOML file."""
    file_path = Path(path)
    try:
        with file_path.open("rb") as handle:
            document = tomllib.load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {file_path}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Config file {file_path} is not valid TOML: {exc}") from exc

    table = document.get(section, {})
    if not isinstance(table, dict):
        raise ConfigError(f"[{section}] in {file_path} must be a table")
    return table


def load_config(path: str | Path | None = None, **overrides: Any) -> EngineConfig:
    """Load configuration from *path* (optional) plus keyword overrides."""
    file_values = read_config_file(path) if path is not None else {}
    config = resolve_config(file_values, **overrides)
    logger.debug("Loaded configuration from %s", path or "defaults")
    return config


__all__ = ["ConfigOverlay", "load_config", "read_config_file", "resolve_config"]
