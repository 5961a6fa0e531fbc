"""Configuration package for the Device Whisperer engine."""

from .model import DeviceConfig, EngineConfig
from .settings import load_config, resolve_config

__all__ = ["DeviceConfig", "EngineConfig", "load_config", "resolve_config"]
