"""
Configuration management and loading.

Handles metering settings from a YAML file or CREDIT_METER_* environment
variables.
"""

import math
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

ENV_PREFIX = "CREDIT_METER_"


@dataclass(frozen=True)
class MeterConfig:
    """Complete metering configuration."""
    db_path: str = "credit_meter.db"
    default_ratio: float = 1.0
    chars_per_token: int = 4
    default_model: str = "openai/gpt-3.5-turbo"
    service_type: str = "chat"
    state_open_marker: str = "<STATE>"
    state_close_marker: str = "</STATE>"
    busy_timeout: float = 30.0
    usage_workers: int = 2
    default_page_size: int = 20
    max_page_size: int = 100
    provider_base_url: Optional[str] = None
    provider_api_key_env: str = "OPENAI_API_KEY"
    temperature: float = 0.7
    max_tokens: int = 2000

    def __post_init__(self):
        """Validate configuration values."""
        if not self.db_path:
            raise ValueError("db_path is required")
        if not math.isfinite(self.default_ratio) or self.default_ratio <= 0:
            raise ValueError("default_ratio must be > 0")
        if self.chars_per_token <= 0:
            raise ValueError("chars_per_token must be > 0")
        if not self.default_model or not self.default_model.strip():
            raise ValueError("default_model cannot be empty")
        if not self.service_type or not self.service_type.strip():
            raise ValueError("service_type cannot be empty")
        if not self.state_open_marker or not self.state_close_marker:
            raise ValueError("state markers cannot be empty")
        if self.state_open_marker == self.state_close_marker:
            raise ValueError("state_open_marker and state_close_marker must differ")
        if self.busy_timeout <= 0:
            raise ValueError("busy_timeout must be > 0")
        if self.usage_workers < 1:
            raise ValueError("usage_workers must be >= 1")
        if self.default_page_size < 1:
            raise ValueError("default_page_size must be >= 1")
        if self.max_page_size < self.default_page_size:
            raise ValueError("max_page_size must be >= default_page_size")
        if not 0 <= self.temperature <= 2:
            raise ValueError("temperature must be between 0 and 2")
        if self.max_tokens < 1:
            raise ValueError("max_tokens must be >= 1")


_FIELD_NAMES = frozenset(f.name for f in fields(MeterConfig))

_CASTS = {
    "default_ratio": float,
    "busy_timeout": float,
    "temperature": float,
    "chars_per_token": int,
    "usage_workers": int,
    "default_page_size": int,
    "max_page_size": int,
    "max_tokens": int,
}


def _coerce(key: str, value: Any, path: str) -> Any:
    cast = _CASTS.get(key)
    if value is None:
        if key == "provider_base_url":
            return None
        raise ValueError(f"'{key}' in {path} cannot be null")
    if cast is None:
        if not isinstance(value, str):
            raise ValueError(f"'{key}' in {path} must be a string")
        return value
    if isinstance(value, bool):
        raise ValueError(f"'{key}' in {path} must be a number")
    try:
        if cast is int and isinstance(value, float) and not value.is_integer():
            raise ValueError
        return cast(value)
    except (TypeError, ValueError):
        raise ValueError(f"'{key}' in {path} must be a {cast.__name__}")


def _build_config(raw: Mapping[str, Any], path: str) -> MeterConfig:
    unknown_keys = set(raw.keys()) - set(_FIELD_NAMES)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")
    values = {key: _coerce(key, value, path) for key, value in raw.items()}
    return MeterConfig(**values)


def load_meter_config(path: str) -> MeterConfig:
    """Load and validate metering configuration from YAML file.

    Strict validation ensures no silent misconfiguration of the ratio or the
    ledger database.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated MeterConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Meter config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    return _build_config(raw_config, path)


def config_from_env(environ: Optional[Mapping[str, str]] = None) -> MeterConfig:
    """Build configuration from CREDIT_METER_* environment variables.

    Unset variables keep their defaults, e.g. CREDIT_METER_DEFAULT_RATIO=0.5.
    """
    environ = os.environ if environ is None else environ
    raw: Dict[str, Any] = {}
    for key in _FIELD_NAMES:
        value = environ.get(ENV_PREFIX + key.upper())
        if value is not None and value != "":
            raw[key] = value
    return _build_config(raw, "environment")
