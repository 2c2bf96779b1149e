"""
Configuration management and loading.

Handles engine settings from an optional YAML file. Every section is
optional; unknown keys are rejected.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Tuple

import yaml

from hybrid_billing.core.purchases import DEFAULT_PLATFORM_FEE_PERCENT
from hybrid_billing.core.token_counter import DEFAULT_INPUT_TOKEN_RATIO
from hybrid_billing.storage.db import DEFAULT_BUSY_TIMEOUT, DEFAULT_DB_PATH
from hybrid_billing.storage.models import (
    DEFAULT_CONSUMPTION_ORDER,
    DEFAULT_CONSUMPTION_PRIORITY,
    DEFAULT_TOKEN_LOW_THRESHOLD,
    FundingSource,
    UserProfile,
    parse_consumption_order,
)

DEFAULT_BYOK_PROVIDERS = ("anthropic", "openai", "google")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class DatabaseConfig:
    """SQLite location and lock wait."""
    path: str = DEFAULT_DB_PATH
    busy_timeout: float = DEFAULT_BUSY_TIMEOUT

    def __post_init__(self):
        if not self.path:
            raise ValueError("database path cannot be empty")
        if self.busy_timeout <= 0:
            raise ValueError("busy_timeout must be > 0")


@dataclass(frozen=True)
class BillingConfig:
    """Purchase and usage accounting constants."""
    platform_fee_percent: int = DEFAULT_PLATFORM_FEE_PERCENT
    default_priority: int = DEFAULT_CONSUMPTION_PRIORITY
    input_token_ratio: float = DEFAULT_INPUT_TOKEN_RATIO

    def __post_init__(self):
        if not 0 <= self.platform_fee_percent < 100:
            raise ValueError("platform_fee_percent must be between 0 and 100")
        if not 0 <= self.input_token_ratio <= 1:
            raise ValueError("input_token_ratio must be between 0 and 1")


@dataclass(frozen=True)
class ProfileDefaults:
    """Preferences given to newly created profiles."""
    consumption_order: Tuple[FundingSource, ...] = DEFAULT_CONSUMPTION_ORDER
    notify_token_low_threshold: int = DEFAULT_TOKEN_LOW_THRESHOLD
    notify_fallback_to_byok: bool = True
    notify_one_time_consumed: bool = True

    def __post_init__(self):
        object.__setattr__(self, "consumption_order", parse_consumption_order(self.consumption_order))
        if self.notify_token_low_threshold < 0:
            raise ValueError("notify_token_low_threshold cannot be negative")

    def as_template(self) -> UserProfile:
        """Profile template consumed by the profile store."""
        return UserProfile(
            user_id="__defaults__",
            consumption_order=self.consumption_order,
            notify_token_low_threshold=self.notify_token_low_threshold,
            notify_fallback_to_byok=self.notify_fallback_to_byok,
            notify_one_time_consumed=self.notify_one_time_consumed
        )


@dataclass(frozen=True)
class EngineConfig:
    """Complete engine configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    billing: BillingConfig = field(default_factory=BillingConfig)
    profile_defaults: ProfileDefaults = field(default_factory=ProfileDefaults)
    byok_providers: Tuple[str, ...] = DEFAULT_BYOK_PROVIDERS
    log_level: str = "INFO"

    def __post_init__(self):
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"log level must be one of: {list(LOG_LEVELS)}")


_SECTION_KEYS = {
    "database": {"path", "busy_timeout"},
    "billing": {"platform_fee_percent", "default_priority", "input_token_ratio"},
    "profile_defaults": {
        "consumption_order", "notify_token_low_threshold",
        "notify_fallback_to_byok", "notify_one_time_consumed"
    },
    "byok": {"allowed_providers"},
    "logging": {"level"},
}


def load_engine_config(path: str) -> EngineConfig:
    """Load and validate engine configuration from YAML file.

    Strict validation ensures no silent misconfigurations that could
    lead to wrong fees or unexpected funding behaviour.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated EngineConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Engine config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: _section(raw_config, name) for name in _SECTION_KEYS}

    database = DatabaseConfig(
        path=str(sections["database"].get("path", DEFAULT_DB_PATH)),
        busy_timeout=_number(sections["database"], "busy_timeout", DEFAULT_BUSY_TIMEOUT, "database")
    )

    billing_data = sections["billing"]
    billing = BillingConfig(
        platform_fee_percent=_integer(billing_data, "platform_fee_percent", DEFAULT_PLATFORM_FEE_PERCENT, "billing"),
        default_priority=_integer(billing_data, "default_priority", DEFAULT_CONSUMPTION_PRIORITY, "billing"),
        input_token_ratio=_number(billing_data, "input_token_ratio", DEFAULT_INPUT_TOKEN_RATIO, "billing")
    )

    defaults_data = sections["profile_defaults"]
    order = defaults_data.get("consumption_order", [s.value for s in DEFAULT_CONSUMPTION_ORDER])
    if not isinstance(order, list):
        raise ValueError("'consumption_order' in profile_defaults must be a list")
    profile_defaults = ProfileDefaults(
        consumption_order=tuple(order),
        notify_token_low_threshold=_integer(
            defaults_data, "notify_token_low_threshold", DEFAULT_TOKEN_LOW_THRESHOLD, "profile_defaults"
        ),
        notify_fallback_to_byok=_boolean(defaults_data, "notify_fallback_to_byok", True, "profile_defaults"),
        notify_one_time_consumed=_boolean(defaults_data, "notify_one_time_consumed", True, "profile_defaults")
    )

    providers = sections["byok"].get("allowed_providers", list(DEFAULT_BYOK_PROVIDERS))
    if not isinstance(providers, list) or not all(isinstance(p, str) and p for p in providers):
        raise ValueError("'allowed_providers' in byok must be a list of provider names")

    level = sections["logging"].get("level", "INFO")
    if not isinstance(level, str):
        raise ValueError("'level' in logging must be a string")

    return EngineConfig(
        database=database,
        billing=billing,
        profile_defaults=profile_defaults,
        byok_providers=tuple(providers),
        log_level=level.upper()
    )


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Get an optional section and reject unknown keys in it."""
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _integer(data: Dict[str, Any], key: str, default: int, path: str) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value


def _number(data: Dict[str, Any], key: str, default: float, path: str) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _boolean(data: Dict[str, Any], key: str, default: bool, path: str) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"'{key}' in {path} must be a boolean")
    return value
