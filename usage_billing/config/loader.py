"""
Configuration management and loading.

Reads billing rates, currency settings and usage source credentials from a
YAML file. String values may reference environment variables as ``${NAME}``.
"""

import os
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from usage_billing.core.currency import DEFAULT_FALLBACK_RATE
from usage_billing.core.pricing import DEFAULT_RATE_CARD, RateCard
from usage_billing.storage.db import DEFAULT_DB_PATH
from usage_billing.clients.exchange_rate import DEFAULT_RATE_URL

CONFIG_ENV_VAR = "USAGE_BILLING_CONFIG"
DEFAULT_CONFIG_PATH = "usage_billing.yaml"

_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


@dataclass(frozen=True)
class CurrencyConfig:
    """Exchange-rate settings."""
    fallback_rate: Decimal = DEFAULT_FALLBACK_RATE
    refresh_interval_hours: float = 24.0
    rate_url: str = DEFAULT_RATE_URL
    timeout_seconds: float = 10.0

    def __post_init__(self):
        """Validate currency values are positive."""
        if self.fallback_rate <= 0:
            raise ValueError("fallback_rate must be > 0")
        if self.refresh_interval_hours <= 0:
            raise ValueError("refresh_interval_hours must be > 0")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")


@dataclass(frozen=True)
class SmsConfig:
    """SMS billing policy."""
    # Segments billed per conversation for an opening prompt that is sent
    # to every contact but never stored in the chat history.
    initial_prompt_segments: int = 0

    def __post_init__(self):
        if self.initial_prompt_segments < 0:
            raise ValueError("initial_prompt_segments must be >= 0")


@dataclass(frozen=True)
class TwilioConfig:
    """Twilio API credentials."""
    account_sid: str = ""
    auth_token: str = ""

    @property
    def enabled(self) -> bool:
        return bool(self.account_sid and self.auth_token)


@dataclass(frozen=True)
class RetellConfig:
    """Retell AI API credentials."""
    api_key: str = ""

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)


@dataclass(frozen=True)
class StorageConfig:
    db_path: str = DEFAULT_DB_PATH


@dataclass(frozen=True)
class BillingConfig:
    """Complete billing configuration."""
    rates: RateCard = DEFAULT_RATE_CARD
    currency: CurrencyConfig = field(default_factory=CurrencyConfig)
    sms: SmsConfig = field(default_factory=SmsConfig)
    twilio: TwilioConfig = field(default_factory=TwilioConfig)
    retell: RetellConfig = field(default_factory=RetellConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)


def _substitute_env_vars(value: Any) -> Any:
    """Replace ${VAR_NAME} patterns in strings; unset variables become empty."""
    if isinstance(value, str):
        return _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_substitute_env_vars(v) for v in value]
    return value


def load_billing_config(path: Optional[str] = None) -> BillingConfig:
    """Load and validate billing configuration from YAML file.

    When no path is given, ``$USAGE_BILLING_CONFIG`` or ``usage_billing.yaml``
    is used, and a missing file yields the default configuration.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated BillingConfig object

    Raises:
        FileNotFoundError: If an explicitly given config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    explicit = path is not None
    if path is None:
        path = os.environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_PATH)

    config_path = Path(path)
    if not config_path.exists():
        if explicit:
            raise FileNotFoundError(f"Billing config file not found: {path}")
        return BillingConfig()

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return BillingConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    raw_config = _substitute_env_vars(raw_config)

    allowed_top_keys = {'rates', 'currency', 'sms', 'twilio', 'retell', 'storage'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    rates_data = _section(raw_config, 'rates', {'voice_per_minute_usd', 'sms_per_segment_usd'})
    rates = RateCard(
        voice_per_minute_usd=_decimal(
            rates_data, 'voice_per_minute_usd', 'rates', DEFAULT_RATE_CARD.voice_per_minute_usd
        ),
        sms_per_segment_usd=_decimal(
            rates_data, 'sms_per_segment_usd', 'rates', DEFAULT_RATE_CARD.sms_per_segment_usd
        ),
    )

    currency_data = _section(
        raw_config, 'currency',
        {'fallback_rate', 'refresh_interval_hours', 'rate_url', 'timeout_seconds'}
    )
    currency = CurrencyConfig(
        fallback_rate=_decimal(currency_data, 'fallback_rate', 'currency', DEFAULT_FALLBACK_RATE),
        refresh_interval_hours=_number(currency_data, 'refresh_interval_hours', 'currency', 24.0),
        rate_url=_string(currency_data, 'rate_url', 'currency', DEFAULT_RATE_URL),
        timeout_seconds=_number(currency_data, 'timeout_seconds', 'currency', 10.0),
    )

    sms_data = _section(raw_config, 'sms', {'initial_prompt_segments'})
    segments = sms_data.get('initial_prompt_segments', 0)
    if isinstance(segments, bool) or not isinstance(segments, int):
        raise ValueError("'initial_prompt_segments' in sms must be an integer")
    sms = SmsConfig(initial_prompt_segments=segments)

    twilio_data = _section(raw_config, 'twilio', {'account_sid', 'auth_token'})
    twilio = TwilioConfig(
        account_sid=_string(twilio_data, 'account_sid', 'twilio', ""),
        auth_token=_string(twilio_data, 'auth_token', 'twilio', ""),
    )

    retell_data = _section(raw_config, 'retell', {'api_key'})
    retell = RetellConfig(api_key=_string(retell_data, 'api_key', 'retell', ""))

    storage_data = _section(raw_config, 'storage', {'db_path'})
    storage = StorageConfig(db_path=_string(storage_data, 'db_path', 'storage', DEFAULT_DB_PATH))

    return BillingConfig(
        rates=rates,
        currency=currency,
        sms=sms,
        twilio=twilio,
        retell=retell,
        storage=storage,
    )


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict:
    """Return a validated section, or an empty dict when absent."""
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _decimal(data: Dict, key: str, path: str, default: Decimal) -> Decimal:
    if key not in data:
        return default
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{key}' in {path} must be a number")
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{key}' in {path} must be a number")
    if not result.is_finite() or result < 0:
        raise ValueError(f"'{key}' in {path} must be >= 0")
    return result


def _number(data: Dict, key: str, path: str, default: float) -> float:
    if key not in data:
        return default
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _string(data: Dict, key: str, path: str, default: str) -> str:
    if key not in data or data[key] is None:
        return default
    value = data[key]
    if not isinstance(value, str):
        raise ValueError(f"'{key}' in {path} must be a string")
    return value
