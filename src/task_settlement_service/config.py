"""
Configuration management for the task settlement service.

Loads configuration from YAML with ZERO defaults.
Every value must be explicitly specified or startup fails.
"""

from __future__ import annotations

import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict

REDACTION_MARKER = "***REDACTED***"
_SENSITIVE_KEYS = frozenset({"api_key", "secret", "password", "token"})


class ServiceConfig(BaseModel):
    """Service identity configuration."""

    model_config = ConfigDict(extra="forbid")
    name: str
    version: str


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    model_config = ConfigDict(extra="forbid")
    host: str
    port: int
    log_level: str


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")
    level: str
    directory: str


class DatabaseConfig(BaseModel):
    """Database configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str


class IdentityConfig(BaseModel):
    """Identity provider connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    authenticate_path: str
    timeout_seconds: int


class PaymentGatewayConfig(BaseModel):
    """Payment gateway connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    create_intent_path: str
    capture_intent_path: str
    timeout_seconds: int
    api_key: str | None = None


class ReceiptsConfig(BaseModel):
    """Receipt generator connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    generate_path: str
    timeout_seconds: int


class NotifierConfig(BaseModel):
    """Notifier connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    notify_path: str
    timeout_seconds: int


class RequestConfig(BaseModel):
    """Request handling configuration."""

    model_config = ConfigDict(extra="forbid")
    max_body_size: int


class FeesConfig(BaseModel):
    """Initial service fee configuration, seeded into the store on first start."""

    model_config = ConfigDict(extra="forbid")
    base_percentage: Decimal
    min_fee_usd: Decimal
    max_fee_usd: Decimal
    strict_currency: bool
    currency_rates: dict[str, Decimal]


class PaymentsConfig(BaseModel):
    """Payment intent configuration."""

    model_config = ConfigDict(extra="forbid")
    charge_policy: Literal["offer_markup", "fee_calculator"]


class AdminConfig(BaseModel):
    """Administrative access configuration."""

    model_config = ConfigDict(extra="forbid")
    user_ids: list[str]


class Settings(BaseModel):
    """
    Root configuration container.

    All fields are REQUIRED. No defaults exist.
    Missing fields cause immediate startup failure.
    """

    model_config = ConfigDict(extra="forbid")
    service: ServiceConfig
    server: ServerConfig
    logging: LoggingConfig
    database: DatabaseConfig
    identity: IdentityConfig
    payment_gateway: PaymentGatewayConfig
    receipts: ReceiptsConfig
    notifier: NotifierConfig
    request: RequestConfig
    fees: FeesConfig
    payments: PaymentsConfig
    admin: AdminConfig


def get_config_path() -> Path:
    """Determine configuration file path."""
    env_path = os.environ.get("CONFIG_PATH")
    if env_path:
        return Path(env_path)
    return Path.cwd() / "config.yaml"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Load and cache settings from the YAML config file.

    Raises:
        FileNotFoundError: If the config file does not exist
        pydantic.ValidationError: If any section is missing or malformed
    """
    config_path = get_config_path()
    if not config_path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise FileNotFoundError(msg)

    with config_path.open(encoding="utf-8") as handle:
        raw = yaml.safe_load(handle)

    if not isinstance(raw, dict):
        msg = f"Configuration file must contain a mapping: {config_path}"
        raise ValueError(msg)

    return Settings.model_validate(raw)


def clear_settings_cache() -> None:
    """Clear the cached settings. Used in testing."""
    get_settings.cache_clear()


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: REDACTION_MARKER if key in _SENSITIVE_KEYS and item is not None else _redact(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return value


def get_safe_config() -> dict[str, Any]:
    """Get configuration with sensitive values redacted."""
    redacted: dict[str, Any] = _redact(get_settings().model_dump(mode="json"))
    return redacted
