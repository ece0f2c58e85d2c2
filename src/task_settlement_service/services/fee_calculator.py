"""Service fee calculation for task budgets and offer amounts."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from task_settlement_service.core.exceptions import ServiceError

CENT = Decimal("0.01")

REASON_MINIMUM = "minimum_fee_applied"
REASON_MAXIMUM = "maximum_fee_capped"
REASON_PERCENTAGE = "percentage_applied"


@dataclass(frozen=True)
class FeeConfig:
    """Immutable snapshot of the fee configuration at one version."""

    version: int
    base_percentage: Decimal
    min_fee_usd: Decimal
    max_fee_usd: Decimal
    currency_rates: dict[str, Decimal] = field(default_factory=dict)
    strict_currency: bool = False
    updated_at: str | None = None
    updated_by: str | None = None

    def rate_for(self, currency: str) -> Decimal | None:
        """Return the USD conversion rate for a currency, or None if unknown."""
        return self.currency_rates.get(currency.upper())

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "base_percentage": float(self.base_percentage),
            "min_fee_usd": float(self.min_fee_usd),
            "max_fee_usd": float(self.max_fee_usd),
            "currency_rates": {code: float(rate) for code, rate in self.currency_rates.items()},
            "strict_currency": self.strict_currency,
            "updated_at": self.updated_at,
            "updated_by": self.updated_by,
        }


@dataclass(frozen=True)
class FeeQuote:
    """Result of a service fee calculation."""

    budget_amount: Decimal
    service_fee: Decimal
    total_amount: Decimal
    currency: str
    base_percentage: Decimal
    calculated_fee: Decimal
    reason: str
    min_fee_in_currency: Decimal
    max_fee_in_currency: Decimal
    exchange_rate: Decimal
    config_version: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "budget_amount": float(self.budget_amount),
            "service_fee": float(self.service_fee),
            "total_amount": float(self.total_amount),
            "currency": self.currency,
            "breakdown": {
                "base_percentage": float(self.base_percentage * 100),
                "calculated_fee": float(self.calculated_fee),
                "applied_fee": float(self.service_fee),
                "reason": self.reason,
                "min_fee_in_currency": float(self.min_fee_in_currency),
                "max_fee_in_currency": float(self.max_fee_in_currency),
                "exchange_rate": float(self.exchange_rate),
                "config_version": self.config_version,
            },
        }


def quantize_money(value: Decimal) -> Decimal:
    """Round a monetary value half-up to two decimal places."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_amount(value: object, field_name: str = "amount") -> Decimal:
    """
    Convert a raw amount into a positive, finite Decimal.

    Accepts ints, floats, Decimals and numeric strings. Booleans are rejected.

    Raises:
        ServiceError: INVALID_AMOUNT (400) for anything that is not a finite positive number
    """
    if isinstance(value, bool) or value is None:
        raise _invalid_amount(field_name, value)

    if isinstance(value, float):
        if not math.isfinite(value):
            raise _invalid_amount(field_name, value)
        amount = Decimal(str(value))
    elif isinstance(value, (int, Decimal)):
        amount = Decimal(value)
    elif isinstance(value, str):
        try:
            amount = Decimal(value.strip())
        except InvalidOperation as exc:
            raise _invalid_amount(field_name, value) from exc
    else:
        raise _invalid_amount(field_name, value)

    if not amount.is_finite() or amount <= 0:
        raise _invalid_amount(field_name, value)
    return amount


def _invalid_amount(field_name: str, value: object) -> ServiceError:
    return ServiceError(
        "INVALID_AMOUNT",
        f"{field_name} must be a positive finite number",
        400,
        {"field": field_name, "value": repr(value)},
    )


def resolve_rate(currency: str, config: FeeConfig) -> Decimal:
    """
    Look up the conversion rate for a currency.

    Unknown currencies use rate 1 unless the config is strict.
    """
    rate = config.rate_for(currency)
    if rate is not None:
        return rate
    if config.strict_currency:
        raise ServiceError(
            "UNSUPPORTED_CURRENCY",
            f"Currency '{currency.upper()}' is not supported",
            400,
            {"currency": currency.upper(), "supported": sorted(config.currency_rates)},
        )
    return Decimal(1)


def calculate_service_fee(budget_amount: object, currency: str, config: FeeConfig) -> FeeQuote:
    """
    Compute the service fee for an amount in a currency.

    The percentage fee is clamped to the USD bounds converted into the
    target currency, then rounded half-up to cents.
    """
    amount = parse_amount(budget_amount, "budget_amount")
    code = (currency or "USD").upper()
    rate = resolve_rate(code, config)

    base_fee = amount * config.base_percentage
    min_fee = config.min_fee_usd * rate
    max_fee = config.max_fee_usd * rate

    if base_fee < min_fee:
        applied, reason = min_fee, REASON_MINIMUM
    elif base_fee > max_fee:
        applied, reason = max_fee, REASON_MAXIMUM
    else:
        applied, reason = base_fee, REASON_PERCENTAGE

    service_fee = quantize_money(applied)
    return FeeQuote(
        budget_amount=amount,
        service_fee=service_fee,
        total_amount=quantize_money(amount + service_fee),
        currency=code,
        base_percentage=config.base_percentage,
        calculated_fee=quantize_money(base_fee),
        reason=reason,
        min_fee_in_currency=quantize_money(min_fee),
        max_fee_in_currency=quantize_money(max_fee),
        exchange_rate=rate,
        config_version=config.version,
    )


def fee_schedule(config: FeeConfig) -> dict[str, dict[str, float]]:
    """Minimum and maximum fee per configured currency."""
    return {
        code: {
            "min_fee": float(quantize_money(config.min_fee_usd * rate)),
            "max_fee": float(quantize_money(config.max_fee_usd * rate)),
            "exchange_rate": float(rate),
        }
        for code, rate in sorted(config.currency_rates.items())
    }
