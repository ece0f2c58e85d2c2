"""Unit tests for service fee calculation."""

from __future__ import annotations

from decimal import Decimal

import pytest

from task_settlement_service.core.exceptions import ServiceError
from task_settlement_service.services.fee_calculator import (
    REASON_MAXIMUM,
    REASON_MINIMUM,
    REASON_PERCENTAGE,
    FeeConfig,
    calculate_service_fee,
    fee_schedule,
    parse_amount,
    quantize_money,
)


def _config(*, strict: bool = False) -> FeeConfig:
    return FeeConfig(
        version=3,
        base_percentage=Decimal("0.10"),
        min_fee_usd=Decimal(5),
        max_fee_usd=Decimal(50),
        currency_rates={"USD": Decimal(1), "AUD": Decimal("1.5"), "LKR": Decimal(325)},
        strict_currency=strict,
    )


@pytest.mark.unit
def test_percentage_fee_within_bounds() -> None:
    """A $200 budget pays the plain 10% fee."""
    quote = calculate_service_fee(200, "USD", _config())

    assert quote.service_fee == Decimal("20.00")
    assert quote.total_amount == Decimal("220.00")
    assert quote.reason == REASON_PERCENTAGE
    assert quote.config_version == 3


@pytest.mark.unit
def test_small_budget_clamps_to_minimum() -> None:
    """A $30 budget pays the $5 minimum."""
    quote = calculate_service_fee("30", "USD", _config())

    assert quote.service_fee == Decimal("5.00")
    assert quote.calculated_fee == Decimal("3.00")
    assert quote.reason == REASON_MINIMUM


@pytest.mark.unit
def test_large_budget_caps_at_maximum() -> None:
    """A $600 budget is capped at $50."""
    quote = calculate_service_fee(600, "usd", _config())

    assert quote.service_fee == Decimal("50.00")
    assert quote.total_amount == Decimal("650.00")
    assert quote.reason == REASON_MAXIMUM
    assert quote.currency == "USD"


@pytest.mark.unit
def test_bounds_are_converted_into_target_currency() -> None:
    """Min/max bounds scale by the currency's exchange rate."""
    quote = calculate_service_fee(1000, "LKR", _config())

    # 10% of 1000 = 100 LKR, below the 5 USD minimum (1625 LKR)
    assert quote.service_fee == Decimal("1625.00")
    assert quote.min_fee_in_currency == Decimal("1625.00")
    assert quote.max_fee_in_currency == Decimal("16250.00")
    assert quote.exchange_rate == Decimal(325)


@pytest.mark.unit
def test_fee_rounds_half_up_to_cents() -> None:
    """Fees round half-up to two decimals."""
    quote = calculate_service_fee("123.45", "USD", _config())

    assert quote.service_fee == Decimal("12.35")
    assert quote.total_amount == Decimal("135.80")


@pytest.mark.unit
@pytest.mark.parametrize("budget", ["0.01", "49.99", "50", "77.77", "499.99", "500", "1e6"])
def test_fee_always_within_bounds(budget: str) -> None:
    """The applied fee never leaves [min, max] and equals 10% inside the band."""
    config = _config()
    quote = calculate_service_fee(budget, "AUD", config)

    assert quote.min_fee_in_currency <= quote.service_fee <= quote.max_fee_in_currency
    percentage = quantize_money(Decimal(budget) * config.base_percentage)
    if quote.min_fee_in_currency <= percentage <= quote.max_fee_in_currency:
        assert quote.service_fee == percentage


@pytest.mark.unit
def test_unknown_currency_falls_back_to_usd_rate() -> None:
    """Without strict mode an unknown currency uses rate 1."""
    quote = calculate_service_fee(200, "JPY", _config())

    assert quote.exchange_rate == Decimal(1)
    assert quote.service_fee == Decimal("20.00")


@pytest.mark.unit
def test_unknown_currency_rejected_in_strict_mode() -> None:
    """Strict mode rejects currencies without a configured rate."""
    with pytest.raises(ServiceError) as exc_info:
        calculate_service_fee(200, "JPY", _config(strict=True))

    assert exc_info.value.error == "UNSUPPORTED_CURRENCY"
    assert exc_info.value.status_code == 400


@pytest.mark.unit
@pytest.mark.parametrize("value", [0, -5, "abc", "", None, True, float("nan"), float("inf"), "NaN"])
def test_invalid_amounts_rejected(value: object) -> None:
    """Non-positive, non-finite and non-numeric amounts are INVALID_AMOUNT."""
    with pytest.raises(ServiceError) as exc_info:
        parse_amount(value)

    assert exc_info.value.error == "INVALID_AMOUNT"
    assert exc_info.value.status_code == 400


@pytest.mark.unit
def test_parse_amount_keeps_decimal_precision() -> None:
    """Floats go through their string form, so 0.1 stays 0.1."""
    assert parse_amount(0.1) == Decimal("0.1")
    assert parse_amount(" 42.50 ") == Decimal("42.50")


@pytest.mark.unit
def test_quote_serializes_breakdown() -> None:
    """to_dict exposes the breakdown with the percentage as a whole number."""
    body = calculate_service_fee(200, "USD", _config()).to_dict()

    assert body["service_fee"] == 20.0
    assert body["breakdown"]["base_percentage"] == 10.0
    assert body["breakdown"]["reason"] == REASON_PERCENTAGE
    assert body["breakdown"]["config_version"] == 3


@pytest.mark.unit
def test_fee_schedule_lists_every_currency() -> None:
    """The schedule converts both bounds for every configured currency."""
    schedule = fee_schedule(_config())

    assert list(schedule) == ["AUD", "LKR", "USD"]
    assert schedule["AUD"] == {"min_fee": 7.5, "max_fee": 75.0, "exchange_rate": 1.5}
