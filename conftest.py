"""Root fixtures shared by every test package."""

from __future__ import annotations

from decimal import Decimal

import pytest

from task_settlement_service.config import FeesConfig


@pytest.fixture
def fees_config() -> FeesConfig:
    """Default fee parameters: 10% within [5, 50] USD."""
    return FeesConfig(
        base_percentage=Decimal("0.10"),
        min_fee_usd=Decimal(5),
        max_fee_usd=Decimal(50),
        strict_currency=False,
        currency_rates={
            "USD": Decimal(1),
            "AUD": Decimal("1.5"),
            "LKR": Decimal(325),
        },
    )
