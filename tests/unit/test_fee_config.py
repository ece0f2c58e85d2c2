"""Unit tests for the versioned fee configuration service."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import patch

import pytest

from task_settlement_service.core.exceptions import ServiceError
from task_settlement_service.services.fee_config import FeeConfigService
from task_settlement_service.services.task_store import TaskStore


@pytest.mark.unit
def test_seed_writes_version_one_once(tmp_path, fees_config) -> None:
    """Seeding an empty store writes version 1; later seeds keep the stored config."""
    store = TaskStore(db_path=str(tmp_path / "settlement.db"))
    service = FeeConfigService(store)

    seeded = service.seed(fees_config)
    assert seeded.version == 1
    assert seeded.base_percentage == Decimal("0.10")
    assert seeded.updated_by == "system"

    service.update({"min_fee_usd": "7"}, expected_version=1, actor="u-admin")
    reseeded = service.seed(fees_config)
    assert reseeded.version == 2
    assert reseeded.min_fee_usd == Decimal(7)
    store.close()


@pytest.mark.unit
def test_current_requires_seed(tmp_path) -> None:
    """Reading an unseeded configuration is a startup error."""
    store = TaskStore(db_path=str(tmp_path / "settlement.db"))
    with pytest.raises(RuntimeError):
        FeeConfigService(store).current()
    store.close()


@pytest.mark.unit
def test_update_merges_currency_rates(tmp_path, fees_config) -> None:
    """currency_rates updates add to the table instead of replacing it."""
    store = TaskStore(db_path=str(tmp_path / "settlement.db"))
    service = FeeConfigService(store)
    service.seed(fees_config)

    updated = service.update(
        {"currency_rates": {"eur": "0.85"}, "strict_currency": True},
        expected_version=1,
        actor="u-admin",
    )

    assert updated.version == 2
    assert updated.currency_rates["EUR"] == Decimal("0.85")
    assert updated.currency_rates["USD"] == Decimal(1)
    assert updated.strict_currency is True
    assert updated.updated_by == "u-admin"
    store.close()


@pytest.mark.unit
def test_update_returns_the_version_it_wrote(tmp_path, fees_config) -> None:
    """Another admin writing right after this update does not leak into its result."""
    store = TaskStore(db_path=str(tmp_path / "settlement.db"))
    service = FeeConfigService(store)
    service.seed(fees_config)
    real_insert = store.insert_fee_config

    def insert_then_concurrent_update(config_data, *, expected_version):
        version = real_insert(config_data, expected_version=expected_version)
        real_insert(
            {**config_data, "base_percentage": Decimal("0.20"), "updated_by": "u-other-admin"},
            expected_version=version,
        )
        return version

    with patch.object(store, "insert_fee_config", side_effect=insert_then_concurrent_update):
        updated = service.update({"base_percentage": "0.12"}, expected_version=1, actor="u-admin")

    assert updated.version == 2
    assert updated.base_percentage == Decimal("0.12")
    assert updated.updated_by == "u-admin"
    latest = service.current()
    assert latest.version == 3
    assert latest.base_percentage == Decimal("0.20")
    store.close()


@pytest.mark.unit
def test_stale_version_conflicts(tmp_path, fees_config) -> None:
    """Two admins editing version 1: the second write gets FEE_CONFIG_CONFLICT."""
    store = TaskStore(db_path=str(tmp_path / "settlement.db"))
    service = FeeConfigService(store)
    service.seed(fees_config)

    service.update({"base_percentage": "0.12"}, expected_version=1, actor="u-admin")
    with pytest.raises(ServiceError) as exc_info:
        service.update({"base_percentage": "0.15"}, expected_version=1, actor="u-other-admin")

    assert exc_info.value.error == "FEE_CONFIG_CONFLICT"
    assert exc_info.value.status_code == 409
    assert exc_info.value.details == {"expected_version": 1, "current_version": 2}
    assert service.current().base_percentage == Decimal("0.12")
    store.close()


@pytest.mark.unit
@pytest.mark.parametrize(
    "changes",
    [
        {"base_percentage": "1.5"},
        {"base_percentage": "0"},
        {"min_fee_usd": "-1"},
        {"max_fee_usd": "1"},
        {"currency_rates": {"EUR": "0"}},
        {"currency_rates": {"EURO": "1"}},
        {"currency_rates": ["EUR"]},
        {"strict_currency": "yes"},
        {"unknown_field": 1},
    ],
)
def test_invalid_updates_rejected(tmp_path, fees_config, changes) -> None:
    """Invalid values never produce a new version."""
    store = TaskStore(db_path=str(tmp_path / "settlement.db"))
    service = FeeConfigService(store)
    service.seed(fees_config)

    with pytest.raises(ServiceError) as exc_info:
        service.update(changes, expected_version=1, actor="u-admin")

    assert exc_info.value.error == "INVALID_FEE_CONFIG"
    assert service.current().version == 1
    store.close()


@pytest.mark.unit
def test_fee_calculation_uses_latest_version(services) -> None:
    """Acceptance after an update computes the fee with the new percentage."""
    services.fee_config.update({"base_percentage": "0.20"}, expected_version=1, actor="u-admin")

    quote = services.task_manager.quote_fee("100", "USD")
    assert quote["service_fee"] == 20.0
    assert quote["breakdown"]["config_version"] == 2
