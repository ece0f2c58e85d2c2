"""Unit test fixtures: auto-clear caches between tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from task_settlement_service.config import clear_settings_cache
from task_settlement_service.core.state import reset_app_state
from tests.helpers import build_services

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

    from task_settlement_service.config import FeesConfig
    from tests.helpers import Services


@pytest.fixture(autouse=True)
def _clear_caches():
    """Clear settings cache and app state between tests."""
    clear_settings_cache()
    reset_app_state()
    yield
    clear_settings_cache()
    reset_app_state()


@pytest.fixture
def services(tmp_path: Path, fees_config: FeesConfig) -> Iterator[Services]:
    """Settlement components on a temporary database with mocked clients."""
    wired = build_services(str(tmp_path / "settlement.db"), fees_config)
    yield wired
    wired.store.close()
