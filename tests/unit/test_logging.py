"""Structured logging tests."""

from __future__ import annotations

import json
import logging
import sys
from typing import TYPE_CHECKING

import pytest

from task_settlement_service.logging import JSONFormatter, get_logger, setup_logging

if TYPE_CHECKING:
    from pathlib import Path


def _read_records(log_dir: Path) -> list[dict[str, object]]:
    lines: list[str] = []
    for path in sorted(log_dir.glob("*.log")):
        lines.extend(line for line in path.read_text().splitlines() if line)
    return [json.loads(line) for line in lines]


@pytest.mark.unit
def test_get_logger_is_namespaced():
    assert get_logger("settlement").name == "task_settlement_service.settlement"
    assert get_logger("task_settlement_service.services.task_store").name == (
        "task_settlement_service.services.task_store"
    )


@pytest.mark.unit
def test_setup_logging_rejects_unknown_level(tmp_path):
    with pytest.raises(ValueError, match="Invalid log level"):
        setup_logging("LOUD", "Task Settlement", str(tmp_path))


@pytest.mark.unit
def test_records_are_json_with_service_and_extra(tmp_path):
    setup_logging("info", "Task Settlement", str(tmp_path))
    logger = get_logger("task_settlement_service.services.settlement_coordinator")

    logger.warning("Payment capture failed", extra={"task_id": "t-1", "attempt": 2})
    for handler in logging.getLogger("task_settlement_service").handlers:
        handler.flush()

    records = _read_records(tmp_path)
    assert len(records) == 1
    record = records[0]
    assert record["level"] == "WARNING"
    assert record["message"] == "Payment capture failed"
    assert record["service"] == "Task Settlement"
    assert record["extra"] == {"task_id": "t-1", "attempt": 2}
    assert str(record["timestamp"]).endswith("Z")


@pytest.mark.unit
def test_debug_suppressed_below_configured_level(tmp_path):
    setup_logging("WARNING", "Task Settlement", str(tmp_path))

    get_logger("quiet").info("not written")
    for handler in logging.getLogger("task_settlement_service").handlers:
        handler.flush()

    assert _read_records(tmp_path) == []


@pytest.mark.unit
def test_formatter_includes_exception():
    try:
        raise RuntimeError("gateway exploded")
    except RuntimeError:
        record = logging.LogRecord(
            "task_settlement_service.x", logging.ERROR, __file__, 1, "boom", None, None
        )
        record.exc_info = sys.exc_info()

    data = json.loads(JSONFormatter().format(record))

    assert data["message"] == "boom"
    assert "RuntimeError: gateway exploded" in data["exception"]
    assert "extra" not in data
