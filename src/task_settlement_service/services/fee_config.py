"""Versioned, store-backed service fee configuration."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from task_settlement_service.core.exceptions import ServiceError
from task_settlement_service.logging import get_logger
from task_settlement_service.services.fee_calculator import FeeConfig
from task_settlement_service.services.task_store import FeeConfigConflictError

if TYPE_CHECKING:
    from task_settlement_service.config import FeesConfig
    from task_settlement_service.services.task_store import TaskStore

_UPDATABLE_FIELDS = frozenset(
    {"base_percentage", "min_fee_usd", "max_fee_usd", "currency_rates", "strict_currency"}
)


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _invalid(message: str, details: dict[str, Any] | None = None) -> ServiceError:
    return ServiceError("INVALID_FEE_CONFIG", message, 400, details or {})


def _to_decimal(value: object, field_name: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str, Decimal)):
        raise _invalid(f"{field_name} must be a number", {"field": field_name})
    try:
        result = Decimal(str(value))
    except InvalidOperation as exc:
        raise _invalid(f"{field_name} must be a number", {"field": field_name}) from exc
    if not result.is_finite():
        raise _invalid(f"{field_name} must be finite", {"field": field_name})
    return result


class FeeConfigService:
    """
    Source of the current fee configuration.

    Every call to `current()` reads the newest version from the store, so a
    calculation never runs against a stale process-local copy. Updates are
    compare-and-swap writes on the version number.
    """

    def __init__(self, store: TaskStore) -> None:
        self._store = store
        self._logger = get_logger(__name__)

    def seed(self, initial: FeesConfig) -> FeeConfig:
        """Write the configured defaults as version 1 if the store has no config yet."""
        if self._store.get_latest_fee_config() is None:
            try:
                self._store.insert_fee_config(
                    {
                        "base_percentage": initial.base_percentage,
                        "min_fee_usd": initial.min_fee_usd,
                        "max_fee_usd": initial.max_fee_usd,
                        "currency_rates": {
                            code.upper(): rate for code, rate in initial.currency_rates.items()
                        },
                        "strict_currency": initial.strict_currency,
                        "updated_at": _now_iso(),
                        "updated_by": "system",
                    },
                    expected_version=0,
                )
            except FeeConfigConflictError:
                # Another process seeded first
                pass
            else:
                self._logger.info("Seeded fee configuration", extra={"version": 1})
        return self.current()

    def current(self) -> FeeConfig:
        """Return the newest fee configuration snapshot."""
        row = self._store.get_latest_fee_config()
        if row is None:
            msg = "Fee configuration has not been seeded"
            raise RuntimeError(msg)
        return FeeConfig(**row)

    def update(self, changes: dict[str, Any], expected_version: int, actor: str) -> FeeConfig:
        """
        Apply a partial update as a new version.

        `currency_rates` is merged into the existing table rather than replacing it.

        Raises:
            ServiceError: INVALID_FEE_CONFIG (400) for unknown fields or invalid values
            ServiceError: FEE_CONFIG_CONFLICT (409) if `expected_version` is stale
        """
        unknown = sorted(set(changes) - _UPDATABLE_FIELDS)
        if unknown:
            raise _invalid("Unknown fee config fields", {"fields": unknown})

        base = self.current()
        merged: dict[str, Any] = {
            "base_percentage": base.base_percentage,
            "min_fee_usd": base.min_fee_usd,
            "max_fee_usd": base.max_fee_usd,
            "currency_rates": dict(base.currency_rates),
            "strict_currency": base.strict_currency,
        }

        for field_name in ("base_percentage", "min_fee_usd", "max_fee_usd"):
            if field_name in changes:
                merged[field_name] = _to_decimal(changes[field_name], field_name)

        if "strict_currency" in changes:
            if not isinstance(changes["strict_currency"], bool):
                raise _invalid("strict_currency must be a boolean", {"field": "strict_currency"})
            merged["strict_currency"] = changes["strict_currency"]

        if "currency_rates" in changes:
            rates = changes["currency_rates"]
            if not isinstance(rates, dict):
                raise _invalid("currency_rates must be an object", {"field": "currency_rates"})
            for code, rate in rates.items():
                if not isinstance(code, str) or len(code) != 3 or not code.isalpha():
                    raise _invalid("Currency codes must be 3 letters", {"currency": code})
                merged["currency_rates"][code.upper()] = _to_decimal(rate, f"currency_rates.{code}")

        self._validate(merged)

        merged["updated_at"] = _now_iso()
        merged["updated_by"] = actor
        try:
            new_version = self._store.insert_fee_config(merged, expected_version=expected_version)
        except FeeConfigConflictError as exc:
            raise ServiceError(
                "FEE_CONFIG_CONFLICT",
                "Fee configuration was modified concurrently",
                409,
                {
                    "expected_version": exc.expected_version,
                    "current_version": exc.current_version,
                },
            ) from exc

        self._logger.info(
            "Fee configuration updated",
            extra={"version": new_version, "updated_by": actor, "fields": sorted(changes)},
        )
        return FeeConfig(version=new_version, **merged)

    @staticmethod
    def _validate(config: dict[str, Any]) -> None:
        base_percentage: Decimal = config["base_percentage"]
        if not Decimal(0) < base_percentage < Decimal(1):
            raise _invalid("base_percentage must be between 0 and 1", {"field": "base_percentage"})
        if config["min_fee_usd"] < 0:
            raise _invalid("min_fee_usd must not be negative", {"field": "min_fee_usd"})
        if config["max_fee_usd"] < config["min_fee_usd"]:
            raise _invalid("max_fee_usd must be >= min_fee_usd", {"field": "max_fee_usd"})
        for code, rate in config["currency_rates"].items():
            if rate <= 0:
                raise _invalid("Currency rates must be positive", {"currency": code})
