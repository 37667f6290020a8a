"""Configuration provider: typed lookups over ConfigEntry with fallback defaults.

Lookups never raise. A missing key, a storage outage or an unparsable value all
degrade to the caller's default and are logged as warnings, so a configuration
problem can never block a payment from being recorded.
"""
from __future__ import annotations

import json
import logging
import math
from datetime import datetime
from typing import Any

import pydantic
from pymongo.errors import PyMongoError

from app.config import settings
from app.errors import ConfigurationUnavailable, FieldError, InvalidState, NotFound, ValidationError
from app.models.configuration import ConfigCategory, ConfigEntry, ConfigValueType, PaymentSettings

logger = logging.getLogger(__name__)

GRACE_PERIOD_DAYS = "payment_grace_days"
LATE_FEE_PERCENTAGE = "payment_late_fee_percentage"
RECEIPT_REQUIRED = "payment_receipt_required"

DEFAULT_PAYMENT_ENTRIES: list[dict] = [
    {
        "category": ConfigCategory.PAYMENTS,
        "key": GRACE_PERIOD_DAYS,
        "value": 5,
        "value_type": ConfigValueType.NUMBER,
        "description": "Days after the due date before a late fee applies",
        "default_value": 5,
        "min_value": 0,
        "max_value": 30,
        "is_public": True,
        "order": 1,
    },
    {
        "category": ConfigCategory.PAYMENTS,
        "key": LATE_FEE_PERCENTAGE,
        "value": 10,
        "value_type": ConfigValueType.NUMBER,
        "description": "Late fee as a percentage of the payment amount",
        "default_value": 10,
        "min_value": 0,
        "max_value": 100,
        "is_public": True,
        "order": 2,
    },
    {
        "category": ConfigCategory.PAYMENTS,
        "key": RECEIPT_REQUIRED,
        "value": False,
        "value_type": ConfigValueType.BOOLEAN,
        "description": "Require a proof-of-payment upload for each payment",
        "default_value": False,
        "is_public": False,
        "order": 3,
    },
]


def parse_value(value_type: ConfigValueType, value: Any) -> Any:
    """Convert a stored value to its declared type."""
    if value_type == ConfigValueType.NUMBER:
        return float(value)
    if value_type == ConfigValueType.BOOLEAN:
        return value is True or value == "true" or value == 1
    if value_type == ConfigValueType.JSON:
        return json.loads(value) if isinstance(value, str) else value
    if value_type == ConfigValueType.ARRAY:
        return value if isinstance(value, list) else json.loads(value)
    return value


def validate_value(entry: ConfigEntry, new_value: Any) -> str | None:
    """Return an error message when new_value does not fit the entry, else None."""
    if entry.value_type == ConfigValueType.NUMBER:
        if isinstance(new_value, bool):
            return "Value must be a number"
        try:
            number = float(new_value)
        except (TypeError, ValueError):
            return "Value must be a number"
        if not math.isfinite(number):
            return "Value must be a finite number"
        if entry.min_value is not None and number < entry.min_value:
            return f"Minimum value is {entry.min_value:g}"
        if entry.max_value is not None and number > entry.max_value:
            return f"Maximum value is {entry.max_value:g}"
    elif entry.value_type == ConfigValueType.BOOLEAN:
        if not isinstance(new_value, bool) and new_value not in ("true", "false"):
            return "Value must be true or false"
    elif entry.value_type == ConfigValueType.STRING:
        if entry.options and new_value not in entry.options:
            return f"Value must be one of: {', '.join(entry.options)}"
    elif entry.value_type == ConfigValueType.JSON:
        if isinstance(new_value, str):
            try:
                json.loads(new_value)
            except ValueError:
                return "Value must be valid JSON"
    return None


class ConfigProvider:
    """Read access to named settings. Subclasses implement _lookup."""

    async def _lookup(self, key: str) -> Any:
        raise NotImplementedError

    async def get_value(self, key: str, default: Any = None) -> Any:
        try:
            value = await self._lookup(key)
        except ConfigurationUnavailable as exc:
            logger.warning("Configuration %s unavailable (%s), using default %r", key, exc, default)
            return default
        except Exception:
            logger.warning("Configuration %s lookup failed, using default %r", key, default, exc_info=True)
            return default
        if value is None:
            return default
        return value

    async def payment_settings(self) -> PaymentSettings:
        grace = await self.get_value(GRACE_PERIOD_DAYS, settings.default_grace_period_days)
        pct = await self.get_value(LATE_FEE_PERCENTAGE, settings.default_late_fee_percentage)
        required = await self.get_value(RECEIPT_REQUIRED, settings.default_receipt_required)
        try:
            grace_days = int(grace)
            percentage = float(pct)
            if not math.isfinite(percentage) or grace_days < 0 or percentage < 0:
                raise ValueError("late fee settings out of range")
            return PaymentSettings(
                grace_period_days=grace_days,
                late_fee_percentage=percentage,
                receipt_required=bool(required),
            )
        except (TypeError, ValueError, OverflowError):
            logger.warning("Invalid payment settings (%r, %r, %r); using defaults", grace, pct, required)
            return PaymentSettings(
                grace_period_days=settings.default_grace_period_days,
                late_fee_percentage=settings.default_late_fee_percentage,
                receipt_required=settings.default_receipt_required,
            )


class StaticConfigProvider(ConfigProvider):
    """Fixed snapshot of values; used by tests and scripts."""

    def __init__(self, values: dict[str, Any] | None = None):
        self.values = dict(values or {})

    async def _lookup(self, key: str) -> Any:
        return self.values.get(key)


class DocumentConfigProvider(ConfigProvider):
    """Reads ConfigEntry documents at call time."""

    async def _lookup(self, key: str) -> Any:
        try:
            entry = await ConfigEntry.find_one(ConfigEntry.key == key.lower(), ConfigEntry.is_active == True)
        except PyMongoError as exc:
            raise ConfigurationUnavailable(str(exc)) from exc
        except pydantic.ValidationError as exc:
            raise ConfigurationUnavailable(f"stored entry {key} does not load: {exc.error_count()} errors") from exc
        if not entry:
            logger.warning("Configuration %s not found", key)
            return None
        try:
            return parse_value(entry.value_type, entry.value)
        except (TypeError, ValueError) as exc:
            raise ConfigurationUnavailable(f"cannot parse {entry.value!r} as {entry.value_type.value}") from exc

    async def set_value(self, key: str, value: Any, actor_id: str) -> ConfigEntry:
        entry = await ConfigEntry.find_one(ConfigEntry.key == key.lower(), ConfigEntry.is_active == True)
        if not entry:
            raise NotFound(f"Configuration {key} not found")
        if not entry.is_editable:
            raise InvalidState(f"Configuration {key} is not editable")
        error = validate_value(entry, value)
        if error:
            raise ValidationError([FieldError(field="value", message=error)])
        entry.value = value
        entry.modified_by = actor_id
        entry.updated_at = datetime.utcnow()
        await entry.save()
        logger.info("Configuration %s set to %r by %s", entry.key, value, actor_id)
        return entry


async def list_entries(public_only: bool = False) -> dict[str, list[ConfigEntry]]:
    """Active entries grouped by category, ordered within each group."""
    query: dict = {"is_active": True}
    if public_only:
        query["is_public"] = True
    entries = await ConfigEntry.find(query).sort("category", "order").to_list()
    grouped: dict[str, list[ConfigEntry]] = {}
    for entry in entries:
        grouped.setdefault(entry.category.value, []).append(entry)
    return grouped


async def ensure_default_entries() -> None:
    """Insert the payment settings that are not present yet; existing values are kept."""
    for data in DEFAULT_PAYMENT_ENTRIES:
        existing = await ConfigEntry.find_one(ConfigEntry.key == data["key"])
        if existing:
            continue
        await ConfigEntry(**data).insert()
        logger.info("Seeded configuration %s", data["key"])
