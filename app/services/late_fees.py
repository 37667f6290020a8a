"""Grace-period late fee: pure computation over a payment and a policy snapshot."""
from __future__ import annotations

import logging
import math
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from pydantic import BaseModel

from app.config import settings
from app.services.config_provider import ConfigProvider

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


class LateFeePolicy(BaseModel):
    grace_period_days: int = 5
    fee_percentage: float = 10.0


class LateFeeBreakdown(BaseModel):
    applies: bool
    days_late: int
    grace_period_days: int
    fee_percentage: float
    fee_amount: float


def round_money(value: Decimal) -> float:
    """Round to cents, halves away from zero."""
    return float(value.quantize(_CENT, rounding=ROUND_HALF_UP))


def as_date(value: date | datetime) -> date:
    """Strip the time of day."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raise TypeError(f"expected a date, got {type(value).__name__}")


def days_between(start: date | datetime, end: date | datetime) -> int:
    """Whole calendar days from start to end (negative when end is earlier)."""
    return (as_date(end) - as_date(start)).days


def compute_late_fee(payment, policy: LateFeePolicy, today: Optional[date | datetime] = None) -> LateFeeBreakdown:
    """Late fee owed on `payment` (anything with due_date and amount) as of `today`.

    Never raises: a malformed payment or policy yields a no-fee result with the
    default grace period, and the failure is logged.
    """
    try:
        today = as_date(today if today is not None else datetime.utcnow())
        grace = int(policy.grace_period_days)
        pct = float(policy.fee_percentage)
        if not math.isfinite(pct) or pct < 0 or grace < 0:
            raise ValueError(f"invalid late fee policy: {grace} days, {pct}%")
        days_late = days_between(payment.due_date, today)

        if days_late <= grace:
            return LateFeeBreakdown(
                applies=False,
                days_late=days_late,
                grace_period_days=grace,
                fee_percentage=0,
                fee_amount=0,
            )

        fee = Decimal(str(payment.amount)) * Decimal(str(pct)) / Decimal(100)
        return LateFeeBreakdown(
            applies=True,
            days_late=days_late,
            grace_period_days=grace,
            fee_percentage=pct,
            fee_amount=round_money(fee),
        )
    except Exception:
        logger.exception("Late fee computation failed for payment %s", getattr(payment, "id", None))
        return LateFeeBreakdown(
            applies=False,
            days_late=0,
            grace_period_days=settings.default_grace_period_days,
            fee_percentage=0,
            fee_amount=0,
        )


async def load_late_fee_policy(provider: ConfigProvider) -> LateFeePolicy:
    """Snapshot of the late-fee settings at call time."""
    payment_settings = await provider.payment_settings()
    return LateFeePolicy(
        grace_period_days=payment_settings.grace_period_days,
        fee_percentage=payment_settings.late_fee_percentage,
    )
