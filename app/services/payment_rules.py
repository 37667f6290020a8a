"""Pre-persist normalization and validation for Payment documents."""
from __future__ import annotations

import math
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from app.errors import FieldError
from app.models.payment import DEFAULT_DESCRIPTIONS, Payment, PaymentStatus, PaymentType
from app.services.late_fees import as_date, round_money
from app.services.receipts import RECEIPT_PATTERN

MAX_DESCRIPTION = 200
MAX_REFERENCE = 100
MAX_NOTES = 500
MIN_PERIOD_YEAR = 2020
MAX_PERIOD_YEAR = 2100

TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.PENDING: {PaymentStatus.PAID, PaymentStatus.OVERDUE, PaymentStatus.CANCELLED},
    PaymentStatus.OVERDUE: {PaymentStatus.PAID, PaymentStatus.CANCELLED},
    # Cancelling a paid record is allowed here; the API restricts it to admins.
    PaymentStatus.PAID: {PaymentStatus.CANCELLED},
    PaymentStatus.CANCELLED: set(),
}


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in TRANSITIONS[current]


def has_two_decimals(value: float) -> bool:
    try:
        exponent = Decimal(str(value)).normalize().as_tuple().exponent
    except InvalidOperation:
        return False
    return isinstance(exponent, int) and exponent >= -2


def compute_total(payment: Payment) -> float:
    """amount - discount + late_fee in cents; NaN when an input is not finite (validate rejects it)."""
    try:
        total = Decimal(str(payment.amount)) - Decimal(str(payment.discount or 0)) + Decimal(str(payment.late_fee or 0))
        return round_money(total)
    except InvalidOperation:
        return float("nan")


def recompute_status(payment: Payment, today: date | datetime) -> bool:
    """Pending and due before today (calendar days) becomes overdue. Returns True if changed."""
    if payment.status != PaymentStatus.PENDING:
        return False
    if as_date(payment.due_date) < as_date(today):
        payment.status = PaymentStatus.OVERDUE
        return True
    return False


def normalize(payment: Payment, today: date | datetime) -> None:
    """Derived fields: description default, tuition-only period, total, overdue status."""
    if not payment.description or not payment.description.strip():
        payment.description = DEFAULT_DESCRIPTIONS.get(payment.type, "Payment")
    else:
        payment.description = payment.description.strip()
    if payment.type != PaymentType.TUITION:
        payment.period = None
    if payment.payment_reference is not None:
        payment.payment_reference = payment.payment_reference.strip()
    if payment.notes is not None:
        payment.notes = payment.notes.strip()
    payment.total = compute_total(payment)
    recompute_status(payment, today)


def _check_money(errors: list[FieldError], field: str, value) -> bool:
    if value is None:
        errors.append(FieldError(field=field, message=f"{field} is required"))
        return False
    if value < 0:
        errors.append(FieldError(field=field, message=f"{field} cannot be negative"))
        return False
    if not has_two_decimals(value):
        errors.append(FieldError(field=field, message=f"{field} must have at most 2 decimal places"))
        return False
    return True


def validate(payment: Payment, now: datetime) -> list[FieldError]:
    """Field-level problems with `payment`; empty when it can be stored."""
    errors: list[FieldError] = []

    if not payment.student_id:
        errors.append(FieldError(field="student_id", message="Student is required"))
    if not payment.branch_id:
        errors.append(FieldError(field="branch_id", message="Branch is required"))
    if not payment.created_by:
        errors.append(FieldError(field="created_by", message="created_by is required"))

    amount_ok = _check_money(errors, "amount", payment.amount)
    discount_ok = _check_money(errors, "discount", payment.discount)
    if amount_ok and discount_ok and payment.discount > payment.amount:
        errors.append(FieldError(field="discount", message="Discount cannot exceed the amount"))
    late_fee = payment.late_fee or 0
    if not math.isfinite(late_fee):
        errors.append(FieldError(field="late_fee", message="late_fee must be a finite amount"))
    elif late_fee < 0:
        errors.append(FieldError(field="late_fee", message="late_fee cannot be negative"))

    if payment.type == PaymentType.TUITION:
        period = payment.period
        if period is None or period.month is None:
            errors.append(FieldError(field="period.month", message="Month is required for tuition payments"))
        elif not 1 <= period.month <= 12:
            errors.append(FieldError(field="period.month", message="Month must be between 1 and 12"))
        if period is None or period.year is None:
            errors.append(FieldError(field="period.year", message="Year is required for tuition payments"))
        elif not MIN_PERIOD_YEAR <= period.year <= MAX_PERIOD_YEAR:
            errors.append(
                FieldError(field="period.year", message=f"Year must be between {MIN_PERIOD_YEAR} and {MAX_PERIOD_YEAR}")
            )

    if payment.paid_date and payment.paid_date > now:
        errors.append(FieldError(field="paid_date", message="Paid date cannot be in the future"))

    if payment.status == PaymentStatus.PAID and not payment.payment_method:
        errors.append(FieldError(field="payment_method", message="Payment method is required for paid payments"))
    if payment.status in (PaymentStatus.PENDING, PaymentStatus.OVERDUE) and payment.payment_method:
        errors.append(FieldError(field="payment_method", message="Payment method is only set when paid"))

    if payment.receipt_number and not RECEIPT_PATTERN.match(payment.receipt_number):
        errors.append(FieldError(field="receipt_number", message="Receipt number must look like REC-YYYYMM-NNNNN"))

    if payment.description and len(payment.description) > MAX_DESCRIPTION:
        errors.append(FieldError(field="description", message=f"Description cannot exceed {MAX_DESCRIPTION} characters"))
    if payment.payment_reference and len(payment.payment_reference) > MAX_REFERENCE:
        errors.append(
            FieldError(field="payment_reference", message=f"Reference cannot exceed {MAX_REFERENCE} characters")
        )
    if payment.notes and len(payment.notes) > MAX_NOTES:
        errors.append(FieldError(field="notes", message=f"Notes cannot exceed {MAX_NOTES} characters"))

    return errors
