"""Payment lifecycle: create, edit, mark paid (late fee + receipt), cancel, listings.

Every write goes through the same path: load, check the transition, mutate,
normalize and validate (payment_rules), then a versioned save. Overdue status
is derived lazily on load and before every save; there is no background sweep.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Optional, TypeVar

from app.config import settings
from app.errors import ConflictRetryable, FieldError, InvalidState, MissingField, NotFound, ReceiptNumberTaken, ValidationError
from app.models.payment import (
    MarkPaidBody,
    Payment,
    PaymentCreate,
    PaymentFilters,
    PaymentStatus,
    PaymentType,
    PaymentUpdate,
)
from app.models.configuration import PaymentSettings
from app.services.config_provider import ConfigProvider, DocumentConfigProvider
from app.services.late_fees import LateFeeBreakdown, compute_late_fee, load_late_fee_policy, round_money
from app.services.payment_repository import BeaniePaymentRepository, PaymentRepository
from app.services.payment_rules import can_transition, normalize, recompute_status, validate
from app.services.receipts import ReceiptNumberGenerator, receipt_sequence
from app.services.references import ReferenceResolver

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Explicit nulls for these are ignored on update
REQUIRED_FIELDS = {"type", "amount", "discount", "due_date"}

MONTH_NAMES = [
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
]


def period_name(payment: Payment) -> Optional[str]:
    """e.g. "March 2025"; only tuition payments carry a period."""
    period = payment.period
    if payment.type != PaymentType.TUITION or not period or not period.month or not period.year:
        return None
    return f"{MONTH_NAMES[period.month - 1]} {period.year}"


def resolve_file_url(url: Optional[str], base_url: str) -> Optional[str]:
    if not url:
        return None
    if url.startswith("http://") or url.startswith("https://"):
        return url
    if not url.startswith("/"):
        url = "/" + url
    return f"{base_url.rstrip('/')}{url}"


def public_view(payment: Payment, now: datetime, base_url: str) -> dict:
    """Read-only projection with derived overdue, period and receipt-file fields."""
    is_overdue = payment.status not in (PaymentStatus.PAID, PaymentStatus.CANCELLED) and now > payment.due_date
    days_overdue = math.ceil((now - payment.due_date).total_seconds() / 86400) if is_overdue else 0
    receipt_file = payment.receipt_file
    return {
        "id": str(payment.id) if payment.id else None,
        "student_id": payment.student_id,
        "guardian_id": payment.guardian_id,
        "branch_id": payment.branch_id,
        "type": payment.type.value,
        "description": payment.description,
        "amount": payment.amount,
        "discount": payment.discount,
        "late_fee": payment.late_fee,
        "total": payment.total,
        "due_date": payment.due_date,
        "paid_date": payment.paid_date,
        "period": payment.period.model_dump() if payment.period else None,
        "period_name": period_name(payment),
        "status": payment.status.value,
        "payment_method": payment.payment_method.value if payment.payment_method else None,
        "payment_reference": payment.payment_reference,
        "receipt_number": payment.receipt_number,
        "is_overdue": is_overdue,
        "days_overdue": days_overdue,
        "receipt_file": receipt_file.model_dump() if receipt_file else None,
        "receipt_file_url": resolve_file_url(receipt_file.url if receipt_file else None, base_url),
        "notes": payment.notes,
        "created_by": payment.created_by,
        "last_modified_by": payment.last_modified_by,
        "paid_by": payment.paid_by,
        "created_at": payment.created_at,
        "updated_at": payment.updated_at,
    }


async def with_conflict_retry(operation: Callable[[], Awaitable[T]], attempts: int = 2) -> T:
    """Run a whole transition again (fresh read) when it loses a concurrent write."""
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except ConflictRetryable:
            if attempt == attempts:
                raise
            logger.info("Conflict on attempt %s/%s, retrying", attempt, attempts)
    raise AssertionError("unreachable")


class PaymentLifecycle:
    """State machine and policies for payments. Collaborators are injected."""

    def __init__(
        self,
        repository: Optional[PaymentRepository] = None,
        config: Optional[ConfigProvider] = None,
        references: Optional[ReferenceResolver] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        base_url: Optional[str] = None,
        receipt_attempts: Optional[int] = None,
    ):
        self.repository = repository or BeaniePaymentRepository()
        self.config = config or DocumentConfigProvider()
        self.references = references or ReferenceResolver()
        self.clock = clock
        self.receipts = ReceiptNumberGenerator(self.repository, clock)
        self.base_url = settings.base_url if base_url is None else base_url
        self.receipt_attempts = receipt_attempts or settings.receipt_number_attempts

    # ----- internals -----

    async def _load(self, payment_id: str) -> Payment:
        payment = await self.repository.find_by_id(payment_id)
        if not payment or not payment.is_active:
            raise NotFound("Payment not found")
        recompute_status(payment, self.clock())
        return payment

    def _prepare(self, payment: Payment) -> None:
        now = self.clock()
        normalize(payment, now)
        errors = validate(payment, now)
        if errors:
            raise ValidationError(errors)
        payment.updated_at = now

    async def _check_references(self, student_id: str, branch_id: str, guardian_id: Optional[str]) -> None:
        if not await self.references.student_exists(student_id):
            raise NotFound("Student not found")
        if not await self.references.branch_exists(branch_id):
            raise NotFound("Branch not found")
        if guardian_id and not await self.references.guardian_is_active(guardian_id):
            raise NotFound("Guardian must exist and be active")

    def view(self, payment: Payment) -> dict:
        return public_view(payment, self.clock(), self.base_url)

    async def late_fee_for(self, payment: Payment) -> LateFeeBreakdown:
        policy = await load_late_fee_policy(self.config)
        return compute_late_fee(payment, policy, self.clock())

    async def _save_with_receipt(self, payment: Payment) -> None:
        generated = False
        minimum = 1
        for _ in range(self.receipt_attempts):
            if not payment.receipt_number:
                payment.receipt_number = await self.receipts.next_number(minimum)
                generated = True
            self._prepare(payment)
            try:
                await self.repository.save(payment)
                return
            except ReceiptNumberTaken as exc:
                if not generated:
                    raise ConflictRetryable(str(exc)) from exc
                logger.warning("Receipt number %s already issued, recomputing", exc.receipt_number)
                minimum = receipt_sequence(exc.receipt_number) + 1
                payment.receipt_number = None
        raise ConflictRetryable("Could not allocate a unique receipt number; retry the payment")

    # ----- operations -----

    async def create(self, draft: PaymentCreate, actor_id: str) -> dict:
        payment = Payment(**draft.model_dump(), created_by=actor_id)
        self._prepare(payment)
        await self._check_references(payment.student_id, payment.branch_id, payment.guardian_id)
        await self.repository.insert(payment)
        logger.info("Payment %s created for student %s by %s", payment.id, payment.student_id, actor_id)
        return self.view(payment)

    async def get(self, payment_id: str) -> dict:
        return self.view(await self._load(payment_id))

    async def get_with_late_fee(self, payment_id: str) -> dict:
        """Public view plus the fee that would apply if paid now (pending/overdue only)."""
        payment = await self._load(payment_id)
        preview = None
        if payment.status in (PaymentStatus.PENDING, PaymentStatus.OVERDUE):
            preview = (await self.late_fee_for(payment)).model_dump()
        return {**self.view(payment), "late_fee_preview": preview}

    async def update(
        self, payment_id: str, changes: PaymentUpdate, actor_id: str, allow_paid_edits: bool = False
    ) -> dict:
        payment = await self._load(payment_id)
        if payment.status == PaymentStatus.CANCELLED:
            raise InvalidState("Cancelled payments cannot be modified")
        if payment.status == PaymentStatus.PAID and not allow_paid_edits:
            raise InvalidState("Paid payments cannot be modified")
        if changes.guardian_id and changes.guardian_id != payment.guardian_id:
            if not await self.references.guardian_is_active(changes.guardian_id):
                raise NotFound("Guardian must exist and be active")
        for field in changes.model_fields_set:
            value = getattr(changes, field)
            if value is None and field in REQUIRED_FIELDS:
                continue
            setattr(payment, field, value)
        payment.last_modified_by = actor_id
        self._prepare(payment)
        await self.repository.save(payment)
        return self.view(payment)

    async def deactivate(self, payment_id: str, actor_id: str, allow_paid: bool = False) -> None:
        """Soft delete; status is left as it is."""
        payment = await self._load(payment_id)
        if payment.status == PaymentStatus.PAID and not allow_paid:
            raise InvalidState("Paid payments cannot be deleted; cancel them instead")
        payment.is_active = False
        payment.last_modified_by = actor_id
        self._prepare(payment)
        await self.repository.save(payment)
        logger.info("Payment %s deactivated by %s", payment.id, actor_id)

    async def mark_as_paid(self, payment_id: str, details: MarkPaidBody, actor_id: str) -> dict:
        payment = await self._load(payment_id)
        if payment.status == PaymentStatus.PAID:
            raise InvalidState("Payment is already marked as paid")
        if not can_transition(payment.status, PaymentStatus.PAID):
            raise InvalidState(f"A {payment.status.value} payment cannot be marked as paid")
        if not details.payment_method:
            raise MissingField("payment_method", "Payment method is required")

        now = self.clock()
        applied = None
        if details.apply_late_fee:
            fee = await self.late_fee_for(payment)
            if fee.applies:
                payment.late_fee = fee.fee_amount
                applied = {
                    "days_late": fee.days_late,
                    "grace_period_days": fee.grace_period_days,
                    "fee_percentage": fee.fee_percentage,
                    "fee_amount": fee.fee_amount,
                }

        payment.status = PaymentStatus.PAID
        payment.paid_date = details.paid_date or now
        payment.payment_method = details.payment_method
        payment.payment_reference = details.payment_reference
        payment.paid_by = actor_id
        payment.last_modified_by = actor_id
        if details.notes:
            payment.notes = details.notes

        await self._save_with_receipt(payment)
        logger.info(
            "Payment %s marked paid by %s, receipt %s, late fee %s",
            payment.id, actor_id, payment.receipt_number, payment.late_fee,
        )
        return {**self.view(payment), "late_fee_applied": applied}

    async def cancel(self, payment_id: str, actor_id: str, reason: Optional[str], allow_paid: bool = False) -> dict:
        """Cancel with a reason; paid records only when allow_paid (admins)."""
        payment = await self._load(payment_id)
        if payment.status == PaymentStatus.CANCELLED:
            raise InvalidState("Payment is already cancelled")
        if payment.status == PaymentStatus.PAID and not allow_paid:
            raise InvalidState("Only administrators can cancel a paid payment")
        if not reason or not reason.strip():
            raise MissingField("reason", "A reason is required to cancel a payment")
        entry = f"Cancelled: {reason.strip()}"
        payment.notes = f"{payment.notes} | {entry}" if payment.notes else entry
        payment.status = PaymentStatus.CANCELLED
        payment.last_modified_by = actor_id
        self._prepare(payment)
        await self.repository.save(payment)
        logger.info("Payment %s cancelled by %s", payment.id, actor_id)
        return self.view(payment)

    async def preview_late_fee(self, payment_id: str) -> dict:
        payment = await self._load(payment_id)
        if payment.status in (PaymentStatus.PAID, PaymentStatus.CANCELLED):
            raise InvalidState(f"Payment is already {payment.status.value}")
        fee = await self.late_fee_for(payment)
        total_with_fee = round_money(Decimal(str(payment.total)) + Decimal(str(fee.fee_amount)))
        return {
            "payment_id": str(payment.id),
            "original_amount": payment.amount,
            **fee.model_dump(),
            "total_with_fee": total_with_fee,
        }

    async def list_pending(self, filters: Optional[PaymentFilters] = None) -> list[dict]:
        payments = await self.repository.list_pending(filters, self.clock().date())
        return [self.view(p) for p in payments]

    async def list_overdue(self, filters: Optional[PaymentFilters] = None) -> list[dict]:
        now = self.clock()
        payments = await self.repository.list_overdue(filters, now.date())
        policy = await load_late_fee_policy(self.config)
        results = []
        for payment in payments:
            recompute_status(payment, now)
            fee = compute_late_fee(payment, policy, now)
            results.append({**self.view(payment), "late_fee_preview": fee.model_dump()})
        return results

    async def list_payments(
        self,
        filters: Optional[PaymentFilters] = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> dict:
        if page < 1 or limit < 1:
            raise ValidationError([FieldError(field="page", message="page and limit must be positive")])
        items, total = await self.repository.list_page(filters, page, limit, sort_by, sort_order)
        now = self.clock()
        for payment in items:
            recompute_status(payment, now)
        total_pages = math.ceil(total / limit) if total else 0
        return {
            "items": [self.view(p) for p in items],
            "pagination": {
                "total": total,
                "page": page,
                "limit": limit,
                "total_pages": total_pages,
                "has_next_page": page < total_pages,
                "has_prev_page": page > 1,
            },
        }

    async def stats_by_status(self, filters: Optional[PaymentFilters] = None) -> dict:
        """Counts and totals per stored status, per type, and paid per month (last 12)."""
        by_status_rows = await self.repository.aggregate_by_status(filters)
        by_type_rows = await self.repository.aggregate_by_type(filters)
        by_month_rows = await self.repository.aggregate_paid_by_month(filters)

        by_status = {
            status.value: {"count": 0, "total_amount": 0.0} for status in PaymentStatus
        }
        for row in by_status_rows:
            by_status[row["_id"]] = {"count": row["count"], "total_amount": round(row["total_amount"], 2)}
        return {
            "total": sum(row["count"] for row in by_status_rows),
            "total_amount": round(sum(row["total_amount"] for row in by_status_rows), 2),
            "by_status": by_status,
            "by_type": {
                row["_id"]: {"count": row["count"], "total_amount": round(row["total_amount"], 2)}
                for row in by_type_rows
            },
            "by_month": [
                {
                    "year": row["_id"]["year"],
                    "month": row["_id"]["month"],
                    "count": row["count"],
                    "total_amount": round(row["total_amount"], 2),
                }
                for row in by_month_rows
            ],
        }

    async def payment_settings(self) -> PaymentSettings:
        return await self.config.payment_settings()
