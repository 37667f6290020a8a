"""Payments: listings, stats, create/edit, mark paid, cancel, late-fee preview."""
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query

from app.api.deps import Lifecycle, StaffOnly, is_admin
from app.models.payment import (
    CancelBody,
    MarkPaidBody,
    PaymentCreate,
    PaymentFilters,
    PaymentStatus,
    PaymentType,
    PaymentUpdate,
)
from app.services.payments import with_conflict_retry

router = APIRouter()


def payment_filters(
    status: PaymentStatus | None = None,
    type: PaymentType | None = None,
    student_id: str | None = None,
    guardian_id: str | None = None,
    branch_id: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    search: str | None = Query(None, description="Receipt number, reference or description"),
) -> PaymentFilters:
    return PaymentFilters(
        status=status,
        type=type,
        student_id=student_id,
        guardian_id=guardian_id,
        branch_id=branch_id,
        start_date=start_date,
        end_date=end_date,
        search=search,
    )


Filters = Annotated[PaymentFilters, Depends(payment_filters)]


@router.get("/")
async def list_payments(
    user: StaffOnly,
    lifecycle: Lifecycle,
    filters: Filters,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    sort_by: str = "created_at",
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
):
    return await lifecycle.list_payments(filters, page, limit, sort_by, sort_order)


@router.get("/pending")
async def list_pending(user: StaffOnly, lifecycle: Lifecycle, branch_id: str | None = None, student_id: str | None = None):
    items = await lifecycle.list_pending(PaymentFilters(branch_id=branch_id, student_id=student_id))
    return {"items": items, "count": len(items)}


@router.get("/overdue")
async def list_overdue(user: StaffOnly, lifecycle: Lifecycle, branch_id: str | None = None, student_id: str | None = None):
    """Overdue payments, each with the late fee that would apply if paid today."""
    items = await lifecycle.list_overdue(PaymentFilters(branch_id=branch_id, student_id=student_id))
    return {"items": items, "count": len(items)}


@router.get("/stats")
async def payment_stats(
    user: StaffOnly,
    lifecycle: Lifecycle,
    branch_id: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
):
    filters = PaymentFilters(branch_id=branch_id, start_date=start_date, end_date=end_date)
    return await lifecycle.stats_by_status(filters)


@router.get("/settings")
async def payment_settings(user: StaffOnly, lifecycle: Lifecycle):
    return await lifecycle.payment_settings()


@router.get("/student/{student_id}")
async def payments_for_student(student_id: str, user: StaffOnly, lifecycle: Lifecycle):
    result = await lifecycle.list_payments(PaymentFilters(student_id=student_id), limit=200, sort_by="due_date")
    return {"items": result["items"], "count": result["pagination"]["total"]}


@router.get("/guardian/{guardian_id}")
async def payments_for_guardian(guardian_id: str, user: StaffOnly, lifecycle: Lifecycle):
    result = await lifecycle.list_payments(PaymentFilters(guardian_id=guardian_id), limit=200, sort_by="due_date")
    return {"items": result["items"], "count": result["pagination"]["total"]}


@router.post("/", status_code=201)
async def create_payment(data: PaymentCreate, user: StaffOnly, lifecycle: Lifecycle):
    return await lifecycle.create(data, str(user.id))


@router.get("/{payment_id}")
async def get_payment(payment_id: str, user: StaffOnly, lifecycle: Lifecycle):
    return await lifecycle.get_with_late_fee(payment_id)


@router.get("/{payment_id}/late-fee")
async def preview_late_fee(payment_id: str, user: StaffOnly, lifecycle: Lifecycle):
    return await lifecycle.preview_late_fee(payment_id)


@router.put("/{payment_id}")
async def update_payment(payment_id: str, data: PaymentUpdate, user: StaffOnly, lifecycle: Lifecycle):
    """Admins may also edit paid payments."""
    return await with_conflict_retry(
        lambda: lifecycle.update(payment_id, data, str(user.id), allow_paid_edits=is_admin(user))
    )


@router.delete("/{payment_id}")
async def delete_payment(payment_id: str, user: StaffOnly, lifecycle: Lifecycle):
    await with_conflict_retry(lambda: lifecycle.deactivate(payment_id, str(user.id), allow_paid=is_admin(user)))
    return {"status": "ok"}


@router.put("/{payment_id}/mark-paid")
async def mark_paid(payment_id: str, body: MarkPaidBody, user: StaffOnly, lifecycle: Lifecycle):
    return await with_conflict_retry(lambda: lifecycle.mark_as_paid(payment_id, body, str(user.id)))


@router.put("/{payment_id}/cancel")
async def cancel_payment(payment_id: str, body: CancelBody, user: StaffOnly, lifecycle: Lifecycle):
    """Admins may also cancel paid payments."""
    return await with_conflict_retry(
        lambda: lifecycle.cancel(payment_id, str(user.id), body.reason, allow_paid=is_admin(user))
    )
