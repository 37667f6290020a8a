"""PaymentLifecycle against the in-memory store: transitions, late fees, receipts."""

import math
from datetime import datetime, timedelta

import pytest
from beanie import PydanticObjectId

from app.errors import ConflictRetryable, InvalidState, MissingField, NotFound, ReceiptNumberTaken, ValidationError
from app.models import MarkPaidBody, Payment, PaymentFilters, PaymentMethod, PaymentPeriod, PaymentType, PaymentUpdate
from app.models.configuration import ConfigEntry
from app.models.payment import ReceiptFile
from app.services.config_provider import (
    GRACE_PERIOD_DAYS,
    LATE_FEE_PERCENTAGE,
    DocumentConfigProvider,
    StaticConfigProvider,
)
from app.services.payment_repository import BeaniePaymentRepository
from app.services.payments import PaymentLifecycle, with_conflict_retry

NOW = datetime(2026, 10, 17, 10, 30)
ACTOR = "user-reception"


def paid_with(method=PaymentMethod.CASH, **kwargs) -> MarkPaidBody:
    return MarkPaidBody(payment_method=method, **kwargs)


async def stored(payment_id: str) -> Payment:
    return await Payment.get(PydanticObjectId(payment_id))


# ----- create -----

async def test_create_fills_derived_fields(lifecycle, make_draft, refs):
    view = await lifecycle.create(make_draft(type=PaymentType.UNIFORM, amount=450, discount=50), ACTOR)

    assert view["status"] == "pending"
    assert view["description"] == "Uniform purchase"
    assert view["total"] == 400
    assert view["receipt_number"] is None
    assert view["created_by"] == ACTOR
    assert view["is_overdue"] is False

    doc = await stored(view["id"])
    assert doc.version == 0
    assert doc.student_id == refs["student_id"]


async def test_create_tuition_requires_period(lifecycle, make_draft):
    with pytest.raises(ValidationError) as exc:
        await lifecycle.create(make_draft(type=PaymentType.TUITION), ACTOR)
    assert exc.value.fields == ["period.month", "period.year"]
    assert await Payment.find_all().count() == 0


async def test_create_tuition_names_period(lifecycle, make_draft):
    view = await lifecycle.create(make_draft(type=PaymentType.TUITION, period=PaymentPeriod(month=3, year=2026)), ACTOR)
    assert view["period_name"] == "March 2026"
    assert view["description"] == "Monthly tuition payment"


async def test_create_with_past_due_date_is_overdue(lifecycle, make_draft):
    view = await lifecycle.create(make_draft(due_date=NOW - timedelta(days=3)), ACTOR)
    assert view["status"] == "overdue"
    assert view["is_overdue"] is True
    assert view["days_overdue"] == 3


async def test_create_checks_references(lifecycle, make_draft, refs):
    with pytest.raises(NotFound, match="Student not found"):
        await lifecycle.create(make_draft(student_id="64b000000000000000000000"), ACTOR)
    with pytest.raises(NotFound, match="Branch not found"):
        await lifecycle.create(make_draft(branch_id="not-an-id"), ACTOR)
    with pytest.raises(NotFound, match="Guardian"):
        await lifecycle.create(make_draft(guardian_id=refs["inactive_guardian_id"]), ACTOR)

    view = await lifecycle.create(make_draft(guardian_id=refs["guardian_id"]), ACTOR)
    assert view["guardian_id"] == refs["guardian_id"]


# ----- mark as paid -----

async def test_mark_paid_twenty_days_late_applies_fee(lifecycle, make_draft):
    created = await lifecycle.create(make_draft(amount=1000, due_date=NOW - timedelta(days=20)), ACTOR)

    view = await lifecycle.mark_as_paid(created["id"], paid_with(PaymentMethod.TRANSFER, payment_reference=" TX-1 "), ACTOR)

    assert view["status"] == "paid"
    assert view["late_fee"] == 100.0
    assert view["total"] == 1100.0
    assert view["receipt_number"] == "REC-202610-00001"
    assert view["payment_method"] == "transfer"
    assert view["payment_reference"] == "TX-1"
    assert view["paid_by"] == ACTOR
    assert view["paid_date"] == NOW
    assert view["late_fee_applied"] == {
        "days_late": 20,
        "grace_period_days": 5,
        "fee_percentage": 10,
        "fee_amount": 100.0,
    }

    doc = await stored(created["id"])
    assert doc.total == 1100.0
    assert doc.version == 1


async def test_mark_paid_within_grace_has_no_fee(lifecycle, make_draft):
    created = await lifecycle.create(make_draft(amount=800, due_date=NOW - timedelta(days=5)), ACTOR)
    view = await lifecycle.mark_as_paid(created["id"], paid_with(), ACTOR)
    assert view["late_fee"] == 0
    assert view["total"] == 800
    assert view["late_fee_applied"] is None


async def test_mark_paid_can_waive_late_fee(lifecycle, make_draft):
    created = await lifecycle.create(make_draft(amount=1000, due_date=NOW - timedelta(days=20)), ACTOR)
    view = await lifecycle.mark_as_paid(created["id"], paid_with(apply_late_fee=False), ACTOR)
    assert view["total"] == 1000
    assert view["late_fee_applied"] is None


async def test_mark_paid_twice_is_rejected_and_leaves_record(lifecycle, make_draft):
    created = await lifecycle.create(make_draft(), ACTOR)
    first = await lifecycle.mark_as_paid(created["id"], paid_with(), ACTOR)

    with pytest.raises(InvalidState, match="already marked as paid"):
        await lifecycle.mark_as_paid(created["id"], paid_with(PaymentMethod.CARD), "someone-else")

    doc = await stored(created["id"])
    assert doc.receipt_number == first["receipt_number"]
    assert doc.payment_method == PaymentMethod.CASH
    assert doc.paid_by == ACTOR
    assert doc.version == 1


async def test_mark_paid_requires_method(lifecycle, make_draft):
    created = await lifecycle.create(make_draft(), ACTOR)
    with pytest.raises(MissingField) as exc:
        await lifecycle.mark_as_paid(created["id"], MarkPaidBody(), ACTOR)
    assert exc.value.field == "payment_method"
    assert (await stored(created["id"])).status == "pending"


async def test_mark_paid_rejects_cancelled(lifecycle, make_draft):
    created = await lifecycle.create(make_draft(), ACTOR)
    await lifecycle.cancel(created["id"], ACTOR, "Duplicate charge")
    with pytest.raises(InvalidState):
        await lifecycle.mark_as_paid(created["id"], paid_with(), ACTOR)


async def test_mark_paid_rejects_future_paid_date(lifecycle, make_draft):
    created = await lifecycle.create(make_draft(), ACTOR)
    with pytest.raises(ValidationError) as exc:
        await lifecycle.mark_as_paid(created["id"], paid_with(paid_date=NOW + timedelta(days=1)), ACTOR)
    assert exc.value.fields == ["paid_date"]


async def test_receipts_are_sequential_within_month(lifecycle, make_draft, clock):
    first = await lifecycle.create(make_draft(), ACTOR)
    second = await lifecycle.create(make_draft(), ACTOR)
    third = await lifecycle.create(make_draft(), ACTOR)

    a = await lifecycle.mark_as_paid(first["id"], paid_with(), ACTOR)
    b = await lifecycle.mark_as_paid(second["id"], paid_with(), ACTOR)
    clock.now = NOW + timedelta(days=20)
    c = await lifecycle.mark_as_paid(third["id"], paid_with(), ACTOR)

    assert a["receipt_number"] == "REC-202610-00001"
    assert b["receipt_number"] == "REC-202610-00002"
    assert c["receipt_number"] == "REC-202611-00001"


class CollidingRepository(BeaniePaymentRepository):
    """Rejects the first `collisions` receipt numbers it is asked to save."""

    def __init__(self, collisions: int):
        self.collisions = collisions
        self.rejected = []

    async def save(self, payment):
        if payment.receipt_number and len(self.rejected) < self.collisions:
            self.rejected.append(payment.receipt_number)
            raise ReceiptNumberTaken(payment.receipt_number)
        return await super().save(payment)


async def test_receipt_collision_retries_with_next_number(config, clock, make_draft):
    repository = CollidingRepository(collisions=1)
    lifecycle = PaymentLifecycle(repository=repository, config=config, clock=clock, base_url="")
    created = await lifecycle.create(make_draft(), ACTOR)

    view = await lifecycle.mark_as_paid(created["id"], paid_with(), ACTOR)

    assert repository.rejected == ["REC-202610-00001"]
    assert view["receipt_number"] == "REC-202610-00002"


async def test_receipt_collisions_give_up_after_attempts(config, clock, make_draft):
    repository = CollidingRepository(collisions=10)
    lifecycle = PaymentLifecycle(repository=repository, config=config, clock=clock, base_url="", receipt_attempts=3)
    created = await lifecycle.create(make_draft(), ACTOR)

    with pytest.raises(ConflictRetryable):
        await lifecycle.mark_as_paid(created["id"], paid_with(), ACTOR)

    assert repository.rejected == ["REC-202610-00001", "REC-202610-00002", "REC-202610-00003"]
    assert (await stored(created["id"])).status == "pending"


# ----- cancel -----

async def test_cancel_appends_reason_to_notes(lifecycle, make_draft):
    created = await lifecycle.create(make_draft(notes="Family discount agreed"), ACTOR)
    view = await lifecycle.cancel(created["id"], ACTOR, "  Student withdrew ")
    assert view["status"] == "cancelled"
    assert view["notes"] == "Family discount agreed | Cancelled: Student withdrew"
    assert view["last_modified_by"] == ACTOR


async def test_cancel_twice_is_rejected(lifecycle, make_draft):
    created = await lifecycle.create(make_draft(), ACTOR)
    await lifecycle.cancel(created["id"], ACTOR, "Wrong amount")
    with pytest.raises(InvalidState, match="already cancelled"):
        await lifecycle.cancel(created["id"], ACTOR, "Again")
    assert (await stored(created["id"])).notes == "Cancelled: Wrong amount"


async def test_cancel_requires_reason(lifecycle, make_draft):
    created = await lifecycle.create(make_draft(), ACTOR)
    with pytest.raises(MissingField) as exc:
        await lifecycle.cancel(created["id"], ACTOR, "   ")
    assert exc.value.field == "reason"


async def test_cancel_paid_keeps_payment_details(lifecycle, make_draft):
    created = await lifecycle.create(make_draft(), ACTOR)
    paid = await lifecycle.mark_as_paid(created["id"], paid_with(PaymentMethod.CARD), ACTOR)
    view = await lifecycle.cancel(created["id"], "admin-1", "Refunded", allow_paid=True)
    assert view["status"] == "cancelled"
    assert view["receipt_number"] == paid["receipt_number"]
    assert view["payment_method"] == "card"


async def test_cancel_checks_paid_status_on_the_record_it_saves(lifecycle, make_draft):
    created = await lifecycle.create(make_draft(), ACTOR)
    # Paid after the caller last looked at it
    await lifecycle.mark_as_paid(created["id"], paid_with(), "admin-1")

    with pytest.raises(InvalidState, match="Only administrators"):
        await lifecycle.cancel(created["id"], ACTOR, "Changed my mind")

    doc = await stored(created["id"])
    assert doc.status == "paid"
    assert doc.notes is None
    assert doc.version == 1


# ----- update / deactivate -----

async def test_update_recomputes_total(lifecycle, make_draft):
    created = await lifecycle.create(make_draft(amount=600), ACTOR)
    view = await lifecycle.update(created["id"], PaymentUpdate(discount=100, amount=None), "admin-1")
    assert view["amount"] == 600
    assert view["total"] == 500
    assert view["last_modified_by"] == "admin-1"


async def test_update_paid_needs_privilege(lifecycle, make_draft):
    created = await lifecycle.create(make_draft(), ACTOR)
    await lifecycle.mark_as_paid(created["id"], paid_with(), ACTOR)

    with pytest.raises(InvalidState):
        await lifecycle.update(created["id"], PaymentUpdate(notes="typo"), ACTOR)
    view = await lifecycle.update(created["id"], PaymentUpdate(notes="typo"), "admin-1", allow_paid_edits=True)
    assert view["notes"] == "typo"


async def test_update_cancelled_is_rejected(lifecycle, make_draft):
    created = await lifecycle.create(make_draft(), ACTOR)
    await lifecycle.cancel(created["id"], ACTOR, "Duplicate")
    with pytest.raises(InvalidState):
        await lifecycle.update(created["id"], PaymentUpdate(notes="x"), "admin-1", allow_paid_edits=True)


async def test_update_validates_discount(lifecycle, make_draft):
    created = await lifecycle.create(make_draft(amount=100), ACTOR)
    with pytest.raises(ValidationError) as exc:
        await lifecycle.update(created["id"], PaymentUpdate(discount=150), ACTOR)
    assert exc.value.fields == ["discount"]


async def test_deactivate_hides_payment(lifecycle, make_draft):
    created = await lifecycle.create(make_draft(), ACTOR)
    await lifecycle.deactivate(created["id"], ACTOR)
    with pytest.raises(NotFound):
        await lifecycle.get(created["id"])
    assert (await stored(created["id"])).status == "pending"


async def test_deactivate_paid_needs_privilege(lifecycle, make_draft):
    created = await lifecycle.create(make_draft(), ACTOR)
    await lifecycle.mark_as_paid(created["id"], paid_with(), ACTOR)
    with pytest.raises(InvalidState):
        await lifecycle.deactivate(created["id"], ACTOR)
    await lifecycle.deactivate(created["id"], "admin-1", allow_paid=True)


# ----- reads -----

async def test_get_unknown_id(lifecycle, db):
    with pytest.raises(NotFound):
        await lifecycle.get("nope")
    with pytest.raises(NotFound):
        await lifecycle.get("64b000000000000000000000")


async def test_read_reclassifies_overdue_lazily(lifecycle, make_draft, clock):
    created = await lifecycle.create(make_draft(due_date=NOW + timedelta(days=1)), ACTOR)
    clock.now = NOW + timedelta(days=3)
    view = await lifecycle.get(created["id"])
    assert view["status"] == "overdue"
    assert (await stored(created["id"])).status == "pending"


async def test_get_with_late_fee_preview(lifecycle, make_draft):
    created = await lifecycle.create(make_draft(amount=200, due_date=NOW - timedelta(days=8)), ACTOR)
    view = await lifecycle.get_with_late_fee(created["id"])
    assert view["late_fee_preview"]["applies"] is True
    assert view["late_fee_preview"]["fee_amount"] == 20.0

    await lifecycle.mark_as_paid(created["id"], paid_with(), ACTOR)
    assert (await lifecycle.get_with_late_fee(created["id"]))["late_fee_preview"] is None


async def test_preview_late_fee(lifecycle, make_draft):
    created = await lifecycle.create(make_draft(amount=1000, discount=100, due_date=NOW - timedelta(days=20)), ACTOR)
    preview = await lifecycle.preview_late_fee(created["id"])
    assert preview["payment_id"] == created["id"]
    assert preview["original_amount"] == 1000
    assert preview["days_late"] == 20
    assert preview["fee_amount"] == 100.0
    assert preview["total_with_fee"] == 1000.0

    await lifecycle.mark_as_paid(created["id"], paid_with(), ACTOR)
    with pytest.raises(InvalidState):
        await lifecycle.preview_late_fee(created["id"])


async def test_receipt_file_url_is_absolute(lifecycle, make_draft):
    created = await lifecycle.create(make_draft(), ACTOR)
    doc = await stored(created["id"])
    doc.receipt_file = ReceiptFile(filename="r.pdf", url="uploads/receipts/r.pdf")
    await doc.save()
    view = await lifecycle.get(created["id"])
    assert view["receipt_file_url"] == "http://files.example.com/uploads/receipts/r.pdf"


async def test_pending_and_overdue_listings(lifecycle, make_draft, refs):
    upcoming = await lifecycle.create(make_draft(due_date=NOW + timedelta(days=2)), ACTOR)
    late = await lifecycle.create(make_draft(amount=300, due_date=NOW - timedelta(days=10)), ACTOR)
    settled = await lifecycle.create(make_draft(due_date=NOW - timedelta(days=1)), ACTOR)
    await lifecycle.mark_as_paid(settled["id"], paid_with(), ACTOR)

    pending = await lifecycle.list_pending()
    assert [p["id"] for p in pending] == [upcoming["id"]]

    overdue = await lifecycle.list_overdue(PaymentFilters(student_id=refs["student_id"]))
    assert [p["id"] for p in overdue] == [late["id"]]
    assert overdue[0]["late_fee_preview"]["fee_amount"] == 30.0


async def test_list_payments_paginates(lifecycle, make_draft):
    for _ in range(5):
        await lifecycle.create(make_draft(), ACTOR)

    page = await lifecycle.list_payments(page=2, limit=2)
    assert len(page["items"]) == 2
    assert page["pagination"] == {
        "total": 5,
        "page": 2,
        "limit": 2,
        "total_pages": 3,
        "has_next_page": True,
        "has_prev_page": True,
    }


async def test_list_payments_search_by_receipt(lifecycle, make_draft):
    first = await lifecycle.create(make_draft(), ACTOR)
    await lifecycle.create(make_draft(), ACTOR)
    paid = await lifecycle.mark_as_paid(first["id"], paid_with(), ACTOR)

    result = await lifecycle.list_payments(PaymentFilters(search=paid["receipt_number"]))
    assert [p["id"] for p in result["items"]] == [first["id"]]


async def test_stats_by_status(lifecycle, make_draft):
    a = await lifecycle.create(make_draft(amount=100), ACTOR)
    await lifecycle.create(make_draft(amount=200, type=PaymentType.UNIFORM), ACTOR)
    c = await lifecycle.create(make_draft(amount=50), ACTOR)
    await lifecycle.mark_as_paid(a["id"], paid_with(), ACTOR)
    await lifecycle.cancel(c["id"], ACTOR, "Duplicate")

    stats = await lifecycle.stats_by_status()

    assert stats["total"] == 3
    assert stats["total_amount"] == 350
    assert stats["by_status"]["paid"] == {"count": 1, "total_amount": 100}
    assert stats["by_status"]["pending"] == {"count": 1, "total_amount": 200}
    assert stats["by_status"]["overdue"] == {"count": 0, "total_amount": 0.0}
    assert stats["by_type"]["uniform"]["count"] == 1
    assert stats["by_month"] == [{"year": 2026, "month": 10, "count": 1, "total_amount": 100}]


async def test_payment_settings_from_provider(lifecycle):
    settings = await lifecycle.payment_settings()
    assert settings.grace_period_days == 5
    assert settings.late_fee_percentage == 10


# ----- concurrency -----

async def test_stale_save_raises_conflict(repository, lifecycle, make_draft):
    created = await lifecycle.create(make_draft(), ACTOR)
    first = await repository.find_by_id(created["id"])
    second = await repository.find_by_id(created["id"])

    first.notes = "first writer"
    await repository.save(first)
    second.notes = "second writer"
    with pytest.raises(ConflictRetryable):
        await repository.save(second)

    assert second.version == 0
    assert (await stored(created["id"])).notes == "first writer"


async def test_with_conflict_retry_reruns_once():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise ConflictRetryable("lost the race")
        return "ok"

    assert await with_conflict_retry(flaky) == "ok"
    assert len(calls) == 2


async def test_with_conflict_retry_gives_up():
    async def always_conflicting():
        raise ConflictRetryable("lost the race")

    with pytest.raises(ConflictRetryable):
        await with_conflict_retry(always_conflicting, attempts=2)


# ----- configuration problems never block payment -----

async def test_mark_paid_with_unloadable_configuration_uses_defaults(repository, clock, make_draft):
    await ConfigEntry.get_motor_collection().insert_one(
        {"key": GRACE_PERIOD_DAYS, "category": "pagos", "value": 2, "value_type": "number", "is_active": True}
    )
    lifecycle = PaymentLifecycle(repository=repository, config=DocumentConfigProvider(), clock=clock, base_url="")
    created = await lifecycle.create(make_draft(amount=1000, due_date=NOW - timedelta(days=20)), ACTOR)

    view = await lifecycle.mark_as_paid(created["id"], paid_with(), ACTOR)

    assert view["status"] == "paid"
    assert view["late_fee_applied"]["grace_period_days"] == 5
    assert view["total"] == 1100.0


async def test_mark_paid_with_nan_percentage_stores_finite_total(repository, clock, make_draft):
    config = StaticConfigProvider({GRACE_PERIOD_DAYS: 5, LATE_FEE_PERCENTAGE: float("nan")})
    lifecycle = PaymentLifecycle(repository=repository, config=config, clock=clock, base_url="")
    created = await lifecycle.create(make_draft(amount=1000, due_date=NOW - timedelta(days=20)), ACTOR)

    view = await lifecycle.mark_as_paid(created["id"], paid_with(), ACTOR)

    doc = await stored(created["id"])
    assert math.isfinite(doc.total) and math.isfinite(doc.late_fee)
    assert view["total"] == doc.total == 1100.0
