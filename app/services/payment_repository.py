"""Payment persistence over Beanie: lookups, versioned saves, listings, aggregates."""
from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from datetime import date, datetime, time
from typing import Optional

from beanie import PydanticObjectId
from beanie.exceptions import DocumentNotFound
from bson.errors import InvalidId
from pymongo.errors import AutoReconnect, DuplicateKeyError, ExecutionTimeout

from app.errors import ConflictRetryable, ReceiptNumberTaken, StoreUnavailable
from app.models.payment import Payment, PaymentFilters, PaymentStatus

logger = logging.getLogger(__name__)

SORTABLE_FIELDS = {"created_at", "due_date", "paid_date", "amount", "total", "status", "type", "receipt_number"}


@contextmanager
def store_errors():
    """Translate driver timeouts and disconnects into StoreUnavailable."""
    try:
        yield
    except (AutoReconnect, ExecutionTimeout) as exc:
        logger.error("Payment store unavailable: %s", exc)
        raise StoreUnavailable("Payment storage is temporarily unavailable") from exc


def midnight(day: date) -> datetime:
    return datetime.combine(day, time.min)


def filter_query(filters: Optional[PaymentFilters], date_field: str = "due_date") -> dict:
    """Mongo query for the active payments matching `filters`."""
    query: dict = {"is_active": True}
    if not filters:
        return query
    if filters.student_id:
        query["student_id"] = filters.student_id
    if filters.guardian_id:
        query["guardian_id"] = filters.guardian_id
    if filters.branch_id:
        query["branch_id"] = filters.branch_id
    if filters.type:
        query["type"] = filters.type.value
    if filters.status:
        query["status"] = filters.status.value
    if filters.start_date or filters.end_date:
        query[date_field] = {}
        if filters.start_date:
            query[date_field]["$gte"] = filters.start_date
        if filters.end_date:
            query[date_field]["$lte"] = filters.end_date
    if filters.search and filters.search.strip():
        pattern = re.escape(filters.search.strip())
        query["$or"] = [
            {"receipt_number": {"$regex": pattern, "$options": "i"}},
            {"payment_reference": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]
    return query


def _is_receipt_collision(exc: DuplicateKeyError) -> bool:
    details = exc.details or {}
    key_pattern = details.get("keyPattern") or details.get("keyValue") or {}
    if "receipt_number" in key_pattern:
        return True
    return "receipt_number" in str(exc)


class PaymentRepository:
    """Storage contract used by the lifecycle engine."""

    async def find_by_id(self, payment_id: str) -> Optional[Payment]:
        raise NotImplementedError

    async def insert(self, payment: Payment) -> Payment:
        raise NotImplementedError

    async def save(self, payment: Payment) -> Payment:
        """Persist if nobody else saved since `payment` was read.

        Raises ConflictRetryable on a version mismatch and ReceiptNumberTaken
        when the receipt number is already issued.
        """
        raise NotImplementedError

    async def count_matching_prefix(self, prefix: str) -> int:
        raise NotImplementedError

    async def list_pending(self, filters: Optional[PaymentFilters], today: date) -> list[Payment]:
        raise NotImplementedError

    async def list_overdue(self, filters: Optional[PaymentFilters], today: date) -> list[Payment]:
        raise NotImplementedError

    async def list_page(self, filters, page=1, limit=20, sort_by="created_at", sort_order="desc"):
        raise NotImplementedError

    async def aggregate_by_status(self, filters: Optional[PaymentFilters]) -> list[dict]:
        raise NotImplementedError

    async def aggregate_by_type(self, filters: Optional[PaymentFilters]) -> list[dict]:
        raise NotImplementedError

    async def aggregate_paid_by_month(self, filters: Optional[PaymentFilters], months: int = 12) -> list[dict]:
        raise NotImplementedError


class BeaniePaymentRepository(PaymentRepository):

    async def find_by_id(self, payment_id: str) -> Optional[Payment]:
        try:
            oid = PydanticObjectId(payment_id)
        except (InvalidId, TypeError):
            return None
        with store_errors():
            return await Payment.get(oid)

    async def insert(self, payment: Payment) -> Payment:
        with store_errors():
            try:
                await payment.insert()
            except DuplicateKeyError as exc:
                if _is_receipt_collision(exc):
                    raise ReceiptNumberTaken(payment.receipt_number or "") from exc
                raise ConflictRetryable("Payment already exists") from exc
        return payment

    async def save(self, payment: Payment) -> Payment:
        expected = payment.version
        payment.version = expected + 1
        try:
            with store_errors():
                await Payment.find_one({"_id": payment.id, "version": expected}).replace_one(payment)
        except DocumentNotFound as exc:
            payment.version = expected
            logger.info("Version conflict saving payment %s (expected version %s)", payment.id, expected)
            raise ConflictRetryable("Payment was modified concurrently; reload and retry") from exc
        except DuplicateKeyError as exc:
            payment.version = expected
            if _is_receipt_collision(exc):
                raise ReceiptNumberTaken(payment.receipt_number or "") from exc
            raise ConflictRetryable("Payment could not be saved because of a conflicting record") from exc
        except BaseException:
            payment.version = expected
            raise
        return payment

    async def count_matching_prefix(self, prefix: str) -> int:
        with store_errors():
            return await Payment.find({"receipt_number": {"$regex": f"^{re.escape(prefix)}-"}}).count()

    async def list_pending(self, filters: Optional[PaymentFilters], today: date) -> list[Payment]:
        """Pending and not yet past due; past-due pending records are overdue."""
        query = filter_query(filters)
        query["status"] = PaymentStatus.PENDING.value
        query["due_date"] = {"$gte": midnight(today)}
        with store_errors():
            return await Payment.find(query).sort("+due_date").to_list()

    async def list_overdue(self, filters: Optional[PaymentFilters], today: date) -> list[Payment]:
        """Stored as overdue, or still pending with a due date before today."""
        query = filter_query(filters)
        query.pop("status", None)
        query["$and"] = [
            {
                "$or": [
                    {"status": PaymentStatus.OVERDUE.value},
                    {"status": PaymentStatus.PENDING.value, "due_date": {"$lt": midnight(today)}},
                ]
            }
        ]
        with store_errors():
            return await Payment.find(query).sort("+due_date").to_list()

    async def list_page(
        self,
        filters: Optional[PaymentFilters],
        page: int = 1,
        limit: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> tuple[list[Payment], int]:
        query = filter_query(filters)
        if sort_by not in SORTABLE_FIELDS:
            sort_by = "created_at"
        direction = "+" if sort_order == "asc" else "-"
        skip = (max(page, 1) - 1) * limit
        with store_errors():
            items = await Payment.find(query).sort(f"{direction}{sort_by}").skip(skip).limit(limit).to_list()
            total = await Payment.find(query).count()
        return items, total

    async def aggregate_by_status(self, filters: Optional[PaymentFilters]) -> list[dict]:
        return await self._group(filters, "$status")

    async def aggregate_by_type(self, filters: Optional[PaymentFilters]) -> list[dict]:
        return await self._group(filters, "$type")

    async def aggregate_paid_by_month(self, filters: Optional[PaymentFilters], months: int = 12) -> list[dict]:
        query = filter_query(filters, date_field="created_at")
        query["status"] = PaymentStatus.PAID.value
        pipeline = [
            {"$match": query},
            {
                "$group": {
                    "_id": {"year": {"$year": "$paid_date"}, "month": {"$month": "$paid_date"}},
                    "count": {"$sum": 1},
                    "total_amount": {"$sum": "$total"},
                }
            },
            {"$sort": {"_id.year": -1, "_id.month": -1}},
            {"$limit": months},
        ]
        with store_errors():
            return await Payment.get_motor_collection().aggregate(pipeline).to_list(length=None)

    async def _group(self, filters: Optional[PaymentFilters], key: str) -> list[dict]:
        pipeline = [
            {"$match": filter_query(filters, date_field="created_at")},
            {"$group": {"_id": key, "count": {"$sum": 1}, "total_amount": {"$sum": "$total"}}},
        ]
        with store_errors():
            return await Payment.get_motor_collection().aggregate(pipeline).to_list(length=None)
