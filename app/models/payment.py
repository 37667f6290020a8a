"""Payments: tuition and one-off charges, status lifecycle, receipt numbers."""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from beanie import Document
from pydantic import BaseModel, Field, field_validator
from pymongo import ASCENDING, DESCENDING, IndexModel


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class PaymentType(str, Enum):
    TUITION = "tuition"
    ENROLLMENT_FEE = "enrollment_fee"
    UNIFORM = "uniform"
    EXAM_FEE = "exam_fee"
    EQUIPMENT = "equipment"
    OTHER = "other"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    TRANSFER = "transfer"
    CHECK = "check"
    DEPOSIT = "deposit"


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored datetimes are naive UTC (as Mongo returns them)."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


DEFAULT_DESCRIPTIONS: dict[PaymentType, str] = {
    PaymentType.TUITION: "Monthly tuition payment",
    PaymentType.ENROLLMENT_FEE: "Enrollment fee",
    PaymentType.UNIFORM: "Uniform purchase",
    PaymentType.EXAM_FEE: "Grading exam fee",
    PaymentType.EQUIPMENT: "Equipment purchase",
    PaymentType.OTHER: "Other charge",
}


class PaymentPeriod(BaseModel):
    """Month and year a tuition payment covers."""
    month: Optional[int] = None
    year: Optional[int] = None


class ReceiptFile(BaseModel):
    """Proof-of-payment upload, written by the upload handler."""
    filename: Optional[str] = None
    original_name: Optional[str] = None
    mimetype: Optional[str] = None
    size: Optional[int] = None
    url: Optional[str] = None  # relative ("/uploads/...") or absolute
    uploaded_at: Optional[datetime] = None
    uploaded_by: Optional[str] = None


class Payment(Document):
    """Payment document: amounts, due date, status, receipt number."""

    student_id: str
    guardian_id: Optional[str] = None
    branch_id: str

    type: PaymentType
    description: Optional[str] = None

    amount: float
    discount: float = 0.0
    late_fee: float = 0.0  # set once, when a late fee is applied at payment
    total: float = 0.0  # amount - discount + late_fee, recomputed before every save

    due_date: datetime
    paid_date: Optional[datetime] = None
    period: Optional[PaymentPeriod] = None  # tuition only

    status: PaymentStatus = PaymentStatus.PENDING
    payment_method: Optional[PaymentMethod] = None
    payment_reference: Optional[str] = None
    receipt_number: Optional[str] = None
    receipt_file: Optional[ReceiptFile] = None
    notes: Optional[str] = None

    is_active: bool = True
    created_by: str
    last_modified_by: Optional[str] = None
    paid_by: Optional[str] = None
    version: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "payments"
        use_state_management = True
        # Unset fields are not stored, so the sparse index only sees issued receipts
        keep_nulls = False
        indexes = [
            IndexModel([("receipt_number", ASCENDING)], name="receipt_number_unique", unique=True, sparse=True),
            IndexModel([("student_id", ASCENDING), ("due_date", DESCENDING)]),
            IndexModel([("branch_id", ASCENDING), ("status", ASCENDING)]),
            IndexModel([("type", ASCENDING), ("status", ASCENDING)]),
            IndexModel([("status", ASCENDING), ("due_date", ASCENDING)]),
            IndexModel([("period.year", ASCENDING), ("period.month", ASCENDING)]),
            IndexModel([("created_at", DESCENDING)]),
        ]

    @field_validator("due_date", "paid_date")
    @classmethod
    def _naive_dates(cls, value):
        return naive_utc(value)


class PaymentCreate(BaseModel):
    student_id: str
    guardian_id: Optional[str] = None
    branch_id: str
    type: PaymentType
    description: Optional[str] = None
    amount: float
    discount: float = 0.0
    due_date: datetime
    period: Optional[PaymentPeriod] = None
    payment_reference: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("due_date")
    @classmethod
    def _naive_due_date(cls, value):
        return naive_utc(value)


class PaymentUpdate(BaseModel):
    """All fields optional; status, totals, receipt and audit fields are not editable."""
    guardian_id: Optional[str] = None
    type: Optional[PaymentType] = None
    description: Optional[str] = None
    amount: Optional[float] = None
    discount: Optional[float] = None
    due_date: Optional[datetime] = None
    period: Optional[PaymentPeriod] = None
    payment_reference: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("due_date")
    @classmethod
    def _naive_due_date(cls, value):
        return naive_utc(value)


class MarkPaidBody(BaseModel):
    payment_method: Optional[PaymentMethod] = None
    paid_date: Optional[datetime] = None
    payment_reference: Optional[str] = None
    notes: Optional[str] = None
    apply_late_fee: bool = True

    @field_validator("paid_date")
    @classmethod
    def _naive_paid_date(cls, value):
        return naive_utc(value)


class CancelBody(BaseModel):
    reason: Optional[str] = None


class PaymentFilters(BaseModel):
    student_id: Optional[str] = None
    guardian_id: Optional[str] = None
    branch_id: Optional[str] = None
    type: Optional[PaymentType] = None
    status: Optional[PaymentStatus] = None
    start_date: Optional[datetime] = None  # bounds on due_date (created_at for stats)
    end_date: Optional[datetime] = None
    search: Optional[str] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def _naive_bounds(cls, value):
        return naive_utc(value)
