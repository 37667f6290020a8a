"""Beanie document models and Pydantic schemas."""
from app.models.user import User, UserRole
from app.models.student import Student
from app.models.guardian import Guardian
from app.models.branch import Branch
from app.models.configuration import ConfigEntry, ConfigCategory, ConfigValueType, ConfigValueUpdate, PaymentSettings
from app.models.payment import (
    Payment,
    PaymentCreate,
    PaymentUpdate,
    PaymentFilters,
    PaymentMethod,
    PaymentPeriod,
    PaymentStatus,
    PaymentType,
    MarkPaidBody,
    CancelBody,
    ReceiptFile,
)

DOCUMENT_MODELS = [
    User,
    Student,
    Guardian,
    Branch,
    ConfigEntry,
    Payment,
]

__all__ = [
    "User",
    "UserRole",
    "Student",
    "Guardian",
    "Branch",
    "ConfigEntry",
    "ConfigCategory",
    "ConfigValueType",
    "ConfigValueUpdate",
    "PaymentSettings",
    "Payment",
    "PaymentCreate",
    "PaymentUpdate",
    "PaymentFilters",
    "PaymentMethod",
    "PaymentPeriod",
    "PaymentStatus",
    "PaymentType",
    "MarkPaidBody",
    "CancelBody",
    "ReceiptFile",
    "DOCUMENT_MODELS",
]
