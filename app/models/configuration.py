"""Named, typed configuration entries editable from the admin panel."""
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from beanie import Document, Indexed
from pydantic import BaseModel, Field


class ConfigCategory(str, Enum):
    GENERAL = "general"
    EXAMS = "exams"
    PAYMENTS = "payments"
    ATTENDANCE = "attendance"
    NOTIFICATIONS = "notifications"
    BELTS = "belts"


class ConfigValueType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    JSON = "json"
    ARRAY = "array"


class ConfigEntry(Document):
    """One setting (key -> value), e.g. payment_grace_days = 5."""

    key: Indexed(str, unique=True)
    category: ConfigCategory
    value: Any
    value_type: ConfigValueType
    description: Optional[str] = None
    default_value: Any = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    options: list[str] = Field(default_factory=list)  # allowed values for string entries
    is_public: bool = False  # parents/instructors may read it
    is_editable: bool = True  # False: only changeable from code
    order: int = 0
    is_active: bool = True
    modified_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "configuration"
        use_state_management = True


class ConfigValueUpdate(BaseModel):
    value: Any


class PaymentSettings(BaseModel):
    grace_period_days: int
    late_fee_percentage: float
    receipt_required: bool
