"""Students enrolled at a branch; payments reference them by id."""
from datetime import date, datetime
from typing import Optional

from beanie import Document, Indexed
from pydantic import Field


class Student(Document):
    """Student document: identity and branch; CRUD lives outside the payment core."""

    full_name: str
    date_of_birth: Optional[date] = None
    branch_id: Indexed(str)
    enrollment_number: Optional[str] = None
    guardian_ids: list[str] = Field(default_factory=list)
    email: Optional[str] = None
    phone: Optional[str] = None

    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "students"
        use_state_management = True
