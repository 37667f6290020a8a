"""Guardians (parents/tutors) who may be billed for a student."""
from datetime import datetime
from typing import Optional

from beanie import Document
from pydantic import Field


class Guardian(Document):
    first_name: str
    last_name: str
    relationship: Optional[str] = None  # Mother, Father, other
    email: Optional[str] = None
    phone: Optional[str] = None
    student_ids: list[str] = Field(default_factory=list)

    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "guardians"
        use_state_management = True

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()
