"""Existence checks for the records a payment points at."""
from __future__ import annotations

from typing import Optional

from beanie import Document, PydanticObjectId
from bson.errors import InvalidId

from app.models.branch import Branch
from app.models.guardian import Guardian
from app.models.student import Student


async def _get_active(model: type[Document], record_id: Optional[str]):
    if not record_id:
        return None
    try:
        doc = await model.get(PydanticObjectId(record_id))
    except (InvalidId, TypeError):
        return None
    if not doc or not getattr(doc, "is_active", True):
        return None
    return doc


class ReferenceResolver:
    async def student_exists(self, student_id: str) -> bool:
        return await _get_active(Student, student_id) is not None

    async def branch_exists(self, branch_id: str) -> bool:
        return await _get_active(Branch, branch_id) is not None

    async def guardian_is_active(self, guardian_id: str) -> bool:
        return await _get_active(Guardian, guardian_id) is not None
