"""Receipt numbers: REC-<YYYY><MM>-<5-digit sequence>, scoped to the month of payment."""
from __future__ import annotations

import re
from datetime import datetime
from typing import Callable

RECEIPT_PATTERN = re.compile(r"^REC-\d{6}-\d{5}$")


def receipt_prefix(moment: datetime) -> str:
    return f"REC-{moment.year}{moment.month:02d}"


def format_receipt_number(prefix: str, sequence: int) -> str:
    return f"{prefix}-{sequence:05d}"


def receipt_sequence(receipt_number: str) -> int:
    return int(receipt_number.rsplit("-", 1)[1])


class ReceiptNumberGenerator:
    """Count-based sequence per calendar month.

    The count is advisory: two writers can read the same count. The unique
    index on Payment.receipt_number decides, and the caller retries with a
    higher minimum_sequence when its number is rejected.
    """

    def __init__(self, repository, clock: Callable[[], datetime] = datetime.utcnow):
        self.repository = repository
        self.clock = clock

    async def next_number(self, minimum_sequence: int = 1) -> str:
        prefix = receipt_prefix(self.clock())
        issued = await self.repository.count_matching_prefix(prefix)
        return format_receipt_number(prefix, max(issued + 1, minimum_sequence))
