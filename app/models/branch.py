"""Academy branch/location."""
from typing import Optional

from beanie import Document, Indexed


class Branch(Document):
    name: Indexed(str)
    code: str = ""  # optional, e.g. "GDL-01"
    address: Optional[str] = None
    city: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool = True

    class Settings:
        name = "branches"
        use_state_management = True
