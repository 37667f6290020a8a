"""Seed default admin user and payment configuration if not present."""
import logging

from app.api.deps import get_password_hash
from app.models.user import User, UserRole
from app.services.config_provider import ensure_default_entries

logger = logging.getLogger(__name__)

ADMIN_EMAIL = "admin@academy.com"
ADMIN_PASSWORD = "ChangeMe123##"
ADMIN_FULL_NAME = "Academy Admin"


async def seed_admin():
    existing = await User.find_one(User.email == ADMIN_EMAIL)
    if existing:
        return
    await User(
        email=ADMIN_EMAIL,
        hashed_password=get_password_hash(ADMIN_PASSWORD),
        role=UserRole.ADMIN,
        full_name=ADMIN_FULL_NAME,
    ).insert()
    logger.info("Seeded admin user %s", ADMIN_EMAIL)


async def seed_configuration():
    await ensure_default_entries()
