"""Shared pytest fixtures: in-memory Mongo for Beanie, fixed clock, reference records."""

import os

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")

from datetime import datetime, timedelta

import pytest
from beanie import init_beanie
from mongomock_motor import AsyncMongoMockClient

from app.models import DOCUMENT_MODELS, Branch, Guardian, PaymentCreate, PaymentType, Student
from app.services.config_provider import GRACE_PERIOD_DAYS, LATE_FEE_PERCENTAGE, StaticConfigProvider
from app.services.payment_repository import BeaniePaymentRepository
from app.services.payments import PaymentLifecycle

NOW = datetime(2026, 10, 17, 10, 30)


class FixedClock:
    """Callable clock the tests can move."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
async def db():
    client = AsyncMongoMockClient()
    database = client["academy_test"]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
    yield database


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def config() -> StaticConfigProvider:
    return StaticConfigProvider({GRACE_PERIOD_DAYS: 5, LATE_FEE_PERCENTAGE: 10})


@pytest.fixture
async def refs(db) -> dict:
    """A branch, a student, an active and an inactive guardian."""
    branch = await Branch(name="Centro", code="CEN-01").insert()
    student = await Student(full_name="Ana Torres", branch_id=str(branch.id)).insert()
    guardian = await Guardian(first_name="Luis", last_name="Torres", student_ids=[str(student.id)]).insert()
    inactive = await Guardian(first_name="Old", last_name="Contact", is_active=False).insert()
    return {
        "branch_id": str(branch.id),
        "student_id": str(student.id),
        "guardian_id": str(guardian.id),
        "inactive_guardian_id": str(inactive.id),
    }


@pytest.fixture
def repository(db) -> BeaniePaymentRepository:
    return BeaniePaymentRepository()


@pytest.fixture
def lifecycle(repository, config, clock) -> PaymentLifecycle:
    return PaymentLifecycle(
        repository=repository,
        config=config,
        clock=clock,
        base_url="http://files.example.com",
    )


@pytest.fixture
def make_draft(refs):
    """PaymentCreate for the fixture student; due in 10 days unless overridden."""

    def _make(**overrides) -> PaymentCreate:
        data = {
            "student_id": refs["student_id"],
            "branch_id": refs["branch_id"],
            "type": PaymentType.OTHER,
            "amount": 1000,
            "due_date": NOW + timedelta(days=10),
        }
        data.update(overrides)
        return PaymentCreate(**data)

    return _make
