"""Fixtures for the timetable service tests."""

import os

# Never reach for the development Postgres from the test suite
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

from datetime import date
from types import SimpleNamespace

import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from db import init_db
from exceptions import UnknownReferenceError
from repository import SlotRepository

INSTITUTION_ID = "inst-1"
WEEK_MONDAY = date(2025, 5, 5)

TEACHERS = {"teacher-a": "Teacher A", "teacher-b": "Teacher B"}
SUBJECTS = {"math": "Mathematics", "art": "Art"}


def slot_form(**overrides) -> SimpleNamespace:
    """Raw form fields as they arrive from the client."""
    fields = {
        "teacher_id": "teacher-a",
        "subject_id": "math",
        "day": "Monday",
        "date": WEEK_MONDAY.isoformat(),
        "start_time": "09:00",
        "end_time": "10:00",
    }
    fields.update(overrides)
    return SimpleNamespace(**fields)


class FakeDirectory:
    def __init__(self):
        self.calls = []

    async def resolve_names(self, teacher_id, subject_id, token):
        self.calls.append((teacher_id, subject_id, token))
        if teacher_id not in TEACHERS:
            raise UnknownReferenceError("Teacher", teacher_id)
        if subject_id not in SUBJECTS:
            raise UnknownReferenceError("Subject", subject_id)
        return TEACHERS[teacher_id], SUBJECTS[subject_id]


class BrokenSession:
    """Session whose database has gone away."""

    async def execute(self, *args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    async def scalar(self, *args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    async def rollback(self):
        pass


def make_engine(tmp_path):
    return create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'timetable.db'}", poolclass=NullPool)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = make_engine(tmp_path)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def repository(session) -> SlotRepository:
    return SlotRepository(session, INSTITUTION_ID)


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()
