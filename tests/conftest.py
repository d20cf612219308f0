"""Pytest configuration and fixtures."""

import os
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing application modules
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("SUPABASE_URL", "https://test-project.supabase.co")
os.environ.setdefault("SUPABASE_SECRET_KEY", "test-secret-key")
os.environ.setdefault("SUPABASE_SIGNING_KEY_JWK", "")

from src.core.record_store import InMemoryRecordStore, get_record_store  # noqa: E402
from src.schemas.auth import UserContext  # noqa: E402

TEACHER_ID = UUID("11111111-1111-4111-8111-111111111111")
STUDENT_ID = UUID("22222222-2222-4222-8222-222222222222")
OTHER_STUDENT_ID = UUID("33333333-3333-4333-8333-333333333333")
SECOND_TEACHER_ID = UUID("44444444-4444-4444-8444-444444444444")
PARENT_ID = UUID("55555555-5555-4555-8555-555555555555")
UNREGISTERED_ID = UUID("66666666-6666-4666-8666-666666666666")

DIRECTORY_ROWS = [
    {"id": str(TEACHER_ID), "name": "Tariq Teacher", "role": "Teacher"},
    {"id": str(SECOND_TEACHER_ID), "name": "Amal Teacher", "role": "Teacher"},
    {"id": str(STUDENT_ID), "name": "Sara Student", "role": "Student"},
    {"id": str(OTHER_STUDENT_ID), "name": "Omar Student", "role": "Student"},
    {"id": str(PARENT_ID), "name": "Pat Parent", "role": "Parent"},
]


class StepClock:
    """Deterministic clock advancing one second per reading."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def memory_store() -> Generator[InMemoryRecordStore, None, None]:
    """Provide a fresh in-memory record store seeded with the directory.

    Also installed as the application-wide store singleton.

    Yields:
        InMemoryRecordStore: The seeded store.
    """
    get_record_store.cache_clear()
    store = get_record_store()
    assert isinstance(store, InMemoryRecordStore)
    store._clock = StepClock()
    store.seed("users", DIRECTORY_ROWS)
    yield store
    get_record_store.cache_clear()


@pytest.fixture
def teacher() -> UserContext:
    return UserContext(user_id=TEACHER_ID, email="teacher@school.test")


@pytest.fixture
def student() -> UserContext:
    return UserContext(user_id=STUDENT_ID, email="student@school.test")


@pytest.fixture
def unregistered_user() -> UserContext:
    return UserContext(user_id=UNREGISTERED_ID, email="nobody@school.test")


@pytest.fixture
def directory_ids() -> dict[str, UUID]:
    """Ids of the seeded directory users beyond the teacher and student fixtures."""
    return {
        "other_student": OTHER_STUDENT_ID,
        "second_teacher": SECOND_TEACHER_ID,
        "parent": PARENT_ID,
    }


@pytest.fixture
def client(memory_store: InMemoryRecordStore) -> Generator[TestClient, None, None]:
    """Provide a test client for the FastAPI application.

    Yields:
        TestClient: FastAPI test client backed by the in-memory store.
    """
    from src.main import app

    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture(scope="session")
def test_settings() -> Generator[Any, None, None]:
    """Provide test settings with cleared cache.

    Yields:
        Settings: Test configuration settings.
    """
    from src.core.config import get_settings

    get_settings.cache_clear()
    settings = get_settings()
    yield settings
    get_settings.cache_clear()
