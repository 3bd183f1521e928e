"""Root conftest: shared fake backend, session and store fixtures.

Invariants:
    - Tests never reach a real backend or a real wallet
    - Every test gets a fresh FakeBackend, transport and in-memory storage
    - Backoff delays are zero so retry paths run instantly
"""

import os
from dataclasses import dataclass

import pytest

from skillchain.infrastructure.backend_client import BackendClient
from skillchain.infrastructure.snapshot_storage import InMemorySnapshotStorage
from skillchain.services.course_store import CourseStore

from tests.mock_backend import BASE_URL, FakeBackend, ScriptedTransport

# Keep Settings() from picking up a developer's cache file
os.environ.setdefault("CACHE_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

STUDENT_ID = "student-1"


@dataclass
class FakeAuthSession:
    user_id: str | None = STUDENT_ID
    token: str | None = STUDENT_ID


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def transport(fake_backend):
    return ScriptedTransport(fake_backend.app)


@pytest.fixture
def auth_session():
    return FakeAuthSession()


@pytest.fixture
async def backend_client(transport, auth_session):
    client = BackendClient(
        BASE_URL,
        auth_session,
        timeout_seconds=5.0,
        max_retries=2,
        base_delay_ms=0,
        max_delay_ms=0,
        transport=transport,
    )
    yield client
    await client.aclose()


@pytest.fixture
def storage():
    return InMemorySnapshotStorage()


@pytest.fixture
def store(backend_client, storage, auth_session):
    return CourseStore(backend_client, storage, auth_session)
