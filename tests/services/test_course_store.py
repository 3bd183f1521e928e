"""Course Store: tests for refresh, cache fallback and enrollment recording.

Tests cover:
    - Refresh loads normalized courses and enrollments
    - Refresh is stable (same order and content twice)
    - Unreachable backend degrades to cached snapshot and sets `stale`
    - Corrupt or failing storage degrades to network-only mode
    - enroll() idempotence and "already enrolled" handling
    - Enrollment records follow the server's enrolled list on refresh
    - Disposal discards late results
"""

import asyncio
from decimal import Decimal

import pytest

from skillchain.core.cache_snapshot import SNAPSHOT_KEY, snapshot_from_json
from skillchain.core.errors import (
    ServerRejectedError,
    ServerUnreachableError,
    StorageError,
    ValidationError,
)
from skillchain.services.course_store import CourseStore


class BrokenStorage:
    """Storage whose every call fails like an unreachable database."""

    async def get(self, key):
        raise StorageError("disk unavailable", "get")

    async def set(self, key, value):
        raise StorageError("disk unavailable", "set")

    async def delete(self, key):
        raise StorageError("disk unavailable", "delete")


# ==============================================================================
# Refresh
# ==============================================================================


async def test_initialize_loads_courses(store, fake_backend):
    fake_backend.add_course("c1", price="0.1")
    fake_backend.add_course("c2")
    await store.initialize()
    assert [c.id for c in store.courses] == ["c1", "c2"]
    assert store.get_course("c1").price == Decimal("0.1")
    assert not store.stale


async def test_refresh_loads_enrolled_courses(store, fake_backend):
    fake_backend.add_course("c1", students=["student-1"])
    fake_backend.add_course("c2")
    await store.refresh()
    assert [c.id for c in store.get_enrolled()] == ["c1"]
    assert store.is_enrolled("c1")
    assert not store.is_enrolled("c2")


async def test_refresh_enrollments_only_reads_enrolled_list(store, fake_backend, transport):
    fake_backend.add_course("c1")
    await store.refresh()
    fake_backend.courses["c1"]["students"].append("student-1")
    courses_before = transport.count("GET", "/api/courses")

    await store.refresh_enrollments()
    assert [c.id for c in store.get_enrolled()] == ["c1"]
    assert transport.count("GET", "/api/courses") == courses_before


async def test_refresh_enrollments_offline_marks_stale(store, fake_backend, transport):
    fake_backend.add_course("c1", students=["student-1"])
    await store.refresh()
    transport.offline = True
    await store.refresh_enrollments()
    assert store.stale
    assert [c.id for c in store.get_enrolled()] == ["c1"]


async def test_anonymous_refresh_skips_enrollments(store, fake_backend, transport, auth_session):
    auth_session.token = None
    fake_backend.add_course("c1")
    await store.refresh()
    assert len(store.courses) == 1
    assert transport.count("GET", "/api/courses/student/enrolled") == 0


async def test_refresh_twice_is_stable(store, fake_backend):
    for i in range(4):
        fake_backend.add_course(f"c{i}", price=f"0.{i}")
    await store.refresh()
    first = [c.model_dump() for c in store.courses]
    await store.refresh()
    assert [c.model_dump() for c in store.courses] == first


async def test_refresh_drops_unparsable_records(store, fake_backend):
    fake_backend.add_course("good")
    fake_backend.add_course("bad", price="priceless")
    await store.refresh()
    assert [c.id for c in store.courses] == ["good"]


async def test_refresh_writes_snapshot(store, fake_backend, storage):
    fake_backend.add_course("c1")
    await store.refresh()
    snapshot = snapshot_from_json(await storage.get(SNAPSHOT_KEY))
    assert [c.id for c in snapshot.courses] == ["c1"]


async def test_unreachable_refresh_keeps_current_state(store, fake_backend, transport):
    fake_backend.add_course("c1")
    await store.refresh()
    fake_backend.add_course("c2")
    transport.offline = True
    await store.refresh()
    assert [c.id for c in store.courses] == ["c1"]
    assert store.stale
    assert isinstance(store.last_error, ServerUnreachableError)


async def test_first_load_falls_back_to_snapshot(
    fake_backend, backend_client, storage, auth_session, transport,
):
    fake_backend.add_course("c1", price="0.1")
    warm = CourseStore(backend_client, storage, auth_session)
    await warm.initialize()

    transport.offline = True
    cold = CourseStore(backend_client, storage, auth_session)
    await cold.initialize()
    assert [c.id for c in cold.courses] == ["c1"]
    assert cold.get_course("c1").price == Decimal("0.1")
    assert cold.stale


async def test_recovery_clears_stale(store, fake_backend, transport):
    fake_backend.add_course("c1")
    transport.offline = True
    await store.refresh()
    assert store.stale
    transport.offline = False
    await store.refresh()
    assert not store.stale
    assert store.last_error is None


async def test_refresh_propagates_client_errors(store, transport):
    transport.fail("GET", "/api/courses", status=403)
    with pytest.raises(ServerRejectedError):
        await store.refresh()


async def test_corrupt_snapshot_degrades_to_network(store, fake_backend, storage):
    await storage.set(SNAPSHOT_KEY, "{definitely not json")
    fake_backend.add_course("c1")
    await store.initialize()
    assert [c.id for c in store.courses] == ["c1"]


async def test_broken_storage_runs_network_only(backend_client, auth_session, fake_backend):
    fake_backend.add_course("c1")
    store = CourseStore(backend_client, BrokenStorage(), auth_session)
    await store.initialize()
    assert [c.id for c in store.courses] == ["c1"]
    assert not store.cache_enabled


async def test_fetch_course_reads_single_record(store, fake_backend):
    fake_backend.add_course("c9", price="1.5")
    course = await store.fetch_course("c9")
    assert course.price == Decimal("1.5")


# ==============================================================================
# Enrollment
# ==============================================================================


async def test_enroll_records_and_counts(store, fake_backend):
    fake_backend.add_course("c1")
    await store.refresh()
    record = await store.enroll("c1")
    assert record.student_id == "student-1"
    assert record.payment_reference is None
    assert store.get_course("c1").enrolled_count == 1
    assert [c.id for c in store.get_enrolled()] == ["c1"]


async def test_enroll_same_tuple_is_idempotent(store, fake_backend, transport):
    fake_backend.add_course("c1", price="0.1")
    await store.refresh()
    first = await store.enroll("c1", "0xabc")
    second = await store.enroll("c1", "0xabc")
    assert first == second
    assert transport.count("POST", "/api/courses/c1/enroll") == 1
    assert len(fake_backend.enrollments) == 1


async def test_already_enrolled_resolves_to_record(store, fake_backend, transport):
    fake_backend.add_course("c1")
    fake_backend.enrollments[("c1", "student-1")] = {"courseId": "c1"}
    await store.refresh()
    record = await store.enroll("c1")
    assert record.course_id == "c1"
    assert transport.count("POST", "/api/courses/c1/enroll") == 1
    assert store.get_course("c1").enrolled_count == 0
    assert store.is_enrolled("c1")


async def test_refresh_drops_enrollment_server_no_longer_has(store, fake_backend, transport):
    fake_backend.add_course("c1")
    await store.refresh()
    await store.enroll("c1")
    del fake_backend.enrollments[("c1", "student-1")]
    fake_backend.courses["c1"]["students"].clear()

    await store.refresh()
    assert store.get_enrolled() == []
    assert store.get_enrollment("c1") is None
    await store.enroll("c1")
    assert transport.count("POST", "/api/courses/c1/enroll") == 2


async def test_refresh_enrollments_prunes_records_and_snapshot(
    store, fake_backend, storage,
):
    fake_backend.add_course("c1")
    await store.refresh()
    await store.enroll("c1")
    fake_backend.courses["c1"]["students"].clear()

    await store.refresh_enrollments()
    assert store.get_enrollment("c1") is None
    snapshot = snapshot_from_json(await storage.get(SNAPSHOT_KEY))
    assert snapshot.enrollments == []


async def test_server_enrollment_gets_a_local_record(store, fake_backend):
    fake_backend.add_course("c1", students=["student-1"])
    await store.refresh()
    record = store.get_enrollment("c1")
    assert record.student_id == "student-1"
    assert record.payment_reference is None


async def test_enroll_in_fetched_course_lists_it_as_enrolled(store, fake_backend):
    fake_backend.add_course("c9", price="0")
    await store.fetch_course("c9")
    assert store.get_course("c9") is None

    await store.enroll("c9")
    [enrolled] = store.get_enrolled()
    assert enrolled.id == "c9"
    assert enrolled.enrolled_count == 1


async def test_enroll_rejects_inactive_course_locally(
    backend_client, storage, auth_session, fake_backend, transport,
):
    fake_backend.add_course("c1", status="draft")
    store = CourseStore(backend_client, storage, auth_session, include_drafts=True)
    await store.refresh()
    with pytest.raises(ValidationError):
        await store.enroll("c1")
    assert transport.count("POST", "/api/courses/c1/enroll") == 0


async def test_enroll_requires_signed_in_student(store, fake_backend, auth_session):
    fake_backend.add_course("c1")
    await store.refresh()
    auth_session.user_id = None
    with pytest.raises(ValidationError):
        await store.enroll("c1")


async def test_enroll_persists_snapshot(store, fake_backend, storage):
    fake_backend.add_course("c1")
    await store.refresh()
    await store.enroll("c1")
    snapshot = snapshot_from_json(await storage.get(SNAPSHOT_KEY))
    assert [r.course_id for r in snapshot.enrollments] == ["c1"]


# ==============================================================================
# Disposal
# ==============================================================================


async def test_disposed_store_discards_late_refresh(store, fake_backend):
    fake_backend.add_course("c1")
    pending = asyncio.create_task(store.refresh())
    store.dispose()
    await pending
    assert store.courses == []


async def test_disposed_store_stops_notifying(store, fake_backend):
    fake_backend.add_course("c1")
    await store.refresh()
    calls = []
    store.add_mutation_listener(lambda: calls.append(1))
    store.dispose()
    await store.enroll("c1")
    assert calls == []
