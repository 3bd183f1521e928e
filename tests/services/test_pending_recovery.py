"""Pending Recovery: tests for the persisted pending-enrollment ledger and resume_pending().

Tests cover:
    - Ledger entry written after payment, before the enroll call
    - Entry removed on success, flagged (and kept) on exhaustion
    - A fresh coordinator over the same storage completes a pending enrollment
    - Flagged entries and other students' entries are not replayed
"""

from decimal import Decimal

import pytest

from skillchain.core.cache_snapshot import PENDING_KEY
from skillchain.core.errors import EnrollmentNeedsManualReconciliationError
from skillchain.schemas.course import PendingEnrollment
from skillchain.services.enrollment_coordinator import EnrollmentCoordinator
from skillchain.services.pending_enrollments import PendingEnrollmentLedger

from tests.mock_wallet import RECIPIENT

ENROLL_PATH = "/api/courses/c1/enroll"


def _pending(course_id="c1", student_id="student-1", **overrides):
    fields = {
        "course_id": course_id,
        "student_id": student_id,
        "transaction_reference": "0xfeed",
        "amount": Decimal("0.1"),
        "recipient": RECIPIENT,
    }
    fields.update(overrides)
    return PendingEnrollment(**fields)


def _restarted_coordinator(store, wallet, auth_session, confirm, storage):
    return EnrollmentCoordinator(
        store, wallet, auth_session, confirm, RECIPIENT,
        ledger=PendingEnrollmentLedger(storage),
        retry_base_delay_ms=0, retry_max_delay_ms=0,
    )


# ==============================================================================
# Ledger lifecycle during enroll()
# ==============================================================================


async def test_ledger_written_before_enroll_call(
    coordinator, store, fake_backend, ledger, monkeypatch,
):
    fake_backend.add_course("c1", price="0.1")
    await store.refresh()
    seen = []
    original = store.enroll

    async def spy(course_id, payment_reference=None):
        seen.extend(await ledger.entries())
        return await original(course_id, payment_reference)

    monkeypatch.setattr(store, "enroll", spy)
    await coordinator.enroll("c1")
    [entry] = seen
    assert entry.transaction_reference == coordinator.last_attempt("c1").transaction_reference
    assert await ledger.entries() == []


async def test_free_course_never_touches_ledger(coordinator, store, fake_backend, storage):
    fake_backend.add_course("c1", price="0")
    await store.refresh()
    await coordinator.enroll("c1")
    assert await storage.get(PENDING_KEY) is None


async def test_flagged_entry_survives_restart(
    coordinator, store, fake_backend, transport, storage,
):
    fake_backend.add_course("c1", price="0.1")
    await store.refresh()
    transport.fail("POST", ENROLL_PATH, times=10)
    with pytest.raises(EnrollmentNeedsManualReconciliationError):
        await coordinator.enroll("c1")
    [entry] = await PendingEnrollmentLedger(storage).unresolved()
    assert entry.course_id == "c1"
    assert entry.needs_manual_reconciliation


# ==============================================================================
# resume_pending()
# ==============================================================================


async def test_resume_completes_pending_enrollment(
    store, fake_backend, storage, wallet, provider, auth_session, confirm,
):
    fake_backend.add_course("c1", price="0.1")
    await store.refresh()
    await PendingEnrollmentLedger(storage).add(_pending())

    coordinator = _restarted_coordinator(store, wallet, auth_session, confirm, storage)
    [record] = await coordinator.resume_pending()

    assert record.payment_reference == "0xfeed"
    assert fake_backend.enrollments[("c1", "student-1")]["paymentReference"] == "0xfeed"
    assert await PendingEnrollmentLedger(storage).entries() == []
    assert provider.calls == []
    assert confirm.quotes == []


async def test_resume_skips_flagged_and_foreign_entries(
    store, fake_backend, storage, wallet, auth_session, confirm, transport,
):
    fake_backend.add_course("c1", price="0.1")
    fake_backend.add_course("c2", price="0.1")
    ledger = PendingEnrollmentLedger(storage)
    await ledger.add(_pending("c1", needs_manual_reconciliation=True))
    await ledger.add(_pending("c2", student_id="someone-else"))

    coordinator = _restarted_coordinator(store, wallet, auth_session, confirm, storage)
    assert await coordinator.resume_pending() == []
    assert transport.count("POST", ENROLL_PATH) == 0
    assert transport.count("POST", "/api/courses/c2/enroll") == 0


async def test_resume_that_keeps_failing_flags_entry(
    store, fake_backend, storage, wallet, auth_session, confirm, transport,
):
    fake_backend.add_course("c1", price="0.1")
    await PendingEnrollmentLedger(storage).add(_pending())
    transport.fail("POST", ENROLL_PATH, times=10)

    coordinator = _restarted_coordinator(store, wallet, auth_session, confirm, storage)
    assert await coordinator.resume_pending() == []
    [entry] = await coordinator.unresolved_payments()
    assert entry.transaction_reference == "0xfeed"


async def test_resume_gets_same_retry_budget_as_fresh_run(
    store, fake_backend, storage, wallet, auth_session, confirm, transport,
):
    fake_backend.add_course("c1", price="0.1")
    await PendingEnrollmentLedger(storage).add(_pending())
    transport.fail("POST", ENROLL_PATH, times=10, status=503)

    coordinator = _restarted_coordinator(store, wallet, auth_session, confirm, storage)
    assert await coordinator.resume_pending() == []
    assert transport.count("POST", ENROLL_PATH) == 1 + coordinator.retry_budget
    assert coordinator.last_attempt("c1").retries == coordinator.retry_budget


async def test_resume_signed_out_does_nothing(
    store, storage, wallet, auth_session, confirm, transport,
):
    await PendingEnrollmentLedger(storage).add(_pending())
    auth_session.user_id = None
    coordinator = _restarted_coordinator(store, wallet, auth_session, confirm, storage)
    assert await coordinator.resume_pending() == []
    assert transport.requests == []


# ==============================================================================
# Ledger storage edge cases
# ==============================================================================


async def test_corrupt_ledger_starts_empty(storage):
    await storage.set(PENDING_KEY, "[{broken")
    assert await PendingEnrollmentLedger(storage).entries() == []


async def test_ledger_without_storage_is_in_memory():
    ledger = PendingEnrollmentLedger()
    await ledger.add(_pending())
    updated = await ledger.record_attempt("c1", "student-1")
    assert updated.attempts == 1
    await ledger.remove("c1", "student-1")
    assert await ledger.entries() == []


async def test_one_entry_per_course_and_student(storage):
    ledger = PendingEnrollmentLedger(storage)
    await ledger.add(_pending(transaction_reference="0x1"))
    await ledger.add(_pending(transaction_reference="0x2"))
    [entry] = await PendingEnrollmentLedger(storage).entries()
    assert entry.transaction_reference == "0x2"
