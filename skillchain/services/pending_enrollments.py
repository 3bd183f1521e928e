"""Pending Enrollment Ledger: confirmed payments whose enrollment is not yet recorded.

Invariants:
    - At most one entry per (course_id, student_id)
    - An entry is written as soon as a payment is confirmed and removed only on Enrolled
    - Flagged entries (needs_manual_reconciliation) are never removed automatically
    - The whole ledger is rewritten on every change under PENDING_KEY

Design Decisions:
    - Loaded lazily on first use and then served from memory
    - Storage failures are logged and the ledger keeps working in memory; a lost
      write must not abort an enrollment that already moved funds
"""

import logging
from datetime import datetime, timezone

from skillchain.core.cache_snapshot import PENDING_KEY, pending_from_json, pending_to_json
from skillchain.core.errors import StorageError
from skillchain.core.repository_protocols import SnapshotStorage
from skillchain.schemas.course import PendingEnrollment

logger = logging.getLogger(__name__)


class PendingEnrollmentLedger:

    def __init__(self, storage: SnapshotStorage | None = None):
        self._storage = storage
        self._entries: dict[tuple[str, str], PendingEnrollment] | None = None

    async def entries(self) -> list[PendingEnrollment]:
        return list((await self._load()).values())

    async def unresolved(self) -> list[PendingEnrollment]:
        return [e for e in await self.entries() if e.needs_manual_reconciliation]

    async def add(self, entry: PendingEnrollment) -> None:
        entries = await self._load()
        entries[(entry.course_id, entry.student_id)] = entry
        logger.info(
            "Pending enrollment recorded",
            extra={
                "course_id": entry.course_id,
                "student_id": entry.student_id,
                "transaction_reference": entry.transaction_reference,
            },
        )
        await self._persist()

    async def record_attempt(self, course_id: str, student_id: str) -> PendingEnrollment | None:
        return await self._update(course_id, student_id, attempts_delta=1)

    async def mark_needs_manual(self, course_id: str, student_id: str) -> PendingEnrollment | None:
        return await self._update(course_id, student_id, needs_manual=True)

    async def remove(self, course_id: str, student_id: str) -> None:
        entries = await self._load()
        if entries.pop((course_id, student_id), None) is not None:
            await self._persist()

    async def _update(
        self,
        course_id: str,
        student_id: str,
        attempts_delta: int = 0,
        needs_manual: bool | None = None,
    ) -> PendingEnrollment | None:
        entries = await self._load()
        entry = entries.get((course_id, student_id))
        if entry is None:
            return None
        changes: dict = {
            "attempts": entry.attempts + attempts_delta,
            "updated_at": datetime.now(timezone.utc),
        }
        if needs_manual is not None:
            changes["needs_manual_reconciliation"] = needs_manual
        entry = entry.model_copy(update=changes)
        entries[(course_id, student_id)] = entry
        await self._persist()
        return entry

    async def _load(self) -> dict[tuple[str, str], PendingEnrollment]:
        if self._entries is not None:
            return self._entries
        self._entries = {}
        if self._storage is None:
            return self._entries
        try:
            text = await self._storage.get(PENDING_KEY)
        except StorageError as e:
            logger.warning(f"Pending ledger unavailable: {e.message}")
            return self._entries
        if text:
            try:
                loaded = pending_from_json(text)
            except ValueError as e:
                logger.error(f"Pending ledger unreadable, starting empty: {e}")
                loaded = []
            self._entries = {(p.course_id, p.student_id): p for p in loaded}
        return self._entries

    async def _persist(self) -> None:
        if self._storage is None or self._entries is None:
            return
        try:
            await self._storage.set(PENDING_KEY, pending_to_json(list(self._entries.values())))
        except StorageError as e:
            logger.error(f"Pending ledger write failed: {e.message}")
