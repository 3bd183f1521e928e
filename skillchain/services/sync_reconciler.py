"""Sync Reconciler: brings optimistic local changes back in line with the server.

Invariants:
    - Server state always wins; optimistic copies are only compared, never pushed
    - A dirty marker is cleared only after its course was compared against an
      authoritative (non-stale) refresh
    - At most one reconcile runs at a time; triggers during a run coalesce into one rerun

Design Decisions:
    - schedule() is synchronous so it can be a CourseStore mutation listener
    - The periodic timer and visibility trigger only call schedule()
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field

from skillchain.core.domain_types import DirtyKind
from skillchain.core.errors import MarketplaceError
from skillchain.schemas.course import Course
from skillchain.services.course_store import CourseStore, DirtyMarker

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    """Outcome of one reconcile pass, keyed by course id."""
    stale: bool = False
    confirmed: list[str] = field(default_factory=list)
    overridden: list[str] = field(default_factory=list)
    kept: list[str] = field(default_factory=list)


def _server_agrees(marker: DirtyMarker, server: Course | None) -> bool:
    if marker.kind == DirtyKind.DELETE:
        return server is None
    if server is None or marker.optimistic is None:
        return False
    return all(
        getattr(marker.optimistic, name) == getattr(server, name)
        for name in marker.patch
    )


class SyncReconciler:

    def __init__(self, store: CourseStore, interval_seconds: float = 60.0):
        self._store = store
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None
        self._timer: asyncio.Task | None = None
        self._rerun = False
        self.last_report: ReconcileReport | None = None

    async def reconcile(self) -> ReconcileReport:
        """Refresh, then settle every dirty marker against the server's version."""
        await self._store.refresh()
        markers = self._store.dirty_markers()
        report = ReconcileReport(stale=self._store.stale)
        if self._store.stale:
            report.kept = sorted(markers)
            if markers:
                logger.info(f"Refresh served from cache, keeping {len(markers)} dirty markers")
            return report

        for course_id, marker in markers.items():
            server = self._store.get_course(course_id)
            if _server_agrees(marker, server):
                report.confirmed.append(course_id)
            else:
                report.overridden.append(course_id)
                logger.warning(
                    f"Server version replaced optimistic {marker.kind.value}",
                    extra={"course_id": course_id},
                )
            self._store.clear_dirty(course_id)
        return report

    # ─── Triggers ───────────────────────────────────────────────

    def schedule(self) -> None:
        """Request a reconcile in the background; coalesces with a running one."""
        if self._task is not None and not self._task.done():
            self._rerun = True
            return
        self._task = asyncio.get_running_loop().create_task(self._run_scheduled())

    async def wait_idle(self) -> None:
        while self._task is not None and not self._task.done():
            await self._task

    def notify_visibility(self, visible: bool) -> None:
        if visible:
            self.schedule()

    def start(self, interval_seconds: float | None = None) -> None:
        if interval_seconds is not None:
            self.interval_seconds = interval_seconds
        if self._timer is None or self._timer.done():
            self._timer = asyncio.get_running_loop().create_task(self._tick())

    async def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._timer
            self._timer = None
        await self.wait_idle()

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            self.schedule()

    async def _run_scheduled(self) -> None:
        while True:
            self._rerun = False
            try:
                self.last_report = await self.reconcile()
            except MarketplaceError as e:
                logger.warning(
                    f"Reconcile failed: {e.message}", extra={"error_code": e.code},
                )
            if not self._rerun:
                return
