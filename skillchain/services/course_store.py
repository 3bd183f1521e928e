"""Course Store: remote-authoritative, locally-cached course and enrollment state.

Invariants:
    - In-memory lists are mutated only by CourseStore methods; readers get copies
    - The snapshot is written wholesale and only after a successful server round-trip
    - refresh() never propagates ServerUnreachableError: it degrades to cached data
      and sets `stale`; 4xx failures still propagate
    - update()/delete() apply locally first and are NOT rolled back on failure;
      the course gets a dirty marker that only clear_dirty() removes
    - enroll() is idempotent per (course_id, student_id, payment_reference) and treats
      "already enrolled" as success
    - After dispose(), results of in-flight calls are discarded instead of applied

Design Decisions:
    - Snapshot read once in initialize(); the parsed copy backs first-load fallback
    - Storage failures switch the store to network-only mode instead of raising
    - Mutation listeners are plain callables (SyncReconciler.schedule registers here)
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from skillchain.core.cache_snapshot import (
    SNAPSHOT_KEY,
    build_snapshot,
    snapshot_from_json,
    snapshot_to_json,
)
from skillchain.core.course_transform import (
    apply_patch,
    draft_to_payload,
    normalize_course,
    normalize_courses,
    patch_to_payload,
    validate_draft,
)
from skillchain.core.domain_types import DirtyKind
from skillchain.core.errors import (
    EnrollmentConflictError,
    ErrorContext,
    MarketplaceError,
    ServerRejectedError,
    ServerUnreachableError,
    StorageError,
    ValidationError,
)
from skillchain.core.repository_protocols import AuthSession, SnapshotStorage
from skillchain.infrastructure.backend_client import BackendClient
from skillchain.schemas.course import (
    Course,
    CourseDraft,
    EnrollmentRecord,
    LocalCacheSnapshot,
)

logger = logging.getLogger(__name__)

MutationListener = Callable[[], None]


@dataclass
class DirtyMarker:
    """Optimistic change the backend has not confirmed."""
    course_id: str
    kind: DirtyKind
    optimistic: Course | None
    patch: dict = field(default_factory=dict)
    error_code: str | None = None
    marked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class CourseStore:
    """Courses and the current student's enrollments, backed by the REST API."""

    def __init__(
        self,
        backend: BackendClient,
        storage: SnapshotStorage | None,
        session: AuthSession,
        include_drafts: bool = False,
    ):
        self._backend = backend
        self._storage = storage
        self._session = session
        self._include_drafts = include_drafts

        self._courses: list[Course] = []
        self._enrolled: list[Course] = []
        self._enrollments: dict[str, EnrollmentRecord] = {}
        self._fetched: dict[str, Course] = {}
        self._dirty: dict[str, DirtyMarker] = {}
        self._cached_snapshot: LocalCacheSnapshot | None = None
        self._loaded = False
        self._cache_enabled = storage is not None
        self._listeners: list[MutationListener] = []
        self._disposed = False

        self.stale = False
        self.last_error: MarketplaceError | None = None

    # ─── Lifecycle ──────────────────────────────────────────────

    async def initialize(self) -> None:
        """Read the persisted snapshot once, then load from the backend."""
        await self._load_snapshot()
        await self.refresh()

    def dispose(self) -> None:
        """Detach the store: late results from in-flight calls are dropped."""
        self._disposed = True
        self._listeners.clear()

    def add_mutation_listener(self, listener: MutationListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # ─── Reads ──────────────────────────────────────────────────

    @property
    def courses(self) -> list[Course]:
        return list(self._courses)

    @property
    def cache_enabled(self) -> bool:
        return self._cache_enabled

    def get_course(self, course_id: str) -> Course | None:
        return next((c for c in self._courses if c.id == course_id), None)

    def get_enrolled(self) -> list[Course]:
        """Last-refreshed enrollment list; call refresh() first for freshness."""
        return list(self._enrolled)

    def get_enrollment(self, course_id: str) -> EnrollmentRecord | None:
        return self._enrollments.get(course_id)

    def is_enrolled(self, course_id: str) -> bool:
        return course_id in self._enrollments or any(
            c.id == course_id for c in self._enrolled
        )

    def dirty_markers(self) -> dict[str, DirtyMarker]:
        return dict(self._dirty)

    async def fetch_course(self, course_id: str) -> Course:
        """Read one course straight from the backend (GET /courses/:id)."""
        raw = await self._backend.get_course(course_id)
        course = normalize_course(raw) if isinstance(raw, dict) else None
        if course is None:
            raise ServerUnreachableError(
                "Backend returned an unusable course record",
                context=ErrorContext(course_id=course_id),
            )
        self._fetched[course_id] = course
        return course

    # ─── Refresh ────────────────────────────────────────────────

    async def refresh(self) -> None:
        """Replace in-memory state with the server's view, or degrade to cache."""
        authenticated = bool(self._session.token)
        try:
            raw_courses = await self._backend.list_courses(
                include_drafts=self._include_drafts and authenticated,
            )
            raw_enrolled = await self._backend.list_enrolled() if authenticated else None
        except ServerUnreachableError as e:
            if self._still_relevant("refresh"):
                self._degrade(e)
            return

        if not self._still_relevant("refresh"):
            return
        courses, dropped = normalize_courses(raw_courses)
        if dropped:
            logger.warning(f"Dropped {len(dropped)} unusable course records")
        self._courses = [self._flag_dirty(c) for c in courses]
        self._fetched.clear()
        if raw_enrolled is not None:
            self._apply_enrolled(raw_enrolled)
        self._loaded = True
        self.stale = False
        self.last_error = None
        await self._write_snapshot()

    async def refresh_enrollments(self) -> None:
        """Refresh only the enrolled-course list."""
        try:
            raw = await self._backend.list_enrolled()
        except ServerUnreachableError as e:
            if self._still_relevant("refresh_enrollments"):
                self.stale = True
                self.last_error = e
            return
        if not self._still_relevant("refresh_enrollments"):
            return
        self._apply_enrolled(raw)
        await self._write_snapshot()

    def _apply_enrolled(self, raw_enrolled: Any) -> None:
        """Take the server's enrolled list as the source of enrollment records.

        Records for courses it no longer lists are dropped; listed courses without
        a local record get one (payment reference unknown).
        """
        self._enrolled, _ = normalize_courses(raw_enrolled)
        student_id = self._session.user_id
        enrollments = {}
        for course in self._enrolled:
            record = self._enrollments.get(course.id)
            if student_id and (record is None or record.student_id != student_id):
                record = EnrollmentRecord(course_id=course.id, student_id=student_id)
            if record is not None:
                enrollments[course.id] = record
        self._enrollments = enrollments

    def _degrade(self, error: ServerUnreachableError) -> None:
        self.stale = True
        self.last_error = error
        if not self._loaded and self._cached_snapshot is not None:
            snapshot = self._cached_snapshot
            self._courses = [self._flag_dirty(c) for c in snapshot.courses]
            self._enrolled = list(snapshot.enrolled_courses)
            self._enrollments = {r.course_id: r for r in snapshot.enrollments}
            self._loaded = True
            logger.warning(
                "Backend unreachable, serving cached snapshot",
                extra={"error_code": error.code},
            )
        else:
            logger.warning(
                "Backend unreachable, keeping current course data",
                extra={"error_code": error.code},
            )

    # ─── Mutations ──────────────────────────────────────────────

    async def create(self, draft: CourseDraft | dict) -> Course:
        """Validate locally, create on the backend, append the result."""
        if isinstance(draft, dict):
            try:
                draft = CourseDraft.model_validate(draft)
            except PydanticValidationError as e:
                first = e.errors()[0]
                field_name = ".".join(str(loc) for loc in first["loc"])
                raise ValidationError(f"Invalid value for {field_name}: {first['msg']}", field=field_name)
        validate_draft(draft)

        try:
            raw = await self._backend.create_course(draft_to_payload(draft))
        except (ValidationError, EnrollmentConflictError) as e:
            raise ServerRejectedError(e.message, e.context.http_status or 400, e.context)
        course = normalize_course(raw) if isinstance(raw, dict) else None
        if course is None:
            raise ServerUnreachableError("Backend returned an unusable course record")
        if not self._still_relevant("create"):
            return course
        self._courses.append(course)
        logger.info("Course created", extra={"course_id": course.id})
        await self._after_mutation()
        return course

    async def update(self, course_id: str, patch: dict) -> None:
        """Optimistic update; on failure the course keeps the patch and is marked dirty."""
        original = self._require_course(course_id)
        optimistic = apply_patch(original, patch)
        payload = patch_to_payload(patch)
        self._replace_course(optimistic)

        try:
            raw = await self._backend.update_course(course_id, payload)
        except MarketplaceError as e:
            if self._still_relevant("update"):
                self._mark_dirty(DirtyMarker(
                    course_id=course_id, kind=DirtyKind.UPDATE,
                    optimistic=optimistic, patch=dict(patch), error_code=e.code,
                ))
            raise

        if not self._still_relevant("update"):
            return
        server = normalize_course(raw) if isinstance(raw, dict) else None
        if server is not None:
            self._replace_course(self._flag_dirty(server))
        await self._after_mutation()

    async def delete(self, course_id: str) -> None:
        """Optimistic delete; on failure the course stays removed with a dirty tombstone."""
        self._require_course(course_id)
        self._courses = [c for c in self._courses if c.id != course_id]

        try:
            await self._backend.delete_course(course_id)
        except MarketplaceError as e:
            if self._still_relevant("delete"):
                self._mark_dirty(DirtyMarker(
                    course_id=course_id, kind=DirtyKind.DELETE,
                    optimistic=None, error_code=e.code,
                ))
            raise

        if not self._still_relevant("delete"):
            return
        self._enrolled = [c for c in self._enrolled if c.id != course_id]
        self._enrollments.pop(course_id, None)
        await self._after_mutation()

    async def enroll(
        self, course_id: str, payment_reference: str | None = None,
    ) -> EnrollmentRecord:
        """Idempotent enrollment call; "already enrolled" resolves to a record."""
        student_id = self._student_id()
        existing = self._enrollments.get(course_id)
        if (
            existing is not None
            and existing.student_id == student_id
            and existing.payment_reference == payment_reference
        ):
            return existing

        course = self.get_course(course_id) or self._fetched.get(course_id)
        if course is not None and not course.is_enrollable:
            raise ValidationError(
                f"Course '{course_id}' is {course.status.value} and cannot be enrolled in",
                field="status",
                context=ErrorContext(course_id=course_id),
            )

        newly_enrolled = True
        try:
            body = await self._backend.enroll(course_id, payment_reference)
        except EnrollmentConflictError:
            logger.info(
                "Backend reports existing enrollment",
                extra={"course_id": course_id, "student_id": student_id},
            )
            body = None
            newly_enrolled = False

        if existing is not None and not newly_enrolled:
            record = existing
        else:
            record = self._record_from(body, course_id, student_id, payment_reference)
        if not self._still_relevant("enroll"):
            return record

        self._enrollments[course_id] = record
        if newly_enrolled and course is not None:
            course = self.get_course(course_id) or course
            course = course.model_copy(update={"enrolled_count": course.enrolled_count + 1})
            self._replace_course(course)
        current = self.get_course(course_id) or course
        if current is not None and not any(c.id == course_id for c in self._enrolled):
            self._enrolled.append(current)
        logger.info(
            "Enrollment recorded",
            extra={
                "course_id": course_id,
                "student_id": student_id,
                "transaction_reference": payment_reference,
            },
        )
        await self._after_mutation()
        return record

    def clear_dirty(self, course_id: str) -> None:
        """Remove a dirty marker. Only SyncReconciler calls this, after comparing."""
        self._dirty.pop(course_id, None)
        course = self.get_course(course_id)
        if course is not None and course.dirty:
            self._replace_course(course.model_copy(update={"dirty": False}))

    # ─── Internals ──────────────────────────────────────────────

    def _still_relevant(self, operation: str) -> bool:
        if self._disposed:
            logger.debug(f"Discarding {operation} result: store disposed")
            return False
        return True

    def _student_id(self) -> str:
        if not self._session.user_id:
            raise ValidationError("Sign in to enroll in courses", field="student_id")
        return self._session.user_id

    def _require_course(self, course_id: str) -> Course:
        course = self.get_course(course_id)
        if course is None:
            raise ValidationError(
                f"Course '{course_id}' not found", field="course_id",
                context=ErrorContext(course_id=course_id),
            )
        return course

    def _replace_course(self, course: Course) -> None:
        self._courses = [course if c.id == course.id else c for c in self._courses]
        self._enrolled = [course if c.id == course.id else c for c in self._enrolled]

    def _flag_dirty(self, course: Course) -> Course:
        if course.id in self._dirty and not course.dirty:
            return course.model_copy(update={"dirty": True})
        return course

    def _mark_dirty(self, marker: DirtyMarker) -> None:
        self._dirty[marker.course_id] = marker
        course = self.get_course(marker.course_id)
        if course is not None:
            self._replace_course(course.model_copy(update={"dirty": True}))
        logger.warning(
            f"Optimistic {marker.kind.value} not confirmed by backend",
            extra={"course_id": marker.course_id, "error_code": marker.error_code},
        )

    def _record_from(
        self, body: Any, course_id: str, student_id: str, payment_reference: str | None,
    ) -> EnrollmentRecord:
        data = body.get("enrollment") if isinstance(body, dict) else None
        fields: dict[str, Any] = {
            "course_id": course_id,
            "student_id": student_id,
            "payment_reference": payment_reference,
        }
        if isinstance(data, dict) and data.get("createdAt"):
            fields["created_at"] = data["createdAt"]
        try:
            return EnrollmentRecord.model_validate(fields)
        except PydanticValidationError:
            fields.pop("created_at", None)
            return EnrollmentRecord.model_validate(fields)

    async def _load_snapshot(self) -> None:
        if not self._cache_enabled or self._storage is None:
            return
        try:
            text = await self._storage.get(SNAPSHOT_KEY)
        except StorageError as e:
            logger.warning(f"Cache unavailable, continuing network-only: {e.message}")
            self._cache_enabled = False
            return
        if text is None:
            return
        try:
            self._cached_snapshot = snapshot_from_json(text)
        except ValueError as e:
            logger.warning(f"Ignoring unreadable course snapshot: {e}")

    async def _write_snapshot(self) -> None:
        if not self._cache_enabled or self._storage is None:
            return
        snapshot = build_snapshot(
            self._courses, self._enrolled, list(self._enrollments.values()),
        )
        try:
            await self._storage.set(SNAPSHOT_KEY, snapshot_to_json(snapshot))
        except StorageError as e:
            logger.warning(f"Cache write failed, continuing network-only: {e.message}")
            self._cache_enabled = False
            return
        self._cached_snapshot = snapshot

    async def _after_mutation(self) -> None:
        await self._write_snapshot()
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("Mutation listener failed")
