"""Course Schemas: pydantic models for normalized courses, enrollments and cached state.

Invariants:
    - Course.price is a non-negative Decimal; 0 means free
    - Course.enrolled_count is derived and never negative
    - Lesson.video_url / document_url are filled by core/course_transform.py, never by callers
    - LocalCacheSnapshot is a complete document (courses + enrolled + enrollments)

Design Decisions:
    - snake_case field names internally; camelCase only at the backend boundary
      (core/course_transform.py owns the mapping)
    - model_dump(mode="json") is the persisted form: Decimals become strings,
      datetimes ISO-8601
"""

from datetime import datetime, timezone
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from skillchain.core.domain_types import CourseStatus, LessonType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Lesson(BaseModel):
    """Single lesson inside a syllabus module."""
    id: str | None = None
    title: str = ""
    description: str = ""
    type: LessonType | None = None
    content: str | None = None
    video_url: str | None = None
    document_url: str | None = None
    duration: str | None = None


class CourseModule(BaseModel):
    """Syllabus module: an ordered group of lessons."""
    id: str | None = None
    title: str = ""
    description: str = ""
    lessons: list[Lesson] = Field(default_factory=list)


class Course(BaseModel):
    """Normalized course as every caller downstream of CourseStore sees it."""
    id: str
    title: str
    description: str = ""
    category: str = ""
    level: str = ""
    duration: str = ""
    price: Decimal = Field(default=Decimal("0"), ge=0)
    reward_amount: Decimal = Decimal("0")
    status: CourseStatus = CourseStatus.DRAFT
    enrolled_count: int = Field(default=0, ge=0)
    teacher_id: str | None = None
    prerequisites: list[str] = Field(default_factory=list)
    learning_outcomes: list[str] = Field(default_factory=list)
    thumbnail: str | None = None
    syllabus: list[CourseModule] = Field(default_factory=list)
    modules: int = 0
    total_lessons: int = 0
    rating: float = 0.0
    reviews: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    dirty: bool = False

    @property
    def is_free(self) -> bool:
        return self.price == 0

    @property
    def is_enrollable(self) -> bool:
        return self.status == CourseStatus.ACTIVE


class CourseDraft(BaseModel):
    """Author input for create(). Required fields are checked by validate_draft()."""
    title: str = ""
    description: str = ""
    category: str = ""
    level: str = ""
    duration: str = ""
    price: Decimal = Field(default=Decimal("0"), ge=0)
    reward_amount: Decimal = Decimal("0")
    prerequisites: list[str] = Field(default_factory=list)
    learning_outcomes: list[str] = Field(default_factory=list)
    thumbnail: str | None = None
    syllabus: list[CourseModule] = Field(default_factory=list)
    status: CourseStatus = CourseStatus.DRAFT


class EnrollmentRecord(BaseModel):
    """One enrollment of a student in a course. Unique per (course_id, student_id)."""
    model_config = ConfigDict(frozen=True)

    course_id: str
    student_id: str
    payment_reference: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class PendingEnrollment(BaseModel):
    """Payment confirmed on-chain, enrollment not yet recorded by the backend."""
    course_id: str
    student_id: str
    transaction_reference: str
    amount: Decimal
    recipient: str
    attempts: int = 0
    needs_manual_reconciliation: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class LocalCacheSnapshot(BaseModel):
    """Last known-good server state, persisted wholesale."""
    version: int = 1
    saved_at: datetime = Field(default_factory=_utcnow)
    courses: list[Course] = Field(default_factory=list)
    enrolled_courses: list[Course] = Field(default_factory=list)
    enrollments: list[EnrollmentRecord] = Field(default_factory=list)
