"""Course Transform: pure mapping from raw backend records to normalized Course models.

Invariants:
    - Lesson content is routed by declared type: video -> video_url, document -> document_url
    - price parsed to a non-negative Decimal; unparsable prices drop the record
    - enrolled_count derived from the raw `students` membership array
    - modules / total_lessons derived from the syllabus when the server omits them
    - Output order == input order (refresh twice yields identical lists)
    - No IO, no logging side effects beyond the returned `dropped` list

Design Decisions:
    - Backend camelCase <-> internal snake_case mapping lives only here
    - Patchable fields are an explicit table; unknown patch keys are a ValidationError
"""

from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from skillchain.core.domain_types import LessonType
from skillchain.core.errors import ValidationError
from skillchain.schemas.course import Course, CourseDraft, CourseModule, Lesson

REQUIRED_DRAFT_FIELDS: tuple[str, ...] = ("title", "category", "level")

# internal name -> backend name
_PATCHABLE_FIELDS: dict[str, str] = {
    "title": "title",
    "description": "description",
    "category": "category",
    "level": "level",
    "duration": "duration",
    "price": "price",
    "reward_amount": "skillTokenReward",
    "status": "status",
    "prerequisites": "prerequisites",
    "learning_outcomes": "learningOutcomes",
    "thumbnail": "thumbnail",
    "syllabus": "syllabus",
}


# ─── Scalars ─────────────────────────────────────────────────────

def parse_amount(raw: Any) -> Decimal | None:
    """Parse a price-like value ("0.1", "0.1 ETH", 0.1, 2) into a non-negative Decimal."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, Decimal):
        value = raw
    elif isinstance(raw, (int, float)):
        value = Decimal(str(raw))
    elif isinstance(raw, str):
        parts = raw.strip().split()
        if not parts:
            return None
        try:
            value = Decimal(parts[0])
        except InvalidOperation:
            return None
    else:
        return None
    if not value.is_finite() or value < 0:
        return None
    return value


def _count_members(raw: Any) -> int:
    if isinstance(raw, list):
        return len(raw)
    if isinstance(raw, int) and not isinstance(raw, bool) and raw >= 0:
        return raw
    return 0


def _teacher_id(raw: Any) -> str | None:
    if isinstance(raw, dict):
        tid = raw.get("_id") or raw.get("id")
        return str(tid) if tid is not None else None
    if raw is None:
        return None
    return str(raw)


# ─── Lessons / Syllabus ─────────────────────────────────────────

def _lesson_type(raw: Any) -> LessonType | None:
    try:
        return LessonType(raw)
    except ValueError:
        return None


def normalize_lesson(raw: dict) -> Lesson:
    """Route the generic `content` payload into the typed field for its lesson type."""
    lesson_type = _lesson_type(raw.get("type"))
    content = raw.get("content")
    video_url = raw.get("videoUrl") or raw.get("video_url")
    document_url = raw.get("documentUrl") or raw.get("document_url")
    if lesson_type == LessonType.VIDEO and not video_url:
        video_url = content or None
    elif lesson_type == LessonType.DOCUMENT and not document_url:
        document_url = content or None
    return Lesson(
        id=_str_or_none(raw.get("_id") or raw.get("id")),
        title=raw.get("title") or "",
        description=raw.get("description") or "",
        type=lesson_type,
        content=content,
        video_url=video_url,
        document_url=document_url,
        duration=raw.get("duration"),
    )


def normalize_syllabus(raw: Any) -> list[CourseModule]:
    if not isinstance(raw, list):
        return []
    modules = []
    for module in raw:
        if not isinstance(module, dict):
            continue
        lessons = [
            normalize_lesson(lesson)
            for lesson in module.get("lessons") or []
            if isinstance(lesson, dict)
        ]
        modules.append(CourseModule(
            id=_str_or_none(module.get("_id") or module.get("id")),
            title=module.get("title") or "",
            description=module.get("description") or "",
            lessons=lessons,
        ))
    return modules


def _str_or_none(value: Any) -> str | None:
    return str(value) if value is not None else None


# ─── Courses ─────────────────────────────────────────────────────

def normalize_course(raw: dict) -> Course | None:
    """Build a Course from a raw backend record. Returns None if the record is unusable."""
    course_id = raw.get("_id") or raw.get("id")
    price = parse_amount(raw.get("price"))
    if course_id is None or price is None:
        return None
    syllabus = normalize_syllabus(raw.get("syllabus"))
    lesson_count = sum(len(m.lessons) for m in syllabus)
    enrolled = raw.get("students")
    if enrolled is None:
        enrolled = raw.get("enrolledCount", raw.get("enrolled_count"))
    try:
        return Course(
            id=str(course_id),
            title=raw.get("title") or "",
            description=raw.get("description") or "",
            category=raw.get("category") or "",
            level=raw.get("level") or "",
            duration=raw.get("duration") or "",
            price=price,
            reward_amount=parse_amount(
                raw.get("skillTokenReward", raw.get("reward_amount")),
            ) or Decimal("0"),
            status=raw.get("status") or "draft",
            enrolled_count=_count_members(enrolled),
            teacher_id=_teacher_id(raw.get("teacher", raw.get("teacherId"))),
            prerequisites=list(raw.get("prerequisites") or []),
            learning_outcomes=list(raw.get("learningOutcomes") or []),
            thumbnail=raw.get("thumbnail"),
            syllabus=syllabus,
            modules=raw.get("modules") or len(syllabus),
            total_lessons=raw.get("totalLessons") or lesson_count,
            rating=raw.get("rating") or 0.0,
            reviews=raw.get("reviews") or 0,
            created_at=raw.get("createdAt"),
            updated_at=raw.get("updatedAt"),
        )
    except PydanticValidationError:
        return None


def normalize_courses(raws: Any) -> tuple[list[Course], list[Any]]:
    """Normalize a backend list. Returns (courses, dropped_raw_records)."""
    if not isinstance(raws, list):
        return [], [raws]
    courses: list[Course] = []
    dropped: list[Any] = []
    for raw in raws:
        course = normalize_course(raw) if isinstance(raw, dict) else None
        if course is None:
            dropped.append(raw)
        else:
            courses.append(course)
    return courses, dropped


# ─── Drafts / Patches ────────────────────────────────────────────

def validate_draft(draft: CourseDraft) -> None:
    """Raise ValidationError naming every missing required field."""
    missing = [
        name for name in REQUIRED_DRAFT_FIELDS
        if not str(getattr(draft, name) or "").strip()
    ]
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}", field=missing[0],
        )


def _syllabus_payload(syllabus: list[CourseModule]) -> list[dict]:
    return [
        {
            "id": module.id,
            "title": module.title,
            "description": module.description,
            "lessons": [
                {
                    "id": lesson.id,
                    "title": lesson.title,
                    "description": lesson.description,
                    "type": lesson.type.value if lesson.type else None,
                    "content": lesson.content or lesson.video_url or lesson.document_url,
                }
                for lesson in module.lessons
            ],
        }
        for module in syllabus
    ]


def draft_to_payload(draft: CourseDraft) -> dict:
    """Backend body for POST /courses."""
    return {
        "title": draft.title.strip(),
        "description": draft.description,
        "category": draft.category.strip(),
        "level": draft.level.strip(),
        "duration": draft.duration,
        "price": str(draft.price),
        "skillTokenReward": str(draft.reward_amount),
        "prerequisites": list(draft.prerequisites),
        "learningOutcomes": list(draft.learning_outcomes),
        "thumbnail": draft.thumbnail,
        "syllabus": _syllabus_payload(draft.syllabus),
        "status": draft.status.value,
    }


def _check_patch_keys(patch: dict) -> None:
    unknown = sorted(set(patch) - set(_PATCHABLE_FIELDS))
    if unknown:
        raise ValidationError(
            f"Fields cannot be updated: {', '.join(unknown)}", field=unknown[0],
        )


def apply_patch(course: Course, patch: dict) -> Course:
    """Return a copy of course with patch applied (validated through the model)."""
    _check_patch_keys(patch)
    merged = course.model_dump()
    merged.update(patch)
    if "price" in patch:
        price = parse_amount(patch["price"])
        if price is None:
            raise ValidationError("price must be a non-negative decimal", field="price")
        merged["price"] = price
    try:
        return Course.model_validate(merged)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(loc) for loc in first["loc"])
        raise ValidationError(f"Invalid value for {field}: {first['msg']}", field=field)


def patch_to_payload(patch: dict) -> dict:
    """Backend body for PUT /courses/:id."""
    _check_patch_keys(patch)
    payload: dict[str, Any] = {}
    for name, value in patch.items():
        if name in ("price", "reward_amount"):
            value = str(value)
        elif name == "status":
            value = getattr(value, "value", value)
        elif name == "syllabus":
            value = _syllabus_payload(
                [m if isinstance(m, CourseModule) else CourseModule.model_validate(m) for m in value],
            )
        payload[_PATCHABLE_FIELDS[name]] = value
    return payload
