"""Cache Snapshot: serialization / deserialization for LocalCacheSnapshot and the pending ledger.

Invariants:
    - snapshot_to_json produces a complete document; there is no partial/merge writer
    - snapshot_from_json raises ValueError on any corruption (bad JSON, bad shape,
      unknown version); callers decide how to degrade
    - Lists are copied on build so later in-memory mutation cannot leak into a snapshot

Design Decisions:
    - pydantic model_dump_json / model_validate_json over hand-written field maps
    - Version field checked explicitly so a future format change is detected, not misread
"""

import json

from skillchain.schemas.course import (
    Course,
    EnrollmentRecord,
    LocalCacheSnapshot,
    PendingEnrollment,
)

SNAPSHOT_VERSION = 1
SNAPSHOT_KEY = "courses_snapshot"
PENDING_KEY = "pending_enrollments"


def build_snapshot(
    courses: list[Course],
    enrolled_courses: list[Course],
    enrollments: list[EnrollmentRecord],
) -> LocalCacheSnapshot:
    """Assemble a full snapshot from current in-memory state. Pure, no IO."""
    return LocalCacheSnapshot(
        version=SNAPSHOT_VERSION,
        courses=[c.model_copy(deep=True) for c in courses],
        enrolled_courses=[c.model_copy(deep=True) for c in enrolled_courses],
        enrollments=list(enrollments),
    )


def snapshot_to_json(snapshot: LocalCacheSnapshot) -> str:
    return snapshot.model_dump_json()


def snapshot_from_json(text: str) -> LocalCacheSnapshot:
    """Parse a persisted snapshot. Raises ValueError if it cannot be trusted."""
    snapshot = LocalCacheSnapshot.model_validate_json(text)
    if snapshot.version != SNAPSHOT_VERSION:
        raise ValueError(f"Unsupported snapshot version {snapshot.version}")
    return snapshot


def pending_to_json(entries: list[PendingEnrollment]) -> str:
    return json.dumps([e.model_dump(mode="json") for e in entries])


def pending_from_json(text: str) -> list[PendingEnrollment]:
    """Parse the pending ledger. Raises ValueError on corruption."""
    data = json.loads(text)
    if not isinstance(data, list):
        raise ValueError("Pending ledger must be a JSON list")
    return [PendingEnrollment.model_validate(item) for item in data]
