"""Domain Types: enums and constants shared across the codebase.

Invariants:
    - All valid states encoded as Enums; no raw string matching
    - Amounts are Decimal in the base currency (never float); wei only at the provider edge

Design Decisions:
    - str Enums: serialize to JSON without custom encoders (snapshot is JSON)
"""

from enum import Enum


# ─── Value Types ─────────────────────────────────────────────────

WEI_PER_UNIT = 10 ** 18
NATIVE_TRANSFER_GAS = 21_000


# ─── Enums ───────────────────────────────────────────────────────

class CourseStatus(str, Enum):
    """Course lifecycle. Only ACTIVE is enroll-able."""
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"


class LessonType(str, Enum):
    """Declared lesson type; drives which typed URL field is populated."""
    VIDEO = "video"
    DOCUMENT = "document"
    QUIZ = "quiz"
    ASSIGNMENT = "assignment"


class EnrollmentState(str, Enum):
    """States of one enrollment attempt for a (course, student) pair."""
    IDLE = "idle"
    VALIDATING_COURSE = "validating_course"
    CHECKING_PRICE = "checking_price"
    ENSURING_WALLET = "ensuring_wallet"
    CONNECTING_WALLET = "connecting_wallet"
    CHECKING_BALANCE = "checking_balance"
    AWAITING_USER_CONFIRMATION = "awaiting_user_confirmation"
    PAYING = "paying"
    ENROLLING = "enrolling"
    ENROLLMENT_PENDING_RETRY = "enrollment_pending_retry"
    # Terminal
    ENROLLED = "enrolled"
    CANCELLED = "cancelled"
    FAIL_VALIDATION = "fail_validation"
    FAIL_WALLET = "fail_wallet"
    FAIL_INSUFFICIENT_FUNDS = "fail_insufficient_funds"
    FAIL_PAYMENT = "fail_payment"
    FAIL_ENROLLMENT = "fail_enrollment"
    FAIL_NEEDS_MANUAL_RECONCILIATION = "fail_enrollment_needs_manual_reconciliation"


TERMINAL_STATES = frozenset({
    EnrollmentState.ENROLLED,
    EnrollmentState.CANCELLED,
    EnrollmentState.FAIL_VALIDATION,
    EnrollmentState.FAIL_WALLET,
    EnrollmentState.FAIL_INSUFFICIENT_FUNDS,
    EnrollmentState.FAIL_PAYMENT,
    EnrollmentState.FAIL_ENROLLMENT,
    EnrollmentState.FAIL_NEEDS_MANUAL_RECONCILIATION,
})


class WalletEventKind(str, Enum):
    """Provider notifications the adapter subscribes to."""
    ACCOUNTS_CHANGED = "accountsChanged"
    CHAIN_CHANGED = "chainChanged"
    DISCONNECT = "disconnect"


class DirtyKind(str, Enum):
    """Which optimistic mutation left a course unconfirmed."""
    UPDATE = "update"
    DELETE = "delete"


# Provider error codes (EIP-1193)
PROVIDER_USER_REJECTED = 4001
PROVIDER_UNAUTHORIZED = 4100
