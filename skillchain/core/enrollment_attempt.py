"""Enrollment Attempt: in-memory state machine for one (course, student) enrollment.

Invariants:
    - Every transition is checked against _TRANSITIONS; anything else raises
      InvalidTransitionError
    - Terminal states accept no further transitions
    - VALIDATING_COURSE may go straight to ENROLLED when an enrollment already exists
    - Once a transaction reference is recorded it never changes (retries reuse it)
    - funds_spent is True exactly when a payment was confirmed
    - FAIL_ENROLLMENT is unreachable once funds are spent; a paid attempt can only
      end ENROLLED or FAIL_NEEDS_MANUAL_RECONCILIATION

Design Decisions:
    - Dataclass with an explicit transition table: pure, deterministic, testable without mocks
    - history keeps every visited state so callers and logs can show the full path
"""

from dataclasses import dataclass, field
from decimal import Decimal

from skillchain.core.domain_types import EnrollmentState as S, TERMINAL_STATES
from skillchain.core.errors import InvalidTransitionError, ErrorContext

_TRANSITIONS: dict[S, frozenset[S]] = {
    S.IDLE: frozenset({S.VALIDATING_COURSE}),
    S.VALIDATING_COURSE: frozenset({S.CHECKING_PRICE, S.FAIL_VALIDATION, S.ENROLLED}),
    S.CHECKING_PRICE: frozenset({S.ENROLLING, S.ENSURING_WALLET}),
    S.ENSURING_WALLET: frozenset({S.CONNECTING_WALLET, S.CHECKING_BALANCE, S.FAIL_WALLET}),
    S.CONNECTING_WALLET: frozenset({S.CHECKING_BALANCE, S.FAIL_WALLET}),
    S.CHECKING_BALANCE: frozenset({S.FAIL_INSUFFICIENT_FUNDS, S.AWAITING_USER_CONFIRMATION}),
    S.AWAITING_USER_CONFIRMATION: frozenset({S.CANCELLED, S.PAYING}),
    S.PAYING: frozenset({S.FAIL_PAYMENT, S.FAIL_INSUFFICIENT_FUNDS, S.ENROLLING}),
    S.ENROLLING: frozenset({S.ENROLLED, S.ENROLLMENT_PENDING_RETRY, S.FAIL_ENROLLMENT}),
    S.ENROLLMENT_PENDING_RETRY: frozenset({S.ENROLLING, S.FAIL_NEEDS_MANUAL_RECONCILIATION}),
}


@dataclass
class EnrollmentAttempt:
    """Per-attempt workflow state. Pure dataclass, no IO."""

    course_id: str
    student_id: str
    state: S = S.IDLE
    price: Decimal | None = None
    transaction_reference: str | None = None
    retries: int = 0
    history: list[S] = field(default_factory=lambda: [S.IDLE])

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def funds_spent(self) -> bool:
        return self.transaction_reference is not None

    @classmethod
    def resumed(
        cls, course_id: str, student_id: str, price: Decimal, transaction_reference: str,
    ) -> "EnrollmentAttempt":
        """Attempt rebuilt from a persisted pending entry (payment already confirmed).

        Starts in ENROLLING: the replayed call is a first attempt and gets the full
        retry budget.
        """
        return cls(
            course_id=course_id,
            student_id=student_id,
            state=S.ENROLLING,
            price=price,
            transaction_reference=transaction_reference,
            history=[S.ENROLLMENT_PENDING_RETRY, S.ENROLLING],
        )

    def transition(self, new_state: S) -> None:
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise InvalidTransitionError(
                self.state.value, new_state.value, self.error_context(),
            )
        if new_state == S.FAIL_ENROLLMENT and self.funds_spent:
            raise InvalidTransitionError(
                self.state.value, new_state.value, self.error_context(),
            )
        if new_state == S.ENROLLMENT_PENDING_RETRY and not self.funds_spent:
            raise InvalidTransitionError(
                self.state.value, new_state.value, self.error_context(),
            )
        if new_state == S.ENROLLING and self.state == S.ENROLLMENT_PENDING_RETRY:
            self.retries += 1
        self.state = new_state
        self.history.append(new_state)

    def record_payment(self, transaction_reference: str) -> None:
        if self.transaction_reference not in (None, transaction_reference):
            raise InvalidTransitionError(
                f"paid:{self.transaction_reference}",
                f"paid:{transaction_reference}",
                self.error_context(),
            )
        self.transaction_reference = transaction_reference

    def error_context(self, step: S | None = None) -> ErrorContext:
        """Context for a terminal error raised while in (or leaving) `step`."""
        return ErrorContext(
            course_id=self.course_id,
            step=(step or self.state).value,
            transaction_reference=self.transaction_reference,
            funds_spent=self.funds_spent,
            attempt=self.retries + 1,
        )
