"""Enrollment Coordinator: drives one enrollment through validation, payment and recording.

Invariants:
    - Free courses never touch the WalletAdapter
    - Paid courses never reach CourseStore.enroll before WalletAdapter.pay confirmed
    - A student already enrolled (per CourseStore) is never asked to pay again
    - One in-flight run per (course_id, student_id); a second call raises
      EnrollmentInProgressError before any await
    - After a confirmed payment the run ends Enrolled or
      EnrollmentNeedsManualReconciliation, never plain FailEnrollment
    - Every retry reuses the original transaction reference
    - Every terminal error names the failed step and whether funds were spent

Design Decisions:
    - State lives in EnrollmentAttempt (core/enrollment_attempt.py); this module only does IO
    - Retry after payment is a bounded loop over explicit transitions with
      exponential backoff and ±25% jitter
    - Only ServerUnreachableError is retried; a 4xx after payment escalates at once
    - The pending ledger outlives the process so resume_pending() can finish the job
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable

from skillchain.core.domain_types import EnrollmentState as S
from skillchain.core.enrollment_attempt import EnrollmentAttempt
from skillchain.core.errors import (
    EnrollmentCancelledError,
    EnrollmentInProgressError,
    EnrollmentNeedsManualReconciliationError,
    ErrorContext,
    InsufficientFundsError,
    MarketplaceError,
    ServerUnreachableError,
    ValidationError,
)
from skillchain.core.repository_protocols import AuthSession
from skillchain.schemas.course import Course, EnrollmentRecord, PendingEnrollment
from skillchain.schemas.wallet import PaymentQuote, WalletSession
from skillchain.services.course_store import CourseStore
from skillchain.services.pending_enrollments import PendingEnrollmentLedger
from skillchain.services.wallet_adapter import WalletAdapter

logger = logging.getLogger(__name__)

ConfirmPayment = Callable[[PaymentQuote], Awaitable[bool]]


class EnrollmentCoordinator:
    """Orchestrates CourseStore and WalletAdapter for a single student."""

    def __init__(
        self,
        store: CourseStore,
        wallet: WalletAdapter,
        session: AuthSession,
        confirm: ConfirmPayment,
        recipient: str,
        ledger: PendingEnrollmentLedger | None = None,
        retry_budget: int = 3,
        retry_base_delay_ms: int = 1_000,
        retry_max_delay_ms: int = 30_000,
    ):
        self._store = store
        self._wallet = wallet
        self._session = session
        self._confirm = confirm
        self._recipient = recipient
        self._ledger = ledger or PendingEnrollmentLedger()
        self.retry_budget = retry_budget
        self.retry_base_delay_ms = retry_base_delay_ms
        self.retry_max_delay_ms = retry_max_delay_ms
        self._in_flight: set[tuple[str, str]] = set()
        self._attempts: dict[str, EnrollmentAttempt] = {}

    # ─── Public API ─────────────────────────────────────────────

    async def enroll(self, course_id: str) -> EnrollmentRecord:
        """Run the full enrollment workflow for the signed-in student."""
        student_id = self._student_id()
        key = (course_id, student_id)
        if key in self._in_flight:
            raise EnrollmentInProgressError(course_id)
        self._in_flight.add(key)
        attempt = EnrollmentAttempt(course_id=course_id, student_id=student_id)
        self._attempts[course_id] = attempt
        try:
            return await self._run(attempt)
        finally:
            self._in_flight.discard(key)

    async def resume_pending(self) -> list[EnrollmentRecord]:
        """Finish enrollments whose payment was confirmed in an earlier session."""
        student_id = self._session.user_id
        if not student_id:
            return []
        records = []
        for entry in await self._ledger.entries():
            if entry.student_id != student_id or entry.needs_manual_reconciliation:
                continue
            key = (entry.course_id, student_id)
            if key in self._in_flight:
                continue
            self._in_flight.add(key)
            attempt = EnrollmentAttempt.resumed(
                entry.course_id, student_id, entry.amount, entry.transaction_reference,
            )
            self._attempts[entry.course_id] = attempt
            logger.info(
                "Resuming pending enrollment",
                extra={
                    "course_id": entry.course_id,
                    "transaction_reference": entry.transaction_reference,
                },
            )
            try:
                records.append(await self._enroll_paid(attempt))
            except EnrollmentNeedsManualReconciliationError:
                # Flagged in the ledger; surfaced through unresolved_payments()
                continue
            finally:
                self._in_flight.discard(key)
        return records

    def last_attempt(self, course_id: str) -> EnrollmentAttempt | None:
        return self._attempts.get(course_id)

    async def unresolved_payments(self) -> list[PendingEnrollment]:
        """Payments that need support intervention (paid, not enrolled)."""
        return await self._ledger.unresolved()

    # ─── Workflow ───────────────────────────────────────────────

    async def _run(self, attempt: EnrollmentAttempt) -> EnrollmentRecord:
        attempt.transition(S.VALIDATING_COURSE)
        existing = self._store.get_enrollment(attempt.course_id)
        if existing is not None and existing.student_id == attempt.student_id:
            attempt.transition(S.ENROLLED)
            logger.info("Already enrolled, nothing to pay", extra=self._log_fields(attempt))
            return existing

        course = await self._load_course(attempt)
        if not course.is_enrollable:
            raise self._fail(attempt, S.FAIL_VALIDATION, ValidationError(
                f"Course '{course.title}' is not open for enrollment", field="status",
            ))
        attempt.price = course.price
        attempt.transition(S.CHECKING_PRICE)

        if course.is_free:
            attempt.transition(S.ENROLLING)
            try:
                record = await self._store.enroll(attempt.course_id, None)
            except MarketplaceError as e:
                raise self._fail(attempt, S.FAIL_ENROLLMENT, e)
            attempt.transition(S.ENROLLED)
            logger.info("Enrolled in free course", extra=self._log_fields(attempt))
            return record

        attempt.transition(S.ENSURING_WALLET)
        wallet_session = await self._ensure_wallet(attempt)

        attempt.transition(S.CHECKING_BALANCE)
        if wallet_session.balance < course.price:
            raise self._fail(
                attempt, S.FAIL_INSUFFICIENT_FUNDS,
                InsufficientFundsError(course.price, wallet_session.balance),
            )

        attempt.transition(S.AWAITING_USER_CONFIRMATION)
        quote = PaymentQuote(
            course_id=course.id,
            course_title=course.title,
            amount=course.price,
            recipient=self._recipient,
            payer_address=wallet_session.address or "",
            balance=wallet_session.balance,
        )
        try:
            confirmed = await self._confirm(quote)
        except Exception as e:
            logger.exception("Payment confirmation prompt failed", extra=self._log_fields(attempt))
            raise self._fail(attempt, S.CANCELLED, EnrollmentCancelledError(course.id)) from e
        if not confirmed:
            raise self._fail(attempt, S.CANCELLED, EnrollmentCancelledError(course.id))

        attempt.transition(S.PAYING)
        try:
            tx_hash = await self._wallet.pay(course.price, self._recipient)
        except InsufficientFundsError as e:
            raise self._fail(attempt, S.FAIL_INSUFFICIENT_FUNDS, e)
        except MarketplaceError as e:
            raise self._fail(attempt, S.FAIL_PAYMENT, e)

        attempt.record_payment(tx_hash)
        await self._ledger.add(PendingEnrollment(
            course_id=course.id,
            student_id=attempt.student_id,
            transaction_reference=tx_hash,
            amount=course.price,
            recipient=self._recipient,
        ))
        attempt.transition(S.ENROLLING)
        return await self._enroll_paid(attempt)

    async def _load_course(self, attempt: EnrollmentAttempt) -> Course:
        course = self._store.get_course(attempt.course_id)
        if course is not None:
            return course
        try:
            return await self._store.fetch_course(attempt.course_id)
        except MarketplaceError as e:
            raise self._fail(attempt, S.FAIL_VALIDATION, e)

    async def _ensure_wallet(self, attempt: EnrollmentAttempt) -> WalletSession:
        if self._wallet.session is None:
            attempt.transition(S.CONNECTING_WALLET)
        try:
            return await self._wallet.ensure_session()
        except MarketplaceError as e:
            raise self._fail(attempt, S.FAIL_WALLET, e)

    async def _enroll_paid(self, attempt: EnrollmentAttempt) -> EnrollmentRecord:
        """Bounded retry loop; the attempt is in ENROLLING with a payment recorded."""
        while True:
            try:
                record = await self._store.enroll(
                    attempt.course_id, attempt.transaction_reference,
                )
            except MarketplaceError as e:
                attempt.transition(S.ENROLLMENT_PENDING_RETRY)
                await self._ledger.record_attempt(attempt.course_id, attempt.student_id)
                transient = isinstance(e, ServerUnreachableError)
                if not transient or attempt.retries >= self.retry_budget:
                    raise await self._escalate(attempt, e) from e
                delay = self._backoff(attempt.retries)
                logger.warning(
                    f"Enrollment after payment failed, retry after {delay}ms: {e.message}",
                    extra=self._log_fields(attempt),
                )
                await asyncio.sleep(delay / 1000)
                attempt.transition(S.ENROLLING)
                continue

            attempt.transition(S.ENROLLED)
            await self._ledger.remove(attempt.course_id, attempt.student_id)
            logger.info("Enrolled in paid course", extra=self._log_fields(attempt))
            return record

    async def _escalate(
        self, attempt: EnrollmentAttempt, cause: MarketplaceError,
    ) -> EnrollmentNeedsManualReconciliationError:
        error = EnrollmentNeedsManualReconciliationError(
            attempt.course_id,
            attempt.transaction_reference or "",
            attempt.retries + 1,
            context=attempt.error_context(S.ENROLLING),
        )
        attempt.transition(S.FAIL_NEEDS_MANUAL_RECONCILIATION)
        await self._ledger.mark_needs_manual(attempt.course_id, attempt.student_id)
        logger.critical(
            f"Payment confirmed but enrollment not recorded: {cause.message}",
            extra={**self._log_fields(attempt), "error_code": error.code},
        )
        return error

    # ─── Helpers ────────────────────────────────────────────────

    def _fail(
        self, attempt: EnrollmentAttempt, terminal: S, error: MarketplaceError,
    ) -> MarketplaceError:
        """Move to a terminal state and stamp the error with the failed step."""
        step = attempt.state
        attempt.transition(terminal)
        ctx: ErrorContext = error.context
        ctx.course_id = ctx.course_id or attempt.course_id
        ctx.step = step.value
        ctx.funds_spent = attempt.funds_spent
        ctx.transaction_reference = ctx.transaction_reference or attempt.transaction_reference
        ctx.attempt = attempt.retries + 1
        logger.warning(
            f"Enrollment ended in {terminal.value}: {error.message}",
            extra={**self._log_fields(attempt), "error_code": error.code},
        )
        return error

    def _student_id(self) -> str:
        if not self._session.user_id:
            raise ValidationError("Sign in to enroll in courses", field="student_id")
        return self._session.user_id

    def _backoff(self, retry: int) -> int:
        """Exponential backoff with ±25% jitter."""
        delay = min(self.retry_max_delay_ms, (2 ** max(retry - 1, 0)) * self.retry_base_delay_ms)
        return int(delay * random.uniform(0.75, 1.25))  # nosec B311

    @staticmethod
    def _log_fields(attempt: EnrollmentAttempt) -> dict:
        return {
            "course_id": attempt.course_id,
            "student_id": attempt.student_id,
            "transaction_reference": attempt.transaction_reference,
            "state": attempt.state.value,
            "attempt": attempt.retries + 1,
        }
