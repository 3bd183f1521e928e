"""Error Hierarchy: typed, categorized exceptions for all marketplace failure modes.

Invariants:
    - Every error has a code (str), category (ErrorCategory), severity (ErrorSeverity)
    - Every terminal enrollment failure says which step failed and whether funds were spent
    - EnrollmentNeedsManualReconciliationError is CRITICAL and always carries the
      transaction reference
    - to_response() produces a UI-ready envelope; no internal details in messages

Design Decisions:
    - Single hierarchy with MarketplaceError base so callers can catch one type
    - ErrorContext as dataclass: observability fields without coupling to logging
    - ProviderError is a boundary error raised by wallet providers, not a
      MarketplaceError; WalletAdapter maps it into the hierarchy
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from datetime import datetime, timezone


class ErrorSeverity(str, Enum):
    """Error severity for observability and client handling."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """High-level error categories for routing and handling."""
    VALIDATION = "validation"
    WALLET = "wallet"
    PAYMENT = "payment"
    SERVER = "server"
    NETWORK = "network"
    CONFLICT = "conflict"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    RECONCILIATION = "reconciliation"
    STORAGE = "storage"
    INTERNAL = "internal"


@dataclass
class ErrorContext:
    """Rich context for error observability and user-facing rendering."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    course_id: str | None = None
    step: str | None = None
    transaction_reference: str | None = None
    funds_spent: bool = False
    attempt: int | None = None
    http_status: int | None = None
    debug_info: dict[str, Any] | None = None


class MarketplaceError(Exception):
    """Base exception for all SkillChain errors."""

    def __init__(
        self,
        message: str,
        code: str,
        category: ErrorCategory,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: ErrorContext | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()

    @property
    def funds_spent(self) -> bool:
        return self.context.funds_spent

    def to_response(self) -> dict:
        """Convert to a standardized envelope for UI rendering."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "category": self.category.value,
                "severity": self.severity.value,
                "timestamp": self.context.timestamp.isoformat(),
                "context": {
                    "course_id": self.context.course_id,
                    "step": self.context.step,
                    "transaction_reference": self.context.transaction_reference,
                    "funds_spent": self.context.funds_spent,
                    "attempt": self.context.attempt,
                },
            }
        }


# ─── Wallet / Payment Errors ────────────────────────────────────

class WalletUnavailableError(MarketplaceError):
    """No wallet provider injected, or no authorized account."""
    def __init__(self, message: str = "No wallet provider available", context: ErrorContext | None = None):
        super().__init__(
            message, "WALLET_UNAVAILABLE", ErrorCategory.WALLET,
            ErrorSeverity.WARNING, context,
        )


class UserRejectedError(MarketplaceError):
    """User declined a wallet prompt (account access or signature)."""
    def __init__(self, message: str = "Request was rejected in the wallet", context: ErrorContext | None = None):
        super().__init__(
            message, "USER_REJECTED", ErrorCategory.WALLET,
            ErrorSeverity.INFO, context,
        )


class InsufficientFundsError(MarketplaceError):
    """Wallet balance is below the course price."""
    def __init__(self, required: Any, available: Any, context: ErrorContext | None = None):
        super().__init__(
            f"Insufficient funds: {required} required, {available} available",
            "INSUFFICIENT_FUNDS", ErrorCategory.PAYMENT,
            ErrorSeverity.ERROR, context,
        )
        self.required = required
        self.available = available


class PaymentFailedError(MarketplaceError):
    """Payment submission or confirmation failed; no funds confirmed spent."""
    def __init__(
        self, message: str, code: str = "PAYMENT_FAILED",
        category: ErrorCategory = ErrorCategory.PAYMENT,
        context: ErrorContext | None = None,
    ):
        super().__init__(message, code, category, ErrorSeverity.ERROR, context)


class PaymentTimeoutError(PaymentFailedError):
    """Payment not confirmed within the configured bound."""
    def __init__(self, timeout_seconds: float, context: ErrorContext | None = None):
        super().__init__(
            f"Payment not confirmed within {timeout_seconds}s",
            "PAYMENT_TIMEOUT", ErrorCategory.TIMEOUT, context,
        )
        self.timeout_seconds = timeout_seconds


# ─── Backend / Validation Errors ────────────────────────────────

class ValidationError(MarketplaceError):
    """Input or course state failed validation (client-side or 400/422)."""
    def __init__(self, message: str, field: str | None = None, context: ErrorContext | None = None):
        super().__init__(
            message, "VALIDATION_ERROR", ErrorCategory.VALIDATION,
            ErrorSeverity.ERROR, context,
        )
        self.field = field


class ServerRejectedError(MarketplaceError):
    """Backend refused the request (auth, not found, duplicate)."""
    def __init__(self, message: str, http_status: int, context: ErrorContext | None = None):
        ctx = context or ErrorContext()
        ctx.http_status = http_status
        super().__init__(
            message, "SERVER_REJECTED", ErrorCategory.SERVER,
            ErrorSeverity.ERROR, ctx,
        )
        self.http_status = http_status


class ServerUnreachableError(MarketplaceError):
    """Network failure, timeout, or 5xx from the backend."""
    def __init__(self, message: str, http_status: int | None = None, context: ErrorContext | None = None):
        ctx = context or ErrorContext()
        ctx.http_status = http_status
        super().__init__(
            message, "SERVER_UNREACHABLE", ErrorCategory.NETWORK,
            ErrorSeverity.WARNING, ctx,
        )
        self.http_status = http_status


# ─── Enrollment Errors ──────────────────────────────────────────

class EnrollmentInProgressError(MarketplaceError):
    """Another enrollment for the same (course, student) is in flight."""
    def __init__(self, course_id: str, context: ErrorContext | None = None):
        ctx = context or ErrorContext()
        ctx.course_id = course_id
        super().__init__(
            f"Enrollment for course '{course_id}' is already in progress",
            "ENROLLMENT_IN_PROGRESS", ErrorCategory.CONFLICT,
            ErrorSeverity.WARNING, ctx,
        )


class EnrollmentConflictError(MarketplaceError):
    """Backend reports the student is already enrolled. Treated as success."""
    def __init__(self, course_id: str, message: str = "Already enrolled in this course", context: ErrorContext | None = None):
        ctx = context or ErrorContext()
        ctx.course_id = course_id
        super().__init__(
            message, "ENROLLMENT_CONFLICT", ErrorCategory.CONFLICT,
            ErrorSeverity.INFO, ctx,
        )


class EnrollmentCancelledError(MarketplaceError):
    """User declined the payment confirmation. Nothing was spent."""
    def __init__(self, course_id: str, context: ErrorContext | None = None):
        ctx = context or ErrorContext()
        ctx.course_id = course_id
        super().__init__(
            "Enrollment cancelled before payment",
            "ENROLLMENT_CANCELLED", ErrorCategory.CANCELLED,
            ErrorSeverity.INFO, ctx,
        )


class EnrollmentNeedsManualReconciliationError(MarketplaceError):
    """Payment confirmed on-chain but the enrollment was never recorded."""
    def __init__(
        self,
        course_id: str,
        transaction_reference: str,
        attempts: int,
        context: ErrorContext | None = None,
    ):
        ctx = context or ErrorContext()
        ctx.course_id = course_id
        ctx.transaction_reference = transaction_reference
        ctx.funds_spent = True
        ctx.attempt = attempts
        super().__init__(
            (
                f"Payment {transaction_reference} was confirmed but enrollment in "
                f"course '{course_id}' could not be recorded after {attempts} attempts. "
                "Contact support with the transaction reference."
            ),
            "ENROLLMENT_NEEDS_MANUAL_RECONCILIATION", ErrorCategory.RECONCILIATION,
            ErrorSeverity.CRITICAL, ctx,
        )
        self.transaction_reference = transaction_reference
        self.attempts = attempts


class InvalidTransitionError(MarketplaceError):
    """Enrollment state machine asked for a transition it does not allow."""
    def __init__(self, current: str, requested: str, context: ErrorContext | None = None):
        super().__init__(
            f"Invalid enrollment transition {current} -> {requested}",
            "INVALID_TRANSITION", ErrorCategory.INTERNAL,
            ErrorSeverity.CRITICAL, context,
        )


# ─── Infrastructure Errors ─────────────────────────────────────

class StorageError(MarketplaceError):
    """Persisted cache could not be read or written."""
    def __init__(self, message: str, operation: str, context: ErrorContext | None = None):
        super().__init__(
            f"Cache {operation} failed: {message}",
            "STORAGE_ERROR", ErrorCategory.STORAGE,
            ErrorSeverity.WARNING, context,
        )
        self.operation = operation


# ─── Boundary Errors ────────────────────────────────────────────

class ProviderError(Exception):
    """Raised by wallet provider implementations (EIP-1193 style code + message)."""

    def __init__(self, code: int | str, message: str, data: Any = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data
