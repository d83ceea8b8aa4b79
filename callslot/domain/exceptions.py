"""
Domain-specific exception hierarchy for the booking engine.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from pendulum import DateTime


class CallslotError(Exception):
    """Base class for all application-level errors."""


class ValidationError(CallslotError):
    """Raised for malformed booking requests (off-grid slot, unknown callee, ...)."""


class ConflictError(CallslotError):
    """The requested slot is taken or busy. Callers should pick another time."""

    def __init__(self, reason: str, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}" if detail else reason)


class QuotaExceededError(CallslotError):
    """A caller or callee has exhausted their allowance for the period."""

    def __init__(
        self,
        subject_id: str,
        remaining: int = 0,
        resets_at: Optional["DateTime"] = None,
        limit: Optional[int] = None,
    ):
        self.subject_id = subject_id
        self.remaining = remaining
        self.resets_at = resets_at
        self.limit = limit
        message = f"Monthly call limit reached for {subject_id}"
        if limit is not None:
            message += f" ({limit}/{limit} calls used)"
        if resets_at is not None:
            message += f", resets {resets_at.to_iso8601_string()}"
        super().__init__(message)


class CalendarSyncError(CallslotError):
    """Raised when calendar data cannot be fetched or written."""

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)


class AuthError(CallslotError):
    """Raised when authentication or token handling fails."""


class ReservationError(CallslotError):
    """The atomic reservation write failed; nothing was reserved."""


class BookingStateError(CallslotError):
    """An illegal booking state transition was attempted."""
