"""
Booking transaction manager.

Turns a requested slot into a committed ScheduledCall:

    Requested -> Validated -> Reserved -> Confirmed
                                  \\-> Compensating -> Confirmed (sync pending)

Any pre-commit step may end in Rejected. Confirmed calls move to Cancelled
only through ``cancel``. The reservation is a single database transaction;
the partial unique index on (callee_id, start_at) decides which of several
concurrent requests wins.
"""

from __future__ import annotations

import logging
import secrets
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Dict, FrozenSet, Optional

from pendulum import DateTime
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..adapters.calendar_source import CalendarEvent, CalendarProvider
from ..domain.exceptions import (
    AuthError,
    BookingStateError,
    CalendarSyncError,
    ConflictError,
    QuotaExceededError,
    ReservationError,
    ValidationError,
)
from ..domain.models import BusyInterval, ExternalStatus, SlotStatus, to_utc
from ..storage import repository
from ..storage.database import session_scope
from ..storage.models import CallStatus, Participant, ParticipantRole, ScheduledCall
from .availability import AvailabilityService, Clock, utc_now
from .notifications import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    NotificationEvent,
    NotificationType,
)
from .quota import QuotaPeriod, QuotaTracker

logger = logging.getLogger(__name__)

CONFIRMATION_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CONFIRMATION_CODE_LENGTH = 8


class BookingState(str, Enum):
    REQUESTED = "requested"
    VALIDATED = "validated"
    RESERVED = "reserved"
    COMPENSATING = "compensating"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


_TRANSITIONS: Dict[BookingState, FrozenSet[BookingState]] = {
    BookingState.REQUESTED: frozenset({BookingState.VALIDATED, BookingState.REJECTED}),
    BookingState.VALIDATED: frozenset({BookingState.RESERVED, BookingState.REJECTED}),
    BookingState.RESERVED: frozenset({BookingState.CONFIRMED, BookingState.COMPENSATING}),
    BookingState.COMPENSATING: frozenset({BookingState.CONFIRMED}),
    BookingState.CONFIRMED: frozenset({BookingState.CANCELLED}),
    BookingState.REJECTED: frozenset(),
    BookingState.CANCELLED: frozenset(),
}


class BookingFlow:
    """Tracks the state of a single booking and refuses illegal transitions."""

    def __init__(self, label: str, state: BookingState = BookingState.REQUESTED):
        self.label = label
        self.state = state

    def advance(self, target: BookingState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise BookingStateError(
                f"Illegal transition {self.state.value} -> {target.value} for {self.label}"
            )
        logger.debug("Booking %s: %s -> %s", self.label, self.state.value, target.value)
        self.state = target


class RejectionReason(str, Enum):
    SLOT_UNAVAILABLE = "slot_unavailable"
    CONFLICT = "conflict"
    QUOTA_EXCEEDED = "quota_exceeded"
    AVAILABILITY_UNKNOWN = "availability_unknown"
    CALENDAR_NOT_CONNECTED = "calendar_not_connected"


@dataclass(frozen=True)
class Rejection:
    """Why a booking was not made."""
    reason: RejectionReason
    message: str
    slot_status: Optional[SlotStatus] = None
    conflicting_interval: Optional[BusyInterval] = None
    subject_id: Optional[str] = None
    remaining: Optional[int] = None
    resets_at: Optional[DateTime] = None
    limit: Optional[int] = None


@dataclass
class BookingRequest:
    caller_id: str
    callee_id: str
    start: DateTime
    end: DateTime
    agenda: str = ""
    notes: str = ""
    idempotency_key: Optional[str] = None


@dataclass
class BookingResult:
    """
    Outcome of ``BookingTransactionManager.book``.

    Exactly one of ``scheduled_call`` and ``rejection`` is set. ``replayed``
    marks a result served from an earlier request with the same idempotency key.
    """
    state: BookingState
    scheduled_call: Optional[ScheduledCall] = None
    rejection: Optional[Rejection] = None
    replayed: bool = False

    @property
    def is_confirmed(self) -> bool:
        return self.state is BookingState.CONFIRMED

    @property
    def is_rejected(self) -> bool:
        return self.state is BookingState.REJECTED

    def raise_for_rejection(self) -> ScheduledCall:
        """Return the scheduled call, or raise the exception matching the rejection."""
        if self.rejection is None:
            return self.scheduled_call

        rejection = self.rejection
        if rejection.reason is RejectionReason.QUOTA_EXCEEDED:
            raise QuotaExceededError(
                rejection.subject_id,
                remaining=rejection.remaining or 0,
                resets_at=rejection.resets_at,
                limit=rejection.limit,
            )
        if rejection.reason is RejectionReason.AVAILABILITY_UNKNOWN:
            raise CalendarSyncError(rejection.message, retryable=True)
        raise ConflictError(rejection.reason.value, rejection.message)


def generate_confirmation_code(length: int = CONFIRMATION_CODE_LENGTH) -> str:
    return "".join(secrets.choice(CONFIRMATION_ALPHABET) for _ in range(length))


class BookingTransactionManager:
    """
    Validates, reserves and confirms bookings; cancels them on request.

    The external calendar write runs on a worker thread bounded by
    ``confirm_timeout``. A failed or late write never undoes the reservation:
    the call is flagged ``calendar_sync_pending`` and, if the write finishes
    late, its event reference is recorded when it arrives.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        availability: AvailabilityService,
        quota: QuotaTracker,
        calendar: CalendarProvider,
        *,
        dispatcher: Optional[NotificationDispatcher] = None,
        require_connected_calendar: bool = False,
        confirm_timeout: float = 10.0,
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._availability = availability
        self._quota = quota
        self._calendar = calendar
        self._dispatcher = dispatcher or LoggingNotificationDispatcher()
        self._require_connected_calendar = require_connected_calendar
        self._confirm_timeout = confirm_timeout
        self._clock = clock
        self._confirm_executor = ThreadPoolExecutor(thread_name_prefix="callslot-confirm")
        self._notify_executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="callslot-notify"
        )

    def book(self, request: BookingRequest, now: Optional[DateTime] = None) -> BookingResult:
        """
        Book a slot for a caller with a callee.

        Args:
            request: The requested slot and call details
            now: Evaluation time, defaults to the manager clock

        Returns:
            BookingResult holding either the ScheduledCall or a Rejection

        Raises:
            ValidationError: Malformed request, unknown participant, off-grid
                slot or reused idempotency key
            ReservationError: Storage failure during the reservation
            AuthError: The callee's calendar credential was rejected
        """
        now = to_utc(now) if now is not None else self._clock()
        start, end = self._validate_shape(request)
        flow = BookingFlow(f"{request.callee_id}@{start.to_iso8601_string()}")

        # Validate
        with session_scope(self._session_factory) as session:
            caller = repository.get_participant(session, request.caller_id)
            callee = repository.get_participant(session, request.callee_id)

            if not repository.is_role(caller, ParticipantRole.CALLER):
                raise ValidationError(f"Caller not found: {request.caller_id}")
            if not repository.is_role(callee, ParticipantRole.CALLEE):
                raise ValidationError(f"Callee not found: {request.callee_id}")

            if request.idempotency_key:
                existing = repository.get_call_by_idempotency_key(
                    session, request.idempotency_key
                )
                if existing is not None:
                    return self._replay(existing, request, start)

        self._validate_grid(callee, start, end)

        rejection = self._check_availability(callee, request, start, end, now)
        if rejection is not None:
            # A retry may find its own first attempt committed in the meantime
            winner = self._find_replay(request, start)
            if winner is not None:
                return winner
            return self._reject(flow, rejection)

        flow.advance(BookingState.VALIDATED)

        # Reserve
        period = QuotaPeriod.containing(now)
        self._quota.ensure(caller.id, period)
        self._quota.ensure(callee.id, period)

        try:
            call = self._reserve(request, start, end, period)
        except IntegrityError:
            winner = self._find_replay(request, start)
            if winner is not None:
                return winner
            logger.info(
                "Slot %s for %s was reserved by a concurrent request",
                start.to_iso8601_string(),
                callee.id,
            )
            return self._reject(
                flow,
                Rejection(
                    reason=RejectionReason.CONFLICT,
                    message="Slot was just booked by another request",
                    slot_status=SlotStatus.BUSY_BOOKED,
                ),
            )
        except QuotaExceededError as exc:
            logger.info("Booking refused: %s", exc)
            return self._reject(
                flow,
                Rejection(
                    reason=RejectionReason.QUOTA_EXCEEDED,
                    message=str(exc),
                    subject_id=exc.subject_id,
                    remaining=exc.remaining,
                    resets_at=exc.resets_at,
                    limit=exc.limit,
                ),
            )
        except SQLAlchemyError as exc:
            raise ReservationError(f"Could not reserve slot: {exc}") from exc

        flow.advance(BookingState.RESERVED)
        self._availability.cache.invalidate(callee.id)
        logger.info(
            "Reserved call %s: %s with %s at %s",
            call.id,
            caller.id,
            callee.id,
            start.to_iso8601_string(),
        )

        # Confirm
        self._confirm(call, caller, callee, flow)
        self._notify(NotificationType.BOOKING_CONFIRMED, call)

        return BookingResult(state=flow.state, scheduled_call=call)

    def cancel(self, call_id: str, now: Optional[DateTime] = None) -> ScheduledCall:
        """
        Cancel a scheduled call and remove its calendar event.

        The slot becomes bookable again. Quota already consumed is not refunded.

        Raises:
            ValidationError: Unknown call
            BookingStateError: The call is not in a cancellable state
        """
        now = to_utc(now) if now is not None else self._clock()

        with session_scope(self._session_factory) as session:
            call = repository.get_call(session, call_id)
            if call is None:
                raise ValidationError(f"Scheduled call not found: {call_id}")

            if call.status is CallStatus.COMPLETED:
                raise BookingStateError(f"Call {call_id} is already completed")
            current = (
                BookingState.CONFIRMED
                if call.status is CallStatus.SCHEDULED
                else BookingState.CANCELLED
            )
            BookingFlow(call_id, current).advance(BookingState.CANCELLED)

            call.status = CallStatus.CANCELLED
            call.cancelled_at = now
            call.calendar_sync_pending = False

        if call.external_event_ref:
            try:
                self._calendar.delete_event(call.callee_id, call.external_event_ref)
            except (CalendarSyncError, AuthError) as exc:
                logger.warning(
                    "Could not remove calendar event %s of call %s: %s",
                    call.external_event_ref,
                    call_id,
                    exc,
                )

        self._availability.cache.invalidate(call.callee_id)
        logger.info("Cancelled call %s", call_id)
        self._notify(NotificationType.BOOKING_CANCELLED, call)
        return call

    def retry_pending_calendar_syncs(self, limit: int = 50) -> int:
        """
        Retry the calendar write for confirmed calls flagged as sync pending.

        Returns:
            Number of calls whose calendar event is now in place
        """
        with session_scope(self._session_factory) as session:
            pending = [
                (call, repository.get_participant(session, call.caller_id),
                 repository.get_participant(session, call.callee_id))
                for call in repository.calls_pending_calendar_sync(session, limit)
            ]

        synced = 0
        for call, caller, callee in pending:
            if callee is None:
                logger.warning("Call %s references unknown callee %s", call.id, call.callee_id)
                continue
            try:
                ref = self._calendar.create_event(
                    callee.id, callee.email, self._event_for(call, caller)
                )
            except (CalendarSyncError, AuthError) as exc:
                logger.warning("Calendar sync of call %s still failing: %s", call.id, exc)
                continue

            self._record_event_ref(call.id, ref)
            synced += 1

        if pending:
            logger.info("Calendar sync retried for %d call(s), %d synced", len(pending), synced)
        return synced

    def close(self) -> None:
        """Wait for in-flight calendar writes and notifications."""
        self._confirm_executor.shutdown(wait=True)
        self._notify_executor.shutdown(wait=True)

    def __enter__(self) -> "BookingTransactionManager":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _validate_shape(self, request: BookingRequest):
        if not request.caller_id or not request.callee_id:
            raise ValidationError("Both caller_id and callee_id are required")
        if request.caller_id == request.callee_id:
            raise ValidationError("Caller and callee must be different participants")

        try:
            start, end = to_utc(request.start), to_utc(request.end)
        except (AttributeError, ValueError) as exc:
            raise ValidationError(f"Invalid slot boundaries: {exc}") from exc

        if start >= end:
            raise ValidationError(f"Slot start {start} must be before end {end}")
        return start, end

    def _validate_grid(self, callee: Participant, start: DateTime, end: DateTime) -> None:
        hours = self._availability.business_hours_for(callee)
        duration = (end - start).total_seconds() / 60

        if duration != hours.slot_duration_minutes:
            raise ValidationError(
                f"Calls last {hours.slot_duration_minutes} minutes, got {duration:g}"
            )
        local_day = start.in_timezone(hours.timezone).date()
        if not hours.is_working_day(local_day):
            raise ValidationError(f"{local_day} is not a bookable day for {callee.id}")
        if not self._availability.generator_for(callee).is_on_grid(start, end):
            raise ValidationError(f"Slot {start} - {end} is not on the booking grid")

    def _check_availability(
        self,
        callee: Participant,
        request: BookingRequest,
        start: DateTime,
        end: DateTime,
        now: DateTime,
    ) -> Optional[Rejection]:
        check = self._availability.check_slot(callee, start, end, now)

        if check.external_status is ExternalStatus.UNAVAILABLE:
            return Rejection(
                reason=RejectionReason.AVAILABILITY_UNKNOWN,
                message=f"Calendar of {callee.id} could not be read, availability unknown",
            )
        if (
            check.external_status is ExternalStatus.NOT_CONNECTED
            and self._require_connected_calendar
        ):
            return Rejection(
                reason=RejectionReason.CALENDAR_NOT_CONNECTED,
                message=f"{callee.id} has no connected calendar",
            )
        if not check.slot.is_available:
            return Rejection(
                reason=RejectionReason.SLOT_UNAVAILABLE,
                message=f"Slot is {check.slot.status.value}",
                slot_status=check.slot.status,
                conflicting_interval=check.slot.conflicting_interval,
            )

        with session_scope(self._session_factory) as session:
            caller_calls = repository.active_calls_overlapping(
                session, start=start, end=end, caller_id=request.caller_id
            )
        if caller_calls:
            busy = caller_calls[0]
            return Rejection(
                reason=RejectionReason.SLOT_UNAVAILABLE,
                message=f"{request.caller_id} already has a call at this time",
                slot_status=SlotStatus.BUSY_BOOKED,
                conflicting_interval=BusyInterval.platform(
                    busy.start_at, busy.end_at, call_id=busy.id
                ),
            )
        return None

    def _reserve(
        self,
        request: BookingRequest,
        start: DateTime,
        end: DateTime,
        period: QuotaPeriod,
    ) -> ScheduledCall:
        with session_scope(self._session_factory) as session:
            call = ScheduledCall(
                caller_id=request.caller_id,
                callee_id=request.callee_id,
                start_at=start,
                end_at=end,
                status=CallStatus.SCHEDULED,
                agenda=request.agenda,
                notes=request.notes,
                confirmation_code=generate_confirmation_code(),
                calendar_sync_pending=False,
                idempotency_key=request.idempotency_key,
            )
            session.add(call)
            session.flush()

            self._quota.consume(session, request.caller_id, period)
            self._quota.consume(session, request.callee_id, period)
        return call

    def _replay(
        self,
        existing: ScheduledCall,
        request: BookingRequest,
        start: DateTime,
    ) -> BookingResult:
        if (
            existing.caller_id != request.caller_id
            or existing.callee_id != request.callee_id
            or existing.start_at != start
        ):
            raise ValidationError(
                f"Idempotency key {request.idempotency_key} was used for a different booking"
            )

        logger.info("Replaying booking %s for key %s", existing.id, request.idempotency_key)
        state = BookingState.CONFIRMED if existing.is_active else BookingState.CANCELLED
        return BookingResult(state=state, scheduled_call=existing, replayed=True)

    def _find_replay(self, request: BookingRequest, start: DateTime) -> Optional[BookingResult]:
        if not request.idempotency_key:
            return None
        with session_scope(self._session_factory) as session:
            winner = repository.get_call_by_idempotency_key(session, request.idempotency_key)
        if winner is None:
            return None
        return self._replay(winner, request, start)

    def _reject(self, flow: BookingFlow, rejection: Rejection) -> BookingResult:
        flow.advance(BookingState.REJECTED)
        logger.info("Booking %s rejected: %s", flow.label, rejection.reason.value)
        return BookingResult(state=flow.state, rejection=rejection)

    def _event_for(self, call: ScheduledCall, caller: Optional[Participant]) -> CalendarEvent:
        attendees = [caller.email] if caller is not None else []
        name = (caller.display_name or caller.email) if caller is not None else call.caller_id
        return CalendarEvent(
            summary=f"Call with {name}",
            start=call.start_at,
            end=call.end_at,
            description=call.agenda,
            attendees=attendees,
        )

    def _confirm(
        self,
        call: ScheduledCall,
        caller: Participant,
        callee: Participant,
        flow: BookingFlow,
    ) -> None:
        future = self._confirm_executor.submit(
            self._calendar.create_event, callee.id, callee.email, self._event_for(call, caller)
        )

        try:
            ref = future.result(timeout=self._confirm_timeout)
        except FutureTimeoutError:
            logger.warning(
                "Calendar write for call %s timed out after %.1fs, marking sync pending",
                call.id,
                self._confirm_timeout,
            )
            self._compensate(call, flow)
            future.add_done_callback(partial(self._record_late_ref, call.id))
            return
        except Exception as exc:
            logger.warning("Calendar write for call %s failed: %s", call.id, exc)
            self._compensate(call, flow)
            return

        if ref is None:
            logger.debug("No calendar connected for %s, skipping event", callee.id)
        else:
            self._record_event_ref(call.id, ref)
            call.external_event_ref = ref
        flow.advance(BookingState.CONFIRMED)

    def _compensate(self, call: ScheduledCall, flow: BookingFlow) -> None:
        flow.advance(BookingState.COMPENSATING)
        with session_scope(self._session_factory) as session:
            row = repository.get_call(session, call.id)
            if row is not None and row.external_event_ref is None:
                row.calendar_sync_pending = True
        call.calendar_sync_pending = True
        flow.advance(BookingState.CONFIRMED)

    def _record_late_ref(self, call_id: str, future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.warning("Late calendar write for call %s failed: %s", call_id, exc)
            return
        ref = future.result()
        call = self._record_event_ref(call_id, ref)
        logger.info("Late calendar write for call %s completed", call_id)

        # Cancelled while the write was in flight
        if call is not None and ref and not call.is_active:
            try:
                self._calendar.delete_event(call.callee_id, ref)
            except (CalendarSyncError, AuthError) as exc:
                logger.warning("Could not remove late event %s of call %s: %s", ref, call_id, exc)

    def _record_event_ref(self, call_id: str, ref: Optional[str]) -> Optional[ScheduledCall]:
        with session_scope(self._session_factory) as session:
            row = repository.get_call(session, call_id)
            if row is None:
                return None
            row.external_event_ref = ref
            row.calendar_sync_pending = False
        return row

    def _notify(self, type_: NotificationType, call: ScheduledCall) -> None:
        self._notify_executor.submit(self._dispatch, NotificationEvent(type_, call))

    def _dispatch(self, event: NotificationEvent) -> None:
        try:
            self._dispatcher.dispatch(event)
        except Exception:
            logger.exception(
                "Notification %s for call %s failed", event.type.value, event.scheduled_call.id
            )
