"""
Tests for the BookingTransactionManager.
"""

import threading
from typing import Callable, List

import pendulum
import pytest
from sqlalchemy import func, select

from callslot.config import BusinessHoursConfig
from callslot.domain.exceptions import (
    BookingStateError,
    CalendarSyncError,
    ConflictError,
    QuotaExceededError,
    ValidationError,
)
from callslot.domain.models import BusySource, SlotStatus
from callslot.services.booking import (
    BookingFlow,
    BookingResult,
    BookingState,
    RejectionReason,
)
from callslot.services.notifications import NotificationType
from callslot.services.quota import QuotaPeriod
from callslot.storage import repository
from callslot.storage.database import session_scope
from callslot.storage.models import CallStatus, ScheduledCall

from conftest import DAY, NOW, at


def _run_concurrently(tasks: List[Callable[[], BookingResult]]) -> List[BookingResult]:
    """Start all tasks at the same instant and collect their results in order."""
    barrier = threading.Barrier(len(tasks), timeout=10)
    results: List = [None] * len(tasks)
    errors: List[BaseException] = []

    def worker(index: int, task: Callable[[], BookingResult]) -> None:
        barrier.wait()
        try:
            results[index] = task()
        except BaseException as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(i, t)) for i, t in enumerate(tasks)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert not errors, errors
    return results


def _gate_after_validation(stack, parties: int) -> None:
    """Hold every request after its availability check until all have passed it."""
    gate = threading.Barrier(parties, timeout=10)
    check_slot = stack.availability.check_slot

    def gated(*args, **kwargs):
        result = check_slot(*args, **kwargs)
        gate.wait()
        return result

    stack.availability.check_slot = gated


def _count_calls(session_factory, callee_id: str) -> int:
    with session_scope(session_factory) as session:
        return session.scalar(
            select(func.count()).select_from(ScheduledCall).where(
                ScheduledCall.callee_id == callee_id,
                ScheduledCall.status != CallStatus.CANCELLED,
            )
        )


class TestBook:
    """Tests for the happy path of BookingTransactionManager.book."""

    def test_books_free_slot(self, stack):
        caller = stack.add_caller()
        callee = stack.add_callee()

        result = stack.manager.book(stack.request(caller, callee, "14:00", agenda="Intro"))

        assert result.is_confirmed
        assert not result.replayed
        call = result.scheduled_call
        assert call.status is CallStatus.SCHEDULED
        assert call.start_at == at("14:00")
        assert call.end_at == at("14:15")
        assert call.agenda == "Intro"
        assert len(call.confirmation_code) == 8
        assert result.raise_for_rejection() is call

    def test_call_is_stored(self, stack):
        caller = stack.add_caller()
        callee = stack.add_callee()

        call = stack.manager.book(stack.request(caller, callee, "14:00")).scheduled_call

        with session_scope(stack.session_factory) as session:
            stored = repository.get_call(session, call.id)
            assert stored.callee_id == callee
            assert stored.start_at == at("14:00")
            assert stored.calendar_sync_pending is False

    def test_consumes_caller_and_callee_quota(self, stack):
        caller = stack.add_caller(plan="free")
        callee = stack.add_callee(plan="free")

        stack.manager.book(stack.request(caller, callee, "14:00"))

        period = QuotaPeriod.containing(NOW)
        assert stack.quota.remaining(caller, period) == 0
        assert stack.quota.remaining(callee, period) == 2

    def test_booked_slot_shows_busy_booked(self, stack):
        caller = stack.add_caller()
        callee = stack.add_callee()
        stack.availability.get_availability(callee, DAY)

        call = stack.manager.book(stack.request(caller, callee, "14:00")).scheduled_call
        view = stack.availability.get_availability(callee, DAY)

        slot = next(s for s in view.slots if s.start == at("14:00"))
        assert slot.status is SlotStatus.BUSY_BOOKED
        assert slot.conflicting_interval.source is BusySource.PLATFORM
        assert slot.conflicting_interval.call_id == call.id

    def test_callee_time_zone_grid(self, stack):
        caller = stack.add_caller()
        callee = stack.add_callee(timezone="Europe/Berlin")
        start = pendulum.datetime(2026, 3, 2, 9, 0, tz="Europe/Berlin")

        result = stack.manager.book(stack.request(caller, callee, "08:00"))

        assert result.is_confirmed
        assert result.scheduled_call.start_at == start


class TestValidation:
    """Malformed requests raise ValidationError before anything is reserved."""

    def test_off_grid_start(self, stack):
        caller, callee = stack.add_caller(), stack.add_callee()

        with pytest.raises(ValidationError, match="grid"):
            stack.manager.book(stack.request(caller, callee, "14:05"))

    def test_wrong_duration(self, stack):
        caller, callee = stack.add_caller(), stack.add_callee()

        with pytest.raises(ValidationError, match="15 minutes"):
            stack.manager.book(stack.request(caller, callee, "14:00", minutes=30))

    def test_outside_business_hours(self, stack):
        caller, callee = stack.add_caller(), stack.add_callee()

        with pytest.raises(ValidationError):
            stack.manager.book(stack.request(caller, callee, "19:00"))

    def test_same_participant(self, stack):
        callee = stack.add_callee()

        with pytest.raises(ValidationError, match="different"):
            stack.manager.book(stack.request(callee, callee, "14:00"))

    def test_unknown_caller(self, stack):
        callee = stack.add_callee()

        with pytest.raises(ValidationError, match="Caller not found"):
            stack.manager.book(stack.request("ghost", callee, "14:00"))

    def test_roles_are_checked(self, stack):
        caller = stack.add_caller()
        other_caller = stack.add_caller("other@example.com")

        with pytest.raises(ValidationError, match="Callee not found"):
            stack.manager.book(stack.request(caller, other_caller, "14:00"))

    def test_naive_datetimes(self, stack):
        caller, callee = stack.add_caller(), stack.add_callee()
        request = stack.request(caller, callee, "14:00")
        request.start = request.start.naive()

        with pytest.raises(ValidationError):
            stack.manager.book(request)

    def test_nothing_is_stored(self, stack):
        caller, callee = stack.add_caller(), stack.add_callee()

        with pytest.raises(ValidationError):
            stack.manager.book(stack.request(caller, callee, "14:05"))

        assert _count_calls(stack.session_factory, callee) == 0


class TestRejections:
    """Unavailable slots and exhausted quota are returned, not raised."""

    def test_external_busy_slot(self, stack):
        caller, callee = stack.add_caller(), stack.add_callee()
        stack.calendar.add_busy(callee, at("10:00"), at("10:30"))

        result = stack.manager.book(stack.request(caller, callee, "10:15"))

        assert result.is_rejected
        assert result.scheduled_call is None
        assert result.rejection.reason is RejectionReason.SLOT_UNAVAILABLE
        assert result.rejection.slot_status is SlotStatus.BUSY_EXTERNAL
        assert result.rejection.conflicting_interval.start == at("10:00")

    def test_past_slot(self, stack):
        caller, callee = stack.add_caller(), stack.add_callee()
        stack.clock.now = at("12:00")

        result = stack.manager.book(stack.request(caller, callee, "12:00"))

        assert result.rejection.reason is RejectionReason.SLOT_UNAVAILABLE
        assert result.rejection.slot_status is SlotStatus.PAST

    def test_lead_time(self, make_stack):
        stack = make_stack(business_hours=BusinessHoursConfig(lead_time_minutes=60))
        caller, callee = stack.add_caller(), stack.add_callee()

        result = stack.manager.book(stack.request(caller, callee, "08:00"))

        assert result.rejection.slot_status is SlotStatus.PAST

    def test_unreadable_calendar(self, stack):
        caller, callee = stack.add_caller(), stack.add_callee()
        stack.calendar.connect(callee)
        stack.calendar.fail_fetches = 10

        result = stack.manager.book(stack.request(caller, callee, "14:00"))

        assert result.rejection.reason is RejectionReason.AVAILABILITY_UNKNOWN
        assert _count_calls(stack.session_factory, callee) == 0
        with pytest.raises(CalendarSyncError) as exc_info:
            result.raise_for_rejection()
        assert exc_info.value.retryable

    def test_calendar_connection_required(self, make_stack):
        stack = make_stack(require_connected_calendar=True)
        caller, callee = stack.add_caller(), stack.add_callee()

        result = stack.manager.book(stack.request(caller, callee, "14:00"))

        assert result.rejection.reason is RejectionReason.CALENDAR_NOT_CONNECTED

    def test_caller_already_busy(self, stack):
        caller = stack.add_caller()
        first = stack.add_callee("first@example.com")
        second = stack.add_callee("second@example.com")
        call = stack.manager.book(stack.request(caller, first, "14:00")).scheduled_call

        result = stack.manager.book(stack.request(caller, second, "14:00"))

        assert result.rejection.reason is RejectionReason.SLOT_UNAVAILABLE
        assert result.rejection.slot_status is SlotStatus.BUSY_BOOKED
        assert result.rejection.conflicting_interval.call_id == call.id

    def test_slot_already_booked(self, stack):
        callee = stack.add_callee()
        stack.manager.book(stack.request(stack.add_caller("a@example.com"), callee, "14:00"))

        result = stack.manager.book(stack.request(stack.add_caller("b@example.com"), callee, "14:00"))

        assert result.rejection.reason is RejectionReason.SLOT_UNAVAILABLE
        assert result.rejection.slot_status is SlotStatus.BUSY_BOOKED
        with pytest.raises(ConflictError) as exc_info:
            result.raise_for_rejection()
        assert exc_info.value.reason == "slot_unavailable"

    def test_caller_quota_exhausted(self, stack):
        caller = stack.add_caller(plan="free")
        first = stack.add_callee("first@example.com")
        second = stack.add_callee("second@example.com")
        stack.manager.book(stack.request(caller, first, "14:00"))

        result = stack.manager.book(stack.request(caller, second, "15:00"))

        rejection = result.rejection
        assert rejection.reason is RejectionReason.QUOTA_EXCEEDED
        assert rejection.subject_id == caller
        assert rejection.remaining == 0
        assert rejection.resets_at == pendulum.datetime(2026, 4, 1, tz="UTC")
        assert _count_calls(stack.session_factory, second) == 0
        with pytest.raises(QuotaExceededError, match="1/1 calls used"):
            result.raise_for_rejection()

    def test_callee_quota_exhausted(self, stack):
        callee = stack.add_callee(plan="free")
        for index, hhmm in enumerate(["09:00", "10:00", "11:00"]):
            caller = stack.add_caller(f"c{index}@example.com")
            assert stack.manager.book(stack.request(caller, callee, hhmm)).is_confirmed

        result = stack.manager.book(stack.request(stack.add_caller("late@example.com"), callee, "12:00"))

        assert result.rejection.reason is RejectionReason.QUOTA_EXCEEDED
        assert result.rejection.subject_id == callee

    def test_failed_callee_quota_does_not_charge_caller(self, stack):
        caller = stack.add_caller(plan="free")
        callee = stack.add_callee(plan="free")
        period = QuotaPeriod.containing(NOW)
        stack.quota.ensure(callee, period)
        for _ in range(3):
            with session_scope(stack.session_factory) as session:
                stack.quota.consume(session, callee, period)

        result = stack.manager.book(stack.request(caller, callee, "14:00"))

        assert result.rejection.reason is RejectionReason.QUOTA_EXCEEDED
        assert stack.quota.remaining(caller, period) == 1


class TestConcurrency:
    """Simultaneous requests are arbitrated by the database alone."""

    def test_exactly_one_of_many_wins(self, stack):
        """N requests for the same callee slot: one booking, N-1 conflicts."""
        callee = stack.add_callee()
        callers = [stack.add_caller(f"caller{i}@example.com") for i in range(6)]
        _gate_after_validation(stack, len(callers))

        results = _run_concurrently([
            (lambda c=c: stack.manager.book(stack.request(c, callee, "14:00")))
            for c in callers
        ])

        confirmed = [r for r in results if r.is_confirmed]
        rejected = [r for r in results if r.is_rejected]
        assert len(confirmed) == 1
        assert len(rejected) == len(callers) - 1
        assert all(r.rejection.reason is RejectionReason.CONFLICT for r in rejected)
        assert _count_calls(stack.session_factory, callee) == 1

    def test_ungated_race_never_double_books(self, stack):
        callee = stack.add_callee()
        callers = [stack.add_caller(f"caller{i}@example.com") for i in range(6)]

        results = _run_concurrently([
            (lambda c=c: stack.manager.book(stack.request(c, callee, "14:00")))
            for c in callers
        ])

        assert sum(r.is_confirmed for r in results) == 1
        for result in results:
            if result.is_rejected:
                assert result.rejection.reason in (
                    RejectionReason.CONFLICT,
                    RejectionReason.SLOT_UNAVAILABLE,
                )
        assert _count_calls(stack.session_factory, callee) == 1

    def test_a_wins_b_conflicts_then_slot_is_booked(self, stack):
        callee = stack.add_callee()
        alice = stack.add_caller("alice@example.com")
        bob = stack.add_caller("bob@example.com")
        stack.availability.get_availability(callee, DAY)
        _gate_after_validation(stack, 2)

        results = _run_concurrently([
            lambda: stack.manager.book(stack.request(alice, callee, "14:00")),
            lambda: stack.manager.book(stack.request(bob, callee, "14:00")),
        ])

        assert sorted(r.state.value for r in results) == ["confirmed", "rejected"]
        view = stack.availability.get_availability(callee, DAY)
        slot = next(s for s in view.slots if s.start == at("14:00"))
        assert slot.status is SlotStatus.BUSY_BOOKED

    def test_quota_boundary_under_concurrency(self, stack):
        """A caller with one call left gets exactly one of two simultaneous bookings."""
        caller = stack.add_caller(plan="free")
        first = stack.add_callee("first@example.com")
        second = stack.add_callee("second@example.com")
        _gate_after_validation(stack, 2)

        results = _run_concurrently([
            lambda: stack.manager.book(stack.request(caller, first, "14:00")),
            lambda: stack.manager.book(stack.request(caller, second, "15:00")),
        ])

        assert sum(r.is_confirmed for r in results) == 1
        rejected = next(r for r in results if r.is_rejected)
        assert rejected.rejection.reason is RejectionReason.QUOTA_EXCEEDED
        assert stack.quota.remaining(caller, QuotaPeriod.containing(NOW)) == 0

    def test_different_slots_do_not_conflict(self, stack):
        callee = stack.add_callee()
        callers = [stack.add_caller(f"caller{i}@example.com") for i in range(4)]
        slots = ["09:00", "09:15", "09:30", "09:45"]

        results = _run_concurrently([
            (lambda c=c, s=s: stack.manager.book(stack.request(c, callee, s)))
            for c, s in zip(callers, slots)
        ])

        assert all(r.is_confirmed for r in results)


class TestIdempotency:
    """Retries with the same client key never create a second booking."""

    def test_retry_returns_same_call(self, stack):
        caller, callee = stack.add_caller(), stack.add_callee()

        first = stack.manager.book(stack.request(caller, callee, "14:00", idempotency_key="req-1"))
        second = stack.manager.book(stack.request(caller, callee, "14:00", idempotency_key="req-1"))

        assert second.is_confirmed
        assert second.replayed
        assert second.scheduled_call.id == first.scheduled_call.id
        assert _count_calls(stack.session_factory, callee) == 1

    def test_retry_does_not_consume_quota_again(self, stack):
        caller = stack.add_caller(plan="free")
        callee = stack.add_callee()

        stack.manager.book(stack.request(caller, callee, "14:00", idempotency_key="req-1"))
        replay = stack.manager.book(stack.request(caller, callee, "14:00", idempotency_key="req-1"))

        assert replay.is_confirmed
        assert stack.quota.remaining(caller, QuotaPeriod.containing(NOW)) == 0

    def test_key_reuse_for_other_request(self, stack):
        caller, callee = stack.add_caller(), stack.add_callee()
        stack.manager.book(stack.request(caller, callee, "14:00", idempotency_key="req-1"))

        with pytest.raises(ValidationError, match="different booking"):
            stack.manager.book(stack.request(caller, callee, "15:00", idempotency_key="req-1"))

    def test_concurrent_retries(self, stack):
        caller, callee = stack.add_caller(), stack.add_callee()
        _gate_after_validation(stack, 2)

        results = _run_concurrently([
            lambda: stack.manager.book(stack.request(caller, callee, "14:00", idempotency_key="req-1")),
            lambda: stack.manager.book(stack.request(caller, callee, "14:00", idempotency_key="req-1")),
        ])

        assert all(r.is_confirmed for r in results)
        assert results[0].scheduled_call.id == results[1].scheduled_call.id
        assert sum(r.replayed for r in results) == 1
        assert _count_calls(stack.session_factory, callee) == 1

    def test_retry_overtaken_by_its_first_attempt(self, stack):
        """A retry that finds its own booking already committed replays it."""
        caller, callee = stack.add_caller(), stack.add_callee()
        check_slot = stack.availability.check_slot
        first: List[BookingResult] = []

        def first_attempt_lands_first(*args, **kwargs):
            if not first:
                first.append(None)
                first[0] = stack.manager.book(
                    stack.request(caller, callee, "14:00", idempotency_key="req-1")
                )
            return check_slot(*args, **kwargs)

        stack.availability.check_slot = first_attempt_lands_first

        retry = stack.manager.book(stack.request(caller, callee, "14:00", idempotency_key="req-1"))

        assert first[0].is_confirmed
        assert retry.is_confirmed
        assert retry.replayed
        assert retry.scheduled_call.id == first[0].scheduled_call.id
        assert _count_calls(stack.session_factory, callee) == 1


class TestConfirmation:
    """Calendar write after the reservation, and its compensation."""

    def test_event_written_to_connected_calendar(self, stack):
        caller, callee = stack.add_caller(), stack.add_callee()
        stack.calendar.connect(callee)

        call = stack.manager.book(stack.request(caller, callee, "14:00")).scheduled_call

        assert call.external_event_ref in stack.calendar.created_events
        assert not call.calendar_sync_pending
        assert stack.calendar.write_calls == 1
        with session_scope(stack.session_factory) as session:
            assert repository.get_call(session, call.id).external_event_ref == call.external_event_ref

    def test_unconnected_callee_gets_no_event(self, stack):
        caller, callee = stack.add_caller(), stack.add_callee()

        result = stack.manager.book(stack.request(caller, callee, "14:00"))

        assert result.is_confirmed
        assert result.scheduled_call.external_event_ref is None
        assert not result.scheduled_call.calendar_sync_pending

    def test_write_failure_keeps_reservation(self, stack):
        caller, callee = stack.add_caller(), stack.add_callee()
        stack.calendar.connect(callee)
        stack.calendar.fail_writes = True

        result = stack.manager.book(stack.request(caller, callee, "14:00"))

        assert result.is_confirmed
        assert result.scheduled_call.calendar_sync_pending
        assert stack.calendar.write_calls == 1
        with session_scope(stack.session_factory) as session:
            stored = repository.get_call(session, result.scheduled_call.id)
            assert stored.status is CallStatus.SCHEDULED
            assert stored.calendar_sync_pending

    def test_write_timeout_records_late_reference(self, make_stack):
        stack = make_stack(confirm_timeout=0.05)
        caller, callee = stack.add_caller(), stack.add_callee()
        stack.calendar.connect(callee)
        stack.calendar.write_delay = 0.5

        result = stack.manager.book(stack.request(caller, callee, "14:00"))

        assert result.is_confirmed
        assert result.scheduled_call.calendar_sync_pending

        stack.manager.close()

        with session_scope(stack.session_factory) as session:
            stored = repository.get_call(session, result.scheduled_call.id)
            assert stored.external_event_ref is not None
            assert not stored.calendar_sync_pending
        assert stack.calendar.write_calls == 1

    def test_retry_pending_calendar_syncs(self, stack):
        caller, callee = stack.add_caller(), stack.add_callee()
        stack.calendar.connect(callee)
        stack.calendar.fail_writes = True
        call = stack.manager.book(stack.request(caller, callee, "14:00")).scheduled_call

        stack.calendar.fail_writes = False
        synced = stack.manager.retry_pending_calendar_syncs()

        assert synced == 1
        with session_scope(stack.session_factory) as session:
            stored = repository.get_call(session, call.id)
            assert stored.external_event_ref in stack.calendar.created_events
            assert not stored.calendar_sync_pending
        assert stack.manager.retry_pending_calendar_syncs() == 0

    def test_retry_pending_still_failing(self, stack):
        caller, callee = stack.add_caller(), stack.add_callee()
        stack.calendar.connect(callee)
        stack.calendar.fail_writes = True
        stack.manager.book(stack.request(caller, callee, "14:00"))

        assert stack.manager.retry_pending_calendar_syncs() == 0


class TestCancel:
    """Tests for BookingTransactionManager.cancel."""

    def test_cancel_frees_slot(self, stack):
        callee = stack.add_callee()
        call = stack.manager.book(stack.request(stack.add_caller("a@example.com"), callee, "14:00")).scheduled_call

        cancelled = stack.manager.cancel(call.id)
        result = stack.manager.book(stack.request(stack.add_caller("b@example.com"), callee, "14:00"))

        assert cancelled.status is CallStatus.CANCELLED
        assert cancelled.cancelled_at == NOW
        assert result.is_confirmed

    def test_cancel_removes_event(self, stack):
        caller, callee = stack.add_caller(), stack.add_callee()
        stack.calendar.connect(callee)
        call = stack.manager.book(stack.request(caller, callee, "14:00")).scheduled_call

        stack.manager.cancel(call.id)

        assert call.external_event_ref not in stack.calendar.created_events

    def test_quota_is_not_refunded(self, stack):
        caller = stack.add_caller(plan="free")
        callee = stack.add_callee()
        call = stack.manager.book(stack.request(caller, callee, "14:00")).scheduled_call

        stack.manager.cancel(call.id)

        assert stack.quota.remaining(caller, QuotaPeriod.containing(NOW)) == 0

    def test_cancel_twice(self, stack):
        caller, callee = stack.add_caller(), stack.add_callee()
        call = stack.manager.book(stack.request(caller, callee, "14:00")).scheduled_call
        stack.manager.cancel(call.id)

        with pytest.raises(BookingStateError):
            stack.manager.cancel(call.id)

    def test_cancel_unknown_call(self, stack):
        with pytest.raises(ValidationError):
            stack.manager.cancel("missing")

    def test_replay_of_cancelled_booking(self, stack):
        caller, callee = stack.add_caller(), stack.add_callee()
        call = stack.manager.book(stack.request(caller, callee, "14:00", idempotency_key="k")).scheduled_call
        stack.manager.cancel(call.id)

        replay = stack.manager.book(stack.request(caller, callee, "14:00", idempotency_key="k"))

        assert replay.replayed
        assert replay.state is BookingState.CANCELLED


class TestNotifications:
    """Booking events are dispatched in the background."""

    def test_confirm_and_cancel_events(self, stack):
        caller, callee = stack.add_caller(), stack.add_callee()
        call = stack.manager.book(stack.request(caller, callee, "14:00")).scheduled_call
        stack.manager.cancel(call.id)

        stack.manager.close()

        assert [e.type for e in stack.dispatcher.events] == [
            NotificationType.BOOKING_CONFIRMED,
            NotificationType.BOOKING_CANCELLED,
        ]
        assert stack.dispatcher.events[0].scheduled_call.id == call.id

    def test_rejections_are_not_notified(self, stack):
        caller, callee = stack.add_caller(), stack.add_callee()
        stack.calendar.add_busy(callee, at("14:00"), at("15:00"))

        stack.manager.book(stack.request(caller, callee, "14:00"))
        stack.manager.close()

        assert stack.dispatcher.events == []

    def test_dispatcher_failure_does_not_propagate(self, stack):
        caller, callee = stack.add_caller(), stack.add_callee()

        def explode(event):
            raise RuntimeError("smtp down")

        stack.dispatcher.dispatch = explode

        result = stack.manager.book(stack.request(caller, callee, "14:00"))
        stack.manager.close()

        assert result.is_confirmed


class TestBookingFlow:
    """Tests for the booking state machine."""

    def test_happy_path(self):
        flow = BookingFlow("test")
        for state in (BookingState.VALIDATED, BookingState.RESERVED, BookingState.CONFIRMED):
            flow.advance(state)

        assert flow.state is BookingState.CONFIRMED

    def test_compensation_path(self):
        flow = BookingFlow("test", BookingState.RESERVED)
        flow.advance(BookingState.COMPENSATING)
        flow.advance(BookingState.CONFIRMED)

        assert flow.state is BookingState.CONFIRMED

    @pytest.mark.parametrize(
        "current, target",
        [
            (BookingState.REQUESTED, BookingState.RESERVED),
            (BookingState.RESERVED, BookingState.REJECTED),
            (BookingState.REJECTED, BookingState.VALIDATED),
            (BookingState.CANCELLED, BookingState.CANCELLED),
            (BookingState.VALIDATED, BookingState.CANCELLED),
        ],
    )
    def test_illegal_transitions(self, current, target):
        with pytest.raises(BookingStateError):
            BookingFlow("test", current).advance(target)
