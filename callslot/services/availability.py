"""
Availability query service.

Composes the slot generator, the calendar source adapter and stored bookings
into an annotated availability view. Views may be cached briefly for display;
the booking path uses ``check_slot`` which always reads fresh data.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date as Date
from typing import Callable, Dict, List, Optional, Tuple

import pendulum
from pendulum import DateTime
from sqlalchemy.orm import sessionmaker

from ..adapters.calendar_source import CalendarSourceAdapter
from ..config import BusinessHoursConfig
from ..domain.availability import AvailabilityResolver
from ..domain.exceptions import CalendarSyncError, ValidationError
from ..domain.models import (
    AvailabilitySlot,
    AvailabilityView,
    BusinessHours,
    BusyInterval,
    CandidateSlot,
    ExternalStatus,
)
from ..domain.slot_generator import SlotGenerator
from ..storage import repository
from ..storage.database import session_scope
from ..storage.models import Participant, ParticipantRole

logger = logging.getLogger(__name__)

Clock = Callable[[], DateTime]


def utc_now() -> DateTime:
    return pendulum.now("UTC")


class AvailabilityCache:
    """
    Display-only cache of availability views, keyed by callee and date.

    Entries live for ``ttl_seconds``. Never consulted when booking.
    """

    def __init__(self, ttl_seconds: int, clock: Clock = utc_now):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Tuple[str, str], Tuple[DateTime, AvailabilityView]] = {}
        self._lock = threading.Lock()

    def get(self, callee_id: str, day: Date) -> Optional[AvailabilityView]:
        if self.ttl_seconds <= 0:
            return None
        key = (callee_id, day.isoformat())
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, view = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            logger.debug("Availability cache hit: %s %s", callee_id, day)
            return view

    def put(self, view: AvailabilityView) -> None:
        if self.ttl_seconds <= 0:
            return
        key = (view.callee_id, view.date.isoformat())
        with self._lock:
            self._entries[key] = (self._clock().add(seconds=self.ttl_seconds), view)

    def invalidate(self, callee_id: str) -> None:
        with self._lock:
            for key in [k for k in self._entries if k[0] == callee_id]:
                del self._entries[key]


@dataclass(frozen=True)
class SlotCheck:
    """Fresh availability of exactly one requested slot."""
    slot: AvailabilitySlot
    external_status: ExternalStatus


class AvailabilityService:
    """
    Orchestrates busy-time retrieval and availability resolution for a callee.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        calendar_source: CalendarSourceAdapter,
        business_hours: BusinessHoursConfig,
        *,
        cache_ttl_seconds: int = 10,
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._calendar_source = calendar_source
        self._business_hours = business_hours
        self._clock = clock
        self._resolver = AvailabilityResolver(business_hours.lead_time_minutes)
        self.cache = AvailabilityCache(cache_ttl_seconds, clock)

    def now(self) -> DateTime:
        return self._clock()

    def business_hours_for(self, callee: Participant) -> BusinessHours:
        return self._business_hours.for_timezone(callee.timezone)

    def generator_for(self, callee: Participant) -> SlotGenerator:
        return SlotGenerator(self.business_hours_for(callee))

    def load_callee(self, callee_id: str) -> Participant:
        with session_scope(self._session_factory) as session:
            callee = repository.get_participant(session, callee_id)
        if not repository.is_role(callee, ParticipantRole.CALLEE):
            raise ValidationError(f"Callee not found: {callee_id}")
        return callee

    def get_availability(
        self,
        callee_id: str,
        day: Date,
        now: Optional[DateTime] = None,
        use_cache: bool = True,
    ) -> AvailabilityView:
        """
        Availability of a callee for a local calendar date.

        Args:
            callee_id: Callee to query
            day: Date in the callee's time zone
            now: Evaluation time, defaults to the service clock
            use_cache: Serve a recent view for display if one exists

        Raises:
            ValidationError: Unknown callee
            AuthError: The callee's stored calendar credential was rejected
        """
        if use_cache:
            cached = self.cache.get(callee_id, day)
            if cached is not None:
                return cached

        callee = self.load_callee(callee_id)
        now = now or self.now()
        hours = self.business_hours_for(callee)

        if not hours.is_working_day(day):
            return AvailabilityView(callee_id=callee_id, date=day, timezone=callee.timezone)

        candidates = SlotGenerator(hours).generate(day)
        if not candidates:
            return AvailabilityView(callee_id=callee_id, date=day, timezone=callee.timezone)

        range_start, range_end = candidates[0].start, candidates[-1].end

        external, external_status = self._fetch_external(callee, range_start, range_end)
        booked = self._load_booked(callee_id, range_start, range_end)

        view = AvailabilityView(
            callee_id=callee_id,
            date=day,
            timezone=callee.timezone,
            slots=self._resolver.resolve(candidates, external, now, scheduled_calls=booked),
            external_status=external_status,
        )

        if use_cache:
            self.cache.put(view)
        return view

    def check_slot(
        self,
        callee: Participant,
        start: DateTime,
        end: DateTime,
        now: DateTime,
    ) -> SlotCheck:
        """Re-resolve exactly one slot against fresh external and stored data."""
        slot = CandidateSlot(start=start, end=end)

        external, external_status = self._fetch_external(callee, start, end)
        booked = self._load_booked(callee.id, start, end)

        resolved = self._resolver.resolve([slot], external, now, scheduled_calls=booked)
        return SlotCheck(slot=resolved[0], external_status=external_status)

    def _fetch_external(
        self,
        callee: Participant,
        range_start: DateTime,
        range_end: DateTime,
    ) -> Tuple[List[BusyInterval], ExternalStatus]:
        try:
            result = self._calendar_source.fetch_busy(
                callee.id, callee.email, range_start, range_end
            )
        except CalendarSyncError as exc:
            logger.warning("External calendar of %s unavailable: %s", callee.id, exc)
            return [], ExternalStatus.UNAVAILABLE

        if not result.connected:
            return [], ExternalStatus.NOT_CONNECTED
        return result.intervals, ExternalStatus.CONNECTED

    def _load_booked(
        self,
        callee_id: str,
        range_start: DateTime,
        range_end: DateTime,
    ) -> List[BusyInterval]:
        with session_scope(self._session_factory) as session:
            calls = repository.active_calls_overlapping(
                session, start=range_start, end=range_end, callee_id=callee_id
            )
            return repository.as_busy_intervals(calls)
