"""
Domain models for time ranges, slots and availability.
"""

from dataclasses import dataclass, field
from datetime import date as Date, time
from enum import Enum
from typing import List, Optional

import pendulum
from pendulum import DateTime

UTC = "UTC"


def to_utc(value) -> DateTime:
    """Normalize an aware datetime (stdlib or pendulum) to a UTC pendulum instance."""
    if value.tzinfo is None:
        raise ValueError(f"Naive datetime {value!r} has no timezone")
    return pendulum.instance(value).in_timezone(UTC)


@dataclass(frozen=True)
class TimeRange:
    """
    Represents an immutable time range with start and end datetime.

    Invariant: start must be before end. Ranges are half-open: [start, end).
    """
    start: DateTime
    end: DateTime

    def __post_init__(self):
        if self.start >= self.end:
            raise ValueError(f"Start time {self.start} must be before end time {self.end}")

    def duration_minutes(self) -> int:
        """Return the duration in minutes."""
        return int((self.end - self.start).total_seconds() / 60)

    def overlaps(self, other: "TimeRange") -> bool:
        """Check if this range overlaps with another. Touching boundaries do not overlap."""
        return self.start < other.end and other.start < self.end

    def __str__(self) -> str:
        return f"{self.start.format('YYYY-MM-DD HH:mm')} - {self.end.format('HH:mm')}"


class BusySource(str, Enum):
    EXTERNAL = "external"
    PLATFORM = "platform"


@dataclass(frozen=True)
class BusyInterval(TimeRange):
    """
    A time range during which the callee is unavailable, always in UTC.

    Platform intervals carry the id of the scheduled call they came from.
    """
    source: BusySource = BusySource.EXTERNAL
    call_id: Optional[str] = None

    @classmethod
    def external(cls, start, end) -> "BusyInterval":
        return cls(start=to_utc(start), end=to_utc(end), source=BusySource.EXTERNAL)

    @classmethod
    def platform(cls, start, end, call_id: Optional[str] = None) -> "BusyInterval":
        return cls(
            start=to_utc(start),
            end=to_utc(end),
            source=BusySource.PLATFORM,
            call_id=call_id,
        )


@dataclass(frozen=True)
class CandidateSlot(TimeRange):
    """A generated fixed-length window, independent of booking state."""


class SlotStatus(str, Enum):
    AVAILABLE = "available"
    BUSY_EXTERNAL = "busy_external"
    BUSY_BOOKED = "busy_booked"
    PAST = "past"


class ExternalStatus(str, Enum):
    """Outcome of the external calendar fetch behind an availability view."""
    CONNECTED = "connected"
    NOT_CONNECTED = "not_connected"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class AvailabilitySlot:
    """A candidate slot annotated with its status. Derived, never persisted."""
    slot: CandidateSlot
    status: SlotStatus
    conflicting_interval: Optional[BusyInterval] = None

    @property
    def start(self) -> DateTime:
        return self.slot.start

    @property
    def end(self) -> DateTime:
        return self.slot.end

    @property
    def is_available(self) -> bool:
        return self.status is SlotStatus.AVAILABLE


@dataclass
class AvailabilityView:
    """
    Availability of one callee for one local date.

    When the external calendar could not be read the view is incomplete:
    availability is unknown and no slot is offered as bookable.
    """
    callee_id: str
    date: Date
    timezone: str
    slots: List[AvailabilitySlot] = field(default_factory=list)
    external_status: ExternalStatus = ExternalStatus.CONNECTED

    @property
    def is_complete(self) -> bool:
        return self.external_status is not ExternalStatus.UNAVAILABLE

    def bookable_slots(self) -> List[AvailabilitySlot]:
        if not self.is_complete:
            return []
        return [s for s in self.slots if s.is_available]


@dataclass(frozen=True)
class BusinessHours:
    """
    Configuration for the bookable window of a day, in the callee's local time.
    """
    start_time: time = time(8, 0)
    end_time: time = time(18, 0)
    timezone: str = UTC
    slot_duration_minutes: int = 15
    lead_time_minutes: int = 0
    exclude_weekdays: tuple = ()  # 0=Monday, 6=Sunday

    def is_working_day(self, day: Date) -> bool:
        """Check if a given date falls on a bookable weekday."""
        return day.weekday() not in self.exclude_weekdays

    def window_for(self, day: Date) -> TimeRange:
        """Return the business-hours range for a date, as UTC instants."""
        start = pendulum.datetime(
            day.year, day.month, day.day,
            self.start_time.hour, self.start_time.minute,
            tz=self.timezone,
        )
        end = pendulum.datetime(
            day.year, day.month, day.day,
            self.end_time.hour, self.end_time.minute,
            tz=self.timezone,
        )
        return TimeRange(start=start.in_timezone(UTC), end=end.in_timezone(UTC))
