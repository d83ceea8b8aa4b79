"""
Candidate slot generation.

Pure domain logic without any external dependencies (no API calls, no
database, no I/O). Generation is total for the day: past slots are kept and
tagged later by the availability resolver.
"""

from datetime import date as Date
from typing import List

from pendulum import DateTime

from .models import BusinessHours, CandidateSlot


class SlotGenerator:
    """
    Produces the ordered, fixed-length candidate slots of one day.

    Algorithm:
    1. Resolve the business-hours window of the date in the callee's time zone
    2. Convert both edges to UTC
    3. Step through the window in absolute time, one slot duration at a time
    4. Drop a trailing partial slot
    """

    def __init__(self, business_hours: BusinessHours):
        if business_hours.slot_duration_minutes <= 0:
            raise ValueError(
                f"Slot duration must be positive, got {business_hours.slot_duration_minutes}"
            )
        self.business_hours = business_hours

    def generate(self, day: Date) -> List[CandidateSlot]:
        """
        Generate all candidate slots for a date.

        Args:
            day: Calendar date, interpreted in the business-hours time zone

        Returns:
            List of CandidateSlot objects, ordered by start, in UTC
        """
        window = self.business_hours.window_for(day)
        duration = self.business_hours.slot_duration_minutes

        slots: List[CandidateSlot] = []
        current = window.start

        while True:
            slot_end = current.add(minutes=duration)
            if slot_end > window.end:
                break
            slots.append(CandidateSlot(start=current, end=slot_end))
            current = slot_end

        return slots

    def is_on_grid(self, start: DateTime, end: DateTime) -> bool:
        """
        Check whether [start, end) is exactly one generated slot.

        The date is taken from ``start`` in the business-hours time zone so that
        a request is always compared against the same grid the availability
        view was built from.
        """
        local_day = start.in_timezone(self.business_hours.timezone).date()
        return any(
            slot.start == start and slot.end == end
            for slot in self.generate(local_day)
        )
