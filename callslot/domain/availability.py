"""
Core business logic for resolving slot availability.

Merges candidate slots with external busy intervals and committed platform
bookings. The result is always fully recomputed and is never itself a source
of truth.
"""

from typing import Iterable, List, Optional, Sequence

from pendulum import DateTime

from .models import (
    AvailabilitySlot,
    BusyInterval,
    BusySource,
    CandidateSlot,
    SlotStatus,
)


class AvailabilityResolver:
    """
    Annotates candidate slots with an availability status.

    Precedence when several rules apply to a slot:
    busy_booked > busy_external > past > available.

    Every slot is tested against every interval (O(slots x intervals)); the
    interval lists of a single day are small. Intervals are sorted once so a
    range-indexed lookup can replace ``_first_overlap`` without touching
    callers.
    """

    def __init__(self, lead_time_minutes: int = 0):
        if lead_time_minutes < 0:
            raise ValueError("lead_time_minutes must not be negative")
        self.lead_time_minutes = lead_time_minutes

    def resolve(
        self,
        candidates: Sequence[CandidateSlot],
        busy_intervals: Iterable[BusyInterval],
        now: DateTime,
        scheduled_calls: Iterable[BusyInterval] = (),
    ) -> List[AvailabilitySlot]:
        """
        Resolve the status of every candidate slot.

        Args:
            candidates: Slots from the SlotGenerator
            busy_intervals: External busy intervals of the callee
            now: Evaluation time
            scheduled_calls: Non-cancelled platform bookings as busy intervals

        Returns:
            One AvailabilitySlot per candidate, in candidate order
        """
        intervals = list(busy_intervals) + list(scheduled_calls)

        # The source decides the bucket, whichever argument an interval came in
        external = sorted(
            (i for i in intervals if i.source is BusySource.EXTERNAL),
            key=lambda i: i.start,
        )
        booked = sorted(
            (i for i in intervals if i.source is BusySource.PLATFORM),
            key=lambda i: i.start,
        )
        cutoff = now.add(minutes=self.lead_time_minutes)

        return [
            self.resolve_slot(slot, external, booked, cutoff)
            for slot in candidates
        ]

    def resolve_slot(
        self,
        slot: CandidateSlot,
        external: Sequence[BusyInterval],
        booked: Sequence[BusyInterval],
        cutoff: DateTime,
    ) -> AvailabilitySlot:
        """Resolve a single slot against sorted interval lists."""
        conflict = self._first_overlap(slot, booked)
        if conflict is not None:
            return AvailabilitySlot(slot, SlotStatus.BUSY_BOOKED, conflict)

        conflict = self._first_overlap(slot, external)
        if conflict is not None:
            return AvailabilitySlot(slot, SlotStatus.BUSY_EXTERNAL, conflict)

        if slot.start <= cutoff:
            return AvailabilitySlot(slot, SlotStatus.PAST)

        return AvailabilitySlot(slot, SlotStatus.AVAILABLE)

    @staticmethod
    def _first_overlap(
        slot: CandidateSlot,
        intervals: Sequence[BusyInterval],
    ) -> Optional[BusyInterval]:
        for interval in intervals:
            if interval.start >= slot.end:
                # Sorted by start: nothing later can overlap
                break
            if slot.overlaps(interval):
                return interval
        return None
