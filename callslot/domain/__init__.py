"""
Domain layer - pure slot and availability logic.
"""

from .models import (
    AvailabilitySlot,
    AvailabilityView,
    BusyInterval,
    BusySource,
    BusinessHours,
    CandidateSlot,
    ExternalStatus,
    SlotStatus,
    TimeRange,
)
from .availability import AvailabilityResolver
from .slot_generator import SlotGenerator

__all__ = [
    "AvailabilityResolver",
    "AvailabilitySlot",
    "AvailabilityView",
    "BusinessHours",
    "BusyInterval",
    "BusySource",
    "CandidateSlot",
    "ExternalStatus",
    "SlotGenerator",
    "SlotStatus",
    "TimeRange",
]
