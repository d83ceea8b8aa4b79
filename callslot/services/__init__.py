"""Application services: availability queries, quotas and the booking transaction."""

from .availability import AvailabilityCache, AvailabilityService, SlotCheck
from .booking import (
    BookingRequest,
    BookingResult,
    BookingState,
    BookingTransactionManager,
    Rejection,
    RejectionReason,
)
from .notifications import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    NotificationEvent,
    NotificationType,
)
from .quota import QuotaPeriod, QuotaTracker

__all__ = [
    "AvailabilityCache",
    "AvailabilityService",
    "BookingRequest",
    "BookingResult",
    "BookingState",
    "BookingTransactionManager",
    "LoggingNotificationDispatcher",
    "NotificationDispatcher",
    "NotificationEvent",
    "NotificationType",
    "QuotaPeriod",
    "QuotaTracker",
    "Rejection",
    "RejectionReason",
    "SlotCheck",
]
