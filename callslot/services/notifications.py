"""
Booking events for the notification collaborator.

Delivery (email/SMS content) lives outside this package; the engine only emits
``booking_confirmed`` / ``booking_cancelled`` events, fire-and-forget.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from ..storage.models import ScheduledCall

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_CANCELLED = "booking_cancelled"


@dataclass(frozen=True)
class NotificationEvent:
    type: NotificationType
    scheduled_call: ScheduledCall


class NotificationDispatcher(Protocol):
    """Consumer of booking events."""

    def dispatch(self, event: NotificationEvent) -> None:
        """Deliver an event. Exceptions are logged by the caller, never propagated."""


class LoggingNotificationDispatcher:
    """Default dispatcher: records events in the application log."""

    def dispatch(self, event: NotificationEvent) -> None:
        call = event.scheduled_call
        logger.info(
            "%s: call %s caller=%s callee=%s at %s",
            event.type.value,
            call.id,
            call.caller_id,
            call.callee_id,
            call.start_at.to_iso8601_string(),
        )

