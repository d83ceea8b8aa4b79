"""
Calendar source adapter: fetches and normalizes a callee's external busy periods.

The adapter is a pure I/O boundary. It talks to a calendar provider through
``CalendarProvider`` so the real Microsoft Graph client and the mock client are
interchangeable.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

import pendulum
from pendulum import DateTime

from ..domain.exceptions import AuthError, CalendarSyncError
from ..domain.models import BusyInterval, to_utc

logger = logging.getLogger(__name__)


@dataclass
class ProviderBusyResponse:
    """Raw provider answer: ``{connected, intervals: [{start, end}]}``."""
    connected: bool
    intervals: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class BusyFetchResult:
    """Normalized busy periods plus the connection flag."""
    connected: bool
    intervals: List[BusyInterval] = field(default_factory=list)


@dataclass
class CalendarEvent:
    """Represents a calendar event to be created."""
    summary: str
    start: DateTime
    end: DateTime
    description: str = ""
    attendees: List[str] = field(default_factory=list)  # email addresses


class CalendarProvider(Protocol):
    """Protocol describing the calendar behaviour the engine needs."""

    def get_busy_intervals(
        self,
        subject_id: str,
        email: str,
        start: DateTime,
        end: DateTime,
    ) -> ProviderBusyResponse:
        """Return busy periods of a subject's calendar within [start, end)."""

    def create_event(self, subject_id: str, email: str, event: CalendarEvent) -> Optional[str]:
        """Create an event and return its reference; None when no calendar is connected."""

    def delete_event(self, subject_id: str, event_ref: str) -> None:
        """Remove a previously created event."""


class CalendarSourceAdapter:
    """
    Fetches busy periods with capped exponential backoff on retryable failures.

    Absence of a calendar connection is reported through ``connected`` and is
    never inferred from an empty interval list.
    """

    def __init__(
        self,
        provider: CalendarProvider,
        *,
        retry_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 4.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._provider = provider
        self._retry_attempts = max(1, retry_attempts)
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._sleep = sleep

    def fetch_busy(
        self,
        subject_id: str,
        email: str,
        range_start: DateTime,
        range_end: DateTime,
    ) -> BusyFetchResult:
        """
        Fetch external busy intervals for [range_start, range_end).

        Raises:
            CalendarSyncError: Provider unavailable after the retry budget,
                or a non-retryable provider failure
            AuthError: Stored credential rejected by the provider
        """
        response = self._fetch_with_retry(subject_id, email, range_start, range_end)

        if not response.connected:
            logger.debug("No external calendar connected for %s", subject_id)
            return BusyFetchResult(connected=False)

        return BusyFetchResult(
            connected=True,
            intervals=self._normalize(response.intervals, subject_id),
        )

    def _fetch_with_retry(
        self,
        subject_id: str,
        email: str,
        range_start: DateTime,
        range_end: DateTime,
    ) -> ProviderBusyResponse:
        last_error: Optional[CalendarSyncError] = None

        for attempt in range(self._retry_attempts):
            try:
                return self._provider.get_busy_intervals(
                    subject_id, email, range_start, range_end
                )
            except AuthError:
                raise
            except CalendarSyncError as exc:
                if not exc.retryable:
                    raise
                last_error = exc

            if attempt < self._retry_attempts - 1:
                delay = min(self._base_delay * (2 ** attempt), self._max_delay)
                logger.warning(
                    "Calendar fetch for %s failed (attempt %d/%d): %s. Retrying in %.1fs",
                    subject_id,
                    attempt + 1,
                    self._retry_attempts,
                    last_error,
                    delay,
                )
                self._sleep(delay)

        raise CalendarSyncError(
            f"Calendar unavailable for {subject_id} after {self._retry_attempts} attempts: "
            f"{last_error}",
            retryable=True,
        )

    @staticmethod
    def _normalize(raw_intervals: List[Dict[str, Any]], subject_id: str) -> List[BusyInterval]:
        intervals: List[BusyInterval] = []

        for item in raw_intervals:
            try:
                start = _parse_instant(item["start"])
                end = _parse_instant(item["end"])
                intervals.append(BusyInterval.external(start, end))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed busy interval for %s: %s", subject_id, exc)
                continue

        intervals.sort(key=lambda i: i.start)
        return intervals


def _parse_instant(value: Any) -> DateTime:
    """Parse an ISO 8601 string or aware datetime to UTC. Naive strings are UTC."""
    if isinstance(value, str):
        parsed = pendulum.parse(value, tz="UTC")
        if not isinstance(parsed, DateTime):
            raise ValueError(f"Could not parse datetime: {value}")
        return parsed.in_timezone("UTC")
    return to_utc(value)
