"""
Mock calendar provider for running without Azure authentication.
"""

import itertools
import json
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pendulum
from pendulum import DateTime

from ..domain.exceptions import CalendarSyncError
from .calendar_source import CalendarEvent, ProviderBusyResponse


class MockGraphClient:
    """
    Mock provider that simulates the Graph calendar of each callee.

    Busy events are loaded from a JSON file (a list of
    ``{"calendarId", "start", "end"}`` objects) or added in code. Any
    callee with events, or added through ``connect``, counts as connected.
    Created events become busy time on later fetches, like on a real
    calendar.

    Failure injection for tests:
        fail_fetches: number of upcoming fetches that raise a retryable error
        fail_writes: every event write raises a retryable error
        write_delay: seconds each event write blocks before completing
    """

    def __init__(
        self,
        data_file: Optional[Path] = None,
        *,
        fail_fetches: int = 0,
        fail_writes: bool = False,
        write_delay: float = 0.0,
    ):
        self.calendar_events: List[Dict[str, str]] = []
        self.connected: set = set()
        self.created_events: Dict[str, Tuple[str, CalendarEvent]] = {}
        self.fetch_calls = 0
        self.write_calls = 0
        self.fail_fetches = fail_fetches
        self.fail_writes = fail_writes
        self.write_delay = write_delay
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

        if data_file is not None:
            self._load_calendar_data(data_file)

    def _load_calendar_data(self, data_file: Path) -> None:
        """Load mock calendar data from JSON file."""
        if not data_file.exists():
            raise FileNotFoundError(f"Mock calendar data not found: {data_file}")

        with open(data_file, "r", encoding="utf-8") as f:
            events = json.load(f)

        for event in events:
            self.add_busy(event["calendarId"], event["start"], event["end"])

    def connect(self, subject_id: str) -> None:
        with self._lock:
            self.connected.add(subject_id)

    def disconnect(self, subject_id: str) -> None:
        with self._lock:
            self.connected.discard(subject_id)

    def add_busy(self, subject_id: str, start, end) -> None:
        """Add a busy event; ISO strings without offset are read as UTC."""
        with self._lock:
            self.connected.add(subject_id)
            self.calendar_events.append(
                {"calendarId": subject_id, "start": _iso(start), "end": _iso(end)}
            )

    def get_busy_intervals(
        self,
        subject_id: str,
        email: str,
        start: DateTime,
        end: DateTime,
    ) -> ProviderBusyResponse:
        """Return the stored events of the callee that overlap [start, end)."""
        with self._lock:
            self.fetch_calls += 1
            if self.fail_fetches > 0:
                self.fail_fetches -= 1
                raise CalendarSyncError("Mock calendar unavailable", retryable=True)

            if subject_id not in self.connected:
                return ProviderBusyResponse(connected=False)

            intervals = []
            for event in self.calendar_events:
                if event["calendarId"] != subject_id:
                    continue
                event_start = pendulum.parse(event["start"], tz="UTC")
                event_end = pendulum.parse(event["end"], tz="UTC")
                if event_start < end and event_end > start:
                    intervals.append({"start": event["start"], "end": event["end"]})

        return ProviderBusyResponse(connected=True, intervals=intervals)

    def create_event(self, subject_id: str, email: str, event: CalendarEvent) -> Optional[str]:
        with self._lock:
            self.write_calls += 1
            connected = subject_id in self.connected
            fail = self.fail_writes

        if self.write_delay:
            time.sleep(self.write_delay)

        if fail:
            raise CalendarSyncError("Mock calendar rejected the event", retryable=True)
        if not connected:
            return None

        with self._lock:
            event_ref = f"mock-event-{next(self._ids)}"
            self.created_events[event_ref] = (subject_id, event)
            self.calendar_events.append(
                {
                    "calendarId": subject_id,
                    "start": _iso(event.start),
                    "end": _iso(event.end),
                    "ref": event_ref,
                }
            )
        return event_ref

    def delete_event(self, subject_id: str, event_ref: str) -> None:
        with self._lock:
            self.created_events.pop(event_ref, None)
            self.calendar_events = [
                e for e in self.calendar_events if e.get("ref") != event_ref
            ]


def _iso(value) -> str:
    if isinstance(value, str):
        return value
    return pendulum.instance(value).in_timezone("UTC").to_iso8601_string()
