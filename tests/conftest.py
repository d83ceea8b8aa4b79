"""
Shared fixtures: a file-backed SQLite store per test, the mock calendar and
a fully wired booking stack with a controllable clock.
"""

import threading
from typing import List

import pendulum
import pytest

from callslot.adapters.calendar_source import CalendarSourceAdapter
from callslot.adapters.mock_graph_client import MockGraphClient
from callslot.config import BusinessHoursConfig, PlanLimits, QuotaConfig
from callslot.services.availability import AvailabilityService
from callslot.services.booking import BookingRequest, BookingTransactionManager
from callslot.services.notifications import NotificationEvent
from callslot.services.quota import QuotaTracker
from callslot.storage import repository
from callslot.storage.database import create_db_engine, init_db, make_session_factory, session_scope
from callslot.storage.models import ParticipantRole

# Monday
DAY = pendulum.date(2026, 3, 2)
NOW = pendulum.datetime(2026, 3, 2, 7, 0, tz="UTC")


def at(hhmm: str, day=DAY, tz: str = "UTC") -> pendulum.DateTime:
    """Instant for a wall-clock time on the test day."""
    hour, minute = (int(part) for part in hhmm.split(":"))
    return pendulum.datetime(day.year, day.month, day.day, hour, minute, tz=tz)


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, now: pendulum.DateTime):
        self.now = now

    def __call__(self) -> pendulum.DateTime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now.add(**kwargs)


class RecordingNotificationDispatcher:
    """Keeps every dispatched event for assertions."""

    def __init__(self):
        self.events: List[NotificationEvent] = []
        self._lock = threading.Lock()

    def dispatch(self, event: NotificationEvent) -> None:
        with self._lock:
            self.events.append(event)


class BookingStack:
    """Everything needed to book against one store and one mock calendar."""

    def __init__(
        self,
        session_factory,
        *,
        calendar: MockGraphClient,
        clock: FixedClock,
        business_hours: BusinessHoursConfig,
        quota_config: QuotaConfig,
        require_connected_calendar: bool = False,
        confirm_timeout: float = 2.0,
        cache_ttl_seconds: int = 10,
    ):
        self.session_factory = session_factory
        self.calendar = calendar
        self.clock = clock
        self.dispatcher = RecordingNotificationDispatcher()
        self.calendar_source = CalendarSourceAdapter(
            calendar, retry_attempts=2, sleep=lambda _delay: None
        )
        self.availability = AvailabilityService(
            session_factory,
            self.calendar_source,
            business_hours,
            cache_ttl_seconds=cache_ttl_seconds,
            clock=clock,
        )
        self.quota = QuotaTracker(session_factory, quota_config)
        self.manager = BookingTransactionManager(
            session_factory,
            self.availability,
            self.quota,
            calendar,
            dispatcher=self.dispatcher,
            require_connected_calendar=require_connected_calendar,
            confirm_timeout=confirm_timeout,
            clock=clock,
        )

    def add(self, email: str, role: ParticipantRole, plan: str = "pro", timezone: str = "UTC") -> str:
        with session_scope(self.session_factory) as session:
            participant = repository.add_participant(
                session, email=email, role=role, timezone=timezone, plan=plan
            )
            return participant.id

    def add_caller(self, email: str = "caller@example.com", **kwargs) -> str:
        return self.add(email, ParticipantRole.CALLER, **kwargs)

    def add_callee(self, email: str = "callee@example.com", **kwargs) -> str:
        return self.add(email, ParticipantRole.CALLEE, **kwargs)

    def request(self, caller_id: str, callee_id: str, hhmm: str, minutes: int = 15, **kwargs) -> BookingRequest:
        start = at(hhmm)
        return BookingRequest(
            caller_id=caller_id,
            callee_id=callee_id,
            start=start,
            end=start.add(minutes=minutes),
            **kwargs,
        )

    def close(self) -> None:
        self.manager.close()


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'callslot.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def calendar():
    return MockGraphClient()


@pytest.fixture
def quota_config():
    return QuotaConfig(
        default_plan="free",
        plans={
            "free": PlanLimits(caller_monthly_calls=1, callee_monthly_calls=3),
            "pro": PlanLimits(caller_monthly_calls=100, callee_monthly_calls=100),
        },
    )


@pytest.fixture
def make_stack(session_factory, calendar, clock, quota_config):
    """Factory for a booking stack; managers are closed after the test."""
    stacks = []

    def _make(business_hours: BusinessHoursConfig = None, **kwargs) -> BookingStack:
        stack = BookingStack(
            session_factory,
            calendar=calendar,
            clock=clock,
            business_hours=business_hours or BusinessHoursConfig(),
            quota_config=quota_config,
            **kwargs,
        )
        stacks.append(stack)
        return stack

    yield _make

    for stack in stacks:
        stack.close()


@pytest.fixture
def stack(make_stack):
    return make_stack()
