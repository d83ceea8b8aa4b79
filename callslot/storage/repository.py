"""
Query helpers for participants and scheduled calls.

Functions take an open Session so callers decide the transaction boundary.
"""

from typing import List, Optional

from pendulum import DateTime
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..domain.models import BusyInterval
from .models import CallStatus, Participant, ParticipantRole, ScheduledCall


def get_participant(session: Session, participant_id: str) -> Optional[Participant]:
    return session.get(Participant, participant_id)


def get_participant_by_email(session: Session, email: str) -> Optional[Participant]:
    return session.scalar(select(Participant).where(Participant.email == email.lower()))


def add_participant(
    session: Session,
    *,
    email: str,
    role: ParticipantRole,
    display_name: str = "",
    timezone: str = "UTC",
    plan: Optional[str] = None,
    participant_id: Optional[str] = None,
) -> Participant:
    participant = Participant(
        email=email.lower(),
        role=role,
        display_name=display_name,
        timezone=timezone,
        plan=plan,
    )
    if participant_id:
        participant.id = participant_id
    session.add(participant)
    session.flush()
    return participant


def get_call(session: Session, call_id: str) -> Optional[ScheduledCall]:
    return session.get(ScheduledCall, call_id)


def get_call_by_idempotency_key(session: Session, key: str) -> Optional[ScheduledCall]:
    return session.scalar(select(ScheduledCall).where(ScheduledCall.idempotency_key == key))


def active_calls_overlapping(
    session: Session,
    *,
    start: DateTime,
    end: DateTime,
    callee_id: Optional[str] = None,
    caller_id: Optional[str] = None,
) -> List[ScheduledCall]:
    """Non-cancelled calls intersecting [start, end) for a callee and/or caller."""
    stmt = select(ScheduledCall).where(
        ScheduledCall.status != CallStatus.CANCELLED,
        ScheduledCall.start_at < end,
        ScheduledCall.end_at > start,
    )
    if callee_id is not None:
        stmt = stmt.where(ScheduledCall.callee_id == callee_id)
    if caller_id is not None:
        stmt = stmt.where(ScheduledCall.caller_id == caller_id)
    return list(session.scalars(stmt.order_by(ScheduledCall.start_at)))


def calls_pending_calendar_sync(session: Session, limit: int = 50) -> List[ScheduledCall]:
    stmt = (
        select(ScheduledCall)
        .where(
            ScheduledCall.calendar_sync_pending.is_(True),
            ScheduledCall.status == CallStatus.SCHEDULED,
        )
        .order_by(ScheduledCall.start_at)
        .limit(limit)
    )
    return list(session.scalars(stmt))


def as_busy_intervals(calls: List[ScheduledCall]) -> List[BusyInterval]:
    """Convert stored calls to platform busy intervals."""
    return [
        BusyInterval.platform(call.start_at, call.end_at, call_id=call.id)
        for call in calls
        if call.is_active
    ]


def is_role(participant: Optional[Participant], role: ParticipantRole) -> bool:
    return participant is not None and participant.role is role
