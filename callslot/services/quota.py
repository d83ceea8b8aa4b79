"""
Monthly booking quotas for callers and callees.

Counters are only mutated inside the booking transaction: ``consume`` is a
single conditional UPDATE, so two simultaneous bookings by the same subject
cannot both pass a check-then-act gap.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import pendulum
from pendulum import DateTime
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..config import QuotaConfig
from ..domain.exceptions import QuotaExceededError, ReservationError, ValidationError
from ..storage import repository
from ..storage.database import session_scope
from ..storage.models import ParticipantRole, Quota

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaPeriod:
    """A calendar month in UTC: [start, end)."""
    start: DateTime
    end: DateTime

    @classmethod
    def containing(cls, instant: DateTime) -> "QuotaPeriod":
        start = pendulum.instance(instant).in_timezone("UTC").start_of("month")
        return cls(start=start, end=start.add(months=1))

    @property
    def label(self) -> str:
        return self.start.format("YYYY-MM")


class QuotaTracker:
    """Tracks per-subject booking counts against plan-defined monthly limits."""

    def __init__(self, session_factory: sessionmaker, quota_config: QuotaConfig):
        self._session_factory = session_factory
        self._config = quota_config

    def limit_for(self, session: Session, subject_id: str) -> int:
        """Monthly limit of a subject, from its plan and role."""
        participant = repository.get_participant(session, subject_id)
        if participant is None:
            raise ValidationError(f"Unknown participant: {subject_id}")

        limits = self._config.limits_for(participant.plan)
        if participant.role is ParticipantRole.CALLER:
            return limits.caller_monthly_calls
        return limits.callee_monthly_calls

    def _get(self, session: Session, subject_id: str, period: QuotaPeriod) -> Optional[Quota]:
        stmt = (
            select(Quota)
            .where(Quota.subject_id == subject_id, Quota.period_start == period.start)
            .execution_options(populate_existing=True)
        )
        return session.scalar(stmt)

    def remaining(self, subject_id: str, period: QuotaPeriod) -> int:
        """Non-negative remaining count for the period; 0 means blocked."""
        with session_scope(self._session_factory) as session:
            limit = self.limit_for(session, subject_id)
            quota = self._get(session, subject_id, period)
            used = quota.used if quota is not None else 0
            return max(0, limit - used)

    def ensure(self, subject_id: str, period: QuotaPeriod) -> Quota:
        """
        Make sure the period row exists and carries the current plan limit.

        Safe to call concurrently: a lost insert race re-reads the winner's row.
        """
        with session_scope(self._session_factory) as session:
            limit = self.limit_for(session, subject_id)
            quota = self._get(session, subject_id, period)

            if quota is None:
                try:
                    with session.begin_nested():
                        quota = Quota(
                            subject_id=subject_id,
                            period_start=period.start,
                            period_end=period.end,
                            limit=limit,
                            used=0,
                        )
                        session.add(quota)
                except IntegrityError:
                    quota = self._get(session, subject_id, period)
                    if quota is None:
                        raise
                else:
                    logger.debug("Created quota %s/%s limit=%d", subject_id, period.label, limit)
                    return quota

            if quota.limit != limit:
                logger.info(
                    "Plan limit of %s changed for %s: %d -> %d",
                    subject_id,
                    period.label,
                    quota.limit,
                    limit,
                )
                quota.limit = limit

            return quota

    def consume(self, session: Session, subject_id: str, period: QuotaPeriod) -> Quota:
        """
        Atomically take one booking from the subject's allowance.

        Must run inside the booking transaction that creates the call.

        Raises:
            QuotaExceededError: No allowance left in the period
            ReservationError: The period row was never created
        """
        result = session.execute(
            update(Quota)
            .where(
                Quota.subject_id == subject_id,
                Quota.period_start == period.start,
                Quota.used < Quota.limit,
            )
            .values(used=Quota.used + 1, updated_at=pendulum.now("UTC"))
            .execution_options(synchronize_session=False)
        )

        quota = self._get(session, subject_id, period)
        if quota is None:
            raise ReservationError(
                f"Quota period {period.label} was not initialised for {subject_id}"
            )

        if result.rowcount == 0:
            raise QuotaExceededError(
                subject_id,
                remaining=quota.remaining,
                resets_at=period.end,
                limit=quota.limit,
            )

        return quota
