import enum
import uuid

import pendulum
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.types import TypeDecorator

from .database import Base


class UTCDateTime(TypeDecorator):
    """Stores instants as naive UTC, returns UTC pendulum instances."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Refusing to store naive datetime {value!r}")
        return pendulum.instance(value).in_timezone("UTC").naive()

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            return pendulum.instance(value).in_timezone("UTC")
        return pendulum.instance(value, tz="UTC")


def _new_id() -> str:
    return str(uuid.uuid4())


class ParticipantRole(str, enum.Enum):
    CALLER = "caller"
    CALLEE = "callee"


class CallStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Participant(Base):
    """Minimal directory entry: who a caller or callee is and which plan they are on."""

    __tablename__ = "participants"

    id = Column(String(64), primary_key=True, default=_new_id)
    email = Column(String(320), nullable=False, unique=True)
    display_name = Column(String(200), nullable=False, default="")
    role = Column(
        Enum(ParticipantRole, values_callable=lambda e: [m.value for m in e], native_enum=False),
        nullable=False,
    )
    timezone = Column(String(64), nullable=False, default="UTC")
    plan = Column(String(50), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=lambda: pendulum.now("UTC"))


class ScheduledCall(Base):
    """
    Authoritative record of a committed booking.

    The partial unique index is the single arbiter of "first reservation wins"
    for a callee's slot; cancelled rows release the slot.
    """

    __tablename__ = "scheduled_calls"

    id = Column(String(64), primary_key=True, default=_new_id)
    caller_id = Column(String(64), nullable=False, index=True)
    callee_id = Column(String(64), nullable=False, index=True)
    start_at = Column(UTCDateTime, nullable=False)
    end_at = Column(UTCDateTime, nullable=False)
    status = Column(
        Enum(CallStatus, values_callable=lambda e: [m.value for m in e], native_enum=False),
        nullable=False,
        default=CallStatus.SCHEDULED,
    )
    agenda = Column(Text, nullable=False, default="")
    notes = Column(Text, nullable=False, default="")
    confirmation_code = Column(String(32), nullable=False)
    external_event_ref = Column(String(512), nullable=True)
    calendar_sync_pending = Column(Boolean, nullable=False, default=False)
    idempotency_key = Column(String(128), nullable=True, unique=True)
    created_at = Column(UTCDateTime, nullable=False, default=lambda: pendulum.now("UTC"))
    cancelled_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index(
            "uq_scheduled_calls_callee_start_active",
            "callee_id",
            "start_at",
            unique=True,
            sqlite_where=text("status != 'cancelled'"),
            postgresql_where=text("status != 'cancelled'"),
        ),
        Index("ix_scheduled_calls_callee_range", "callee_id", "start_at", "end_at"),
    )

    @property
    def is_active(self) -> bool:
        return self.status is not CallStatus.CANCELLED

    def __repr__(self) -> str:
        return (
            f"<ScheduledCall {self.id} callee={self.callee_id} "
            f"{self.start_at} status={self.status.value}>"
        )


class Quota(Base):
    """Per-subject booking counter for one period."""

    __tablename__ = "quotas"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subject_id = Column(String(64), nullable=False)
    period_start = Column(UTCDateTime, nullable=False)
    period_end = Column(UTCDateTime, nullable=False)
    limit = Column(Integer, nullable=False)
    used = Column(Integer, nullable=False, default=0)
    updated_at = Column(
        UTCDateTime,
        nullable=False,
        default=lambda: pendulum.now("UTC"),
        onupdate=lambda: pendulum.now("UTC"),
    )

    __table_args__ = (
        UniqueConstraint("subject_id", "period_start", name="uq_quotas_subject_period"),
    )

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)
