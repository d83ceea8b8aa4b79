"""
Storage layer - SQLAlchemy engine, tables and queries.
"""

from .database import Base, create_db_engine, init_db, make_session_factory, session_scope
from .models import CallStatus, Participant, ParticipantRole, Quota, ScheduledCall

__all__ = [
    "Base",
    "CallStatus",
    "Participant",
    "ParticipantRole",
    "Quota",
    "ScheduledCall",
    "create_db_engine",
    "init_db",
    "make_session_factory",
    "session_scope",
]
