import logging
import time
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT = 30


class Base(DeclarativeBase):
    pass


def create_db_engine(
    database_url: str,
    echo: bool = False,
    slow_query_threshold: float = 1.0,
) -> Engine:
    """
    Create the engine for the booking store.

    SQLite has no row-level locking, so every transaction is opened with
    BEGIN IMMEDIATE: writers are serialized by the database file lock and a
    reservation always sees the rows committed before it.
    """
    is_sqlite = database_url.startswith("sqlite")

    if is_sqlite:
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
        )

        @event.listens_for(engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, _connection_record):
            # Let SQLAlchemy emit BEGIN itself
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    else:
        engine = create_engine(
            database_url,
            echo=echo,
            pool_pre_ping=True,  # Test connections before using
            pool_recycle=300,
        )

    # Slow query logging for performance monitoring
    @event.listens_for(engine, "before_cursor_execute")
    def before_cursor_execute(conn, _cursor, statement, _parameters, context, _executemany):
        conn.info.setdefault("query_start_time", []).append(time.time())

    @event.listens_for(engine, "after_cursor_execute")
    def after_cursor_execute(conn, _cursor, statement, _parameters, context, _executemany):
        total = time.time() - conn.info["query_start_time"].pop(-1)
        if total > slow_query_threshold:
            logger.warning("Slow query (%.2fs): %s...", total, statement[:200])

    logger.info("Database engine created for %s", engine.url.render_as_string(hide_password=True))
    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    # Rows returned from a finished transaction stay readable
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all tables and indexes."""
    from . import models  # noqa: F401  registers the mappers

    Base.metadata.create_all(engine)
    logger.info("Database schema ready")


@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
