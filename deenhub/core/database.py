"""SQLAlchemy engine, sessions and the upsert helper.

SQLite (WAL mode) is the default store; any other URL gets a pooled engine.
Statements slower than SLOW_QUERY_THRESHOLD_MS are logged.
"""

import logging
import time
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, event, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from deenhub.core.config import get_settings
from deenhub.core.exceptions import StorageError

logger = logging.getLogger(__name__)

settings = get_settings()

is_sqlite = settings.database_url.startswith("sqlite")

engine_args: dict[str, Any] = {
    "echo": settings.debug and settings.enable_query_logging,
}

if is_sqlite:
    Path(settings.database_url.removeprefix("sqlite:///")).parent.mkdir(parents=True, exist_ok=True)
    engine_args["connect_args"] = {"check_same_thread": False}
else:
    engine_args.update({
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_timeout": settings.database_pool_timeout,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
    })

engine = create_engine(settings.database_url, **engine_args)


@event.listens_for(engine, "before_cursor_execute")
def _start_query_timer(conn, cursor, statement, parameters, context, executemany):
    conn.info.setdefault("query_started", []).append(time.perf_counter())


@event.listens_for(engine, "after_cursor_execute")
def _log_slow_query(conn, cursor, statement, parameters, context, executemany):
    elapsed_ms = (time.perf_counter() - conn.info["query_started"].pop()) * 1000
    if elapsed_ms > settings.slow_query_threshold_ms:
        logger.warning(f"Slow query ({elapsed_ms:.0f}ms): {statement[:200]}")


if is_sqlite:
    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_connection, connection_record):
        # WAL plus a busy timeout lets workers and the API write concurrently
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Request-scoped session; route handlers commit explicitly."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """Session for scheduler jobs and workers, committed on clean exit."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def upsert(
    db: Session,
    model,
    values: dict[str, Any],
    index_elements: Iterable[str],
    update_fields: Iterable[str] | None = None,
    set_: dict[str, Any] | None = None,
) -> None:
    """Insert a row or update it in place when the natural key already exists.

    Runs as a single INSERT ... ON CONFLICT DO UPDATE statement so two
    workers writing the same key never race.

    Args:
        db: Database session
        model: SQLAlchemy model class with a unique constraint on index_elements
        values: Column values for the insert
        index_elements: Columns forming the natural key
        update_fields: Columns to overwrite on conflict (default: all non-key values)
        set_: Explicit SET expressions; a callable value receives the
            proposed row (``excluded``) and returns the expression
    """
    keys = list(index_elements)
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(**values)
    else:
        raise StorageError(f"Upsert not supported for dialect '{dialect}'")

    if set_ is None:
        fields = update_fields if update_fields is not None else values.keys()
        set_ = {name: stmt.excluded[name] for name in fields if name not in keys}
    else:
        set_ = {
            name: value(stmt.excluded) if callable(value) else value
            for name, value in set_.items()
        }

    if set_:
        stmt = stmt.on_conflict_do_update(index_elements=keys, set_=set_)
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=keys)
    db.execute(stmt)


def init_db() -> None:
    """Create any missing tables."""
    from deenhub import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


STATS_TABLES = (
    "sync_runs",
    "queue_jobs",
    "translation_jobs",
    "prayer_times",
    "hadiths",
    "gold_prices",
    "api_request_logs",
    "ip_blocking_rules",
)


def get_db_stats(db: Session) -> dict[str, Any]:
    """Row counts for the health check; None where a table is unreadable."""
    stats: dict[str, Any] = {}
    for table in STATS_TABLES:
        try:
            stats[f"{table}_count"] = db.execute(text(f"SELECT COUNT(*) FROM {table}")).scalar()
        except SQLAlchemyError as exc:
            logger.warning(f"Could not count {table}: {exc}")
            db.rollback()
            stats[f"{table}_count"] = None
    return stats
