from __future__ import annotations

import logging
from contextlib import contextmanager
from collections.abc import Callable, Generator
from typing import TypeVar

from flask import Flask, current_app, g
from sqlalchemy import create_engine, event
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.moc.errors import ConcurrentModification

logger = logging.getLogger(__name__)

T = TypeVar("T")


def build_engine(db_url: str) -> Engine:
    """Engine for the app and the CLI scripts; SQLite gets foreign keys switched on."""
    if db_url.startswith("sqlite"):
        engine = create_engine(db_url, future=True)

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_connection, connection_record):  # type: ignore[no-redef]
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.close()

        return engine
    kwargs: dict[str, object] = {"future": True, "pool_pre_ping": True, "pool_recycle": 1800}
    if db_url.startswith("postgres"):
        kwargs.update({"pool_size": 5, "max_overflow": 10, "pool_timeout": 30})
    return create_engine(db_url, **kwargs)


def make_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    # expire_on_commit=False: records stay readable after run_atomic commits.
    return sessionmaker(bind=engine, class_=Session, autoflush=False, expire_on_commit=False, future=True)


def init_db(app: Flask) -> None:
    engine = build_engine(app.config["DATABASE_URL"])
    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = make_sessionmaker(engine)


def db_session(app: Flask | None = None) -> Session:
    """Request-scoped session, closed on app-context teardown."""
    s: Session | None = getattr(g, "db_session", None)
    if s is not None:
        return s
    sm = (app or current_app).extensions["sqlalchemy_sessionmaker"]
    g.db_session = sm()
    return g.db_session


def teardown_db_session(_exc: BaseException | None) -> None:
    s: Session | None = getattr(g, "db_session", None)
    if s is not None:
        try:
            s.close()
        except Exception:
            logger.exception("Failed to close request DB session")
        g.db_session = None


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    """
    Non-request helper: yields a session and commits/rolls back.
    """
    s: Session = app.extensions["sqlalchemy_sessionmaker"]()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


def run_atomic(
    s: Session,
    unit: Callable[[], T],
    *,
    attempts: int = 3,
    label: str = "unit",
    retry_on: tuple[type[Exception], ...] = (StaleDataError,),
) -> T:
    """
    Run `unit` and commit it as one transaction.

    Any exception rolls the whole unit back. A version conflict on a
    `version_id_col` mapped row (another request committed the same aggregate
    first) re-runs `unit` from scratch so it re-reads current state; after
    `attempts` conflicts ConcurrentModification is raised.
    Callers whose unit can lose an insert race pass extra `retry_on` types.
    """
    for attempt in range(1, attempts + 1):
        try:
            result = unit()
            s.commit()
            return result
        except retry_on:
            s.rollback()
            logger.warning("%s: concurrent modification (attempt %s/%s)", label, attempt, attempts)
        except Exception:
            s.rollback()
            raise
    raise ConcurrentModification(f"{label}: record was modified concurrently; retry the request.")


# Tables (and columns) the workflow engine cannot run without.
REQUIRED_SCHEMA: dict[str, tuple[str, ...]] = {
    "moc_requests": ("status", "departments_affected", "version"),
    "moc_department_approvals": ("rfc_id", "department_id", "position", "status"),
    "edit_history": ("rfc_id", "edited_by_id", "field_changes"),
    "notifications": ("user_id", "rfc_id", "kind"),
    "departments": ("name", "approver_user_id"),
}


def missing_schema(engine: Engine) -> list[str]:
    """Return `table (table)` / `table.column` entries absent from the live database."""
    insp = sa_inspect(engine)
    missing: list[str] = []
    for table, columns in REQUIRED_SCHEMA.items():
        if not insp.has_table(table):
            missing.append(f"{table} (table)")
            continue
        cols = {c["name"] for c in insp.get_columns(table)}
        missing.extend(f"{table}.{col}" for col in columns if col not in cols)
    return missing
