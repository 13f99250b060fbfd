from typing import Callable

import structlog
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from . import config

logger = structlog.get_logger().bind(component="database")


def _make_engine(url: str):
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    kwargs = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        # one shared connection, otherwise every session sees an empty database
        kwargs["poolclass"] = StaticPool
    sqlite_engine = create_engine(url, **kwargs)

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN itself
    @event.listens_for(sqlite_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return sqlite_engine


engine = _make_engine(config.DATABASE_URL)    # Connecting to the database
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)   #A temporary connection to work with the database.


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def on_commit(db: Session, callback: Callable[[], None]) -> None:
    """Run ``callback`` once the session's current transaction commits.

    Callbacks are discarded if the transaction rolls back instead.
    """
    db.info.setdefault("on_commit", []).append(callback)


@event.listens_for(Session, "after_commit")
def _run_on_commit_callbacks(session: Session) -> None:
    if session.in_nested_transaction():
        return  # savepoint release, the real commit is still ahead
    callbacks = session.info.pop("on_commit", [])
    for callback in callbacks:
        try:
            callback()
        except Exception:
            logger.exception("on_commit callback failed", callback=getattr(callback, "__name__", repr(callback)))


@event.listens_for(Session, "after_rollback")
def _drop_on_commit_callbacks(session: Session) -> None:
    if session.in_nested_transaction():
        return
    session.info.pop("on_commit", None)
