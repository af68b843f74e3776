"""
Engine and session management for the issuance database.

Responsibility:
    Owns the process-wide engine and sessionmaker, and the commit-or-rollback
    ``session_scope`` every service transaction runs in.

Architecture position:
    Kernel > DB.  Imports only ``db.base`` and, for table creation, the
    model package.

Invariants enforced:
    The folio counter lock is visible to every writer, in any process:
      * PostgreSQL runs READ COMMITTED; allocators lock the counter row with
        ``SELECT ... FOR UPDATE``.
      * SQLite opens every transaction with ``BEGIN IMMEDIATE``.  The
        database write lock is held from the first statement, so concurrent
        allocators queue on the file.  pysqlite's implicit BEGIN is turned
        off so it cannot open a deferred transaction first.

Failure modes:
    - RuntimeError when a session or engine is requested before
      ``init_engine_from_url``.
    - ``OperationalError("database is locked")`` on SQLite once a writer
      waits longer than ``sqlite_timeout``.
"""

import atexit
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from dte_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")


@dataclass
class _Database:
    engine: Engine
    factory: sessionmaker[Session]


_db: _Database | None = None


def _require() -> _Database:
    if _db is None:
        raise RuntimeError("Database not initialized; call init_engine_from_url() first.")
    return _db


def _sqlite_engine(url: str, echo: bool, timeout: float) -> Engine:
    engine = create_engine(
        url,
        echo=echo,
        connect_args={"check_same_thread": False, "timeout": timeout},
    )

    @event.listens_for(engine, "connect")
    def _autocommit_driver(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    sqlite_timeout: float = 30.0,
) -> Engine:
    """
    Create the engine and session factory for ``database_url``.

    Use PostgreSQL or a file-backed SQLite URL; an in-memory SQLite database
    is private to one connection and cannot serialize allocators.

    Pool settings apply to server backends only.
    """
    global _db

    backend = make_url(database_url).get_backend_name()
    if backend == "sqlite":
        engine = _sqlite_engine(database_url, echo, sqlite_timeout)
        pool: dict[str, Any] = {}
    else:
        pool = {
            "pool_size": pool_size,
            "max_overflow": max_overflow,
            "pool_timeout": pool_timeout,
            "pool_recycle": pool_recycle,
        }
        engine = create_engine(
            database_url,
            echo=echo,
            poolclass=QueuePool,
            pool_pre_ping=True,
            isolation_level="READ COMMITTED",
            **pool,
        )

    _db = _Database(engine=engine, factory=sessionmaker(bind=engine, expire_on_commit=False))

    configure_logging()
    logger.info("engine_initialized", extra={"backend": backend, "echo": echo, **pool})
    return engine


def get_engine() -> Engine:
    return _require().engine


def get_session_factory() -> sessionmaker[Session]:
    """One session per thread or per transaction; never share them."""
    return _require().factory


def get_session() -> Session:
    return _require().factory()


@contextmanager
def session_scope(
    factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """
    Run a block in one transaction.

    Commits on normal exit; rolls back and re-raises on any exception. The
    session is closed either way.

    Usage:
        with session_scope(factory) as session:
            FolioAllocator(session, clock).allocate(account_id, 33)
    """
    session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def _metadata():
    from dte_kernel.db.base import Base
    import dte_kernel.models  # noqa: F401  (registers tables on Base.metadata)

    return Base.metadata


def create_tables() -> None:
    _metadata().create_all(get_engine())


def drop_tables() -> None:
    """Tests only."""
    _metadata().drop_all(get_engine())


def reset_engine() -> None:
    """Dispose the engine and forget it. Tests only."""
    global _db
    if _db is not None:
        _db.engine.dispose()
    _db = None


atexit.register(lambda: _db is not None and _db.engine.dispose())
