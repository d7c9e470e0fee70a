"""
LexVault Database Session Management.

Provides the single entry point for repository DB initialisation plus
context managers for transaction scoping. Sessions are always passed
explicitly to repository operations; there is no ambient connection.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from lexvault.db.base import Base, engine_registry
from lexvault.engine.errors import LexVaultDatabaseError

logger = logging.getLogger("lexvault.db.session")

ENGINE_NAME = "lexvault"

# Execution option marking a transaction that only reads
READ_ONLY_OPTION = "lexvault_read_only"

# Populated by init_repository_db(); used by session_scope().
_session_factory: Optional[sessionmaker] = None


def _install_sqlite_listeners(engine: Engine) -> None:
    """
    Make every SQLite write transaction start with BEGIN IMMEDIATE.

    Transactions opened with READ_ONLY_OPTION use a deferred BEGIN instead.

    pysqlite defers BEGIN until the first write, which lets two transactions
    read the same document row before either writes. Taking the write lock
    up front gives SQLite the same serialization PostgreSQL gets from
    SELECT ... FOR UPDATE.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn, connection_record):
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        if conn.get_execution_options().get(READ_ONLY_OPTION):
            conn.exec_driver_sql("BEGIN")
        else:
            conn.exec_driver_sql("BEGIN IMMEDIATE")


def init_repository_db(
    db_url: str,
    create_tables: bool = False,
    pool_size: int = 10,
    max_overflow: int = 20,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    pool_pre_ping: bool = True,
) -> sessionmaker:
    """
    Single entry point for repository database initialisation.

    1. Registers the "lexvault" engine in the EngineRegistry.
    2. On SQLite, installs the BEGIN IMMEDIATE / foreign-key listeners.
    3. Optionally runs Base.metadata.create_all() (dev / ``lexvault init``).
    4. Stores the session factory as the module-level default.

    Returns:
        A ``sessionmaker`` bound to the engine. Each caller (thread, request,
        task) must take its own session from it.
    """
    global _session_factory

    engine = engine_registry.register(
        ENGINE_NAME, db_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        pool_pre_ping=pool_pre_ping,
    )
    if db_url.startswith("sqlite"):
        _install_sqlite_listeners(engine)

    if create_tables:
        # Import registers the tables on Base.metadata
        import lexvault.db.models  # noqa: F401
        Base.metadata.create_all(engine)
        logger.info("Repository tables ensured on %s", engine.url.render_as_string(hide_password=True))

    _session_factory = engine_registry.get_session_factory(ENGINE_NAME)
    return _session_factory


def get_session() -> Session:
    """Get a new session for the repository database."""
    if _session_factory is None:
        raise RuntimeError("Repository DB not initialized. Call init_repository_db() first.")
    return _session_factory()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """
    Context manager yielding a fresh session that is closed on exit.

    Repository operations commit their own transactions; anything left
    uncommitted when the block exits is rolled back.

    Usage:
        with session_scope() as session:
            doc = repo.get(session, doc_id)
    """
    session = get_session()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@contextmanager
def atomic(
    session: Session,
    operation: str = "transaction",
    read_only: bool = False,
) -> Generator[Session, None, None]:
    """
    Run a block as one transaction: commit on success, roll back on any error.

    ``read_only`` blocks start a deferred transaction on SQLite, so reads
    are not queued behind a writer holding the write lock. It only applies
    when the session has no transaction open yet.

    SQLAlchemy errors raised inside the block or by the commit itself are
    re-raised as LexVaultDatabaseError; LexVault errors pass through unchanged.
    """
    try:
        if read_only and not session.in_transaction():
            session.connection(execution_options={READ_ONLY_OPTION: True})
        yield session
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Database error during {operation}: {e}")
        raise LexVaultDatabaseError(
            f"Database error during {operation}: {e.__class__.__name__}",
            operation=operation,
        ) from e
    except BaseException:
        session.rollback()
        raise


def close_all_sessions() -> None:
    """Dispose all engines. Used during shutdown."""
    global _session_factory
    _session_factory = None
    engine_registry.dispose()
