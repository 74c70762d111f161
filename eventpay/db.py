"""Database handle and session management."""
from __future__ import annotations

from collections.abc import Generator, Iterator
from contextlib import contextmanager
from typing import Any

from fastapi import Request
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from eventpay.models.base import Base


def _install_sqlite_hooks(engine: Engine) -> None:
    """Enforce foreign keys and take the write lock at BEGIN.

    pysqlite defers BEGIN until the first write, which lets two readers of the
    same balance both proceed. Emitting ``BEGIN IMMEDIATE`` ourselves makes
    SQLite writers serialize at transaction start, which is what the
    ``UPDATE ... WHERE status = ...`` transitions and the per-organizer ledger
    lock rely on.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    """Explicitly constructed engine + session factory.

    ``create_app`` builds one instance, the lifespan opens it and closes it on
    shutdown; request handlers reach it through :func:`get_db`.
    """

    def __init__(self, url: str, **engine_kwargs: Any) -> None:
        self.url = url
        self._engine_kwargs = engine_kwargs
        self._engine: Engine | None = None
        self._sessionmaker: sessionmaker[Session] | None = None

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    def open(self) -> Engine:
        """Create the engine lazily; calling it twice is a no-op."""

        if self._engine is None:
            kwargs = dict(self._engine_kwargs)
            if self.is_sqlite:
                connect_args = dict(kwargs.pop("connect_args", {}))
                connect_args.setdefault("check_same_thread", False)
                kwargs["connect_args"] = connect_args
            engine = create_engine(self.url, echo=False, **kwargs)
            if self.is_sqlite:
                _install_sqlite_hooks(engine)
            self._engine = engine
            self._sessionmaker = sessionmaker(
                bind=engine,
                autoflush=False,
                expire_on_commit=False,
            )
        return self._engine

    @property
    def engine(self) -> Engine:
        return self.open()

    @property
    def sessionmaker(self) -> sessionmaker[Session]:
        self.open()
        assert self._sessionmaker is not None  # for type-checkers
        return self._sessionmaker

    def create_all(self) -> None:
        """Create all tables from the shared declarative metadata."""

        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Session for code running outside a request (scheduler jobs, scripts)."""

        session = self.sessionmaker()
        try:
            yield session
        finally:
            session.close()

    def close(self) -> None:
        """Dispose of the engine and forget the session factory."""

        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._sessionmaker = None


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_db(request: Request) -> Generator[Session, None, None]:
    """Provide a database session for FastAPI dependencies."""

    session = get_database(request).sessionmaker()
    try:
        yield session
    finally:
        session.close()


__all__ = ["Base", "Database", "get_database", "get_db"]
