"""Database session management with retry logic and per-row serialization.
Local deployment: defaults to SQLite (no PostgreSQL required).
Docker / production: set DATABASE_URL or POSTGRES_* to use PostgreSQL.
"""
import logging
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Hashable, Iterator, Optional, Tuple

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base

logger = logging.getLogger("smartpole.db")


def resolve_database_url(configured: Optional[str] = None) -> str:
    if configured:
        return configured
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    if os.getenv("USE_POSTGRES", "").lower() in ("1", "true", "yes"):
        user = os.getenv("POSTGRES_USER", "admin")
        pwd = os.getenv("POSTGRES_PASSWORD", "password")
        db = os.getenv("POSTGRES_DB", "smartpole")
        host = os.getenv("POSTGRES_HOST", "localhost")
        port = os.getenv("POSTGRES_PORT", "5432")
        return f"postgresql://{user}:{pwd}@{host}:{port}/{db}"
    # Local deployment: default to SQLite in project directory (no PostgreSQL needed)
    db_path = Path(__file__).resolve().parent.parent.parent / "smartpole.db"
    logger.info("Using SQLite for local deployment: %s", db_path)
    return f"sqlite:///{db_path}"


class _RowLocks:
    """One lock per (kind, key); different rows never contend."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, Hashable], threading.Lock] = {}

    def get(self, kind: str, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get((kind, key))
            if lock is None:
                lock = threading.Lock()
                self._locks[(kind, key)] = lock
            return lock


class Database:
    """
    Owns the engine and session factory. Passed explicitly to every store
    that needs persistence; there is no module-level engine.
    """

    def __init__(self, url: Optional[str] = None, attempts: int = 3, retry_delay: float = 2.0):
        self.url = resolve_database_url(url)
        self._attempts = attempts
        self._retry_delay = retry_delay
        self._engine = None
        self._session_factory = None
        self._row_locks = _RowLocks()

    @property
    def engine(self):
        if self._engine is None:
            kwargs = {}
            if self.url.startswith("sqlite"):
                kwargs["connect_args"] = {"check_same_thread": False}
                kwargs["pool_pre_ping"] = False
                if self.url in ("sqlite://", "sqlite:///:memory:"):
                    kwargs["poolclass"] = StaticPool
            else:
                kwargs["pool_pre_ping"] = True
            for i in range(self._attempts):
                try:
                    self._engine = create_engine(self.url, **kwargs)
                    self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)
                    break
                except OperationalError as e:
                    logger.warning("Database connection failed (attempt %s): %s", i + 1, e)
                    time.sleep(self._retry_delay)
            if self._engine is None:
                raise RuntimeError("Could not create database engine")
        return self._engine

    @property
    def supports_row_locking(self) -> bool:
        return not self.url.startswith("sqlite")

    def create_tables(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        if self._session_factory is None:
            self.engine  # noqa: B018 - builds the session factory
        return self._session_factory()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """One unit of work: commit on success, roll back on any error."""
        sess = self.get_session()
        try:
            yield sess
            sess.commit()
        except Exception:
            sess.rollback()
            raise
        finally:
            sess.close()

    @contextmanager
    def row_lock(self, kind: str, key: Hashable) -> Iterator[None]:
        with self._row_locks.get(kind, key):
            yield

    @contextmanager
    def row_scope(self, kind: str, key: Hashable) -> Iterator[Session]:
        """Serialized read-modify-write of a single session/device row."""
        with self.row_lock(kind, key):
            with self.transaction() as sess:
                yield sess

    def lock_query(self, query):
        """Apply SELECT ... FOR UPDATE where the backend has row locks."""
        if self.supports_row_locking:
            return query.with_for_update()
        return query

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
