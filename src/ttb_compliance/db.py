"""Database engine, sessions and the unit-of-work boundary."""

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import lru_cache
from typing import Generic, TypeVar

import structlog
from sqlalchemy import Engine, Select, create_engine
from sqlalchemy.orm import Session, sessionmaker

from ttb_compliance.config import get_settings

logger = structlog.get_logger(__name__)

SessionFactory = sessionmaker[Session]

T = TypeVar("T")


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def create_db_engine(url: str | None = None, echo: bool = False) -> Engine:
    """Create an engine for the configured (or given) database URL."""
    url = url or get_settings().database_url
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, echo=echo, connect_args=connect_args)


def create_session_factory(engine: Engine) -> SessionFactory:
    # Objects stay readable after the unit of work that loaded them closes
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@lru_cache
def get_session_factory() -> SessionFactory:
    """Get the cached session factory bound to the configured database."""
    return create_session_factory(create_db_engine())


def init_db(engine: Engine) -> None:
    """Create all tables that do not exist yet."""
    from ttb_compliance.models import Base

    Base.metadata.create_all(bind=engine)
    logger.info("database_initialized", url=engine.url.render_as_string(hide_password=True))


class StreamingQuery(Generic[T]):
    """A lazy, restartable sequence of ORM rows.

    Nothing is read until iteration starts, and every iteration re-runs the
    statement, streaming rows in batches. When ``session`` is given the rows
    are read through it (so uncommitted writes of the caller are visible);
    otherwise each iteration opens and closes its own session.
    """

    def __init__(
        self,
        statement: Select[tuple[T]],
        session_factory: SessionFactory | None = None,
        session: Session | None = None,
        batch_size: int | None = None,
    ):
        if session is None and session_factory is None:
            raise ValueError("StreamingQuery needs a session or a session factory")
        self._statement = statement
        self._session_factory = session_factory
        self._session = session
        self._batch_size = batch_size or get_settings().query_batch_size

    @property
    def statement(self) -> Select[tuple[T]]:
        return self._statement

    def __iter__(self) -> Iterator[T]:
        if self._session is not None:
            yield from self._stream(self._session)
            return
        with self._session_factory() as session:
            yield from self._stream(session)

    def _stream(self, session: Session) -> Iterator[T]:
        result = session.execute(
            self._statement.execution_options(yield_per=self._batch_size)
        )
        yield from result.scalars()

    def all(self) -> list[T]:
        return list(self)


@contextmanager
def unit_of_work(session_factory: SessionFactory) -> Iterator[Session]:
    """Open a session, commit on success and roll back on any error.

    Entity writes and their audit entries share one unit of work, so a
    failure in either leaves no trace of the other.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
