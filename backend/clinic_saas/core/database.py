"""Database configuration and session management.

Provides the async engine, the declarative Base, the FastAPI session
dependency and the ``transactional`` decorator that gives every ledger
mutation all-or-nothing semantics.
"""

import functools
import logging
from typing import AsyncGenerator, Awaitable, Callable, Optional, TypeVar

from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from clinic_saas.core.config import settings
from clinic_saas.core.errors import InternalError, Result, ServiceError
from clinic_saas.core.metrics import LEDGER_TRANSACTIONS_TOTAL
from clinic_saas.core.tracing import ledger_span, record_exception, tag_span

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Key in AsyncSession.info tracking how many transactional calls are active
TX_DEPTH_KEY = "clinic_saas.tx_depth"


class Base(DeclarativeBase):
    """Declarative base for all models."""


def configure_sqlite(engine: AsyncEngine) -> None:
    """Let SQLAlchemy own BEGIN so SAVEPOINT works on sqlite drivers."""

    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create the async engine for a database URL."""
    if url.startswith("sqlite"):
        engine = create_async_engine(url, echo=echo)
        configure_sqlite(engine)
        return engine
    return create_async_engine(url, echo=echo, pool_pre_ping=True)


engine = build_engine(settings.DATABASE_URL, echo=settings.DB_ECHO)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a database session."""
    async with async_session_maker() as session:
        yield session


async def create_all() -> None:
    """Create all tables from model metadata."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def _finish(outcome: str, error_kind: Optional[str] = None) -> None:
    LEDGER_TRANSACTIONS_TOTAL.labels(outcome=outcome).inc()
    tag_span({"ledger.outcome": outcome, "ledger.error": error_kind})


def transactional(
    func: Callable[..., Awaitable[T]],
) -> Callable[..., Awaitable[T]]:
    """Run a ledger method as one unit of work on ``self.session``.

    Nested transactional calls join the outermost one. Only the outermost
    call commits. It rolls back when the method returns a failed Result or
    raises a ServiceError. Store failures roll back and surface as
    InternalError.
    """

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        session: AsyncSession = self.session
        depth = session.info.get(TX_DEPTH_KEY, 0)
        if depth:
            session.info[TX_DEPTH_KEY] = depth + 1
            try:
                return await func(self, *args, **kwargs)
            finally:
                session.info[TX_DEPTH_KEY] = depth

        session.info[TX_DEPTH_KEY] = 1
        with ledger_span(func.__qualname__):
            try:
                result = await func(self, *args, **kwargs)
                if isinstance(result, Result) and not result.ok:
                    await session.rollback()
                    _finish("rejected", result.error.kind)
                else:
                    await session.commit()
                    _finish("committed")
                return result
            except ServiceError as e:
                await session.rollback()
                _finish("rejected", e.kind)
                raise
            except SQLAlchemyError as e:
                await session.rollback()
                _finish("failed")
                record_exception(e)
                logger.error(
                    "Store failure during ledger operation",
                    extra={"operation": func.__qualname__},
                    exc_info=True,
                )
                raise InternalError(
                    "Unexpected store failure",
                    {"operation": func.__qualname__},
                ) from e
            finally:
                session.info[TX_DEPTH_KEY] = 0

    return wrapper
