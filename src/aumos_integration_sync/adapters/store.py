"""Transactional store over the primary database.

sql_store_factory() turns an async_sessionmaker into the StoreFactory the sync
pipeline depends on. Each `async with` block opens one session, exposes every
repository on it, commits on a clean exit and rolls back otherwise.
"""

from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from aumos_integration_sync.adapters.repositories import (
    ControlRepository,
    EffectivenessLogRepository,
    EvidenceLinkRepository,
    EvidenceRepository,
    IntegrationLogRepository,
    IntegrationRepository,
)
from aumos_integration_sync.errors import PersistenceError
from aumos_integration_sync.observability import get_logger

logger = get_logger(__name__)


class SqlSyncStore:
    """Every repository bound to one AsyncSession.

    Args:
        session: The session owning the current transaction.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.integrations = IntegrationRepository(session)
        self.logs = IntegrationLogRepository(session)
        self.evidence = EvidenceRepository(session)
        self.controls = ControlRepository(session)
        self.links = EvidenceLinkRepository(session)
        self.effectiveness = EffectivenessLogRepository(session)


def sql_store_factory(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[], AbstractAsyncContextManager[SqlSyncStore]]:
    """Build a StoreFactory backed by SQLAlchemy sessions.

    Args:
        session_factory: The primary database session factory.

    Returns:
        A zero-argument callable returning an async context manager.
        SQLAlchemy errors raised inside the block are rolled back and
        re-raised as PersistenceError. Other exceptions are rolled back and
        propagate unchanged.
    """

    @asynccontextmanager
    async def open_store() -> AsyncIterator[SqlSyncStore]:
        async with session_factory() as session:
            try:
                yield SqlSyncStore(session)
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error("Transaction rolled back", error_type=type(exc).__name__)
                raise PersistenceError(f"Database write failed: {exc}") from exc
            except BaseException:
                await session.rollback()
                raise

    return open_store
