from collections.abc import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from esign_engine.core.errors import ConcurrentModification, ContractExpired
from esign_engine.core.logging import get_logger
from esign_engine.db.session import get_session_factory

logger = get_logger(__name__)


async def get_db() -> AsyncIterator[AsyncSession]:
    async with get_session_factory()() as session:
        try:
            yield session
        except ContractExpired:
            # The lazily coerced expiry was flushed before raising and must survive.
            await session.commit()
            raise


async def commit(session: AsyncSession) -> None:
    try:
        await session.commit()
    except StaleDataError as exc:
        await session.rollback()
        logger.warning("session.commit.conflict")
        raise ConcurrentModification("Contract was modified concurrently; reload and retry") from exc
