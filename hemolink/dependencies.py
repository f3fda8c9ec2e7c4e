import logging
from typing import AsyncGenerator

from fastapi import HTTPException
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hemolink.database import async_session

logger = logging.getLogger(__name__)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for getting async database sessions.
    Services commit their own transactions; anything left open is committed
    here, and rolled back when the request fails.
    """
    session = async_session()
    logger.debug("Database session created")
    try:
        yield session

        if session.in_transaction():
            await session.commit()
            logger.debug("Database transaction committed")

    except HTTPException:
        if session.in_transaction():
            await session.rollback()
            logger.debug("Database transaction rolled back due to HTTPException")
        raise

    except SQLAlchemyError as e:
        logger.error(f"Database error in get_db: {type(e).__name__}: {e}")
        if session.in_transaction():
            await session.rollback()
        raise

    finally:
        await session.close()
        logger.debug("Database session closed")


def get_session_factory() -> async_sessionmaker:
    """Session factory for work that outlives the request (notification fan-out)."""
    return async_session
