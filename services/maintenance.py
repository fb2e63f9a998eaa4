"""Periodic removal of expired refresh tokens."""

import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

# Background task for periodic token cleanup
_cleanup_task: Optional[asyncio.Task] = None


async def cleanup_expired_tokens(session_factory: async_sessionmaker[AsyncSession]) -> int:
    """
    Delete refresh tokens whose expiry has passed.

    Revoked but unexpired tokens are kept; reuse detection depends on them.
    Returns the number of rows deleted.
    """
    async with UnitOfWork(session_factory()) as uow:
        async with uow.transaction():
            deleted = await uow.refresh_tokens.delete_expired()

    if deleted > 0:
        logger.info(f"Token cleanup completed: {deleted} expired refresh tokens removed")
    return deleted


async def _periodic_token_cleanup(
    session_factory: async_sessionmaker[AsyncSession], interval_seconds: float
):
    """Background task to periodically clean up expired tokens."""
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            await cleanup_expired_tokens(session_factory)
        except asyncio.CancelledError:
            logger.info("Token cleanup task cancelled")
            break
        except Exception as e:
            logger.error(f"Error in token cleanup task: {e}")
            # Continue running despite errors


def start_cleanup_task(
    session_factory: async_sessionmaker[AsyncSession], interval_seconds: float
) -> asyncio.Task:
    """Start the periodic token cleanup background task (idempotent)."""
    global _cleanup_task
    if _cleanup_task is None or _cleanup_task.done():
        _cleanup_task = asyncio.create_task(
            _periodic_token_cleanup(session_factory, interval_seconds)
        )
        logger.debug("Started periodic token cleanup task")
    return _cleanup_task


def stop_cleanup_task() -> None:
    """Stop the periodic token cleanup background task."""
    global _cleanup_task
    if _cleanup_task and not _cleanup_task.done():
        _cleanup_task.cancel()
        logger.debug("Stopped periodic token cleanup task")
    _cleanup_task = None
