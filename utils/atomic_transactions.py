"""Atomic transaction and row-locking utilities for settlement operations"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from models import Account, Trade

logger = logging.getLogger(__name__)

# PostgreSQL SQLSTATE for lock_not_available (FOR UPDATE NOWAIT)
LOCK_NOT_AVAILABLE_SQLSTATE = "55P03"


@asynccontextmanager
async def async_atomic_transaction(session: AsyncSession) -> AsyncGenerator[AsyncSession, None]:
    """
    Async context manager for atomic database transactions with proper rollback.
    Everything executed inside commits together or not at all.

    Nested use on the same session defers the commit to the outermost block.
    """
    transaction_depth = getattr(session, '_atomic_transaction_depth', 0)
    try:
        setattr(session, '_atomic_transaction_depth', transaction_depth + 1)

        if transaction_depth > 0:
            logger.debug(f"Nested async transaction detected (depth: {transaction_depth + 1})")

        yield session

        if transaction_depth == 0:
            await session.commit()
            logger.debug("Outermost async transaction committed successfully")

    except Exception as e:
        await session.rollback()
        logger.error(f"Async transaction rolled back due to error (depth: {transaction_depth + 1}): {e}")
        raise
    finally:
        current_depth = getattr(session, '_atomic_transaction_depth', 1)
        setattr(session, '_atomic_transaction_depth', max(0, current_depth - 1))


async def lock_trade(session: AsyncSession, trade_id: int, nowait: bool = True) -> Optional[Trade]:
    """
    SELECT ... FOR UPDATE the trade row and return it freshly loaded.

    nowait=True fails immediately when another transaction holds the row; the caller
    turns that into a retryable contention result instead of queueing.
    """
    stmt = (
        select(Trade)
        .where(Trade.id == trade_id)
        .with_for_update(nowait=nowait)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def lock_account(session: AsyncSession, account_id: int) -> Optional[Account]:
    """SELECT ... FOR UPDATE an account row so balance_before is read under the lock"""
    stmt = (
        select(Account)
        .where(Account.id == account_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


def is_lock_contention_error(error: BaseException) -> bool:
    """True when a database error means 'row already locked by someone else'"""
    if not isinstance(error, DBAPIError):
        return False

    orig = getattr(error, "orig", None)
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate == LOCK_NOT_AVAILABLE_SQLSTATE:
        return True

    message = str(error).lower()
    return "could not obtain lock" in message or "lock not available" in message
