"""
Row locking helpers.

``SELECT ... FOR UPDATE`` is a no-op on SQLite; there the whole transaction
already holds the write lock from ``BEGIN IMMEDIATE``.
"""

from typing import Callable, Optional, TypeVar

from sqlalchemy import Select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

T = TypeVar("T")


async def lock_one(session: AsyncSession, stmt: Select) -> Optional[T]:
    """Run ``stmt`` with FOR UPDATE and return the single row or None."""
    result = await session.execute(
        stmt.with_for_update().execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def lock_or_create(session: AsyncSession, stmt: Select, factory: Callable[[], T]) -> T:
    """
    Lock the row selected by ``stmt``, inserting it first if it is missing.

    The insert runs in a savepoint. If a concurrent transaction inserts the
    same key first, the savepoint is rolled back and that row is locked
    instead.
    """
    row = await lock_one(session, stmt)
    if row is not None:
        return row

    try:
        async with session.begin_nested():
            session.add(factory())
    except IntegrityError:
        # Lost the insert race; the winner's row is visible once it commits
        pass

    return (
        await session.execute(stmt.with_for_update().execution_options(populate_existing=True))
    ).scalar_one()
