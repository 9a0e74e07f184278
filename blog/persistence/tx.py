"""Explicit unit-of-work helpers for the content store.

Repositories take an optional ``session`` argument. When the caller passes a
session that already has an open transaction, the work joins it and the
caller keeps the commit/rollback decision. Otherwise a transaction is opened
here and committed on success or rolled back when the block raises.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

T = TypeVar("T")


@asynccontextmanager
async def transaction(
    session_factory: async_sessionmaker[AsyncSession],
    session: AsyncSession | None = None,
) -> AsyncIterator[AsyncSession]:
    """Yield a session inside a transaction, reusing an ambient one if given."""
    if session is not None and session.in_transaction():
        # Outer caller owns commit/rollback.
        yield session
        return

    if session is not None:
        async with session.begin():
            yield session
        return

    async with session_factory() as new_session:
        async with new_session.begin():
            yield new_session


async def run_in_transaction(
    session_factory: async_sessionmaker[AsyncSession],
    fn: Callable[[AsyncSession], Awaitable[T]],
    session: AsyncSession | None = None,
) -> T:
    """Run ``fn`` inside :func:`transaction` and return its result."""
    async with transaction(session_factory, session) as tx_session:
        return await fn(tx_session)
