"""
Transaction and locking helpers shared by the dispatch services.

* ``exclusive``      -- hold a per-key lock, surfacing a timed-out wait as ``Busy``.
* ``unit_of_work``   -- one DB transaction; any exception rolls it back.
  Connection-level failures surface as ``StoreUnavailable``, rejected values
  as ``InvalidState``; other driver errors propagate unchanged.
* ``read_with_retry`` -- idempotent reads, retried a bounded number of times on
  transient store errors.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from sqlalchemy.exc import DataError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridedispatch.domain.errors import Busy, Conflict, InvalidState, StoreUnavailable
from ridedispatch.infrastructure.locks import LockManager, LockTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


def ride_key(ride_id: int) -> str:
    return f"ride:{ride_id}"


def driver_key(driver_id: int) -> str:
    return f"driver:{driver_id}"


@asynccontextmanager
async def exclusive(locks: LockManager, key: str) -> AsyncIterator[None]:
    try:
        async with locks.hold(key):
            yield
    except LockTimeout as exc:
        logger.warning("Lock wait timed out for %s", exc.key)
        raise Busy("Resource is busy, please retry") from exc


@asynccontextmanager
async def unit_of_work(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    try:
        async with session_factory() as session, session.begin():
            yield session
    except IntegrityError as exc:
        raise Conflict("Conflicting write") from exc
    except DataError as exc:
        raise InvalidState("Value rejected by the data store") from exc
    except (OperationalError, InterfaceError) as exc:
        logger.warning("Store failure during transaction: %s", exc)
        raise StoreUnavailable("Data store unavailable, please retry") from exc


async def read_with_retry(
    session_factory: async_sessionmaker[AsyncSession],
    fn: Callable[[AsyncSession], Awaitable[T]],
    attempts: int = 3,
) -> T:
    for attempt in range(1, attempts + 1):
        try:
            async with session_factory() as session:
                return await fn(session)
        except OperationalError as exc:
            logger.warning(
                "Transient store error on read (attempt %d/%d): %s",
                attempt, attempts, exc,
            )
            if attempt == attempts:
                raise StoreUnavailable("Data store unavailable, please retry") from exc
            await asyncio.sleep(0.05 * attempt)
    raise StoreUnavailable("Data store unavailable, please retry")
