"""Shared plumbing for ledger services: per-match locks and unit-of-work retries."""

import asyncio
import logging
from collections import Counter
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from goallive.config import Settings, get_settings
from goallive.exceptions import ConcurrentUpdateError, LedgerTimeoutError
from goallive.storage.base import LedgerStore, LedgerUnit

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MatchLocks:
    """
    One FIFO asyncio.Lock per match, so a match's events apply in arrival order.

    An entry lives only while some caller holds or waits on it.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: Counter[str] = Counter()

    @asynccontextmanager
    async def hold(self, match_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(match_id, asyncio.Lock())
        self._holders[match_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._holders[match_id] -= 1
            if not self._holders[match_id]:
                del self._holders[match_id]
                del self._locks[match_id]

    def __len__(self) -> int:
        return len(self._locks)


class LedgerService:
    """Base class wiring a store, settings, and the shared match locks."""

    def __init__(
        self,
        store: LedgerStore,
        settings: Settings | None = None,
        locks: MatchLocks | None = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.locks = locks if locks is not None else MatchLocks()

    async def _transact(
        self,
        work: Callable[[LedgerUnit], Awaitable[T]],
        description: str,
    ) -> T:
        """
        Run work inside one unit of work.

        Retries the whole unit on ConcurrentUpdateError and bounds every
        attempt by the configured operation timeout.
        """
        config = self.settings.ledger
        attempt = 0

        while True:
            attempt += 1
            try:
                return await asyncio.wait_for(
                    self._run_unit(work),
                    timeout=config.operation_timeout_seconds,
                )
            except ConcurrentUpdateError as e:
                if attempt > config.max_conflict_retries:
                    logger.error(f"{description}: giving up after {attempt} conflicts: {e}")
                    raise
                wait_time = 0.01 * 2 ** (attempt - 1)
                logger.warning(f"{description}: write conflict, retrying in {wait_time:.2f}s...")
                await asyncio.sleep(wait_time)
            except asyncio.TimeoutError as e:
                raise LedgerTimeoutError(
                    f"{description} timed out after {config.operation_timeout_seconds}s"
                ) from e

    async def _run_unit(self, work: Callable[[LedgerUnit], Awaitable[T]]) -> T:
        async with self.store.unit_of_work() as unit:
            return await work(unit)
