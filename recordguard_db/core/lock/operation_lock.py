"""
In-process advisory lock keyed by "<table>:<id>".

    caller A                          caller B
       |                                 |
  with_lock("customers:c1")              |
       |-- key free -> add key           |
       |-- await operation() ........ with_lock("customers:c1")
       |       (suspended on I/O)        |-- key held -> LockHeldError (no queueing)
       |-- finally: remove key           |
       v                                 v

The lock protects against double submission inside one process (duplicate clicks,
re-entrant callbacks). It is not a distributed lock: races between processes are
caught by the version check of the conditional write.

The membership check and the insertion happen in the same synchronous turn of the
event loop, so no other coroutine can slip in between them.
"""
import logging
from typing import Awaitable, Callable, Iterable, List, Optional, Set, TypeVar

from recordguard_db.core.metrics.concurrency_metrics import ConcurrencyMetrics
from recordguard_exception_model.exception import LockHeldError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationLock:
    def __init__(self, metrics: Optional[ConcurrencyMetrics] = None):
        self._held: Set[str] = set()
        self._metrics = metrics

    def is_locked(self, key: str) -> bool:
        return key in self._held

    def held_keys(self) -> List[str]:
        return sorted(self._held)

    def _contended(self, key: str) -> LockHeldError:
        if self._metrics is not None:
            self._metrics.record_lock_wait()
        logger.warning(f"Operation on {key} is already in progress")
        return LockHeldError(f"Operation {key} is already in progress", key)

    def acquire(self, key: str) -> None:
        if key in self._held:
            raise self._contended(key)
        self._held.add(key)
        logger.debug(f"Acquired operation lock {key}")

    def release(self, key: str) -> None:
        self._held.discard(key)
        logger.debug(f"Released operation lock {key}")

    def acquire_all(self, keys: Iterable[str]) -> List[str]:
        """
        Acquire several keys in lexicographic order, all or nothing.

        Every key is checked before any is taken, so a held key fails the whole call
        without leaving a partial acquisition behind.

        Returns:
            The de-duplicated keys in the order they were acquired
        """
        ordered = sorted(set(keys))
        for key in ordered:
            if key in self._held:
                raise self._contended(key)
        for key in ordered:
            self.acquire(key)
        return ordered

    def release_all(self, keys: Iterable[str]) -> None:
        for key in keys:
            self.release(key)

    async def with_lock(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        self.acquire(key)
        try:
            return await operation()
        finally:
            self.release(key)

    def reset(self) -> None:
        self._held.clear()
