import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from recordguard_data_model.conflict_descriptor import ConflictDescriptor
from recordguard_data_model.versioned_record import utc_now
from recordguard_exception_model.exception import ConflictNotFoundError

logger = logging.getLogger(__name__)


class ConflictRegistry:
    """
    Pending conflicts awaiting a decision, keyed by conflict id.

    A conflict stays here until a strategy resolves it, the caller discards it, or it
    is older than `max_age`. The manual strategy leaves it pending so the user can
    pick another one later.

    Args:
        max_age: Conflicts detected longer ago than this are dropped; None keeps them
        clock: Returns the current UTC time
    """
    def __init__(self, max_age: Optional[timedelta] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self._conflicts: Dict[str, ConflictDescriptor] = {}
        self._max_age = max_age
        self._clock = clock or utc_now

    def register(self, descriptor: ConflictDescriptor) -> str:
        self.expire()
        self._conflicts[descriptor.conflict_id] = descriptor
        logger.info(
            f"Registered conflict {descriptor.conflict_id} on {descriptor.table}:{descriptor.record_id}"
        )
        return descriptor.conflict_id

    def get(self, conflict_id: str) -> ConflictDescriptor:
        self.expire()
        descriptor = self._conflicts.get(conflict_id)
        if descriptor is None:
            raise ConflictNotFoundError("Conflict not found", conflict_id)
        return descriptor

    def discard(self, conflict_id: str) -> Optional[ConflictDescriptor]:
        return self._conflicts.pop(conflict_id, None)

    def expire(self) -> int:
        """Drop conflicts older than max_age. Returns how many were dropped."""
        if self._max_age is None:
            return 0
        cutoff = self._clock() - self._max_age
        stale = [cid for cid, c in self._conflicts.items() if c.timestamp < cutoff]
        for conflict_id in stale:
            del self._conflicts[conflict_id]
        if stale:
            logger.info(f"Expired {len(stale)} conflict(s) detected before {cutoff.isoformat()}")
        return len(stale)

    def pending(self, table: Optional[str] = None) -> List[ConflictDescriptor]:
        self.expire()
        return [
            c for c in sorted(self._conflicts.values(), key=lambda c: c.timestamp)
            if not c.resolved and (table is None or c.table == table)
        ]

    def __len__(self):
        return len(self._conflicts)

    def clear(self) -> None:
        self._conflicts.clear()
