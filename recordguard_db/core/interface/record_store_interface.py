from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from recordguard_data_model.versioned_record import VersionedRecord


class RecordStore(ABC):
    """
    Abstract adapter contract for the backing store of versioned records.

    The concurrency core depends only on these operations; any backend able to
    perform a conditional row update ("update iff version equals X") atomically can
    implement it. Every method is a coroutine, so every call is a suspension point
    where other operations may interleave.

    Implementations own the version counter: a successful conditional update must
    leave the stored version at exactly `version + 1`.

    Failures that are expected to go away on their own (timeouts, connection resets,
    temporary unavailability) should be raised as TransientStoreError.
    """
    @abstractmethod
    async def fetch_by_id(self, table: str, record_id: str) -> Optional[VersionedRecord]:
        """
        Read a record by id.

        Returns:
            The stored record, or None when no record has that id
        """
        ...

    @abstractmethod
    async def conditional_update(self, table: str, record_id: str, version: int,
                                 patch: Dict[str, Any]) -> Optional[VersionedRecord]:
        """
        Apply `patch` iff the stored version equals `version`, incrementing the version.

        Args:
            table: Table name
            record_id: ID of the record to update
            version: Version the stored record must still have
            patch: Business fields to overwrite, plus 'updated_at'

        Returns:
            The updated record, or None when zero rows were affected
        """
        ...

    @abstractmethod
    async def insert(self, table: str, record: VersionedRecord) -> VersionedRecord:
        """
        Insert a new record.

        Raises:
            DuplicateRecordError: If a unique constraint of the store is violated
        """
        ...

    @abstractmethod
    async def conditional_delete(self, table: str, record_id: str, version: int) -> bool:
        """
        Delete a record iff its stored version equals `version`.

        Returns:
            True when a row was deleted, False when zero rows were affected
        """
        ...

    @abstractmethod
    async def find_by_unique_fields(self, table: str, fields: Dict[str, Any]) -> List[VersionedRecord]:
        """Return the records matching ANY of the given field values."""
        ...

    async def close(self) -> None:
        return None
