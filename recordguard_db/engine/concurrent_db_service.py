"""
Optimistic-Concurrency Data Access
==================================

Mutation State Machine:
-----------------------

    +---------+   lock    +---------------+  fetch   +---------+  version   +---------+
    | PENDING |---------->| LOCK_ACQUIRED |--------->| READING |---------->| WRITING |
    +---------+           +---------------+          +---------+  matches   +---------+
         ^                       |                        |                    |
         |                  key held                 mismatch /           zero rows /
         |                       |                   not found            row updated
         |                       v                        |                    |
         |               LockHeldError                    v                    v
         |                                       CONFLICT | NOT_FOUND   CONFLICT | SUCCESS
         |
         +------ TRANSIENT_FAILURE (any other error, until the retry budget is spent)

Conflicts are terminal for the call: the caller resolves them (resolve_conflict) or
starts a fresh read-modify-write cycle with the new expected version.

Write Race Between Two Processes:
---------------------------------

             Process A                              Process B
                 |                                      |
        fetch c1 (version 3)                   fetch c1 (version 3)
                 |                                      |
     UPDATE ... WHERE version = 3                       |
        -> 1 row, version 4                             |
                 |                          UPDATE ... WHERE version = 3
                 |                             -> 0 rows -> ConflictException
                 v                                      v
              SUCCESS                               CONFLICT

The conditional write is the only cross-process ordering mechanism; the operation
lock only prevents the same process from racing with itself.

Batch Updates:
--------------
Lock keys are de-duplicated and sorted before acquisition so that two batches touching
overlapping records always acquire in the same order. Items then run one after the
other without retries. A batch is NOT a transaction: when item N fails, items
1..N-1 stay committed and the error propagates to the caller.
"""
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from recordguard_data_model.batch_operation import BatchOperation, make_lock_key
from recordguard_data_model.conflict_descriptor import ConflictDescriptor
from recordguard_data_model.versioned_record import VersionedRecord, utc_now
from recordguard_db.core.concurrency_context import ConcurrencyContext
from recordguard_db.core.interface.record_store_interface import RecordStore
from recordguard_db.engine.conflict_resolver import ResolutionStrategy, resolve_conflict
from recordguard_db.engine.retry_policy import DEFAULT_RETRY_POLICY, NO_RETRY, RetryPolicy, with_retry
from recordguard_exception_model.exception import (
    ConflictException, DuplicateRecordError, InvalidDataException, RecordNotFoundError
)

logger = logging.getLogger(__name__)

IMMUTABLE_UPDATE_FIELDS = ("id", "version", "created_at")

CONFLICT_MESSAGE = "Record was modified by another user"


class ConcurrentDbService:
    """
    Mediates every mutation of shared versioned records.

    Guarantees at-most-one-writer-wins through conditional writes on (id, version),
    serializes operations on the same record inside the process with the context's
    operation lock, and retries transient failures with exponential backoff.

    Args:
        store: Backing store adapter
        context: Shared lock set and metrics; a private one is created when omitted
        retry_policy: Default retry policy of the retried operations
        clock: Returns the current UTC time, replaceable in tests
    """
    def __init__(self,
                 store: RecordStore,
                 context: Optional[ConcurrencyContext] = None,
                 retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
                 clock: Optional[Callable[[], datetime]] = None):
        self._store = store
        self._context = context or ConcurrencyContext()
        self._retry_policy = retry_policy
        self._clock = clock or utc_now

    @property
    def context(self) -> ConcurrencyContext:
        return self._context

    @property
    def store(self) -> RecordStore:
        return self._store

    def is_locked(self, table: str, record_id: str) -> bool:
        return self._context.lock.is_locked(make_lock_key(table, record_id))

    async def _retry(self, operation, retry_policy: Optional[RetryPolicy]):
        return await with_retry(
            operation,
            retry_policy or self._retry_policy,
            on_retry=lambda attempt, error: self._context.metrics.record_retry()
        )

    def _conflict(self, table: str, record_id: str, local_data: Dict[str, Any],
                  remote: Optional[VersionedRecord]) -> ConflictException:
        self._context.metrics.record_conflict()
        descriptor = ConflictDescriptor(
            table=table,
            record_id=record_id,
            local_data=local_data,
            remote_data=remote,
            timestamp=self._clock()
        )
        logger.warning(
            f"Version conflict on {table}:{record_id}: expected {local_data.get('version')}, "
            f"stored {descriptor.remote_version}"
        )
        return ConflictException(CONFLICT_MESSAGE, descriptor)

    # ------------------------
    # READ
    # ------------------------

    async def _fetch_existing(self, table: str, record_id: str) -> VersionedRecord:
        record = await self._store.fetch_by_id(table, record_id)
        if record is None:
            raise RecordNotFoundError("Record not found", record_id, table)
        return record

    async def get_record(self, table: str, record_id: str,
                         retry_policy: Optional[RetryPolicy] = None) -> VersionedRecord:
        return await self._retry(lambda: self._fetch_existing(table, record_id), retry_policy)

    # ------------------------
    # UPDATE
    # ------------------------

    @staticmethod
    def _validate_updates(table: str, record_id: str, updates: Mapping[str, Any]) -> None:
        forbidden = [name for name in IMMUTABLE_UPDATE_FIELDS if name in updates]
        if forbidden:
            raise InvalidDataException(
                f"Updates may not set bookkeeping fields: {', '.join(forbidden)}",
                table=table, record_id=record_id
            )

    async def _update_unlocked(self, table: str, record_id: str, updates: Dict[str, Any],
                               expected_version: int) -> VersionedRecord:
        """One attempt of an optimistic update; the caller holds the record's lock."""
        local_data = {**updates, "version": expected_version}

        current = await self._fetch_existing(table, record_id)
        if current.version != expected_version:
            raise self._conflict(table, record_id, local_data, current)

        patch = {**updates, "updated_at": self._clock()}
        updated = await self._store.conditional_update(table, record_id, expected_version, patch)
        if updated is None:
            # the record changed between our read and our write
            raise self._conflict(table, record_id, local_data, current)

        logger.info(f"Updated {table}:{record_id} to version {updated.version}")
        return updated

    async def update_with_optimistic_locking(self, table: str, record_id: str,
                                             updates: Mapping[str, Any], expected_version: int,
                                             retry_policy: Optional[RetryPolicy] = None) -> VersionedRecord:
        """
        Update a record iff it is still at `expected_version`.

        Args:
            table: Table name
            record_id: ID of the record
            updates: Partial update of business fields
            expected_version: Version the caller last read
            retry_policy: Overrides the service's default retry policy

        Returns:
            The updated record, at version expected_version + 1

        Raises:
            ConflictException: Stale expected version, or a concurrent write won the race
            RecordNotFoundError: No record with that id
            LockHeldError: Another operation on the same record is in progress
            InvalidDataException: The updates touch id, version or created_at
        """
        updates = dict(updates)
        self._validate_updates(table, record_id, updates)
        self._context.metrics.record_operation()
        key = make_lock_key(table, record_id)

        async def attempt():
            return await self._context.lock.with_lock(
                key, lambda: self._update_unlocked(table, record_id, updates, expected_version)
            )

        return await self._retry(attempt, retry_policy)

    # ------------------------
    # CREATE
    # ------------------------

    async def create_safely(self, table: str, data: Mapping[str, Any],
                            unique_fields: Optional[Sequence[str]] = None,
                            retry_policy: Optional[RetryPolicy] = None) -> VersionedRecord:
        """
        Insert a new record at version 1, refusing duplicates of the unique fields.

        The pre-check is advisory: two concurrent creates can both pass it, so the
        store's unique constraint is the real guard. Its violation is reported as
        DuplicateRecordError as well.

        Raises:
            DuplicateRecordError: A record with one of the unique values exists
            InvalidDataException: A unique field is missing from `data`
        """
        data = dict(data)
        unique_fields = list(unique_fields or [])
        missing = [name for name in unique_fields if name not in data]
        if missing:
            raise InvalidDataException(f"Unique fields missing from data: {', '.join(missing)}", table=table)
        unique_values = {name: data[name] for name in unique_fields}
        self._context.metrics.record_operation()

        record_id = str(data.pop("id", None) or uuid.uuid4())
        fields = {k: v for k, v in data.items() if k not in ("version", "created_at", "updated_at")}

        async def attempt():
            if unique_fields:
                existing = await self._store.find_by_unique_fields(table, unique_values)
                if existing:
                    raise DuplicateRecordError(
                        f"Record with duplicate {', '.join(unique_fields)} already exists",
                        table, unique_fields
                    )
            record = VersionedRecord.create(record_id, fields, now=self._clock())
            created = await self._store.insert(table, record)
            logger.info(f"Created {table}:{created.id}")
            return created

        return await self._retry(attempt, retry_policy)

    # ------------------------
    # DELETE
    # ------------------------

    async def _delete_unlocked(self, table: str, record_id: str, expected_version: int) -> None:
        deleted = await self._store.conditional_delete(table, record_id, expected_version)
        if deleted:
            logger.info(f"Deleted {table}:{record_id} at version {expected_version}")
            return

        remote = await self._store.fetch_by_id(table, record_id)
        raise self._conflict(table, record_id, {"version": expected_version}, remote)

    async def delete_with_version(self, table: str, record_id: str, expected_version: int) -> None:
        """
        Delete a record iff it is still at `expected_version`.

        Runs exactly once: a delete whose response was lost would report zero rows on
        a retry and be misread as a conflict.

        Raises:
            ConflictException: The record was modified or deleted by someone else;
                remote_data is the current record, or None when it is gone
            LockHeldError: Another operation on the same record is in progress
        """
        self._context.metrics.record_operation()
        key = make_lock_key(table, record_id)
        await self._context.lock.with_lock(
            key, lambda: self._delete_unlocked(table, record_id, expected_version)
        )

    # ------------------------
    # BATCH
    # ------------------------

    async def batch_update(self,
                           operations: Iterable[Union[BatchOperation, Mapping[str, Any]]]) -> List[VersionedRecord]:
        """
        Apply several optimistic updates one after the other.

        NOT a transaction. Items run sequentially without retries; the first failure
        propagates and leaves the earlier items committed.

        All lock keys are acquired up front in sorted order, or none when any is
        already held.

        Returns:
            The updated records, in input order

        Raises:
            LockHeldError: One of the records is locked; nothing was executed
            ConflictException, RecordNotFoundError, TransientStoreError: From the
                failing item
        """
        batch = [op if isinstance(op, BatchOperation) else BatchOperation.from_mapping(op) for op in operations]
        for op in batch:
            self._validate_updates(op.table, op.record_id, op.updates)

        lock = self._context.lock
        keys = lock.acquire_all(op.lock_key for op in batch)
        logger.debug(f"Batch of {len(batch)} operations acquired locks {keys}")
        try:
            results: List[VersionedRecord] = []
            for index, op in enumerate(batch):
                self._context.metrics.record_operation()
                try:
                    result = await with_retry(
                        lambda: self._update_unlocked(op.table, op.record_id, dict(op.updates),
                                                      op.expected_version),
                        NO_RETRY
                    )
                except Exception as e:
                    logger.warning(
                        f"Batch stopped at item {index} ({op.lock_key}); "
                        f"{index} earlier item(s) stay committed: {e}"
                    )
                    raise
                results.append(result)
            return results
        finally:
            lock.release_all(keys)

    # ------------------------
    # CONFLICT RESOLUTION
    # ------------------------

    @staticmethod
    def resolve_conflict(local_data: Dict[str, Any],
                         remote_data: Union[VersionedRecord, Dict[str, Any]],
                         strategy: Union[ResolutionStrategy, str] = ResolutionStrategy.MANUAL) -> VersionedRecord:
        return resolve_conflict(local_data, remote_data, strategy)
