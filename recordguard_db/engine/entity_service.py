import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from recordguard_data_model.conflict_descriptor import ConflictDescriptor
from recordguard_data_model.versioned_record import VersionedRecord
from recordguard_db.engine.concurrent_db_service import ConcurrentDbService
from recordguard_db.engine.conflict_registry import ConflictRegistry
from recordguard_db.engine.conflict_resolver import ResolutionStrategy, differs_from_remote, resolve_descriptor
from recordguard_exception_model.exception import ConflictException, ConflictNotFoundError, InvalidDataException

logger = logging.getLogger(__name__)

# entity table -> fields that must be unique on create
ENTITY_UNIQUE_FIELDS: Dict[str, List[str]] = {
    "customers": ["email"],
    "leads": ["email"],
    "deals": [],
    "proposals": [],
    "invoices": [],
}


class EntityService:
    """
    Per-entity facade over ConcurrentDbService for the business tables.

    Keeps a view of the last record seen per entity (never a source of truth, only
    what the caller last read or wrote) and a registry of pending conflicts. Conflicts
    raised by update_safely are registered and then re-raised, so a caller can never
    ignore one by accident.
    """
    def __init__(self, db_service: ConcurrentDbService,
                 registry: Optional[ConflictRegistry] = None,
                 unique_fields: Optional[Mapping[str, List[str]]] = None):
        self._db = db_service
        self._registry = registry or ConflictRegistry()
        self._unique_fields = dict(unique_fields if unique_fields is not None else ENTITY_UNIQUE_FIELDS)
        self._known: Dict[str, Dict[str, VersionedRecord]] = {table: {} for table in self._unique_fields}

    @property
    def registry(self) -> ConflictRegistry:
        return self._registry

    @property
    def entities(self) -> List[str]:
        return list(self._unique_fields)

    def _check_entity(self, table: str) -> None:
        if table not in self._unique_fields:
            raise InvalidDataException(f"Unknown entity type: {table}", table=table)

    def _remember(self, record: VersionedRecord, table: str) -> VersionedRecord:
        self._known[table][record.id] = record
        return record

    def is_operation_locked(self, table: str, record_id: str) -> bool:
        return self._db.is_locked(table, record_id)

    def get_entity_version(self, table: str, record_id: str) -> Optional[int]:
        self._check_entity(table)
        record = self._known[table].get(record_id)
        return record.version if record is not None else None

    def get_known(self, table: str) -> List[VersionedRecord]:
        self._check_entity(table)
        return list(self._known[table].values())

    async def update_safely(self, table: str, record_id: str, updates: Mapping[str, Any],
                            expected_version: int) -> VersionedRecord:
        self._check_entity(table)
        try:
            updated = await self._db.update_with_optimistic_locking(table, record_id, updates, expected_version)
        except ConflictException as e:
            if e.descriptor is not None:
                self._registry.register(e.descriptor)
            raise
        return self._remember(updated, table)

    async def create_safely(self, table: str, data: Mapping[str, Any]) -> VersionedRecord:
        self._check_entity(table)
        created = await self._db.create_safely(table, data, self._unique_fields[table])
        return self._remember(created, table)

    async def delete_safely(self, table: str, record_id: str, expected_version: int) -> None:
        self._check_entity(table)
        try:
            await self._db.delete_with_version(table, record_id, expected_version)
        except ConflictException as e:
            if e.descriptor is not None:
                self._registry.register(e.descriptor)
            raise
        self._known[table].pop(record_id, None)

    async def refresh_entity(self, table: str, record_id: str) -> VersionedRecord:
        self._check_entity(table)
        record = await self._db.get_record(table, record_id)
        return self._remember(record, table)

    def get_pending_conflicts(self, table: Optional[str] = None) -> List[ConflictDescriptor]:
        return self._registry.pending(table)

    def discard_conflict(self, conflict_id: str) -> ConflictDescriptor:
        """Forget a pending conflict the caller has given up on."""
        descriptor = self._registry.discard(conflict_id)
        if descriptor is None:
            raise ConflictNotFoundError("Conflict not found", conflict_id)
        logger.info(f"Discarded conflict {conflict_id} on {descriptor.table}:{descriptor.record_id}")
        return descriptor

    def apply_remote_change(self, table: str, event_type: str,
                            record: Union[VersionedRecord, Mapping[str, Any]]) -> None:
        """
        Fold a change made elsewhere (a database change feed) into the known records.

        INSERT and UPDATE replace the known copy unless it is already at a newer
        version; DELETE forgets it and only needs the record id.
        """
        self._check_entity(table)
        event = event_type.upper()
        if event == "DELETE":
            record_id = record.id if isinstance(record, VersionedRecord) else record.get("id")
            self._known[table].pop(record_id, None)
            logger.debug(f"Remote delete of {table}:{record_id}")
            return
        if event not in ("INSERT", "UPDATE"):
            raise InvalidDataException(f"Unknown change event: {event_type}", table=table)

        if not isinstance(record, VersionedRecord):
            record = VersionedRecord.from_dict(dict(record))
        known = self._known[table].get(record.id)
        if known is not None and known.version > record.version:
            logger.debug(f"Ignoring stale {event} of {table}:{record.id} at version {record.version}")
            return
        self._remember(record, table)

    async def resolve_conflict(self, conflict_id: str,
                               strategy: Union[ResolutionStrategy, str],
                               persist: bool = False) -> VersionedRecord:
        """
        Resolve a pending conflict and forget it.

        With persist=True and a result that differs from the stored record, the
        resolved business fields are written back through a fresh optimistic update
        against the remote version. That write may itself conflict, in which case the
        new conflict is registered and raised.

        Raises:
            ConflictNotFoundError: Unknown or already resolved conflict id
            ManualResolutionRequired: The manual strategy; the conflict stays pending
        """
        descriptor = self._registry.get(conflict_id)
        resolved = resolve_descriptor(descriptor, strategy)
        self._registry.discard(conflict_id)
        logger.info(f"Resolved conflict {conflict_id} with strategy {ResolutionStrategy.parse(strategy).value}")

        remote = descriptor.remote_data
        if persist and differs_from_remote(resolved, remote):
            return await self.update_safely(descriptor.table, descriptor.record_id, resolved.fields, remote.version)
        return self._remember(resolved, descriptor.table)
