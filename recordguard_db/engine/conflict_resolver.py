import logging
from enum import Enum
from typing import Any, Dict, Optional, Union

from recordguard_data_model.conflict_descriptor import ConflictDescriptor
from recordguard_data_model.versioned_record import VersionedRecord, parse_timestamp
from recordguard_exception_model.exception import InvalidDataException, ManualResolutionRequired

logger = logging.getLogger(__name__)


class ResolutionStrategy(Enum):
    LOCAL = "local"
    REMOTE = "remote"
    MERGE = "merge"
    MANUAL = "manual"

    @staticmethod
    def parse(value: Union["ResolutionStrategy", str]) -> "ResolutionStrategy":
        if isinstance(value, ResolutionStrategy):
            return value
        try:
            return ResolutionStrategy(str(value).lower())
        except ValueError as e:
            raise InvalidDataException(f"Unknown resolution strategy: {value!r}", cause=e)


def _as_record(remote_data: Union[VersionedRecord, Dict[str, Any], None]) -> VersionedRecord:
    if remote_data is None:
        raise InvalidDataException("Cannot resolve a conflict against a record that no longer exists")
    if isinstance(remote_data, VersionedRecord):
        return remote_data
    return VersionedRecord.from_dict(remote_data)


def _local_is_newer(local_data: Dict[str, Any], remote: VersionedRecord) -> bool:
    local_time = parse_timestamp(local_data.get("updated_at"))
    if local_time is None:
        return False
    return local_time > remote.updated_at


def resolve_conflict(local_data: Dict[str, Any],
                     remote_data: Union[VersionedRecord, Dict[str, Any], None],
                     strategy: Union[ResolutionStrategy, str] = ResolutionStrategy.MANUAL) -> VersionedRecord:
    """
    Produce the final record of a conflict under the chosen strategy.

    local:  the server's bookkeeping (id, version, timestamps) with the local business
            fields overwriting the remote ones ("my edits win").
    remote: the stored record unchanged.
    merge:  'local' when local updated_at is strictly newer than the remote one,
            'remote' otherwise. A timestamp heuristic, not a field-level merge.
    manual: always raises ManualResolutionRequired.
    """
    chosen = ResolutionStrategy.parse(strategy)
    remote = _as_record(remote_data)

    if chosen is ResolutionStrategy.MANUAL:
        descriptor = ConflictDescriptor(
            table="",
            record_id=remote.id,
            local_data=dict(local_data),
            remote_data=remote
        )
        raise ManualResolutionRequired("Manual conflict resolution required", descriptor)

    if chosen is ResolutionStrategy.MERGE:
        chosen = ResolutionStrategy.LOCAL if _local_is_newer(local_data, remote) else ResolutionStrategy.REMOTE
        logger.debug(f"Merge strategy for record {remote.id} picked {chosen.value}")

    if chosen is ResolutionStrategy.LOCAL:
        return remote.with_changes(local_data)
    return remote


def resolve_descriptor(descriptor: ConflictDescriptor,
                       strategy: Union[ResolutionStrategy, str]) -> VersionedRecord:
    """Resolve a ConflictDescriptor, marking it resolved unless the strategy is manual."""
    try:
        resolved = resolve_conflict(descriptor.local_data, descriptor.remote_data, strategy)
    except ManualResolutionRequired as e:
        e.descriptor = descriptor
        raise
    descriptor.mark_resolved()
    return resolved


def differs_from_remote(resolved: VersionedRecord, remote: Optional[VersionedRecord]) -> bool:
    return remote is None or resolved.fields != remote.fields
