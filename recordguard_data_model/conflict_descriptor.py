import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from recordguard_data_model.versioned_record import VersionedRecord, format_timestamp, utc_now


@dataclass
class ConflictDescriptor:
    """
    Transient description of a detected write conflict, never persisted.

    Created the instant a conditional write affects zero rows or a stale expected
    version is observed on the pre-read. Resolved when a local, remote or merge
    strategy produces a final record; the manual strategy never resolves it.

    Attributes:
        table: Table of the conflicting record
        record_id: ID of the conflicting record
        local_data: The caller's partial update plus the version it believed current
        remote_data: The record currently stored, None if it has since been deleted
        timestamp: When the conflict was detected
        resolved: Flips to True once a strategy has been applied
        conflict_id: Handle used to resolve a pending conflict later
    """
    table: str
    record_id: str
    local_data: Dict[str, Any]
    remote_data: Optional[VersionedRecord]
    timestamp: datetime = field(default_factory=utc_now)
    resolved: bool = False
    conflict_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def expected_version(self) -> Optional[int]:
        return self.local_data.get("version")

    @property
    def remote_version(self) -> Optional[int]:
        return self.remote_data.version if self.remote_data is not None else None

    def mark_resolved(self) -> None:
        self.resolved = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conflict_id": self.conflict_id,
            "table": self.table,
            "record_id": self.record_id,
            "local_data": dict(self.local_data),
            "remote_data": self.remote_data.to_dict() if self.remote_data is not None else None,
            "timestamp": format_timestamp(self.timestamp),
            "resolved": self.resolved,
        }
