from dataclasses import dataclass, field
from typing import Any, Dict, Mapping

from recordguard_exception_model.exception import InvalidDataException


def make_lock_key(table: str, record_id: str) -> str:
    return f"{table}:{record_id}"


@dataclass
class BatchOperation:
    """One item of a batch update: an optimistic update of a single record."""
    table: str
    record_id: str
    updates: Dict[str, Any] = field(default_factory=dict)
    expected_version: int = 1

    @property
    def lock_key(self) -> str:
        return make_lock_key(self.table, self.record_id)

    @staticmethod
    def from_mapping(data: Mapping[str, Any]) -> "BatchOperation":
        # 'id' is accepted as an alias of 'record_id'
        record_id = data.get("record_id", data.get("id"))
        if record_id is None:
            raise InvalidDataException("Batch operation is missing 'record_id'")
        try:
            return BatchOperation(
                table=data["table"],
                record_id=record_id,
                updates=dict(data.get("updates") or {}),
                expected_version=data["expected_version"]
            )
        except KeyError as e:
            raise InvalidDataException(f"Batch operation is missing {e}", cause=e)
