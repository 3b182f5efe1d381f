from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from recordguard_exception_model.exception import InvalidDataException

BOOKKEEPING_FIELDS = ("id", "version", "created_at", "updated_at")

Timestamp = Union[datetime, str]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Optional[Timestamp]) -> Optional[datetime]:
    """
    Normalise a timestamp into a tz-aware UTC datetime.

    Accepts datetimes (naive values are taken as UTC) and ISO-8601 strings,
    including the trailing 'Z' form returned by PostgREST.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise InvalidDataException(f"Invalid timestamp: {value!r}", cause=e)
    else:
        raise InvalidDataException(f"Unsupported timestamp type: {type(value).__name__}")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


@dataclass
class VersionedRecord:
    """
    The shared contract of every mutable business record (customer, lead, deal,
    proposal, invoice).

    The bookkeeping attributes are owned by the service and the store; the business
    columns live in `fields`. A record's version starts at 1 and grows by exactly one
    on every successful mutation, always incremented by the store.

    Attributes:
        id (str): Opaque unique identifier, immutable after creation.
        version (int): Positive optimistic-lock version.
        created_at (datetime): Creation time (UTC), set once.
        updated_at (datetime): Last mutation time (UTC), set by the service.
        fields (Dict[str, Any]): Business columns.
    """
    id: str
    version: int
    created_at: datetime
    updated_at: datetime
    fields: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.id, str) or not self.id:
            raise InvalidDataException("VersionedRecord must have a non-empty string id")

        # bool is an int subclass, reject it explicitly
        if isinstance(self.version, bool) or not isinstance(self.version, int) or self.version < 1:
            raise InvalidDataException(
                f"VersionedRecord version must be a positive integer, got {self.version!r}",
                record_id=self.id
            )

        self.created_at = parse_timestamp(self.created_at)
        self.updated_at = parse_timestamp(self.updated_at)
        if self.created_at is None or self.updated_at is None:
            raise InvalidDataException("VersionedRecord requires created_at and updated_at", record_id=self.id)

        clashing = [name for name in BOOKKEEPING_FIELDS if name in self.fields]
        if clashing:
            raise InvalidDataException(
                f"Business fields may not use bookkeeping names: {', '.join(clashing)}",
                record_id=self.id
            )

    @staticmethod
    def create(record_id: str, fields: Dict[str, Any], now: Optional[datetime] = None) -> "VersionedRecord":
        """Build the first version of a new record."""
        timestamp = now or utc_now()
        return VersionedRecord(
            id=record_id,
            version=1,
            created_at=timestamp,
            updated_at=timestamp,
            fields=dict(fields)
        )

    def with_changes(self, changes: Dict[str, Any]) -> "VersionedRecord":
        """Return a copy whose business fields are overwritten by `changes`, bookkeeping untouched."""
        merged = dict(self.fields)
        merged.update({k: v for k, v in changes.items() if k not in BOOKKEEPING_FIELDS})
        return VersionedRecord(
            id=self.id,
            version=self.version,
            created_at=self.created_at,
            updated_at=self.updated_at,
            fields=merged
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "id": self.id,
            "version": self.version,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }
        result.update(self.fields)
        return result

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "VersionedRecord":
        missing = [name for name in BOOKKEEPING_FIELDS if name not in data]
        if missing:
            raise InvalidDataException(f"Record is missing bookkeeping fields: {', '.join(missing)}")

        return VersionedRecord(
            id=data["id"],
            version=data["version"],
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            fields={k: v for k, v in data.items() if k not in BOOKKEEPING_FIELDS}
        )

    def __getitem__(self, item):
        return self.to_dict()[item]
