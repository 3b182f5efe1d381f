"""
SQLite-backed record store with WAL mode, store-side version increments and optional
unique constraints per table.

All business tables share one physical table; the business columns are kept as a
JSON document:

    records
    ┌─────────────┬────┬─────────┬────────────┬────────────┬──────────────┐
    │ table_name  │ id │ version │ created_at │ updated_at │ data (JSON)  │
    └─────────────┴────┴─────────┴────────────┴────────────┴──────────────┘
      PRIMARY KEY (table_name, id)

CONDITIONAL UPDATE:
───────────────────
1. [READ]   SELECT data FROM records WHERE table_name = ? AND id = ? AND version = ?
            → no row: zero rows affected, return None
2. [MERGE]  Overlay the patch on the stored document
3. [CAS]    UPDATE records SET data = ?, version = version + 1, updated_at = ?
            WHERE table_name = ? AND id = ? AND version = ?
            → rowcount 0: someone else won, return None
4. [READ]   Return the row at the new version

Both statements are guarded by the same version, so a merge computed from a stale
document can never be written.

UNIQUE CONSTRAINTS:
───────────────────
unique_fields={"customers": ["email"]} creates one partial expression index per field:

    CREATE UNIQUE INDEX ux_customers_email
        ON records(json_extract(data, '$.email')) WHERE table_name = 'customers'

These are the real guard against duplicates; the service's pre-check is advisory.
sqlite3.IntegrityError on insert is reported as DuplicateRecordError.

THREADING:
──────────
Every call runs in a worker thread through asyncio.to_thread and each worker thread
keeps its own connection.
"""
import asyncio
import json
import logging
import re
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from recordguard_data_model.versioned_record import VersionedRecord, format_timestamp, parse_timestamp
from recordguard_db.core.interface.record_store_interface import RecordStore
from recordguard_exception_model.exception import (
    DuplicateRecordError, InvalidDataException, TransientStoreError
)

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise InvalidDataException(f"Invalid identifier: {name!r}")
    return name


def _to_json(fields: Mapping[str, Any]) -> str:
    return json.dumps(fields, default=str, sort_keys=True)


class SQLiteRecordStore(RecordStore):
    """
    RecordStore over a local SQLite database.
    """
    def __init__(self, db_path: Union[str, Path],
                 unique_fields: Optional[Mapping[str, List[str]]] = None,
                 busy_timeout: float = 5.0):
        self._db_path = str(db_path)
        self._busy_timeout = busy_timeout
        self._unique_fields = {
            _check_identifier(table): [_check_identifier(f) for f in fields]
            for table, fields in (unique_fields or {}).items()
        }
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._initialize()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a thread-local connection with proper settings"""
        if not hasattr(self._local, 'conn'):
            conn = sqlite3.connect(self._db_path, timeout=self._busy_timeout, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return self._local.conn

    def _initialize(self):
        conn = self._get_connection()
        with conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS records (
                    table_name TEXT NOT NULL,
                    id TEXT NOT NULL,
                    version INTEGER NOT NULL CHECK (version >= 1),
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    data TEXT NOT NULL,
                    PRIMARY KEY (table_name, id)
                )
            """)
            for table, fields in self._unique_fields.items():
                for field_name in fields:
                    conn.execute(
                        f"CREATE UNIQUE INDEX IF NOT EXISTS ux_{table}_{field_name} "
                        f"ON records(json_extract(data, '$.{field_name}')) "
                        f"WHERE table_name = '{table}'"
                    )

    @staticmethod
    def _row_to_record(row) -> VersionedRecord:
        record_id, version, created_at, updated_at, data = row
        return VersionedRecord(
            id=record_id,
            version=version,
            created_at=created_at,
            updated_at=updated_at,
            fields=json.loads(data)
        )

    def _select(self, conn, table: str, record_id: str) -> Optional[VersionedRecord]:
        cur = conn.execute(
            "SELECT id, version, created_at, updated_at, data FROM records WHERE table_name = ? AND id = ?",
            (table, record_id)
        )
        row = cur.fetchone()
        return self._row_to_record(row) if row else None

    # ------------------------
    # Blocking implementations, run in worker threads
    # ------------------------

    def _fetch_by_id_sync(self, table: str, record_id: str) -> Optional[VersionedRecord]:
        return self._select(self._get_connection(), table, record_id)

    def _conditional_update_sync(self, table: str, record_id: str, version: int,
                                 patch: Dict[str, Any]) -> Optional[VersionedRecord]:
        conn = self._get_connection()
        patch = dict(patch)
        updated_at = parse_timestamp(patch.pop("updated_at", None))
        for name in ("id", "version", "created_at"):
            patch.pop(name, None)

        with conn:
            row = conn.execute(
                "SELECT data, updated_at FROM records WHERE table_name = ? AND id = ? AND version = ?",
                (table, record_id, version)
            ).fetchone()
            if row is None:
                return None

            document = json.loads(row[0])
            document.update(patch)
            stamp = format_timestamp(updated_at) if updated_at is not None else row[1]
            try:
                cur = conn.execute(
                    "UPDATE records SET data = ?, version = version + 1, updated_at = ? "
                    "WHERE table_name = ? AND id = ? AND version = ?",
                    (_to_json(document), stamp, table, record_id, version)
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateRecordError(
                    f"Unique constraint violated on update: {e}", table, self._unique_fields.get(table, [])
                )
            if cur.rowcount == 0:
                return None
        return self._select(conn, table, record_id)

    def _insert_sync(self, table: str, record: VersionedRecord) -> VersionedRecord:
        conn = self._get_connection()
        try:
            with conn:
                conn.execute(
                    "INSERT INTO records(table_name, id, version, created_at, updated_at, data) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (table, record.id, record.version, format_timestamp(record.created_at),
                     format_timestamp(record.updated_at), _to_json(record.fields))
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateRecordError(
                f"Unique constraint violated on insert: {e}", table, self._unique_fields.get(table, ["id"])
            )
        return self._select(conn, table, record.id)

    def _conditional_delete_sync(self, table: str, record_id: str, version: int) -> bool:
        conn = self._get_connection()
        with conn:
            cur = conn.execute(
                "DELETE FROM records WHERE table_name = ? AND id = ? AND version = ?",
                (table, record_id, version)
            )
        return cur.rowcount > 0

    def _find_by_unique_fields_sync(self, table: str, fields: Dict[str, Any]) -> List[VersionedRecord]:
        if not fields:
            return []
        clauses = []
        params: List[Any] = [table]
        for name, value in fields.items():
            clauses.append(f"json_extract(data, '$.{_check_identifier(name)}') = ?")
            params.append(value)
        cur = self._get_connection().execute(
            "SELECT id, version, created_at, updated_at, data FROM records "
            f"WHERE table_name = ? AND ({' OR '.join(clauses)})",
            params
        )
        return [self._row_to_record(row) for row in cur.fetchall()]

    # ------------------------
    # RecordStore
    # ------------------------

    async def _run(self, operation: str, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.OperationalError as e:
            # "database is locked" and friends clear up on their own
            logger.warning(f"SQLite {operation} failed: {e}")
            raise TransientStoreError("SQLite operation failed", operation, e)

    async def fetch_by_id(self, table: str, record_id: str) -> Optional[VersionedRecord]:
        return await self._run("fetch_by_id", self._fetch_by_id_sync, table, record_id)

    async def conditional_update(self, table: str, record_id: str, version: int,
                                 patch: Dict[str, Any]) -> Optional[VersionedRecord]:
        return await self._run("conditional_update", self._conditional_update_sync, table, record_id, version, patch)

    async def insert(self, table: str, record: VersionedRecord) -> VersionedRecord:
        return await self._run("insert", self._insert_sync, table, record)

    async def conditional_delete(self, table: str, record_id: str, version: int) -> bool:
        return await self._run("conditional_delete", self._conditional_delete_sync, table, record_id, version)

    async def find_by_unique_fields(self, table: str, fields: Dict[str, Any]) -> List[VersionedRecord]:
        return await self._run("find_by_unique_fields", self._find_by_unique_fields_sync, table, dict(fields))

    async def close(self) -> None:
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        if hasattr(self._local, 'conn'):
            del self._local.conn
