"""
RecordStore speaking the PostgREST dialect over HTTP (Supabase and friends).

    fetch_by_id           GET    /{table}?id=eq.{id}&select=*
    conditional_update    PATCH  /{table}?id=eq.{id}&version=eq.{version}
                                 Prefer: return=representation
                                 → [] means zero rows affected
    insert                POST   /{table}            Prefer: return=representation
    conditional_delete    DELETE /{table}?id=eq.{id}&version=eq.{version}
                                 Prefer: return=representation
    find_by_unique_fields GET    /{table}?or=(email.eq.a@x.com,phone.eq.123)

The version counter is owned by the database: a BEFORE UPDATE trigger is expected to
set NEW.version = OLD.version + 1. Deployments without such a trigger can set
client_side_version_bump=True, which sends version + 1 in the PATCH body; the
version=eq filter still makes the write conditional.

Error mapping:
    timeouts, transport errors, 5xx, 408, 429   → TransientStoreError (retried)
    409 / SQLSTATE 23505                        → DuplicateRecordError
    other 4xx                                   → InvalidDataException
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from recordguard_data_model.versioned_record import VersionedRecord
from recordguard_db.core.interface.record_store_interface import RecordStore
from recordguard_exception_model.exception import (
    DuplicateRecordError, InvalidDataException, TransientStoreError
)

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"
TRANSIENT_STATUS_CODES = {408, 429}


def _quote_filter_value(value: Any) -> str:
    text = str(value).lower() if isinstance(value, bool) else str(value)
    if any(ch in text for ch in ',.:()" '):
        escaped = text.replace('\\', '\\\\').replace('"', '\\"')
        return f'"{escaped}"'
    return text


def _serialize(value: Any) -> Any:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


class PostgRESTRecordStore(RecordStore):
    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None, client_side_version_bump: bool = False):
        headers = {"Accept": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), headers=headers, timeout=timeout)
        self._owns_client = client is None
        self._client_side_version_bump = client_side_version_bump

    async def _request(self, operation: str, method: str, table: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, f"/{table}", **kwargs)
        except httpx.TimeoutException as e:
            raise TransientStoreError("Request to record store timed out", operation, e)
        except httpx.TransportError as e:
            raise TransientStoreError("Record store unreachable", operation, e)

        if response.status_code >= 500 or response.status_code in TRANSIENT_STATUS_CODES:
            logger.warning(f"{operation} on {table} returned {response.status_code}")
            raise TransientStoreError(f"Record store returned {response.status_code}", operation)
        if response.status_code >= 400:
            body = self._error_body(response)
            if response.status_code == 409 or body.get("code") == UNIQUE_VIOLATION:
                raise DuplicateRecordError(body.get("message") or "Unique constraint violated", table)
            raise InvalidDataException(
                f"Record store rejected {operation}: {body.get('message') or response.text}", table=table
            )
        return response

    @staticmethod
    def _error_body(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    @staticmethod
    def _records(response: httpx.Response) -> List[VersionedRecord]:
        rows = response.json() if response.content else []
        if isinstance(rows, dict):
            rows = [rows]
        return [VersionedRecord.from_dict(row) for row in rows]

    async def fetch_by_id(self, table: str, record_id: str) -> Optional[VersionedRecord]:
        response = await self._request(
            "fetch_by_id", "GET", table, params={"id": f"eq.{record_id}", "select": "*"}
        )
        rows = self._records(response)
        return rows[0] if rows else None

    async def conditional_update(self, table: str, record_id: str, version: int,
                                 patch: Dict[str, Any]) -> Optional[VersionedRecord]:
        body = {k: _serialize(v) for k, v in patch.items() if k not in ("id", "version", "created_at")}
        if self._client_side_version_bump:
            body["version"] = version + 1
        response = await self._request(
            "conditional_update", "PATCH", table,
            params={"id": f"eq.{record_id}", "version": f"eq.{version}"},
            headers={"Prefer": "return=representation"},
            json=body
        )
        rows = self._records(response)
        return rows[0] if rows else None

    async def insert(self, table: str, record: VersionedRecord) -> VersionedRecord:
        payload = record.to_dict()
        payload.update({k: _serialize(v) for k, v in record.fields.items()})
        response = await self._request(
            "insert", "POST", table,
            headers={"Prefer": "return=representation"},
            json=payload
        )
        rows = self._records(response)
        if not rows:
            raise InvalidDataException("Insert returned no representation", table=table, record_id=record.id)
        return rows[0]

    async def conditional_delete(self, table: str, record_id: str, version: int) -> bool:
        response = await self._request(
            "conditional_delete", "DELETE", table,
            params={"id": f"eq.{record_id}", "version": f"eq.{version}"},
            headers={"Prefer": "return=representation"}
        )
        return len(self._records(response)) > 0

    async def find_by_unique_fields(self, table: str, fields: Dict[str, Any]) -> List[VersionedRecord]:
        if not fields:
            return []
        conditions = ",".join(f"{name}.eq.{_quote_filter_value(value)}" for name, value in fields.items())
        response = await self._request(
            "find_by_unique_fields", "GET", table, params={"or": f"({conditions})", "select": "*"}
        )
        return self._records(response)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
