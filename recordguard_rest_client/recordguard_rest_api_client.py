from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import httpx

from recordguard_data_model.batch_operation import BatchOperation
from recordguard_data_model.data_model_utils import DataModelUtils
from recordguard_data_model.data_models import (
    BatchUpdateRequest, CreateRequest, ErrorResponse, ResolveConflictRequest, UpdateRequest, VersionedRecordModel
)
from recordguard_data_model.versioned_record import VersionedRecord
from recordguard_exception_model.exception import (
    ConflictException, ConflictNotFoundError, DuplicateRecordError, InvalidDataException, LockHeldError,
    ManualResolutionRequired, RecordNotFoundError, TransientStoreError
)


class RecordGuardFastAPIClient:
    """
    Client for interacting with the RecordGuard FastAPI server.

    Error responses are turned back into the exceptions the server raised, so a
    conflict reaches the caller as a ConflictException carrying both versions.
    """

    def __init__(self, base_url: str = "http://localhost:8000", timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self.session = None

    async def __aenter__(self):
        self.session = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            await self.session.aclose()
            self.session = None

    def _check_session(self):
        assert self.session, "Client session not initialized. Use 'async with' context."

    @staticmethod
    def _raise_for_error(response: httpx.Response, table: Optional[str] = None,
                         record_id: Optional[str] = None, operation: Optional[str] = None) -> None:
        if response.status_code < 400:
            return
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict) or "error_code" not in payload:
            response.raise_for_status()

        error = ErrorResponse.model_validate(payload)
        code = error.error_code
        if code in (ConflictException.code, ManualResolutionRequired.code):
            descriptor = None
            if error.conflict is not None:
                descriptor = DataModelUtils.convert_to_conflict_descriptor(error.conflict)
            if code == ManualResolutionRequired.code:
                raise ManualResolutionRequired(error.message, descriptor)
            raise ConflictException(error.message, descriptor)
        if code == DuplicateRecordError.code:
            raise DuplicateRecordError(error.message, table, error.fields)
        if code == RecordNotFoundError.code:
            raise RecordNotFoundError(error.message, record_id, table)
        if code == ConflictNotFoundError.code:
            raise ConflictNotFoundError(error.message)
        if code == LockHeldError.code:
            raise LockHeldError(error.message, error.key)
        if code == InvalidDataException.code:
            raise InvalidDataException(error.message, table=table, record_id=record_id)
        if code == TransientStoreError.code:
            raise TransientStoreError(error.message, operation)
        response.raise_for_status()

    @staticmethod
    def _to_record(payload: Dict[str, Any]) -> VersionedRecord:
        return DataModelUtils.convert_to_versioned_record(VersionedRecordModel(**payload))

    async def health(self) -> Dict[str, Any]:
        self._check_session()
        response = await self.session.get(f"{self.base_url}/healthz")
        response.raise_for_status()
        return response.json()

    async def get_record(self, table: str, record_id: str) -> VersionedRecord:
        """
        Fetch a single record by ID

        Raises:
            RecordNotFoundError: No record with that id
        """
        self._check_session()
        response = await self.session.get(f"{self.base_url}/tables/{table}/records/{record_id}")
        self._raise_for_error(response, table, record_id, "get")
        return self._to_record(response.json())

    async def create(self, table: str, data: Mapping[str, Any],
                     unique_fields: Optional[Sequence[str]] = None) -> VersionedRecord:
        """
        Create a record at version 1

        Args:
            table: Table name
            data: Business fields, optionally with an id
            unique_fields: Fields that must not collide; the server's entity defaults when None

        Raises:
            DuplicateRecordError: A record with one of the unique values exists
        """
        self._check_session()
        payload = CreateRequest(
            data=dict(data),
            unique_fields=list(unique_fields) if unique_fields is not None else None
        )
        response = await self.session.post(
            f"{self.base_url}/tables/{table}/records",
            json=DataModelUtils.model_to_json_dict(payload)
        )
        self._raise_for_error(response, table, data.get("id"), "create")
        return self._to_record(response.json())

    async def update(self, table: str, record_id: str, updates: Mapping[str, Any],
                     expected_version: int) -> VersionedRecord:
        """
        Update a record iff it is still at `expected_version`

        Raises:
            ConflictException: The record moved on; remote_data holds the stored version
            LockHeldError: Another operation on the record is in progress on the server
        """
        self._check_session()
        payload = UpdateRequest(updates=dict(updates), expected_version=expected_version)
        response = await self.session.patch(
            f"{self.base_url}/tables/{table}/records/{record_id}",
            json=DataModelUtils.model_to_json_dict(payload)
        )
        self._raise_for_error(response, table, record_id, "update")
        return self._to_record(response.json())

    async def delete(self, table: str, record_id: str, expected_version: int) -> None:
        """
        Delete a record iff it is still at `expected_version`
        """
        self._check_session()
        response = await self.session.delete(
            f"{self.base_url}/tables/{table}/records/{record_id}",
            params={"expected_version": expected_version}
        )
        self._raise_for_error(response, table, record_id, "delete")

    async def batch_update(self, operations: Iterable[Union[BatchOperation, Mapping[str, Any]]]) -> List[VersionedRecord]:
        """
        Apply several updates in order. Not atomic: a failing item leaves the earlier
        ones committed and raises that item's error.
        """
        self._check_session()
        batch = [op if isinstance(op, BatchOperation) else BatchOperation.from_mapping(op) for op in operations]
        payload = BatchUpdateRequest(
            operations=[DataModelUtils.convert_from_batch_operation(op) for op in batch]
        )
        response = await self.session.post(
            f"{self.base_url}/batch",
            json=DataModelUtils.model_to_json_dict(payload)
        )
        self._raise_for_error(response, operation="batch")
        return [self._to_record(item) for item in response.json()]

    async def resolve_conflict(self, local_data: Mapping[str, Any], remote_data: VersionedRecord,
                               strategy: str = "manual") -> VersionedRecord:
        """
        Ask the server to resolve a conflict with a strategy (local, remote, merge or manual)

        Raises:
            ManualResolutionRequired: The manual strategy
        """
        self._check_session()
        payload = ResolveConflictRequest(
            local_data=dict(local_data),
            remote_data=DataModelUtils.convert_from_versioned_record(remote_data),
            strategy=strategy
        )
        response = await self.session.post(
            f"{self.base_url}/resolve",
            json=DataModelUtils.model_to_json_dict(payload)
        )
        self._raise_for_error(response, record_id=remote_data.id, operation="resolve")
        return self._to_record(response.json())

    async def is_locked(self, table: str, record_id: str) -> bool:
        self._check_session()
        response = await self.session.get(f"{self.base_url}/locks/{table}/{record_id}")
        response.raise_for_status()
        return response.json()["locked"]

    async def get_metrics_summary(self) -> Dict[str, Any]:
        self._check_session()
        response = await self.session.get(f"{self.base_url}/metrics-summary")
        response.raise_for_status()
        return response.json()
