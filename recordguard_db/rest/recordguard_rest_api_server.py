import asyncio
import logging
from contextlib import asynccontextmanager
from functools import wraps
from typing import List, Optional

from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse
from fastapi.responses import Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST, Counter, Histogram, REGISTRY

from recordguard_data_model.data_model_utils import DataModelUtils
from recordguard_data_model.data_models import (
    BatchUpdateRequest, CreateRequest, ErrorResponse, ResolveConflictRequest, UpdateRequest, VersionedRecordModel
)
from recordguard_db.config import Settings, get_settings
from recordguard_db.core.interface.record_store_interface import RecordStore
from recordguard_db.core.metrics.concurrency_metrics import ConcurrencyMetricsCollector
from recordguard_db.engine.concurrent_db_service import ConcurrentDbService
from recordguard_db.engine.entity_service import ENTITY_UNIQUE_FIELDS
from recordguard_db.engine.retry_policy import RetryPolicy
from recordguard_exception_model.exception import (
    ConflictException, ConflictNotFoundError, DuplicateRecordError, InvalidDataException, LockHeldError,
    RecordNotFoundError, TransientStoreError
)

logger = logging.getLogger(__name__)

# first match wins, so subclasses come before their bases
ERROR_STATUS = [
    (ConflictException, 409),
    (DuplicateRecordError, 409),
    (RecordNotFoundError, 404),
    (ConflictNotFoundError, 404),
    (LockHeldError, 423),
    (InvalidDataException, 400),
    (TransientStoreError, 503),
]


def error_response(error: Exception) -> JSONResponse:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            break
    else:
        logger.exception(f"Unhandled error: {error}")
        body = ErrorResponse(error_code="INTERNAL", message=str(error))
        return JSONResponse(status_code=500, content=DataModelUtils.model_to_json_dict(body))

    body = ErrorResponse(error_code=error.code, message=error.message)
    if isinstance(error, ConflictException) and error.descriptor is not None:
        body.conflict = DataModelUtils.convert_from_conflict_descriptor(error.descriptor)
    elif isinstance(error, DuplicateRecordError):
        body.fields = error.fields
    elif isinstance(error, LockHeldError):
        body.key = error.key
    return JSONResponse(status_code=status_code, content=DataModelUtils.model_to_json_dict(body))


def build_store(settings: Settings) -> RecordStore:
    """PostgREST when a URL is configured, a local SQLite file otherwise."""
    if settings.postgrest_url:
        from recordguard_db.persistence.postgrest_record_store import PostgRESTRecordStore
        return PostgRESTRecordStore(
            settings.postgrest_url,
            api_key=settings.postgrest_api_key,
            timeout=settings.request_timeout
        )

    from recordguard_db.persistence.sqlite_record_store import SQLiteRecordStore
    return SQLiteRecordStore(
        settings.sqlite_path,
        unique_fields={table: fields for table, fields in ENTITY_UNIQUE_FIELDS.items() if fields}
    )


class RecordGuardRestAPI:
    """
    RecordGuardRestAPI: HTTP Interface for optimistic-concurrency record access

    Every mutation is a conditional write on (id, version). A stale expected version
    is answered with 409 and both versions of the record, so the caller can decide.

    Base URL:
        http://127.0.0.1:8000

    ---

    Health
    ------

    curl http://127.0.0.1:8000/healthz

    ---

    Read a Record
    -------------

    GET /tables/{table}/records/{record_id}

    Example:
    curl http://127.0.0.1:8000/tables/customers/records/c1

    ---

    Create a Record
    ---------------

    POST /tables/{table}/records

    Request JSON:
    {
        "data": {"name": "Ada", "email": "ada@example.com"},
        "unique_fields": ["email"]
    }

    unique_fields defaults to the entity's unique fields (email for customers and
    leads). A duplicate is answered with 409 DUPLICATE.

    Example:
    curl -X POST http://127.0.0.1:8000/tables/customers/records \
         -H "Content-Type: application/json" \
         -d '{"data": {"name": "Ada", "email": "ada@example.com"}}'

    ---

    Update a Record
    ---------------

    PATCH /tables/{table}/records/{record_id}

    Request JSON:
    {
        "updates": {"name": "Ada Lovelace"},
        "expected_version": 3
    }

    Example:
    curl -X PATCH http://127.0.0.1:8000/tables/customers/records/c1 \
         -H "Content-Type: application/json" \
         -d '{"updates": {"name": "Ada Lovelace"}, "expected_version": 3}'

    ---

    Delete a Record
    ---------------

    DELETE /tables/{table}/records/{record_id}?expected_version=4

    Example:
    curl -X DELETE "http://127.0.0.1:8000/tables/customers/records/c1?expected_version=4"

    ---

    Batch Update
    ------------

    POST /batch

    Not a transaction: items run in order and the first failure stops the batch,
    leaving the earlier items committed.

    Request JSON:
    {
        "operations": [
            {"table": "deals", "record_id": "d1", "updates": {"stage": "won"}, "expected_version": 2},
            {"table": "invoices", "record_id": "i7", "updates": {"status": "sent"}, "expected_version": 1}
        ]
    }

    ---

    Resolve a Conflict
    ------------------

    POST /resolve

    Request JSON:
    {
        "local_data": {"name": "Mine", "updated_at": "2024-01-02T00:00:00+00:00"},
        "remote_data": {"id": "c1", "version": 4, "created_at": "...", "updated_at": "...",
                        "fields": {"name": "Theirs"}},
        "strategy": "merge"
    }

    strategy is one of local, remote, merge, manual. manual is answered with 409
    MANUAL_RESOLUTION_REQUIRED.

    ---

    Locks & Metrics
    ---------------

    GET /locks/{table}/{record_id}      whether an operation on the record is in progress
    GET /metrics-summary               conflict, retry and lock wait rates
    GET /metrics                       Prometheus metrics

    ---

    Errors
    ------

    {"error_code": "CONFLICT", "message": "...", "conflict": {...}}

    CONFLICT 409, DUPLICATE 409, NOT_FOUND 404, CONFLICT_NOT_FOUND 404,
    LOCK_HELD 423, INVALID_DATA 400, TRANSIENT 503
    """
    def __init__(self, service: Optional[ConcurrentDbService] = None, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        if service is None:
            service = ConcurrentDbService(build_store(settings), retry_policy=RetryPolicy.from_settings(settings))
        self.service = service

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            # ==== Startup ====
            yield
            # ==== Shutdown ====
            await self.service.store.close()

        self.app = FastAPI(
            title="RecordGuard API",
            description="Optimistic-concurrency access to shared versioned records",
            version="1.0.0",
            lifespan=lifespan
        )

        # Liveness probe: indicates the app is up
        @self.app.get("/healthz", include_in_schema=False)
        async def healthz():
            return JSONResponse({"status": "ok"})

        self.get_counter = Counter('recordguard_http_get_total', 'Total number of get requests')
        self.create_counter = Counter('recordguard_http_create_total', 'Total number of create requests')
        self.update_counter = Counter('recordguard_http_update_total', 'Total number of update requests')
        self.delete_counter = Counter('recordguard_http_delete_total', 'Total number of delete requests')
        self.batch_counter = Counter('recordguard_http_batch_total', 'Total number of batch requests')
        self.get_latency = Histogram('recordguard_http_get_latency', 'Get request latency')
        self.create_latency = Histogram('recordguard_http_create_latency', 'Create request latency')
        self.update_latency = Histogram('recordguard_http_update_latency', 'Update request latency')
        self.delete_latency = Histogram('recordguard_http_delete_latency', 'Delete request latency')
        self.batch_latency = Histogram('recordguard_http_batch_latency', 'Batch request latency')

        self.metrics_collector = ConcurrencyMetricsCollector(self.service.context.metrics)
        REGISTRY.register(self.metrics_collector)

        self._setup_routes()

    def _setup_routes(self):
        """Setup FastAPI routes"""

        def with_error_handling():
            """
            Decorator factory to wrap route handlers in shared exception logic.
            Every failure becomes a JSON ErrorResponse with the matching status code.
            """

            def decorator(func):
                @wraps(func)
                async def wrapper(*args, **kwargs):
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        return error_response(e)
                return wrapper
            return decorator

        @self.app.get("/tables/{table}/records/{record_id}", response_model=VersionedRecordModel)
        @with_error_handling()
        async def get_record(table: str, record_id: str):
            # increase counter
            self.get_counter.inc()

            with self.get_latency.time():
                record = await self.service.get_record(table, record_id)
                return DataModelUtils.convert_from_versioned_record(record)

        @self.app.post("/tables/{table}/records", response_model=VersionedRecordModel, status_code=201)
        @with_error_handling()
        async def create_record(table: str, request: CreateRequest):
            # increase counter
            self.create_counter.inc()

            unique_fields = request.unique_fields
            if unique_fields is None:
                unique_fields = ENTITY_UNIQUE_FIELDS.get(table, [])

            with self.create_latency.time():
                record = await self.service.create_safely(table, request.data, unique_fields)
                return DataModelUtils.convert_from_versioned_record(record)

        @self.app.patch("/tables/{table}/records/{record_id}", response_model=VersionedRecordModel)
        @with_error_handling()
        async def update_record(table: str, record_id: str, request: UpdateRequest):
            # increase counter
            self.update_counter.inc()

            with self.update_latency.time():
                record = await self.service.update_with_optimistic_locking(
                    table, record_id, request.updates, request.expected_version
                )
                return DataModelUtils.convert_from_versioned_record(record)

        @self.app.delete("/tables/{table}/records/{record_id}")
        @with_error_handling()
        async def delete_record(table: str, record_id: str, expected_version: int = Query(..., ge=1)):
            # increase counter
            self.delete_counter.inc()

            with self.delete_latency.time():
                await self.service.delete_with_version(table, record_id, expected_version)
                return {"status": "deleted", "table": table, "record_id": record_id}

        @self.app.post("/batch", response_model=List[VersionedRecordModel])
        @with_error_handling()
        async def batch_update(request: BatchUpdateRequest):
            # increase counter
            self.batch_counter.inc()

            with self.batch_latency.time():
                operations = [DataModelUtils.convert_to_batch_operation(op) for op in request.operations]
                records = await self.service.batch_update(operations)
                return [DataModelUtils.convert_from_versioned_record(r) for r in records]

        @self.app.post("/resolve", response_model=VersionedRecordModel)
        @with_error_handling()
        async def resolve(request: ResolveConflictRequest):
            remote = DataModelUtils.convert_to_versioned_record(request.remote_data)
            resolved = self.service.resolve_conflict(request.local_data, remote, request.strategy)
            return DataModelUtils.convert_from_versioned_record(resolved)

        @self.app.get("/locks/{table}/{record_id}")
        async def lock_status(table: str, record_id: str):
            return {
                "table": table,
                "record_id": record_id,
                "locked": self.service.is_locked(table, record_id)
            }

        @self.app.get("/metrics-summary")
        async def metrics_summary():
            return self.service.context.metrics.get_metrics()

        @self.app.get("/metrics")
        async def metrics():
            data = await asyncio.to_thread(generate_latest)
            return Response(content=data, media_type=CONTENT_TYPE_LATEST)


def create_app() -> FastAPI:
    """ASGI factory, e.g. `uvicorn --factory recordguard_db.rest.recordguard_rest_api_server:create_app`."""
    return RecordGuardRestAPI().app
