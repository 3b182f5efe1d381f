import asyncio
import os
import tempfile
import unittest
from unittest.mock import AsyncMock

from fastapi.testclient import TestClient
from prometheus_client import CONTENT_TYPE_LATEST

from recordguard_data_model.data_model_utils import DataModelUtils
from recordguard_db.config import Settings
from recordguard_db.core.concurrency_context import ConcurrencyContext
from recordguard_db.engine.concurrent_db_service import ConcurrentDbService
from recordguard_db.engine.retry_policy import NO_RETRY
from recordguard_db.persistence.postgrest_record_store import PostgRESTRecordStore
from recordguard_db.persistence.sqlite_record_store import SQLiteRecordStore
from recordguard_db.rest.recordguard_rest_api_server import RecordGuardRestAPI, build_store, error_response
from recordguard_db.tests.test_helper import InMemoryRecordStore, FixedClock, make_record
from recordguard_exception_model.exception import TransientStoreError


def clear_registry():
    from prometheus_client import REGISTRY
    collectors = list(REGISTRY._collector_to_names.keys())
    for collector in collectors:
        REGISTRY.unregister(collector)


class TestRecordGuardRestAPI(unittest.TestCase):
    def setUp(self):
        clear_registry()

        self.store = InMemoryRecordStore(unique_fields={"customers": ["email"]})
        self.context = ConcurrencyContext()
        self.service = ConcurrentDbService(self.store, self.context, NO_RETRY, clock=FixedClock())
        self.api = RecordGuardRestAPI(service=self.service)
        self.client = TestClient(self.api.app)

    def tearDown(self):
        """Clean up after each test method."""
        # Clean up prometheus registry
        clear_registry()

    def test_initialization(self):
        paths = [route.path for route in self.api.app.routes]
        self.assertIn("/tables/{table}/records/{record_id}", paths)
        self.assertIn("/tables/{table}/records", paths)
        self.assertIn("/batch", paths)
        self.assertIn("/resolve", paths)

    def test_healthz(self):
        response = self.client.get("/healthz")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_get_record(self):
        self.store.seed("customers", make_record("c1", version=2, name="Ada"))
        response = self.client.get("/tables/customers/records/c1")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["version"], 2)
        self.assertEqual(response.json()["fields"], {"name": "Ada"})

    def test_get_missing_record(self):
        response = self.client.get("/tables/customers/records/nope")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error_code"], "NOT_FOUND")

    def test_create_and_duplicate(self):
        response = self.client.post("/tables/customers/records", json={"data": {"email": "a@x.com", "name": "A"}})
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["version"], 1)

        # customers default to unique email
        response = self.client.post("/tables/customers/records", json={"data": {"email": "a@x.com", "name": "B"}})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error_code"], "DUPLICATE")
        self.assertEqual(response.json()["fields"], ["email"])

    def test_create_with_explicit_unique_fields(self):
        response = self.client.post("/tables/deals/records",
                                    json={"data": {"id": "d1", "code": "X"}, "unique_fields": ["code"]})
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["id"], "d1")

        response = self.client.post("/tables/deals/records",
                                    json={"data": {"code": "X"}, "unique_fields": ["code"]})
        self.assertEqual(response.status_code, 409)

    def test_update(self):
        self.store.seed("customers", make_record("c1", version=3, name="Old"))
        response = self.client.patch("/tables/customers/records/c1",
                                     json={"updates": {"name": "X"}, "expected_version": 3})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["version"], 4)
        self.assertEqual(response.json()["fields"]["name"], "X")

    def test_update_conflict_returns_both_versions(self):
        self.store.seed("customers", make_record("c1", version=4, name="Theirs"))
        response = self.client.patch("/tables/customers/records/c1",
                                     json={"updates": {"name": "Mine"}, "expected_version": 3})

        self.assertEqual(response.status_code, 409)
        body = response.json()
        self.assertEqual(body["error_code"], "CONFLICT")
        self.assertEqual(body["conflict"]["local_data"], {"name": "Mine", "version": 3})
        self.assertEqual(body["conflict"]["remote_data"]["version"], 4)
        self.assertEqual(body["conflict"]["remote_data"]["fields"]["name"], "Theirs")

    def test_update_rejects_bookkeeping(self):
        self.store.seed("customers", make_record("c1", version=3))
        response = self.client.patch("/tables/customers/records/c1",
                                     json={"updates": {"version": 10}, "expected_version": 3})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error_code"], "INVALID_DATA")

    def test_update_request_validation(self):
        response = self.client.patch("/tables/customers/records/c1",
                                     json={"updates": {"name": "X"}, "expected_version": 0})
        self.assertEqual(response.status_code, 422)

    def test_update_lock_held(self):
        self.store.seed("customers", make_record("c1", version=3))
        self.context.lock.acquire("customers:c1")
        response = self.client.patch("/tables/customers/records/c1",
                                     json={"updates": {"name": "X"}, "expected_version": 3})
        self.assertEqual(response.status_code, 423)
        self.assertEqual(response.json()["key"], "customers:c1")

        lock_status = self.client.get("/locks/customers/c1").json()
        self.assertTrue(lock_status["locked"])

    def test_transient_failure(self):
        self.store.seed("customers", make_record("c1", version=3))
        self.store.fail_next("fetch_by_id", TransientStoreError("down", "fetch_by_id"))
        response = self.client.get("/tables/customers/records/c1")
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["error_code"], "TRANSIENT")

    def test_delete(self):
        self.store.seed("customers", make_record("c1", version=2))
        response = self.client.delete("/tables/customers/records/c1", params={"expected_version": 1})
        self.assertEqual(response.status_code, 409)

        response = self.client.delete("/tables/customers/records/c1", params={"expected_version": 2})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "deleted")
        self.assertIsNone(self.store.get("customers", "c1"))

    def test_delete_requires_version(self):
        response = self.client.delete("/tables/customers/records/c1")
        self.assertEqual(response.status_code, 422)

    def test_batch(self):
        self.store.seed("deals", make_record("d1", version=1))
        self.store.seed("deals", make_record("d2", version=5))
        response = self.client.post("/batch", json={"operations": [
            {"table": "deals", "record_id": "d2", "updates": {"stage": "won"}, "expected_version": 5},
            {"table": "deals", "record_id": "d1", "updates": {"stage": "lost"}, "expected_version": 1},
        ]})
        self.assertEqual(response.status_code, 200)
        self.assertEqual([(r["id"], r["version"]) for r in response.json()], [("d2", 6), ("d1", 2)])

    def test_batch_partial_failure(self):
        self.store.seed("deals", make_record("d1", version=1))
        response = self.client.post("/batch", json={"operations": [
            {"table": "deals", "record_id": "d1", "updates": {"stage": "won"}, "expected_version": 1},
            {"table": "deals", "record_id": "d9", "updates": {"stage": "lost"}, "expected_version": 1},
        ]})
        self.assertEqual(response.status_code, 404)
        self.assertEqual(self.store.get("deals", "d1").version, 2)

    def test_resolve(self):
        remote = DataModelUtils.convert_from_versioned_record(make_record("c1", version=4, name="Theirs"))
        payload = {
            "local_data": {"name": "Mine", "updated_at": "2030-01-01T00:00:00+00:00"},
            "remote_data": DataModelUtils.model_to_json_dict(remote),
        }

        response = self.client.post("/resolve", json={**payload, "strategy": "merge"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["fields"]["name"], "Mine")
        self.assertEqual(response.json()["version"], 4)

        response = self.client.post("/resolve", json={**payload, "strategy": "remote"})
        self.assertEqual(response.json()["fields"]["name"], "Theirs")

        response = self.client.post("/resolve", json=payload)
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error_code"], "MANUAL_RESOLUTION_REQUIRED")

        response = self.client.post("/resolve", json={**payload, "strategy": "coin-flip"})
        self.assertEqual(response.status_code, 400)

    def test_metrics_summary(self):
        self.store.seed("customers", make_record("c1", version=4))
        self.client.patch("/tables/customers/records/c1", json={"updates": {"n": 1}, "expected_version": 4})
        self.client.patch("/tables/customers/records/c1", json={"updates": {"n": 2}, "expected_version": 4})

        summary = self.client.get("/metrics-summary").json()
        self.assertEqual(summary["total_operations"], 2)
        self.assertEqual(summary["total_conflicts"], 1)
        self.assertEqual(summary["conflict_rate"], 0.5)

    def test_metrics_endpoint(self):
        self.client.get("/tables/customers/records/nope")
        response = self.client.get("/metrics")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers["content-type"], CONTENT_TYPE_LATEST)
        self.assertIn(b"recordguard_http_get_total 1.0", response.content)
        self.assertIn(b"recordguard_operations_total", response.content)

    def test_unexpected_error_is_500(self):
        self.service.get_record = AsyncMock(side_effect=RuntimeError("boom"))
        response = self.client.get("/tables/customers/records/c1")
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["error_code"], "INTERNAL")

    def test_store_closed_on_shutdown(self):
        with TestClient(self.api.app):
            pass
        self.assertTrue(self.store.closed)


class TestBuildStore(unittest.TestCase):

    def test_sqlite_by_default(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            store = build_store(Settings(sqlite_path=os.path.join(temp_dir, "rg.db")))
            self.assertIsInstance(store, SQLiteRecordStore)
            asyncio.run(store.close())

    def test_postgrest_when_configured(self):
        store = build_store(Settings(postgrest_url="http://postgrest.test", postgrest_api_key="k"))
        self.assertIsInstance(store, PostgRESTRecordStore)

    def test_error_response_for_unknown_error(self):
        response = error_response(ValueError("nope"))
        self.assertEqual(response.status_code, 500)


if __name__ == '__main__':
    unittest.main()
