import json
import unittest

import httpx

from recordguard_db.persistence.postgrest_record_store import PostgRESTRecordStore
from recordguard_db.tests.test_helper import make_record
from recordguard_exception_model.exception import DuplicateRecordError, InvalidDataException, TransientStoreError


class TestPostgRESTRecordStore(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.requests = []
        self.responses = []
        self.client = httpx.AsyncClient(base_url="http://postgrest.test", transport=httpx.MockTransport(self._handle))
        self.store = PostgRESTRecordStore("http://postgrest.test", client=self.client)

    async def asyncTearDown(self):
        await self.store.close()
        await self.client.aclose()

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def respond(self, status_code=200, body=None):
        self.responses.append(httpx.Response(status_code, json=body if body is not None else []))

    async def test_fetch_by_id(self):
        record = make_record("c1", version=3, name="Ada")
        self.respond(body=[record.to_dict()])

        fetched = await self.store.fetch_by_id("customers", "c1")

        self.assertEqual(fetched, record)
        request = self.requests[0]
        self.assertEqual(request.method, "GET")
        self.assertEqual(request.url.path, "/customers")
        self.assertEqual(request.url.params["id"], "eq.c1")
        self.assertEqual(request.url.params["select"], "*")

    async def test_fetch_missing(self):
        self.respond(body=[])
        self.assertIsNone(await self.store.fetch_by_id("customers", "nope"))

    async def test_conditional_update(self):
        self.respond(body=[make_record("c1", version=4, name="X").to_dict()])

        updated = await self.store.conditional_update(
            "customers", "c1", 3, {"name": "X", "updated_at": make_record().updated_at, "version": 99}
        )

        self.assertEqual(updated.version, 4)
        request = self.requests[0]
        self.assertEqual(request.method, "PATCH")
        self.assertEqual(request.url.params["id"], "eq.c1")
        self.assertEqual(request.url.params["version"], "eq.3")
        self.assertEqual(request.headers["Prefer"], "return=representation")
        body = json.loads(request.content)
        # the version is left to the database trigger
        self.assertEqual(body, {"name": "X", "updated_at": "2024-01-01T12:01:00+00:00"})

    async def test_conditional_update_zero_rows(self):
        self.respond(body=[])
        self.assertIsNone(await self.store.conditional_update("customers", "c1", 3, {"name": "X"}))

    async def test_client_side_version_bump(self):
        store = PostgRESTRecordStore("http://postgrest.test", client=self.client, client_side_version_bump=True)
        self.respond(body=[make_record("c1", version=4).to_dict()])
        await store.conditional_update("customers", "c1", 3, {"name": "X"})
        self.assertEqual(json.loads(self.requests[0].content)["version"], 4)

    async def test_insert(self):
        record = make_record("c1", version=1, email="a@x.com")
        self.respond(status_code=201, body=[record.to_dict()])

        inserted = await self.store.insert("customers", record)

        self.assertEqual(inserted, record)
        request = self.requests[0]
        self.assertEqual(request.method, "POST")
        self.assertEqual(json.loads(request.content), record.to_dict())

    async def test_insert_unique_violation(self):
        self.respond(status_code=409, body={"code": "23505", "message": "duplicate key value"})
        with self.assertRaises(DuplicateRecordError):
            await self.store.insert("customers", make_record("c1", email="a@x.com"))

    async def test_unique_violation_code_without_409(self):
        self.respond(status_code=400, body={"code": "23505", "message": "duplicate key value"})
        with self.assertRaises(DuplicateRecordError):
            await self.store.insert("customers", make_record("c1", email="a@x.com"))

    async def test_conditional_delete(self):
        self.respond(body=[make_record("d1", version=2).to_dict()])
        self.assertTrue(await self.store.conditional_delete("deals", "d1", 2))
        request = self.requests[0]
        self.assertEqual(request.method, "DELETE")
        self.assertEqual(request.url.params["version"], "eq.2")

        self.respond(body=[])
        self.assertFalse(await self.store.conditional_delete("deals", "d1", 2))

    async def test_find_by_unique_fields(self):
        self.respond(body=[make_record("c1", email="a@x.com").to_dict()])

        found = await self.store.find_by_unique_fields("customers", {"email": "a@x.com", "phone": 123})

        self.assertEqual([r.id for r in found], ["c1"])
        self.assertEqual(self.requests[0].url.params["or"], '(email.eq."a@x.com",phone.eq.123)')

    async def test_find_with_no_fields_skips_request(self):
        self.assertEqual(await self.store.find_by_unique_fields("customers", {}), [])
        self.assertEqual(self.requests, [])

    async def test_server_errors_are_transient(self):
        for status_code in (500, 503, 408, 429):
            with self.subTest(status_code=status_code):
                self.respond(status_code=status_code, body={"message": "unavailable"})
                with self.assertRaises(TransientStoreError):
                    await self.store.fetch_by_id("customers", "c1")

    async def test_transport_errors_are_transient(self):
        self.responses.append(httpx.ConnectError("connection refused"))
        with self.assertRaises(TransientStoreError) as ctx:
            await self.store.fetch_by_id("customers", "c1")
        self.assertEqual(ctx.exception.operation, "fetch_by_id")

        self.responses.append(httpx.ReadTimeout("timed out"))
        with self.assertRaises(TransientStoreError):
            await self.store.fetch_by_id("customers", "c1")

    async def test_client_errors_are_invalid_data(self):
        self.respond(status_code=400, body={"code": "42703", "message": "column does not exist"})
        with self.assertRaises(InvalidDataException) as ctx:
            await self.store.fetch_by_id("customers", "c1")
        self.assertIn("column does not exist", ctx.exception.message)


class TestPostgRESTRecordStoreClient(unittest.IsolatedAsyncioTestCase):

    async def test_api_key_headers(self):
        store = PostgRESTRecordStore("http://postgrest.test/", api_key="secret")
        try:
            self.assertEqual(store._client.headers["apikey"], "secret")
            self.assertEqual(store._client.headers["Authorization"], "Bearer secret")
        finally:
            await store.close()
        self.assertTrue(store._client.is_closed)


if __name__ == '__main__':
    unittest.main()
