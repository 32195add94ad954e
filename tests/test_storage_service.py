import json
import unittest

import httpx

from authproxy.core.errors import TransportError
from authproxy.services.elasticsearch import ElasticsearchClient
from authproxy.services.storage_service import StorageService, build_bulk_body

from fakes import FakeElasticsearch


class TestBulkBody(unittest.TestCase):
    def test_ndjson_create_pairs(self):
        body = build_bulk_body(
            {"account-1-logs": [{"message": "a"}, {"message": "b"}], "account-2-logs": [{"n": 1}]}
        )
        self.assertTrue(body.endswith(b"\n"))
        lines = body.decode().strip().split("\n")
        self.assertEqual(len(lines), 6)
        self.assertEqual(json.loads(lines[0]), {"create": {"_index": "account-1-logs"}})
        self.assertEqual(json.loads(lines[1]), {"message": "a"})
        self.assertEqual(json.loads(lines[3]), {"message": "b"})
        self.assertEqual(json.loads(lines[4]), {"create": {"_index": "account-2-logs"}})

    def test_nested_values_survive(self):
        record = {"message": "x", "nested": {"list": [1, 2.5, True, None, "s"]}}
        lines = build_bulk_body({"d": [record]}).decode().strip().split("\n")
        self.assertEqual(json.loads(lines[1]), record)


class TestStorageService(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.es = FakeElasticsearch()
        self.client = self.es.client()
        self.storage = StorageService(self.client, max_retries=2, retry_delay=0)

    async def asyncTearDown(self):
        await self.client.close()

    async def test_successful_bulk(self):
        result = await self.storage.bulk_insert({"account-1-logs": [{"message": "a"}]})
        self.assertEqual(result.submitted, 1)
        self.assertEqual(result.succeeded, 1)
        self.assertEqual(self.es.documents["account-1-logs"], [{"message": "a"}])

    async def test_empty_groups_skip_backend(self):
        result = await self.storage.bulk_insert({})
        self.assertEqual(result.submitted, 0)
        self.assertEqual(self.es.requests, [])

    async def test_partial_rejection_is_reported_not_raised(self):
        self.es.reject_indices.add("account-2-logs")
        with self.assertLogs("authproxy.storage", level="WARNING") as logs:
            result = await self.storage.bulk_insert(
                {"account-1-logs": [{"message": "a"}], "account-2-logs": [{"message": "b"}]}
            )
        self.assertEqual(result.succeeded, 1)
        self.assertEqual(result.failed, 1)
        self.assertEqual(result.errors[0]["_index"], "account-2-logs")
        self.assertEqual(result.errors[0]["type"], "document_parsing_exception")
        self.assertTrue(any("account-2-logs" in line for line in logs.output))
        # Rejected items are not retried
        self.assertEqual(self.es.count("POST", "/_bulk"), 1)

    async def test_transport_failure_is_retried(self):
        self.es.bulk_failures = 1
        result = await self.storage.bulk_insert({"account-1-logs": [{"message": "a"}]})
        self.assertEqual(result.succeeded, 1)
        self.assertEqual(self.es.count("POST", "/_bulk"), 2)

    async def test_transport_failure_surfaces_after_retries(self):
        self.es.bulk_failures = 5
        with self.assertRaises(TransportError) as ctx:
            await self.storage.bulk_insert({"account-1-logs": [{"message": "a"}]})
        self.assertEqual(ctx.exception.status_code, 503)
        self.assertEqual(self.es.count("POST", "/_bulk"), 2)

    async def test_network_error_becomes_transport_error(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = ElasticsearchClient("http://es:9200", transport=httpx.MockTransport(refuse))
        storage = StorageService(client, max_retries=1)
        with self.assertRaises(TransportError):
            await storage.bulk_insert({"account-1-logs": [{"message": "a"}]})
        await client.close()


if __name__ == "__main__":
    unittest.main()
