import asyncio
import json
import time
from collections import defaultdict
from typing import Any, Dict, List

import httpx
import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from authproxy.models.ingestion import IngestionStats
from authproxy.services.elasticsearch import ElasticsearchClient

PRIVATE_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)
PUBLIC_PEM = (
    PRIVATE_KEY.public_key()
    .public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    .decode("utf-8")
)
OTHER_PRIVATE_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)


def make_token(
    claims: Dict[str, Any] | None = None,
    key: Any = PRIVATE_KEY,
    algorithm: str = "RS256",
    expires_in: int | None = 3600,
) -> str:
    now = int(time.time())
    payload: Dict[str, Any] = {"iss": "akto-auth", "sub": "shipper", "iat": now}
    if expires_in is not None:
        payload["exp"] = now + expires_in
    payload.update(claims or {})
    return jwt.encode(payload, key, algorithm=algorithm)


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within timeout")
        await asyncio.sleep(interval)


def _error(status: int, error_type: str, reason: str) -> httpx.Response:
    return httpx.Response(status, json={"error": {"type": error_type, "reason": reason}, "status": status})


class FakeElasticsearch:
    """In-memory stand-in for the Elasticsearch endpoints used by the proxy."""

    def __init__(self):
        self.templates: Dict[str, Dict[str, Any]] = {}
        self.data_streams: set = set()
        self.documents: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.bulk_calls: List[List[Dict[str, Any]]] = []
        self.requests: List[tuple] = []
        self.fail_paths: Dict[str, int] = {}
        self.reject_indices: set = set()
        self.bulk_failures = 0
        self.bulk_delay = 0.0
        self.race_on_create = False

    def client(self) -> ElasticsearchClient:
        return ElasticsearchClient(
            "http://elasticsearch.test:9200", transport=httpx.MockTransport(self.handler)
        )

    def count(self, method: str, path_prefix: str) -> int:
        return sum(
            1 for m, p in self.requests if m == method and p.startswith(path_prefix)
        )

    @property
    def stored(self) -> List[Dict[str, Any]]:
        return [doc for docs in self.bulk_calls for doc in docs]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path
        self.requests.append((method, path))

        for prefix, status in self.fail_paths.items():
            if path.startswith(prefix):
                return _error(status, "cluster_block_exception", "injected failure")

        if path.startswith("/_index_template/"):
            return self._template(method, path.rsplit("/", 1)[-1], request)
        if path.startswith("/_data_stream/"):
            return self._data_stream(method, path.rsplit("/", 1)[-1])
        if path == "/_bulk":
            return await self._bulk(request)
        return _error(404, "not_found", path)

    def _template(self, method: str, name: str, request: httpx.Request) -> httpx.Response:
        if method == "HEAD":
            return httpx.Response(200 if name in self.templates else 404)
        if method == "PUT":
            if name in self.templates or self.race_on_create:
                self.templates.setdefault(name, {})
                return _error(
                    400,
                    "illegal_argument_exception",
                    f"index template [{name}] already exists",
                )
            self.templates[name] = json.loads(request.content)
            return httpx.Response(200, json={"acknowledged": True})
        return _error(405, "method_not_allowed", method)

    def _data_stream(self, method: str, name: str) -> httpx.Response:
        if method == "GET":
            if name not in self.data_streams:
                return _error(404, "index_not_found_exception", f"no such index [{name}]")
            return httpx.Response(200, json={"data_streams": [{"name": name}]})
        if method == "PUT":
            if name in self.data_streams or self.race_on_create:
                self.data_streams.add(name)
                return _error(
                    400,
                    "resource_already_exists_exception",
                    f"data_stream [{name}] already exists",
                )
            self.data_streams.add(name)
            return httpx.Response(200, json={"acknowledged": True})
        return _error(405, "method_not_allowed", method)

    async def _bulk(self, request: httpx.Request) -> httpx.Response:
        if self.bulk_delay:
            await asyncio.sleep(self.bulk_delay)
        if self.bulk_failures:
            self.bulk_failures -= 1
            return _error(503, "unavailable_shards_exception", "try again")

        lines = [line for line in request.content.decode("utf-8").split("\n") if line]
        items = []
        accepted = []
        errors = False
        for action_line, doc_line in zip(lines[::2], lines[1::2]):
            index = json.loads(action_line)["create"]["_index"]
            doc = json.loads(doc_line)
            if index in self.reject_indices:
                errors = True
                items.append(
                    {
                        "create": {
                            "_index": index,
                            "status": 400,
                            "error": {
                                "type": "document_parsing_exception",
                                "reason": "failed to parse field [date]",
                            },
                        }
                    }
                )
                continue
            self.documents[index].append(doc)
            accepted.append(doc)
            items.append({"create": {"_index": index, "status": 201, "result": "created"}})

        self.bulk_calls.append(accepted)
        return httpx.Response(200, json={"took": 1, "errors": errors, "items": items})


class RecordingIngestionService:
    """Ingestion stand-in that just remembers what the API handed it."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.started = False
        self.stopped = False

    async def start(self):
        self.started = True

    async def stop(self):
        self.stopped = True

    async def enqueue(self, tenant_id: str, records: List[Dict[str, Any]]) -> int:
        self.calls.append((tenant_id, records))
        return len(records)

    def snapshot(self) -> IngestionStats:
        return IngestionStats(accepted=sum(len(records) for _, records in self.calls))
