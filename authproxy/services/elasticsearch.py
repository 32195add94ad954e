import logging
from typing import Any, Dict, Optional

import httpx

from authproxy.config import Settings
from authproxy.core.errors import PartialWriteError, TransportError

logger = logging.getLogger("authproxy.elasticsearch")

_ALREADY_EXISTS_TYPES = {"resource_already_exists_exception"}


def _is_already_exists(response: httpx.Response) -> bool:
    """Detect the 400 Elasticsearch returns when a create races another writer."""
    if response.status_code != 400:
        return False
    try:
        error = response.json().get("error", {})
    except ValueError:
        return False
    if not isinstance(error, dict):
        return False
    if error.get("type") in _ALREADY_EXISTS_TYPES:
        return True
    return (
        error.get("type") == "illegal_argument_exception"
        and "already exists" in str(error.get("reason", ""))
    )


class ElasticsearchClient:
    """Thin async wrapper over the Elasticsearch REST endpoints the proxy needs.

    Every network failure or unexpected status becomes a TransportError so
    callers only deal with one exception family.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        username: Optional[str] = None,
        password: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        auth = (username, password or "") if username else None
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, auth=auth, transport=transport
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "ElasticsearchClient":
        return cls(
            settings.elasticsearch_url,
            timeout=settings.elasticsearch_timeout,
            username=settings.elasticsearch_username,
            password=settings.elasticsearch_password,
        )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {path} failed: {e}") from e

    @staticmethod
    def _raise_for_status(response: httpx.Response):
        if 200 <= response.status_code < 300:
            return
        raise TransportError(
            f"{response.request.method} {response.request.url.path} returned status "
            f"{response.status_code}: {response.text[:500]}",
            status_code=response.status_code,
        )

    async def _exists(self, method: str, path: str) -> bool:
        response = await self._request(method, path)
        if response.status_code == 404:
            return False
        self._raise_for_status(response)
        return True

    async def _create(self, path: str, body: Optional[Dict[str, Any]] = None) -> bool:
        """PUT a resource. Returns False when it already existed."""
        response = await self._request("PUT", path, json=body)
        if _is_already_exists(response):
            logger.info(f"{path} already exists, treating as created")
            return False
        self._raise_for_status(response)
        return True

    async def index_template_exists(self, name: str) -> bool:
        return await self._exists("HEAD", f"/_index_template/{name}")

    async def put_index_template(self, name: str, body: Dict[str, Any]) -> bool:
        return await self._create(f"/_index_template/{name}?create=true", body)

    async def data_stream_exists(self, name: str) -> bool:
        return await self._exists("GET", f"/_data_stream/{name}")

    async def create_data_stream(self, name: str) -> bool:
        return await self._create(f"/_data_stream/{name}")

    async def bulk(self, body: bytes) -> Dict[str, Any]:
        """Submit an NDJSON bulk body.

        Raises PartialWriteError when the call succeeded but individual
        documents were rejected.
        """
        response = await self._request(
            "POST",
            "/_bulk",
            content=body,
            headers={"Content-Type": "application/x-ndjson"},
        )
        self._raise_for_status(response)
        try:
            result = response.json()
        except ValueError as e:
            raise TransportError(f"unreadable bulk response: {e}") from e

        if result.get("errors"):
            raise PartialWriteError(result)
        return result

    async def close(self):
        await self._client.aclose()
