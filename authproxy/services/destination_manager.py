import asyncio
import logging
import re
from typing import Any, Dict, Optional, Set

from authproxy.core.errors import ProvisioningError, TransportError
from authproxy.services.elasticsearch import ElasticsearchClient

logger = logging.getLogger("authproxy.destinations")

# Index names only allow lowercase letters, digits, "-" and "_"; "_" is the escape
_ESCAPED_NAME_CHARS = re.compile(r"[^a-z0-9-]")


def _escape_char(match: "re.Match[str]") -> str:
    char = match.group(0)
    if char == "_":
        return "__"
    return "".join(f"_{byte:02x}" for byte in char.encode("utf-8"))


def destination_for(tenant_id: str) -> str:
    """Data stream name holding a tenant's logs.

    Characters an index name cannot hold are written as ``_`` plus their
    UTF-8 bytes in hex, and a literal ``_`` is doubled, so two different
    tenants never share a data stream. Numeric ids pass through unchanged.
    """
    safe = _ESCAPED_NAME_CHARS.sub(_escape_char, tenant_id)
    return f"account-{safe}-logs"


def template_name_for(destination: str) -> str:
    return f"{destination}-template"


def build_index_template(
    destination: str, data_retention: Optional[str] = None
) -> Dict[str, Any]:
    template: Dict[str, Any] = {
        "mappings": {
            "properties": {
                "@timestamp": {"type": "date"},
                "message": {
                    "type": "text",
                    "fields": {"keyword": {"type": "keyword", "ignore_above": 256}},
                },
                "token_accountId": {"type": "keyword"},
                "log_accountId": {"type": "keyword"},
                "account_id": {"type": "keyword"},
                "container_name": {"type": "keyword"},
                "container_id": {"type": "keyword"},
                "source": {"type": "keyword"},
                "date": {"type": "long"},
            }
        }
    }
    if data_retention:
        template["lifecycle"] = {"data_retention": data_retention}

    return {
        "index_patterns": [destination],
        "data_stream": {},
        "priority": 200,
        "template": template,
    }


class DestinationManager:
    """Makes sure a tenant's data stream and its template exist before writes.

    Confirmed destinations are cached for the life of the process. A
    per-destination lock keeps concurrent flushes from provisioning the same
    destination twice.
    """

    def __init__(self, client: ElasticsearchClient, data_retention: Optional[str] = None):
        self._client = client
        self._data_retention = data_retention
        self._known: Set[str] = set()
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def known_destinations(self) -> Set[str]:
        return set(self._known)

    def destination_for(self, tenant_id: str) -> str:
        return destination_for(tenant_id)

    async def ensure(self, destination: str):
        if destination in self._known:
            return

        lock = self._locks.setdefault(destination, asyncio.Lock())
        async with lock:
            # Another flush may have finished provisioning while we waited
            if destination in self._known:
                return

            try:
                await self._ensure_template(destination)
                await self._ensure_data_stream(destination)
            except TransportError as e:
                logger.error(f"Provisioning {destination} failed: {e}")
                raise ProvisioningError(destination, str(e)) from e

            self._known.add(destination)
            logger.info(f"Destination {destination} confirmed")

    async def _ensure_template(self, destination: str):
        name = template_name_for(destination)
        if await self._client.index_template_exists(name):
            return
        body = build_index_template(destination, self._data_retention)
        if await self._client.put_index_template(name, body):
            logger.info(f"Created index template {name}")

    async def _ensure_data_stream(self, destination: str):
        if await self._client.data_stream_exists(destination):
            return
        if await self._client.create_data_stream(destination):
            logger.info(f"Created data stream {destination}")
