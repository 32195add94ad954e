import json
import logging
import asyncio
from typing import Dict, List

from authproxy.core.errors import PartialWriteError, TransportError
from authproxy.models.ingestion import BulkResult, LogRecord
from authproxy.services.elasticsearch import ElasticsearchClient

logger = logging.getLogger("authproxy.storage")


def build_bulk_body(groups: Dict[str, List[LogRecord]]) -> bytes:
    """Serialize records as NDJSON ``create`` action/document pairs."""
    lines = []
    for destination, records in groups.items():
        action = json.dumps({"create": {"_index": destination}})
        for record in records:
            lines.append(action)
            lines.append(json.dumps(record, separators=(",", ":")))
    return ("\n".join(lines) + "\n").encode("utf-8")


class StorageService:
    def __init__(
        self,
        client: ElasticsearchClient,
        max_retries: int = 2,
        retry_delay: float = 0.5,
    ):
        self._client = client
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay

    async def bulk_insert(self, groups: Dict[str, List[LogRecord]]) -> BulkResult:
        """
        Write records to their destinations in a single mixed-destination bulk call.

        Args:
            groups: destination name -> records already tagged with their tenant

        Raises TransportError if every attempt failed at the transport level.
        Per-document rejections are logged and reported in the result.
        """
        submitted = sum(len(records) for records in groups.values())
        if not submitted:
            return BulkResult()

        body = build_bulk_body(groups)

        for attempt in range(1, self.max_retries + 1):
            try:
                await self._client.bulk(body)
                logger.info(
                    f"Successfully wrote {submitted} logs to {len(groups)} destination(s)"
                )
                return BulkResult(submitted=submitted, succeeded=submitted)
            except PartialWriteError as e:
                return self._partial_result(submitted, e)
            except TransportError as e:
                logger.error(
                    f"Bulk write failed (Attempt {attempt}/{self.max_retries}): {e}"
                )
                if attempt == self.max_retries:
                    raise
                await asyncio.sleep(self.retry_delay)

        return BulkResult(submitted=submitted)

    def _partial_result(self, submitted: int, error: PartialWriteError) -> BulkResult:
        for failure in error.failures:
            logger.warning(
                f"Document rejected by {failure['_index']} "
                f"(status={failure['status']}): {failure['type']}: {failure['reason']}"
            )
        failed = len(error.failures)
        logger.warning(
            f"Bulk write partially succeeded: {submitted - failed}/{submitted} documents stored"
        )
        return BulkResult(
            submitted=submitted,
            succeeded=submitted - failed,
            failed=failed,
            errors=error.failures,
        )
