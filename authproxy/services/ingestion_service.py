import asyncio
import logging
from typing import Any, Dict, List
from datetime import datetime, UTC

from authproxy.config import Settings
from authproxy.core.errors import ProvisioningError, TransportError
from authproxy.core.tenancy import normalize_tenant, resolve_tenant
from authproxy.models.ingestion import IngestionStats, LogRecord
from authproxy.services.destination_manager import DestinationManager
from authproxy.services.elasticsearch import ElasticsearchClient
from authproxy.services.storage_service import StorageService

logger = logging.getLogger("authproxy.ingestion")


class IngestionService:
    """Accumulates accepted log records and flushes them to Elasticsearch.

    Callers never wait on the backend: records go onto a bounded queue and are
    dropped when it is full. A single background task owns the pending batch
    and hands it to a small pool of flush tasks when either the size threshold
    or the flush interval is reached.
    """

    def __init__(
        self,
        storage: StorageService,
        destinations: DestinationManager,
        max_batch_size: int = 500,
        flush_interval: float = 2.0,
        queue_size: int = 10000,
        flush_workers: int = 5,
        shutdown_timeout: float = 10.0,
        tenant_field: str = "accountId",
    ):
        self.max_batch_size = max_batch_size
        self.flush_interval = flush_interval
        self.shutdown_timeout = shutdown_timeout
        self.tenant_field = tenant_field
        self.stats = IngestionStats()
        self._storage = storage
        self._destinations = destinations
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._buffer: List[Dict[str, Any]] = []
        self._flush_slots = asyncio.Semaphore(max(1, flush_workers))
        # In-flight flush task -> number of records it carries
        self._inflight: Dict[asyncio.Task, int] = {}
        self._worker_task: asyncio.Task | None = None
        self._is_running = False

    @classmethod
    def from_settings(
        cls, settings: Settings, client: ElasticsearchClient
    ) -> "IngestionService":
        storage = StorageService(
            client,
            max_retries=settings.bulk_max_retries,
            retry_delay=settings.bulk_retry_delay,
        )
        destinations = DestinationManager(client, data_retention=settings.data_retention)
        return cls(
            storage,
            destinations,
            max_batch_size=settings.batch_size,
            flush_interval=settings.flush_interval,
            queue_size=settings.queue_size,
            flush_workers=settings.flush_workers,
            shutdown_timeout=settings.shutdown_timeout,
            tenant_field=settings.tenant_field,
        )

    @property
    def is_running(self) -> bool:
        return self._is_running

    def snapshot(self) -> IngestionStats:
        return self.stats.model_copy(
            update={
                "queue_depth": self._queue.qsize(),
                "buffered": len(self._buffer),
                "inflight_flushes": len(self._inflight),
            }
        )

    async def start(self):
        """Start the background accumulation loop."""
        if not self._is_running:
            self._is_running = True
            logger.info("IngestionService background worker starting...")
            self._worker_task = asyncio.create_task(self._process_queue())

    async def stop(self):
        """Stop accepting records and flush everything already accepted.

        The final drain is bounded by ``shutdown_timeout``; flushes still
        running after that are cancelled.
        """
        if not self._is_running:
            return

        self._is_running = False
        logger.info("IngestionService background worker stopping...")
        if self._worker_task:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None

        while True:
            try:
                self._buffer.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                break

        pending = len(self._buffer) + len(self._inflight)
        if pending:
            logger.info(
                f"Final flush of {len(self._buffer)} buffered records "
                f"({len(self._inflight)} flushes in flight)"
            )

        try:
            await asyncio.wait_for(self._drain(), timeout=self.shutdown_timeout)
        except asyncio.TimeoutError:
            abandoned = len(self._buffer)
            for task in list(self._inflight):
                task.cancel()
            if self._inflight:
                await asyncio.gather(*list(self._inflight), return_exceptions=True)
            logger.error(
                f"Shutdown timeout after {self.shutdown_timeout}s: "
                f"abandoned {abandoned} unflushed records and cancelled in-flight flushes"
            )
            self.stats.failed += abandoned
            self._buffer = []

        logger.info("IngestionService stopped gracefully.")

    async def _drain(self):
        while self._buffer:
            await self._dispatch()
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def enqueue(self, tenant_id: str, records: List[LogRecord]) -> int:
        """Hand a request's records to the engine without waiting.

        Returns how many were accepted; the rest were dropped because the
        queue was full or the service is shutting down.
        """
        if not records:
            return 0

        if not self._is_running:
            self.stats.dropped += len(records)
            logger.warning(
                f"Dropped {len(records)} records for tenant {tenant_id}: service not running"
            )
            return 0

        ingested_at = datetime.now(UTC).isoformat()
        accepted = 0
        for record in records:
            record["token_accountId"] = tenant_id
            record.setdefault("@timestamp", ingested_at)
            try:
                self._queue.put_nowait({"tenant_id": tenant_id, "record": record})
                accepted += 1
            except asyncio.QueueFull:
                pass

        dropped = len(records) - accepted
        self.stats.accepted += accepted
        if dropped:
            self.stats.dropped += dropped
            logger.warning(
                f"Queue full, dropped {dropped}/{len(records)} records for tenant {tenant_id}"
            )
        return accepted

    async def _process_queue(self):
        """Single owner of the pending batch; dispatches flushes on size or time."""
        loop = asyncio.get_running_loop()
        last_flush = loop.time()

        while self._is_running:
            try:
                now = loop.time()
                timeout = max(0, self.flush_interval - (now - last_flush))

                try:
                    item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
                    self._buffer.append(item)
                    # Take whatever else is already waiting, up to the threshold
                    while len(self._buffer) < self.max_batch_size:
                        try:
                            self._buffer.append(self._queue.get_nowait())
                        except asyncio.QueueEmpty:
                            break
                except asyncio.TimeoutError:
                    pass

                if (
                    len(self._buffer) >= self.max_batch_size
                    or (loop.time() - last_flush) >= self.flush_interval
                ):
                    if self._buffer:
                        await self._dispatch()
                    last_flush = loop.time()

            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in background ingestion worker")

    async def _dispatch(self):
        """Swap out up to one batch and flush it on a worker slot."""
        await self._flush_slots.acquire()
        batch = self._buffer[: self.max_batch_size]
        self._buffer = self._buffer[self.max_batch_size :]

        task = asyncio.create_task(self._flush(batch))
        self._inflight[task] = len(batch)
        task.add_done_callback(self._flush_done)

    def _flush_done(self, task: asyncio.Task):
        size = self._inflight.pop(task, 0)
        self._flush_slots.release()
        if task.cancelled():
            # A cancelled flush settles none of its records
            logger.error(f"Flush of {size} records cancelled before completion")
            self.stats.failed += size
            return
        if task.exception() is not None:
            logger.error(f"Flush task crashed: {task.exception()!r}")

    async def _flush(self, batch: List[Dict[str, Any]]):
        groups: Dict[str, List[LogRecord]] = {}
        for item in batch:
            record = item["record"]
            caller_tenant = item["tenant_id"]
            asserted = normalize_tenant(record.get(self.tenant_field))
            resolved = resolve_tenant(asserted, caller_tenant)

            record["log_accountId"] = asserted
            record["account_id"] = resolved
            groups.setdefault(self._destinations.destination_for(resolved), []).append(
                record
            )

        failed = 0
        ready: Dict[str, List[LogRecord]] = {}
        for destination, records in groups.items():
            try:
                await self._destinations.ensure(destination)
            except ProvisioningError as e:
                logger.error(f"Skipping {len(records)} records: {e}")
                failed += len(records)
                continue
            ready[destination] = records

        if ready:
            submitted = sum(len(records) for records in ready.values())
            try:
                result = await self._storage.bulk_insert(ready)
            except TransportError as e:
                logger.error(f"Dropping {submitted} records after bulk write failure: {e}")
                failed += submitted
            else:
                self.stats.flushed += result.succeeded
                self.stats.rejected += result.failed

        # Stats are only touched once nothing else can be awaited
        self.stats.flushes += 1
        self.stats.failed += failed
