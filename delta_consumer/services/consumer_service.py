"""Wiring of the consumer: store client, ledger, pipelines, queues and triggers."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from delta_consumer.dispatch.registry import resolve_transform
from delta_consumer.filesystem.file_storage import FileStorage
from delta_consumer.services.delta_sync_service import DeltaSyncService, SyncOutcome
from delta_consumer.services.file_metadata_service import FileMetadata
from delta_consumer.services.file_sync_service import FileSyncService
from delta_consumer.services.file_task_service import FileTaskLedger
from delta_consumer.services.initial_sync_service import InitialSyncService
from delta_consumer.services.ledger_service import Ledger
from delta_consumer.services.producer_client import ProducerClient
from delta_consumer.services.scheduler import PeriodicTrigger, ProcessingQueue
from delta_consumer.store.client import HttpSparqlClient
from delta_consumer.store.memory import OxigraphSparqlClient
from delta_consumer.store.updater import BatchedUpdater
from delta_consumer.vocabulary import JobStatus

if TYPE_CHECKING:
    from delta_consumer.config import Settings
    from delta_consumer.services.delta_sync_service import DeltaSyncResult
    from delta_consumer.store.client import SparqlClient

logger = logging.getLogger(__name__)

DELTA_SYNC = "delta sync"
INITIAL_SYNC = "initial sync"
FILE_SYNC = "file sync"


def create_store_client(settings: Settings) -> SparqlClient:
    """Use the configured SPARQL endpoint, or an embedded store when there is none."""
    if settings.sparql_endpoint:
        logger.info("Using SPARQL endpoint %s", settings.sparql_endpoint)
        return HttpSparqlClient.from_settings(settings)
    logger.info("No SPARQL endpoint configured, using the embedded store")
    return OxigraphSparqlClient(settings.oxigraph_path)


@dataclass
class Consumer:
    """All long-lived services of a running consumer."""

    settings: Settings
    client: SparqlClient
    ledger: Ledger
    producer: ProducerClient
    delta_sync: DeltaSyncService
    initial_sync: InitialSyncService
    file_sync: FileSyncService
    delta_queue: ProcessingQueue = field(default_factory=lambda: ProcessingQueue("delta"))
    file_queue: ProcessingQueue = field(default_factory=lambda: ProcessingQueue("files"))
    triggers: list[PeriodicTrigger] = field(default_factory=list)

    @classmethod
    def build(
        cls,
        settings: Settings,
        client: SparqlClient | None = None,
        producer: ProducerClient | None = None,
    ) -> Consumer:
        """Build the services; dispatch transforms are resolved here, once."""
        client = client or create_store_client(settings)
        producer = producer or ProducerClient(settings)
        updater = BatchedUpdater.from_settings(client, settings)
        ledger = Ledger(client, settings, updater)
        storage = FileStorage(settings.file_folder, settings.share_uri_scheme, settings.remapping)
        return cls(
            settings=settings,
            client=client,
            ledger=ledger,
            producer=producer,
            delta_sync=DeltaSyncService(
                settings,
                ledger,
                producer,
                updater,
                resolve_transform(settings.delta_sync_dispatch, settings),
            ),
            initial_sync=InitialSyncService(
                settings,
                ledger,
                producer,
                updater,
                resolve_transform(settings.initial_sync_dispatch, settings),
            ),
            file_sync=FileSyncService(
                settings,
                ledger,
                FileTaskLedger(ledger),
                FileMetadata(client, updater, settings),
                storage,
                producer,
            ),
        )

    async def recover(self) -> None:
        """Fail the jobs left busy by a previous process."""
        for operation in (
            self.settings.initial_sync_job_operation,
            self.settings.delta_sync_job_operation,
        ):
            failed = await self.ledger.fail_busy_jobs(operation)
            if failed:
                logger.warning("Marked %d busy job(s) of %s as failed", failed, operation)

    def start(self) -> None:
        """Start the workers, queue the initial sync and start the periodic triggers."""
        self.delta_queue.start()
        self.file_queue.start()
        if not self.settings.disable_initial_sync:
            self.enqueue_initial_sync()
        self.triggers = [
            PeriodicTrigger(
                DELTA_SYNC,
                self.settings.delta_sync_interval_seconds,
                self.delta_queue,
                self._run_delta_sync,
            ),
            PeriodicTrigger(
                FILE_SYNC,
                self.settings.file_sync_interval_seconds,
                self.file_queue,
                self.file_sync.start,
            ),
        ]
        for trigger in self.triggers:
            trigger.start()

    async def stop(self) -> None:
        for trigger in self.triggers:
            await trigger.stop()
        await self.delta_queue.stop()
        await self.file_queue.stop()
        await self.producer.aclose()
        await self.client.aclose()

    # ── Triggers ──────────────────────────────────────

    def enqueue_initial_sync(self) -> None:
        self.delta_queue.enqueue(INITIAL_SYNC, self._run_initial_sync)

    def enqueue_delta_sync(self) -> None:
        self.delta_queue.enqueue(DELTA_SYNC, self._run_delta_sync)

    def enqueue_file_sync(self) -> None:
        self.file_queue.enqueue(FILE_SYNC, self.file_sync.start)

    async def _run_initial_sync(self) -> DeltaSyncResult:
        result = await self.initial_sync.start()
        if result.outcome == SyncOutcome.SUCCESS:
            self.enqueue_delta_sync()
        return result

    async def _run_delta_sync(self) -> DeltaSyncResult:
        result = await self.delta_sync.start()
        if result.applied_files:
            self.enqueue_file_sync()
        return result

    async def is_busy(self, operation: str) -> bool:
        """Whether the ledger records a busy job for ``operation``."""
        return bool(await self.ledger.get_jobs(operation, status_in=[JobStatus.BUSY]))
