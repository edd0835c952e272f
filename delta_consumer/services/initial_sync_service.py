"""Initial sync: bootstrap the store from the producer's latest dump."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pyoxigraph import RdfFormat, parse

from delta_consumer.exceptions import StoreError
from delta_consumer.models.delta import ChangeSet, Term, Triple
from delta_consumer.services.delta_sync_service import DeltaSyncResult, SyncOutcome, group_by_graph
from delta_consumer.store.memory import term_to_binding
from delta_consumer.store.updater import UpdateMode
from delta_consumer.vocabulary import INITIAL_SYNC_TASK_OPERATION, JobStatus

if TYPE_CHECKING:
    from pathlib import Path

    from delta_consumer.config import Settings
    from delta_consumer.dispatch.base import Transform
    from delta_consumer.models.job import Job, Task
    from delta_consumer.services.ledger_service import Ledger
    from delta_consumer.services.producer_client import ProducerClient
    from delta_consumer.store.updater import BatchedUpdater

logger = logging.getLogger(__name__)


def read_dump(path: Path) -> list[Triple]:
    """Parse a Turtle dump into triples; plain strings lose their ``xsd:string`` datatype."""
    with path.open("rb") as handle:
        return [
            Triple(
                subject=Term.from_json(term_to_binding(quad.subject)),
                predicate=Term.from_json(term_to_binding(quad.predicate)),
                object=Term.from_json(term_to_binding(quad.object)),
            )
            for quad in parse(handle, RdfFormat.TURTLE)
        ]


class InitialSyncService:
    def __init__(
        self,
        settings: Settings,
        ledger: Ledger,
        producer: ProducerClient,
        updater: BatchedUpdater,
        transform: Transform,
    ) -> None:
        self.settings = settings
        self.ledger = ledger
        self.producer = producer
        self.updater = updater
        self.transform = transform

    async def start(self) -> DeltaSyncResult:
        """Run the initial sync unless it is disabled or already succeeded.

        A previous failed run is retried.  A previous run in any other
        unfinished state is reported as an error rather than run twice.
        """
        if self.settings.disable_initial_sync:
            logger.warning("Initial sync disabled")
            return DeltaSyncResult(SyncOutcome.SKIPPED)
        try:
            previous = await self.ledger.get_latest_job_for_operation(
                self.settings.initial_sync_job_operation
            )
            if previous is not None and previous.status == JobStatus.SUCCESS:
                logger.info("Initial sync %s already ran successfully", previous.uri)
                return DeltaSyncResult(SyncOutcome.UP_TO_DATE, job_uri=previous.uri)
            if previous is not None and previous.status != JobStatus.FAILED:
                msg = (
                    f"Initial sync {previous.uri} is in status {previous.status.label}; "
                    "clean up the initial sync jobs before starting a new one"
                )
                raise RuntimeError(msg)
            return await self.run()
        except Exception as exc:
            logger.error("Initial sync failed: %s", exc, exc_info=True)
            try:
                await self.ledger.store_error(f"Unexpected error while running initial sync: {exc}")
            except StoreError:
                logger.exception("Could not store initial sync error")
            return DeltaSyncResult(SyncOutcome.FAILED)

    async def run(self) -> DeltaSyncResult:
        job = await self.ledger.create_job(self.settings.initial_sync_job_operation)
        task = await self.ledger.create_task(job.uri, 0, INITIAL_SYNC_TASK_OPERATION)
        try:
            await self._load(task)
        except Exception as exc:
            logger.error("Initial sync job %s failed: %s", job.uri, exc, exc_info=True)
            await self._fail(job, task, f"Initial sync failed: {exc}")
            return DeltaSyncResult(SyncOutcome.FAILED, job_uri=job.uri)

        await self.ledger.update_status(task.uri, JobStatus.SUCCESS, expected=JobStatus.BUSY)
        await self.ledger.update_status(job.uri, JobStatus.SUCCESS, expected=JobStatus.BUSY)
        logger.info("Initial sync job %s finished", job.uri)
        return DeltaSyncResult(SyncOutcome.SUCCESS, job_uri=job.uri, applied_files=1)

    async def _load(self, task: Task) -> None:
        dump = await self.producer.get_latest_dump()
        await self.ledger.update_status(task.uri, JobStatus.BUSY, expected=JobStatus.SCHEDULED)
        path = await self.producer.download_dump(dump)
        triples = read_dump(path)
        logger.info("Dump %s holds %d triple(s)", dump.id, len(triples))

        transformed = self.transform(ChangeSet(inserts=triples))
        headers = {self.settings.scope_header_name: self.settings.initial_sync_scope_id}
        for graph, batch in group_by_graph(transformed.inserts, self.settings.ingest_graph).items():
            await self.updater.apply(graph, batch, UpdateMode.INSERT, extra_headers=headers)

        # The release date of the dump becomes the watermark for the delta sync
        await self.ledger.attach_results_container(task, dump.issued, dump.id, dump.staging_name)

    async def _fail(self, job: Job, task: Task, message: str) -> None:
        await self.ledger.update_status(task.uri, JobStatus.FAILED)
        await self.ledger.store_job_error(job.uri, message)
        await self.ledger.update_status(job.uri, JobStatus.FAILED, expected=JobStatus.BUSY)
