"""Delta fetch and apply pipeline.

One run computes the watermark, lists the change-files created after it and
ingests them strictly in creation order inside a single job, one chained task
per file.  A failing file stops the job: later files are never applied on top
of a partially ingested one.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from delta_consumer.exceptions import JobAlreadyRunningError, StoreError, WatermarkUnavailableError
from delta_consumer.models.delta import parse_change_sets
from delta_consumer.services.datetime_service import format_iso, parse_datetime
from delta_consumer.store.updater import UpdateMode
from delta_consumer.vocabulary import JobStatus

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime

    from delta_consumer.config import Settings
    from delta_consumer.dispatch.base import Transform
    from delta_consumer.models.delta import ChangeSet, DeltaFile, Triple
    from delta_consumer.models.job import Job, Task
    from delta_consumer.services.ledger_service import Ledger
    from delta_consumer.services.producer_client import ProducerClient
    from delta_consumer.store.updater import BatchedUpdater

logger = logging.getLogger(__name__)


class SyncOutcome(StrEnum):
    SKIPPED = "skipped"
    WAITING = "waiting-for-initial-sync"
    UP_TO_DATE = "up-to-date"
    SUCCESS = "success"
    FAILED = "failed"
    BUSY = "busy"


@dataclass
class DeltaSyncResult:
    outcome: SyncOutcome
    job_uri: str | None = None
    applied_files: int = 0


def partition(
    triples: Sequence[Triple], prefixes: Sequence[str]
) -> tuple[list[Triple], list[Triple]]:
    """Split ``triples`` into (regular, file-related) keeping their order.

    A triple is file-related when its subject starts with one of ``prefixes``.
    """
    regular: list[Triple] = []
    files: list[Triple] = []
    for triple in triples:
        if any(triple.subject.value.startswith(prefix) for prefix in prefixes):
            files.append(triple)
        else:
            regular.append(triple)
    return regular, files


def group_by_graph(triples: Sequence[Triple], default_graph: str) -> dict[str, list[Triple]]:
    """Group ``triples`` by target graph, preserving first-seen graph and triple order."""
    groups: dict[str, list[Triple]] = {}
    for triple in triples:
        graph = triple.graph.value if triple.graph is not None else default_graph
        groups.setdefault(graph, []).append(triple)
    return groups


class DeltaSyncService:
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
        """Run the pipeline if it is enabled and the initial sync has completed.

        Never raises: errors that happen before a job exists are logged and
        stored as standalone error resources.
        """
        if self.settings.disable_delta_ingest:
            logger.warning("Automated delta ingest disabled")
            return DeltaSyncResult(SyncOutcome.SKIPPED)
        try:
            if self.settings.wait_for_initial_sync and not await self._initial_sync_succeeded():
                logger.info("No successful initial sync job found. Not ingesting deltas.")
                return DeltaSyncResult(SyncOutcome.WAITING)
            return await self.run()
        except Exception as exc:
            logger.error("Delta sync failed: %s", exc, exc_info=True)
            try:
                await self.ledger.store_error(f"Unexpected error while ingesting: {exc}")
            except StoreError:
                logger.exception("Could not store delta sync error")
            return DeltaSyncResult(SyncOutcome.FAILED)

    async def _initial_sync_succeeded(self) -> bool:
        job = await self.ledger.get_latest_job_for_operation(
            self.settings.initial_sync_job_operation
        )
        return job is not None and job.status == JobStatus.SUCCESS

    async def compute_watermark(self) -> datetime:
        """Return the timestamp of the newest consumed change-file.

        Falls back to ``START_FROM_DELTA_TIMESTAMP``; raises
        WatermarkUnavailableError when neither exists.
        """
        latest = await self.ledger.get_latest_delta_timestamp()
        if latest is not None:
            return latest
        if self.settings.start_from_delta_timestamp:
            logger.info(
                "No previous delta file found, starting from configured timestamp %s",
                self.settings.start_from_delta_timestamp,
            )
            return parse_datetime(self.settings.start_from_delta_timestamp)
        msg = (
            "No previous delta file timestamp found in the jobs graph and "
            "START_FROM_DELTA_TIMESTAMP is not configured"
        )
        raise WatermarkUnavailableError(msg)

    async def run(self) -> DeltaSyncResult:
        since = await self.compute_watermark()
        logger.info("Fetching delta files created after %s", format_iso(since))
        files = await self.producer.list_delta_files(since)
        if not files:
            logger.info("No new delta files since %s", format_iso(since))
            return DeltaSyncResult(SyncOutcome.UP_TO_DATE)

        try:
            job = await self.ledger.create_job(self.settings.delta_sync_job_operation)
        except JobAlreadyRunningError as exc:
            logger.info("%s; not starting another delta sync", exc)
            return DeltaSyncResult(SyncOutcome.BUSY, job_uri=exc.job_uri)

        logger.info("Job %s: ingesting %d delta file(s)", job.uri, len(files))
        return await self._ingest_all(job, files)

    async def _ingest_all(self, job: Job, files: list[DeltaFile]) -> DeltaSyncResult:
        parent: Task | None = None
        applied = 0
        for index, delta_file in enumerate(files):
            task: Task | None = None
            try:
                task = await self.ledger.create_delta_sync_task(
                    job, index, JobStatus.BUSY, delta_file, parent
                )
                await self.ingest_file(delta_file)
                await self.ledger.update_status(
                    task.uri, JobStatus.SUCCESS, expected=JobStatus.BUSY
                )
            except Exception as exc:
                logger.error(
                    "Ingesting delta file %s failed: %s", delta_file.id, exc, exc_info=True
                )
                message = f"Ingesting delta file {delta_file.id} failed: {exc}"
                await self._fail_job(job, task, message)
                return DeltaSyncResult(SyncOutcome.FAILED, job_uri=job.uri, applied_files=applied)
            applied += 1
            parent = task
            self._discard(delta_file)

        await self.ledger.update_status(job.uri, JobStatus.SUCCESS, expected=JobStatus.BUSY)
        logger.info("Job %s finished: %d delta file(s) ingested", job.uri, applied)
        return DeltaSyncResult(SyncOutcome.SUCCESS, job_uri=job.uri, applied_files=applied)

    async def _fail_job(self, job: Job, task: Task | None, message: str) -> None:
        if task is not None:
            await self.ledger.update_status(task.uri, JobStatus.FAILED)
        await self.ledger.store_job_error(job.uri, message)
        await self.ledger.update_status(job.uri, JobStatus.FAILED, expected=JobStatus.BUSY)

    async def ingest_file(self, delta_file: DeltaFile) -> None:
        """Download, decode and apply one change-file, change set by change set."""
        path = await self.producer.download_delta_file(delta_file)
        change_sets = parse_change_sets(json.loads(path.read_text(encoding="utf-8")))
        logger.info("Delta file %s holds %d change set(s)", delta_file.id, len(change_sets))
        for change_set in change_sets:
            await self.apply_change_set(change_set)

    async def apply_change_set(self, change_set: ChangeSet) -> None:
        """Transform, partition and apply one change set.

        Regular deletes go first, then regular inserts.  File-related inserts
        are staged in the temporary file graph and file-related deletes in the
        temporary removal graph, where the file sync picks them up.
        """
        transformed = self.transform(change_set)
        prefixes = self.settings.file_prefixes
        regular_deletes, file_deletes = partition(transformed.deletes, prefixes)
        regular_inserts, file_inserts = partition(transformed.inserts, prefixes)

        ingest_graph = self.settings.ingest_graph
        for graph, triples in group_by_graph(regular_deletes, ingest_graph).items():
            await self.updater.apply(graph, triples, UpdateMode.DELETE)
        for graph, triples in group_by_graph(regular_inserts, ingest_graph).items():
            await self.updater.apply(graph, triples, UpdateMode.INSERT)

        await self.updater.apply(self.settings.temp_file_graph, file_inserts, UpdateMode.INSERT)
        await self.updater.apply(
            self.settings.temp_file_removal_graph, file_deletes, UpdateMode.INSERT
        )

    def _discard(self, delta_file: DeltaFile) -> None:
        if self.settings.keep_delta_files or delta_file.path is None:
            return
        try:
            delta_file.path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove delta file %s: %s", delta_file.path, exc)
