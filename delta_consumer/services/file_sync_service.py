"""File synchronization: scheduling and running add, remove and update tasks.

Each pass re-derives its work from the store: unfinished tasks are resumed
from their persisted sub-statuses, then new tasks are scheduled for staged
metadata.  Tasks for different files run concurrently; the stages of one task
run strictly in order, driven by ``_drive`` until the task is finished or has
to wait for a later pass.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from delta_consumer.exceptions import ProducerError, StoreError, UnsafePathError
from delta_consumer.models.file_task import AddPayload, Stage
from delta_consumer.vocabulary import FileTaskKind, JobStatus, SubStatus

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from delta_consumer.config import Settings
    from delta_consumer.filesystem.file_storage import FileStorage
    from delta_consumer.models.file_task import FileTask
    from delta_consumer.services.file_metadata_service import FileMetadata
    from delta_consumer.services.file_task_service import FileTaskLedger
    from delta_consumer.services.ledger_service import Ledger
    from delta_consumer.services.producer_client import ProducerClient

logger = logging.getLogger(__name__)


@dataclass
class FileSyncReport:
    """Outcome of one file sync pass, by task kind."""

    succeeded: dict[str, int] = field(default_factory=dict)
    failed: dict[str, int] = field(default_factory=dict)
    pending: dict[str, int] = field(default_factory=dict)
    skipped: bool = False

    def count(self, task: FileTask) -> None:
        if task.status == JobStatus.SUCCESS:
            bucket = self.succeeded
        elif task.status == JobStatus.FAILED:
            bucket = self.failed
        else:
            bucket = self.pending
        bucket[task.kind.name] = bucket.get(task.kind.name, 0) + 1


class FileSyncService:
    def __init__(
        self,
        settings: Settings,
        ledger: Ledger,
        tasks: FileTaskLedger,
        metadata: FileMetadata,
        storage: FileStorage,
        producer: ProducerClient,
    ) -> None:
        self.settings = settings
        self.ledger = ledger
        self.tasks = tasks
        self.metadata = metadata
        self.storage = storage
        self.producer = producer
        # A handler works on an ongoing stage.  It returns True once the stage
        # is terminal, False when the stage has to wait for a later pass.
        self._handlers: dict[Stage, Callable[[FileTask], Awaitable[bool]]] = {
            Stage.DOWNLOAD: self._download,
            Stage.REMAPPING: self._remap,
            Stage.MOVING: self._move,
            Stage.REMOVE: self._remove,
            Stage.UPDATE: self._update,
        }

    async def start(self) -> FileSyncReport:
        """Run one pass unless file ingest is disabled; failures are logged and stored."""
        if self.settings.disable_file_ingest:
            logger.warning("Automated file ingest disabled")
            return FileSyncReport(skipped=True)
        try:
            report = await self.run()
        except Exception as exc:
            logger.error("File sync failed: %s", exc, exc_info=True)
            await self.ledger.store_error(f"Unexpected error while syncing files: {exc}")
            raise
        logger.info(
            "File sync finished: succeeded=%s failed=%s pending=%s",
            report.succeeded,
            report.failed,
            report.pending,
        )
        return report

    async def run(self) -> FileSyncReport:
        report = FileSyncReport()
        for kind, candidates in (
            (FileTaskKind.ADD, self.metadata.add_candidates),
            (FileTaskKind.REMOVE, self.metadata.remove_candidates),
            (FileTaskKind.UPDATE, self.metadata.update_candidates),
        ):
            batch = await self.tasks.get_active(kind)
            for subject in await candidates():
                batch.append(await self.tasks.create(kind, subject))
            await self._run_concurrently(batch)
            for task in batch:
                report.count(task)
        return report

    async def _run_concurrently(self, batch: list[FileTask]) -> None:
        semaphore = asyncio.Semaphore(self.settings.file_sync_concurrency)

        async def guarded(task: FileTask) -> None:
            async with semaphore:
                await self.run_task(task)

        await asyncio.gather(*(guarded(task) for task in batch))

    async def run_task(self, task: FileTask) -> None:
        """Drive one task as far as it can go in this pass.

        Errors are isolated to the task: they are logged and stored, and the
        task is finished according to whatever sub-statuses were reached.
        """
        try:
            await self._begin(task)
            await self._drive(task)
        except Exception as exc:
            logger.error("%s task %s failed: %s", task.kind.name, task.uri, exc, exc_info=True)
            await self._store_error_quietly(f"{task.kind.name} task {task.uri} failed: {exc}")
        try:
            await self._finish(task)
        except StoreError as exc:
            logger.error("Could not finish %s task %s: %s", task.kind.name, task.uri, exc)
            await self._store_error_quietly(f"Could not finish task {task.uri}: {exc}")

    async def _store_error_quietly(self, message: str) -> None:
        try:
            await self.ledger.store_error(message)
        except StoreError:
            logger.exception("Could not store error: %s", message)

    async def _begin(self, task: FileTask) -> None:
        if task.status == JobStatus.SCHEDULED:
            await self.tasks.set_status(task, JobStatus.BUSY)
        elif task.status != JobStatus.BUSY:
            msg = f"Task {task.uri} cannot be started: it already finished as {task.status.label}"
            raise ValueError(msg)

    async def _drive(self, task: FileTask) -> None:
        while not task.has_failed_stage and not task.all_stages_succeeded:
            stage = next(
                s for s in task.payload.stages if task.stage_status(s) != SubStatus.SUCCESS
            )
            if task.stage_status(stage) == SubStatus.NOT_STARTED:
                await self.tasks.set_stage(task, stage, SubStatus.ONGOING)
                continue
            if not await self._handlers[stage](task):
                logger.info("%s task %s waits in stage %s", task.kind.name, task.uri, stage.name)
                return

    async def _finish(self, task: FileTask) -> None:
        if task.all_stages_succeeded:
            await self.tasks.set_status(task, JobStatus.SUCCESS)
        elif task.has_failed_stage:
            await self.tasks.set_status(task, JobStatus.FAILED)
            await self._mark_failure(task)

    async def _mark_failure(self, task: FileTask) -> None:
        """Flag the task's subject so that it is never scheduled again."""
        if task.kind == FileTaskKind.ADD:
            await self.metadata.mark_failure_by_uuid(task.subject)
        elif task.kind == FileTaskKind.REMOVE:
            await self.metadata.mark_failure_by_uuid(task.subject, self.metadata.removal_graph)
        else:
            await self.metadata.mark_failure_by_uri(task.subject)
        logger.error("%s task %s failed permanently for %s", task.kind.name, task.uri, task.subject)

    async def _fail_stage(self, task: FileTask, stage: Stage, exc: Exception) -> bool:
        logger.error("%s of %s failed: %s", stage.name, task.subject, exc, exc_info=exc)
        await self.tasks.set_stage(task, stage, SubStatus.FAILURE)
        await self._store_error_quietly(f"{stage.name} of {task.subject} failed: {exc}")
        return True

    # ── Add ───────────────────────────────────────────

    async def _download(self, task: FileTask) -> bool:
        """Make one download attempt; fail the stage once no attempts are left.

        An unsafe target path fails the stage without using up an attempt.
        """
        assert isinstance(task.payload, AddPayload)
        physical = await self.metadata.physical_uri(task.subject)
        if physical is None:
            return False
        try:
            path = self.storage.path_for(physical)
        except UnsafePathError as exc:
            return await self._fail_stage(task, Stage.DOWNLOAD, exc)
        try:
            await self.producer.download_file_body(task.subject, path, self.storage)
        except (ProducerError, OSError) as exc:
            attempts = await self.tasks.record_download_attempt(task)
            if attempts >= self.settings.max_download_attempts:
                return await self._fail_stage(task, Stage.DOWNLOAD, exc)
            logger.warning(
                "Download attempt %d/%d for %s failed: %s",
                attempts,
                self.settings.max_download_attempts,
                task.subject,
                exc,
            )
            return False

        await self.tasks.record_download_attempt(task)
        await self.tasks.set_stage(task, Stage.DOWNLOAD, SubStatus.SUCCESS)
        return True

    async def _remap(self, task: FileTask) -> bool:
        """Move the body to its remapped location and rename the staged physical file."""
        try:
            if not await self.metadata.is_metadata_full(task.subject):
                return False
            physical = await self.metadata.physical_uri(task.subject)
            if physical is None:
                return False
            remapped = self.storage.transform_uri(physical)
            if remapped is not None and remapped != physical:
                self.storage.move(self.storage.path_for(physical), self.storage.path_for(remapped))
                await self.metadata.replace_physical_uri(physical, remapped)
                logger.info("Remapped %s to %s", physical, remapped)
        except (StoreError, ValueError, OSError) as exc:
            return await self._fail_stage(task, Stage.REMAPPING, exc)
        await self.tasks.set_stage(task, Stage.REMAPPING, SubStatus.SUCCESS)
        return True

    async def _move(self, task: FileTask) -> bool:
        """Move the complete metadata from the staging graph into the ingest graph."""
        try:
            if not await self.metadata.is_metadata_full(task.subject):
                return False
            await self.metadata.move_to_ingest(task.subject)
        except StoreError as exc:
            return await self._fail_stage(task, Stage.MOVING, exc)
        await self.tasks.set_stage(task, Stage.MOVING, SubStatus.SUCCESS)
        return True

    # ── Remove ────────────────────────────────────────

    async def _remove(self, task: FileTask) -> bool:
        """Remove metadata and body once the full description is staged for removal."""
        removal_graph = self.metadata.removal_graph
        try:
            if not await self.metadata.is_metadata_full(task.subject, removal_graph):
                return False
            physical = await self.metadata.physical_uri(task.subject, removal_graph)
            if physical is None:
                return False
            current = await self.metadata.current_identity(physical)
            path = self.storage.path_for(current)
            await self.metadata.remove_from_ingest(task.subject, current)
            await self.metadata.remove_from_removal_graph(task.subject)
            self.storage.delete(path)
        except (StoreError, ValueError, OSError) as exc:
            return await self._fail_stage(task, Stage.REMOVE, exc)
        await self.tasks.set_stage(task, Stage.REMOVE, SubStatus.SUCCESS)
        return True

    # ── Update ────────────────────────────────────────

    async def _update(self, task: FileTask) -> bool:
        """Replace the staged predicates on the newest identity of the subject."""
        try:
            target = await self.metadata.current_identity(task.subject)
            await self.metadata.apply_update(task.subject, target)
        except StoreError as exc:
            return await self._fail_stage(task, Stage.UPDATE, exc)
        await self.tasks.set_stage(task, Stage.UPDATE, SubStatus.SUCCESS)
        return True
