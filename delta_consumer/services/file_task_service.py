"""Persistence of file sync tasks and their sub-statuses in the jobs graph."""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

from delta_consumer.exceptions import InvalidTransitionError
from delta_consumer.models.file_task import PAYLOAD_TYPES, AddPayload, FileTask, Stage
from delta_consumer.services.datetime_service import now_utc, parse_datetime
from delta_consumer.store.client import value_of
from delta_consumer.store.escape import escape_datetime, escape_int, escape_string, escape_uri
from delta_consumer.vocabulary import (
    SYNC_TASK_TYPE,
    TASK_TYPE,
    TASK_URI_PREFIX,
    FileTaskKind,
    JobStatus,
    SubStatus,
)

if TYPE_CHECKING:
    from delta_consumer.services.ledger_service import Ledger
    from delta_consumer.store.client import Row

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (JobStatus.SCHEDULED, JobStatus.BUSY)


class FileTaskLedger:
    """Creates, loads and advances file sync tasks.

    All writes carry the file sync scope header so that bookkeeping does not
    emit further deltas.  Sub-status writes are compare-and-set against the
    previous sub-status and refuse to move backwards.
    """

    def __init__(self, ledger: Ledger) -> None:
        self.ledger = ledger
        settings = ledger.settings
        self.headers = {settings.scope_header_name: settings.file_sync_scope_id}
        self.graph = ledger.graph

    async def create(self, kind: FileTaskKind, subject: str) -> FileTask:
        task_id = str(uuid.uuid4())
        uri = TASK_URI_PREFIX + task_id
        now = now_utc()
        payload = PAYLOAD_TYPES[kind]()
        stages = "".join(
            f"\n  {escape_uri(uri)} {escape_uri(stage)} {escape_uri(SubStatus.NOT_STARTED)} ."
            for stage in payload.stages
        )
        attempts = (
            f"\n  {escape_uri(uri)} ext:downloadAttempts {escape_int(0)} ."
            if isinstance(payload, AddPayload)
            else ""
        )
        await self.ledger.update(
            f"""
            INSERT DATA {{
              GRAPH {self.graph} {{
                {escape_uri(uri)} a {escape_uri(SYNC_TASK_TYPE)}, {escape_uri(TASK_TYPE)},
                    {escape_uri(kind)} ;
                  mu:uuid {escape_string(task_id)} ;
                  ext:subject {escape_string(subject)} ;
                  adms:status {escape_uri(JobStatus.SCHEDULED)} ;
                  task:operation {escape_uri(kind.operation)} ;
                  dct:creator {escape_uri(self.ledger.settings.job_creator_uri)} ;
                  dct:created {escape_datetime(now)} ;
                  dct:modified {escape_datetime(now)} .{stages}{attempts}
              }}
            }}
            """,
            headers=self.headers,
            description=f"creation of {kind.name} task for {subject}",
        )
        logger.info("Scheduled %s task %s for %s", kind.name, uri, subject)
        return FileTask(
            uri=uri,
            uuid=task_id,
            kind=kind,
            subject=subject,
            status=JobStatus.SCHEDULED,
            created=now,
            modified=now,
            payload=payload,
        )

    def _task_from_row(self, kind: FileTaskKind, row: Row) -> FileTask:
        payload = PAYLOAD_TYPES[kind]()
        for stage in payload.stages:
            status = value_of(row, stage.name.lower())
            setattr(payload, stage.attribute, SubStatus(status or SubStatus.NOT_STARTED))
        if isinstance(payload, AddPayload):
            payload.download_attempts = int(value_of(row, "attempts") or 0)
        return FileTask(
            uri=value_of(row, "task") or "",
            uuid=value_of(row, "uuid") or "",
            kind=kind,
            subject=value_of(row, "subject") or "",
            status=JobStatus(value_of(row, "status")),
            created=parse_datetime(value_of(row, "created") or ""),
            modified=parse_datetime(value_of(row, "modified") or ""),
            payload=payload,
        )

    async def _select(self, kind: FileTaskKind, condition: str) -> list[FileTask]:
        payload_type = PAYLOAD_TYPES[kind]
        optionals = "\n".join(
            f"OPTIONAL {{ ?task {escape_uri(stage)} ?{stage.name.lower()} . }}"
            for stage in payload_type.stages
        )
        rows = await self.ledger.query(
            f"""
            SELECT ?task ?uuid ?subject ?status ?created ?modified ?attempts
              {" ".join("?" + stage.name.lower() for stage in payload_type.stages)}
            WHERE {{
              GRAPH {self.graph} {{
                ?task a {escape_uri(SYNC_TASK_TYPE)}, {escape_uri(kind)} ;
                  mu:uuid ?uuid ;
                  ext:subject ?subject ;
                  adms:status ?status ;
                  dct:created ?created ;
                  dct:modified ?modified .
                {optionals}
                OPTIONAL {{ ?task ext:downloadAttempts ?attempts . }}
                {condition}
              }}
            }}
            ORDER BY ?created
            """
        )
        return [self._task_from_row(kind, row) for row in rows]

    async def get_active(self, kind: FileTaskKind) -> list[FileTask]:
        """Tasks of ``kind`` that are scheduled or busy, oldest first."""
        statuses = ", ".join(escape_uri(s) for s in ACTIVE_STATUSES)
        return await self._select(kind, f"FILTER(?status IN ({statuses}))")

    async def get_for_subject(self, kind: FileTaskKind, subject: str) -> list[FileTask]:
        return await self._select(kind, f"FILTER(?subject = {escape_string(subject)})")

    async def set_status(self, task: FileTask, status: JobStatus) -> None:
        if task.status == status:
            return
        applied = await self.ledger.update_status(
            task.uri, status, expected=task.status, headers=self.headers
        )
        if not applied:
            msg = f"Task {task.uri} was modified concurrently; expected status {task.status.label}"
            raise InvalidTransitionError(msg)
        task.status = status

    async def set_stage(self, task: FileTask, stage: Stage, new: SubStatus) -> None:
        """Advance ``stage`` of ``task`` to ``new``, in memory and in the store."""
        previous = task.stage_status(stage)
        if previous == new:
            return
        task.advance(stage, new)
        applied = await self.ledger.compare_and_set(
            task.uri, stage, new, expected=previous, headers=self.headers
        )
        if not applied:
            setattr(task.payload, stage.attribute, previous)
            msg = f"{stage.name} status of task {task.uri} was not {previous.label} in the store"
            raise InvalidTransitionError(msg)
        logger.info("%s status of %s: %s -> %s", stage.name, task.uri, previous.label, new.label)

    async def record_download_attempt(self, task: FileTask) -> int:
        """Increment and persist the download attempt counter of an add task."""
        if not isinstance(task.payload, AddPayload):
            msg = f"Task {task.uri} is not a {FileTaskKind.ADD.name} task"
            raise TypeError(msg)
        attempts = task.payload.download_attempts + 1
        subject = escape_uri(task.uri)
        await self.ledger.update(
            f"""
            DELETE {{ GRAPH {self.graph} {{ {subject} ext:downloadAttempts ?attempts . }} }}
            INSERT {{
              GRAPH {self.graph} {{ {subject} ext:downloadAttempts {escape_int(attempts)} . }}
            }}
            WHERE {{
              GRAPH {self.graph} {{ OPTIONAL {{ {subject} ext:downloadAttempts ?attempts . }} }}
            }}
            """,
            headers=self.headers,
            description=f"download attempt count of <{task.uri}>",
        )
        task.payload.download_attempts = attempts
        return attempts
