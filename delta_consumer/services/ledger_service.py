"""Job/task ledger persisted in the jobs graph of the triple store.

The ledger is the only record of what has been consumed: every write goes
straight to the store and failures propagate to the caller.
"""

from __future__ import annotations

import functools
import logging
import uuid
from typing import TYPE_CHECKING

from delta_consumer.exceptions import JobAlreadyRunningError
from delta_consumer.models.job import ErrorRecord, Job, Task
from delta_consumer.services.datetime_service import now_utc, parse_datetime
from delta_consumer.store.client import value_of
from delta_consumer.store.escape import escape_datetime, escape_string, escape_uri
from delta_consumer.store.updater import BatchedUpdater, with_retry
from delta_consumer.vocabulary import (
    CONTAINER_URI_PREFIX,
    DATA_CONTAINER_TYPE,
    DELTA_ERROR_TYPE,
    DELTA_FILE_INFO_SUBJECT,
    DELTA_SYNC_TASK_OPERATION,
    ERROR_TYPE,
    ERROR_URI_PREFIX,
    INITIAL_SYNC_TASK_OPERATION,
    JOB_TYPE,
    JOB_URI_PREFIX,
    PREFIXES,
    TASK_TYPE,
    TASK_URI_PREFIX,
    JobStatus,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence
    from datetime import datetime

    from delta_consumer.config import Settings
    from delta_consumer.models.delta import DeltaFile
    from delta_consumer.store.client import Row, SparqlClient

logger = logging.getLogger(__name__)


def _status_filter(statuses: Iterable[JobStatus], negate: bool = False) -> str:
    values = ", ".join(escape_uri(s) for s in statuses)
    if not values:
        return ""
    return f"FILTER(?status {'NOT IN' if negate else 'IN'} ({values}))"


class Ledger:
    """Records jobs, tasks and errors as RDF resources in the jobs graph."""

    def __init__(
        self,
        client: SparqlClient,
        settings: Settings,
        updater: BatchedUpdater | None = None,
    ) -> None:
        self.client = client
        self.settings = settings
        self.graph = escape_uri(settings.jobs_graph)
        self.updater = updater or BatchedUpdater.from_settings(client, settings)

    async def query(self, text: str) -> list[Row]:
        return await with_retry(
            functools.partial(self.client.query, PREFIXES + text),
            max_attempts=self.updater.max_attempts,
            backoff_seconds=self.updater.retry_backoff,
            description="ledger query",
        )

    async def update(
        self, text: str, headers: dict[str, str] | None = None, description: str = "ledger update"
    ) -> None:
        await self.updater.run(PREFIXES + text, headers=headers, description=description)

    # ── Jobs ──────────────────────────────────────────

    async def create_job(
        self,
        operation: str,
        *,
        status: JobStatus = JobStatus.BUSY,
        creator: str | None = None,
    ) -> Job:
        """Create a job for ``operation``.

        A busy job is only inserted when no other job of the same operation is
        busy; otherwise JobAlreadyRunningError is raised.
        """
        job_id = str(uuid.uuid4())
        uri = JOB_URI_PREFIX + job_id
        creator = creator or self.settings.job_creator_uri
        now = now_utc()
        body = f"""
            {escape_uri(uri)} a {escape_uri(JOB_TYPE)} ;
              mu:uuid {escape_string(job_id)} ;
              dct:creator {escape_uri(creator)} ;
              adms:status {escape_uri(status)} ;
              dct:created {escape_datetime(now)} ;
              dct:modified {escape_datetime(now)} ;
              task:operation {escape_uri(operation)} .
        """

        if status != JobStatus.BUSY:
            await self.update(f"INSERT DATA {{ GRAPH {self.graph} {{ {body} }} }}")
        else:
            await self.update(
                f"""
                INSERT {{ GRAPH {self.graph} {{ {body} }} }}
                WHERE {{
                  FILTER NOT EXISTS {{
                    GRAPH {self.graph} {{
                      ?other a {escape_uri(JOB_TYPE)} ;
                        task:operation {escape_uri(operation)} ;
                        adms:status {escape_uri(JobStatus.BUSY)} .
                    }}
                  }}
                }}
                """
            )
            if await self.get_status(uri) is None:
                running = await self.get_jobs(operation, status_in=[JobStatus.BUSY])
                raise JobAlreadyRunningError(operation, running[0].uri if running else None)

        logger.info("Created job %s for operation %s", uri, operation)
        return Job(
            uri=uri,
            uuid=job_id,
            operation=operation,
            status=status,
            creator=creator,
            created=now,
            modified=now,
        )

    def _job_from_row(self, row: Row, uri: str | None = None) -> Job:
        return Job(
            uri=uri or value_of(row, "job") or "",
            uuid=value_of(row, "uuid") or "",
            operation=value_of(row, "operation") or "",
            status=JobStatus(value_of(row, "status")),
            creator=value_of(row, "creator") or "",
            created=parse_datetime(value_of(row, "created") or ""),
            modified=parse_datetime(value_of(row, "modified") or ""),
            error=value_of(row, "error"),
        )

    async def load_job(self, uri: str) -> Job | None:
        """Load a job with the URIs of its tasks, ordered by task index."""
        job = escape_uri(uri)
        rows = await self.query(
            f"""
            SELECT ?uuid ?operation ?status ?creator ?created ?modified ?error WHERE {{
              GRAPH {self.graph} {{
                {job} a {escape_uri(JOB_TYPE)} ;
                  mu:uuid ?uuid ;
                  task:operation ?operation ;
                  adms:status ?status ;
                  dct:creator ?creator ;
                  dct:created ?created ;
                  dct:modified ?modified .
                OPTIONAL {{ {job} task:error ?error . }}
              }}
            }}
            LIMIT 1
            """
        )
        if not rows:
            return None
        result = self._job_from_row(rows[0], uri=uri)
        result.tasks = [task.uri for task in await self.get_tasks(uri)]
        return result

    async def get_latest_job_for_operation(
        self, operation: str, creator: str | None = None
    ) -> Job | None:
        creator = creator or self.settings.job_creator_uri
        rows = await self.query(
            f"""
            SELECT ?job WHERE {{
              GRAPH {self.graph} {{
                ?job a {escape_uri(JOB_TYPE)} ;
                  task:operation {escape_uri(operation)} ;
                  dct:creator {escape_uri(creator)} ;
                  dct:created ?created .
              }}
            }}
            ORDER BY DESC(?created)
            LIMIT 1
            """
        )
        uri = value_of(rows[0], "job") if rows else None
        return await self.load_job(uri) if uri else None

    async def get_jobs(
        self,
        operation: str,
        status_in: Sequence[JobStatus] = (),
        status_not_in: Sequence[JobStatus] = (),
    ) -> list[Job]:
        """List the jobs of ``operation`` (without their tasks), oldest first."""
        rows = await self.query(
            f"""
            SELECT DISTINCT ?job ?uuid ?operation ?status ?creator ?created ?modified WHERE {{
              GRAPH {self.graph} {{
                ?job a {escape_uri(JOB_TYPE)} ;
                  task:operation ?operation ;
                  mu:uuid ?uuid ;
                  adms:status ?status ;
                  dct:creator ?creator ;
                  dct:created ?created ;
                  dct:modified ?modified .
                FILTER(?operation = {escape_uri(operation)})
                {_status_filter(status_in)}
                {_status_filter(status_not_in, negate=True)}
              }}
            }}
            ORDER BY ?created
            """
        )
        return [self._job_from_row(row) for row in rows]

    async def get_status(self, uri: str) -> JobStatus | None:
        rows = await self.query(
            f"""
            SELECT ?status WHERE {{
              GRAPH {self.graph} {{ {escape_uri(uri)} adms:status ?status . }}
            }}
            """
        )
        status = value_of(rows[0], "status") if rows else None
        return JobStatus(status) if status else None

    async def compare_and_set(
        self,
        uri: str,
        predicate: str,
        value: str,
        *,
        expected: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> bool:
        """Replace the ``predicate`` value of ``uri`` and bump ``dct:modified``.

        With ``expected`` the write only applies while the recorded value
        equals it.  Returns whether the record now holds ``value``.
        """
        subject = escape_uri(uri)
        condition = f"FILTER(?current = {escape_uri(expected)})" if expected else ""
        now = escape_datetime(now_utc())
        await self.update(
            f"""
            DELETE {{
              GRAPH {self.graph} {{
                {subject} {escape_uri(predicate)} ?current .
                {subject} dct:modified ?modified .
              }}
            }}
            INSERT {{
              GRAPH {self.graph} {{
                {subject} {escape_uri(predicate)} {escape_uri(value)} .
                {subject} dct:modified {now} .
              }}
            }}
            WHERE {{
              GRAPH {self.graph} {{
                {subject} {escape_uri(predicate)} ?current .
                OPTIONAL {{ {subject} dct:modified ?modified . }}
                {condition}
              }}
            }}
            """,
            headers=headers,
            description=f"status update of <{uri}>",
        )
        if expected is None:
            return True
        rows = await self.query(
            f"""
            SELECT ?current WHERE {{
              GRAPH {self.graph} {{ {subject} {escape_uri(predicate)} ?current . }}
            }}
            """
        )
        return [value_of(row, "current") for row in rows] == [value]

    async def update_status(
        self,
        uri: str,
        status: JobStatus,
        *,
        expected: JobStatus | None = None,
        headers: dict[str, str] | None = None,
    ) -> bool:
        """Set the status of a job or task; see ``compare_and_set``."""
        applied = await self.compare_and_set(
            uri,
            "http://www.w3.org/ns/adms#status",
            status,
            expected=expected,
            headers=headers,
        )
        if applied:
            logger.info("Status of %s set to %s", uri, status.label)
        else:
            logger.warning(
                "Status of %s not set to %s: recorded status is not %s",
                uri,
                status.label,
                expected.label if expected else "-",
            )
        return applied

    async def fail_busy_jobs(self, operation: str) -> int:
        """Fail every busy job of ``operation`` together with its unfinished tasks.

        Run at startup: a job still busy then cannot have survived the restart.
        """
        jobs = await self.get_jobs(operation, status_in=[JobStatus.BUSY])
        logger.info("Found %d hanging job(s) for %s, failing them", len(jobs), operation)
        now = escape_datetime(now_utc())
        for job in jobs:
            await self.update(
                f"""
                DELETE {{
                  GRAPH {self.graph} {{ ?task adms:status ?status ; dct:modified ?modified . }}
                }}
                INSERT {{
                  GRAPH {self.graph} {{
                    ?task adms:status {escape_uri(JobStatus.FAILED)} ; dct:modified {now} .
                  }}
                }}
                WHERE {{
                  GRAPH {self.graph} {{
                    ?task dct:isPartOf {escape_uri(job.uri)} ;
                      adms:status ?status .
                    OPTIONAL {{ ?task dct:modified ?modified . }}
                    {_status_filter([JobStatus.BUSY, JobStatus.SCHEDULED])}
                  }}
                }}
                """
            )
            await self.update_status(job.uri, JobStatus.FAILED, expected=JobStatus.BUSY)
        return len(jobs)

    async def cleanup_job(self, job_uri: str) -> None:
        """Delete a job, its tasks and their results containers."""
        job = escape_uri(job_uri)
        await self.update(
            f"""
            DELETE {{ GRAPH {self.graph} {{ ?container ?p ?o . }} }}
            WHERE {{
              GRAPH {self.graph} {{
                ?task dct:isPartOf {job} ;
                  task:resultsContainer ?container .
                ?container ?p ?o .
              }}
            }}
            """
        )
        await self.update(
            f"""
            DELETE {{ GRAPH {self.graph} {{ ?task ?p ?o . }} }}
            WHERE {{ GRAPH {self.graph} {{ ?task dct:isPartOf {job} ; ?p ?o . }} }}
            """
        )
        await self.update(
            f"""
            DELETE {{ GRAPH {self.graph} {{ {job} ?p ?o . }} }}
            WHERE {{ GRAPH {self.graph} {{ {job} ?p ?o . }} }}
            """
        )
        logger.info("Removed job %s and its tasks", job_uri)

    async def cleanup_jobs(self, operation: str) -> int:
        jobs = await self.get_jobs(operation)
        for job in jobs:
            await self.cleanup_job(job.uri)
        return len(jobs)

    # ── Tasks ─────────────────────────────────────────

    async def create_task(
        self,
        job_uri: str,
        index: int,
        operation: str,
        status: JobStatus = JobStatus.SCHEDULED,
        parents: Sequence[str] = (),
    ) -> Task:
        task_id = str(uuid.uuid4())
        uri = TASK_URI_PREFIX + task_id
        now = now_utc()
        depends = "".join(
            f"\n  {escape_uri(uri)} cogs:dependsOn {escape_uri(parent)} ." for parent in parents
        )
        await self.update(
            f"""
            INSERT DATA {{
              GRAPH {self.graph} {{
                {escape_uri(uri)} a {escape_uri(TASK_TYPE)} ;
                  mu:uuid {escape_string(task_id)} ;
                  adms:status {escape_uri(status)} ;
                  dct:created {escape_datetime(now)} ;
                  dct:modified {escape_datetime(now)} ;
                  task:operation {escape_uri(operation)} ;
                  task:index {escape_string(str(index))} ;
                  dct:isPartOf {escape_uri(job_uri)} .{depends}
              }}
            }}
            """
        )
        return Task(
            uri=uri,
            uuid=task_id,
            job_uri=job_uri,
            index=index,
            operation=operation,
            status=status,
            created=now,
            modified=now,
            parents=list(parents),
        )

    async def attach_results_container(
        self, task: Task, timestamp: datetime, file_id: str, file_name: str
    ) -> str:
        """Record the consumed delta position of ``task``; this is the watermark source."""
        container_id = str(uuid.uuid4())
        container = escape_uri(CONTAINER_URI_PREFIX + container_id)
        await self.update(
            f"""
            INSERT DATA {{
              GRAPH {self.graph} {{
                {container} a {escape_uri(DATA_CONTAINER_TYPE)} ;
                  dct:subject {escape_uri(DELTA_FILE_INFO_SUBJECT)} ;
                  mu:uuid {escape_string(container_id)} ;
                  ext:hasDeltafileTimestamp {escape_datetime(timestamp)} ;
                  ext:hasDeltafileId {escape_string(file_id)} ;
                  ext:hasDeltafileName {escape_string(file_name)} .
                {escape_uri(task.uri)} task:resultsContainer {container} ;
                  task:inputContainer {container} .
              }}
            }}
            """
        )
        task.results_container = CONTAINER_URI_PREFIX + container_id
        return task.results_container

    async def create_delta_sync_task(
        self,
        job: Job,
        index: int,
        status: JobStatus,
        delta_file: DeltaFile,
        parent: Task | None = None,
    ) -> Task:
        """Create the task ingesting ``delta_file``, chained to ``parent``."""
        task = await self.create_task(
            job.uri,
            index,
            DELTA_SYNC_TASK_OPERATION,
            status,
            parents=[parent.uri] if parent else [],
        )
        await self.attach_results_container(
            task, delta_file.created, delta_file.id, delta_file.name
        )
        return task

    async def get_tasks(self, job_uri: str) -> list[Task]:
        rows = await self.query(
            f"""
            SELECT ?task ?uuid ?index ?operation ?status ?created ?modified ?parent ?container
            WHERE {{
              GRAPH {self.graph} {{
                ?task dct:isPartOf {escape_uri(job_uri)} ;
                  mu:uuid ?uuid ;
                  task:index ?index ;
                  task:operation ?operation ;
                  adms:status ?status ;
                  dct:created ?created ;
                  dct:modified ?modified .
                OPTIONAL {{ ?task cogs:dependsOn ?parent . }}
                OPTIONAL {{ ?task task:resultsContainer ?container . }}
              }}
            }}
            """
        )
        tasks: dict[str, Task] = {}
        for row in rows:
            uri = value_of(row, "task") or ""
            task = tasks.get(uri)
            if task is None:
                task = Task(
                    uri=uri,
                    uuid=value_of(row, "uuid") or "",
                    job_uri=job_uri,
                    index=int(value_of(row, "index") or 0),
                    operation=value_of(row, "operation") or "",
                    status=JobStatus(value_of(row, "status")),
                    created=parse_datetime(value_of(row, "created") or ""),
                    modified=parse_datetime(value_of(row, "modified") or ""),
                    results_container=value_of(row, "container"),
                )
                tasks[uri] = task
            parent = value_of(row, "parent")
            if parent and parent not in task.parents:
                task.parents.append(parent)
        return sorted(tasks.values(), key=lambda t: t.index)

    async def get_latest_delta_timestamp(self) -> datetime | None:
        """Timestamp of the newest delta file consumed by a successful task."""
        rows = await self.query(
            f"""
            SELECT ?deltaTimestamp WHERE {{
              GRAPH {self.graph} {{
                ?job a {escape_uri(JOB_TYPE)} ;
                  task:operation ?operation ;
                  dct:creator {escape_uri(self.settings.job_creator_uri)} .
                ?task a {escape_uri(TASK_TYPE)} ;
                  dct:isPartOf ?job ;
                  adms:status {escape_uri(JobStatus.SUCCESS)} ;
                  task:operation ?taskOperation ;
                  task:resultsContainer ?container .
                ?container a {escape_uri(DATA_CONTAINER_TYPE)} ;
                  dct:subject {escape_uri(DELTA_FILE_INFO_SUBJECT)} ;
                  ext:hasDeltafileTimestamp ?deltaTimestamp .
                VALUES ?operation {{
                  {escape_uri(self.settings.initial_sync_job_operation)}
                  {escape_uri(self.settings.delta_sync_job_operation)}
                }}
                VALUES ?taskOperation {{
                  {escape_uri(INITIAL_SYNC_TASK_OPERATION)}
                  {escape_uri(DELTA_SYNC_TASK_OPERATION)}
                }}
              }}
            }}
            ORDER BY DESC(?deltaTimestamp)
            LIMIT 1
            """
        )
        value = value_of(rows[0], "deltaTimestamp") if rows else None
        return parse_datetime(value) if value else None

    # ── Errors ────────────────────────────────────────

    async def _insert_error(self, message: str, job_uri: str | None) -> ErrorRecord:
        error_id = str(uuid.uuid4())
        uri = ERROR_URI_PREFIX + error_id
        text = f"[{self.settings.service_name}] {message}"
        link = (
            f"{escape_uri(job_uri)} task:error {escape_uri(uri)} ." if job_uri is not None else ""
        )
        await self.update(
            f"""
            INSERT DATA {{
              GRAPH {self.graph} {{
                {escape_uri(uri)} a {escape_uri(ERROR_TYPE)}, {escape_uri(DELTA_ERROR_TYPE)} ;
                  mu:uuid {escape_string(error_id)} ;
                  oslc:message {escape_string(text)} ;
                  dct:created {escape_datetime(now_utc())} ;
                  dct:creator {escape_uri(self.settings.job_creator_uri)} .
                {link}
              }}
            }}
            """
        )
        return ErrorRecord(uri=uri, uuid=error_id, message=text)

    async def store_error(self, message: str) -> ErrorRecord:
        """Record a standalone error tagged with the service name."""
        return await self._insert_error(message, None)

    async def store_job_error(self, job_uri: str, message: str) -> ErrorRecord:
        """Record an error and link it to the job it aborted."""
        return await self._insert_error(message, job_uri)

    async def get_errors(self) -> list[ErrorRecord]:
        rows = await self.query(
            f"""
            SELECT ?error ?uuid ?message WHERE {{
              GRAPH {self.graph} {{
                ?error a {escape_uri(DELTA_ERROR_TYPE)} ;
                  mu:uuid ?uuid ;
                  oslc:message ?message ;
                  dct:created ?created .
              }}
            }}
            ORDER BY ?created
            """
        )
        return [
            ErrorRecord(
                uri=value_of(row, "error") or "",
                uuid=value_of(row, "uuid") or "",
                message=value_of(row, "message") or "",
            )
            for row in rows
        ]
