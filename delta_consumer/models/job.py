"""Job and task records persisted in the jobs graph."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime

    from delta_consumer.vocabulary import JobStatus


@dataclass
class Job:
    """One synchronization run."""

    uri: str
    uuid: str
    operation: str
    status: JobStatus
    creator: str
    created: datetime
    modified: datetime
    tasks: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class Task:
    """One step within a job.

    ``parents`` holds the URIs of the tasks this task depends on; delta
    sync tasks are chained so that each file's task points at the previous one.
    """

    uri: str
    uuid: str
    job_uri: str | None
    index: int
    operation: str
    status: JobStatus
    created: datetime
    modified: datetime
    parents: list[str] = field(default_factory=list)
    results_container: str | None = None


@dataclass
class ErrorRecord:
    uri: str
    uuid: str
    message: str
