"""Data model of the delta consumer."""

from delta_consumer.models.delta import ChangeSet, DeltaFile, DumpFile, Term, TermType, Triple
from delta_consumer.models.file_task import (
    AddPayload,
    FileTask,
    RemovePayload,
    Stage,
    UpdatePayload,
)
from delta_consumer.models.job import ErrorRecord, Job, Task

__all__ = [
    "AddPayload",
    "ChangeSet",
    "DeltaFile",
    "DumpFile",
    "ErrorRecord",
    "FileTask",
    "Job",
    "RemovePayload",
    "Stage",
    "Task",
    "Term",
    "TermType",
    "Triple",
    "UpdatePayload",
]
