"""RDF vocabulary shared by the ledger, the pipelines and the file sync."""

from __future__ import annotations

from enum import StrEnum

JOB_TYPE = "http://vocab.deri.ie/cogs#Job"
TASK_TYPE = "http://redpencil.data.gift/vocabularies/tasks/Task"
ERROR_TYPE = "http://open-services.net/ns/core#Error"
DELTA_ERROR_TYPE = "http://redpencil.data.gift/vocabularies/deltas/Error"
DATA_CONTAINER_TYPE = "http://www.semanticdesktop.org/ontologies/2007/03/22/nfo#DataContainer"
SYNC_TASK_TYPE = "http://mu.semte.ch/vocabularies/ext/SyncTask"
TASK_FAILURE_TYPE = "http://mu.semte.ch/vocabularies/ext/TaskFailure"

JOB_URI_PREFIX = "http://redpencil.data.gift/id/job/"
TASK_URI_PREFIX = "http://redpencil.data.gift/id/task/"
ERROR_URI_PREFIX = "http://redpencil.data.gift/id/jobs/error/"
CONTAINER_URI_PREFIX = "http://data.lblod.info/id/dataContainers/"

_TASK_OPERATION_BASE = "http://redpencil.data.gift/id/jobs/concept/TaskOperation/deltas/consumer/"
INITIAL_SYNC_TASK_OPERATION = _TASK_OPERATION_BASE + "initialSyncing"
DELTA_SYNC_TASK_OPERATION = _TASK_OPERATION_BASE + "deltaSyncing"

DELTA_FILE_INFO_SUBJECT = "http://redpencil.data.gift/id/concept/DeltaSync/DeltafileInfo"

XSD_STRING = "http://www.w3.org/2001/XMLSchema#string"
XSD_DATETIME = "http://www.w3.org/2001/XMLSchema#dateTime"
XSD_INTEGER = "http://www.w3.org/2001/XMLSchema#integer"
RDF_LANG_STRING = "http://www.w3.org/1999/02/22-rdf-syntax-ns#langString"

PREFIXES = """
PREFIX mu: <http://mu.semte.ch/vocabularies/core/>
PREFIX task: <http://redpencil.data.gift/vocabularies/tasks/>
PREFIX dct: <http://purl.org/dc/terms/>
PREFIX prov: <http://www.w3.org/ns/prov#>
PREFIX nie: <http://www.semanticdesktop.org/ontologies/2007/01/19/nie#>
PREFIX ext: <http://mu.semte.ch/vocabularies/ext/>
PREFIX oslc: <http://open-services.net/ns/core#>
PREFIX cogs: <http://vocab.deri.ie/cogs#>
PREFIX adms: <http://www.w3.org/ns/adms#>
PREFIX nfo: <http://www.semanticdesktop.org/ontologies/2007/03/22/nfo#>
PREFIX dbpedia: <http://dbpedia.org/resource/>
"""


class JobStatus(StrEnum):
    """Status of a job or task, persisted as ``adms:status``."""

    SCHEDULED = "http://redpencil.data.gift/id/concept/JobStatus/scheduled"
    BUSY = "http://redpencil.data.gift/id/concept/JobStatus/busy"
    SUCCESS = "http://redpencil.data.gift/id/concept/JobStatus/success"
    FAILED = "http://redpencil.data.gift/id/concept/JobStatus/failed"
    CANCELED = "http://redpencil.data.gift/id/concept/JobStatus/canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCESS, JobStatus.FAILED, JobStatus.CANCELED)

    @property
    def label(self) -> str:
        return self.value.rsplit("/", 1)[-1]


class SubStatus(StrEnum):
    """Status of one stage of a file sync task."""

    NOT_STARTED = "http://redpencil.data.gift/id/concept/FileSyncStatus/not-started"
    ONGOING = "http://redpencil.data.gift/id/concept/FileSyncStatus/ongoing"
    SUCCESS = "http://redpencil.data.gift/id/concept/FileSyncStatus/success"
    FAILURE = "http://redpencil.data.gift/id/concept/FileSyncStatus/failure"

    @property
    def is_terminal(self) -> bool:
        return self in (SubStatus.SUCCESS, SubStatus.FAILURE)

    @property
    def label(self) -> str:
        return self.value.rsplit("/", 1)[-1]


class FileTaskKind(StrEnum):
    """Kind of file sync task, persisted as an extra ``rdf:type``."""

    ADD = "http://mu.semte.ch/vocabularies/ext/FileAddTask"
    REMOVE = "http://mu.semte.ch/vocabularies/ext/FileRemoveTask"
    UPDATE = "http://mu.semte.ch/vocabularies/ext/FileUpdateTask"

    @property
    def operation(self) -> str:
        """Task operation URI recorded on tasks of this kind."""
        return _TASK_OPERATION_BASE + "files/" + self.value.rsplit("/", 1)[-1]
