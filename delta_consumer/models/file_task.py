"""File sync tasks: a common task record plus a kind-specific payload.

Each stage of a file task has its own sub-status that only moves forward::

    not-started -> ongoing -> success | failure

``ongoing`` may be re-entered by a later pass (a download attempt that failed
below the attempt threshold stays ongoing), but nothing returns to
``not-started`` and terminal states never change again.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from delta_consumer.exceptions import InvalidTransitionError
from delta_consumer.vocabulary import FileTaskKind, JobStatus, SubStatus

if TYPE_CHECKING:
    from datetime import datetime

_EXT = "http://mu.semte.ch/vocabularies/ext/"


class Stage(StrEnum):
    """A file task stage, named by the predicate that persists its sub-status."""

    DOWNLOAD = _EXT + "downloadStatus"
    REMAPPING = _EXT + "remappingStatus"
    MOVING = _EXT + "movingStatus"
    REMOVE = _EXT + "removeStatus"
    UPDATE = _EXT + "updateStatus"

    @property
    def attribute(self) -> str:
        return f"{self.name.lower()}_status"


_ALLOWED: dict[SubStatus, frozenset[SubStatus]] = {
    SubStatus.NOT_STARTED: frozenset({SubStatus.ONGOING}),
    SubStatus.ONGOING: frozenset({SubStatus.ONGOING, SubStatus.SUCCESS, SubStatus.FAILURE}),
    SubStatus.SUCCESS: frozenset(),
    SubStatus.FAILURE: frozenset(),
}


def check_transition(current: SubStatus, new: SubStatus) -> None:
    """Raise InvalidTransitionError unless ``current -> new`` moves forward."""
    if new not in _ALLOWED[current]:
        msg = f"Cannot move sub-status from {current.label} to {new.label}"
        raise InvalidTransitionError(msg)


@dataclass
class AddPayload:
    download_status: SubStatus = SubStatus.NOT_STARTED
    remapping_status: SubStatus = SubStatus.NOT_STARTED
    moving_status: SubStatus = SubStatus.NOT_STARTED
    download_attempts: int = 0

    stages = (Stage.DOWNLOAD, Stage.REMAPPING, Stage.MOVING)


@dataclass
class RemovePayload:
    remove_status: SubStatus = SubStatus.NOT_STARTED

    stages = (Stage.REMOVE,)


@dataclass
class UpdatePayload:
    update_status: SubStatus = SubStatus.NOT_STARTED

    stages = (Stage.UPDATE,)


FilePayload = AddPayload | RemovePayload | UpdatePayload

PAYLOAD_TYPES: dict[FileTaskKind, type[AddPayload] | type[RemovePayload] | type[UpdatePayload]] = {
    FileTaskKind.ADD: AddPayload,
    FileTaskKind.REMOVE: RemovePayload,
    FileTaskKind.UPDATE: UpdatePayload,
}


@dataclass
class FileTask:
    """A standalone task tracking one file through its workflow.

    ``subject`` is the virtual file uuid for add and remove tasks and the
    resource URI for update tasks.
    """

    uri: str
    uuid: str
    kind: FileTaskKind
    subject: str
    status: JobStatus
    created: datetime
    modified: datetime
    payload: FilePayload = field(default_factory=AddPayload)

    def stage_status(self, stage: Stage) -> SubStatus:
        if stage not in self.payload.stages:
            msg = f"{self.kind.name} task has no {stage.name} stage"
            raise ValueError(msg)
        status: SubStatus = getattr(self.payload, stage.attribute)
        return status

    def advance(self, stage: Stage, new: SubStatus) -> SubStatus:
        """Move ``stage`` to ``new`` in memory and return the previous sub-status."""
        current = self.stage_status(stage)
        check_transition(current, new)
        setattr(self.payload, stage.attribute, new)
        return current

    @property
    def stage_statuses(self) -> list[SubStatus]:
        return [self.stage_status(stage) for stage in self.payload.stages]

    @property
    def has_failed_stage(self) -> bool:
        return SubStatus.FAILURE in self.stage_statuses

    @property
    def all_stages_succeeded(self) -> bool:
        return all(status == SubStatus.SUCCESS for status in self.stage_statuses)
