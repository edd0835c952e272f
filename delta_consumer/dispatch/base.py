"""Base protocol for change set transforms."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from delta_consumer.models.delta import ChangeSet


@runtime_checkable
class Transform(Protocol):
    """Rewrites a change set before it is partitioned and applied.

    A transform may reassign graphs or drop triples.  It must not reorder
    the inserts or the deletes it keeps.
    """

    name: str

    def __call__(self, change_set: ChangeSet) -> ChangeSet:
        """Return the change set to apply in place of ``change_set``."""
        ...
