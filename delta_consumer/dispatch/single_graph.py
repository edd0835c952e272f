"""Default transform: every triple goes to one target graph."""

from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING

from delta_consumer.models.delta import ChangeSet, Term

if TYPE_CHECKING:
    from delta_consumer.config import Settings
    from delta_consumer.models.delta import Triple


class SingleGraphTransform:
    """Assigns every insert and delete to the same graph.

    The target is ``DISPATCH_TARGET_GRAPH`` when set, the ingest graph otherwise.
    """

    name = "single-graph"

    def __init__(self, target_graph: str) -> None:
        self.graph = Term.uri(target_graph)

    @classmethod
    def from_settings(cls, settings: Settings) -> SingleGraphTransform:
        return cls(settings.dispatch_target_graph or settings.ingest_graph)

    def _move(self, triples: list[Triple]) -> list[Triple]:
        return [dataclasses.replace(t, graph=self.graph) for t in triples]

    def __call__(self, change_set: ChangeSet) -> ChangeSet:
        return ChangeSet(
            inserts=self._move(change_set.inserts),
            deletes=self._move(change_set.deletes),
        )
