"""Transform that keeps the graphs assigned by the producer."""

from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING

from delta_consumer.models.delta import ChangeSet, Term

if TYPE_CHECKING:
    from delta_consumer.config import Settings
    from delta_consumer.models.delta import Triple


class PassthroughTransform:
    """Leaves triples in their producer graph; triples without one go to the ingest graph."""

    name = "passthrough"

    def __init__(self, default_graph: str) -> None:
        self.default_graph = Term.uri(default_graph)

    @classmethod
    def from_settings(cls, settings: Settings) -> PassthroughTransform:
        return cls(settings.ingest_graph)

    def _fill(self, triples: list[Triple]) -> list[Triple]:
        return [
            t if t.graph is not None else dataclasses.replace(t, graph=self.default_graph)
            for t in triples
        ]

    def __call__(self, change_set: ChangeSet) -> ChangeSet:
        return ChangeSet(
            inserts=self._fill(change_set.inserts),
            deletes=self._fill(change_set.deletes),
        )
