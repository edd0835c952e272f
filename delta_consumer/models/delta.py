"""Change-file data model: terms, triples, change sets and delta file descriptors."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from datetime import datetime
    from pathlib import Path


class TermType(StrEnum):
    URI = "uri"
    LITERAL = "literal"
    TYPED_LITERAL = "typed-literal"
    BNODE = "bnode"


@dataclass(frozen=True)
class Term:
    """One RDF term in the SPARQL JSON results shape."""

    value: str
    type: TermType
    datatype: str | None = None
    language: str | None = None

    @classmethod
    def uri(cls, value: str) -> Term:
        return cls(value=value, type=TermType.URI)

    @classmethod
    def literal(
        cls, value: str, datatype: str | None = None, language: str | None = None
    ) -> Term:
        term_type = TermType.TYPED_LITERAL if datatype else TermType.LITERAL
        return cls(value=value, type=term_type, datatype=datatype, language=language)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Term:
        """Build a term from a change-file or SPARQL JSON term object.

        Raises ValueError if the object has no value or an unknown type.
        """
        if not isinstance(data, dict) or "value" not in data:
            msg = f"Invalid RDF term: {data!r}"
            raise ValueError(msg)
        try:
            term_type = TermType(data.get("type", "literal"))
        except ValueError as exc:
            msg = f"Unknown RDF term type: {data.get('type')!r}"
            raise ValueError(msg) from exc
        return cls(
            value=str(data["value"]),
            type=term_type,
            datatype=data.get("datatype"),
            language=data.get("xml:lang"),
        )

    def to_json(self) -> dict[str, str]:
        result = {"value": self.value, "type": str(self.type)}
        if self.datatype:
            result["datatype"] = self.datatype
        if self.language:
            result["xml:lang"] = self.language
        return result

    @property
    def is_uri(self) -> bool:
        return self.type == TermType.URI

    @property
    def is_bnode(self) -> bool:
        return self.type == TermType.BNODE


@dataclass(frozen=True)
class Triple:
    subject: Term
    predicate: Term
    object: Term
    graph: Term | None = None

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Triple:
        try:
            graph = data.get("graph")
            return cls(
                subject=Term.from_json(data["subject"]),
                predicate=Term.from_json(data["predicate"]),
                object=Term.from_json(data["object"]),
                graph=Term.from_json(graph) if graph else None,
            )
        except (KeyError, AttributeError) as exc:
            msg = f"Invalid triple: {data!r}"
            raise ValueError(msg) from exc

    def to_json(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "subject": self.subject.to_json(),
            "predicate": self.predicate.to_json(),
            "object": self.object.to_json(),
        }
        if self.graph is not None:
            result["graph"] = self.graph.to_json()
        return result

    @property
    def has_bnode(self) -> bool:
        return self.subject.is_bnode or self.object.is_bnode


@dataclass
class ChangeSet:
    """One ordered pair of triple lists decoded from a change-file."""

    inserts: list[Triple] = field(default_factory=list)
    deletes: list[Triple] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> ChangeSet:
        if not isinstance(data, dict):
            msg = f"Invalid change set: {data!r}"
            raise ValueError(msg)
        return cls(
            inserts=[Triple.from_json(t) for t in data.get("inserts") or []],
            deletes=[Triple.from_json(t) for t in data.get("deletes") or []],
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "inserts": [t.to_json() for t in self.inserts],
            "deletes": [t.to_json() for t in self.deletes],
        }

    @property
    def is_empty(self) -> bool:
        return not self.inserts and not self.deletes


def parse_change_sets(payload: Any) -> list[ChangeSet]:
    """Decode the JSON array of a change-file into change sets, keeping file order.

    Raises ValueError if the payload is not a list of change set objects.
    """
    if not isinstance(payload, list):
        msg = "Change-file content must be a JSON array of change sets"
        raise ValueError(msg)
    return [ChangeSet.from_json(item) for item in payload]


@dataclass
class DeltaFile:
    """A remote change-file listed by the producer."""

    id: str
    created: datetime
    name: str
    download_url: str
    path: Path | None = None

    @property
    def staging_name(self) -> str:
        return f"{self.created.isoformat()}-{self.id}.json".replace(":", "")


@dataclass
class DumpFile:
    """The newest full dump published by the producer for a dataset subject."""

    id: str
    issued: datetime
    download_url: str
    dataset: str | None = None
    path: Path | None = None

    @property
    def staging_name(self) -> str:
        return f"{self.id}.ttl"
