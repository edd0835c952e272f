"""Escaping of RDF terms into SPARQL syntax."""

from __future__ import annotations

import itertools
import re
from datetime import datetime, timezone
from typing import TYPE_CHECKING
from urllib.parse import quote

from delta_consumer.models.delta import TermType
from delta_consumer.vocabulary import RDF_LANG_STRING, XSD_DATETIME, XSD_INTEGER, XSD_STRING

if TYPE_CHECKING:
    from collections.abc import Iterable

    from delta_consumer.models.delta import Term, Triple

# Characters that may not appear inside an IRIREF
_IRI_FORBIDDEN = re.compile(r'[<>"{}|^`\\\x00-\x20]')
_LANGUAGE_TAG = re.compile(r"^[a-zA-Z]+(-[a-zA-Z0-9]+)*$")
_BNODE_LABEL = re.compile(r"[^A-Za-z0-9_]")


def escape_uri(value: str) -> str:
    return "<" + _IRI_FORBIDDEN.sub(lambda m: quote(m.group(), safe=""), value) + ">"


def escape_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"""{escaped}"""'


def escape_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return f'"{value.isoformat()}"^^{escape_uri(XSD_DATETIME)}'


def escape_int(value: int) -> str:
    return f'"{int(value)}"^^{escape_uri(XSD_INTEGER)}'


def escape_literal(value: str, datatype: str | None = None, language: str | None = None) -> str:
    """Escape a literal, keeping its language tag or datatype exactly.

    Raises ValueError for a malformed language tag.
    """
    if language:
        if not _LANGUAGE_TAG.match(language):
            msg = f"Invalid language tag: {language!r}"
            raise ValueError(msg)
        return f"{escape_string(value)}@{language}"
    if datatype and datatype not in (XSD_STRING, RDF_LANG_STRING):
        return f"{escape_string(value)}^^{escape_uri(datatype)}"
    return escape_string(value)


class StatementBuilder:
    """Render triples as SPARQL statements.

    Blank nodes are rendered as labels, or as fresh query variables when
    ``bnodes_as_variables`` is set (``DELETE DATA`` does not accept blank
    nodes).  The counter naming those labels belongs to the builder, so
    each rendered request gets its own namespace.
    """

    def __init__(self, *, bnodes_as_variables: bool = False) -> None:
        self.bnodes_as_variables = bnodes_as_variables
        self._counter = itertools.count()
        self._names: dict[str, str] = {}

    def _bnode(self, label: str) -> str:
        name = self._names.get(label)
        if name is None:
            clean = _BNODE_LABEL.sub("", label)[:32]
            name = f"b{next(self._counter)}{clean}"
            self._names[label] = name
        return f"?{name}" if self.bnodes_as_variables else f"_:{name}"

    def term(self, term: Term) -> str:
        if term.type == TermType.URI:
            return escape_uri(term.value)
        if term.type == TermType.BNODE:
            return self._bnode(term.value)
        return escape_literal(term.value, term.datatype, term.language)

    def statement(self, triple: Triple) -> str:
        subject, predicate = self.term(triple.subject), self.term(triple.predicate)
        return f"{subject} {predicate} {self.term(triple.object)} ."

    def statements(self, triples: Iterable[Triple]) -> str:
        return "\n".join(self.statement(triple) for triple in triples)

    @property
    def variables(self) -> list[str]:
        return [f"?{name}" for name in self._names.values()]
