"""Embedded SPARQL store backed by pyoxigraph."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from pyoxigraph import BlankNode, Literal, NamedNode, Store

from delta_consumer.exceptions import SparqlError, StoreUnavailableError
from delta_consumer.vocabulary import RDF_LANG_STRING, XSD_STRING

if TYPE_CHECKING:
    from pathlib import Path

    from delta_consumer.store.client import Binding, Row

logger = logging.getLogger(__name__)


def term_to_binding(term: object) -> Binding:
    """Convert a pyoxigraph term into the SPARQL JSON binding shape."""
    if isinstance(term, NamedNode):
        return {"type": "uri", "value": term.value}
    if isinstance(term, BlankNode):
        return {"type": "bnode", "value": term.value}
    if isinstance(term, Literal):
        if term.language:
            return {"type": "literal", "value": term.value, "xml:lang": term.language}
        datatype = term.datatype.value
        if datatype in (XSD_STRING, RDF_LANG_STRING):
            return {"type": "literal", "value": term.value}
        return {"type": "typed-literal", "value": term.value, "datatype": datatype}
    return {"type": "literal", "value": str(term)}


class OxigraphSparqlClient:
    """SPARQL client over an in-process oxigraph store.

    Used when no external SPARQL endpoint is configured, and as the store
    under test.  Queries see the union of all named graphs as default graph.
    Headers have no meaning for an embedded store and are ignored.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path
        if path is not None:
            path.mkdir(parents=True, exist_ok=True)
            self.store = Store(str(path))
            logger.info("Opened embedded triple store at %s", path)
        else:
            self.store = Store()

    def _select(self, text: str) -> list[Row]:
        try:
            solutions = self.store.query(text, use_default_graph_as_union=True)
        except SyntaxError as exc:
            raise SparqlError(str(exc)) from exc
        except OSError as exc:
            raise StoreUnavailableError(str(exc)) from exc

        names = [variable.value for variable in solutions.variables]
        rows: list[Row] = []
        for solution in solutions:
            row: Row = {}
            for name in names:
                term = solution[name]
                if term is not None:
                    row[name] = term_to_binding(term)
            rows.append(row)
        return rows

    def _update(self, text: str) -> None:
        try:
            self.store.update(text)
        except SyntaxError as exc:
            raise SparqlError(str(exc)) from exc
        except OSError as exc:
            raise StoreUnavailableError(str(exc)) from exc

    async def query(self, text: str) -> list[Row]:
        return await asyncio.to_thread(self._select, text)

    async def update(self, text: str, headers: dict[str, str] | None = None) -> None:
        await asyncio.to_thread(self._update, text)

    async def aclose(self) -> None:
        if self.path is not None:
            await asyncio.to_thread(self.store.flush)
