"""Tests for the embedded and HTTP SPARQL clients."""

from __future__ import annotations

from urllib.parse import parse_qs

import httpx
import pytest
from pyoxigraph import BlankNode, Literal, NamedNode

from delta_consumer.config import Settings
from delta_consumer.exceptions import SparqlError, StoreUnavailableError
from delta_consumer.store.client import HttpSparqlClient, SparqlClient, value_of
from delta_consumer.store.memory import OxigraphSparqlClient, term_to_binding

ENDPOINT = "http://store.test/sparql"


class TestTermToBinding:
    def test_named_node(self) -> None:
        assert term_to_binding(NamedNode("http://example.org/a")) == {
            "type": "uri",
            "value": "http://example.org/a",
        }

    def test_blank_node(self) -> None:
        assert term_to_binding(BlankNode("b1")) == {"type": "bnode", "value": "b1"}

    def test_plain_literal(self) -> None:
        assert term_to_binding(Literal("x")) == {"type": "literal", "value": "x"}

    def test_language_literal(self) -> None:
        assert term_to_binding(Literal("x", language="nl")) == {
            "type": "literal",
            "value": "x",
            "xml:lang": "nl",
        }

    def test_typed_literal(self) -> None:
        integer = NamedNode("http://www.w3.org/2001/XMLSchema#integer")
        assert term_to_binding(Literal("5", datatype=integer)) == {
            "type": "typed-literal",
            "value": "5",
            "datatype": "http://www.w3.org/2001/XMLSchema#integer",
        }


class TestOxigraphSparqlClient:
    def test_implements_protocol(self) -> None:
        assert isinstance(OxigraphSparqlClient(), SparqlClient)

    async def test_query_sees_named_graphs(self, store: OxigraphSparqlClient) -> None:
        await store.update(
            "INSERT DATA { GRAPH <http://g> { <http://s> <http://p> \"o\" . } }"
        )
        rows = await store.query("SELECT ?s ?o WHERE { ?s <http://p> ?o }")
        assert [value_of(row, "s") for row in rows] == ["http://s"]
        assert value_of(rows[0], "o") == "o"

    async def test_unbound_variables_are_left_out(self, store: OxigraphSparqlClient) -> None:
        await store.update("INSERT DATA { GRAPH <http://g> { <http://s> <http://p> <http://o> } }")
        rows = await store.query(
            "SELECT ?s ?missing WHERE { ?s <http://p> ?o OPTIONAL { ?s <http://q> ?missing } }"
        )
        assert value_of(rows[0], "missing") is None
        assert "missing" not in rows[0]

    async def test_syntax_error_is_sparql_error(self, store: OxigraphSparqlClient) -> None:
        with pytest.raises(SparqlError):
            await store.query("SELECT WHERE nonsense")
        with pytest.raises(SparqlError):
            await store.update("INSERT DATA { broken")

    async def test_headers_are_accepted(self, store: OxigraphSparqlClient) -> None:
        await store.update(
            "INSERT DATA { GRAPH <http://g> { <http://s> <http://p> <http://o> } }",
            headers={"mu-call-scope-id": "scope"},
        )
        assert len(await store.query("SELECT * WHERE { ?s ?p ?o }")) == 1


class TestHttpSparqlClient:
    async def test_query_returns_bindings(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "head": {"vars": ["s"]},
                    "results": {"bindings": [{"s": {"type": "uri", "value": "http://s"}}]},
                },
            )

        client = HttpSparqlClient(ENDPOINT, transport=httpx.MockTransport(handler))
        rows = await client.query("SELECT ?s WHERE { ?s ?p ?o }")
        await client.aclose()

        assert rows == [{"s": {"type": "uri", "value": "http://s"}}]
        form = parse_qs(seen[0].content.decode())
        assert form["query"] == ["SELECT ?s WHERE { ?s ?p ?o }"]
        assert seen[0].headers["accept"] == "application/sparql-results+json"

    async def test_update_sends_default_and_extra_headers(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(204)

        client = HttpSparqlClient(
            ENDPOINT,
            headers={"mu-auth-sudo": "true"},
            transport=httpx.MockTransport(handler),
        )
        await client.update("INSERT DATA {}", headers={"mu-call-scope-id": "scope"})
        await client.aclose()

        assert parse_qs(seen[0].content.decode())["update"] == ["INSERT DATA {}"]
        assert seen[0].headers["mu-auth-sudo"] == "true"
        assert seen[0].headers["mu-call-scope-id"] == "scope"

    async def test_server_error_is_transient(self) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(503, text="busy"))
        client = HttpSparqlClient(ENDPOINT, transport=transport)
        with pytest.raises(StoreUnavailableError, match="503"):
            await client.update("INSERT DATA {}")
        await client.aclose()

    async def test_client_error_is_rejection(self) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(400, text="parse error"))
        client = HttpSparqlClient(ENDPOINT, transport=transport)
        with pytest.raises(SparqlError, match="400"):
            await client.update("INSERT DATA {")
        await client.aclose()

    async def test_connection_failure_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = HttpSparqlClient(ENDPOINT, transport=httpx.MockTransport(handler))
        with pytest.raises(StoreUnavailableError, match="unreachable"):
            await client.query("SELECT * WHERE { ?s ?p ?o }")
        await client.aclose()

    async def test_unreadable_result(self) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html/>"))
        client = HttpSparqlClient(ENDPOINT, transport=transport)
        with pytest.raises(SparqlError, match="unreadable"):
            await client.query("SELECT * WHERE { ?s ?p ?o }")
        await client.aclose()

    def test_from_settings_requires_endpoint(self) -> None:
        with pytest.raises(ValueError, match="SPARQL_ENDPOINT"):
            HttpSparqlClient.from_settings(Settings(_env_file=None))
