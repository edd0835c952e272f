"""Shared test fixtures for the delta consumer."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from delta_consumer.config import Settings
from delta_consumer.main import create_app
from delta_consumer.services.consumer_service import Consumer
from delta_consumer.services.datetime_service import parse_datetime
from delta_consumer.services.ledger_service import Ledger
from delta_consumer.services.producer_client import ProducerClient
from delta_consumer.store.memory import OxigraphSparqlClient
from delta_consumer.store.updater import BatchedUpdater
from delta_consumer.vocabulary import PREFIXES

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from delta_consumer.store.client import SparqlClient

PRODUCER_URL = "http://producer.test"
DATASET_SUBJECT = "http://data.test/datasets/public"
VIRTUAL_FILE_BASE = "http://data.lblod.info/files/"
START_TIMESTAMP = "2026-01-01T00:00:00Z"


# ── Change-file helpers ──────────────────────────────


def uri(value: str) -> dict[str, str]:
    return {"type": "uri", "value": value}


def literal(value: str) -> dict[str, str]:
    return {"type": "literal", "value": value}


def triple_json(subject: str, predicate: str, obj: str | dict[str, str]) -> dict[str, Any]:
    """A change-file triple; a plain string object is a URI."""
    return {
        "subject": uri(subject),
        "predicate": uri(predicate),
        "object": uri(obj) if isinstance(obj, str) else obj,
    }


def change_set(
    inserts: list[dict[str, Any]] | None = None, deletes: list[dict[str, Any]] | None = None
) -> dict[str, Any]:
    return {"inserts": inserts or [], "deletes": deletes or []}


# ── Producer stub ────────────────────────────────────


class ProducerStub:
    """In-memory producer serving delta files, file bodies and one dataset dump."""

    def __init__(self) -> None:
        self.delta_files: list[dict[str, Any]] = []
        self.downloads: dict[str, bytes] = {}
        self.dataset: dict[str, Any] | None = None
        self.dump_id: str | None = None
        self.requests: list[httpx.Request] = []
        self.failing_paths: set[str] = set()

    def add_delta_file(
        self, file_id: str, created: str, content: list[dict[str, Any]] | str
    ) -> None:
        """Publish a change-file; ``content`` may be a raw (possibly broken) body."""
        body = content if isinstance(content, str) else json.dumps(content)
        self.delta_files.append(
            {"id": file_id, "attributes": {"created": created, "name": f"{file_id}.json"}}
        )
        self.downloads[file_id] = body.encode()

    def add_file_body(self, vuuid: str, body: bytes) -> None:
        self.downloads[vuuid] = body

    def publish_dump(self, dump_id: str, release_date: str, turtle: str) -> None:
        self.dump_id = dump_id
        self.dataset = {
            "id": "dataset-1",
            "type": "datasets",
            "attributes": {"release-date": release_date},
            "relationships": {
                "distributions": {"links": {"related": "/datasets/dataset-1/distributions"}}
            },
        }
        self.downloads[dump_id] = turtle.encode()

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path in self.failing_paths:
            return httpx.Response(500, text="producer error")
        if path == "/sync/files":
            since = parse_datetime(request.url.params["since"])
            data = [
                entry
                for entry in self.delta_files
                if parse_datetime(entry["attributes"]["created"]) > since
            ]
            return httpx.Response(200, json={"data": data})
        if path == "/datasets":
            return httpx.Response(200, json={"data": [self.dataset] if self.dataset else []})
        if path == "/datasets/dataset-1/distributions":
            subject = {"data": {"type": "files", "id": self.dump_id}}
            return httpx.Response(
                200, json={"data": [{"id": "dist-1", "relationships": {"subject": subject}}]}
            )
        parts = path.strip("/").split("/")
        if len(parts) == 3 and parts[0] == "files" and parts[2] == "download":
            body = self.downloads.get(parts[1])
            if body is not None:
                return httpx.Response(200, content=body)
        return httpx.Response(404, json={"errors": [{"title": "Not found"}]})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)


# ── Store helpers ────────────────────────────────────


async def graph_triples(client: SparqlClient, graph: str) -> set[tuple[str, str, str]]:
    """Lexical (subject, predicate, object) values of every triple in ``graph``."""
    rows = await client.query(f"SELECT ?s ?p ?o WHERE {{ GRAPH <{graph}> {{ ?s ?p ?o }} }}")
    return {(row["s"]["value"], row["p"]["value"], row["o"]["value"]) for row in rows}


async def stage_file(
    client: SparqlClient,
    graph: str,
    vuuid: str,
    physical: str,
    *,
    filename: str = "report.pdf",
) -> str:
    """Write a complete virtual/physical file description into ``graph``.

    Returns the virtual file URI.
    """
    virtual = VIRTUAL_FILE_BASE + vuuid
    xsd_datetime = "<http://www.w3.org/2001/XMLSchema#dateTime>"
    await client.update(
        PREFIXES
        + f"""
        INSERT DATA {{
          GRAPH <{graph}> {{
            <{virtual}> a nfo:FileDataObject ;
              mu:uuid "{vuuid}" ;
              nfo:fileName "{filename}" ;
              dct:format "application/pdf" ;
              nfo:fileSize 1234 ;
              dbpedia:fileExtension "pdf" ;
              dct:created "2026-01-01T00:00:00Z"^^{xsd_datetime} ;
              dct:modified "2026-01-01T00:00:00Z"^^{xsd_datetime} .
            <{physical}> a nfo:FileDataObject ;
              mu:uuid "{vuuid}-physical" ;
              nie:dataSource <{virtual}> ;
              nfo:fileName "{vuuid}.pdf" ;
              dct:format "application/pdf" ;
              nfo:fileSize 1234 ;
              dbpedia:fileExtension "pdf" ;
              dct:created "2026-01-01T00:00:00Z"^^{xsd_datetime} ;
              dct:modified "2026-01-01T00:00:00Z"^^{xsd_datetime} .
          }}
        }}
        """
    )
    return virtual


# ── Fixtures ─────────────────────────────────────────


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with temporary paths and no waiting between store calls."""
    return Settings(
        _env_file=None,
        sync_base_url=PRODUCER_URL,
        sync_dataset_subject=DATASET_SUBJECT,
        start_from_delta_timestamp=START_TIMESTAMP,
        wait_for_initial_sync=False,
        disable_initial_sync=True,
        delta_file_folder=tmp_path / "deltas",
        dump_file_folder=tmp_path / "dumps",
        file_folder=tmp_path / "share",
        sleep_between_batches_ms=0,
        sleep_time_after_failed_db_operation_ms=0,
        delta_sync_interval_seconds=0,
        file_sync_interval_seconds=0,
    )


@pytest.fixture
def store() -> OxigraphSparqlClient:
    """An empty in-memory triple store."""
    return OxigraphSparqlClient()


@pytest.fixture
def updater(store: OxigraphSparqlClient, test_settings: Settings) -> BatchedUpdater:
    return BatchedUpdater.from_settings(store, test_settings)


@pytest.fixture
def ledger(
    store: OxigraphSparqlClient, test_settings: Settings, updater: BatchedUpdater
) -> Ledger:
    return Ledger(store, test_settings, updater)


@pytest.fixture
def producer_stub() -> ProducerStub:
    return ProducerStub()


@pytest.fixture
async def producer(
    test_settings: Settings, producer_stub: ProducerStub
) -> AsyncGenerator[ProducerClient]:
    client = ProducerClient(test_settings, transport=producer_stub.transport())
    yield client
    await client.aclose()


@pytest.fixture
def consumer(
    test_settings: Settings, store: OxigraphSparqlClient, producer: ProducerClient
) -> Consumer:
    """A consumer wired to the in-memory store and the producer stub, not started."""
    return Consumer.build(test_settings, client=store, producer=producer)


@asynccontextmanager
async def create_test_client(consumer: Consumer) -> AsyncGenerator[AsyncClient]:
    """Create an HTTP test client around a prebuilt consumer.

    ASGITransport does not run the application lifespan, so the consumer's
    queues are never started: triggered jobs stay queued for inspection.
    """
    app = create_app(consumer.settings, consumer)
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
