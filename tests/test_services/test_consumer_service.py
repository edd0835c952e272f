"""Tests for wiring the consumer and chaining its pipelines."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from delta_consumer.dispatch.single_graph import SingleGraphTransform
from delta_consumer.exceptions import DispatchConfigError
from delta_consumer.services.consumer_service import Consumer, create_store_client
from delta_consumer.store.client import HttpSparqlClient
from delta_consumer.store.memory import OxigraphSparqlClient
from delta_consumer.vocabulary import JobStatus
from tests.conftest import VIRTUAL_FILE_BASE, change_set, graph_triples, literal, triple_json

if TYPE_CHECKING:
    from typing import Any

    from delta_consumer.config import Settings
    from delta_consumer.services.producer_client import ProducerClient
    from tests.conftest import ProducerStub

RDF_TYPE = "http://www.w3.org/1999/02/22-rdf-syntax-ns#type"
NFO = "http://www.semanticdesktop.org/ontologies/2007/03/22/nfo#"
DCT = "http://purl.org/dc/terms/"
MU_UUID = "http://mu.semte.ch/vocabularies/core/uuid"
DATA_SOURCE = "http://www.semanticdesktop.org/ontologies/2007/01/19/nie#dataSource"
FILE_EXTENSION = "http://dbpedia.org/resource/fileExtension"


def _file_description(subject: str, uuid: str) -> list[dict[str, Any]]:
    return [
        triple_json(subject, RDF_TYPE, NFO + "FileDataObject"),
        triple_json(subject, MU_UUID, literal(uuid)),
        triple_json(subject, NFO + "fileName", literal("report.pdf")),
        triple_json(subject, DCT + "format", literal("application/pdf")),
        triple_json(subject, NFO + "fileSize", literal("1234")),
        triple_json(subject, FILE_EXTENSION, literal("pdf")),
        triple_json(subject, DCT + "created", literal("2026-02-01T00:00:00Z")),
        triple_json(subject, DCT + "modified", literal("2026-02-01T00:00:00Z")),
    ]


def _publish_file(stub: ProducerStub, created: str) -> str:
    """Publish a change-file adding one document and one file; returns the virtual URI."""
    virtual = VIRTUAL_FILE_BASE + "v1"
    inserts = [
        triple_json("http://data.test/doc", DCT + "title", literal("Minutes")),
        *_file_description(virtual, "v1"),
        *_file_description("share://v1.pdf", "v1-physical"),
        triple_json("share://v1.pdf", DATA_SOURCE, virtual),
    ]
    stub.add_delta_file("file-1", created, [change_set(inserts=inserts)])
    stub.add_file_body("v1", b"%PDF-1.7")
    return virtual


class TestBuild:
    def test_transforms_are_resolved(self, consumer: Consumer) -> None:
        assert isinstance(consumer.delta_sync.transform, SingleGraphTransform)
        assert isinstance(consumer.initial_sync.transform, SingleGraphTransform)

    def test_unknown_transform_fails_at_build(
        self, test_settings: Settings, producer: ProducerClient
    ) -> None:
        test_settings.delta_sync_dispatch = "unknown"
        with pytest.raises(DispatchConfigError):
            Consumer.build(test_settings, client=OxigraphSparqlClient(), producer=producer)

    async def test_store_client_selection(self, test_settings: Settings) -> None:
        assert isinstance(create_store_client(test_settings), OxigraphSparqlClient)

        test_settings.sparql_endpoint = "http://virtuoso.test/sparql"
        client = create_store_client(test_settings)
        assert isinstance(client, HttpSparqlClient)
        await client.aclose()


class TestRecovery:
    async def test_busy_jobs_are_failed(self, consumer: Consumer) -> None:
        settings = consumer.settings
        delta = await consumer.ledger.create_job(settings.delta_sync_job_operation)
        initial = await consumer.ledger.create_job(settings.initial_sync_job_operation)

        await consumer.recover()

        assert await consumer.ledger.get_status(delta.uri) == JobStatus.FAILED
        assert await consumer.ledger.get_status(initial.uri) == JobStatus.FAILED
        assert not await consumer.is_busy(settings.delta_sync_job_operation)


class TestChaining:
    async def test_applied_files_trigger_file_sync(
        self, consumer: Consumer, producer_stub: ProducerStub
    ) -> None:
        _publish_file(producer_stub, "2026-01-02T10:00:00Z")

        result = await consumer._run_delta_sync()

        assert result.applied_files == 1
        assert consumer.file_queue.pending == 1

    async def test_nothing_applied_triggers_nothing(self, consumer: Consumer) -> None:
        result = await consumer._run_delta_sync()
        assert result.applied_files == 0
        assert consumer.file_queue.pending == 0

    async def test_initial_sync_triggers_delta_sync(
        self, consumer: Consumer, producer_stub: ProducerStub
    ) -> None:
        consumer.settings.disable_initial_sync = False
        producer_stub.publish_dump("dump-1", "2026-02-01T12:00:00Z", "")

        await consumer._run_initial_sync()

        assert consumer.delta_queue.pending == 1

    async def test_failed_initial_sync_triggers_nothing(self, consumer: Consumer) -> None:
        consumer.settings.disable_initial_sync = False
        await consumer._run_initial_sync()
        assert consumer.delta_queue.pending == 0


class TestEndToEnd:
    async def test_initial_then_delta_then_files(
        self,
        consumer: Consumer,
        producer_stub: ProducerStub,
        test_settings: Settings,
    ) -> None:
        test_settings.disable_initial_sync = False
        producer_stub.publish_dump(
            "dump-1",
            "2026-02-01T12:00:00Z",
            '<http://data.test/a> <http://data.test/name> "Alpha" .',
        )
        # Published before the dump: already part of it
        old = triple_json("http://data.test/old", DCT + "title", literal("x"))
        producer_stub.add_delta_file("file-0", "2026-02-01T11:00:00Z", [change_set([old])])
        virtual = _publish_file(producer_stub, "2026-02-01T13:00:00Z")

        consumer.start()
        try:
            await consumer.delta_queue.join()
            await consumer.file_queue.join()
        finally:
            await consumer.delta_queue.stop()
            await consumer.file_queue.stop()

        ingest = await graph_triples(consumer.client, test_settings.ingest_graph)
        subjects = {s for s, _, _ in ingest}
        assert subjects == {"http://data.test/a", "http://data.test/doc", virtual, "share://v1.pdf"}
        assert (test_settings.file_folder / "v1.pdf").read_bytes() == b"%PDF-1.7"
        assert await graph_triples(consumer.client, test_settings.temp_file_graph) == set()
