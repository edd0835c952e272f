"""Tests for the delta fetch and apply pipeline."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

import pytest

from delta_consumer.dispatch.passthrough import PassthroughTransform
from delta_consumer.dispatch.single_graph import SingleGraphTransform
from delta_consumer.exceptions import WatermarkUnavailableError
from delta_consumer.models.delta import ChangeSet, Term, Triple
from delta_consumer.services.delta_sync_service import (
    DeltaSyncService,
    SyncOutcome,
    group_by_graph,
    partition,
)
from delta_consumer.vocabulary import JobStatus
from tests.conftest import change_set, graph_triples, literal, triple_json

if TYPE_CHECKING:
    from delta_consumer.config import Settings
    from delta_consumer.services.ledger_service import Ledger
    from delta_consumer.services.producer_client import ProducerClient
    from delta_consumer.store.memory import OxigraphSparqlClient
    from delta_consumer.store.updater import BatchedUpdater
    from tests.conftest import ProducerStub

S = "http://example.org/s"
P = "http://example.org/p"


@pytest.fixture
def service(
    test_settings: Settings,
    ledger: Ledger,
    producer: ProducerClient,
    updater: BatchedUpdater,
) -> DeltaSyncService:
    return DeltaSyncService(
        test_settings, ledger, producer, updater, SingleGraphTransform.from_settings(test_settings)
    )


def _o1_then_o2(stub: ProducerStub) -> None:
    """Two change-files: insert (s, p, o1), then replace it by (s, p, o2)."""
    stub.add_delta_file(
        "file-1",
        "2026-01-02T10:00:00Z",
        [change_set(inserts=[triple_json(S, P, literal("o1"))])],
    )
    stub.add_delta_file(
        "file-2",
        "2026-01-02T11:00:00Z",
        [
            change_set(
                inserts=[triple_json(S, P, literal("o2"))],
                deletes=[triple_json(S, P, literal("o1"))],
            )
        ],
    )


class TestPartition:
    def test_partition_by_subject_prefix(self) -> None:
        regular = Triple(Term.uri(S), Term.uri(P), Term.literal("x"))
        share = Triple(Term.uri("share://a.pdf"), Term.uri(P), Term.literal("x"))
        virtual = Triple(Term.uri("http://data.lblod.info/files/1"), Term.uri(P), Term.uri(S))
        result = partition(
            [share, regular, virtual], ["share://", "http://data.lblod.info/files/"]
        )
        assert result == ([regular], [share, virtual])

    def test_group_by_graph_keeps_order(self) -> None:
        g1, g2 = Term.uri("http://g1"), Term.uri("http://g2")
        a = Triple(Term.uri(S), Term.uri(P), Term.literal("a"), g2)
        b = Triple(Term.uri(S), Term.uri(P), Term.literal("b"), g1)
        c = Triple(Term.uri(S), Term.uri(P), Term.literal("c"))
        d = Triple(Term.uri(S), Term.uri(P), Term.literal("d"), g2)
        groups = group_by_graph([a, b, c, d], "http://default")
        assert list(groups) == ["http://g2", "http://g1", "http://default"]
        assert groups["http://g2"] == [a, d]


class TestDeltaSync:
    async def test_replacing_a_value_across_files(
        self,
        service: DeltaSyncService,
        producer_stub: ProducerStub,
        store: OxigraphSparqlClient,
        test_settings: Settings,
    ) -> None:
        _o1_then_o2(producer_stub)

        result = await service.start()

        assert result.outcome == SyncOutcome.SUCCESS
        assert result.applied_files == 2
        assert await graph_triples(store, test_settings.ingest_graph) == {(S, P, "o2")}

    async def test_files_are_applied_in_creation_order(
        self,
        service: DeltaSyncService,
        producer_stub: ProducerStub,
        store: OxigraphSparqlClient,
        test_settings: Settings,
    ) -> None:
        _o1_then_o2(producer_stub)
        producer_stub.delta_files.reverse()

        await service.start()

        assert await graph_triples(store, test_settings.ingest_graph) == {(S, P, "o2")}

    async def test_deletes_apply_before_inserts(
        self, service: DeltaSyncService, store: OxigraphSparqlClient, test_settings: Settings
    ) -> None:
        triple = Triple(Term.uri(S), Term.uri(P), Term.literal("x"))
        await service.apply_change_set(ChangeSet(inserts=[triple]))
        await service.apply_change_set(ChangeSet(inserts=[triple], deletes=[triple]))
        assert await graph_triples(store, test_settings.ingest_graph) == {(S, P, "x")}

    async def test_watermark_advances(
        self,
        service: DeltaSyncService,
        producer_stub: ProducerStub,
        ledger: Ledger,
        store: OxigraphSparqlClient,
        test_settings: Settings,
    ) -> None:
        _o1_then_o2(producer_stub)
        await service.start()
        assert await service.compute_watermark() == datetime(
            2026, 1, 2, 11, 0, tzinfo=timezone.utc
        )

        assert (await service.start()).outcome == SyncOutcome.UP_TO_DATE

        producer_stub.add_delta_file(
            "file-3",
            "2026-01-02T12:00:00Z",
            [change_set(inserts=[triple_json(S, P, literal("o3"))])],
        )
        result = await service.start()
        assert result.applied_files == 1
        assert await graph_triples(store, test_settings.ingest_graph) == {
            (S, P, "o2"),
            (S, P, "o3"),
        }
        jobs = await ledger.get_jobs(test_settings.delta_sync_job_operation)
        assert [job.status for job in jobs] == [JobStatus.SUCCESS, JobStatus.SUCCESS]

    async def test_job_records_one_chained_task_per_file(
        self, service: DeltaSyncService, producer_stub: ProducerStub, ledger: Ledger
    ) -> None:
        _o1_then_o2(producer_stub)
        result = await service.start()
        assert result.job_uri is not None

        tasks = await ledger.get_tasks(result.job_uri)
        assert [task.index for task in tasks] == [0, 1]
        assert all(task.status == JobStatus.SUCCESS for task in tasks)
        assert tasks[1].parents == [tasks[0].uri]

    async def test_failing_file_stops_the_job(
        self,
        service: DeltaSyncService,
        producer_stub: ProducerStub,
        ledger: Ledger,
        store: OxigraphSparqlClient,
        test_settings: Settings,
    ) -> None:
        producer_stub.add_delta_file(
            "file-1",
            "2026-01-02T10:00:00Z",
            [change_set(inserts=[triple_json(S, P, literal("o1"))])],
        )
        producer_stub.add_delta_file("file-2", "2026-01-02T11:00:00Z", "{not json")
        producer_stub.add_delta_file(
            "file-3",
            "2026-01-02T12:00:00Z",
            [change_set(inserts=[triple_json(S, P, literal("o3"))])],
        )

        result = await service.start()

        assert result.outcome == SyncOutcome.FAILED
        assert result.applied_files == 1
        assert await graph_triples(store, test_settings.ingest_graph) == {(S, P, "o1")}
        job = await ledger.load_job(result.job_uri or "")
        assert job is not None
        assert job.status == JobStatus.FAILED
        assert job.error is not None
        tasks = await ledger.get_tasks(job.uri)
        assert [task.status for task in tasks] == [JobStatus.SUCCESS, JobStatus.FAILED]
        assert await service.compute_watermark() == datetime(
            2026, 1, 2, 10, 0, tzinfo=timezone.utc
        )

        # The broken file is retried on the next run, before any later file
        producer_stub.downloads["file-2"] = b"[]"
        result = await service.start()
        assert result.outcome == SyncOutcome.SUCCESS
        assert result.applied_files == 2
        assert await graph_triples(store, test_settings.ingest_graph) == {
            (S, P, "o1"),
            (S, P, "o3"),
        }

    async def test_file_triples_are_staged(
        self, service: DeltaSyncService, store: OxigraphSparqlClient, test_settings: Settings
    ) -> None:
        staged = Triple(Term.uri("share://a.pdf"), Term.uri(P), Term.literal("a"))
        virtual = Term.uri("http://data.lblod.info/files/1")
        removed = Triple(virtual, Term.uri(P), Term.literal("b"))
        regular = Triple(Term.uri(S), Term.uri(P), Term.literal("c"))

        await service.apply_change_set(ChangeSet(inserts=[staged, regular], deletes=[removed]))

        assert await graph_triples(store, test_settings.ingest_graph) == {(S, P, "c")}
        assert await graph_triples(store, test_settings.temp_file_graph) == {
            ("share://a.pdf", P, "a")
        }
        assert await graph_triples(store, test_settings.temp_file_removal_graph) == {
            ("http://data.lblod.info/files/1", P, "b")
        }

    async def test_passthrough_keeps_producer_graphs(
        self,
        test_settings: Settings,
        ledger: Ledger,
        producer: ProducerClient,
        updater: BatchedUpdater,
        store: OxigraphSparqlClient,
    ) -> None:
        service = DeltaSyncService(
            test_settings,
            ledger,
            producer,
            updater,
            PassthroughTransform.from_settings(test_settings),
        )
        own = Triple(Term.uri(S), Term.uri(P), Term.literal("a"), Term.uri("http://g/own"))
        bare = Triple(Term.uri(S), Term.uri(P), Term.literal("b"))

        await service.apply_change_set(ChangeSet(inserts=[own, bare]))

        assert await graph_triples(store, "http://g/own") == {(S, P, "a")}
        assert await graph_triples(store, test_settings.ingest_graph) == {(S, P, "b")}

    async def test_staged_delta_files_are_removed(
        self, service: DeltaSyncService, producer_stub: ProducerStub, test_settings: Settings
    ) -> None:
        _o1_then_o2(producer_stub)
        await service.start()
        assert list(test_settings.delta_file_folder.iterdir()) == []

    async def test_staged_delta_files_can_be_kept(
        self, service: DeltaSyncService, producer_stub: ProducerStub, test_settings: Settings
    ) -> None:
        test_settings.keep_delta_files = True
        _o1_then_o2(producer_stub)
        await service.start()
        assert len(list(test_settings.delta_file_folder.iterdir())) == 2


class TestDeltaSyncGuards:
    async def test_disabled(self, service: DeltaSyncService, test_settings: Settings) -> None:
        test_settings.disable_delta_ingest = True
        assert (await service.start()).outcome == SyncOutcome.SKIPPED

    async def test_waits_for_initial_sync(
        self, service: DeltaSyncService, producer_stub: ProducerStub, test_settings: Settings
    ) -> None:
        test_settings.wait_for_initial_sync = True
        _o1_then_o2(producer_stub)
        assert (await service.start()).outcome == SyncOutcome.WAITING
        assert producer_stub.requests == []

    async def test_runs_after_successful_initial_sync(
        self,
        service: DeltaSyncService,
        producer_stub: ProducerStub,
        ledger: Ledger,
        test_settings: Settings,
    ) -> None:
        test_settings.wait_for_initial_sync = True
        job = await ledger.create_job(test_settings.initial_sync_job_operation)
        await ledger.update_status(job.uri, JobStatus.SUCCESS)
        _o1_then_o2(producer_stub)
        assert (await service.start()).outcome == SyncOutcome.SUCCESS

    async def test_busy_job_blocks_a_second_run(
        self,
        service: DeltaSyncService,
        producer_stub: ProducerStub,
        ledger: Ledger,
        test_settings: Settings,
    ) -> None:
        running = await ledger.create_job(test_settings.delta_sync_job_operation)
        _o1_then_o2(producer_stub)
        result = await service.start()
        assert result.outcome == SyncOutcome.BUSY
        assert result.job_uri == running.uri

    async def test_no_watermark(
        self, service: DeltaSyncService, ledger: Ledger, test_settings: Settings
    ) -> None:
        test_settings.start_from_delta_timestamp = None
        with pytest.raises(WatermarkUnavailableError):
            await service.run()

        assert (await service.start()).outcome == SyncOutcome.FAILED
        errors = await ledger.get_errors()
        assert len(errors) == 1
        assert "START_FROM_DELTA_TIMESTAMP" in errors[0].message

    async def test_producer_failure_is_stored(
        self, service: DeltaSyncService, producer_stub: ProducerStub, ledger: Ledger
    ) -> None:
        producer_stub.failing_paths.add("/sync/files")
        assert (await service.start()).outcome == SyncOutcome.FAILED
        assert len(await ledger.get_errors()) == 1
