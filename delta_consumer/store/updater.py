"""Batched, retrying application of triple inserts and deletes."""

from __future__ import annotations

import asyncio
import functools
import logging
from enum import StrEnum
from typing import TYPE_CHECKING, TypeVar

from delta_consumer.exceptions import StoreUnavailableError
from delta_consumer.store.escape import StatementBuilder, escape_uri

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from delta_consumer.config import Settings
    from delta_consumer.models.delta import Triple
    from delta_consumer.store.client import SparqlClient

logger = logging.getLogger(__name__)

T = TypeVar("T")


class UpdateMode(StrEnum):
    INSERT = "INSERT"
    DELETE = "DELETE"


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    backoff_seconds: float,
    description: str = "store operation",
) -> T:
    """Run ``operation``, retrying transient store failures.

    ``max_attempts`` counts every attempt, the first included.  Only
    ``StoreUnavailableError`` is retried; when the last attempt fails its
    error is re-raised unchanged.
    """
    attempts = max(1, max_attempts)
    attempt = 1
    while True:
        try:
            return await operation()
        except StoreUnavailableError as exc:
            if attempt >= attempts:
                logger.error("%s failed after %d attempt(s): %s", description, attempt, exc)
                raise
            logger.warning(
                "%s failed (attempt %d/%d): %s. Retrying in %.1fs",
                description,
                attempt,
                attempts,
                exc,
                backoff_seconds,
            )
            await asyncio.sleep(backoff_seconds)
            attempt += 1


def build_update(graph: str, triples: Sequence[Triple], mode: UpdateMode) -> str:
    """Render one ``INSERT DATA`` or ``DELETE DATA`` request scoped to ``graph``.

    Replaying an insert is a no-op only for triples without blank nodes: the
    store mints a fresh node for every blank node label in each request, so a
    replayed blank node insert adds a second copy.
    """
    builder = StatementBuilder()
    keyword = "INSERT DATA" if mode == UpdateMode.INSERT else "DELETE DATA"
    return (
        f"{keyword} {{\n  GRAPH {escape_uri(graph)} {{\n"
        f"{builder.statements(triples)}\n  }}\n}}"
    )


def build_bnode_delete(graph: str, triple: Triple) -> str:
    """Render a ``DELETE WHERE`` for a triple with blank nodes, matched as variables."""
    builder = StatementBuilder(bnodes_as_variables=True)
    return f"DELETE WHERE {{\n  GRAPH {escape_uri(graph)} {{\n{builder.statement(triple)}\n  }}\n}}"


class BatchedUpdater:
    """Applies ordered triple lists to one named graph in fixed-size batches."""

    def __init__(
        self,
        client: SparqlClient,
        *,
        batch_size: int = 100,
        max_attempts: int = 5,
        sleep_between_batches: float = 1.0,
        retry_backoff: float = 60.0,
    ) -> None:
        if batch_size < 1:
            msg = f"Batch size must be at least 1, got {batch_size}"
            raise ValueError(msg)
        self.client = client
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.sleep_between_batches = sleep_between_batches
        self.retry_backoff = retry_backoff

    @classmethod
    def from_settings(cls, client: SparqlClient, settings: Settings) -> BatchedUpdater:
        return cls(
            client,
            batch_size=settings.batch_size,
            max_attempts=settings.max_db_retry_attempts,
            sleep_between_batches=settings.sleep_between_batches,
            retry_backoff=settings.sleep_time_after_failed_db_operation,
        )

    async def run(
        self,
        text: str,
        headers: dict[str, str] | None = None,
        description: str = "SPARQL update",
    ) -> None:
        """Run a single update through the retry helper."""
        await with_retry(
            functools.partial(self.client.update, text, headers=headers),
            max_attempts=self.max_attempts,
            backoff_seconds=self.retry_backoff,
            description=description,
        )

    async def apply(
        self,
        graph: str,
        triples: Sequence[Triple],
        mode: UpdateMode,
        *,
        extra_headers: dict[str, str] | None = None,
        batch_size: int | None = None,
    ) -> int:
        """Apply ``triples`` to ``graph`` and return the number of requests issued.

        Deletes are exact matches within ``graph``; triples containing blank
        nodes are deleted one by one with their blank nodes as variables.
        Batches are separated by ``sleep_between_batches``.
        """
        if not triples:
            return 0
        size = batch_size or self.batch_size

        requests: list[str] = []
        if mode == UpdateMode.DELETE:
            plain = [t for t in triples if not t.has_bnode]
            requests.extend(build_bnode_delete(graph, t) for t in triples if t.has_bnode)
        else:
            plain = list(triples)
        requests[:0] = [
            build_update(graph, plain[i : i + size], mode) for i in range(0, len(plain), size)
        ]

        logger.info(
            "Applying %d %s triple(s) to <%s> in %d request(s)",
            len(triples),
            mode.value.lower(),
            graph,
            len(requests),
        )
        for index, text in enumerate(requests):
            if index:
                await asyncio.sleep(self.sleep_between_batches)
            await self.run(
                text,
                headers=extra_headers,
                description=f"{mode.value} batch {index + 1}/{len(requests)} on <{graph}>",
            )
        return len(requests)
