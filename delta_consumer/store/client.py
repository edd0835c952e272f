"""SPARQL client protocol and its HTTP implementation."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import httpx

from delta_consumer.exceptions import SparqlError, StoreUnavailableError

if TYPE_CHECKING:
    from delta_consumer.config import Settings

logger = logging.getLogger(__name__)

# One SPARQL JSON binding: {"type": ..., "value": ..., "datatype"?: ..., "xml:lang"?: ...}
Binding = dict[str, str]
Row = dict[str, Binding]


@runtime_checkable
class SparqlClient(Protocol):
    """Protocol for the triple store the consumer writes to."""

    async def query(self, text: str) -> list[Row]:
        """Run a SELECT query and return its solution rows."""
        ...

    async def update(self, text: str, headers: dict[str, str] | None = None) -> None:
        """Run a SPARQL update, sending ``headers`` along where the transport supports it."""
        ...

    async def aclose(self) -> None: ...


def value_of(row: Row, name: str) -> str | None:
    """Return the lexical value bound to ``name`` in ``row``, or None if unbound."""
    binding = row.get(name)
    if binding is None:
        return None
    return binding.get("value")


class HttpSparqlClient:
    """SPARQL 1.1 protocol client over httpx.

    Queries and updates are posted form-encoded.  Connection failures,
    timeouts and 5xx answers raise ``StoreUnavailableError``; other error
    statuses raise ``SparqlError``.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        headers: dict[str, str] | None = None,
        timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = endpoint
        self._client = httpx.AsyncClient(
            headers=headers or {},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> HttpSparqlClient:
        if not settings.sparql_endpoint:
            msg = "SPARQL_ENDPOINT must be set to use the HTTP SPARQL client"
            raise ValueError(msg)
        return cls(
            settings.sparql_endpoint,
            headers=settings.sparql_extra_headers,
            timeout=settings.store_timeout_seconds,
        )

    async def _post(
        self, form: dict[str, str], headers: dict[str, str] | None = None
    ) -> httpx.Response:
        try:
            response = await self._client.post(self.endpoint, data=form, headers=headers)
        except httpx.TransportError as exc:
            msg = f"SPARQL endpoint {self.endpoint} unreachable: {exc}"
            raise StoreUnavailableError(msg) from exc

        if response.status_code >= 500:
            msg = f"SPARQL endpoint answered {response.status_code}: {response.text[:500]}"
            raise StoreUnavailableError(msg)
        if response.status_code >= 400:
            msg = f"SPARQL request rejected with {response.status_code}: {response.text[:500]}"
            raise SparqlError(msg)
        return response

    async def query(self, text: str) -> list[Row]:
        response = await self._post(
            {"query": text}, headers={"Accept": "application/sparql-results+json"}
        )
        try:
            payload = response.json()
            rows: list[Row] = payload["results"]["bindings"]
        except (ValueError, KeyError, TypeError) as exc:
            msg = "SPARQL endpoint returned an unreadable result document"
            raise SparqlError(msg) from exc
        return rows

    async def update(self, text: str, headers: dict[str, str] | None = None) -> None:
        logger.debug("SPARQL update (%d chars) with headers %s", len(text), headers)
        await self._post({"update": text}, headers=headers)

    async def aclose(self) -> None:
        await self._client.aclose()
