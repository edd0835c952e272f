"""Queries over file metadata in the staging and ingest graphs.

A file is described by a virtual file (the producer's identity, carrying the
uuid used for downloads) and a physical file (``share://`` URI) linked to it
by ``nie:dataSource``.  Both must be fully described before a file can be
moved into the ingest graph or removed from it.
"""

from __future__ import annotations

import functools
import logging
from typing import TYPE_CHECKING

from delta_consumer.store.client import value_of
from delta_consumer.store.escape import escape_string, escape_uri
from delta_consumer.store.updater import with_retry
from delta_consumer.vocabulary import PREFIXES, TASK_FAILURE_TYPE, FileTaskKind, JobStatus

if TYPE_CHECKING:
    from delta_consumer.config import Settings
    from delta_consumer.store.client import Row, SparqlClient
    from delta_consumer.store.updater import BatchedUpdater

logger = logging.getLogger(__name__)

# Maximum length of a dct:replaces chain followed when resolving a file's current identity
MAX_REPLACES_DEPTH = 32


def full_metadata_pattern(vuuid: str, optional_replaces: bool = True) -> str:
    """Graph pattern matching a complete virtual/physical file description."""
    replaces = "OPTIONAL { ?puri dct:replaces ?oldpuri . }" if optional_replaces else ""
    return f"""
        ?vuri a nfo:FileDataObject ;
          mu:uuid {vuuid} ;
          nfo:fileName ?filename ;
          dct:format ?format ;
          nfo:fileSize ?filesize ;
          dbpedia:fileExtension ?extension ;
          dct:created ?created ;
          dct:modified ?modified .
        ?puri a nfo:FileDataObject ;
          mu:uuid ?puuid ;
          nie:dataSource ?vuri ;
          nfo:fileName ?pfilename ;
          dct:format ?pformat ;
          nfo:fileSize ?pfilesize ;
          dbpedia:fileExtension ?pextension ;
          dct:created ?pcreated ;
          dct:modified ?pmodified .
        {replaces}
    """


def full_metadata_template(vuuid: str, physical: str = "?puri") -> str:
    """Construct template for a complete file description, including ``dct:replaces``."""
    return f"""
        ?vuri a nfo:FileDataObject ;
          mu:uuid {vuuid} ;
          nfo:fileName ?filename ;
          dct:format ?format ;
          nfo:fileSize ?filesize ;
          dbpedia:fileExtension ?extension ;
          dct:created ?created ;
          dct:modified ?modified .
        {physical} a nfo:FileDataObject ;
          mu:uuid ?puuid ;
          nie:dataSource ?vuri ;
          nfo:fileName ?pfilename ;
          dct:format ?pformat ;
          nfo:fileSize ?pfilesize ;
          dbpedia:fileExtension ?pextension ;
          dct:created ?pcreated ;
          dct:modified ?pmodified ;
          dct:replaces ?oldpuri .
    """


def _active_task_filter(kind: FileTaskKind, subject_var: str, jobs_graph: str) -> str:
    statuses = ", ".join(escape_uri(s) for s in (JobStatus.SCHEDULED, JobStatus.BUSY))
    return f"""
        FILTER NOT EXISTS {{
          GRAPH {jobs_graph} {{
            ?activeTask a {escape_uri(kind)} ;
              ext:subject ?activeSubject ;
              adms:status ?activeStatus .
            FILTER(?activeStatus IN ({statuses}))
            FILTER(STR(?activeSubject) = STR({subject_var}))
          }}
        }}
    """


class FileMetadata:
    """Reads and moves file metadata between the staging graphs and the ingest graph."""

    def __init__(self, client: SparqlClient, updater: BatchedUpdater, settings: Settings) -> None:
        self.client = client
        self.updater = updater
        self.settings = settings
        self.temp_graph = escape_uri(settings.temp_file_graph)
        self.removal_graph = escape_uri(settings.temp_file_removal_graph)
        self.ingest_graph = escape_uri(settings.ingest_graph)
        self.jobs_graph = escape_uri(settings.jobs_graph)
        self.scope_headers = {settings.scope_header_name: settings.file_sync_scope_id}

    async def _query(self, text: str) -> list[Row]:
        return await with_retry(
            functools.partial(self.client.query, PREFIXES + text),
            max_attempts=self.updater.max_attempts,
            backoff_seconds=self.updater.retry_backoff,
            description="file metadata query",
        )

    async def _update(self, text: str, description: str, scoped: bool = True) -> None:
        await self.updater.run(
            PREFIXES + text,
            headers=self.scope_headers if scoped else None,
            description=description,
        )

    # ── Scheduling candidates ─────────────────────────

    async def add_candidates(self) -> list[str]:
        """Virtual file uuids staged for addition with no active task and no failure marker."""
        rows = await self._query(
            f"""
            SELECT DISTINCT ?vuuid WHERE {{
              GRAPH {self.temp_graph} {{
                ?vuri mu:uuid ?vuuid .
                ?puri nie:dataSource ?vuri .
                FILTER NOT EXISTS {{ ?vuri a {escape_uri(TASK_FAILURE_TYPE)} . }}
              }}
              {_active_task_filter(FileTaskKind.ADD, "?vuuid", self.jobs_graph)}
            }}
            """
        )
        return [v for row in rows if (v := value_of(row, "vuuid"))]

    async def remove_candidates(self) -> list[str]:
        """Virtual file uuids whose full description is staged for removal."""
        rows = await self._query(
            f"""
            SELECT DISTINCT ?vuuid WHERE {{
              GRAPH {self.removal_graph} {{
                {full_metadata_pattern("?vuuid", optional_replaces=False)}
                FILTER NOT EXISTS {{ ?vuri a {escape_uri(TASK_FAILURE_TYPE)} . }}
              }}
              {_active_task_filter(FileTaskKind.REMOVE, "?vuuid", self.jobs_graph)}
            }}
            """
        )
        return [v for row in rows if (v := value_of(row, "vuuid"))]

    async def update_candidates(self) -> list[str]:
        """Resources with staged values for predicates they already carry in the ingest graph.

        A resource counts both when it is in the ingest graph itself and when
        a newer physical identity there replaces it.
        """
        rows = await self._query(
            f"""
            SELECT DISTINCT ?uri WHERE {{
              GRAPH {self.temp_graph} {{
                ?uri ?pred ?newval .
                FILTER NOT EXISTS {{ ?uri a {escape_uri(TASK_FAILURE_TYPE)} . }}
              }}
              {{
                GRAPH {self.ingest_graph} {{ ?uri ?pred ?oldval . }}
              }}
              UNION
              {{
                GRAPH {self.ingest_graph} {{
                  ?newuri dct:replaces ?uri .
                  ?newuri ?pred ?oldval .
                }}
              }}
              {_active_task_filter(FileTaskKind.UPDATE, "?uri", self.jobs_graph)}
            }}
            """
        )
        return [v for row in rows if (v := value_of(row, "uri"))]

    # ── Lookups ───────────────────────────────────────

    async def physical_uri(self, vuuid: str, graph: str | None = None) -> str | None:
        graph = graph or self.temp_graph
        rows = await self._query(
            f"""
            SELECT ?puri WHERE {{
              GRAPH {graph} {{
                ?vuri mu:uuid {escape_string(vuuid)} .
                ?puri nie:dataSource ?vuri .
              }}
            }}
            LIMIT 1
            """
        )
        return value_of(rows[0], "puri") if rows else None

    async def is_metadata_full(self, vuuid: str, graph: str | None = None) -> bool:
        graph = graph or self.temp_graph
        rows = await self._query(
            f"""
            SELECT ?vuri WHERE {{
              GRAPH {graph} {{ {full_metadata_pattern(escape_string(vuuid))} }}
            }}
            LIMIT 1
            """
        )
        return bool(rows)

    async def current_identity(self, uri: str) -> str:
        """Follow ``dct:replaces`` links in the ingest graph to the newest identity of ``uri``."""
        current = uri
        seen = {uri}
        for _ in range(MAX_REPLACES_DEPTH):
            rows = await self._query(
                f"""
                SELECT ?newer WHERE {{
                  GRAPH {self.ingest_graph} {{ ?newer dct:replaces {escape_uri(current)} . }}
                }}
                LIMIT 1
                """
            )
            newer = value_of(rows[0], "newer") if rows else None
            if newer is None or newer in seen:
                return current
            seen.add(newer)
            current = newer
        logger.warning("Replaces chain of %s is longer than %d", uri, MAX_REPLACES_DEPTH)
        return current

    # ── Add workflow ──────────────────────────────────

    async def replace_physical_uri(self, old_uri: str, new_uri: str) -> None:
        """Move the staged description of ``old_uri`` to ``new_uri``, linked by ``dct:replaces``."""
        old, new = escape_uri(old_uri), escape_uri(new_uri)
        await self._update(
            f"""
            DELETE {{ GRAPH {self.temp_graph} {{ {old} ?p ?o . }} }}
            INSERT {{
              GRAPH {self.temp_graph} {{
                {new} ?p ?o .
                {new} dct:replaces {old} .
              }}
            }}
            WHERE {{ GRAPH {self.temp_graph} {{ {old} ?p ?o . }} }}
            """,
            description=f"remap of <{old_uri}> to <{new_uri}>",
        )

    async def move_to_ingest(self, vuuid: str) -> None:
        """Copy a complete staged file description into the ingest graph, then unstage it."""
        vuuid_literal = escape_string(vuuid)
        await self._update(
            f"""
            INSERT {{ GRAPH {self.ingest_graph} {{ {full_metadata_template(vuuid_literal)} }} }}
            WHERE {{ GRAPH {self.temp_graph} {{ {full_metadata_pattern(vuuid_literal)} }} }}
            """,
            description=f"move of file {vuuid} to the ingest graph",
            scoped=False,
        )
        await self._update(
            f"""
            DELETE {{ GRAPH {self.temp_graph} {{ {full_metadata_template(vuuid_literal)} }} }}
            WHERE {{ GRAPH {self.temp_graph} {{ {full_metadata_pattern(vuuid_literal)} }} }}
            """,
            description=f"unstaging of file {vuuid}",
        )

    # ── Remove workflow ───────────────────────────────

    async def remove_from_ingest(self, vuuid: str, current: str) -> None:
        """Delete a file description from the ingest graph.

        ``current`` is the newest identity of the staged physical file (see
        ``current_identity``); every ``dct:replaces`` link between the two is
        deleted with it.
        """
        vuuid_literal = escape_string(vuuid)
        current_uri = escape_uri(current)
        await self._update(
            f"""
            DELETE {{
              GRAPH {self.ingest_graph} {{
                {full_metadata_template(vuuid_literal, physical=current_uri)}
                ?hop dct:replaces ?olderhop .
              }}
            }}
            WHERE {{
              GRAPH {self.removal_graph} {{
                {full_metadata_pattern(vuuid_literal, optional_replaces=False)}
              }}
              OPTIONAL {{
                GRAPH {self.ingest_graph} {{
                  ?hop dct:replaces ?olderhop .
                  {current_uri} dct:replaces* ?hop .
                  ?olderhop dct:replaces* ?puri .
                }}
              }}
            }}
            """,
            description=f"removal of file {vuuid} from the ingest graph",
            scoped=False,
        )

    async def remove_from_removal_graph(self, vuuid: str) -> None:
        vuuid_literal = escape_string(vuuid)
        await self._update(
            f"""
            DELETE {{ GRAPH {self.removal_graph} {{ {full_metadata_template(vuuid_literal)} }} }}
            WHERE {{
              GRAPH {self.removal_graph} {{
                {full_metadata_pattern(vuuid_literal)}
              }}
            }}
            """,
            description=f"unstaging of removed file {vuuid}",
        )

    # ── Update workflow ───────────────────────────────

    async def apply_update(self, uri: str, target: str) -> None:
        """Replace the values in the ingest graph of every predicate staged for ``uri``.

        ``target`` is the identity written to: ``uri`` itself or the newest
        physical identity replacing it.  Staged values are unstaged afterwards.
        """
        source, destination = escape_uri(uri), escape_uri(target)
        await self._update(
            f"""
            DELETE {{ GRAPH {self.ingest_graph} {{ {destination} ?pred ?oldvalue . }} }}
            INSERT {{ GRAPH {self.ingest_graph} {{ {destination} ?pred ?newvalue . }} }}
            WHERE {{
              GRAPH {self.temp_graph} {{ {source} ?pred ?newvalue . }}
              GRAPH {self.ingest_graph} {{ {destination} ?pred ?oldvalue . }}
            }}
            """,
            description=f"metadata update of <{target}>",
            scoped=False,
        )
        await self._update(
            f"""
            DELETE {{ GRAPH {self.temp_graph} {{ {source} ?pred ?newvalue . }} }}
            WHERE {{
              GRAPH {self.temp_graph} {{ {source} ?pred ?newvalue . }}
              GRAPH {self.ingest_graph} {{ {destination} ?pred ?anyvalue . }}
            }}
            """,
            description=f"unstaging of update for <{uri}>",
        )

    # ── Failure markers ───────────────────────────────

    async def mark_failure_by_uuid(self, vuuid: str, graph: str | None = None) -> None:
        """Flag the virtual file with uuid ``vuuid`` so it is never scheduled again."""
        graph = graph or self.temp_graph
        await self._update(
            f"""
            INSERT {{ GRAPH {graph} {{ ?vuri a {escape_uri(TASK_FAILURE_TYPE)} . }} }}
            WHERE {{ GRAPH {graph} {{ ?vuri mu:uuid {escape_string(vuuid)} . }} }}
            """,
            description=f"failure marker for file {vuuid}",
        )

    async def mark_failure_by_uri(self, uri: str, graph: str | None = None) -> None:
        graph = graph or self.temp_graph
        await self._update(
            f"""
            INSERT DATA {{
              GRAPH {graph} {{ {escape_uri(uri)} a {escape_uri(TASK_FAILURE_TYPE)} . }}
            }}
            """,
            description=f"failure marker for <{uri}>",
        )

    async def has_failure_marker(self, vuuid: str, graph: str | None = None) -> bool:
        graph = graph or self.temp_graph
        rows = await self._query(
            f"""
            SELECT ?vuri WHERE {{
              GRAPH {graph} {{
                ?vuri mu:uuid {escape_string(vuuid)} ;
                  a {escape_uri(TASK_FAILURE_TYPE)} .
              }}
            }}
            LIMIT 1
            """
        )
        return bool(rows)
