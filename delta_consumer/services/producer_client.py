"""HTTP client for the producer's delta file, dump and download endpoints."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import httpx

from delta_consumer.exceptions import DownloadError, ProducerError
from delta_consumer.models.delta import DeltaFile, DumpFile
from delta_consumer.services.datetime_service import format_iso, parse_datetime

if TYPE_CHECKING:
    from datetime import datetime
    from pathlib import Path

    from delta_consumer.config import Settings
    from delta_consumer.filesystem.file_storage import FileStorage

logger = logging.getLogger(__name__)

JSONAPI_HEADERS = {"Accept": "application/vnd.api+json"}


class ProducerClient:
    """Talks to the producing stack.

    Listing errors raise ``ProducerError``; failed downloads raise
    ``DownloadError``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self._client = httpx.AsyncClient(
            timeout=settings.producer_timeout_seconds,
            follow_redirects=True,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get_json(self, url: str, params: dict[str, str] | None = None) -> Any:
        try:
            response = await self._client.get(url, params=params, headers=JSONAPI_HEADERS)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as exc:
            msg = f"Request to producer {url} failed: {exc}"
            raise ProducerError(msg) from exc
        except ValueError as exc:
            msg = f"Producer {url} returned invalid JSON"
            raise ProducerError(msg) from exc

    async def list_delta_files(self, since: datetime) -> list[DeltaFile]:
        """Return the delta files created after ``since``, oldest first."""
        url = self.settings.sync_files_endpoint
        payload = await self._get_json(url, params={"since": format_iso(since)})
        try:
            entries = payload["data"]
            files = [
                DeltaFile(
                    id=str(entry["id"]),
                    created=parse_datetime(entry["attributes"]["created"]),
                    name=str(entry["attributes"].get("name") or entry["id"]),
                    download_url=self.settings.download_file_endpoint(str(entry["id"])),
                )
                for entry in entries
            ]
        except (KeyError, TypeError, ValueError) as exc:
            msg = f"Unexpected delta file listing from {url}: {exc}"
            raise ProducerError(msg) from exc

        unconsumed = [f for f in files if f.created > since]
        if len(unconsumed) < len(files):
            logger.info(
                "Ignoring %d delta file(s) not created after %s",
                len(files) - len(unconsumed),
                format_iso(since),
            )
        return sorted(unconsumed, key=lambda f: (f.created, f.id))

    async def _download(self, url: str, destination: Path) -> Path:
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            async with self._client.stream("GET", url) as response:
                response.raise_for_status()
                with destination.open("wb") as handle:
                    async for chunk in response.aiter_bytes():
                        handle.write(chunk)
        except (httpx.HTTPError, OSError) as exc:
            destination.unlink(missing_ok=True)
            msg = f"Download of {url} to {destination} failed: {exc}"
            raise DownloadError(msg) from exc
        return destination

    async def download_delta_file(self, delta_file: DeltaFile) -> Path:
        """Download a delta file into the staging folder and return its path."""
        destination = self.settings.delta_file_folder / delta_file.staging_name
        delta_file.path = await self._download(delta_file.download_url, destination)
        logger.info("Wrote delta file %s to %s", delta_file.id, destination)
        return destination

    async def download_file_body(self, file_id: str, path: Path, storage: FileStorage) -> bool:
        """Download the body of virtual file ``file_id`` to ``path``.

        Returns False when a body already exists at ``path``.
        """
        url = self.settings.download_file_endpoint(file_id)
        try:
            async with self._client.stream("GET", url) as response:
                response.raise_for_status()
                return await storage.write_exclusive(path, response.aiter_bytes())
        except (httpx.HTTPError, OSError) as exc:
            msg = f"Download of file {file_id} from {url} to {path} failed: {exc}"
            raise DownloadError(msg) from exc

    async def get_latest_dump(self) -> DumpFile:
        """Find the newest dump of the configured dataset subject.

        Raises ProducerError when the producer publishes no dataset.
        """
        url = self.settings.sync_dataset_endpoint
        subject = self.settings.sync_dataset_subject or ""
        logger.info("Retrieving latest dataset from %s", url)
        dataset = await self._get_json(
            url,
            params={"filter[subject]": subject, "filter[:has-no:next-version]": "yes"},
        )
        try:
            if not dataset["data"]:
                msg = f"No dataset was found at the producing endpoint {url}"
                raise ProducerError(msg)
            entry = dataset["data"][0]
            issued = parse_datetime(entry["attributes"]["release-date"])
            related = entry["relationships"]["distributions"]["links"]["related"]
        except (KeyError, TypeError, IndexError, ValueError) as exc:
            msg = f"Unexpected dataset document from {url}: {exc}"
            raise ProducerError(msg) from exc

        base = (self.settings.sync_base_url or "").rstrip("/")
        distribution_url = f"{base}/{related.lstrip('/')}"
        logger.info("Retrieving distribution from %s", distribution_url)
        distribution = await self._get_json(distribution_url, params={"include": "subject"})
        try:
            file_id = str(distribution["data"][0]["relationships"]["subject"]["data"]["id"])
        except (KeyError, TypeError, IndexError) as exc:
            msg = f"Unexpected distribution document from {distribution_url}: {exc}"
            raise ProducerError(msg) from exc

        return DumpFile(
            id=file_id,
            issued=issued,
            download_url=self.settings.download_file_endpoint(file_id),
            dataset=entry.get("id"),
        )

    async def download_dump(self, dump: DumpFile) -> Path:
        destination = self.settings.dump_file_folder / dump.staging_name
        dump.path = await self._download(dump.download_url, destination)
        logger.info("Wrote dump file %s to %s", dump.id, destination)
        return destination
