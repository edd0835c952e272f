"""Mapping of share URIs onto the local file folder, and file body operations."""

from __future__ import annotations

import logging
import posixpath
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

from delta_consumer.exceptions import UnsafePathError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)


class FileStorage:
    """Stores file bodies under ``file_folder``, addressed by share URIs.

    ``share://a/b/c.pdf`` lives at ``<file_folder>/a/b/c.pdf``.  ``remapping``
    maps a source directory (``/a/b``) to a target directory (``x/y``).
    """

    def __init__(
        self,
        file_folder: Path,
        share_scheme: str = "share://",
        remapping: dict[str, str] | None = None,
    ) -> None:
        self.file_folder = file_folder
        self.share_scheme = share_scheme
        self.remapping = {
            self._normalize_dir(source): target for source, target in (remapping or {}).items()
        }

    @staticmethod
    def _normalize_dir(directory: str) -> str:
        return "/" + directory.strip("/")

    def path_for(self, share_uri: str) -> Path:
        """Resolve a share URI to a path inside the file folder.

        Raises UnsafePathError if the URI does not use the share scheme or
        escapes the file folder.
        """
        if not share_uri.startswith(self.share_scheme):
            msg = f"Not a {self.share_scheme} URI: {share_uri}"
            raise UnsafePathError(msg)
        relative = share_uri[len(self.share_scheme) :].lstrip("/")
        root = self.file_folder.resolve()
        full_path = (root / relative).resolve()
        if full_path == root or not full_path.is_relative_to(root):
            msg = (
                f"File {share_uri} would be stored at {full_path}, "
                f"outside the configured folder {root}"
            )
            raise UnsafePathError(msg)
        return full_path

    def transform_uri(self, share_uri: str) -> str | None:
        """Return the remapped share URI, or None when its directory has no remapping."""
        original = "/" + share_uri[len(self.share_scheme) :].lstrip("/")
        dirname, basename = posixpath.split(original)
        target = self.remapping.get(self._normalize_dir(dirname))
        if target is None:
            return None
        new_path = posixpath.normpath(posixpath.join("/", target.strip("/"), basename))
        return self.share_scheme + new_path.lstrip("/")

    async def write_exclusive(self, path: Path, chunks: AsyncIterator[bytes]) -> bool:
        """Write ``chunks`` to a new file at ``path``.

        Returns False without consuming ``chunks`` when the file already
        exists.  A partially written file is removed before the error is
        re-raised.
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            handle = path.open("xb")
        except FileExistsError:
            logger.info("File %s already exists locally, not downloading it again", path)
            return False

        try:
            with handle:
                async for chunk in chunks:
                    handle.write(chunk)
        except BaseException:
            self.delete(path)
            raise
        return True

    def move(self, source: Path, destination: Path) -> None:
        """Move a file body, creating the destination directory.

        A move that already happened (source gone, destination present) is a no-op.
        """
        if not source.exists() and destination.exists():
            logger.info("File %s already moved to %s", source, destination)
            return
        destination.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Moving file from %s to %s", source, destination)
        shutil.move(source, destination)

    def delete(self, path: Path) -> bool:
        """Delete a file body; a file that is already gone is not an error."""
        try:
            path.unlink()
        except FileNotFoundError:
            logger.info("File %s already removed", path)
            return False
        logger.info("Removed file %s", path)
        return True
