"""Attachment download adapter.

Streams a remote file into the uploads directory with ``httpx.AsyncClient``.
Any failure removes the partial file and raises ``AttachmentFetchFailed``.
"""

from __future__ import annotations

import math
import mimetypes
import os
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import IO, Any
from urllib.parse import unquote, urlsplit

import httpx
import structlog

from Siteporter.errors import AttachmentFetchFailed
from Siteporter.metrics import observe_histogram

log = structlog.get_logger()

# Common filesystem limit on one path component
MAX_FILENAME_BYTES = 255


@dataclass
class LocalFile:
    path: Path
    url: str
    size: int
    mime_type: str


class AttachmentFetcher:
    """Downloads attachments into ``uploads_dir/<YYYY/MM>/`` and serves them at ``base_url``.

    Args:
        uploads_dir: Local root of the uploads tree
        base_url: Public URL prefix that maps onto ``uploads_dir``
        max_size: Largest accepted download in bytes; 0 means unlimited
        timeout: Per-request timeout in seconds
        client: Optional shared client (tests pass one with a mock transport)
    """

    def __init__(
        self,
        uploads_dir: str | os.PathLike[str],
        base_url: str,
        *,
        max_size: int = 0,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.uploads_dir = Path(uploads_dir)
        self.base_url = base_url.rstrip("/")
        self.max_size = max_size
        self.timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def __aenter__(self) -> AttachmentFetcher:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _reserve(self, folder: Path, filename: str) -> tuple[Path, IO[bytes]]:
        """Create a new empty file with a name unique within ``folder``."""
        folder.mkdir(parents=True, exist_ok=True)
        stem, suffix = os.path.splitext(filename)
        n = 0
        while True:
            candidate = folder / (filename if n == 0 else f"{stem}-{n}{suffix}")
            try:
                return candidate, candidate.open("xb")
            except FileExistsError:
                n += 1

    def _destination(self, url: str, destination_hint: str) -> tuple[Path, str]:
        """Return the target folder and a safe file name for ``url``.

        The name is decoded before the last path segment is taken, so encoded
        slashes never reach the filesystem. The folder must stay inside
        ``uploads_dir``.
        """
        filename = PurePosixPath(unquote(urlsplit(url).path)).name
        filename = filename.replace("\\", "_").replace("\x00", "")
        if filename in ("", ".", ".."):
            raise AttachmentFetchFailed("Remote URL has no file name", url=url)
        stem, suffix = os.path.splitext(filename)
        if len(filename.encode("utf-8")) > MAX_FILENAME_BYTES:
            # Leave room for the "-N" collision suffix
            budget = MAX_FILENAME_BYTES - len(suffix.encode("utf-8")) - 8
            stem = stem.encode("utf-8")[: max(budget, 1)].decode("utf-8", "ignore") or "file"
            filename = stem + suffix

        parts = [p for p in destination_hint.split("/") if p not in ("", ".", "..")]
        root = self.uploads_dir.resolve()
        folder = self.uploads_dir.joinpath(*parts)
        if not (folder / filename).resolve().is_relative_to(root):
            raise AttachmentFetchFailed("Attachment path escapes the uploads folder", url=url)
        return folder, filename

    async def fetch(self, url: str, destination_hint: str = "") -> LocalFile:
        """Download ``url`` into the uploads folder named by ``destination_hint``.

        Args:
            url: Remote URL of the attachment
            destination_hint: Upload sub-folder, normally ``YYYY/MM``

        Returns:
            The stored file

        Raises:
            AttachmentFetchFailed: On any HTTP, filesystem, size or type problem
        """
        folder, filename = self._destination(url, destination_hint)
        mime_type, _ = mimetypes.guess_type(filename)
        if mime_type is None:
            raise AttachmentFetchFailed("Invalid file type", url=url)

        try:
            path, handle = self._reserve(folder, filename)
        except OSError as exc:
            raise AttachmentFetchFailed(f"Could not create local file: {exc}", url=url) from exc
        start = time.perf_counter()
        size = 0
        try:
            with handle:
                async with self._client.stream("GET", url, timeout=self.timeout) as resp:
                    if resp.status_code != 200:
                        raise AttachmentFetchFailed(
                            f"Remote server returned {resp.status_code} {resp.reason_phrase} for {url}",
                            url=url,
                        )
                    declared = resp.headers.get("content-length")
                    async for chunk in resp.aiter_bytes():
                        size += len(chunk)
                        if self.max_size and size > self.max_size:
                            raise AttachmentFetchFailed(
                                f"Remote file is too large, limit is {self.max_size} bytes",
                                url=url,
                            )
                        handle.write(chunk)
            if declared is not None and declared.isdigit() and int(declared) != size:
                raise AttachmentFetchFailed("Remote file is incorrect size", url=url)
            if size == 0:
                raise AttachmentFetchFailed("Zero size file downloaded", url=url)
        except httpx.HTTPError as exc:
            path.unlink(missing_ok=True)
            raise AttachmentFetchFailed(f"Request failed: {exc}", url=url) from exc
        except OSError as exc:
            path.unlink(missing_ok=True)
            raise AttachmentFetchFailed(f"Could not write local file: {exc}", url=url) from exc
        except AttachmentFetchFailed:
            path.unlink(missing_ok=True)
            raise

        dur_ms = math.trunc((time.perf_counter() - start) * 1000)
        observe_histogram("importer.attachment.fetch_ms", dur_ms)
        relative = path.relative_to(self.uploads_dir).as_posix()
        local = LocalFile(
            path=path,
            url=f"{self.base_url}/{relative}",
            size=size,
            mime_type=mime_type,
        )
        log.info("fetch.completed", url=url, path=str(path), size=size, duration_ms=dur_ms)
        return local


__all__ = ["AttachmentFetcher", "LocalFile"]
