"""Download pipeline for single remote objects.

This module provides:
- DownloadPipeline: fetches a capability URL for one object and streams it
  to disk, coordinating the watcher guard and the transfer registry

Sequence for one file:
    1. create the parent directory
    2. hold the destination and its temporary file in the WatcherGuard
    3. start a Transfer in the registry
    4. request a capability URL from the coordination service
    5. stream the object into a ``.tmp`` sibling, reporting progress
    6. rename the temporary file over the destination and mark the Transfer
       done, or delete the temporary file and mark it error
    7. release the guard after the stability delay, whatever the outcome

An existing destination file is only replaced once the whole object has
been received; a failed download leaves it untouched.
"""

from __future__ import annotations

import contextlib
import logging
import uuid
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from bucketsync.client.api import APIError, AuthenticationError
from bucketsync.client.sync.types import DownloadError, DownloadResult
from bucketsync.core.config import DEFAULT_STABILITY_DELAY
from bucketsync.core.types import TransferKind, TransferStatus

if TYPE_CHECKING:
    from bucketsync.client.api import CoordinationClient, ManifestBucket, ManifestFile
    from bucketsync.client.guard import WatcherGuard
    from bucketsync.client.status import TransferStatusRegistry

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
TMP_SUFFIX = ".tmp"


def temporary_path(local_path: Path) -> Path:
    """Sibling file an object is streamed into before replacing ``local_path``."""
    return local_path.with_suffix(local_path.suffix + TMP_SUFFIX)


class DownloadPipeline:
    """Streams remote objects to the local mirror."""

    def __init__(
        self,
        client: CoordinationClient,
        transfers: TransferStatusRegistry,
        guard: WatcherGuard,
        stability_delay: float = DEFAULT_STABILITY_DELAY,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        """Initialize the pipeline.

        Args:
            client: Coordination service client.
            transfers: Registry receiving transfer progress.
            guard: Guard shared with the filesystem watcher.
            stability_delay: Seconds a path stays held after the download ended.
            chunk_size: Read size for the streamed body.
        """
        self._client = client
        self._transfers = transfers
        self._guard = guard
        self._stability_delay = stability_delay
        self._chunk_size = chunk_size

    @property
    def guard(self) -> WatcherGuard:
        """Guard held while files are written."""
        return self._guard

    @guard.setter
    def guard(self, guard: WatcherGuard) -> None:
        self._guard = guard

    def download_file(
        self,
        bucket: ManifestBucket,
        file: ManifestFile,
        local_path: Path,
    ) -> DownloadResult:
        """Download one object to ``local_path``.

        Args:
            bucket: Bucket owning the object.
            file: Manifest entry of the object.
            local_path: Absolute destination path.

        Returns:
            DownloadResult with the number of bytes written.

        Raises:
            AuthenticationError: If the coordination service rejected the token.
            DownloadError: On any other failure; no partial file is left behind
                and an existing ``local_path`` is left untouched.
        """
        try:
            local_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DownloadError(f"Cannot create directory for {file.key}: {e}") from e

        tmp_path = temporary_path(local_path)
        self._guard.acquire(local_path)
        self._guard.acquire(tmp_path)

        expected_size = file.size or 0
        transfer_id = f"dl-{uuid.uuid4().hex[:12]}-{file.display_name}"
        self._transfers.start_transfer(
            transfer_id, file.display_name, TransferKind.DOWNLOAD, expected_size
        )

        try:
            logger.info(f"Downloading: {file.key} -> {local_path.name}")
            url = self._client.get_presigned_url(
                bucket.id,
                file.key,
                action="download",
                content_type=file.mime_type,
            )
            written = self._stream_to_file(url, tmp_path, expected_size, transfer_id)
            tmp_path.replace(local_path)
        except AuthenticationError:
            self._discard_partial(tmp_path)
            self._transfers.complete_transfer(transfer_id, TransferStatus.ERROR)
            raise
        except (APIError, httpx.HTTPError, OSError) as e:
            self._discard_partial(tmp_path)
            self._transfers.complete_transfer(transfer_id, TransferStatus.ERROR)
            raise DownloadError(f"Failed to download {file.key}: {e}") from e
        except BaseException:
            self._discard_partial(tmp_path)
            self._transfers.complete_transfer(transfer_id, TransferStatus.ERROR)
            raise
        finally:
            self._guard.release_after(tmp_path, self._stability_delay)
            self._guard.release_after(local_path, self._stability_delay)

        self._transfers.complete_transfer(transfer_id, TransferStatus.DONE)
        logger.info(f"Downloaded: {file.key} ({written} bytes)")
        return DownloadResult(
            key=file.key,
            local_path=local_path,
            size=written,
            transfer_id=transfer_id,
        )

    def _stream_to_file(
        self,
        url: str,
        tmp_path: Path,
        expected_size: int,
        transfer_id: str,
    ) -> int:
        """Stream a capability URL into ``tmp_path``, reporting progress."""
        written = 0
        with self._client.open_object_stream(url) as response, open(tmp_path, "wb") as f:
            for chunk in response.iter_bytes(self._chunk_size):
                f.write(chunk)
                written += len(chunk)
                if expected_size > 0:
                    self._transfers.update_progress(
                        transfer_id, written / expected_size * 100, written
                    )
        return written

    @staticmethod
    def _discard_partial(local_path: Path) -> None:
        with contextlib.suppress(OSError):
            local_path.unlink(missing_ok=True)
