"""Tests for the download pipeline."""

from __future__ import annotations

import re
import time
from pathlib import Path

import pytest

from bucketsync.client.api import AuthenticationError, CoordinationClient, ManifestBucket, ManifestFile
from bucketsync.client.guard import WatcherGuard
from bucketsync.client.status import Transfer, TransferStatusRegistry
from bucketsync.client.sync.download import DownloadPipeline, temporary_path
from bucketsync.client.sync.types import DownloadError
from bucketsync.core.config import ServerConfig
from bucketsync.core.types import TransferKind, TransferStatus

PRESIGNED_URL = re.compile(r"http://test/api/files/presigned\?.*")
STORAGE_URL = "http://storage/docs/a/report.pdf"


def wait_until(predicate, timeout: float = 5.0) -> bool:  # type: ignore[no-untyped-def]
    """Poll until predicate() is true or timeout expires."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class FailingRegistry(TransferStatusRegistry):
    """Registry whose progress reporting fails like a full disk."""

    def update_progress(self, transfer_id: str, progress: float, loaded: int | None = None) -> None:
        raise OSError("No space left on device")


@pytest.fixture
def client() -> CoordinationClient:
    """Create a coordination client."""
    c = CoordinationClient(ServerConfig(server_url="http://test/api", token="tok"))
    yield c
    c.close()


@pytest.fixture
def registry() -> TransferStatusRegistry:
    """Create a registry without throttling."""
    r = TransferStatusRegistry(throttle=0, grace_period=60)
    yield r
    r.close()


@pytest.fixture
def guard() -> WatcherGuard:
    """Create a watcher guard."""
    g = WatcherGuard()
    yield g
    g.clear()


BUCKET = ManifestBucket(id="b1", name="docs", region="eu-west-1", account_id="a1")


def make_file(size: int | None = 1024) -> ManifestFile:
    """Create a manifest file entry."""
    return ManifestFile(key="a/report.pdf", id="f1", size=size, mime_type="application/pdf")


class TestDownloadFile:
    """Tests for DownloadPipeline.download_file."""

    def test_downloads_to_path(  # type: ignore[no-untyped-def]
        self, httpx_mock, client, registry, guard, tmp_path: Path
    ) -> None:
        """Should write the object and mark the transfer done."""
        content = b"x" * 1024
        httpx_mock.add_response(url=PRESIGNED_URL, json={"url": STORAGE_URL})
        httpx_mock.add_response(url=STORAGE_URL, content=content)
        pipeline = DownloadPipeline(client, registry, guard, stability_delay=0, chunk_size=256)
        local_path = tmp_path / "docs" / "a" / "report.pdf"

        result = pipeline.download_file(BUCKET, make_file(), local_path)

        assert local_path.read_bytes() == content
        assert result.size == 1024
        assert result.key == "a/report.pdf"
        assert result.transfer_id.startswith("dl-")
        assert result.transfer_id.endswith("-report.pdf")
        transfer = registry.get_transfer(result.transfer_id)
        assert transfer is not None
        assert transfer.type is TransferKind.DOWNLOAD
        assert transfer.status is TransferStatus.DONE
        assert transfer.progress == 100.0

    def test_requests_download_capability(  # type: ignore[no-untyped-def]
        self, httpx_mock, client, registry, guard, tmp_path: Path
    ) -> None:
        """Should ask for a download URL for the bucket and key."""
        httpx_mock.add_response(url=PRESIGNED_URL, json={"url": STORAGE_URL})
        httpx_mock.add_response(url=STORAGE_URL, content=b"data")
        pipeline = DownloadPipeline(client, registry, guard, stability_delay=0)

        pipeline.download_file(BUCKET, make_file(4), tmp_path / "report.pdf")

        presign = httpx_mock.get_requests(url=PRESIGNED_URL)[0]
        assert presign.url.params["bucketId"] == "b1"
        assert presign.url.params["name"] == "a/report.pdf"
        assert presign.url.params["action"] == "download"
        assert presign.url.params["contentType"] == "application/pdf"

    def test_progress_reported(  # type: ignore[no-untyped-def]
        self, httpx_mock, client, registry, guard, tmp_path: Path
    ) -> None:
        """Should push monotonically increasing progress while streaming."""
        httpx_mock.add_response(url=PRESIGNED_URL, json={"url": STORAGE_URL})
        httpx_mock.add_response(url=STORAGE_URL, content=b"y" * 1000)
        snapshots: list[list[Transfer]] = []
        registry.subscribe(snapshots.append)
        pipeline = DownloadPipeline(client, registry, guard, stability_delay=0, chunk_size=100)

        pipeline.download_file(BUCKET, make_file(1000), tmp_path / "report.pdf")

        progress = [s[0].progress for s in snapshots if s and s[0].status is TransferStatus.ACTIVE]
        assert progress[0] == 0.0
        assert progress == sorted(progress)
        assert len(progress) > 2
        assert snapshots[-1][0].status is TransferStatus.DONE

    def test_unknown_size(  # type: ignore[no-untyped-def]
        self, httpx_mock, client, registry, guard, tmp_path: Path
    ) -> None:
        """Should still track the transfer without percentage updates."""
        httpx_mock.add_response(url=PRESIGNED_URL, json={"url": STORAGE_URL})
        httpx_mock.add_response(url=STORAGE_URL, content=b"abc")
        snapshots: list[list[Transfer]] = []
        registry.subscribe(snapshots.append)
        pipeline = DownloadPipeline(client, registry, guard, stability_delay=0)

        result = pipeline.download_file(BUCKET, make_file(None), tmp_path / "report.pdf")

        assert result.size == 3
        assert len(snapshots) == 2  # start and completion only
        assert snapshots[0][0].size == 0
        assert snapshots[-1][0].status is TransferStatus.DONE

    def test_guard_held_before_write_and_released_after_delay(  # type: ignore[no-untyped-def]
        self, httpx_mock, client, registry, guard, tmp_path: Path
    ) -> None:
        """Should hold the path from transfer start until the stability delay passed."""
        httpx_mock.add_response(url=PRESIGNED_URL, json={"url": STORAGE_URL})
        httpx_mock.add_response(url=STORAGE_URL, content=b"data")
        local_path = tmp_path / "report.pdf"
        held_at_start: list[bool] = []
        registry.subscribe(
            lambda transfers: held_at_start.append(guard.is_held(local_path))
            if len(held_at_start) == 0 else None
        )
        pipeline = DownloadPipeline(client, registry, guard, stability_delay=0.3)

        assert guard.is_held(local_path) is False
        pipeline.download_file(BUCKET, make_file(4), local_path)

        assert held_at_start == [True]
        assert guard.is_held(local_path) is True
        assert wait_until(lambda: not guard.is_held(local_path))

    def test_capability_error(  # type: ignore[no-untyped-def]
        self, httpx_mock, client, registry, guard, tmp_path: Path
    ) -> None:
        """Should raise DownloadError and mark the transfer as error."""
        httpx_mock.add_response(url=PRESIGNED_URL, status_code=500, json={"error": "S3 down"})
        pipeline = DownloadPipeline(client, registry, guard, stability_delay=0)
        local_path = tmp_path / "report.pdf"

        with pytest.raises(DownloadError, match="S3 down"):
            pipeline.download_file(BUCKET, make_file(), local_path)

        assert not local_path.exists()
        transfers = registry.get_transfers()
        assert [t.status for t in transfers] == [TransferStatus.ERROR]
        assert guard.is_held(local_path) is False

    def test_non_200_stream(  # type: ignore[no-untyped-def]
        self, httpx_mock, client, registry, guard, tmp_path: Path
    ) -> None:
        """Should raise DownloadError when storage refuses the URL."""
        httpx_mock.add_response(url=PRESIGNED_URL, json={"url": STORAGE_URL})
        httpx_mock.add_response(url=STORAGE_URL, status_code=403)
        pipeline = DownloadPipeline(client, registry, guard, stability_delay=0)
        local_path = tmp_path / "report.pdf"

        with pytest.raises(DownloadError, match="403"):
            pipeline.download_file(BUCKET, make_file(), local_path)

        assert not local_path.exists()

    def test_partial_file_removed(  # type: ignore[no-untyped-def]
        self, httpx_mock, client, guard, tmp_path: Path
    ) -> None:
        """Should delete the partial file when writing fails mid-stream."""
        httpx_mock.add_response(url=PRESIGNED_URL, json={"url": STORAGE_URL})
        httpx_mock.add_response(url=STORAGE_URL, content=b"z" * 1024)
        registry = FailingRegistry(throttle=0, grace_period=60)
        pipeline = DownloadPipeline(client, registry, guard, stability_delay=0, chunk_size=128)
        local_path = tmp_path / "report.pdf"

        with pytest.raises(DownloadError, match="No space left"):
            pipeline.download_file(BUCKET, make_file(1024), local_path)

        assert not local_path.exists()
        assert not temporary_path(local_path).exists()
        assert registry.get_transfers()[0].status is TransferStatus.ERROR
        registry.close()

    def test_disk_error(  # type: ignore[no-untyped-def]
        self, httpx_mock, client, registry, guard, tmp_path: Path
    ) -> None:
        """Should raise DownloadError when the destination cannot be written."""
        httpx_mock.add_response(url=PRESIGNED_URL, json={"url": STORAGE_URL})
        httpx_mock.add_response(url=STORAGE_URL, content=b"data")
        local_path = tmp_path / "report.pdf"
        local_path.mkdir()
        pipeline = DownloadPipeline(client, registry, guard, stability_delay=0)

        with pytest.raises(DownloadError):
            pipeline.download_file(BUCKET, make_file(4), local_path)

        assert registry.get_transfers()[0].status is TransferStatus.ERROR

    def test_parent_directory_error(  # type: ignore[no-untyped-def]
        self, client, registry, guard, tmp_path: Path
    ) -> None:
        """Should fail before any transfer when the parent cannot be created."""
        blocker = tmp_path / "blocker"
        blocker.write_text("file, not a directory")
        pipeline = DownloadPipeline(client, registry, guard, stability_delay=0)

        with pytest.raises(DownloadError):
            pipeline.download_file(BUCKET, make_file(), blocker / "report.pdf")

        assert registry.get_transfers() == []
        assert guard.held_paths() == []

    def test_auth_error_propagates(  # type: ignore[no-untyped-def]
        self, httpx_mock, client, registry, guard, tmp_path: Path
    ) -> None:
        """Should re-raise AuthenticationError unwrapped."""
        httpx_mock.add_response(url=PRESIGNED_URL, status_code=401)
        pipeline = DownloadPipeline(client, registry, guard, stability_delay=0)

        with pytest.raises(AuthenticationError):
            pipeline.download_file(BUCKET, make_file(), tmp_path / "report.pdf")

        assert registry.get_transfers()[0].status is TransferStatus.ERROR
        assert guard.held_paths() == []

    def test_temporary_file_guarded(  # type: ignore[no-untyped-def]
        self, httpx_mock, client, registry, guard, tmp_path: Path
    ) -> None:
        """Should hold the temporary sibling while it is written."""
        httpx_mock.add_response(url=PRESIGNED_URL, json={"url": STORAGE_URL})
        httpx_mock.add_response(url=STORAGE_URL, content=b"data")
        local_path = tmp_path / "report.pdf"
        held: list[bool] = []
        registry.subscribe(
            lambda transfers: held.append(guard.is_held(temporary_path(local_path)))
            if len(held) == 0 else None
        )
        pipeline = DownloadPipeline(client, registry, guard, stability_delay=0)

        pipeline.download_file(BUCKET, make_file(4), local_path)

        assert held == [True]
        assert guard.held_paths() == []
        assert not temporary_path(local_path).exists()

    def test_guard_replaceable(self, client, registry, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
        """Should allow swapping the shared guard."""
        pipeline = DownloadPipeline(client, registry, WatcherGuard())
        shared = WatcherGuard()

        pipeline.guard = shared

        assert pipeline.guard is shared


class TestExistingFile:
    """Tests for downloads over a file already present locally."""

    @pytest.fixture
    def existing(self, tmp_path: Path) -> Path:
        """Create a local copy edited by the user."""
        path = tmp_path / "docs" / "a" / "report.pdf"
        path.parent.mkdir(parents=True)
        path.write_bytes(b"local edit")
        return path

    def test_kept_on_capability_error(  # type: ignore[no-untyped-def]
        self, httpx_mock, client, registry, guard, existing: Path
    ) -> None:
        """Should leave the existing file untouched when the URL request fails."""
        httpx_mock.add_response(url=PRESIGNED_URL, status_code=500)
        pipeline = DownloadPipeline(client, registry, guard, stability_delay=0)

        with pytest.raises(DownloadError):
            pipeline.download_file(BUCKET, make_file(), existing)

        assert existing.read_bytes() == b"local edit"
        assert not temporary_path(existing).exists()

    def test_kept_on_auth_error(  # type: ignore[no-untyped-def]
        self, httpx_mock, client, registry, guard, existing: Path
    ) -> None:
        """Should leave the existing file untouched when the token is rejected."""
        httpx_mock.add_response(url=PRESIGNED_URL, status_code=401)
        pipeline = DownloadPipeline(client, registry, guard, stability_delay=0)

        with pytest.raises(AuthenticationError):
            pipeline.download_file(BUCKET, make_file(), existing)

        assert existing.read_bytes() == b"local edit"

    def test_kept_on_stream_failure(  # type: ignore[no-untyped-def]
        self, httpx_mock, client, guard, existing: Path
    ) -> None:
        """Should keep the old content when the stream fails mid-way."""
        httpx_mock.add_response(url=PRESIGNED_URL, json={"url": STORAGE_URL})
        httpx_mock.add_response(url=STORAGE_URL, content=b"z" * 1024)
        registry = FailingRegistry(throttle=0, grace_period=60)
        pipeline = DownloadPipeline(client, registry, guard, stability_delay=0, chunk_size=128)

        with pytest.raises(DownloadError):
            pipeline.download_file(BUCKET, make_file(1024), existing)

        assert existing.read_bytes() == b"local edit"
        assert not temporary_path(existing).exists()
        registry.close()

    def test_replaced_on_success(  # type: ignore[no-untyped-def]
        self, httpx_mock, client, registry, guard, existing: Path
    ) -> None:
        """Should replace the existing file once the object is complete."""
        httpx_mock.add_response(url=PRESIGNED_URL, json={"url": STORAGE_URL})
        httpx_mock.add_response(url=STORAGE_URL, content=b"remote content")
        pipeline = DownloadPipeline(client, registry, guard, stability_delay=0)

        pipeline.download_file(BUCKET, make_file(14), existing)

        assert existing.read_bytes() == b"remote content"
        assert not temporary_path(existing).exists()
