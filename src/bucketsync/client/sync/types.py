"""Shared types and dataclasses for sync operations.

This module provides:
- SyncError, ManifestFetchError, DownloadError, DirectoryCreationError
- DownloadResult: result of one file download
- BucketResult, CycleResult: per-bucket and per-cycle summaries
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path


class SyncError(Exception):
    """Base exception for sync errors."""


class ManifestFetchError(SyncError):
    """The manifest could not be fetched; the cycle is aborted."""


class DownloadError(SyncError):
    """Failed to download one file. Isolated to that file."""


class DirectoryCreationError(SyncError):
    """A bucket root directory could not be created."""


@dataclass
class DownloadResult:
    """Result of a file download operation."""

    key: str
    local_path: Path
    size: int
    transfer_id: str


@dataclass
class BucketResult:
    """Outcome of reconciling one bucket."""

    bucket_id: str
    bucket_name: str
    total_files: int = 0
    downloaded: list[str] = field(default_factory=list)
    skipped: int = 0
    folders: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class CycleResult:
    """Outcome of one full sync cycle."""

    tenants: int = 0
    accounts: int = 0
    buckets: list[BucketResult] = field(default_factory=list)

    @property
    def downloaded(self) -> list[str]:
        """Keys downloaded during the cycle, across buckets."""
        return [key for bucket in self.buckets for key in bucket.downloaded]

    @property
    def skipped(self) -> int:
        """Files already up to date, across buckets."""
        return sum(bucket.skipped for bucket in self.buckets)

    @property
    def errors(self) -> list[str]:
        """Per-file and per-bucket errors of the cycle."""
        return [error for bucket in self.buckets for error in bucket.errors]
