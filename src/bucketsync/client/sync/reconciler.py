"""Manifest reconciliation.

This module provides:
- Reconciler: walks the remote manifest, mirrors its metadata into the
  catalog and decides per file whether a download is required

Freshness is decided by size equality only: a local file whose size equals
the remote size is considered synchronized. A corrupt file of the same size
is indistinguishable from a synced one and is never re-downloaded.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING

from bucketsync.client.api import APIError, AuthenticationError, TransientAPIError
from bucketsync.client.sync.retry import DEFAULT_MAX_RETRIES, retry_with_backoff
from bucketsync.client.sync.types import (
    BucketResult,
    CycleResult,
    DirectoryCreationError,
    DownloadError,
    ManifestFetchError,
)
from bucketsync.core.types import ActivityAction, ActivityStatus, SyncCursorStatus

if TYPE_CHECKING:
    from bucketsync.client.activity import ActivityLog
    from bucketsync.client.api import CoordinationClient, Manifest, ManifestBucket, ManifestFile
    from bucketsync.client.catalog import LocalCatalog
    from bucketsync.client.sync.download import DownloadPipeline

logger = logging.getLogger(__name__)


def resolve_inside(root: Path, relative: str) -> Path | None:
    """Join ``relative`` to ``root``, refusing results outside ``root``.

    Returns:
        The normalized path, or None if it escapes ``root`` or equals it.
    """
    candidate = Path(os.path.normpath(root / relative.lstrip("/")))
    if candidate == root or root not in candidate.parents:
        return None
    return candidate


class Reconciler:
    """Mirrors the remote manifest into the catalog and the local mirror."""

    def __init__(
        self,
        client: CoordinationClient,
        catalog: LocalCatalog,
        pipeline: DownloadPipeline,
        activity_log: ActivityLog,
        root_path: Path,
        manifest_max_retries: int = DEFAULT_MAX_RETRIES,
        manifest_retry_backoff: float = 1.0,
    ) -> None:
        self._client = client
        self._catalog = catalog
        self._pipeline = pipeline
        self._activity_log = activity_log
        self._root_path = Path(os.path.normpath(Path(root_path).expanduser().absolute()))
        self._manifest_max_retries = manifest_max_retries
        self._manifest_retry_backoff = manifest_retry_backoff

    @property
    def pipeline(self) -> DownloadPipeline:
        """Download pipeline used for files that need a transfer."""
        return self._pipeline

    @property
    def root_path(self) -> Path:
        """Local mirror root."""
        return self._root_path

    def fetch_manifest(self) -> Manifest:
        """Fetch the manifest, retrying transient failures with backoff.

        Raises:
            AuthenticationError: If the token was rejected (never retried).
            ManifestFetchError: If the manifest could not be fetched.
        """
        try:
            return retry_with_backoff(
                self._client.get_manifest,
                max_retries=self._manifest_max_retries,
                initial_backoff=self._manifest_retry_backoff,
                retryable_exceptions=(TransientAPIError,),
            )
        except AuthenticationError:
            raise
        except APIError as e:
            raise ManifestFetchError(f"Failed to fetch sync manifest: {e}") from e

    def sync_all(self) -> CycleResult:
        """Run one reconciliation pass over the full manifest.

        Tenants and accounts are upserted before any bucket is processed.
        A bucket whose root directory cannot be created is abandoned and
        the remaining buckets still run.

        Raises:
            AuthenticationError: If the coordination service rejected the token.
            ManifestFetchError: If the manifest could not be fetched.
        """
        manifest = self.fetch_manifest()
        logger.info(
            f"Manifest received: {len(manifest.tenants)} tenants, "
            f"{len(manifest.accounts)} accounts, {manifest.bucket_count} buckets"
        )

        result = CycleResult(tenants=len(manifest.tenants), accounts=len(manifest.accounts))

        for tenant in manifest.tenants:
            self._catalog.upsert_tenant(tenant.id, tenant.name, tenant.updated_at)

        for account in manifest.accounts:
            self._catalog.upsert_account(
                account.id,
                account.name,
                account.tenant_id,
                access_key_id=account.access_key_id,
                secret_access_key=account.secret_access_key,
                is_active=account.is_active,
                updated_at=account.updated_at,
            )

        for account in manifest.accounts:
            for bucket in account.buckets:
                try:
                    result.buckets.append(self.sync_bucket(bucket))
                except DirectoryCreationError as e:
                    logger.error(f"Skipping bucket {bucket.name}: {e}")
                    result.buckets.append(
                        BucketResult(bucket_id=bucket.id, bucket_name=bucket.name, errors=[str(e)])
                    )

        logger.info(
            f"Sync cycle complete: {len(result.downloaded)} downloaded, "
            f"{result.skipped} up to date, {len(result.errors)} errors"
        )
        return result

    def sync_bucket(self, bucket: ManifestBucket) -> BucketResult:
        """Reconcile one bucket.

        Every file row is upserted whatever happens to its content, so
        browse and search stay current even when a download fails.

        Raises:
            DirectoryCreationError: If the bucket root cannot be created.
            AuthenticationError: If a capability URL request was rejected.
        """
        result = BucketResult(bucket_id=bucket.id, bucket_name=bucket.name)

        self._catalog.upsert_bucket(
            bucket.id,
            bucket.name,
            bucket.region,
            bucket.account_id,
            storage_class=bucket.storage_class,
            versioning=bucket.versioning,
            encryption=bucket.encryption,
            updated_at=bucket.updated_at,
        )

        bucket_root = self._bucket_root(bucket)

        try:
            for file in bucket.files:
                if not file.key:
                    continue
                result.total_files += 1
                self._catalog.upsert_file_object(
                    file.catalog_id(bucket.id),
                    bucket.id,
                    file.key,
                    file.display_name,
                    is_folder=file.is_folder,
                    size=file.size,
                    mime_type=file.mime_type,
                    updated_at=file.updated_at,
                )
                if file.is_folder:
                    self._sync_folder(bucket_root, file, result)
                else:
                    self._sync_file(bucket, bucket_root, file, result)
        except AuthenticationError:
            self._catalog.set_sync_cursor(bucket.id, SyncCursorStatus.ERROR)
            raise

        self._catalog.link_parents(bucket.id)
        status = SyncCursorStatus.ERROR if result.errors else SyncCursorStatus.SYNCED
        self._catalog.set_sync_cursor(bucket.id, status)

        logger.info(
            f"Bucket {bucket.name}: {result.total_files} entries, "
            f"{len(result.downloaded)} downloaded, {result.skipped} skipped, "
            f"{len(result.errors)} failed"
        )
        return result

    def _bucket_root(self, bucket: ManifestBucket) -> Path:
        bucket_root = resolve_inside(self._root_path, bucket.name)
        if bucket_root is None or bucket_root.parent != self._root_path:
            self._catalog.set_sync_cursor(bucket.id, SyncCursorStatus.ERROR)
            raise DirectoryCreationError(f"Invalid bucket directory name: {bucket.name!r}")
        try:
            bucket_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            self._catalog.set_sync_cursor(bucket.id, SyncCursorStatus.ERROR)
            raise DirectoryCreationError(f"Cannot create {bucket_root}: {e}") from e
        return bucket_root

    def _sync_folder(self, bucket_root: Path, file: ManifestFile, result: BucketResult) -> None:
        """Create the local directory of a folder entry. Never logged as activity."""
        folder_path = resolve_inside(bucket_root, file.key)
        if folder_path is None:
            logger.warning(f"Ignoring folder outside bucket root: {file.key}")
            return
        try:
            folder_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Cannot create folder {folder_path}: {e}")
            return
        result.folders += 1

    def _sync_file(
        self,
        bucket: ManifestBucket,
        bucket_root: Path,
        file: ManifestFile,
        result: BucketResult,
    ) -> None:
        """Skip an up-to-date file or download it, recording the outcome."""
        local_path = resolve_inside(bucket_root, file.key)
        if local_path is None:
            message = f"Refusing key outside bucket root: {file.key}"
            logger.warning(message)
            result.errors.append(message)
            self._activity_log.log_activity(
                ActivityAction.DOWNLOAD, file.key, ActivityStatus.FAILED, message
            )
            return

        if self._is_up_to_date(local_path, file):
            result.skipped += 1
            logger.debug(f"Up to date: {file.key}")
            return

        try:
            download = self._pipeline.download_file(bucket, file, local_path)
        except AuthenticationError as e:
            self._activity_log.log_activity(
                ActivityAction.DOWNLOAD, file.key, ActivityStatus.FAILED, str(e)
            )
            raise
        except DownloadError as e:
            logger.error(str(e))
            result.errors.append(str(e))
            self._activity_log.log_activity(
                ActivityAction.DOWNLOAD, file.key, ActivityStatus.FAILED, str(e)
            )
            return

        result.downloaded.append(download.key)
        self._activity_log.log_activity(ActivityAction.DOWNLOAD, file.key, ActivityStatus.SUCCESS)

    @staticmethod
    def _is_up_to_date(local_path: Path, file: ManifestFile) -> bool:
        if file.size is None or not local_path.is_file():
            return False
        local_size = local_path.stat().st_size
        if local_size != file.size:
            logger.warning(
                f"Size mismatch for {file.key}: local {local_size}, remote {file.size}"
            )
            return False
        return True
