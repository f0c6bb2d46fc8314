"""Remote object deletion through the storage service.

This module provides:
- BucketStorage: deletes single objects or whole folder prefixes from a
  bucket using the account credentials stored in the catalog

Folder deletion pages through ListObjectsV2, passing each page's
NextContinuationToken to the following request, and deletes every page in
one DeleteObjects call (a page holds at most 1000 keys, the batch limit).
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from typing import TYPE_CHECKING, Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from bucketsync.core.crypto import CredentialError, decrypt_credential
from bucketsync.core.types import ActivityAction, ActivityStatus

if TYPE_CHECKING:
    from bucketsync.client.activity import ActivityLog
    from bucketsync.client.catalog import CatalogBucket, LocalCatalog

logger = logging.getLogger(__name__)

MAX_DELETE_BATCH = 1000


class StorageError(Exception):
    """A storage-service operation failed."""


class BucketStorage:
    """Deletes objects from the storage service and mirrors it in the catalog."""

    def __init__(
        self,
        catalog: LocalCatalog,
        activity_log: ActivityLog,
        encryption_key: bytes | None = None,
        client_factory: Callable[..., Any] = boto3.client,
    ) -> None:
        """Initialize the storage helper.

        Args:
            catalog: Catalog holding buckets, credentials and file rows.
            activity_log: Receives one DELETE activity per operation.
            encryption_key: AES-256 key for stored credentials.
            client_factory: Factory building the S3 client (boto3.client).
        """
        self._catalog = catalog
        self._activity_log = activity_log
        self._encryption_key = encryption_key
        self._client_factory = client_factory

    def delete_object(self, bucket_id: str, key: str) -> None:
        """Delete one object and its catalog row.

        Raises:
            StorageError: If the bucket is unknown or the delete failed.
        """
        try:
            bucket = self._get_bucket(bucket_id)
            client = self._make_client(bucket)
            client.delete_object(Bucket=bucket.name, Key=key)
        except (ClientError, BotoCoreError, CredentialError, StorageError) as e:
            self._activity_log.log_activity(
                ActivityAction.DELETE, key, ActivityStatus.FAILED, str(e)
            )
            raise StorageError(f"Failed to delete {key}: {e}") from e

        logger.info(f"Deleted s3://{bucket.name}/{key}")
        self._catalog.delete_file_objects(bucket_id, key)
        self._activity_log.log_activity(ActivityAction.DELETE, key, ActivityStatus.SUCCESS)

    def delete_prefix(self, bucket_id: str, prefix: str) -> int:
        """Delete every object under a folder prefix, then its catalog rows.

        Returns:
            Number of objects deleted from the storage service.

        Raises:
            StorageError: If the bucket is unknown or a request failed.
        """
        folder = prefix if prefix.endswith("/") else f"{prefix}/"
        deleted = 0
        try:
            bucket = self._get_bucket(bucket_id)
            client = self._make_client(bucket)
            for keys in self._list_pages(client, bucket.name, folder):
                for start in range(0, len(keys), MAX_DELETE_BATCH):
                    batch = keys[start:start + MAX_DELETE_BATCH]
                    response = client.delete_objects(
                        Bucket=bucket.name,
                        Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
                    )
                    errors = response.get("Errors") or []
                    if errors:
                        first = errors[0]
                        raise StorageError(
                            f"{len(errors)} objects not deleted "
                            f"({first.get('Key')}: {first.get('Message')})"
                        )
                    deleted += len(batch)
        except (ClientError, BotoCoreError, CredentialError, StorageError) as e:
            self._activity_log.log_activity(
                ActivityAction.DELETE, folder, ActivityStatus.FAILED, str(e)
            )
            raise StorageError(f"Failed to delete folder {folder}: {e}") from e

        logger.info(f"Deleted folder s3://{bucket.name}/{folder} ({deleted} objects)")
        self._catalog.delete_file_objects(bucket_id, folder, prefix=True)
        self._activity_log.log_activity(ActivityAction.DELETE, folder, ActivityStatus.SUCCESS)
        return deleted

    def _get_bucket(self, bucket_id: str) -> CatalogBucket:
        bucket = self._catalog.get_bucket(bucket_id)
        if bucket is None:
            raise StorageError(f"Bucket not found: {bucket_id}")
        return bucket

    def _make_client(self, bucket: CatalogBucket) -> Any:
        """Build an S3 client from the bucket's decrypted account credentials."""
        return self._client_factory(
            "s3",
            region_name=bucket.region or None,
            aws_access_key_id=decrypt_credential(bucket.access_key_id, self._encryption_key),
            aws_secret_access_key=decrypt_credential(
                bucket.secret_access_key, self._encryption_key
            ),
        )

    @staticmethod
    def _list_pages(client: Any, bucket_name: str, prefix: str) -> Iterator[list[str]]:
        """Yield the keys of each ListObjectsV2 page under ``prefix``."""
        params: dict[str, Any] = {"Bucket": bucket_name, "Prefix": prefix}
        while True:
            response = client.list_objects_v2(**params)
            keys = [obj["Key"] for obj in response.get("Contents") or []]
            if keys:
                yield keys
            if not response.get("IsTruncated"):
                return
            token = response.get("NextContinuationToken")
            if not token:
                raise StorageError("Truncated listing without a continuation token")
            params["ContinuationToken"] = token
