"""HTTP client for the coordination service API.

This module provides:
- CoordinationClient: HTTP client for the manifest and capability URL endpoints
- Manifest dataclasses (tenants, accounts, buckets, files)
- Streaming reads of capability URLs
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

import httpx

from bucketsync.core.config import ServerConfig

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


class APIError(Exception):
    """Base exception for API errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(APIError):
    """Authentication failed (token missing, invalid or expired)."""


class NotFoundError(APIError):
    """Resource not found."""


class TransientAPIError(APIError):
    """Network error, timeout, rate limit or server error. Safe to retry."""


@dataclass
class ManifestTenant:
    """Tenant entry of the sync manifest."""

    id: str
    name: str
    updated_at: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ManifestTenant:
        """Create from API response dictionary."""
        return cls(
            id=str(data["id"]),
            name=data["name"],
            updated_at=data.get("updatedAt"),
        )


@dataclass
class ManifestFile:
    """File or folder entry of a bucket in the sync manifest.

    ``id`` and ``name`` are optional on the wire; use ``catalog_id`` and
    ``display_name`` for the effective values.
    """

    key: str
    id: str | None = None
    name: str | None = None
    is_folder: bool = False
    size: int | None = None
    mime_type: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ManifestFile:
        """Create from API response dictionary."""
        size = data.get("size")
        return cls(
            key=data.get("key") or "",
            id=str(data["id"]) if data.get("id") is not None else None,
            name=data.get("name"),
            is_folder=bool(data.get("isFolder", False)),
            size=int(size) if size is not None else None,
            mime_type=data.get("mimeType"),
            updated_at=data.get("updatedAt"),
        )

    @property
    def display_name(self) -> str:
        """Name of the entry, falling back to the last key segment."""
        if self.name:
            return self.name
        return self.key.rstrip("/").split("/")[-1] or self.key

    def catalog_id(self, bucket_id: str) -> str:
        """Stable catalog id, derived from the key when the service sends none."""
        return self.id or f"{bucket_id}-{self.key}"


@dataclass
class ManifestBucket:
    """Bucket entry of the sync manifest."""

    id: str
    name: str
    region: str
    account_id: str
    updated_at: str | None = None
    storage_class: str = "STANDARD"
    versioning: bool = False
    encryption: bool = False
    files: list[ManifestFile] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ManifestBucket:
        """Create from API response dictionary."""
        return cls(
            id=str(data["id"]),
            name=data["name"],
            region=data.get("region") or "",
            account_id=str(data["accountId"]),
            updated_at=data.get("updatedAt"),
            storage_class=data.get("storageClass") or "STANDARD",
            versioning=bool(data.get("versioning", False)),
            encryption=bool(data.get("encryption", False)),
            files=[ManifestFile.from_dict(f) for f in data.get("files") or []],
        )


@dataclass
class ManifestAccount:
    """Account entry of the sync manifest, with its storage credentials."""

    id: str
    name: str
    tenant_id: str
    access_key_id: str | None = None
    secret_access_key: str | None = None
    is_active: bool = True
    updated_at: str | None = None
    buckets: list[ManifestBucket] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ManifestAccount:
        """Create from API response dictionary."""
        return cls(
            id=str(data["id"]),
            name=data["name"],
            tenant_id=str(data["tenantId"]),
            access_key_id=data.get("awsAccessKeyId"),
            secret_access_key=data.get("awsSecretAccessKey"),
            is_active=bool(data.get("isActive", True)),
            updated_at=data.get("updatedAt"),
            buckets=[ManifestBucket.from_dict(b) for b in data.get("buckets") or []],
        )


@dataclass
class Manifest:
    """Full tenant/account/bucket/file listing for one sync cycle."""

    tenants: list[ManifestTenant]
    accounts: list[ManifestAccount]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Manifest:
        """Create from API response dictionary."""
        return cls(
            tenants=[ManifestTenant.from_dict(t) for t in data.get("tenants") or []],
            accounts=[ManifestAccount.from_dict(a) for a in data.get("accounts") or []],
        )

    @property
    def bucket_count(self) -> int:
        """Total number of buckets across accounts."""
        return sum(len(account.buckets) for account in self.accounts)


def _error_detail(response: httpx.Response, default: str) -> str:
    """Extract an error message from a JSON error body."""
    try:
        data = response.json()
    except ValueError:
        return default
    if isinstance(data, dict):
        return str(data.get("detail") or data.get("error") or default)
    return default


class CoordinationClient:
    """HTTP client for the coordination service.

    Two underlying clients are used: one for the authenticated service API
    and one without credentials for capability URLs, which must not carry
    the bearer token.

    Usage:
        with CoordinationClient(ServerConfig(server_url=url, token=token)) as client:
            manifest = client.get_manifest()
    """

    def __init__(self, config: ServerConfig) -> None:
        """Initialize the client.

        Args:
            config: Server configuration with URL, token and timeout.
        """
        self._config = config
        self._client = httpx.Client(
            base_url=config.server_url,
            timeout=config.timeout,
            verify=config.verify_ssl,
        )
        self._storage_client = httpx.Client(
            timeout=config.timeout,
            verify=config.verify_ssl,
            follow_redirects=True,
        )

    @property
    def token(self) -> str | None:
        """Current bearer token."""
        return self._config.token

    def set_token(self, token: str | None) -> None:
        """Replace the bearer token used for subsequent requests."""
        self._config.token = token

    def close(self) -> None:
        """Close the HTTP clients."""
        self._client.close()
        self._storage_client.close()

    def __enter__(self) -> CoordinationClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def _headers(self) -> dict[str, str]:
        if not self._config.token:
            return {}
        return {"Authorization": f"Bearer {self._config.token}"}

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        status = response.status_code
        if status == 401:
            raise AuthenticationError("Invalid or expired token", 401)
        if status == 404:
            raise NotFoundError(_error_detail(response, "Resource not found"), 404)
        if status == 429 or status >= 500:
            raise TransientAPIError(
                _error_detail(response, f"Server error (HTTP {status})"), status
            )
        if status >= 400:
            raise APIError(_error_detail(response, f"HTTP {status}"), status)
        return response

    def _get(self, path: str, params: dict[str, str] | None = None) -> httpx.Response:
        """Issue an authenticated GET against the service API."""
        try:
            response = self._client.get(path, params=params, headers=self._headers())
        except httpx.TimeoutException as e:
            raise TransientAPIError(f"Request to {path} timed out") from e
        except httpx.RequestError as e:
            raise TransientAPIError(f"Request to {path} failed: {e}") from e
        return self._handle_response(response)

    # === Sync manifest ===

    def get_manifest(self) -> Manifest:
        """Fetch the full sync manifest.

        Returns:
            Manifest of every tenant, account, bucket and file visible to the token.

        Raises:
            AuthenticationError: If the token was rejected.
            TransientAPIError: On network errors, timeouts or server errors.
        """
        response = self._get("/agent/sync")
        try:
            data = response.json()
        except ValueError as e:
            raise APIError("Manifest response is not valid JSON", response.status_code) from e
        return Manifest.from_dict(data)

    # === Capability URLs ===

    def get_presigned_url(
        self,
        bucket_id: str,
        key: str,
        action: str = "download",
        content_type: str | None = None,
    ) -> str:
        """Request a time-limited capability URL for one object.

        Args:
            bucket_id: Catalog id of the bucket.
            key: Object key within the bucket.
            action: "download" or "upload".
            content_type: Object content type.

        Returns:
            The capability URL.

        Raises:
            APIError: If the service refused or returned no URL.
        """
        response = self._get(
            "/files/presigned",
            params={
                "bucketId": bucket_id,
                "name": key,
                "action": action,
                "contentType": content_type or DEFAULT_CONTENT_TYPE,
            },
        )
        try:
            url = response.json().get("url")
        except (ValueError, AttributeError):
            url = None
        if not url:
            raise APIError(f"No presigned URL returned for key: {key}", response.status_code)
        return str(url)

    @contextmanager
    def open_object_stream(self, url: str) -> Iterator[httpx.Response]:
        """Open a streaming GET on a capability URL.

        Args:
            url: Capability URL returned by get_presigned_url().

        Yields:
            The streaming response; iterate with ``iter_bytes()``.

        Raises:
            APIError: If the storage service did not answer 200.
        """
        with self._storage_client.stream("GET", url) as response:
            if response.status_code != 200:
                raise APIError(
                    f"HTTP {response.status_code} from storage service",
                    response.status_code,
                )
            yield response
