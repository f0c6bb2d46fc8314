"""Shared configuration classes for bucketsync.

This module defines:
- ServerConfig: connection settings for the coordination service
- AgentConfig: everything the sync agent needs to run
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

DEFAULT_SYNC_INTERVAL = 5 * 60.0
DEFAULT_RETENTION_DAYS = 7
DEFAULT_STABILITY_DELAY = 3.0
DEFAULT_GRACE_PERIOD = 5.0
DEFAULT_NOTIFY_THROTTLE = 0.05


@dataclass
class ServerConfig:
    """Configuration for connecting to the coordination service.

    Attributes:
        server_url: Base URL of the service API (e.g., "https://fms.example.com/api").
        token: Bearer token, or None until the agent is signed in.
        timeout: Request timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    server_url: str
    token: str | None = None
    timeout: float = 30.0
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize server URL."""
        self.server_url = self.server_url.rstrip("/")

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS."""
        return self.server_url.startswith("https://")


@dataclass
class AgentConfig:
    """Configuration for the local sync agent.

    Attributes:
        root_path: Local mirror root; each bucket gets a sub-directory.
        server_url: Base URL of the coordination service API.
        db_path: SQLite catalog file. Defaults to ``<root_path>/.bucketsync/catalog.db``.
        sync_interval: Seconds between two scheduled sync cycles.
        activity_retention_days: Activity rows older than this are pruned.
        stability_delay: Seconds a downloaded path stays in the watcher guard
            after the download finished.
        transfer_grace_period: Seconds a finished transfer stays visible.
        notify_throttle: Window in seconds for coalescing progress notifications.
        request_timeout: Timeout for coordination-service requests.
        manifest_max_retries: Retries for transient manifest fetch failures.
        manifest_retry_backoff: Initial backoff between manifest retries.
        encryption_key: Hex-encoded AES-256 key for stored storage credentials.
    """

    root_path: Path
    server_url: str
    db_path: Path | None = None
    sync_interval: float = DEFAULT_SYNC_INTERVAL
    activity_retention_days: int = DEFAULT_RETENTION_DAYS
    stability_delay: float = DEFAULT_STABILITY_DELAY
    transfer_grace_period: float = DEFAULT_GRACE_PERIOD
    notify_throttle: float = DEFAULT_NOTIFY_THROTTLE
    request_timeout: float = 30.0
    manifest_max_retries: int = 2
    manifest_retry_backoff: float = 1.0
    encryption_key: str | None = None

    def __post_init__(self) -> None:
        """Normalize paths and validate intervals."""
        self.root_path = Path(self.root_path).expanduser().resolve()
        if self.db_path is None:
            self.db_path = self.root_path / ".bucketsync" / "catalog.db"
        else:
            self.db_path = Path(self.db_path).expanduser()

        if self.sync_interval <= 0:
            raise ValueError("sync_interval must be positive")
        if self.activity_retention_days <= 0:
            raise ValueError("activity_retention_days must be positive")
        if self.stability_delay < 0 or self.transfer_grace_period < 0:
            raise ValueError("delays must not be negative")
        if self.manifest_max_retries < 0:
            raise ValueError("manifest_max_retries must not be negative")

    @property
    def retention_seconds(self) -> float:
        """Activity retention window in seconds."""
        return self.activity_retention_days * 24 * 3600.0

    @property
    def encryption_key_bytes(self) -> bytes | None:
        """Decoded credential encryption key, if configured."""
        if not self.encryption_key:
            return None
        return bytes.fromhex(self.encryption_key)

    def server_config(self, token: str | None = None) -> ServerConfig:
        """Build the ServerConfig used by the coordination client."""
        return ServerConfig(
            server_url=self.server_url,
            token=token,
            timeout=self.request_timeout,
        )
