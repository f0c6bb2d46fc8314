"""Configuration utilities for the BucketSync CLI.

This module provides shared configuration functions used across CLI commands.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click

from bucketsync.core.config import AgentConfig

if TYPE_CHECKING:
    from bucketsync.client.agent import SyncAgent

DEFAULT_ROOT_DIR_NAME = "BucketSync"


def get_config_dir() -> Path:
    """Get the configuration directory for BucketSync.

    Returns:
        Path to ~/.bucketsync or equivalent.
    """
    return Path.home() / ".bucketsync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def load_config() -> dict[str, Any]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def get_root_path(config: dict[str, Any] | None = None) -> Path:
    """Get the local mirror root.

    Returns:
        Configured root path, or ~/BucketSync.
    """
    config = load_config() if config is None else config
    if config.get("root_path"):
        return Path(config["root_path"]).expanduser().resolve()
    return Path.home() / DEFAULT_ROOT_DIR_NAME


def build_agent_config(
    server_url: str | None = None,
    root_path: str | None = None,
    encryption_key: str | None = None,
) -> AgentConfig:
    """Build an AgentConfig from the config file and per-invocation overrides.

    The catalog is kept in the configuration directory.

    Raises:
        ValueError: If no server URL is configured or a value is invalid.
    """
    config = load_config()
    server = server_url or config.get("server_url")
    if not server:
        raise ValueError("No server URL configured. Run 'bucketsync configure' first.")

    settings: dict[str, Any] = {
        key: config[key]
        for key in (
            "sync_interval",
            "activity_retention_days",
            "stability_delay",
            "transfer_grace_period",
            "request_timeout",
        )
        if key in config
    }
    return AgentConfig(
        root_path=Path(root_path) if root_path else get_root_path(config),
        server_url=server,
        db_path=get_config_dir() / "catalog.db",
        encryption_key=encryption_key or config.get("encryption_key"),
        **settings,
    )


def open_agent(
    server_url: str | None = None,
    root_path: str | None = None,
    encryption_key: str | None = None,
) -> SyncAgent:
    """Build a SyncAgent for a CLI command, exiting with an error message on failure."""
    from bucketsync.client.agent import SyncAgent
    from bucketsync.client.catalog import CatalogInitializationError

    try:
        agent_config = build_agent_config(server_url, root_path, encryption_key)
        return SyncAgent(agent_config)
    except (ValueError, CatalogInitializationError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
