"""Command-line interface for BucketSync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- configure: Save the server URL and local mirror root
- run: Synchronize the local mirror (periodic, or --once)
- activities: Show the local sync activity log
- search: Search synced files by name
- delete: Delete an object or folder from the storage service
"""

from __future__ import annotations

import logging
import sys

import click

from bucketsync.client.cli.browse import activities, search
from bucketsync.client.cli.config import (
    build_agent_config,
    get_config_dir,
    get_config_file,
    get_root_path,
    load_config,
    save_config,
)
from bucketsync.client.cli.configure import configure
from bucketsync.client.cli.delete import delete
from bucketsync.client.cli.sync import run

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(verbose: bool) -> None:
    """Send bucketsync logs to stderr, at DEBUG when verbose."""
    root_logger = logging.getLogger("bucketsync")
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    if not root_logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger.addHandler(handler)


@click.group()
@click.version_option(package_name="bucketsync")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """BucketSync - Local mirror of remote object-storage buckets."""
    setup_logging(verbose)


# Setup commands
cli.add_command(configure)

# Sync commands
cli.add_command(run)

# Catalog commands
cli.add_command(activities)
cli.add_command(search)
cli.add_command(delete)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "main",
    # Config utilities
    "build_agent_config",
    "get_config_dir",
    "get_config_file",
    "get_root_path",
    "load_config",
    "save_config",
]
