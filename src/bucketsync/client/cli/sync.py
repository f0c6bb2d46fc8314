"""Sync command for the BucketSync CLI.

Commands:
- run: Mirror every bucket visible to the token into the local root
"""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING

import click

from bucketsync.client.cli.config import open_agent
from bucketsync.core.types import TransferStatus

if TYPE_CHECKING:
    from bucketsync.client.status import Transfer
    from bucketsync.client.sync.types import CycleResult
    from bucketsync.client.watcher import FileChange


def display_summary(result: CycleResult) -> None:
    """Display the results of one sync cycle."""
    errors = result.errors
    if errors:
        click.echo(click.style("\nErrors:", fg="red"))
        for error in errors:
            click.echo(f"  ✗ {error}")

    if not result.downloaded and not errors:
        click.echo("Everything is up to date.")
    else:
        click.echo(
            f"\nSync complete: {len(result.downloaded)} downloaded, "
            f"{result.skipped} up to date, "
            f"{len(errors)} errors"
        )


@click.command()
@click.option(
    "--token",
    envvar="BUCKETSYNC_TOKEN",
    required=True,
    help="Bearer token for the coordination service.",
)
@click.option("--server", envvar="BUCKETSYNC_SERVER_URL", default=None, help="Override server URL.")
@click.option(
    "--root",
    "root_path",
    envvar="BUCKETSYNC_ROOT_PATH",
    default=None,
    help="Override the local mirror root.",
)
@click.option(
    "--encryption-key",
    envvar="BUCKETSYNC_ENCRYPTION_KEY",
    default=None,
    help="Hex AES-256 key for stored storage credentials.",
)
@click.option("--once", is_flag=True, help="Run a single cycle and exit.")
@click.option("--watch", "-w", is_flag=True, help="Also report local changes under the root.")
def run(
    token: str,
    server: str | None,
    root_path: str | None,
    encryption_key: str | None,
    once: bool,
    watch: bool,
) -> None:
    """Synchronize the local mirror with the coordination service.

    Runs a cycle immediately, then one every sync interval until
    interrupted. Use --once for a single cycle.
    """
    agent = open_agent(server, root_path, encryption_key)
    auth_expired = threading.Event()
    agent.add_auth_expired_listener(auth_expired.set)

    reported: set[str] = set()

    def on_transfers(transfers: list[Transfer]) -> None:
        for transfer in transfers:
            if transfer.status.is_terminal and transfer.id not in reported:
                reported.add(transfer.id)
                symbol = "↓" if transfer.status is TransferStatus.DONE else "✗"
                click.echo(f"  {symbol} {transfer.name}")

    agent.subscribe_transfers(on_transfers)

    click.echo(f"Syncing with {agent.config.server_url}...")
    click.echo(f"Mirror root: {agent.config.root_path}\n")

    if once:
        try:
            result = agent.run_once(token)
        finally:
            agent.close()
        if auth_expired.is_set():
            click.echo("Error: Token rejected by the server. Sign in again.", err=True)
            sys.exit(1)
        if result is None:
            click.echo("Error: Sync cycle failed. See log for details.", err=True)
            sys.exit(1)
        display_summary(result)
        return

    watcher = None
    if watch:
        watcher = agent.watch(_echo_change)
        watcher.start()

    agent.init_sync(token)
    click.echo(f"Syncing every {agent.config.sync_interval:.0f}s... (Ctrl+C to stop)\n")

    try:
        while not auth_expired.wait(1.0):
            pass
        click.echo("Error: Token rejected by the server. Sign in again.", err=True)
    except KeyboardInterrupt:
        click.echo("\nStopping...")
    finally:
        if watcher is not None:
            watcher.stop()
        agent.close()

    if auth_expired.is_set():
        sys.exit(1)


def _echo_change(change: FileChange) -> None:
    click.echo(f"Detected change: {change.change_type.value} {change.path}")
