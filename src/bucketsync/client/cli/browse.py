"""Catalog browsing commands for the BucketSync CLI.

Commands:
- activities: Show the local sync activity log
- search: Search synced files by name
"""

from __future__ import annotations

from datetime import datetime

import click

from bucketsync.client.cli.config import open_agent
from bucketsync.core.types import ActivityStatus


def _format_size(size: int | None) -> str:
    if size is None:
        return "-"
    if size < 1024:
        return f"{size} B"
    value = size / 1024
    for unit in ("KB", "MB"):
        if value < 1024:
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


@click.command()
@click.option("--limit", "-n", type=click.IntRange(min=1), default=200, show_default=True)
def activities(limit: int) -> None:
    """Show recent sync activity, newest first."""
    agent = open_agent()
    try:
        rows = agent.get_local_sync_activities(limit)
    finally:
        agent.close()

    if not rows:
        click.echo("No sync activity recorded.")
        return

    for row in rows:
        when = datetime.fromtimestamp(row.created_at).strftime("%Y-%m-%d %H:%M:%S")
        failed = row.status is ActivityStatus.FAILED
        status = click.style(f"{row.status.value:<7}", fg="red" if failed else "green")
        line = f"{when}  {row.action.value:<8} {status}  {row.file_name}"
        if row.error:
            line += f"  ({row.error})"
        click.echo(line)


@click.command()
@click.argument("query")
@click.option("--limit", "-n", type=click.IntRange(min=1), default=30, show_default=True)
def search(query: str, limit: int) -> None:
    """Search synced files and folders by name."""
    agent = open_agent()
    try:
        results = agent.search_files(query, limit)
    finally:
        agent.close()

    if not results:
        click.echo(f"No files matching '{query}'.")
        return

    for result in results:
        entry = result.file
        kind = "dir " if entry.is_folder else "file"
        click.echo(
            f"{kind}  {result.bucket_name}/{entry.key}  {_format_size(entry.size)}  "
            f"[{entry.bucket_id}]"
        )
