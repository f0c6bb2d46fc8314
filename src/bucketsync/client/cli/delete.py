"""Remote deletion command for the BucketSync CLI.

Commands:
- delete: Delete an object or folder from the storage service
"""

from __future__ import annotations

import sys

import click

from bucketsync.client.cli.config import open_agent


@click.command()
@click.argument("bucket_id")
@click.argument("key")
@click.option(
    "--encryption-key",
    envvar="BUCKETSYNC_ENCRYPTION_KEY",
    default=None,
    help="Hex AES-256 key for stored storage credentials.",
)
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
def delete(bucket_id: str, key: str, encryption_key: str | None, yes: bool) -> None:
    """Delete KEY from bucket BUCKET_ID on the storage service.

    A key ending with '/' or naming a synced folder deletes every object
    under it.
    """
    from bucketsync.client.remote import StorageError

    if not yes and not click.confirm(f"Delete '{key}' from the storage service?"):
        sys.exit(0)

    agent = open_agent(encryption_key=encryption_key)
    try:
        count = agent.delete_remote(bucket_id, key)
    except StorageError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        agent.close()

    click.echo(f"Deleted {count} object(s).")
