"""Configuration command for the BucketSync CLI.

Commands:
- configure: Save the coordination service URL and local mirror root
"""

from __future__ import annotations

import sys

import click

from bucketsync.client.cli.config import get_config_file, load_config, save_config


@click.command()
@click.option(
    "--server",
    required=True,
    help="Coordination service API URL (e.g., https://fms.example.com/api).",
)
@click.option(
    "--root",
    "root_path",
    default=None,
    type=click.Path(file_okay=False),
    help="Local mirror root (default: ~/BucketSync).",
)
@click.option(
    "--encryption-key",
    default=None,
    help="Hex AES-256 key used to decrypt stored storage credentials.",
)
@click.option(
    "--interval",
    type=click.FloatRange(min=1.0),
    default=None,
    help="Seconds between two sync cycles.",
)
def configure(
    server: str,
    root_path: str | None,
    encryption_key: str | None,
    interval: float | None,
) -> None:
    """Configure this machine for syncing."""
    if encryption_key is not None:
        try:
            key = bytes.fromhex(encryption_key)
        except ValueError:
            key = b""
        if len(key) != 32:
            click.echo("Error: Encryption key must be 64 hex characters.", err=True)
            sys.exit(1)

    config = load_config()
    config["server_url"] = server.rstrip("/")
    if root_path:
        config["root_path"] = root_path
    if encryption_key:
        config["encryption_key"] = encryption_key
    if interval:
        config["sync_interval"] = interval
    save_config(config)

    click.echo(f"Configuration saved to {get_config_file()}")
    click.echo(f"Server: {config['server_url']}")
    if config.get("root_path"):
        click.echo(f"Mirror root: {config['root_path']}")
