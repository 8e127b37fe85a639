"""Azure cloud provider diagnostics CLI (azureprovider).

Usage:
    azureprovider validate cloud.yaml              # Parse and validate a cloud config
    azureprovider capabilities cloud.yaml          # Print supported interfaces
    azureprovider resolve-node cloud.yaml NODE     # Resolve a node's network interface
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict
from pathlib import Path

import click

from .cloud import CloudAdapter
from .config import ADAPTER_VERSION, CloudConfig, ConfigurationError, load_config
from .credentials import configured_strategies
from .environment import CloudEnvironment
from .errors import AdapterError
from .main import setup_logging


def _load(config_path: Path) -> tuple[CloudConfig, CloudEnvironment]:
    try:
        return load_config(config_path)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def _build_adapter(config_path: Path) -> CloudAdapter:
    config, env = _load(config_path)
    try:
        return CloudAdapter.create(config, env)
    except AdapterError as e:
        raise click.ClickException(f"{type(e).__name__}: {e}") from e


@click.group()
@click.version_option(version=ADAPTER_VERSION, prog_name="azureprovider")
@click.option("--verbose", "-v", is_flag=True, help="Emit JSON logs at DEBUG level")
def cli(verbose: bool) -> None:
    """Azure cloud provider diagnostics."""
    setup_logging(logging.DEBUG if verbose else logging.WARNING)


@cli.command()
@click.argument("config_path", type=click.Path(path_type=Path))
def validate(config_path: Path) -> None:
    """Parse and validate a cloud config file."""
    config, env = _load(config_path)
    strategies = configured_strategies(config)

    click.echo(f"cloud:       {env.name}")
    click.echo(f"vm type:     {config.vm_type.value}")
    click.echo(f"credentials: {', '.join(strategies) if strategies else 'none'}")
    click.echo(f"rate limit:  {'on' if config.cloud_provider_rate_limit else 'off'}")
    click.echo(f"backoff:     {'on' if config.cloud_provider_backoff else 'off'}")

    if not strategies:
        raise click.ClickException("no credential strategy is configured")
    if len(strategies) > 1:
        click.secho(
            f"warning: several credential strategies configured, {strategies[0]} wins",
            fg="yellow",
        )


@cli.command()
@click.argument("config_path", type=click.Path(path_type=Path))
def capabilities(config_path: Path) -> None:
    """Print the interfaces the adapter supports."""
    adapter = _build_adapter(config_path)
    output = {"provider": adapter.provider_name, **asdict(adapter.capabilities())}
    click.echo(json.dumps(output, indent=2))


@cli.command("resolve-node")
@click.argument("config_path", type=click.Path(path_type=Path))
@click.argument("node_name")
def resolve_node(config_path: Path, node_name: str) -> None:
    """Resolve a node to its network interface."""
    adapter = _build_adapter(config_path)
    try:
        interface = asyncio.run(adapter.vm_set.resolve_node_network_interface(node_name))
    except AdapterError as e:
        raise click.ClickException(f"{type(e).__name__}: {e}") from e
    click.echo(json.dumps(asdict(interface), indent=2))
