#!/usr/bin/env python3
"""
Command-line interface for database clone provisioning.
"""

import asyncio
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

import click
import yaml

from dbclone.client import DBCloneClient
from dbclone.config import AppConfig, config_loader
from dbclone.exceptions import ConfigurationError, DBCloneError
from dbclone.logging import logger
from dbclone.models import CloneFilter, Credential


def setup_logging(verbose: bool = False, quiet: bool = False, log_level: str = "INFO") -> None:
    """Setup logging configuration."""
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = getattr(logging, log_level.upper(), logging.INFO)

    logger.set_level(level)


def emit(ctx: Any, rows: List[Dict[str, Any]], columns: List[str]) -> None:
    """Print rows in the output format chosen on the command group."""
    output_format = ctx.obj.get("output_format", "text")
    if output_format == "json":
        click.echo(json.dumps(rows, indent=2, default=str))
    elif output_format == "yaml":
        click.echo(yaml.safe_dump(json.loads(json.dumps(rows, default=str)), sort_keys=False))
    else:
        if not rows:
            click.echo("No records found")
            return
        widths = {c: max(len(c), *(len(str(r.get(c, ""))) for r in rows)) for c in columns}
        click.echo("  ".join(c.ljust(widths[c]) for c in columns))
        click.echo("  ".join("-" * widths[c] for c in columns))
        for row in rows:
            click.echo("  ".join(str(row.get(c, "")).ljust(widths[c]) for c in columns))


def run_with_client(ctx: Any, coro_factory) -> Any:
    """Run a coroutine against a client and turn dbclone errors into exit codes."""

    async def runner() -> Any:
        async with DBCloneClient(ctx.obj["config"]) as client:
            return await coro_factory(client)

    try:
        return asyncio.run(runner())
    except DBCloneError as e:
        click.echo(f"✗ Error [{e.error_code}]: {e}", err=True)
        sys.exit(1)


@click.group()
@click.option("--config", "-c", "config_path", default=None, help="Configuration file path")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-error output")
@click.option(
    "--output",
    "-o",
    type=click.Choice(["text", "json", "yaml"]),
    default="text",
    help="Output format",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    default=None,
    help="Log level (overrides the configuration)",
)
@click.version_option(package_name="dbclone")
@click.pass_context
def cli(
    ctx: Any,
    config_path: Optional[str],
    verbose: bool,
    quiet: bool,
    output: str,
    log_level: Optional[str],
) -> None:
    """Provision copy-on-write database clones."""
    try:
        app_config = config_loader.load_config(config_path)
    except ConfigurationError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    setup_logging(verbose, quiet, log_level or app_config.log_level)

    ctx.ensure_object(dict)
    ctx.obj["config"] = app_config
    ctx.obj["output_format"] = output


@cli.command()
@click.option("--host", "-H", "hosts", multiple=True, required=True, help="Target host (repeatable)")
@click.option("--database", "-d", "databases", multiple=True, help="Source database (repeatable)")
@click.option("--parent-image", "-p", help="Location of a registered parent image")
@click.option("--latest", is_flag=True, help="Use the newest image of each database")
@click.option("--destination", help="Directory for the clone disk and access path")
@click.option("--clone-name", "-n", help="Clone and database name")
@click.option("--sql-instance", "-s", help="SQL Server instance, defaults to the host")
@click.option("--ssh-user", "-u", help="SSH user on the hosts")
@click.option("--ssh-key", "-k", help="SSH private key path")
@click.option("--sql-user", help="SQL login, Windows authentication when omitted")
@click.option("--sql-password", envvar="DBCLONE_SQL_PASSWORD", help="SQL login password")
@click.option("--disabled", is_flag=True, help="Register the clone as disabled")
@click.option("--force", "-f", is_flag=True, help="Replace an existing disk of the same name")
@click.option(
    "--cleanup-on-failure",
    is_flag=True,
    help="Unmount and delete the disk if the database cannot be attached",
)
@click.pass_context
def new(
    ctx: Any,
    hosts: tuple,
    databases: tuple,
    parent_image: Optional[str],
    latest: bool,
    destination: Optional[str],
    clone_name: Optional[str],
    sql_instance: Optional[str],
    ssh_user: Optional[str],
    ssh_key: Optional[str],
    sql_user: Optional[str],
    sql_password: Optional[str],
    disabled: bool,
    force: bool,
    cleanup_on_failure: bool,
) -> None:
    """Create clones of a database image on one or more hosts."""
    credential = None
    if ssh_user or ssh_key:
        credential = Credential(username=ssh_user, key_path=ssh_key)
    sql_credential = Credential(username=sql_user, password=sql_password) if sql_user else None

    result = run_with_client(
        ctx,
        lambda client: client.new_clone(
            list(hosts),
            databases=list(databases),
            parent_image=parent_image,
            latest=latest,
            destination=destination,
            clone_name=clone_name,
            sql_instance=sql_instance,
            credential=credential,
            sql_credential=sql_credential,
            disabled=disabled,
            force=force,
            cleanup_on_failure=cleanup_on_failure,
        ),
    )

    emit(
        ctx,
        [record.to_dict() for record in result.clones],
        ["clone_id", "host_name", "database_name", "sql_instance", "access_path"],
    )
    for failure in result.failures:
        click.echo(
            f"✗ {failure.host}/{failure.database or '-'} failed while "
            f"{failure.state.value}: {failure.error}",
            err=True,
        )
    if not result.success:
        sys.exit(1)


@cli.command("list")
@click.option("--host", "-H", "host_name", help="Only clones on this host")
@click.option("--database", "-d", "database_name", help="Only clones with this database name")
@click.option("--image-id", type=int, help="Only clones of this image")
@click.option("--sql-instance", "-s", help="Only clones on this instance")
@click.option("--enabled/--disabled", "is_enabled", default=None, help="Filter on the enabled flag")
@click.pass_context
def list_clones(
    ctx: Any,
    host_name: Optional[str],
    database_name: Optional[str],
    image_id: Optional[int],
    sql_instance: Optional[str],
    is_enabled: Optional[bool],
) -> None:
    """List registered clones."""
    clone_filter = CloneFilter(host_name, database_name, image_id, sql_instance, is_enabled)

    async def query(client: DBCloneClient):
        return client.list_clones(clone_filter)

    records = run_with_client(ctx, query)
    emit(
        ctx,
        [record.to_dict() for record in records],
        ["clone_id", "host_name", "sql_instance", "database_name", "image_name", "is_enabled"],
    )


@cli.command()
@click.option("--database", "-d", "database_name", help="Only images of this database")
@click.pass_context
def images(ctx: Any, database_name: Optional[str]) -> None:
    """List registered parent images."""

    async def query(client: DBCloneClient):
        return client.list_images(database_name)

    rows = [vars(image) for image in run_with_client(ctx, query)]
    emit(ctx, rows, ["image_id", "image_name", "database_name", "created_on", "image_location"])


@cli.command()
@click.pass_context
def hosts(ctx: Any) -> None:
    """List registered hosts."""

    async def query(client: DBCloneClient):
        return client.list_hosts()

    rows = [vars(host) for host in run_with_client(ctx, query)]
    emit(ctx, rows, ["host_id", "host_name", "ip_address", "fqdn"])


@cli.group()
def config() -> None:
    """Inspect configuration settings."""


@config.command("show")
@click.pass_context
def config_show(ctx: Any) -> None:
    """Display the effective configuration."""
    app_config: AppConfig = ctx.obj["config"]
    click.echo(yaml.safe_dump(app_config.model_dump(), default_flow_style=False))


@config.command("path")
def config_path() -> None:
    """Show the configuration file search path."""
    default_paths = [
        os.path.expanduser("~/.config/dbclone/config.yaml"),
        "/etc/dbclone/config.yaml",
        "config.yaml",
    ]

    click.echo("Configuration search paths (in order):")
    for i, path in enumerate(default_paths, 1):
        exists = "✓" if os.path.exists(path) else "✗"
        click.echo(f"  {i}. {exists} {path}")


if __name__ == "__main__":
    cli()
