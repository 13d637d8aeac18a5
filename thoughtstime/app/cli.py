"""CLI for inspecting and maintaining Thoughts & Time storage.

Usage:
    thoughtstime status
    thoughtstime migrate relational
    thoughtstime export backup.json
    thoughtstime import backup.json
    thoughtstime reset --yes
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from thoughtstime.app.config import DEFAULT_CONFIG_PATH, load_config
from thoughtstime.storage.blobdb import engine_supports_images
from thoughtstime.storage.manager import StorageManager, build_storage_manager
from thoughtstime.storage.models import MigrationProgress, StorageSnapshot, StorageType

console = Console()

PHASE_STYLES = {
    "exporting": "cyan",
    "importing": "blue",
    "validating": "yellow",
    "complete": "green",
    "error": "red",
}


def run_async(coro):
    """Run an async function to completion."""
    return asyncio.run(coro)


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@asynccontextmanager
async def open_manager(ctx) -> AsyncIterator[StorageManager]:
    """Build and initialize a manager from the CLI options, closing it afterwards."""
    config = load_config(ctx.obj["config_path"])
    if ctx.obj.get("data_path"):
        config.data_path = ctx.obj["data_path"]

    manager = build_storage_manager(config)
    result = await manager.initialize()
    if not result.success:
        await manager.close()
        raise click.ClickException(result.error or "Storage initialization failed")
    try:
        yield manager
    finally:
        await manager.close()


@click.group()
@click.option("--config", default=DEFAULT_CONFIG_PATH, help="Config file path")
@click.option("--data", default=None, help="Host store file (overrides config)")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.pass_context
def cli(ctx, config: str, data: Optional[str], verbose: bool):
    """Thoughts & Time storage CLI."""
    configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["data_path"] = data


@cli.command()
@click.pass_context
def status(ctx):
    """Show the active backend and what it holds."""

    async def _run():
        async with open_manager(ctx) as manager:
            stats = await manager.get_stats()
            if not stats.success or stats.data is None:
                raise click.ClickException(stats.error or "Failed to collect stats")
            metadata = manager.get_metadata()
            relational_ok = engine_supports_images()

            table = Table(title="Storage Status")
            table.add_column("Property", style="cyan")
            table.add_column("Value")
            table.add_row("Host store", str(getattr(manager.kv, "path", "memory")))
            table.add_row("Active backend", stats.data.type.value)
            table.add_row("Items", str(stats.data.item_count))
            table.add_row("Estimated size", stats.data.estimated_size)
            table.add_row("Last migration", metadata.last_migration or "never")
            table.add_row(
                "Relational available",
                "[green]yes" if relational_ok else "[red]no",
            )
            console.print(table)

    run_async(_run())


@cli.command()
@click.argument("target", type=click.Choice([t.value for t in StorageType]))
@click.pass_context
def migrate(ctx, target: str):
    """Copy all data to TARGET and make it the active backend."""

    def on_progress(progress: MigrationProgress) -> None:
        style = PHASE_STYLES.get(progress.phase, "white")
        console.print(f"[{style}]{progress.phase:>10}[/{style}] {progress.percent:3d}%  {progress.message}")

    async def _run():
        async with open_manager(ctx) as manager:
            return await manager.migrate(target, on_progress=on_progress)

    result = run_async(_run())
    if not result.success:
        console.print(f"[red]Migration failed:[/red] {result.error}")
        sys.exit(1)


@cli.command()
@click.argument("output", type=click.Path(dir_okay=False, writable=True))
@click.pass_context
def export(ctx, output: str):
    """Write a snapshot of the active backend to OUTPUT as JSON."""

    async def _run():
        async with open_manager(ctx) as manager:
            return await manager.get_provider().export_all()

    result = run_async(_run())
    if not result.success or result.data is None:
        console.print(f"[red]Error:[/red] {result.error}")
        sys.exit(1)

    with open(output, "w", encoding="utf-8") as f:
        json.dump(result.data.to_dict(), f, indent=2)
    console.print(f"[green]Exported {len(result.data.items.items)} items to {output}")


@cli.command(name="import")
@click.argument("input_path", metavar="INPUT", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def import_(ctx, input_path: str):
    """Replace the active backend's data with the snapshot in INPUT."""
    try:
        with open(input_path, "r", encoding="utf-8") as f:
            snapshot = StorageSnapshot.from_dict(json.load(f))
    except (ValueError, AttributeError) as e:
        console.print(f"[red]Error:[/red] {input_path} is not a snapshot: {e}")
        sys.exit(1)

    async def _run():
        async with open_manager(ctx) as manager:
            return await manager.get_provider().import_all(snapshot)

    result = run_async(_run())
    if not result.success:
        console.print(f"[red]Error:[/red] {result.error}")
        sys.exit(1)
    console.print(f"[green]Imported {len(snapshot.items.items)} items")


@cli.command()
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def reset(ctx, yes: bool):
    """Erase both backends and return to the key-value default."""
    if not yes:
        click.confirm("This deletes all items and settings. Continue?", abort=True)

    async def _run():
        async with open_manager(ctx) as manager:
            return await manager.reset()

    result = run_async(_run())
    if not result.success:
        console.print(f"[red]Error:[/red] {result.error}")
        sys.exit(1)
    console.print("[green]Storage reset to key-value backend")


def main():
    cli()


if __name__ == "__main__":
    main()
