"""Retina offline CLI entry point.

Provides command-line access to the offline store: inspecting sync status
and storage usage, listing pending records, forcing a sync pass, and running
the long-lived sync process.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import typer
from typing_extensions import Annotated

from retina_offline.config import OfflineConfig, get_config
from retina_offline.service import OfflineStorageService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Create CLI app
app = typer.Typer(
    name="retina-offline",
    help="Retina offline - local persistence and background sync for detection results",
    add_completion=False,
)

ConfigOption = Annotated[str, typer.Option("--config", "-c", help="Path to configuration file")]
VerboseOption = Annotated[bool, typer.Option("--verbose", "-v", help="Enable verbose output")]
JsonOption = Annotated[bool, typer.Option("--json", help="Print machine-readable JSON")]


def _load_config(config: str, verbose: bool) -> OfflineConfig:
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if config and not Path(config).expanduser().exists():
        typer.echo(f"❌ Configuration file not found: {config}", err=True)
        raise typer.Exit(code=1)

    try:
        loaded = get_config(config or None)
    except ValueError as e:
        typer.echo(f"❌ Invalid configuration: {e}", err=True)
        raise typer.Exit(code=1)

    if loaded.debug:
        logging.getLogger().setLevel(logging.DEBUG)
    return loaded


def _build_service(config: OfflineConfig) -> OfflineStorageService:
    return OfflineStorageService.from_config(config)


def _format_bytes(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


@app.command()
def status(
    config: ConfigOption = "",
    verbose: VerboseOption = False,
    as_json: JsonOption = False,
) -> None:
    """Show connectivity, pending items and the last sync pass."""
    service = _build_service(_load_config(config, verbose))

    async def _status():
        await service.init(start_sync=False)
        try:
            await service.check_connectivity()
            return await service.sync_status()
        finally:
            await service.dispose()

    result = asyncio.run(_status())
    if as_json:
        typer.echo(result.model_dump_json(indent=2))
        return

    typer.echo(f"State:     {result.state.value}")
    typer.echo(f"Online:    {'yes' if result.online else 'no'}")
    typer.echo(f"Pending:   {result.pending}")
    if result.last_sync_at is not None:
        typer.echo(f"Last sync: {result.last_sync_at.isoformat()}")


@app.command()
def usage(
    config: ConfigOption = "",
    verbose: VerboseOption = False,
    as_json: JsonOption = False,
) -> None:
    """Show storage usage per category."""
    service = _build_service(_load_config(config, verbose))

    async def _usage():
        await service.init(start_sync=False)
        try:
            return await service.storage_usage()
        finally:
            await service.dispose()

    snapshot = asyncio.run(_usage())
    if as_json:
        typer.echo(snapshot.model_dump_json(indent=2))
        return

    for name in ("models", "detections", "training", "ephemeral"):
        category = getattr(snapshot, name)
        typer.echo(f"{name:<11} {category.count:>6} items  {_format_bytes(category.bytes):>10}")
    typer.echo(f"{'total':<11} {snapshot.total_items:>6} items  {_format_bytes(snapshot.total_bytes):>10}")
    if snapshot.quota_fraction is not None:
        typer.echo(f"Quota used: {snapshot.quota_fraction:.1%} of {_format_bytes(snapshot.quota_bytes or 0)}")
    typer.echo(f"Pending sync: {snapshot.pending_sync}  Failed: {snapshot.failed_permanent}")


@app.command()
def pending(
    config: ConfigOption = "",
    verbose: VerboseOption = False,
) -> None:
    """List records that are not yet synced, marking failed ones."""
    service = _build_service(_load_config(config, verbose))

    async def _pending():
        await service.init(start_sync=False)
        try:
            detections = await service.get_unsynced_detection_results()
            sessions = await service.get_unsynced_training_sessions()
            return [*detections, *sessions]
        finally:
            await service.dispose()

    items = asyncio.run(_pending())
    if not items:
        typer.echo("No pending records")
        return

    for item in items:
        marker = "FAILED " if item.failed_permanent else "pending"
        line = f"{marker}  {item.entity_type.value:<10} {item.id}  attempts={item.sync_attempts}"
        if item.last_sync_error:
            line += f"  last_error={item.last_sync_error}"
        typer.echo(line)


@app.command()
def sync(
    config: ConfigOption = "",
    verbose: VerboseOption = False,
) -> None:
    """Run one sync pass now and report its outcome."""
    service = _build_service(_load_config(config, verbose))

    async def _sync():
        async with service:
            return await service.force_sync()

    summary = asyncio.run(_sync())
    typer.echo(
        f"Pushed: {summary.pushed}  Failed: {summary.failed}  Remaining: {summary.remaining}"
        + ("  (halted: offline)" if summary.halted_offline else "")
    )
    if summary.remaining or summary.failed:
        raise typer.Exit(code=2)


@app.command()
def run(
    config: ConfigOption = "",
    verbose: VerboseOption = False,
) -> None:
    """Run the sync process until SIGINT or SIGTERM."""
    loaded = _load_config(config, verbose)

    from retina_offline.main import OfflineApplication

    application = OfflineApplication(config=loaded, service=_build_service(loaded))
    asyncio.run(application.run())


@app.command()
def version() -> None:
    """Show retina-offline version information."""
    try:
        import importlib.metadata

        ver = importlib.metadata.version("retina-offline")
        typer.echo(f"retina-offline version: {ver}")
    except importlib.metadata.PackageNotFoundError:
        typer.echo("retina-offline version: unknown")


def main() -> None:
    """Main CLI entry point."""
    app()


if __name__ == "__main__":
    main()
