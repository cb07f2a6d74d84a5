"""
CLI for the image mirror.

Commands:
    skumirror serve              - Run the HTTP service
    skumirror check SKU [INDEX]  - Existence check against the local cache
    skumirror fetch SKU URL...   - Materialize one or more images of an item
    skumirror report             - Show coverage of the local cache
    skumirror forget SKU [INDEX] - Remove a cached image
    skumirror config             - Show current configuration
    skumirror version            - Print version
"""

from __future__ import annotations

import asyncio
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from skumirror import __version__
from skumirror.cache.registry import FlightInProgressError
from skumirror.cache.service import ImageCache
from skumirror.config import Settings, clear_settings_cache, get_settings
from skumirror.exceptions import ConfigurationError, InvalidKeyError, StorageError
from skumirror.logging import setup_logging
from skumirror.types import CacheKey, MaterializeResult

app = typer.Typer(
    name="skumirror",
    help="SKU Image Mirror - local copies of inventory item photos",
    no_args_is_help=True,
)

console = Console()
error_console = Console(stderr=True)


def _get_settings_safe() -> Settings | None:
    """Get settings, returning None if configuration is invalid."""
    try:
        clear_settings_cache()
        return get_settings()
    except Exception:
        return None


def _load_settings() -> Settings:
    settings = _get_settings_safe()
    if settings is None:
        error_console.print(
            "[red]Error:[/red] Configuration is invalid. "
            "Run 'skumirror config' to see what's wrong."
        )
        raise typer.Exit(1)
    setup_logging(settings.LOG_LEVEL, log_file=settings.LOG_FILE)
    return settings


def _key_or_exit(sku: str, index: int) -> CacheKey:
    try:
        return CacheKey.create(sku, index)
    except InvalidKeyError as e:
        error_console.print(f"[red]Invalid key:[/red] {e}")
        raise typer.Exit(2)


def _open_cache(settings: Settings) -> ImageCache:
    try:
        settings.ensure_directories()
    except ConfigurationError as e:
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    cache = ImageCache.from_settings(settings)
    cache.rehydrate()
    return cache


@app.command()
def serve(
    host: Annotated[str, typer.Option("--host", "-h", help="Interface to bind")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", "-p", help="Port to listen on")] = 8000,
) -> None:
    """Run the image mirror HTTP service."""
    _load_settings()
    from skumirror.api.server import run

    run(host=host, port=port)


@app.command()
def check(
    sku: Annotated[str, typer.Argument(help="Item SKU")],
    index: Annotated[int, typer.Argument(help="Image index (1-based)")] = 1,
) -> None:
    """Check whether a local copy exists for an image."""
    settings = _load_settings()
    key = _key_or_exit(sku, index)
    cache = _open_cache(settings)

    result = asyncio.run(cache.check_exists(key))
    if result.exists:
        console.print(f"[green]ready[/green] {key} -> {result.local_path}")
    else:
        console.print(f"[yellow]missing[/yellow] {key}")
        raise typer.Exit(1)


@app.command()
def fetch(
    sku: Annotated[str, typer.Argument(help="Item SKU")],
    urls: Annotated[list[str], typer.Argument(help="Remote image URLs, in index order")],
    start_index: Annotated[
        int, typer.Option("--start-index", "-i", help="Image index of the first URL")
    ] = 1,
) -> None:
    """Materialize images of one item into the local cache."""
    settings = _load_settings()
    keys = [_key_or_exit(sku, start_index + offset) for offset in range(len(urls))]
    cache = _open_cache(settings)

    async def _run() -> list[MaterializeResult]:
        try:
            return await cache.materialize_many(zip(keys, urls))
        finally:
            await cache.close()

    results = asyncio.run(_run())

    table = Table(title=f"Materialized images for {sku}", show_header=True)
    table.add_column("Key", style="cyan")
    table.add_column("Result")
    table.add_column("Attempts", justify="right")
    table.add_column("Local path / error")

    failed = 0
    for key, result in zip(keys, results):
        entry = cache.entry(key)
        attempts = str(entry.attempt_count) if entry else "-"
        if result.success:
            table.add_row(str(key), "[green]ready[/green]", attempts, result.local_path or "")
        else:
            failed += 1
            kind = result.error.value if result.error else "error"
            table.add_row(str(key), f"[red]{kind}[/red]", attempts, result.detail or "")

    console.print(table)
    if failed:
        raise typer.Exit(1)


@app.command()
def report() -> None:
    """Show how many images are mirrored locally."""
    settings = _load_settings()
    cache = _open_cache(settings)
    stats = cache.stats()

    table = Table(title="Image Cache", show_header=True)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green", justify="right")
    table.add_row("Stored files", str(stats.stored_files))
    table.add_row("Stored size", f"{stats.stored_bytes / 1024 / 1024:.2f} MB")
    for status, count in stats.by_status.items():
        table.add_row(f"Entries {status}", str(count))

    console.print()
    console.print(table)
    console.print(f"\n[dim]Images directory:[/dim] {settings.IMAGES_DIR}")


@app.command()
def forget(
    sku: Annotated[str, typer.Argument(help="Item SKU")],
    index: Annotated[int, typer.Argument(help="Image index (1-based)")] = 1,
) -> None:
    """Remove a cached image and its entry."""
    settings = _load_settings()
    key = _key_or_exit(sku, index)
    cache = _open_cache(settings)

    try:
        removed = cache.forget(key)
    except (FlightInProgressError, StorageError) as e:
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if removed:
        console.print(f"Removed {key}")
    else:
        console.print(f"[dim]Nothing cached for {key}[/dim]")


@app.command()
def config() -> None:
    """Show current configuration."""
    console.print()
    settings = _get_settings_safe()

    if settings is None:
        error_console.print("[red]Configuration is invalid.[/red]")
        try:
            Settings()
        except Exception as e:
            error_console.print(str(e))
        raise typer.Exit(1)

    table = Table(title="Settings", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for key, value in settings.display().items():
        display_value = str(value) if value is not None else "[dim]not set[/dim]"
        table.add_row(key, display_value)

    console.print(
        Panel(table, title="[bold cyan]SKU Image Mirror[/bold cyan]", border_style="cyan")
    )
    console.print()


@app.command()
def version() -> None:
    """Print the version number."""
    console.print(f"skumirror version {__version__}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
