"""Main CLI entry point for pullcache.

Provides command-line access to the resource cache and to ledger checkpoints.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional
from urllib.parse import unquote

import click
from rich.console import Console
from rich.table import Table

from pullcache.cache.config import CacheConfig, get_global_config
from pullcache.cache.engine import ResourceCacheEngine
from pullcache.cache.fetcher import ResourceFetcher, is_temp_file
from pullcache.errors import PullCacheError
from pullcache.ledger.ledger import decode_checkpoint
from pullcache.utils import format_size, sanitize_component

# Global console for Rich output
console = Console()


def build_config(cache_root: Optional[str], subdir: Optional[str]) -> CacheConfig:
    """Build configuration from CLI options on top of the global configuration.

    Priority:
    1. Explicit --cache-root/--subdir flags
    2. Config file or PULLCACHE_* environment variables
    3. Defaults
    """
    base = get_global_config()
    return CacheConfig(
        cache_root=Path(cache_root) if cache_root else base.cache_root,
        subdir=subdir or base.subdir,
        probe_timeout=base.probe_timeout,
        fetch_timeout=base.fetch_timeout,
        max_redirects=base.max_redirects,
        chunk_size=base.chunk_size,
        lock_timeout=base.lock_timeout,
    )


@click.group()
@click.option(
    "--cache-root",
    type=click.Path(file_okay=False),
    help="Cache root directory (default: ~/.pullcache or PULLCACHE_ROOT env var)",
)
@click.option("--subdir", help="Cache subdirectory name (default: pull_cache)")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, cache_root, subdir, verbose):
    """pullcache CLI - Probe, fetch and inspect cached resources."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = build_config(cache_root, subdir)
    if verbose:
        logging.basicConfig(level=logging.DEBUG)


@cli.command("probe")
@click.argument("url")
@click.pass_context
def probe(ctx, url):
    """Resolve the current version of a resource.

    Example:
        pullcache probe https://example.com/icon.png
    """
    config = ctx.obj["config"]

    async def run():
        async with ResourceFetcher(config) as fetcher:
            return await fetcher.probe(url)

    try:
        result = asyncio.run(run())
    except PullCacheError as e:
        console.print(f"[red]✗[/red] {e}", style="red")
        sys.exit(1)

    console.print(f"[bold]Version:[/bold] {result.version}")
    console.print(f"[bold]URL:[/bold] {result.url}")
    if result.redirects:
        console.print(f"[bold]Redirects:[/bold] {result.redirects}")


@cli.command("fetch")
@click.argument("url")
@click.option("--owner", "-o", required=True, help="Owner id the resource is cached for")
@click.option("--alias", "-a", required=True, help="Resource alias")
@click.pass_context
def fetch(ctx, url, owner, alias):
    """Cache the current version of a resource.

    Example:
        pullcache fetch https://example.com/icon.png --owner ca1 --alias icon
    """
    config = ctx.obj["config"]

    async def run():
        async with ResourceCacheEngine(config) as engine:
            return await engine.add_resource(owner, alias, url, lambda path, version: None)

    outcome = asyncio.run(run())
    if not outcome.ok:
        console.print(f"[red]✗[/red] {outcome.error}", style="red")
        sys.exit(1)

    console.print(f"[green]✓[/green] Cached '{alias}' for owner '{owner}'")
    console.print(f"  Version: {outcome.version}")
    console.print(f"  Path: {outcome.path}")


@cli.command("ls")
@click.option("--owner", "-o", help="Only list files of this owner id")
@click.pass_context
def list_cached(ctx, owner):
    """List cached files.

    Example:
        pullcache ls
        pullcache ls --owner ca1
    """
    config = ctx.obj["config"]
    cache_dir = config.cache_dir

    if not cache_dir.exists():
        console.print(f"[yellow]No cache at {cache_dir}[/yellow]")
        return

    owner_dirs = sorted(p for p in cache_dir.iterdir() if p.is_dir())
    if owner:
        owner_dirs = [p for p in owner_dirs if p.name == sanitize_component(owner)]

    files = [
        f
        for d in owner_dirs
        for f in sorted(d.iterdir())
        if f.is_file() and not is_temp_file(f.name)
    ]
    if not files:
        console.print("[yellow]No cached files found[/yellow]")
        return

    table = Table(title=f"Cached files ({len(files)})")
    table.add_column("Owner", style="cyan", no_wrap=True)
    table.add_column("File", style="white")
    table.add_column("Size", justify="right", style="green")

    for f in files:
        table.add_row(unquote(f.parent.name), f.name, format_size(f.stat().st_size))

    console.print(table)


@cli.group()
def checkpoint():
    """Inspect ledger checkpoints."""
    pass


@checkpoint.command("show")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def checkpoint_show(path):
    """Show the resources and pending operations of a checkpoint file.

    Example:
        pullcache checkpoint show checkpoints/ca1.checkpoint.json
    """
    try:
        resources, pending = decode_checkpoint(Path(path).read_bytes())
    except PullCacheError as e:
        console.print(f"[red]✗[/red] Invalid checkpoint: {e}", style="red")
        sys.exit(1)

    if resources:
        table = Table(title=f"Resources ({len(resources)})")
        table.add_column("Alias", style="cyan", no_wrap=True)
        table.add_column("URL", style="white")
        table.add_column("Handler", style="magenta")
        for alias in sorted(resources):
            desc = resources[alias]
            table.add_row(alias, desc.url, desc.notify_handler)
        console.print(table)
    else:
        console.print("[yellow]No committed resources[/yellow]")

    if pending:
        console.print(f"\n[bold]Pending operations ({len(pending)}):[/bold]")
        for op in pending:
            detail = f" → {op.url}" if hasattr(op, "url") else ""
            console.print(f"  • {op.tag} {op.alias}{detail}")


if __name__ == "__main__":
    cli()
