"""Mirror cache maintenance commands.

These act on the cache directory directly. Run them while the server is
stopped: locks are per process, so a running server does not see them.
"""

import asyncio
import time
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from forgejo_bridge.core.exceptions import ValidationError
from forgejo_bridge.infrastructure.git_protocol import MirrorKey
from forgejo_bridge.infrastructure.mirror_cache import MirrorCache

app = typer.Typer(help="Inspect and clean the mirror cache")
console = Console()


def _open_cache(cache_root: Optional[Path]) -> MirrorCache:
    return MirrorCache(root=cache_root)


def _format_age(seconds: float) -> str:
    if seconds < 60:
        return f"{int(seconds)}s"
    if seconds < 3600:
        return f"{int(seconds // 60)}m"
    return f"{seconds / 3600:.1f}h"


@app.command("list")
def list_mirrors(
    cache_root: Optional[Path] = typer.Option(None, "--cache-root", help="Override CACHE_ROOT"),
):
    """List mirrors currently on disk."""
    cache = _open_cache(cache_root)
    entries = cache.list_entries()

    if not entries:
        console.print(f"[yellow]No mirrors under {cache.root}[/yellow]")
        return

    table = Table(title=f"Mirrors in {cache.root}")
    table.add_column("Repository", style="cyan")
    table.add_column("Path")
    table.add_column("Idle for", justify="right", style="green")

    now = time.monotonic()
    for entry in entries:
        table.add_row(str(entry.key), str(entry.path), _format_age(max(now - entry.last_used, 0)))

    console.print(table)
    console.print(f"\nTotal: {len(entries)} mirror(s)")


@app.command("evict")
def evict_mirror(
    owner: str = typer.Argument(..., help="Repository owner"),
    repo: str = typer.Argument(..., help="Repository name (without .git)"),
    cache_root: Optional[Path] = typer.Option(None, "--cache-root", help="Override CACHE_ROOT"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """
    Delete one mirror.

    Example:
        forgejo-bridge cache evict myorg myrepo
    """
    try:
        key = MirrorKey(owner, repo)
    except ValidationError as e:
        console.print(f"[red]✗[/red] {e.message}")
        raise typer.Exit(1)

    cache = _open_cache(cache_root)
    if not cache.path_for(key).exists():
        console.print(f"[yellow]No mirror for {key}[/yellow]")
        raise typer.Exit(1)

    if not yes and not Confirm.ask(f"Delete the mirror of {key}?"):
        raise typer.Exit(0)

    if asyncio.run(cache.evict(key, reason="manual")):
        console.print(f"[green]✓[/green] Evicted {key}")
    else:
        console.print(f"[red]✗[/red] Failed to evict {key}")
        raise typer.Exit(1)


@app.command("purge")
def purge_cache(
    cache_root: Optional[Path] = typer.Option(None, "--cache-root", help="Override CACHE_ROOT"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete every mirror and any leftover temporary clones."""
    cache = _open_cache(cache_root)
    entries = cache.list_entries()

    if not yes and entries and not Confirm.ask(f"Delete all {len(entries)} mirror(s)?"):
        raise typer.Exit(0)

    debris = cache.purge_debris()

    async def _evict_all() -> int:
        removed = 0
        for entry in entries:
            if await cache.evict(entry.key, reason="manual"):
                removed += 1
        return removed

    removed = asyncio.run(_evict_all())
    console.print(f"[green]✓[/green] Removed {removed} mirror(s) and {debris} temporary clone(s)")
    if removed != len(entries):
        raise typer.Exit(1)
