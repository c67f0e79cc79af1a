"""Forgejo Bridge CLI."""

from typing import Optional

import typer
import uvicorn
from rich.console import Console

from forgejo_bridge.cli import __version__
from forgejo_bridge.cli.commands import cache
from forgejo_bridge.core.config import settings

app = typer.Typer(
    name="forgejo-bridge",
    help="Forgejo Bridge - serve Forgejo to Coolify as a GitHub look-alike",
    rich_markup_mode="rich",
    context_settings={"help_option_names": ["-h", "--help"]},
    pretty_exceptions_enable=False,
)

console = Console()


def version_callback(value: bool):
    """Display version and exit."""
    if value:
        console.print(f"forgejo-bridge v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
):
    """
    Forgejo Bridge

    GitHub REST/OAuth translation and a caching Git smart-HTTP proxy for Forgejo.
    """


app.add_typer(cache.app, name="cache", help="Inspect and clean the mirror cache")


@app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default: API_HOST)"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port (default: PORT)"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
):
    """Run the HTTP server."""
    console.print(f"[bold]Forgejo Bridge[/bold] v{__version__}")
    console.print(f"Forgejo URL: [cyan]{settings.forgejo_url}[/cyan]")
    console.print(
        f"Point Coolify's GitHub API URL at http://<this-host>:{port or settings.api_port}/api/v3"
    )

    uvicorn.run(
        "forgejo_bridge.main:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    app()
