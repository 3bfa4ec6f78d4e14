"""``servicedesk serve`` -- run the API server under uvicorn.

With ``--local`` the server runs against a SQLite file in ``.servicedesk/``
so that no PostgreSQL instance is needed; tables are created on startup.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

logger = logging.getLogger(__name__)

_LOCAL_DIR = ".servicedesk"


def serve_command(
    port: int = typer.Option(
        8000,
        "--port",
        "-p",
        help="API server port.",
    ),
    host: str = typer.Option(
        "127.0.0.1",
        "--host",
        help="Host to bind the API server to.",
    ),
    local: bool = typer.Option(
        False,
        "--local",
        help="Use a SQLite database under .servicedesk/ instead of API_DATABASE_URL.",
    ),
    reload: bool = typer.Option(
        False,
        "--reload",
        help="Enable auto-reload on code changes.",
    ),
) -> None:
    """Start the service desk API server."""
    console = Console(stderr=True)
    project_root = Path.cwd()

    if local:
        _setup_local_env(project_root)

    console.print(Panel(_build_services_table(host, port, local, project_root), title="Service Desk API", border_style="blue"))

    try:
        import uvicorn

        uvicorn_config = uvicorn.Config(
            "api.main:app",
            host=host,
            port=port,
            reload=reload,
            log_level="info",
            access_log=False,
        )
        server = uvicorn.Server(uvicorn_config)

        console.print(f"[green]✓[/green] API server starting on http://{host}:{port}")
        console.print(f"[green]✓[/green] OpenAPI docs at http://{host}:{port}/docs")
        console.print(f"[green]✓[/green] Readiness probe at http://{host}:{port}/ready")

        server.run()

    except KeyboardInterrupt:
        console.print("[yellow]Server stopped.[/yellow]")
    except Exception as exc:
        console.print(f"[red]Server error: {exc}[/red]")
        raise typer.Exit(code=3) from exc


def _setup_local_env(project_root: Path) -> None:
    """Point the API at a local SQLite file and dev-only defaults."""
    state_db = project_root / _LOCAL_DIR / "state.db"
    state_db.parent.mkdir(parents=True, exist_ok=True)

    os.environ["API_DATABASE_URL"] = f"sqlite+aiosqlite:///{state_db}"
    os.environ.setdefault("API_PLATFORM_ENV", "dev")

    # Deterministic for local use only.
    os.environ.setdefault("JWT_SECRET", "servicedesk-local-dev-secret-not-for-production")
    os.environ.setdefault("API_CRON_SECRET", "servicedesk-local-cron-secret")


def _build_services_table(host: str, port: int, local: bool, project_root: Path) -> Table:
    """Build a Rich table showing the services that will be started."""
    table = Table(show_header=True, header_style="bold", expand=False)
    table.add_column("Service", style="bold")
    table.add_column("URL")
    table.add_column("Status")

    table.add_row("API Server", f"http://{host}:{port}", "[green]starting[/green]")
    if local:
        state_db = project_root / _LOCAL_DIR / "state.db"
        table.add_row("Database", f"SQLite ({state_db})", "[green]local[/green]")
    else:
        table.add_row("Database", "API_DATABASE_URL", "[cyan]external[/cyan]")
    return table
