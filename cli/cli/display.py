"""Rich output formatting for the service desk CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# ---------------------------------------------------------------------------
# Status colour mapping
# ---------------------------------------------------------------------------

_STATUS_COLOURS: dict[str, str] = {
    "TRIAL": "cyan",
    "ACTIVE": "green",
    "GRACE": "yellow",
    "READ_ONLY": "dark_orange",
    "SUSPENDED": "red",
    "CANCELLED": "dim red",
}


def _coloured_status(status: str) -> str:
    """Return a Rich markup string with the status colour-coded."""
    colour = _STATUS_COLOURS.get(status, "white")
    return f"[{colour}]{status}[/{colour}]"


# ---------------------------------------------------------------------------
# Tenants and users
# ---------------------------------------------------------------------------


def display_tenant(console: Console, tenant: dict[str, Any], subscription: dict[str, Any] | None) -> None:
    """Render a newly seeded tenant with its subscription."""
    lines = [
        f"[bold]Tenant ID:[/bold]  {tenant['id']}",
        f"[bold]Name:[/bold]       {tenant['name']}",
        f"[bold]Slug:[/bold]       {tenant['slug']}",
    ]
    if subscription is not None:
        lines.extend(
            [
                f"[bold]Plan:[/bold]       {subscription['plan']} ({subscription['billing_cycle']})",
                f"[bold]Status:[/bold]     {_coloured_status(subscription['status'])}",
                f"[bold]Period end:[/bold] {subscription.get('current_period_end') or '-'}",
            ]
        )
    console.print(Panel("\n".join(lines), title="Tenant", border_style="blue"))


def display_users(console: Console, users: Iterable[dict[str, Any]]) -> None:
    """Render users as a table."""
    table = Table(title="Users", show_lines=False)
    table.add_column("ID", style="dim")
    table.add_column("Email")
    table.add_column("Name")
    table.add_column("Role", style="bold")
    table.add_column("Department")
    for user in users:
        table.add_row(user["id"], user["email"], user["name"], user["role"], user.get("department") or "-")
    console.print(table)


def display_tenants(console: Console, tenants: list[dict[str, Any]]) -> None:
    """Render every tenant with its subscription status."""
    if not tenants:
        console.print("[dim]No tenants.[/dim]")
        return
    table = Table(title="Tenants")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Slug")
    table.add_column("Subscription")
    for tenant in tenants:
        status = tenant.get("subscription_status")
        table.add_row(tenant["id"], tenant["name"], tenant["slug"], _coloured_status(status) if status else "-")
    console.print(table)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


def display_check_results(console: Console, result: dict[str, int]) -> None:
    """Render the outcome of a daily subscription check."""
    table = Table(title="Subscription check")
    table.add_column("Change")
    table.add_column("Count", justify="right")
    table.add_row("Overdue payments failed", str(result.get("overdue_payments", 0)))
    table.add_row("Moved to grace", str(result.get("to_grace", 0)))
    table.add_row("Moved to read-only", str(result.get("to_read_only", 0)))
    console.print(table)


def display_delivery_results(console: Console, result: dict[str, int]) -> None:
    delivered = result.get("delivered", 0)
    failed = result.get("failed", 0)
    colour = "red" if failed else "green"
    console.print(f"[{colour}]Delivered {delivered}, failed {failed}[/{colour}]")
