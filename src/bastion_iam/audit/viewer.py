"""CLI rendering of audit events with Rich tables."""

from __future__ import annotations

from rich.console import Console
from rich.table import Table

from bastion_iam.audit.models import AuditEvent, AuditResult, ChainVerification

console = Console()

_RESULT_COLORS = {
    AuditResult.SUCCESS: "green",
    AuditResult.FAILURE: "red",
    AuditResult.DENIED: "yellow",
}


def _risk_color(score: float) -> str:
    if score >= 0.7:
        return "bold red"
    if score >= 0.4:
        return "yellow"
    return "green"


def print_audit_events(events: list[AuditEvent], title: str = "Audit Events") -> None:
    """Render audit events as a Rich table."""
    table = Table(title=title, show_lines=False, expand=True)
    table.add_column("#", style="dim", width=6, justify="right")
    table.add_column("Time", style="dim", width=19)
    table.add_column("Event", width=18)
    table.add_column("Principal", width=20)
    table.add_column("Resource", width=20)
    table.add_column("IP", width=15)
    table.add_column("Risk", width=5)
    table.add_column("Result", width=8)

    for ev in events:
        ts = ev.timestamp.strftime("%Y-%m-%d %H:%M:%S")
        result_color = _RESULT_COLORS.get(ev.result, "white")
        risk_color = _risk_color(ev.risk_score)
        resource = f"{ev.resource}:{ev.action}" if ev.action else ev.resource
        table.add_row(
            str(ev.sequence),
            ts,
            ev.event_type.value,
            ev.principal_id or "-",
            resource,
            ev.ip_address,
            f"[{risk_color}]{ev.risk_score:.2f}[/{risk_color}]",
            f"[{result_color}]{ev.result.value}[/{result_color}]",
        )

    console.print(table)
    console.print(f"  Total: {len(events)} event(s)")


def print_chain_verification(result: ChainVerification) -> None:
    if result.ok:
        console.print(f"[green]Audit chain intact: {result.checked} event(s) verified.[/green]")
        return
    console.print(
        f"[bold red]Audit chain broken at event {result.broken_at} "
        f"({result.reason}) after {result.checked} valid event(s).[/bold red]"
    )
