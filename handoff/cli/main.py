# handoff/cli/main.py
"""
Operator CLI for inspecting, verifying and re-anchoring delivery events.
"""

import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from handoff.context import HandoffContext
from handoff.core.config import resolve_db_path
from handoff.core.errors import HandoffError
from handoff.core.types import KeyKind
from handoff.service import HandoffService

app = typer.Typer(
    name="handoff",
    help="Inspect, verify and re-anchor proof-of-handoff delivery events",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()


def get_db_path(db_flag: Optional[Path] = None) -> Path:
    """Resolve DB path in this order:
    1. --db flag
    2. HANDOFF_DB_PATH environment variable
    3. Default: ./handoff.db
    """
    return resolve_db_path(db_flag)


def open_service(db: Optional[Path], ledger: Optional[str] = None, must_exist: bool = True) -> HandoffService:
    db_path = get_db_path(db)
    if must_exist and not db_path.exists():
        console.print(f"[red]Database file not found: {db_path}[/]")
        console.print("[yellow]To get started:[/]")
        console.print("  • Run the service once so it creates the record store")
        console.print("  • Set env var: export HANDOFF_DB_PATH=/path/to/handoff.db")
        console.print("  • Or use --db: handoff events --db /custom/path.db")
        raise typer.Exit(1)
    try:
        context = HandoffContext.from_env(db_path=db_path, ledger_uri=ledger)
    except (HandoffError, ValueError) as e:
        console.print(f"[red]Failed to open record store or ledger: {e}[/]")
        raise typer.Exit(1)
    return HandoffService(context)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log lifecycle events to stderr"),
):
    """Manage proof-of-handoff records."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def events(
    db: Optional[Path] = typer.Option(None, "--db", help="Path to SQLite record store"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of recent events to show"),
):
    """List the most recent delivery events and their anchoring state."""
    service = open_service(db)
    try:
        rows = service.context.store.list_events(limit=limit)
    finally:
        service.context.close()

    if not rows:
        console.print("[yellow]No delivery events recorded yet.[/]")
        return

    table = Table(title="Delivery Events")
    table.add_column("Event ID")
    table.add_column("Order")
    table.add_column("Actor")
    table.add_column("Received")
    table.add_column("State")
    table.add_column("Ledger Ref")

    for ev in rows:
        table.add_row(
            ev.id, ev.subject_id, ev.actor_id, ev.received_at, ev.state.value,
            (ev.ledger_ref or "—")[:20],
        )
    console.print(table)


@app.command()
def show(
    event_id: str = typer.Argument(..., help="Event ID to display"),
    db: Optional[Path] = typer.Option(None, "--db", help="Path to SQLite record store"),
):
    """Print one stored delivery event as JSON."""
    service = open_service(db)
    try:
        event = service.context.store.get_delivery_event(event_id)
    finally:
        service.context.close()
    if event is None:
        console.print(f"[red]Event '{event_id}' not found[/]")
        raise typer.Exit(1)
    console.print_json(json.dumps(event.to_dict()))


@app.command()
def verify(
    event_id: str = typer.Argument(..., help="Event ID to verify"),
    db: Optional[Path] = typer.Option(None, "--db", help="Path to SQLite record store"),
    ledger: Optional[str] = typer.Option(None, "--ledger", help="Ledger URI (overrides HANDOFF_LEDGER_URI)"),
):
    """Recompute an event's anchor hash, re-check its signature and ask the ledger."""
    service = open_service(db, ledger)
    try:
        report = service.verification.verify(event_id)
    except HandoffError as e:
        console.print(f"[red]Verification failed: {e.message}[/]")
        raise typer.Exit(1)
    finally:
        service.context.close()

    if service.context.ledger is None and report.ledger_ref:
        console.print("[yellow]Warning: no ledger configured, ledger confirmation skipped.[/]")

    if report.is_valid:
        console.print(f"[green]✓ Event '{event_id}' is valid[/]")
    else:
        console.print(f"[red]✗ Verification failed for event '{event_id}'[/]")
        for failure in report.failures:
            console.print(f"  • {failure.category}: {failure.message}")
    console.print(f"  anchor hash:      {report.stored_hash or '—'}")
    console.print(f"  recomputed:       {report.recomputed_hash}")
    console.print(f"  ledger ref:       {report.ledger_ref or '—'}")
    console.print(f"  ledger confirmed: {report.ledger_confirmed}")
    if not report.is_valid:
        raise typer.Exit(2)


@app.command("anchor-retry")
def anchor_retry(
    db: Optional[Path] = typer.Option(None, "--db", help="Path to SQLite record store"),
    ledger: Optional[str] = typer.Option(None, "--ledger", help="Ledger URI (overrides HANDOFF_LEDGER_URI)"),
    limit: int = typer.Option(100, "--limit", "-n", help="Maximum events to retry in this pass"),
):
    """Re-anchor events left pending or failed whose backoff has elapsed."""
    service = open_service(db, ledger)
    try:
        if service.context.ledger is None:
            console.print("[yellow]No ledger configured. Set HANDOFF_LEDGER_URI or pass --ledger.[/]")
            raise typer.Exit(1)
        results = service.anchor.retry_pending(limit=limit)
    finally:
        service.context.close()

    if not results:
        console.print("[green]Nothing to retry.[/]")
        return
    anchored = sum(1 for r in results if r.anchored)
    for r in results:
        mark = "[green]✓[/]" if r.anchored else "[red]✗[/]"
        console.print(f"  {mark} {r.event_id} {r.ledger_ref or r.error or ''}")
    console.print(f"Anchored {anchored}/{len(results)} events")


@app.command()
def register(
    actor_id: str = typer.Argument(..., help="Delivery actor ID"),
    public_key: str = typer.Argument(..., help="Hex-encoded public key"),
    key_kind: KeyKind = typer.Option(KeyKind.SECP256K1, "--kind", help="Key algorithm"),
    db: Optional[Path] = typer.Option(None, "--db", help="Path to SQLite record store"),
):
    """Register a delivery actor's public key (write-once)."""
    service = open_service(db, must_exist=False)
    try:
        identity = service.identities.register(actor_id, public_key, key_kind)
    except HandoffError as e:
        console.print(f"[red]Registration failed ({e.kind}): {e.message}[/]")
        raise typer.Exit(1)
    finally:
        service.context.close()
    console.print(f"[green]Registered {identity.actor_id} ({identity.key_kind.value})[/]")


@app.command()
def export(
    db: Optional[Path] = typer.Option(None, "--db", help="Path to SQLite record store"),
    output: Path = typer.Option(Path("events.jsonl"), "--output", "-o", help="Output file"),
    limit: int = typer.Option(1000, "--limit", "-n", help="Maximum events to export"),
):
    """Export delivery events as JSONL (one event per line, anchor hash included)."""
    service = open_service(db)
    try:
        rows = service.context.store.list_events(limit=limit)
    finally:
        service.context.close()

    if not rows:
        console.print("[yellow]No delivery events to export.[/]")
        raise typer.Exit(0)

    with open(output, "w", encoding="utf-8") as f:
        for ev in rows:
            json.dump(ev.to_dict(), f, separators=(",", ":"))
            f.write("\n")

    console.print(f"[green]Exported {len(rows)} events to {output}[/]")
    console.print("Format: JSONL, one delivery event per line")


if __name__ == "__main__":
    app()
