"""
Audit Ledger Tool — Independent chain integrity verification.

Connects directly to the database and recomputes every hash in the audit
chain, verifying that no KYC decision or role change has been altered
after the fact.

Usage:
    kycguard-audit
    kycguard-audit --database-url postgresql://...
    kycguard-audit --verbose
    kycguard-audit --aggregate <profile-id>
"""

from __future__ import annotations

import argparse
import sys
import time

from rich.console import Console
from rich.table import Table

from kycguard.audit.ledger import AuditLedger
from kycguard.config import settings
from kycguard.storage.sql import make_engine

console = Console()


def _entries_table(entries: list) -> Table:
    table = Table(show_lines=True)
    table.add_column("Seq", style="cyan", width=6)
    table.add_column("Type", style="green", width=22)
    table.add_column("Aggregate", width=38)
    table.add_column("Actor", style="yellow", width=24)
    table.add_column("Hash (first 16)", style="dim", width=18)
    table.add_column("Occurred", width=20)
    for entry in entries:
        actor = entry.actor_subject
        if entry.actor_role:
            actor = f"{actor} ({entry.actor_role})"
        table.add_row(
            str(entry.sequence_number),
            entry.event_type,
            entry.aggregate_id,
            actor,
            entry.entry_hash[:16] + "...",
            str(entry.occurred_at)[:19],
        )
    return table


def run_audit(
    ledger: AuditLedger,
    verbose: bool = False,
    aggregate_id: str | None = None,
) -> bool:
    """
    Run a full hash chain integrity audit.

    Returns:
        True if the chain is valid, False otherwise.
    """
    console.print("\n[bold blue]═══ KYC Audit Ledger Integrity Check ═══[/bold blue]\n")

    count = ledger.get_entry_count()
    console.print(f"  Entries in ledger: [bold]{count}[/bold]")

    if count == 0:
        console.print("[yellow]⚠ Ledger is empty — no entries to verify[/yellow]")
        return True

    console.print("  Verifying hash chain...", end=" ")
    start_time = time.time()
    is_valid, entries_verified, message = ledger.verify_chain()
    elapsed = time.time() - start_time

    if is_valid:
        console.print("[bold green]✓ VALID[/bold green]")
        console.print(f"  Entries verified: [bold]{entries_verified}[/bold]")
        console.print(f"  Verification time: {elapsed:.3f}s")
    else:
        console.print("[bold red]✗ INVALID[/bold red]")
        console.print(f"  Failure at entry: {entries_verified}")
        console.print(f"  Reason: {message}")

    if aggregate_id:
        console.print(f"\n[bold]History of {aggregate_id}:[/bold]")
        console.print(_entries_table(ledger.get_entries_for_aggregate(aggregate_id)))
    elif verbose:
        console.print("\n[bold]Detailed Entry Listing:[/bold]")
        console.print(_entries_table(list(reversed(ledger.get_latest_entries(limit=count)))))

    console.print("\n[bold blue]═══ Audit Complete ═══[/bold blue]\n")
    return is_valid


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="kycguard audit ledger integrity checker"
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy connection string (defaults to KYCGUARD_DATABASE_URL)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show detailed entry listing",
    )
    parser.add_argument(
        "--aggregate",
        default=None,
        help="Show the history of one profile or role",
    )
    args = parser.parse_args(argv)

    ledger = AuditLedger(make_engine(args.database_url or settings.database_url))
    ledger.initialize()
    is_valid = run_audit(ledger, verbose=args.verbose, aggregate_id=args.aggregate)
    sys.exit(0 if is_valid else 1)


if __name__ == "__main__":
    main()
