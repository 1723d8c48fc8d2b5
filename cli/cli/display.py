"""Rich output formatting for the ``didctl`` CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.table import Table

if TYPE_CHECKING:
    from did_engine.billing import RenewalStats, SyncStats
    from did_engine.orders import ExpiryStats

_OUTCOME_COLOURS: dict[str, str] = {
    "renewed_balance": "green",
    "renewed_free": "green",
    "sent_gateway": "yellow",
    "already_invoiced": "dim",
    "dry_run": "cyan",
}


def _coloured(outcome: str) -> str:
    colour = _OUTCOME_COLOURS.get(outcome, "white")
    return f"[{colour}]{outcome}[/{colour}]"


def display_renewal_stats(console: Console, stats: RenewalStats) -> None:
    """Render one renewal sweep: a per-customer table and a totals line.

    Parameters
    ----------
    console:
        Rich console to write to.
    stats:
        Result of :meth:`DidRenewalService.run`.
    """
    title = f"DID Renewals for {stats.as_of.isoformat()}" + (" (dry run)" if stats.dry_run else "")
    if not stats.results:
        console.print(f"[dim]{title}: nothing due.[/dim]")
    else:
        table = Table(title=title, show_lines=False, pad_edge=True, expand=False)
        table.add_column("Customer", justify="right", style="bold")
        table.add_column("DIDs", justify="right")
        table.add_column("Amount", justify="right")
        table.add_column("Outcome")
        table.add_column("Invoice", justify="right")
        for result in stats.results:
            table.add_row(
                str(result.customer_id),
                str(len(result.did_ids)),
                str(result.amount),
                _coloured(result.outcome),
                str(result.invoice_id) if result.invoice_id is not None else "-",
            )
        console.print(table)

    errors = f"[red]{stats.errors} error(s)[/red]" if stats.errors else "[green]0 errors[/green]"
    console.print(
        f"Customers: {stats.customers_processed}  "
        f"From balance: {stats.renewed_balance}  "
        f"Sent to gateway: {stats.sent_gateway}  "
        f"Already invoiced: {stats.already_invoiced}  "
        f"Total: {stats.total_amount}  {errors}"
    )


def display_expiry_stats(console: Console, stats: ExpiryStats) -> None:
    """Render one order-expiry sweep."""
    table = Table(
        title="Order Expiry" + (" (dry run)" if stats.dry_run else ""),
        show_header=False,
        expand=False,
    )
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Orders checked", str(stats.orders_checked))
    table.add_row("Orders expired", str(stats.orders_expired))
    table.add_row("DIDs released", str(stats.dids_released))
    table.add_row("Errors", f"[red]{stats.errors}[/red]" if stats.errors else "0")
    console.print(table)
    if stats.expired_order_ids:
        console.print(f"Expired orders: {', '.join(str(i) for i in stats.expired_order_ids)}")


def display_sync_stats(console: Console, stats: SyncStats) -> None:
    """Render one invoice-sync sweep, listing the invoices that need attention."""
    table = Table(
        title="Invoice Sync" + (" (dry run)" if stats.dry_run else ""),
        show_header=False,
        expand=False,
    )
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Invoices checked", str(stats.invoices_checked))
    table.add_row("Synced", f"[green]{stats.synced}[/green]" if stats.synced else "0")
    table.add_row("Retrying", f"[yellow]{stats.retrying}[/yellow]" if stats.retrying else "0")
    table.add_row("Waiting for backoff", str(stats.waiting))
    table.add_row("Failed", f"[red]{stats.failed}[/red]" if stats.failed else "0")
    table.add_row("Not applicable", str(stats.not_applicable))
    table.add_row("Errors", f"[red]{stats.errors}[/red]" if stats.errors else "0")
    console.print(table)
    for result in stats.results:
        if result.error:
            console.print(f"Invoice {result.invoice_id}: {result.outcome} ({result.error})")
