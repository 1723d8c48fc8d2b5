"""``didctl`` -- Typer-based operator interface for the DID engine.

Runs the scheduled sweeps (monthly renewals, order expiry, invoice sync)
directly against the database named by ``API_DATABASE_URL``.  Human-readable
output goes to *stderr* via Rich; ``--json`` prints the sweep statistics
to *stdout* for schedulers and pipelines.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from datetime import date
from typing import Any, TypeVar

import typer
from rich.console import Console
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cli.display import display_expiry_stats, display_renewal_stats, display_sync_stats

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="didctl",
    help="DID engine operations: renewal, order-expiry and invoice-sync sweeps.",
    no_args_is_help=True,
)
console = Console(stderr=True)

_json_output: bool = False
_database_url: str | None = None

_T = TypeVar("_T")


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="Database to operate on (defaults to API_DATABASE_URL).",
        envvar="API_DATABASE_URL",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log engine activity to stderr."),
) -> None:
    """Global options applied to every command."""
    global _json_output, _database_url  # noqa: PLW0603
    _json_output = json_mode
    _database_url = database_url
    logging.basicConfig(level=logging.INFO if verbose else logging.WARNING)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _parse_date(value: str, label: str) -> date:
    """Parse a YYYY-MM-DD string into a :class:`date`, raising on failure."""
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        console.print(f"[red]Invalid {label} date '{value}': {exc}[/red]")
        raise typer.Exit(code=3) from exc


def _resolve_database_url() -> str:
    if _database_url:
        return _database_url
    from api.config import load_api_settings

    return load_api_settings().database_url


async def _in_session(work: Callable[[AsyncSession], Awaitable[_T]], *, commit: bool) -> _T:
    """Run *work* in one session; commit only when asked and *work* succeeded."""
    from did_engine.state.database import get_engine

    engine = get_engine(_resolve_database_url())
    try:
        factory = async_sessionmaker(engine, expire_on_commit=False)
        async with factory() as session:
            try:
                result = await work(session)
                if commit:
                    await session.commit()
                else:
                    await session.rollback()
                return result
            except Exception:
                await session.rollback()
                raise
    finally:
        await engine.dispose()


def _emit_json(data: dict[str, Any]) -> None:
    typer.echo(json.dumps(data, sort_keys=True, default=str))


def _gateway_client() -> Any:
    """Billing gateway client built from the ``API_GATEWAY_*`` settings."""
    from api.config import load_api_settings
    from api.services.billing_gateway import WhmcsApiClient

    settings = load_api_settings()
    if not settings.gateway_api_url:
        console.print("[red]API_GATEWAY_API_URL is not set; cannot reach the billing gateway.[/red]")
        raise typer.Exit(code=3)
    return WhmcsApiClient(
        settings.gateway_api_url,
        identifier=settings.gateway_identifier,
        secret=settings.gateway_secret.get_secret_value(),
        payment_method=settings.gateway_payment_method,
        timeout=settings.gateway_timeout,
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def renew(
    as_of: str | None = typer.Option(
        None,
        "--date",
        help="Renewal date YYYY-MM-DD (default: today, UTC).",
    ),
    customer_id: int | None = typer.Option(None, "--customer-id", help="Only renew this customer's DIDs."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report what is due without charging anything."),
) -> None:
    """Charge due DID renewals from balance, invoicing the rest via the gateway."""
    from did_engine.billing import DidRenewalService

    day = _parse_date(as_of, "renewal") if as_of else None

    async def _work(session: AsyncSession) -> Any:
        return await DidRenewalService(session).run(day, customer_id=customer_id, dry_run=dry_run)

    try:
        stats = asyncio.run(_in_session(_work, commit=not dry_run))
    except Exception as exc:
        console.print(f"[red]Renewal sweep failed: {exc}[/red]")
        raise typer.Exit(code=3) from exc

    if _json_output:
        _emit_json(stats.to_dict())
    else:
        display_renewal_stats(console, stats)
    if stats.errors:
        raise typer.Exit(code=1)


@app.command("expire-orders")
def expire_orders(
    dry_run: bool = typer.Option(False, "--dry-run", help="List expirable orders without changing them."),
) -> None:
    """Expire pending DID orders whose reservation has lapsed."""
    from did_engine.orders import DidOrderService

    async def _work(session: AsyncSession) -> Any:
        return await DidOrderService(session).expire_orders(dry_run=dry_run)

    try:
        stats = asyncio.run(_in_session(_work, commit=not dry_run))
    except Exception as exc:
        console.print(f"[red]Order expiry sweep failed: {exc}[/red]")
        raise typer.Exit(code=3) from exc

    if _json_output:
        _emit_json(stats.to_dict())
    else:
        display_expiry_stats(console, stats)
    if stats.errors:
        raise typer.Exit(code=1)


@app.command("sync-invoices")
def sync_invoices(
    limit: int | None = typer.Option(None, "--limit", min=1, help="Sync at most this many invoices."),
    dry_run: bool = typer.Option(False, "--dry-run", help="List invoices due for sync without contacting the gateway."),
) -> None:
    """Create pending invoices in the billing gateway, retrying failures with backoff."""
    from did_engine.billing import InvoiceSyncService

    client = _gateway_client()

    async def _work(session: AsyncSession) -> Any:
        try:
            return await InvoiceSyncService(session, client=client).run(limit=limit, dry_run=dry_run)
        finally:
            await client.close()

    try:
        stats = asyncio.run(_in_session(_work, commit=not dry_run))
    except Exception as exc:
        console.print(f"[red]Invoice sync failed: {exc}[/red]")
        raise typer.Exit(code=3) from exc

    if _json_output:
        _emit_json(stats.to_dict())
    else:
        display_sync_stats(console, stats)
    if stats.errors:
        raise typer.Exit(code=1)
