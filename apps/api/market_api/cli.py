"""CLI commands for the marketplace API."""

import click

from market_api.db.seed import seed_all
from market_api.db.session import SessionLocal
from market_api.downloads.tokens import DownloadTokenService
from market_api.errors import MarketError
from market_api.ledger.client import build_ledger_client
from market_api.ledger.signer import get_signer
from market_api.settings import get_settings
from market_api.settlement.orchestrator import SettlementOrchestrator


@click.group()
def cli():
    """Marketplace API CLI."""
    pass


@cli.command()
def seed():
    """Seed demo accounts and assets."""
    click.echo("Seeding initial data...")
    db = SessionLocal()
    try:
        seed_all(db)
        click.echo("✓ Seed data created.")
    except Exception as e:
        click.echo(f"✗ Error seeding data: {e}", err=True)
        db.rollback()
        raise SystemExit(1)
    finally:
        db.close()


@cli.command()
@click.option("--limit", default=100, show_default=True, help="Maximum batches to examine.")
def reconcile(limit):
    """Re-evaluate open settlement batches against the ledger."""
    settings = get_settings()
    ledger = build_ledger_client(settings)
    db = SessionLocal()
    try:
        orchestrator = SettlementOrchestrator(db, ledger, get_signer(settings), settings=settings)
        summary = orchestrator.reconcile(limit)
        click.echo(" ".join(f"{key}={value}" for key, value in summary.items()))
    except MarketError as e:
        click.echo(f"✗ Reconciliation failed: {e}", err=True)
        raise SystemExit(1)
    finally:
        db.close()
        ledger.close()


@cli.command("cleanup-tokens")
def cleanup_tokens():
    """Deactivate expired download tokens."""
    db = SessionLocal()
    try:
        count = DownloadTokenService(db, get_settings()).cleanup_expired()
        click.echo(f"✓ Deactivated {count} expired download tokens.")
    finally:
        db.close()


if __name__ == "__main__":
    cli()
