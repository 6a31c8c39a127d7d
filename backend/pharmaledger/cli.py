# Overview: Flask CLI command groups for bootstrap, ledger checks, lot maintenance and offline imports.

# backend/pharmaledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables that do not exist yet (use 'flask db upgrade' for migrations).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Stock ledger:
# - python -m flask stock verify-ledger [--product-id ID]
#   Replay movements and report products whose stock disagrees with the ledger.
#
# Lots:
# - python -m flask lots expire-due --actor-id system [--as-of 2024-01-31]
#   Write off every active lot that has expired.
#
# Offline sales:
# - python -m flask sync import batch.json --actor-id system
#   Reconcile a JSON file of offline sale records and print the outcome.

import json

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Product
from .services import lot_service, stock_service, sync_service
from .time_utils import parse_iso_date
from .validation import ValidationError


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create missing tables."""
    db.create_all()
    click.echo("PASS Tables created.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@click.group('stock')
def stock_group():
    """Stock ledger inspection commands."""


@stock_group.command('verify-ledger')
@click.option('--product-id', default=None, help='Check a single product')
@with_appcontext
def verify_ledger_cli(product_id):
    """Replay movements and compare with current stock."""
    if product_id:
        product_ids = [product_id]
    else:
        product_ids = [pid for (pid,) in db.session.query(Product.id).order_by(Product.name).all()]

    broken = 0
    for pid in product_ids:
        try:
            check = stock_service.verify_ledger(pid)
        except stock_service.ProductNotFoundError as e:
            raise click.ClickException(str(e))
        if check.consistent:
            continue
        broken += 1
        click.echo(
            f"FAIL {pid}: stock={check.current_stock} replayed={check.replayed_stock} "
            f"first_divergent_movement={check.first_divergent_movement_id}"
        )

    if broken:
        raise click.ClickException(f"{broken} of {len(product_ids)} products disagree with their ledger")
    click.echo(f"PASS {len(product_ids)} products consistent with their ledger.")


@click.group('lots')
def lots_group():
    """Lot maintenance commands."""


@lots_group.command('expire-due')
@click.option('--actor-id', required=True, help='Actor recorded on the write-off movements')
@click.option('--as-of', default=None, help='Reference date YYYY-MM-DD (default: today)')
@with_appcontext
def expire_due_cli(actor_id, as_of):
    """Write off every active lot expired on or before the reference date."""
    try:
        as_of_date = parse_iso_date(as_of)
    except ValueError:
        raise click.BadParameter("must be YYYY-MM-DD", param_hint="--as-of")

    result = lot_service.expire_due_lots(actor_id, as_of_date)
    for entry in result["written_off"]:
        click.echo(f"PASS lot {entry['lot_id']}: {entry['quantity']} units written off")
    for entry in result["failed"]:
        click.echo(f"FAIL lot {entry['lot_id']}: {entry['error']}")
    click.echo(f"{len(result['written_off'])} lots written off, {len(result['failed'])} failed.")


@click.group('sync')
def sync_group():
    """Offline sale synchronization commands."""


@sync_group.command('import')
@click.argument('batch_file', type=click.File('r', encoding='utf-8'))
@with_appcontext
def import_batch_cli(batch_file):
    """
    Reconcile a JSON batch of offline sale records.

    The file holds either a list of records or {"records": [...]}.
    """
    try:
        data = json.load(batch_file)
    except json.JSONDecodeError as e:
        raise click.ClickException(f"invalid JSON: {e}")

    records = data.get("records") if isinstance(data, dict) else data
    try:
        batch = sync_service.reconcile_payload(records)
    except ValidationError as e:
        raise click.ClickException(str(e))

    for detail in batch.details:
        message = f" - {detail.message}" if detail.message else ""
        click.echo(f"{detail.status.value:<9} {detail.record_id or '?'}{message}")
    click.echo(
        f"{batch.processed} processed: {batch.succeeded} synced, "
        f"{batch.conflicts} conflicts, {batch.errors} errors."
    )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(lots_group)
    app.cli.add_command(sync_group)
