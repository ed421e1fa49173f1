# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/stockledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Use: flask --app stockledger <group> <command> [options]
#
# System bootstrap/repair:
# - flask --app stockledger system init-db
#   Create all tables that do not exist yet (use `flask db upgrade` for managed schemas).
# - flask --app stockledger system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Ledger inspection/repair:
# - flask --app stockledger ledger balance PROCESSED_GOOD 1 [--as-of 2024-05-01]
#   Reconstruct a balance from the movement stream.
# - flask --app stockledger ledger history RAW_MATERIAL 3 [--start 2024-05-01] [--end 2024-05-31]
#   Movements with running balances.
# - flask --app stockledger ledger reconcile [--item-type RAW_MATERIAL --item-id 3] [--fix]
#   Compare cached quantity_available with the ledger; --fix overwrites drifted caches.
#
# Order inspection:
# - flask --app stockledger orders lock-status [--order-id 12]
#   Lock state of one order, or of every locked order.

from decimal import Decimal

import click
from flask.cli import with_appcontext

from .exceptions import LedgerError
from .extensions import db
from .validation import to_date


def _fail(exc: LedgerError):
    raise click.ClickException(f"{exc} {exc.details}" if exc.details else str(exc))


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create missing tables."""
    from . import models  # noqa: F401

    db.create_all()
    click.echo("PASS Tables created.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA, including the append-only ledger.
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@click.group('ledger')
def ledger_group():
    """Stock ledger inspection and repair."""


@ledger_group.command('balance')
@click.argument('item_type')
@click.argument('item_id', type=int)
@click.option('--as-of', 'as_of', help='Business date (YYYY-MM-DD); omitted = all movements')
@with_appcontext
def balance_cli(item_type, item_id, as_of):
    """
    Reconstruct one item's balance.

    Example:
        flask --app stockledger ledger balance PROCESSED_GOOD 1
        flask --app stockledger ledger balance RAW_MATERIAL 3 --as-of 2024-05-01
    """
    from .services import balance_service, stock_service

    try:
        item = stock_service.get_item(item_type.upper(), item_id)
        balance = balance_service.balance_as_of(item_type.upper(), item.id, to_date(as_of, "as_of"))
    except LedgerError as e:
        _fail(e)

    click.echo(f"{item_type.upper()} {item_id} ({item.name}): {balance} {item.unit}")
    if as_of is None and balance != item.quantity_available:
        click.echo(f"WARN cached quantity_available is {item.quantity_available}; run `ledger reconcile --fix`")


@ledger_group.command('history')
@click.argument('item_type')
@click.argument('item_id', type=int)
@click.option('--start', help='First business date (inclusive)')
@click.option('--end', help='Last business date (inclusive)')
@with_appcontext
def history_cli(item_type, item_id, start, end):
    """List movements with running balances."""
    from .services import balance_service

    try:
        rows = balance_service.movement_history(
            item_type.upper(),
            item_id,
            start_date=to_date(start, "start"),
            end_date=to_date(end, "end"),
        )
    except LedgerError as e:
        _fail(e)

    if not rows:
        click.echo("No movements found.")
        return

    click.echo("\n" + "=" * 110)
    click.echo(f"{'ID':<7} {'Date':<11} {'Created':<25} {'Type':<20} {'Qty':>12} {'Before':>12} {'After':>12}")
    click.echo("=" * 110)
    for row in rows:
        click.echo(
            f"{row['id']:<7} {row['effective_date']:<11} {row['created_at']:<25} {row['movement_type']:<20} "
            f"{row['signed_quantity']:>12} {row['balance_before']:>12} {row['balance_after']:>12}"
        )
    click.echo("=" * 110 + "\n")


@ledger_group.command('reconcile')
@click.option('--item-type', help='Limit to one item (requires --item-id)')
@click.option('--item-id', type=int)
@click.option('--fix', is_flag=True, help='Overwrite drifted caches with the ledger balance')
@with_appcontext
def reconcile_cli(item_type, item_id, fix):
    """
    Recompute cached quantity_available from the ledger.

    Example:
        flask --app stockledger ledger reconcile
        flask --app stockledger ledger reconcile --fix
    """
    from .services import stock_service

    if (item_type is None) != (item_id is None):
        raise click.UsageError("--item-type and --item-id must be given together")

    try:
        if item_type:
            report = stock_service.reconcile_cached_balance(item_type.upper(), item_id, fix=fix)
            reports = [report] if Decimal(report["drift"]) != 0 else []
        else:
            reports = stock_service.reconcile_all(fix=fix)
    except LedgerError as e:
        _fail(e)

    if not reports:
        click.echo("PASS No drift between cached balances and the ledger.")
        return

    for r in reports:
        status = "FIXED" if r["fixed"] else "DRIFT"
        click.echo(
            f"{status} {r['item_type']} {r['item_id']}: cached={r['cached']} ledger={r['ledger']} drift={r['drift']}"
        )
    if not fix:
        click.echo("WARN Run again with --fix to overwrite the cached values.")


@click.group('orders')
def orders_group():
    """Order inspection commands."""


@orders_group.command('lock-status')
@click.option('--order-id', type=int, help='Show one order')
@with_appcontext
def lock_status_cli(order_id):
    """Show lock state and unlock deadline of locked orders."""
    from .services import lock_service, order_service

    try:
        if order_id is not None:
            states = [lock_service.lock_state(order_id)]
        else:
            states = [lock_service.lock_state(o.id) for o in order_service.list_orders(locked_only=True)]
    except LedgerError as e:
        _fail(e)

    if not states:
        click.echo("No locked orders.")
        return

    click.echo("\n" + "=" * 90)
    click.echo(f"{'Order':<8} {'State':<20} {'Locked at':<26} {'Unlock until':<26} {'By'}")
    click.echo("=" * 90)
    for s in states:
        click.echo(
            f"{s['order_id']:<8} {s['lock_state']:<20} {s['locked_at'] or '-':<26} "
            f"{s['can_unlock_until'] or '-':<26} {s['locked_by'] if s['locked_by'] is not None else '-'}"
        )
    click.echo("=" * 90 + "\n")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(orders_group)
