# Overview: Flask CLI command groups for bootstrap, pricing runs, and inventory maintenance.

# backend/materials/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables that do not exist yet and seed property definitions.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Catalog:
# - python -m flask catalog seed-properties
#   Insert the default property definitions that are missing.
#
# Discounts:
# - python -m flask discounts list [--all]
#   List discount rules (active only unless --all).
# - python -m flask discounts apply 12
#   Re-price every product matched by discount 12.
# - python -m flask discounts apply-all
#   Re-price using every active, in-effect discount (nightly job).
#
# Inventory:
# - python -m flask inventory low-stock
#   List bulk records below their reorder point with suggested order quantities.
# - python -m flask inventory reconcile [--inventory-id 5] [--repair]
#   Replay transaction history and compare with cached quantities.

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import catalog_service, discount_service, inventory_service
from .services.reorder_service import list_low_stock


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create missing tables and seed property definitions (idempotent)."""
    db.create_all()
    created = catalog_service.seed_property_definitions()
    click.echo(f"PASS Tables ready, {created} property definitions created.")


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

    click.echo("PASS Database reset complete. Run 'python -m flask system init-db' to seed.")


@click.group('catalog')
def catalog_group():
    """Catalog maintenance commands."""


@catalog_group.command('seed-properties')
@with_appcontext
def seed_properties():
    """Insert missing default property definitions."""
    created = catalog_service.seed_property_definitions()
    click.echo(f"PASS {created} property definitions created.")


@click.group('discounts')
def discounts_group():
    """Discount rule inspection and pricing runs."""


@discounts_group.command('list')
@click.option('--all', 'show_all', is_flag=True, help='Include inactive discounts')
@with_appcontext
def list_discounts(show_all):
    """List discount rules."""
    discounts = discount_service.list_discounts(is_active=None if show_all else True)
    if not discounts:
        click.echo("No discounts found.")
        return
    for d in discounts:
        selector = d.category or d.category_group or d.product_id or d.supplier_id or d.code or "-"
        status = "active" if d.is_active else "inactive"
        click.echo(
            f"[{d.id}] {d.name} type={d.discount_type} selector={selector} "
            f"pct={d.discount_percent} {status} affected={d.products_affected}"
        )


@discounts_group.command('apply')
@click.argument('discount_id', type=int)
@with_appcontext
def apply_discount(discount_id):
    """Re-price products matched by one discount."""
    try:
        result = discount_service.apply_discount(discount_id)
    except ValueError as e:
        raise click.ClickException(str(e))
    if result.status != "applied":
        raise click.ClickException(f"Discount {discount_id} not applied: {result.error}")
    click.echo(
        f"PASS Discount {discount_id}: {result.products_updated} products updated, "
        f"{result.variants_updated} variants covered."
    )


@discounts_group.command('apply-all')
@with_appcontext
def apply_all_discounts():
    """Re-price using every active discount; failures are reported, not fatal."""
    batch = discount_service.apply_all_discounts()
    for r in batch.results:
        if r.status == "applied":
            click.echo(f"  [{r.discount_id}] {r.products_updated} products, {r.variants_updated} variants")
        else:
            click.echo(f"  [{r.discount_id}] {r.status.upper()}: {r.error}")
    click.echo(
        f"PASS {batch.discounts_processed} discounts processed: "
        f"{batch.total_products_updated} products, {batch.total_variants_updated} variants."
    )


@click.group('inventory')
def inventory_group():
    """Inventory inspection and audit commands."""


@inventory_group.command('low-stock')
@with_appcontext
def low_stock():
    """List bulk records below their reorder point."""
    items = list_low_stock()
    if not items:
        click.echo("No low-stock items.")
        return
    for item in items:
        click.echo(
            f"[{item['id']}] {item['product_name']} on_hand={item['quantity_on_hand']:g} "
            f"reorder_point={item['reorder_point']:g} order={item['suggested_order_quantity']:g}"
        )


@inventory_group.command('reconcile')
@click.option('--inventory-id', type=int, default=None, help='Only this record')
@click.option('--repair', is_flag=True, help='Rewrite drifted caches from history')
@with_appcontext
def reconcile(inventory_id, repair):
    """Replay transaction history and report cache drift."""
    try:
        if inventory_id is not None:
            reports = [inventory_service.reconcile_inventory(inventory_id, repair=repair)]
        else:
            reports = inventory_service.reconcile_all_inventory(repair=repair)
    except ValueError as e:
        raise click.ClickException(str(e))

    drifted = [r for r in reports if r["drift"]]
    for r in drifted:
        action = "REPAIRED" if r["repaired"] else "DRIFT"
        click.echo(
            f"  {action} [{r['inventory_id']}] cached={r['cached']['quantity_on_hand']:g} "
            f"replayed={r['replayed']['quantity_on_hand']:g}"
        )
    click.echo(f"PASS {len(reports)} records checked, {len(drifted)} drifted.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(catalog_group)
    app.cli.add_command(discounts_group)
    app.cli.add_command(inventory_group)
