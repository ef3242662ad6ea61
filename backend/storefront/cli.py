# Overview: Flask CLI command groups for bootstrap, stock, referral partners and admin keys.

# backend/storefront/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to "storefront:create_app".
# - Use: python -m flask <group> <command> [options]
#
# Store bootstrap/repair:
# - python -m flask store init-db
#   Create any missing tables (idempotent).
# - python -m flask store reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask store purge-rate-limits
#   Delete expired rate limit buckets (RATE_LIMIT_STORAGE=database).
#
# Inventory:
# - python -m flask inventory list [--product-id bpc-157]
# - python -m flask inventory set-stock bpc-157 "5mg" 40
#
# Referral partners:
# - python -m flask referrals list
# - python -m flask referrals create-partner --name "Jane Fit" --commission-bps 1000
# - python -m flask referrals create-code --partner-id 1 --code JANE20 --discount-type percent --discount-value 2000
# - python -m flask referrals deactivate-code JANE20
#
# Admin:
# - python -m flask admin hash-key
#   Prompt for an admin API key and print its bcrypt hash for ADMIN_API_KEY_HASH.

import click
from flask import current_app
from flask.cli import with_appcontext

from .decorators import hash_admin_key
from .extensions import db
from .services import inventory_service, referral_service
from .services.rate_limit_service import DatabaseBucketStore
from .time_utils import epoch_ms, utcnow
from .validation import ConflictError, ValidationError


@click.group('store')
def store_group():
    """Database bootstrap and repair commands."""


@store_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables created.")


@store_group.command('reset-db')
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


@store_group.command('purge-rate-limits')
@with_appcontext
def purge_rate_limits():
    """Delete rate limit buckets whose window has ended."""
    limiter = current_app.extensions["storefront.order_rate_limiter"]
    if isinstance(limiter.store, DatabaseBucketStore):
        deleted = limiter.purge_expired()
    else:
        # Memory store lives in the web process, not this one; clean the table anyway
        deleted = DatabaseBucketStore().purge_expired(epoch_ms(utcnow()))
    click.echo(f"Deleted {deleted} expired rate limit buckets.")


@click.group('inventory')
def inventory_group():
    """Stock inspection and overrides."""


@inventory_group.command('list')
@click.option('--product-id', default=None, help='Filter by product id')
@with_appcontext
def list_inventory(product_id):
    rows = inventory_service.list_inventory(product_id)
    if not rows:
        click.echo("No inventory records.")
        return
    for row in rows:
        click.echo(f"{row.product_id:<30} {row.variant_label:<20} {row.stock_units:>6}")


@inventory_group.command('set-stock')
@click.argument('product_id')
@click.argument('variant_label')
@click.argument('stock_units', type=int)
@with_appcontext
def set_stock(product_id, variant_label, stock_units):
    """Overwrite stock for one variant (negative values clamp to 0)."""
    row = inventory_service.set_stock(product_id, variant_label, stock_units)
    click.echo(f"PASS {row.product_id} ({row.variant_label}) stock is now {row.stock_units}")


@click.group('referrals')
def referrals_group():
    """Referral partner and code management."""


@referrals_group.command('list')
@with_appcontext
def list_partners():
    partners = referral_service.list_partners()
    if not partners:
        click.echo("No referral partners.")
        return
    for partner in partners:
        status = "active" if partner.active else "inactive"
        click.echo(f"[{partner.id}] {partner.name} ({status}, commission {partner.commission_bps / 100:.2f}%)")
        for code in partner.codes:
            cap = code.max_total_redemptions if code.max_total_redemptions is not None else "unlimited"
            click.echo(
                f"    {code.code:<20} {code.discount_type:<8} {code.discount_value:>6} "
                f"redeemed {code.current_redemptions}/{cap} {'active' if code.active else 'inactive'}"
            )


@referrals_group.command('create-partner')
@click.option('--name', prompt=True)
@click.option('--contact-email', default=None)
@click.option('--commission-bps', type=int, default=0, show_default=True)
@click.option('--default-discount-type', type=click.Choice(['percent', 'fixed']), default='percent', show_default=True)
@click.option('--default-discount-value', type=int, default=0, show_default=True)
@with_appcontext
def create_partner(name, contact_email, commission_bps, default_discount_type, default_discount_value):
    try:
        partner = referral_service.create_partner({
            "name": name,
            "contact_email": contact_email,
            "commission_bps": commission_bps,
            "default_discount_type": default_discount_type,
            "default_discount_value": default_discount_value,
        })
    except (ValidationError, ConflictError) as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Created partner {partner.name} (ID: {partner.id})")


@referrals_group.command('create-code')
@click.option('--partner-id', type=int, required=True)
@click.option('--code', required=True)
@click.option('--discount-type', type=click.Choice(['percent', 'fixed']), default=None)
@click.option('--discount-value', type=int, default=None, help='Basis points for percent, cents for fixed')
@click.option('--max-redemptions', type=int, default=None)
@click.option('--min-subtotal-cents', type=int, default=None)
@click.option('--expires-at', default=None, help='ISO-8601 datetime')
@with_appcontext
def create_code(partner_id, code, discount_type, discount_value, max_redemptions, min_subtotal_cents, expires_at):
    try:
        created = referral_service.create_code({
            "partner_id": partner_id,
            "code": code,
            "discount_type": discount_type,
            "discount_value": discount_value,
            "max_total_redemptions": max_redemptions,
            "min_order_subtotal_cents": min_subtotal_cents,
            "expires_at": expires_at,
        })
    except (ValidationError, ConflictError, referral_service.ReferralError) as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Created code {created.code} (ID: {created.id})")


@referrals_group.command('deactivate-code')
@click.argument('code')
@with_appcontext
def deactivate_code(code):
    record = referral_service.get_code(code)
    if record is None:
        raise click.ClickException(f"Referral code not found: {code}")
    referral_service.set_code_active(record.id, False)
    click.echo(f"PASS Deactivated {record.code}")


@click.group('admin')
def admin_group():
    """Admin API key utilities."""


@admin_group.command('hash-key')
@click.option('--key', prompt=True, hide_input=True, confirmation_prompt=True)
def hash_key(key):
    """Print a bcrypt hash for ADMIN_API_KEY_HASH."""
    if len(key) < 16:
        raise click.ClickException("Admin keys must be at least 16 characters.")
    click.echo(hash_admin_key(key))


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(store_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(referrals_group)
    app.cli.add_command(admin_group)
