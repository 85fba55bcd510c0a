# Overview: Flask CLI command groups for bootstrap, token issue and discount ledger maintenance.

# backend/shopledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init [--store "Main Store"] [--code MAIN] [--admin-email admin@shopledger.local]
#   Idempotent bootstrap: creates tables, default store, admin user and default location.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users:
# - python -m flask users create --store-id 1 --email staff@shopledger.local --role staff
# - python -m flask users issue-token --email admin@shopledger.local
#   Print a bearer token for API calls (shown once).
#
# Discounts:
# - python -m flask discounts check-usage [--store-id 1]
#   Compare each discount's current_usage cache with its usage ledger.
# - python -m flask discounts refresh-status [--store-id 1]
#   Persist scheduled/active/expired transitions that are due.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Store, User, Discount
from .services import discount_service, inventory_service, session_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--store', 'store_name', default='Main Store', help='Store name')
@click.option('--code', 'store_code', default='MAIN', help='Store code')
@click.option('--currency', default=None, help='Store currency (defaults to DEFAULT_CURRENCY)')
@click.option('--admin-email', default='admin@shopledger.local', help='Admin user email')
@with_appcontext
def init_system(store_name, store_code, currency, admin_email):
    """
    Initialize a runnable system: schema, default store, admin user, default location.

    Safe to re-run; existing rows are reused.
    """
    from flask import current_app

    click.echo("START Initializing shopledger...")
    db.create_all()

    store = db.session.query(Store).filter_by(code=store_code).first()
    if not store:
        store = Store(
            name=store_name,
            code=store_code,
            currency=currency or current_app.config.get("DEFAULT_CURRENCY", "INR"),
            is_active=True,
        )
        db.session.add(store)
        db.session.commit()
        click.echo(f"PASS Created store: {store.name} (ID: {store.id}, Code: {store.code})")
    else:
        click.echo(f"PASS Using existing store: {store.name} (ID: {store.id})")

    admin = db.session.query(User).filter_by(email=admin_email.lower()).first()
    if not admin:
        admin = User(store_id=store.id, email=admin_email.lower(), name="Administrator", role="admin")
        db.session.add(admin)
        db.session.commit()
        click.echo(f"PASS Created admin user: {admin.email}")
    else:
        click.echo(f"PASS Using existing user: {admin.email}")

    location = inventory_service.ensure_default_location(store.id)
    click.echo(f"PASS Default location: {location.name} ({location.code})")

    click.echo("DONE Run 'python -m flask users issue-token --email {}' to get an API token.".format(admin.email))


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

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


@click.group('users')
def users_group():
    """Staff user commands."""


@users_group.command('create')
@click.option('--store-id', type=int, required=True)
@click.option('--email', required=True)
@click.option('--name', default=None)
@click.option('--role', type=click.Choice(['admin', 'staff']), default='staff')
@with_appcontext
def create_user_cli(store_id, email, name, role):
    store = db.session.query(Store).filter_by(id=store_id).first()
    if not store:
        raise click.ClickException(f"Store {store_id} not found")
    if db.session.query(User).filter_by(email=email.lower()).first():
        raise click.ClickException(f"User {email} already exists")

    user = User(store_id=store.id, email=email.lower(), name=name, role=role)
    db.session.add(user)
    db.session.commit()
    click.echo(f"PASS Created {role} user {user.email} (ID: {user.id})")


@users_group.command('issue-token')
@click.option('--email', required=True, help='User email')
@with_appcontext
def issue_token_cli(email):
    """Issue a bearer token. The plaintext is printed once and never stored."""
    user = db.session.query(User).filter_by(email=email.lower()).first()
    if not user:
        raise click.ClickException(f"User {email} not found")
    try:
        session, token = session_service.create_session(user.id)
    except ValueError as exc:
        raise click.ClickException(str(exc))
    click.echo(f"PASS Token for {user.email} (expires {session.expires_at.isoformat()}Z):")
    click.echo(token)


@click.group('discounts')
def discounts_group():
    """Discount ledger maintenance."""


@discounts_group.command('check-usage')
@click.option('--store-id', type=int, default=None)
@with_appcontext
def check_usage_cli(store_id):
    """Exit non-zero if any current_usage cache disagrees with the usage ledger."""
    q = db.session.query(Discount)
    if store_id is not None:
        q = q.filter_by(store_id=store_id)

    mismatches = 0
    for discount in q.order_by(Discount.id).all():
        result = discount_service.check_usage_consistency(discount.id)
        if result["consistent"]:
            continue
        mismatches += 1
        click.echo(
            f"FAIL {result['code']} (ID {result['discount_id']}): "
            f"current_usage={result['current_usage']} ledger={result['ledger_count']}"
        )

    if mismatches:
        raise click.ClickException(f"{mismatches} discount(s) out of sync with the usage ledger")
    click.echo("PASS All discount usage counters match the ledger")


@discounts_group.command('refresh-status')
@click.option('--store-id', type=int, default=None)
@with_appcontext
def refresh_status_cli(store_id):
    changed = discount_service.refresh_statuses(store_id)
    click.echo(f"PASS {changed} discount status(es) updated")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(discounts_group)
