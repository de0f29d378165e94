# Overview: Flask CLI command groups for bootstrap, key minting and ledger audits.

# backend/keyflow/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to keyflow (PowerShell: $env:FLASK_APP="keyflow").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init --email admin@keyflow.local --password "Password123!"
#   Create tables (if missing) and the first admin account. Idempotent.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Accounts:
# - python -m flask accounts create --role nd --creator-id 1 --name "North" --email nd@keyflow.local
#   Create an account under its creator (password generated when omitted).
# - python -m flask accounts list [--role retailer]
#   List accounts with their key counters.
#
# Keys:
# - python -m flask keys generate --admin-id 1 --count 100 [--key-length 16]
#   Mint keys into an admin's pool.
#
# Ledger:
# - python -m flask ledger reconcile [--account-id 5]
#   Compare counters with the key store and the transfer log; exits 1 on drift.

import click
from flask.cli import with_appcontext

from .extensions import db
from .errors import KeyflowError
from .models import Account
from .models.accounts import ROLE_ADMIN, ROLES
from .services import account_service
from .services import key_service
from .services import ledger_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--name', default='Administrator', help='Admin display name')
@click.option('--email', default='admin@keyflow.local', help='Admin email')
@click.option('--password', default=None, help='Admin password (generated when omitted)')
@with_appcontext
def init_system(name, email, password):
    """
    Create all tables and bootstrap the first admin account.

    SECURITY: Change the admin password immediately in production!
    """
    click.echo("START Initializing key distribution system...")
    db.create_all()

    existing = db.session.query(Account).filter_by(role=ROLE_ADMIN).first()
    if existing:
        click.echo(f"PASS Using existing admin: {existing.email} (ID: {existing.id})")
        return

    try:
        admin, generated = account_service.create_account(
            None, ROLE_ADMIN, {"name": name, "email": email}, password=password
        )
    except KeyflowError as e:
        raise click.ClickException(e.message)

    click.echo(f"PASS Created admin: {admin.email} (ID: {admin.id})")
    if generated:
        click.echo(f"     Generated password (shown once): {generated}")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()
    click.echo("BUILD  Creating all tables...")
    db.create_all()
    click.echo("DONE Database reset")


@click.group('accounts')
def accounts_group():
    """Account inspection and bootstrap."""


@accounts_group.command('create')
@click.option('--role', type=click.Choice(ROLES), required=True, help='Role of the new account')
@click.option('--creator-id', type=int, default=None, help='Creating account (omit only for admins)')
@click.option('--name', prompt=True, help='Display name')
@click.option('--email', prompt=True, help='Email address')
@click.option('--phone', default=None, help='Phone number')
@click.option('--password', default=None, help='Password (generated when omitted)')
@with_appcontext
def create_account_cli(role, creator_id, name, email, phone, password):
    """Create an account under its creator."""
    try:
        account, generated = account_service.create_account(
            creator_id, role, {"name": name, "email": email, "phone": phone}, password=password
        )
    except KeyflowError as e:
        raise click.ClickException(e.message)

    click.echo(f"PASS Created {account.role} account: {account.email} (ID: {account.id})")
    if generated:
        click.echo(f"     Generated password (shown once): {generated}")


@accounts_group.command('list')
@click.option('--role', type=click.Choice(ROLES), default=None, help='Filter by role')
@with_appcontext
def list_accounts(role):
    """List accounts with their key counters."""
    query = db.session.query(Account)
    if role:
        query = query.filter_by(role=role)
    accounts = query.order_by(Account.id).all()

    if not accounts:
        click.echo("No accounts found.")
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'ID':<5} {'Role':<9} {'Creator':<8} {'Email':<32} {'Received':>9} {'Transferred':>12} {'Balance':>8}")
    click.echo("="*100)
    for account in accounts:
        creator = account.created_by_id if account.created_by_id is not None else "-"
        click.echo(
            f"{account.id:<5} {account.role:<9} {creator!s:<8} {account.email:<32} "
            f"{account.received_keys:>9} {account.transferred_keys:>12} {account.balance:>8}"
        )
    click.echo("="*100 + "\n")


@click.group('keys')
def keys_group():
    """Key minting."""


@keys_group.command('generate')
@click.option('--admin-id', type=int, required=True, help='Admin that will own the keys')
@click.option('--count', type=int, required=True, help='Number of keys')
@click.option('--key-length', type=int, default=None, help='Token length in hex characters')
@with_appcontext
def generate_keys_cli(admin_id, count, key_length):
    """Mint keys into an admin's pool."""
    try:
        keys = key_service.generate_keys(admin_id, count, key_length)
    except KeyflowError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS Generated {len(keys)} keys for admin {admin_id}")


@click.group('ledger')
def ledger_group():
    """Ledger audits."""


@ledger_group.command('reconcile')
@click.option('--account-id', type=int, default=None, help='Only this account')
@with_appcontext
def reconcile_cli(account_id):
    """
    Compare each account's counters with its live pool and its transfer log.

    Exits with status 1 when any account has drifted.
    """
    try:
        reports = [ledger_service.reconcile_account(account_id)] if account_id else ledger_service.reconcile_all()
    except KeyflowError as e:
        raise click.ClickException(e.message)

    drifted = [r for r in reports if not r["consistent"]]
    for report in reports:
        marker = "PASS" if report["consistent"] else "FAIL"
        click.echo(
            f"{marker} account {report['account_id']} ({report['role']}): "
            f"balance={report['balance']} pool={report['live_pool']} "
            f"in={report['received_keys']}/{report['logged_in']} "
            f"out={report['transferred_keys']}/{report['logged_out']}"
        )

    click.echo(f"\n{len(reports) - len(drifted)}/{len(reports)} accounts consistent")
    if drifted:
        raise SystemExit(1)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(accounts_group)
    app.cli.add_command(keys_group)
    app.cli.add_command(ledger_group)
