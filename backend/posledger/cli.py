# Overview: Flask CLI command groups for bootstrap, invoice locking and reconciliation.

# backend/posledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--admin-password "Password123"]
#   Create all tables and the default admin user (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users:
# - python -m flask users create --username clerk --password "Password123" --role STAFF
# - python -m flask users list
#
# Invoices:
# - python -m flask invoices lock-expired
#   Lock every invoice older than EDIT_LOCK_HOURS. Schedule this hourly.
#
# Reconciliation:
# - python -m flask reconcile run [--fix]
#   Recompute customer balances, invoice payment states and stock from source
#   rows; raise alerts on drift. --fix rewrites drifted cached balances.

import click
from flask.cli import with_appcontext

from .errors import PosError
from .extensions import db
from .models import User
from .permissions import ROLE_ADMIN, VALID_ROLES
from .services import reconciliation_service, sales_service
from .services.auth_service import PasswordValidationError, create_user


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--admin-username', default='admin', show_default=True, help='Username for the default admin')
@click.option('--admin-password', default='Password123', show_default=True, help='Password for the default admin')
@with_appcontext
def init_system(admin_username, admin_password):
    """
    Create the schema and a default admin user.

    SECURITY: Change the admin password immediately in production!
    """
    click.echo("START Initializing POS ledger...")
    db.create_all()
    click.echo("PASS Tables created")

    if db.session.query(User).filter_by(username=admin_username).first():
        click.echo(f"WARN  User '{admin_username}' already exists, skipping...")
        return

    try:
        create_user(admin_username, admin_password, ROLE_ADMIN)
    except PasswordValidationError as e:
        raise click.ClickException(f"Password validation failed for '{admin_username}': {e}")
    click.echo(f"PASS Created admin user: {admin_username}")
    click.echo("\nSECURITY WARNING: change the default admin password in production!")


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
    """User inspection and bootstrap commands."""


@users_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(sorted(VALID_ROLES), case_sensitive=False), default='STAFF',
              show_default=True, help='Role')
@with_appcontext
def create_user_cli(username, password, role):
    try:
        user = create_user(username, password, role)
    except PosError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Created user: {user.username} (ID: {user.id}) with role '{user.role}'")


@users_group.command('list')
@with_appcontext
def list_users():
    users = db.session.query(User).order_by(User.id.asc()).all()
    if not users:
        click.echo("No users found.")
        return
    for user in users:
        status = "active" if user.is_active else "inactive"
        click.echo(f"{user.id:>4}  {user.username:<20} {user.role:<6} {status}")


@click.group('invoices')
def invoices_group():
    """Invoice maintenance commands."""


@invoices_group.command('lock-expired')
@with_appcontext
def lock_expired_cli():
    """Lock invoices past the edit window."""
    count = sales_service.lock_expired_invoices()
    click.echo(f"PASS Locked {count} invoice(s)")


@click.group('reconcile')
def reconcile_group():
    """Balance and stock reconciliation."""


@reconcile_group.command('run')
@click.option('--fix', is_flag=True, help='Rewrite drifted cached balances')
@with_appcontext
def reconcile_run_cli(fix):
    report = reconciliation_service.run_reconciliation(fix=fix)
    click.echo(
        f"Checked {report.checked_customers} customer(s), {report.checked_sales} sale(s), "
        f"{report.checked_products} product(s)"
    )
    for finding in report.findings:
        click.echo(f"{finding['severity']:<8} {finding['type']:<24} {finding['message']}")
    if report.is_clean:
        click.echo("PASS No drift found")
    else:
        click.echo(f"WARN {len(report.findings)} finding(s), {report.alerts_created} new alert(s), {report.fixed} fixed")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(invoices_group)
    app.cli.add_command(reconcile_group)
