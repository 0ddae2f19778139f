# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/retail/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--manager-username admin --manager-password "Password123!"]
#   Idempotent bootstrap: creates tables, the default branch and (optionally) the first manager.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Staff inspection/bootstrap:
# - python -m flask staff list
#   List all staff with roles and active status.
# - python -m flask staff create --name "Ada" --username ada --password "Password123!" --role cashier
#   Create a staff account (prompts if options are omitted).
#
# Branch management:
# - python -m flask branches list
# - python -m flask branches create --name "Harbour Street" --address "12 Harbour St"
#
# Stock:
# - python -m flask stock low [--threshold 5]
#   List products at or below the low-stock threshold.

import click
from flask import current_app
from flask.cli import with_appcontext

from .errors import RetailError
from .extensions import db
from .models import Staff
from .models.organization import ROLE_MANAGER, STAFF_ROLES
from .services import auth_service, branch_service
from .services.stock_service import low_stock_products


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--manager-name', default='Store Manager', help='Display name for the first manager')
@click.option('--manager-username', default=None, help='Create the first manager with this username')
@click.option('--manager-password', default=None, help='Password for the first manager')
@with_appcontext
def init_system(manager_name, manager_username, manager_password):
    """
    Initialize the store: tables, default branch and (optionally) the first manager.

    Safe to run repeatedly; existing rows are left alone. The first manager is
    only created while no staff exist.
    """
    click.echo("START Initializing retail backend...")

    db.create_all()

    branch = branch_service.ensure_default_branch(db.session)
    click.echo(f"PASS Default branch: {branch.name} (ID: {branch.id})")

    if manager_username:
        if auth_service.staff_count(db.session) > 0:
            click.echo("SKIP Staff already configured; not creating a manager")
        else:
            try:
                staff = auth_service.create_staff(
                    db.session,
                    name=manager_name,
                    username=manager_username,
                    password=manager_password or "",
                    rounds=current_app.config["BCRYPT_ROUNDS"],
                )
            except RetailError as e:
                db.session.rollback()
                raise click.ClickException(e.message)
            click.echo(f"PASS Created manager: {staff.username} (ID: {staff.id})")

    click.echo("DONE Initialization complete.")


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


# =============================================================================
# STAFF
# =============================================================================

@click.group('staff')
def staff_group():
    """Staff account commands."""


@staff_group.command('list')
@with_appcontext
def list_staff():
    """List all staff with their roles."""
    staff = auth_service.list_staff(db.session)
    if not staff:
        click.echo("No staff found.")
        return

    click.echo("\n" + "=" * 72)
    click.echo(f"{'ID':<5} {'Username':<20} {'Name':<25} {'Role':<10} {'Active'}")
    click.echo("=" * 72)
    for s in staff:
        active_str = "Yes" if s.is_active else "No"
        click.echo(f"{s.id:<5} {s.username:<20} {s.name:<25} {s.role:<10} {active_str}")
    click.echo("=" * 72 + "\n")


@staff_group.command('create')
@click.option('--name', prompt=True)
@click.option('--username', prompt=True)
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True)
@click.option('--role', type=click.Choice(STAFF_ROLES), default='cashier', show_default=True)
@with_appcontext
def create_staff(name, username, password, role):
    """Create a staff account. The very first account is always a manager."""
    if auth_service.staff_count(db.session) == 0:
        actor = None
    else:
        # Run as the first active manager so the audit trail names someone
        actor = (
            db.session.query(Staff)
            .filter(Staff.role == ROLE_MANAGER, Staff.is_active.is_(True))
            .order_by(Staff.id.asc())
            .first()
        )
        if actor is None:
            raise click.ClickException("No active manager exists to authorize new staff")

    try:
        staff = auth_service.create_staff(
            db.session,
            name=name,
            username=username,
            password=password,
            role=role,
            actor=actor,
            rounds=current_app.config["BCRYPT_ROUNDS"],
        )
    except RetailError as e:
        db.session.rollback()
        raise click.ClickException(e.message)
    click.echo(f"PASS Created {staff.role}: {staff.username} (ID: {staff.id})")


# =============================================================================
# BRANCHES
# =============================================================================

@click.group('branches')
def branches_group():
    """Branch commands."""


@branches_group.command('list')
@with_appcontext
def list_branches():
    branches = branch_service.list_branches(db.session)
    if not branches:
        click.echo("No branches found.")
        return
    for b in branches:
        click.echo(f"{b.id:<5} {b.name:<30} {b.address or ''}")


@branches_group.command('create')
@click.option('--name', prompt=True)
@click.option('--address', default=None)
@with_appcontext
def create_branch(name, address):
    try:
        branch = branch_service.create_branch(db.session, name=name, address=address)
    except RetailError as e:
        db.session.rollback()
        raise click.ClickException(e.message)
    click.echo(f"PASS Created branch: {branch.name} (ID: {branch.id})")


# =============================================================================
# STOCK
# =============================================================================

@click.group('stock')
def stock_group():
    """Stock inspection commands."""


@stock_group.command('low')
@click.option('--threshold', type=float, default=None, help='Defaults to LOW_STOCK_THRESHOLD')
@with_appcontext
def low_stock(threshold):
    """List products at or below the threshold."""
    if threshold is None:
        threshold = current_app.config["LOW_STOCK_THRESHOLD"]
    products = low_stock_products(db.session, threshold)
    if not products:
        click.echo(f"No products at or below {threshold:g}.")
        return
    for p in products:
        click.echo(f"{p.id:<5} {p.name:<40} {float(p.stock):>10.3f}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(staff_group)
    app.cli.add_command(branches_group)
    app.cli.add_command(stock_group)
