# Overview: Flask CLI command groups for schema maintenance and summary rebuilds.

# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wholesale_erp (PowerShell: $env:FLASK_APP="wholesale_erp").
# - Use: python -m flask <group> <command> [options]
#
# System:
# - python -m flask system init-db
#   Create any missing tables (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Sales summaries:
# - python -m flask summaries rebuild
#   Rebuild every daily/monthly/yearly summary from the sales table.
# - python -m flask summaries rebuild --date 2026-03-15
#   Rebuild only the day, month and year containing the date.

from datetime import date

import click
from flask.cli import with_appcontext

from .extensions import db
from .services import reporting_service
from .services.concurrency import commit_session


@click.group('system')
def system_group():
    """Schema maintenance commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("OK  Tables created")


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

    click.echo("OK  Database reset")


@click.group('summaries')
def summaries_group():
    """Sales summary maintenance."""


@summaries_group.command('rebuild')
@click.option('--date', 'day', default=None, help='Only rebuild the periods containing this date (YYYY-MM-DD)')
@with_appcontext
def rebuild(day):
    """Rebuild sales summaries from the sales table."""
    if day:
        try:
            target = date.fromisoformat(day)
        except ValueError as exc:
            raise click.BadParameter("expected YYYY-MM-DD", param_hint="--date") from exc
        rows = reporting_service.rebuild_summaries_for_date(target)
        commit_session()
        click.echo(f"OK  Rebuilt {len(rows)} summaries for {target.isoformat()}")
        return

    written = reporting_service.rebuild_all_summaries()
    commit_session()
    click.echo(f"OK  Rebuilt {written} summaries")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(summaries_group)
