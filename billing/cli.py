"""
billing/cli.py

Flask CLI commands for billing operations.

Usage:
    flask billing expire-payments    # Expire every overdue pending payment
    flask billing plans              # Print the static plan catalog

expire-payments is safe to run from cron at any interval: reads already
expire what they touch, the sweep only catches up rows nobody reads.

Version History:
    2026-01-09: Initial implementation
"""

import click
from flask.cli import AppGroup

from billing.config import format_plan_report


billing_cli = AppGroup('billing', help='Billing maintenance commands.')


@billing_cli.command('expire-payments')
def expire_payments_command():
    """Move every overdue pending payment to expired."""
    from billing.service import billing_service

    count = billing_service.expire_stale_payments()
    click.echo(f"Expired {count} payment(s)")


@billing_cli.command('plans')
def plans_command():
    """Print the static plan catalog."""
    click.echo(format_plan_report())
