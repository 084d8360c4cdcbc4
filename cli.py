"""CLI commands for the scheduled subscription sweeps.

Registered on the Flask CLI (``flask subscriptions ...``) and runnable
standalone through ``marketplace_cli.py`` for system cron.
"""

from __future__ import annotations

import json
import sys
from contextlib import nullcontext
from typing import Optional

import click
from flask import has_app_context
from flask.cli import ScriptInfo

from utils import parse_datetime


def get_app_context():
    """Reuse the active application context, or build one."""
    if has_app_context():
        return nullcontext()
    info = click.get_current_context().find_object(ScriptInfo)
    if info is not None:
        return info.load_app().app_context()
    from app import create_app
    return create_app().app_context()


def _parse_now(value: Optional[str]):
    if not value:
        return None
    now = parse_datetime(value)
    if now is None:
        raise click.BadParameter(f"Not an ISO-8601 datetime: {value}", param_hint="--now")
    return now


def _echo_result(label: str, result, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(result.to_dict(), default=str, indent=2))
        return
    click.echo(f"{label}: {result.processed} processed, {result.failed} failed")
    for row in result.results:
        if row.get("status") == "failed":
            click.echo(f"  subscription {row['subscription_id']}: {row['error']}", err=True)


# ---------------------------------------------------------------------------
# Click CLI Group
# ---------------------------------------------------------------------------

@click.group()
def subscriptions():
    """Subscription sweeps and plan information."""
    pass


@subscriptions.command("downgrade-expired")
@click.option("--now", "now_raw", help="Run as of this ISO-8601 time (default: current time)")
@click.option("--json", "as_json", is_flag=True, help="Print the full result as JSON")
def downgrade_expired(now_raw: Optional[str], as_json: bool):
    """Downgrade paid plans whose expiry date has passed (run daily)."""
    now = _parse_now(now_raw)
    with get_app_context():
        from services.subscriptions import downgrade_expired_subscriptions

        try:
            result = downgrade_expired_subscriptions(now=now)
        except Exception as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        _echo_result("Expiry sweep", result, as_json)


@subscriptions.command("reset-monthly")
@click.option("--now", "now_raw", help="Run as of this ISO-8601 time (default: current time)")
@click.option("--json", "as_json", is_flag=True, help="Print the full result as JSON")
def reset_monthly(now_raw: Optional[str], as_json: bool):
    """Reset monthly booking counters (run on the 1st of each month)."""
    now = _parse_now(now_raw)
    with get_app_context():
        from services.subscriptions import reset_monthly_booking_limits

        try:
            result = reset_monthly_booking_limits(now=now)
        except Exception as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        _echo_result("Monthly reset", result, as_json)


@subscriptions.command()
def plans():
    """Show the plan limits table."""
    with get_app_context():
        from services.entitlements import list_plans

        def fmt(value: int) -> str:
            return "unlimited" if value == -1 else str(value)

        click.echo(f"{'Tier':<8} {'Name':<10} {'Price':>8} {'Services':>10} {'Categories':>11} {'Bookings':>10}")
        for plan in list_plans():
            limits = plan["limits"]
            click.echo(
                f"{plan['tier']:<8} {plan['name']:<10} {plan['price_monthly']:>8} "
                f"{fmt(limits['max_active_services']):>10} {fmt(limits['max_categories']):>11} "
                f"{fmt(limits['max_bookings_per_month']):>10}"
            )


def register_cli(app) -> None:
    app.cli.add_command(subscriptions)
