#!/usr/bin/env python
"""
CLI management commands for the billing engine.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import click

from subledger.catalog.service import PlanCatalog
from subledger.db import create_all_tables_async, dispose_engine
from subledger.engine import BillingEngine
from subledger.money import format_minor_units
from subledger.telemetry import configure_structlog


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    engine_factory: Callable[[], BillingEngine]
    create_tables: Callable[[], Awaitable[None]]
    dispose: Callable[[], Awaitable[None]]


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    return CLIDependencies(
        engine_factory=BillingEngine.from_settings,
        create_tables=create_all_tables_async,
        dispose=dispose_engine,
    )


def _echo_json(data: dict[str, Any]) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _parse_instant(value: str | None) -> datetime | None:
    if value is None:
        return None
    moment = datetime.fromisoformat(value)
    return moment if moment.tzinfo else moment.replace(tzinfo=UTC)


@click.group()
def cli() -> None:
    """Subscription billing engine CLI."""
    configure_structlog()


@cli.command()
def init_db() -> None:
    """Create the billing tables."""
    deps = _get_cli_dependencies()

    async def _init() -> None:
        try:
            await deps.create_tables()
        finally:
            await deps.dispose()

    click.echo("Creating billing tables...")
    asyncio.run(_init())
    click.echo("Database initialized successfully!")


@cli.command()
@click.option("--include-inactive", is_flag=True, help="Also list retired plans")
def list_plans(include_inactive: bool) -> None:
    """List published plans and their prices."""
    for plan in PlanCatalog().list_plans(active_only=not include_inactive):
        prices = ", ".join(
            f"{p.billing_cycle.value} {format_minor_units(p.amount, p.currency)}"
            for p in plan.pricing
        )
        click.echo(f"{plan.plan_id:20} {plan.tier.value:12} {prices}")


@cli.command()
@click.option(
    "--as-of",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="Billing day (YYYY-MM-DD); defaults to today in UTC",
)
def run_renewals(as_of: datetime | None) -> None:
    """Run the renewal batch for one billing day."""
    deps = _get_cli_dependencies()

    async def _run() -> dict[str, Any]:
        try:
            engine = deps.engine_factory()
            result = await engine.run_renewal_batch(as_of=as_of.date() if as_of else None)
            return result.model_dump(mode="json", exclude={"items"})
        finally:
            await deps.dispose()

    _echo_json(asyncio.run(_run()))


@cli.command()
@click.option("--as-of", default=None, help="ISO timestamp; defaults to now")
def detect_issues(as_of: str | None) -> None:
    """Scan for expiring payment methods and due payment retries."""
    deps = _get_cli_dependencies()

    async def _run() -> dict[str, Any]:
        try:
            engine = deps.engine_factory()
            result = await engine.run_issue_detection(as_of=_parse_instant(as_of))
            return result.model_dump(mode="json")
        finally:
            await deps.dispose()

    _echo_json(asyncio.run(_run()))


@cli.command()
def analytics() -> None:
    """Print headline revenue and churn figures."""
    deps = _get_cli_dependencies()

    async def _run() -> dict[str, Any]:
        try:
            engine = deps.engine_factory()
            report = await engine.get_analytics()
            return {
                "total_subscriptions": report.total_subscriptions,
                "active_subscriptions": report.active_subscriptions,
                "mrr": format_minor_units(report.monthly_recurring_revenue),
                "arr": format_minor_units(report.annual_recurring_revenue),
                "churn_rate": report.churn_rate,
            }
        finally:
            await deps.dispose()

    _echo_json(asyncio.run(_run()))


if __name__ == "__main__":
    cli()
