"""
Celery tasks for the scheduled billing jobs.

Each task builds a SQL-backed engine from settings, runs the async entry
point to completion with ``asyncio.run`` and returns a JSON-safe summary.
"""

import asyncio
from datetime import UTC, date, datetime
from typing import Any

import structlog

from subledger.celery_app import celery_app
from subledger.db import dispose_engine
from subledger.engine import BillingEngine

logger = structlog.get_logger(__name__)


def _get_engine() -> BillingEngine:
    return BillingEngine.from_settings()


async def _process_renewal_batch(as_of: date | None) -> dict[str, Any]:
    try:
        engine = _get_engine()
        result = await engine.run_renewal_batch(as_of=as_of)
        return result.model_dump(mode="json", exclude={"items"})
    finally:
        await dispose_engine()


async def _process_issue_detection(as_of: datetime | None) -> dict[str, Any]:
    try:
        engine = _get_engine()
        result = await engine.run_issue_detection(as_of=as_of)
        return result.model_dump(mode="json")
    finally:
        await dispose_engine()


@celery_app.task(name="subledger.renewals.run_batch")
def run_renewal_batch_task(as_of: str | None = None) -> dict[str, Any]:
    """
    Run the renewal batch for ``as_of`` (ISO date); defaults to today in UTC.
    """
    day = date.fromisoformat(as_of) if as_of else datetime.now(UTC).date()
    logger.info("Renewal batch task started", as_of=day.isoformat())
    return asyncio.run(_process_renewal_batch(day))


@celery_app.task(name="subledger.issues.detect")
def run_issue_detection_task(as_of: str | None = None) -> dict[str, Any]:
    """Run billing issue detection as of ``as_of`` (ISO datetime) or now."""
    moment = None
    if as_of:
        moment = datetime.fromisoformat(as_of)
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=UTC)
    return asyncio.run(_process_issue_detection(moment))


__all__ = [
    "run_issue_detection_task",
    "run_renewal_batch_task",
]
