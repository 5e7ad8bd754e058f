"""
Celery application and beat schedule for the billing jobs.

The engine has no scheduling of its own: beat triggers the renewal batch
once a day and issue detection on a fixed interval, and each task calls
the engine entry point with an explicit ``as_of``.
"""

from typing import Any

import structlog
from celery import Celery
from celery.schedules import crontab
from kombu import Queue

from subledger.settings import get_settings

settings = get_settings()

RENEWAL_SCHEDULE_NAME = "billing-run-renewal-batch"
ISSUE_DETECTION_SCHEDULE_NAME = "billing-run-issue-detection"

# Create Celery application
celery_app = Celery(
    "subledger",
    broker=settings.celery.broker_url,
    backend=settings.celery.result_backend,
    include=["subledger.tasks"],
)

# Configure Celery settings
celery_app.conf.update(
    task_routes={
        "subledger.renewals.*": {"queue": "billing"},
        "subledger.issues.*": {"queue": "billing"},
    },
    task_default_queue="default",
    task_queues=(
        Queue("default", routing_key="default"),
        Queue("billing", routing_key="billing"),
    ),
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.celery.timezone,
    enable_utc=True,
    result_expires=86400,
    task_track_started=True,
    task_time_limit=settings.celery.task_time_limit,
    task_soft_time_limit=settings.celery.task_soft_time_limit,
    # One renewal batch per worker slot; acks after completion so a lost worker re-runs it
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    worker_send_task_events=True,
    task_send_sent_event=True,
)


@celery_app.on_after_finalize.connect  # type: ignore[misc]
def setup_periodic_tasks(sender: Any, **kwargs: Any) -> None:
    """Register the daily renewal run and the periodic issue detection."""
    from subledger.tasks import run_issue_detection_task, run_renewal_batch_task

    sender.add_periodic_task(
        crontab(hour=settings.celery.renewal_hour_utc, minute=0),
        run_renewal_batch_task.s(),
        name=RENEWAL_SCHEDULE_NAME,
    )
    sender.add_periodic_task(
        settings.celery.issue_detection_interval_seconds,
        run_issue_detection_task.s(),
        name=ISSUE_DETECTION_SCHEDULE_NAME,
    )

    logger = structlog.get_logger(__name__)
    logger.info(
        "celery.worker.configured",
        broker=settings.celery.broker_url,
        queues=["default", "billing"],
        periodic_tasks=[RENEWAL_SCHEDULE_NAME, ISSUE_DETECTION_SCHEDULE_NAME],
    )


if __name__ == "__main__":
    # For running worker directly: python -m subledger.celery_app worker
    celery_app.start()
