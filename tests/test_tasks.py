"""
Tests for the Celery tasks and beat schedule.
"""

from datetime import UTC, date, datetime
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import pytest

from subledger.celery_app import (
    ISSUE_DETECTION_SCHEDULE_NAME,
    RENEWAL_SCHEDULE_NAME,
    celery_app,
    setup_periodic_tasks,
)
from subledger.issues.models import IssueDetectionResult
from subledger.renewals.processor import RenewalBatchResult, RenewalItemResult
from subledger.tasks import run_issue_detection_task, run_renewal_batch_task


@pytest.fixture
def mock_engine():
    engine = MagicMock()
    engine.run_renewal_batch = AsyncMock(
        return_value=RenewalBatchResult(
            run_id="run_1",
            as_of=date(2024, 4, 1),
            started_at=datetime(2024, 4, 1, 0, 5, tzinfo=UTC),
            processed=1,
            succeeded=1,
            items=[RenewalItemResult(subscription_id="sub_1", outcome="succeeded")],
        )
    )
    engine.run_issue_detection = AsyncMock(
        return_value=IssueDetectionResult(
            as_of=datetime(2024, 3, 28, tzinfo=UTC), scanned=3, issues_opened=["issue_1"]
        )
    )
    return engine


@pytest.fixture
def patched(mock_engine):
    with (
        patch("subledger.tasks._get_engine", return_value=mock_engine),
        patch("subledger.tasks.dispose_engine", new_callable=AsyncMock) as dispose,
    ):
        yield dispose


class TestRenewalTask:
    """Test the renewal batch task."""

    def test_runs_batch_for_given_day(self, mock_engine, patched):
        summary = run_renewal_batch_task("2024-04-01")

        mock_engine.run_renewal_batch.assert_awaited_once_with(as_of=date(2024, 4, 1))
        assert summary["run_id"] == "run_1"
        assert summary["succeeded"] == 1
        assert "items" not in summary
        patched.assert_awaited_once()

    def test_defaults_to_today(self, mock_engine, patched):
        run_renewal_batch_task()

        as_of = mock_engine.run_renewal_batch.call_args.kwargs["as_of"]
        assert as_of == datetime.now(UTC).date()

    def test_engine_is_disposed_on_failure(self, mock_engine, patched):
        mock_engine.run_renewal_batch.side_effect = RuntimeError("database unavailable")

        with pytest.raises(RuntimeError, match="database unavailable"):
            run_renewal_batch_task("2024-04-01")

        patched.assert_awaited_once()


class TestIssueDetectionTask:
    """Test the issue detection task."""

    def test_naive_timestamp_is_treated_as_utc(self, mock_engine, patched):
        summary = run_issue_detection_task("2024-03-28T00:00:00")

        mock_engine.run_issue_detection.assert_awaited_once_with(
            as_of=datetime(2024, 3, 28, tzinfo=UTC)
        )
        assert summary["scanned"] == 3
        assert summary["issues_opened"] == ["issue_1"]

    def test_defaults_to_now(self, mock_engine, patched):
        run_issue_detection_task()

        mock_engine.run_issue_detection.assert_awaited_once_with(as_of=None)


class TestSchedule:
    """Test Celery configuration and beat registration."""

    def test_tasks_route_to_billing_queue(self):
        routes = celery_app.conf.task_routes

        assert routes["subledger.renewals.*"] == {"queue": "billing"}
        assert celery_app.conf.task_acks_late is True

    def test_periodic_tasks_registered(self):
        sender = Mock()

        setup_periodic_tasks(sender)

        names = [call.kwargs["name"] for call in sender.add_periodic_task.call_args_list]
        assert names == [RENEWAL_SCHEDULE_NAME, ISSUE_DETECTION_SCHEDULE_NAME]
        assert sender.add_periodic_task.call_args_list[1].args[0] == 3600.0
