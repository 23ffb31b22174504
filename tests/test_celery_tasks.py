"""Tests for Celery background tasks."""

import pytest
from unittest.mock import MagicMock, patch

from config.settings import PollingSettings, RedisSettings
from efiling.errors import AuthorityUnavailableError, ProviderUnavailableError
from efiling.models import FilingState
from tests.helpers.filing_flow import open_declared, open_submitted


class TestCeleryApp:
    """Tests for Celery app configuration."""

    def test_create_celery_app(self):
        from tasks.celery_app import create_celery_app

        app = create_celery_app(
            redis_settings=RedisSettings(host="redis.internal", port=6380, password="secret"),
            polling_settings=PollingSettings(interval_seconds=120, batch_size=25),
        )

        assert app.main == "efiling"
        assert app.conf.broker_url == "redis://:secret@redis.internal:6380/1"
        schedule = app.conf.beat_schedule["poll-submitted-filings"]
        assert schedule["task"] == "tasks.status_polling.poll_submitted_filings"
        assert schedule["schedule"] == 120
        assert schedule["kwargs"] == {"limit": 25}

    def test_get_task_info(self):
        from tasks.celery_app import celery_app, get_task_info

        mock_result = MagicMock()
        mock_result.status = "SUCCESS"
        mock_result.ready.return_value = True
        mock_result.successful.return_value = True
        mock_result.result = {"polled": 3}

        with patch.object(celery_app, 'AsyncResult', return_value=mock_result):
            info = get_task_info("test-task-id")

        assert info == {
            "task_id": "test-task-id",
            "status": "SUCCESS",
            "ready": True,
            "result": {"polled": 3},
        }

    def test_get_task_info_pending(self):
        from tasks.celery_app import celery_app, get_task_info

        mock_result = MagicMock()
        mock_result.status = "PENDING"
        mock_result.ready.return_value = False

        with patch.object(celery_app, 'AsyncResult', return_value=mock_result):
            info = get_task_info("test-task-id")

        assert info["ready"] is False
        assert "result" not in info

    def test_get_task_info_failed(self):
        from tasks.celery_app import celery_app, get_task_info

        mock_result = MagicMock()
        mock_result.status = "FAILURE"
        mock_result.ready.return_value = True
        mock_result.successful.return_value = False
        mock_result.result = AuthorityUnavailableError("authority down")

        with patch.object(celery_app, 'AsyncResult', return_value=mock_result):
            info = get_task_info("test-task-id")

        assert info["error"] == "authority down"


class TestTaskBase:
    def test_only_transient_errors_retried(self):
        from tasks.celery_app import TaskBase

        assert TaskBase.autoretry_for == (AuthorityUnavailableError, ProviderUnavailableError)
        assert TaskBase.retry_backoff is True
        assert TaskBase.max_retries == 3


class TestStatusPollingTasks:
    """Tests for the polling tasks against a sandbox-backed workflow."""

    @pytest.fixture(autouse=True)
    def installed_workflow(self, workflow):
        from tasks import status_polling

        status_polling.set_workflow(workflow)
        yield workflow
        status_polling.set_workflow(None)

    def _run(self, coro):
        from tasks.status_polling import _run_async

        return _run_async(coro)

    def test_poll_submitted_filings(self, workflow, provider, authority, subject, spouse, liability):
        from tasks.status_polling import poll_submitted_filings

        first, record = self._run(open_submitted(workflow, provider, subject, liability))
        self._run(open_submitted(workflow, provider, spouse, liability))
        authority.set_stage(record.ack_number, "PROCESSED")

        result = poll_submitted_filings(limit=10)

        assert result == {"polled": 2}
        assert self._run(workflow.get_filing(first.filing_id)).state == FilingState.ACCEPTED

    def test_poll_respects_limit(self, workflow, provider, subject, spouse, liability):
        from tasks.status_polling import poll_submitted_filings

        self._run(open_submitted(workflow, provider, subject, liability))
        self._run(open_submitted(workflow, provider, spouse, liability))

        assert poll_submitted_filings(limit=1) == {"polled": 1}

    def test_refresh_filing_status(self, workflow, provider, authority, subject, liability):
        from tasks.status_polling import refresh_filing_status

        filing, record = self._run(open_submitted(workflow, provider, subject, liability))
        authority.advance(record.ack_number)

        result = refresh_filing_status(filing.filing_id)

        assert result == {
            "filing_id": filing.filing_id,
            "polled": True,
            "raw_stage": "E_VERIFIED",
            "mapped_stage": "validating",
            "persisted": True,
            "anomaly": None,
        }

    def test_refresh_before_submission(self, workflow, subject, liability):
        from tasks.status_polling import refresh_filing_status

        filing = self._run(open_declared(workflow, subject, liability))

        assert refresh_filing_status(filing.filing_id) == {"filing_id": filing.filing_id, "polled": False}
