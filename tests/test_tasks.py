"""Tests for the Celery task wrappers."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from dr_engine.models.failover_event import FailoverState
from dr_engine.models.recovery_test import ScenarioType
from dr_engine.tasks.backups import execute_backup, prune_expired_backups, run_scheduled_backups
from dr_engine.tasks.failover import run_failover
from dr_engine.tasks.health import capture_health_snapshot, prune_health_snapshots
from dr_engine.tasks.recovery_tests import run_recovery_test, run_scheduled_recovery_tests


@contextmanager
def _wired(module: str, db_session, dr):
    """Point a task module's session factory and service at the test fixtures."""
    with (
        patch(f"dr_engine.tasks.{module}.SessionLocal") as mock_sl,
        patch("dr_engine.services.dr_service.DisasterRecoveryService", return_value=dr),
    ):
        mock_sl.return_value.__enter__ = lambda s: db_session
        mock_sl.return_value.__exit__ = MagicMock(return_value=False)
        yield


@pytest.fixture()
def job(dr, source, clock):
    for i in range(3):
        source.upsert(i, f"row-{i}", clock.now - timedelta(hours=1))
    job = dr.backups.schedule_job("accounts")
    dr.db.commit()
    return job


class TestBackupTasks:
    def test_scheduler_tick_dispatches_due_jobs(self, dr, db_session, clock, job):
        clock.advance(hours=2)
        with _wired("backups", db_session, dr), patch("dr_engine.tasks.backups.execute_backup") as mock_task:
            result = run_scheduled_backups()
            again = run_scheduled_backups()

        assert result == {"dispatched": [str(job.job_id)], "errors": 0}
        assert again == {"dispatched": [], "errors": 0}
        mock_task.delay.assert_called_once_with(str(job.job_id))

    def test_dispatch_failure_is_counted(self, dr, db_session, clock, job):
        clock.advance(hours=2)
        with _wired("backups", db_session, dr), patch("dr_engine.tasks.backups.execute_backup") as mock_task:
            mock_task.delay.side_effect = RuntimeError("broker down")
            result = run_scheduled_backups()
        assert result == {"dispatched": [], "errors": 1}

    def test_execute_backup(self, dr, db_session, job):
        with _wired("backups", db_session, dr):
            result = execute_backup(str(job.job_id))
        assert result["backup_type"] == "full"
        assert result["status"] == "completed"

    def test_execute_backup_type_override(self, dr, db_session, job):
        with _wired("backups", db_session, dr):
            execute_backup(str(job.job_id))
            result = execute_backup(str(job.job_id), "incremental")
        assert result["backup_type"] == "incremental"

    def test_execute_backup_runs_claimed_execution_once(self, dr, db_session, job):
        execution, claimed = dr.backups.claim(job.job_id)
        assert claimed
        with _wired("backups", db_session, dr):
            result = execute_backup(str(job.job_id), None, str(execution.execution_id))
            again = execute_backup(str(job.job_id), None, str(execution.execution_id))

        assert result["execution_id"] == str(execution.execution_id)
        assert result["status"] == "completed"
        assert again == result
        assert len(dr.backups.list_executions(job.job_id)) == 1

    def test_prune(self, dr, db_session):
        with (
            _wired("backups", db_session, dr),
            patch.object(dr.backups, "prune_expired", return_value={"pruned": 2, "kept_recovery_tested": 0}) as prune,
        ):
            result = prune_expired_backups()
        assert result["pruned"] == 2
        prune.assert_called_once()


class TestHealthTasks:
    def test_capture_snapshot(self, dr, db_session, driver):
        dr.replication.establish_link("eu-west-1", "eu-central-1")
        driver.set_lag("eu-west-1", "eu-central-1", 1.0)
        dr.db.commit()
        with _wired("health", db_session, dr):
            result = capture_health_snapshot("eu-west-1")
        assert result["severity"] == "healthy"
        assert result["failover_recommended"] is False
        assert result["failover_event_id"] is None
        assert dr.health.latest("eu-west-1") is not None

    def test_prune_snapshots(self, dr, db_session):
        with _wired("health", db_session, dr), patch.object(dr.health, "prune", return_value=4):
            assert prune_health_snapshots() == 4


class TestFailoverTask:
    def test_runs_event_to_completion(self, dr, db_session, driver):
        for replica in ("eu-central-1", "eu-north-1"):
            dr.replication.establish_link("eu-west-1", replica)
            driver.set_lag("eu-west-1", replica, 1.0)
        dr.replication.refresh_all("eu-west-1")
        event = dr.failover.open_event("eu-west-1", "eu-central-1")
        with _wired("failover", db_session, dr):
            result = run_failover(str(event.event_id))
        assert result["state"] == FailoverState.completed.value
        assert result["completed"] is True
        assert result["error"] is None


class TestRecoveryTestTasks:
    def test_run_recovery_test(self, dr, db_session, job):
        dr.backups.execute_now(job.job_id)
        test = dr.recovery_tests.schedule_test(ScenarioType.backup_restore, "staging", job_id=job.job_id)
        dr.db.commit()
        with _wired("recovery_tests", db_session, dr):
            result = run_recovery_test(str(test.test_id))
        assert result["scenario"] == "backup_restore"
        assert result["passed"] is True

    def test_scheduled_tick_with_nothing_due(self, dr, db_session):
        with _wired("recovery_tests", db_session, dr):
            assert run_scheduled_recovery_tests() == {"results": []}
