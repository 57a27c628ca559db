"""API tests: status codes, error payloads and task dispatch."""

from __future__ import annotations

import uuid
from unittest.mock import MagicMock, patch

import pytest

from dr_engine.models.backup import BackupExecution, BackupType, ExecutionStatus
from dr_engine.models.dr_alert import AlertSeverity

PRIMARY = "eu-west-1"


@pytest.fixture()
def topology(dr, driver):
    for replica, lag in {"eu-central-1": 1.0, "eu-north-1": 3.0}.items():
        dr.replication.establish_link(PRIMARY, replica)
        driver.set_lag(PRIMARY, replica, lag)
    dr.replication.refresh_all(PRIMARY)
    dr.db.commit()


@pytest.fixture()
def seeded_job(dr, source, clock):
    source.upsert(1, "a", clock.now)
    job = dr.backups.schedule_job("accounts")
    dr.db.commit()
    return job


class TestServiceEndpoints:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "checks": {"db": True}}

    def test_metrics(self, client):
        client.get("/health")
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert "dr_http_requests_total" in resp.text

    def test_status_summary(self, client, topology):
        resp = client.get("/dr/status", params={"primary_region": PRIMARY})
        assert resp.status_code == 200
        body = resp.json()
        assert body["primary_region"] == PRIMARY
        assert body["active_failover"] is None
        assert {link["replica_region"] for link in body["links"]} == {"eu-central-1", "eu-north-1"}


class TestConfigurations:
    def test_create_and_update(self, client):
        resp = client.post("/dr/configurations", json={"rto_minutes": 60, "rpo_minutes": 5})
        assert resp.status_code == 201
        config_id = resp.json()["config_id"]
        assert resp.json()["replication_mode"] == "async"

        resp = client.patch(f"/dr/configurations/{config_id}", json={"auto_failover": True})
        assert resp.status_code == 200
        assert resp.json()["auto_failover"] is True
        assert resp.json()["rpo_minutes"] == 5

    def test_unknown_configuration(self, client):
        resp = client.get(f"/dr/configurations/{uuid.uuid4()}")
        assert resp.status_code == 404
        assert resp.json()["code"] == "not_found"

    def test_locked_configuration(self, client, dr, db_session, clock):
        config = dr.configs.create()
        job = dr.backups.schedule_job("accounts", config_id=config.config_id)
        db_session.add(
            BackupExecution(
                job_id=job.job_id,
                running_job_id=job.job_id,
                backup_type=BackupType.full,
                status=ExecutionStatus.running,
                started_at=clock.now,
            )
        )
        db_session.commit()

        resp = client.patch(f"/dr/configurations/{config.config_id}", json={"rpo_minutes": 5})
        assert resp.status_code == 423
        assert resp.json()["code"] == "configuration_locked"

    def test_validation_error_payload(self, client):
        resp = client.post("/dr/configurations", json={"rpo_minutes": 0})
        assert resp.status_code == 422
        assert resp.json()["code"] == "validation_error"

    def test_alerts_listing(self, client, dr):
        dr.notifier.notify(AlertSeverity.warning, "Replica lagging", title="Lag warning")
        dr.notifier.notify(AlertSeverity.critical, "Backups failing", title="Backup failures")
        dr.db.commit()

        alerts = client.get("/dr/alerts").json()
        assert {a["title"] for a in alerts} == {"Lag warning", "Backup failures"}

        critical = client.get("/dr/alerts", params={"severity": "critical"}).json()
        assert [a["title"] for a in critical] == ["Backup failures"]
        assert critical[0]["severity"] == "critical"
        assert client.get("/dr/alerts", params={"limit": 0}).status_code == 422


class TestBackupJobs:
    def test_schedule_job(self, client):
        resp = client.post("/dr/jobs", json={"name": "accounts", "schedule_cron": "0 3 * * *"})
        assert resp.status_code == 201
        assert resp.json()["schedule_cron"] == "0 3 * * *"
        assert len(client.get("/dr/jobs").json()) == 1

    def test_invalid_cron(self, client):
        resp = client.post("/dr/jobs", json={"name": "accounts", "schedule_cron": "sometimes"})
        assert resp.status_code == 400
        assert resp.json()["code"] == "configuration_error"

    def test_execute_now_queues_task(self, client, dr, seeded_job):
        with patch("dr_engine.tasks.backups.execute_backup") as mock_task:
            mock_task.delay.return_value = MagicMock(id="task-1")
            resp = client.post(f"/dr/jobs/{seeded_job.job_id}/execute", json={"backup_type": "full"})

        assert resp.status_code == 202
        body = resp.json()
        running = dr.backups.running_execution(seeded_job.job_id)
        assert body == {
            "queued": True,
            "task_id": "task-1",
            "job_id": str(seeded_job.job_id),
            "execution_id": str(running.execution_id),
        }
        mock_task.delay.assert_called_once_with(str(seeded_job.job_id), "full", str(running.execution_id))

    def test_repeated_execute_now_queues_one_task(self, client, seeded_job):
        with patch("dr_engine.tasks.backups.execute_backup") as mock_task:
            mock_task.delay.return_value = MagicMock(id="task-1")
            first = client.post(f"/dr/jobs/{seeded_job.job_id}/execute")
            second = client.post(f"/dr/jobs/{seeded_job.job_id}/execute")

        assert first.status_code == 202
        assert second.status_code == 200
        assert second.json() == {"queued": False, "execution_id": first.json()["execution_id"]}
        assert mock_task.delay.call_count == 1

    def test_execute_now_releases_claim_when_queueing_fails(self, client, dr, seeded_job):
        with patch("dr_engine.tasks.backups.execute_backup") as mock_task:
            mock_task.delay.side_effect = ConnectionError("broker down")
            resp = client.post(f"/dr/jobs/{seeded_job.job_id}/execute")

        assert resp.status_code == 500
        assert dr.backups.running_execution(seeded_job.job_id) is None
        [execution] = dr.backups.list_executions(seeded_job.job_id)
        assert execution.status == ExecutionStatus.failed
        assert "broker down" in execution.error_message

    def test_execute_now_returns_running_execution(self, client, seeded_job, db_session, clock):
        running = BackupExecution(
            job_id=seeded_job.job_id,
            running_job_id=seeded_job.job_id,
            backup_type=BackupType.full,
            status=ExecutionStatus.running,
            started_at=clock.now,
        )
        db_session.add(running)
        db_session.commit()

        with patch("dr_engine.tasks.backups.execute_backup") as mock_task:
            resp = client.post(f"/dr/jobs/{seeded_job.job_id}/execute")
        assert resp.status_code == 200
        assert resp.json() == {"queued": False, "execution_id": str(running.execution_id)}
        mock_task.delay.assert_not_called()

    def test_executions_and_statistics(self, client, dr, seeded_job):
        execution = dr.backups.execute_now(seeded_job.job_id)
        dr.db.commit()

        executions = client.get(f"/dr/jobs/{seeded_job.job_id}/executions").json()
        assert [e["execution_id"] for e in executions] == [str(execution.execution_id)]
        detail = client.get(f"/dr/jobs/executions/{execution.execution_id}").json()
        assert detail["status"] == "completed"
        assert detail["verification"] == "verified"
        stats = client.get(f"/dr/jobs/{seeded_job.job_id}/statistics")
        assert stats.status_code == 200

    def test_deactivate(self, client, seeded_job):
        resp = client.delete(f"/dr/jobs/{seeded_job.job_id}")
        assert resp.status_code == 200
        assert resp.json()["is_active"] is False
        assert client.get("/dr/jobs").json() == []


class TestTopology:
    def test_link_lifecycle(self, client, driver):
        resp = client.post("/dr/links", json={"primary_region": PRIMARY, "replica_region": "eu-central-1"})
        assert resp.status_code == 201
        link_id = resp.json()["link_id"]
        driver.set_lag(PRIMARY, "eu-central-1", 2.5)

        lag = client.get(f"/dr/links/{link_id}/lag").json()
        assert lag["lag_seconds"] == 2.5
        assert lag["health"] == "healthy"

        resp = client.delete(f"/dr/links/{link_id}")
        assert resp.json()["status"] == "inactive"

    def test_link_with_malformed_region_name_rejected(self, client, driver):
        resp = client.post(
            "/dr/links",
            json={"primary_region": PRIMARY, "replica_region": "x'; DROP TABLE accounts; --"},
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "configuration_error"
        assert driver.slots == []

    def test_switch_to_sync_rejected_when_lagging(self, client, driver):
        link_id = client.post(
            "/dr/links", json={"primary_region": PRIMARY, "replica_region": "eu-central-1"}
        ).json()["link_id"]
        driver.set_lag(PRIMARY, "eu-central-1", 10.0)

        resp = client.patch(f"/dr/links/{link_id}", json={"mode": "sync"})
        assert resp.status_code == 409
        assert resp.json()["code"] == "lag_too_high"

    def test_health_snapshot_endpoints(self, client, topology):
        resp = client.get(f"/dr/health/{PRIMARY}")
        assert resp.status_code == 404
        assert resp.json()["code"] == "http_404"

        resp = client.post(f"/dr/health/{PRIMARY}/snapshot")
        assert resp.status_code == 201
        assert resp.json()["severity"] == "healthy"

        assert client.get(f"/dr/health/{PRIMARY}").status_code == 200
        assert len(client.get(f"/dr/health/{PRIMARY}/history").json()) == 1


class TestFailover:
    def test_trigger_queues_run_and_blocks_second_request(self, client, topology):
        with patch("dr_engine.tasks.failover.run_failover") as mock_task:
            mock_task.delay.return_value = MagicMock(id="task-9")
            first = client.post("/dr/failovers", json={"source_region": PRIMARY})
            second = client.post("/dr/failovers", json={"source_region": PRIMARY})

        assert first.status_code == 202
        body = first.json()
        assert body["target_region"] == "eu-central-1"
        assert body["task_id"] == "task-9"
        mock_task.delay.assert_called_once_with(body["event_id"])

        assert second.status_code == 409
        assert second.json()["code"] == "failover_in_progress"
        assert second.json()["details"]["event_id"] == body["event_id"]

    def test_cancel_idle_event(self, client, dr, topology):
        event = dr.failover.open_event(PRIMARY, "eu-central-1")
        resp = client.post(f"/dr/failovers/{event.event_id}/cancel", json={"requested_by": "oncall"})
        assert resp.status_code == 200
        assert resp.json()["state"] == "aborted"
        assert resp.json()["cancel_requested"] is True

        again = client.post(f"/dr/failovers/{event.event_id}/cancel")
        assert again.status_code == 409
        assert again.json()["code"] == "invalid_transition"

    def test_history_and_detail(self, client, dr, topology):
        result = dr.failover.trigger(PRIMARY, "eu-central-1")
        history = client.get("/dr/failovers", params={"source_region": PRIMARY}).json()
        assert [e["event_id"] for e in history] == [str(result.event_id)]
        detail = client.get(f"/dr/failovers/{result.event_id}").json()
        assert detail["state"] == "completed"
        assert [t["sequence"] for t in detail["transitions"]] == list(range(1, 8))


class TestRecoveryTests:
    def test_schedule_and_run(self, client, dr, seeded_job):
        dr.backups.execute_now(seeded_job.job_id)
        dr.db.commit()
        resp = client.post(
            "/dr/recovery-tests",
            json={"scenario": "backup_restore", "environment": "staging", "job_id": str(seeded_job.job_id)},
        )
        assert resp.status_code == 201
        test_id = resp.json()["test_id"]
        assert resp.json()["status"] == "scheduled"

        with patch("dr_engine.tasks.recovery_tests.run_recovery_test") as mock_task:
            mock_task.delay.return_value = MagicMock(id="task-3")
            resp = client.post(f"/dr/recovery-tests/{test_id}/run")
        assert resp.status_code == 202
        assert resp.json() == {"queued": True, "task_id": "task-3", "test_id": test_id}

        dr.recovery_tests.run_test(uuid.UUID(test_id))
        dr.db.commit()
        results = client.get("/dr/recovery-tests/results").json()
        assert len(results) == 1
        assert results[0]["parent_test_id"] == test_id

    def test_production_is_rejected(self, client, seeded_job):
        resp = client.post(
            "/dr/recovery-tests",
            json={"scenario": "backup_restore", "environment": "production", "job_id": str(seeded_job.job_id)},
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "configuration_error"
