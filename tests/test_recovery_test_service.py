"""Tests for scheduled recovery exercises."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select

from dr_engine.config import settings
from dr_engine.errors import ConfigurationError
from dr_engine.models.backup import BackupType
from dr_engine.models.dr_alert import AlertSeverity, DRAlert
from dr_engine.models.recovery_test import RecoveryEnvironment, RecoveryTestStatus, ScenarioType
from dr_engine.services.dr_service import SettingsEnvironmentProvider
from tests.fakes import FakeRestoreTarget

T0 = datetime(2026, 3, 1, 0, 0, tzinfo=UTC)


@pytest.fixture()
def job(dr, source, clock):
    for i in range(3):
        source.upsert(i, f"row-{i}", T0 - timedelta(hours=1))
    job = dr.backups.schedule_job("accounts")
    dr.backups.execute_now(job.job_id)
    return job


@pytest.fixture()
def drill_topology(dr, driver):
    for replica, lag in {"stg-b": 1.0, "stg-c": 2.0}.items():
        dr.replication.establish_link("stg-a", replica)
        driver.set_lag("stg-a", replica, lag)
    dr.db.commit()


class TestScheduling:
    def test_production_environment_is_rejected(self, dr, job):
        with pytest.raises(ConfigurationError):
            dr.recovery_tests.schedule_test(ScenarioType.backup_restore, "production", job_id=job.job_id)

    def test_backup_scenarios_need_a_job(self, dr):
        with pytest.raises(ConfigurationError):
            dr.recovery_tests.schedule_test(ScenarioType.point_in_time, RecoveryEnvironment.staging)

    def test_expected_targets_come_from_configuration(self, dr, job):
        dr.configs.create(rto_minutes=60, rpo_minutes=5)
        test = dr.recovery_tests.schedule_test(
            ScenarioType.backup_restore, "dr_drill", "0 4 * * 1", job_id=job.job_id
        )
        assert test.expected_rto_minutes == 60
        assert test.expected_rpo_minutes == 5
        assert test.status == RecoveryTestStatus.scheduled
        assert test.next_run_at is not None

    def test_invalid_cadence_rejected(self, dr, job):
        with pytest.raises(ConfigurationError):
            dr.recovery_tests.schedule_test(ScenarioType.backup_restore, "staging", "weekly", job_id=job.job_id)


class TestBackupRestore:
    def test_restore_verifies_and_marks_backups(self, dr, job, clock):
        clock.advance(minutes=5)
        template = dr.recovery_tests.schedule_test(ScenarioType.backup_restore, "staging", job_id=job.job_id)
        result = dr.recovery_tests.run_test(template.test_id)

        assert result.parent_test_id == template.test_id
        assert result.status == RecoveryTestStatus.passed
        assert result.data_integrity_verified is True
        assert result.actual_rpo_minutes == 5.0
        assert result.issues_found == []
        chain = dr.backups.restore_chain(job.job_id)
        assert all(e.recovery_tested for e in chain)

    def test_row_mismatch_fails_integrity(self, dr, job, db_session):
        dr.recovery_tests.environments.restore_target = FakeRestoreTarget(drop_rows=1)
        template = dr.recovery_tests.schedule_test(ScenarioType.backup_restore, "staging", job_id=job.job_id)
        result = dr.recovery_tests.run_test(template.test_id)

        assert result.passed is False
        assert result.data_integrity_verified is False
        assert result.remediation_required is True
        assert any("checksum" in issue for issue in result.issues_found)
        assert not any(e.recovery_tested for e in dr.backups.restore_chain(job.job_id))
        alerts = db_session.scalars(select(DRAlert).where(DRAlert.severity == AlertSeverity.warning)).all()
        assert len(alerts) == 1

    def test_missing_backup_is_recorded_not_raised(self, dr):
        job = dr.backups.schedule_job("empty")
        template = dr.recovery_tests.schedule_test(ScenarioType.backup_restore, "staging", job_id=job.job_id)
        result = dr.recovery_tests.run_test(template.test_id)
        assert result.status == RecoveryTestStatus.failed
        assert "no successful full backup to restore" in result.issues_found


class TestPointInTime:
    def test_recent_change_within_window_passes(self, dr, job, source, clock):
        clock.advance(minutes=55)
        source.upsert(10, "fresh", T0 + timedelta(minutes=45))
        dr.backups.execute_now(job.job_id, type_override=BackupType.incremental)
        clock.advance(minutes=5)

        template = dr.recovery_tests.schedule_test(ScenarioType.point_in_time, "staging", job_id=job.job_id)
        result = dr.recovery_tests.run_test(template.test_id)

        assert result.target_timestamp.replace(tzinfo=UTC) == T0 + timedelta(minutes=50)
        assert result.actual_rpo_minutes == 5.0
        assert result.passed is True

    def test_changes_after_target_are_not_replayed(self, dr, job, source, clock):
        clock.advance(minutes=55)
        source.upsert(10, "too-late", T0 + timedelta(minutes=52))
        dr.backups.execute_now(job.job_id, type_override=BackupType.incremental)
        clock.advance(minutes=5)

        template = dr.recovery_tests.schedule_test(ScenarioType.point_in_time, "staging", job_id=job.job_id)
        dr.recovery_tests.run_test(template.test_id)

        restored = dr.recovery_tests.environments.restore_target.restored
        assert len(restored) == 3

    def test_stale_data_fails_rpo(self, dr, job, clock):
        clock.advance(minutes=60)
        template = dr.recovery_tests.schedule_test(ScenarioType.point_in_time, "staging", job_id=job.job_id)
        result = dr.recovery_tests.run_test(template.test_id)

        assert result.actual_rpo_minutes == 110.0
        assert result.passed is False
        assert result.remediation_required is True
        assert any("RPO" in issue for issue in result.issues_found)


class TestFailoverScenario:
    def test_failover_drill_uses_environment_topology(self, dr, drill_topology):
        template = dr.recovery_tests.schedule_test(ScenarioType.failover, "dr_drill")
        result = dr.recovery_tests.run_test(template.test_id)

        assert result.passed is True
        assert result.failover_event_id is not None
        event = dr.failover.get_event(result.failover_event_id)
        assert event.environment == "dr_drill"
        assert event.source_region == "stg-a"
        assert event.completed is True

    def test_drill_without_topology_fails(self, dr):
        template = dr.recovery_tests.schedule_test(ScenarioType.failover, "dr_drill")
        result = dr.recovery_tests.run_test(template.test_id)
        assert result.status == RecoveryTestStatus.failed
        assert result.error_message


def test_full_disaster_combines_scenarios(dr, job, source, clock, drill_topology):
    clock.advance(minutes=55)
    source.upsert(10, "fresh", T0 + timedelta(minutes=48))
    dr.backups.execute_now(job.job_id, type_override=BackupType.incremental)
    clock.advance(minutes=5)

    template = dr.recovery_tests.schedule_test(ScenarioType.full_disaster, "dr_drill", job_id=job.job_id)
    result = dr.recovery_tests.run_test(template.test_id)

    assert result.data_integrity_verified is True
    assert result.failover_event_id is not None
    assert result.passed is True


def test_due_tests_run_and_failures_do_not_block_others(dr, job, clock):
    broken = dr.backups.schedule_job("never-ran")
    dr.recovery_tests.schedule_test(ScenarioType.backup_restore, "staging", "0 * * * *", job_id=broken.job_id)
    dr.recovery_tests.schedule_test(ScenarioType.backup_restore, "staging", "0 * * * *", job_id=job.job_id)
    dr.db.commit()

    clock.advance(hours=1)
    dr.backups.execute_now(job.job_id)
    results = dr.recovery_tests.run_due_tests()

    assert sorted(r.status for r in results) == [RecoveryTestStatus.failed, RecoveryTestStatus.passed]
    assert dr.recovery_tests.run_due_tests() == []
    assert len(dr.recovery_tests.list_results()) == 2


class TestDrillIsolation:
    def _bind(self, dr, driver, pair):
        provider = SettingsEnvironmentProvider(dr.db, dr.replication, driver)
        patched = settings.model_copy(
            update={"primary_region": "eu-west-1", "environment_dsns": {}, "environment_failover_pairs": {"staging": pair}}
        )
        with patch("dr_engine.services.dr_service.settings", patched):
            return provider.bind(RecoveryEnvironment.staging)

    @pytest.mark.parametrize("pair", ["eu-west-1:stg-b", "stg-a:eu-central-1"])
    def test_pair_touching_production_is_rejected(self, dr, driver, pair):
        dr.replication.establish_link("eu-west-1", "eu-central-1")
        dr.db.commit()
        with pytest.raises(ConfigurationError):
            self._bind(dr, driver, pair)

    def test_isolated_pair_is_bound(self, dr, driver):
        dr.replication.establish_link("eu-west-1", "eu-central-1")
        dr.db.commit()
        binding = self._bind(dr, driver, "stg-a:stg-b")
        assert (binding.source_region, binding.target_region) == ("stg-a", "stg-b")
        assert binding.failover is not None
