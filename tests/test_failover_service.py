"""Tests for the failover state machine."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from dr_engine.errors import ConfigurationError, FailoverInProgressError, InvalidTransitionError
from dr_engine.models.backup import BackupExecution, BackupType, ExecutionStatus
from dr_engine.models.dr_alert import AlertSeverity, DRAlert
from dr_engine.models.failover_event import FailoverOutcome, FailoverState, TriggerType
from dr_engine.models.replication import LinkHealth, LinkStatus

PRIMARY = "eu-west-1"


@pytest.fixture()
def topology(dr, driver):
    """Primary with a close replica, a healthy fallback and a lagging far replica."""
    lags = {"eu-central-1": 2.0, "eu-north-1": 8.0, "us-east-1": 120.0}
    for replica, lag in lags.items():
        dr.replication.establish_link(PRIMARY, replica)
        driver.set_lag(PRIMARY, replica, lag)
    dr.replication.refresh_all(PRIMARY)
    dr.db.commit()
    return lags


def _states(event):
    return [t.to_state for t in event.transitions]


def _alerts(db_session, severity):
    return db_session.scalars(select(DRAlert).where(DRAlert.severity == severity)).all()


class TestHappyPath:
    def test_manual_failover_completes(self, dr, driver, router, db_session, topology):
        result = dr.failover.trigger(PRIMARY, "eu-central-1", requested_by="oncall")

        assert result.state == FailoverState.completed
        assert result.outcome == FailoverOutcome.completed
        assert result.completed is True
        event = dr.failover.get_event(result.event_id)
        assert _states(event) == [
            FailoverState.idle,
            FailoverState.safety_check,
            FailoverState.draining,
            FailoverState.promoting,
            FailoverState.rerouting,
            FailoverState.verifying,
            FailoverState.completed,
        ]
        assert [t.sequence for t in event.transitions] == list(range(1, 8))
        assert event.active_key is None
        assert router.targets == ["eu-central-1"]
        assert ("promote", "eu-central-1") in driver.calls
        assert PRIMARY in driver.blocked
        link = dr.replication.find_link(PRIMARY, "eu-central-1")
        assert link.status == LinkStatus.promoted
        assert len(_alerts(db_session, AlertSeverity.info)) == 1

    def test_default_target_is_lowest_lag_replica(self, dr, topology):
        result = dr.failover.trigger(PRIMARY)
        assert result.target_region == "eu-central-1"

    def test_drain_terminates_writes_after_grace(self, dr, driver, topology):
        driver.in_flight[PRIMARY] = [5] * 100
        result = dr.failover.trigger(PRIMARY, "eu-central-1")
        assert result.completed
        assert ("terminate_writes", PRIMARY) in driver.calls

    def test_drain_finishes_when_writes_settle(self, dr, driver, topology):
        driver.in_flight[PRIMARY] = [3, 1]
        result = dr.failover.trigger(PRIMARY, "eu-central-1")
        assert result.completed
        assert ("terminate_writes", PRIMARY) not in driver.calls


class TestSafetyCheck:
    def test_lag_exactly_at_bound_passes(self, dr, driver, topology):
        driver.set_lag(PRIMARY, "eu-central-1", 60.0)
        result = dr.failover.trigger(PRIMARY, "eu-central-1")
        assert result.state == FailoverState.completed

    def test_lag_just_over_bound_aborts(self, dr, driver, topology):
        driver.set_lag(PRIMARY, "eu-central-1", 60.000001)
        result = dr.failover.trigger(PRIMARY, "eu-central-1")

        assert result.state == FailoverState.aborted
        assert result.outcome == FailoverOutcome.aborted
        assert "safety check failed" in result.error
        assert not any(call[0] == "promote" for call in driver.calls)
        assert PRIMARY not in driver.blocked

    def test_lag_catching_up_within_timeout_passes(self, dr, driver, clock, topology):
        driver.set_lag(PRIMARY, "eu-central-1", 90.0)
        original = driver.latest_applied

        def catching_up(region):
            if clock.monotonic() > 1010:
                return clock.now
            return original(region)

        driver.latest_applied = catching_up
        result = dr.failover.trigger(PRIMARY, "eu-central-1")
        assert result.completed

    def test_no_healthy_fallback_aborts(self, dr, driver):
        dr.replication.establish_link(PRIMARY, "eu-central-1")
        driver.set_lag(PRIMARY, "eu-central-1", 1.0)
        dr.db.commit()

        result = dr.failover.trigger(PRIMARY, "eu-central-1")
        assert result.state == FailoverState.aborted
        assert "fallback" in result.error

    def test_unmeasured_unreachable_fallback_does_not_count(self, dr, driver):
        dr.replication.establish_link(PRIMARY, "eu-central-1")
        dr.replication.establish_link(PRIMARY, "us-east-1")
        driver.set_lag(PRIMARY, "eu-central-1", 1.0)
        driver.unreachable.add("us-east-1")
        dr.db.commit()

        result = dr.failover.trigger(PRIMARY, "eu-central-1")

        assert result.state == FailoverState.aborted
        assert "fallback" in result.error
        assert not any(call[0] == "promote" for call in driver.calls)
        assert dr.replication.find_link(PRIMARY, "us-east-1").health == LinkHealth.failed

    def test_override_skips_lag_and_fallback_checks(self, dr, driver):
        dr.replication.establish_link(PRIMARY, "eu-central-1")
        driver.set_lag(PRIMARY, "eu-central-1", 600.0)
        dr.db.commit()

        result = dr.failover.trigger(PRIMARY, "eu-central-1", override_safety_checks=True)
        assert result.completed

    def test_inactive_target_link_aborts_even_with_override(self, dr, topology):
        link = dr.replication.find_link(PRIMARY, "eu-central-1")
        dr.replication.retire_link(link.link_id)
        dr.db.commit()

        result = dr.failover.trigger(PRIMARY, "eu-central-1", override_safety_checks=True)
        assert result.state == FailoverState.aborted

    def test_unknown_target_is_a_configuration_error(self, dr, topology):
        with pytest.raises(ConfigurationError):
            dr.failover.trigger(PRIMARY, "ap-south-1")

    def test_source_equal_to_target_rejected(self, dr, topology):
        with pytest.raises(ConfigurationError):
            dr.failover.trigger(PRIMARY, PRIMARY)


class TestSingleActiveFailover:
    def test_second_trigger_fails_fast(self, dr, topology):
        event = dr.failover.open_event(PRIMARY, "eu-central-1")
        with pytest.raises(FailoverInProgressError) as exc:
            dr.failover.open_event(PRIMARY, "eu-north-1")
        assert exc.value.details["event_id"] == str(event.event_id)

    def test_other_environment_is_independent(self, dr, topology):
        dr.failover.open_event(PRIMARY, "eu-central-1")
        other = dr.failover.open_event(PRIMARY, "eu-north-1", environment="staging")
        assert other.state == FailoverState.idle

    def test_new_failover_allowed_after_terminal(self, dr, driver, topology):
        driver.set_lag(PRIMARY, "eu-central-1", 500.0)
        first = dr.failover.trigger(PRIMARY, "eu-central-1")
        assert first.state == FailoverState.aborted
        second = dr.failover.open_event(PRIMARY, "eu-north-1")
        assert second.event_id != first.event_id


class TestRollback:
    def test_failure_entering_promotion_aborts_and_releases(self, dr, driver, monkeypatch, topology):
        original = dr.failover._transition

        def failing_transition(event, to_state, detail=None):
            if to_state == FailoverState.promoting:
                raise OperationalError("UPDATE dr_failover_events", {}, Exception("server closed the connection"))
            return original(event, to_state, detail)

        monkeypatch.setattr(dr.failover, "_transition", failing_transition)
        result = dr.failover.trigger(PRIMARY, "eu-central-1")

        assert result.state == FailoverState.aborted
        assert result.outcome == FailoverOutcome.aborted
        event = dr.failover.get_event(result.event_id)
        assert event.active_key is None
        assert PRIMARY not in driver.blocked
        assert not any(call[0] == "promote" for call in driver.calls)
        assert dr.failover.open_event(PRIMARY, "eu-north-1").state == FailoverState.idle

    def test_promotion_failure_rolls_back(self, dr, driver, router, db_session, topology):
        driver.promote_error = RuntimeError("pg_promote timed out")
        result = dr.failover.trigger(PRIMARY, "eu-central-1")

        assert result.state == FailoverState.rolled_back
        assert result.outcome == FailoverOutcome.rolled_back
        assert result.rollback_successful is True
        assert result.completed is False
        event = dr.failover.get_event(result.event_id)
        assert _states(event)[-3:] == [FailoverState.promoting, FailoverState.rolling_back, FailoverState.rolled_back]
        assert event.rollback_attempted is True
        assert router.targets == [PRIMARY]
        assert PRIMARY not in driver.blocked
        assert "pg_promote timed out" in event.error_message

    def test_unreachable_primary_makes_rollback_fail(self, dr, driver, router, db_session, topology):
        driver.promote_error = RuntimeError("pg_promote timed out")
        router.fail_for.add(PRIMARY)
        result = dr.failover.trigger(PRIMARY, "eu-central-1")

        assert result.state == FailoverState.rolled_back
        assert result.outcome == FailoverOutcome.rollback_failed
        assert result.rollback_successful is False
        assert result.completed is False
        event = dr.failover.get_event(result.event_id)
        assert "router cannot reach pooler" in event.rollback_error
        critical = _alerts(db_session, AlertSeverity.critical)
        assert len(critical) == 1
        assert "rollback failed" in critical[0].title.lower()

    def test_failed_verification_fences_promoted_target(self, dr, driver, router, topology):
        driver.synthetic_ok = False
        result = dr.failover.trigger(PRIMARY, "eu-central-1")

        assert result.state == FailoverState.rolled_back
        assert result.rollback_successful is True
        assert ("block_writes", "eu-central-1") in driver.calls
        assert router.targets == ["eu-central-1", PRIMARY]


class TestCancel:
    def test_cancel_idle_event_aborts_immediately(self, dr, topology):
        event = dr.failover.open_event(PRIMARY, "eu-central-1")
        dr.failover.cancel(event.event_id, "oncall")
        assert event.state == FailoverState.aborted
        assert event.active_key is None
        assert event.cancelled_by == "oncall"

    def test_cancel_during_drain_releases_writes(self, dr, driver, topology):
        event = dr.failover.open_event(PRIMARY, "eu-central-1")
        original = driver.in_flight_writes

        def cancel_while_draining(region):
            event.cancel_requested = True
            event.cancelled_by = "oncall"
            dr.db.commit()
            return 1 + original(region)

        driver.in_flight_writes = cancel_while_draining
        result = dr.failover.run(event.event_id)

        assert result.state == FailoverState.aborted
        assert "cancelled by oncall" in result.error
        assert PRIMARY not in driver.blocked
        assert not any(call[0] == "promote" for call in driver.calls)

    def test_cannot_cancel_after_promotion(self, dr, topology):
        event = dr.failover.open_event(PRIMARY, "eu-central-1")
        event.state = FailoverState.rerouting
        dr.db.commit()
        with pytest.raises(InvalidTransitionError):
            dr.failover.cancel(event.event_id)

    def test_cannot_cancel_terminal_event(self, dr, topology):
        result = dr.failover.trigger(PRIMARY, "eu-central-1")
        with pytest.raises(InvalidTransitionError):
            dr.failover.cancel(result.event_id)


class TestAutomaticFailover:
    def _degrade(self, dr, driver, db_session, clock):
        driver.usage = {"cpu": 95.0, "memory": 50.0, "disk": 50.0}
        job = dr.backups.schedule_job("nightly")
        for i in range(3):
            db_session.add(
                BackupExecution(
                    job_id=job.job_id,
                    backup_type=BackupType.full,
                    status=ExecutionStatus.failed,
                    started_at=clock.now - timedelta(hours=i + 1),
                )
            )
        db_session.commit()

    def test_recommended_snapshot_triggers_failover(self, dr, driver, db_session, clock, topology):
        dr.configs.create(auto_failover=True, approval_required=False)
        self._degrade(dr, driver, db_session, clock)

        snap, result = dr.monitor(PRIMARY)

        assert snap.failover_recommended is True
        assert result is not None
        assert result.state == FailoverState.completed
        assert result.target_region == "eu-central-1"
        event = dr.failover.get_event(result.event_id)
        assert event.trigger_type == TriggerType.automatic
        assert event.snapshot_id == snap.snapshot_id

    def test_approval_required_only_notifies(self, dr, driver, db_session, clock, topology):
        dr.configs.create(auto_failover=True, approval_required=True)
        self._degrade(dr, driver, db_session, clock)

        snap, result = dr.monitor(PRIMARY)

        assert snap.failover_recommended is True
        assert result is None
        assert dr.failover.history(PRIMARY) == []
        warnings = _alerts(db_session, AlertSeverity.warning)
        assert any("approval" in a.title.lower() for a in warnings)

    def test_disabled_auto_failover_does_nothing(self, dr, driver, db_session, clock, topology):
        dr.configs.create(auto_failover=False)
        self._degrade(dr, driver, db_session, clock)

        _, result = dr.monitor(PRIMARY)
        assert result is None
        assert dr.failover.history(PRIMARY) == []

    def test_healthy_snapshot_is_ignored(self, dr, topology):
        dr.configs.create(auto_failover=True, approval_required=False)
        snap, result = dr.monitor(PRIMARY)
        assert snap.failover_recommended is False
        assert result is None
