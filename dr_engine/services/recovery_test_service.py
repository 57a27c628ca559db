"""
Recovery Test Service — scheduled DR exercises against non-production environments.

A scheduled test is a template row carrying the cadence; every run creates a
result row linked to it and finalizes that row once. A run passes when the
measured RTO and RPO are within the configured targets and the restored data
matches what was backed up.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from dr_engine.errors import ConfigurationError, DREngineError, NotFoundError
from dr_engine.metrics import RECOVERY_TEST_RESULTS
from dr_engine.models.backup import BackupExecution
from dr_engine.models.dr_alert import AlertSeverity
from dr_engine.models.dr_configuration import DRConfiguration
from dr_engine.models.failover_event import TriggerType
from dr_engine.models.recovery_test import RecoveryEnvironment, RecoveryTest, RecoveryTestStatus, ScenarioType
from dr_engine.services.backup_service import BackupService
from dr_engine.services.common import as_utc, next_cron_time, utcnow, validate_cron
from dr_engine.services.data_source import RestoreTarget, dataset_checksum, merge_artifacts
from dr_engine.services.failover_service import FailoverService
from dr_engine.services.notification_service import Notifier

logger = logging.getLogger(__name__)

POINT_IN_TIME_OFFSET = timedelta(minutes=10)
BACKUP_SCENARIOS = frozenset({ScenarioType.backup_restore, ScenarioType.point_in_time, ScenarioType.full_disaster})


@dataclass
class EnvironmentBinding:
    """Collaborators of one non-production environment."""

    restore_target: RestoreTarget | None = None
    failover: FailoverService | None = None
    source_region: str | None = None
    target_region: str | None = None


class EnvironmentProvider(Protocol):
    def bind(self, environment: RecoveryEnvironment) -> EnvironmentBinding: ...


@dataclass
class Measurement:
    rto_minutes: float | None = None
    rpo_minutes: float | None = None
    integrity: bool = False
    issues: list[str] = field(default_factory=list)
    used: list[BackupExecution] = field(default_factory=list)
    failover_event_id: UUID | None = None


def parse_environment(value: RecoveryEnvironment | str) -> RecoveryEnvironment:
    if isinstance(value, RecoveryEnvironment):
        return value
    try:
        return RecoveryEnvironment(value)
    except ValueError:
        raise ConfigurationError(
            f"Recovery tests run only in non-production environments, not {value!r}",
            {"allowed": [e.value for e in RecoveryEnvironment]},
        ) from None


class RecoveryTestService:
    def __init__(
        self,
        db: Session,
        backups: BackupService,
        environments: EnvironmentProvider,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.db = db
        self.backups = backups
        self.environments = environments
        self.notifier = notifier
        self.clock = clock
        self.monotonic = monotonic

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule_test(
        self,
        scenario: ScenarioType,
        environment: RecoveryEnvironment | str,
        cadence_cron: str | None = None,
        *,
        job_id: UUID | None = None,
        config_id: UUID | None = None,
        target_timestamp: datetime | None = None,
    ) -> RecoveryTest:
        env = parse_environment(environment)
        cadence = validate_cron(cadence_cron) if cadence_cron else None
        if scenario in BACKUP_SCENARIOS and job_id is None:
            raise ConfigurationError(f"{scenario.value} tests need a backup job")
        if job_id is not None:
            self.backups.get_job(job_id)

        config = self._config(config_id)
        now = self.clock()
        test = RecoveryTest(
            scenario=scenario,
            environment=env,
            cadence_cron=cadence,
            next_run_at=next_cron_time(cadence, now) if cadence else None,
            status=RecoveryTestStatus.scheduled,
            job_id=job_id,
            config_id=config.config_id if config else None,
            target_timestamp=target_timestamp,
            expected_rto_minutes=float(config.rto_minutes if config else 240),
            expected_rpo_minutes=float(config.rpo_minutes if config else 15),
            issues_found=[],
        )
        self.db.add(test)
        self.db.flush()
        logger.info("Scheduled %s recovery test in %s (%s)", scenario.value, env.value, cadence or "ad hoc")
        return test

    def _config(self, config_id: UUID | None) -> DRConfiguration | None:
        if config_id is not None:
            config = self.db.get(DRConfiguration, config_id)
            if not config:
                raise NotFoundError("DR configuration not found", {"config_id": str(config_id)})
            return config
        from dr_engine.services.dr_config_service import DRConfigService

        return DRConfigService(self.db).effective()

    def get_test(self, test_id: UUID) -> RecoveryTest:
        test = self.db.get(RecoveryTest, test_id)
        if not test:
            raise NotFoundError("Recovery test not found", {"test_id": str(test_id)})
        return test

    def list_scheduled(self) -> list[RecoveryTest]:
        stmt = select(RecoveryTest).where(RecoveryTest.parent_test_id.is_(None)).order_by(RecoveryTest.created_at)
        return list(self.db.scalars(stmt).all())

    def list_results(self, scenario: ScenarioType | None = None, limit: int = 100) -> list[RecoveryTest]:
        stmt = (
            select(RecoveryTest)
            .where(RecoveryTest.parent_test_id.is_not(None))
            .order_by(RecoveryTest.started_at.desc())
            .limit(limit)
        )
        if scenario is not None:
            stmt = stmt.where(RecoveryTest.scenario == scenario)
        return list(self.db.scalars(stmt).all())

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def run_due_tests(self, now: datetime | None = None) -> list[RecoveryTest]:
        now = now or self.clock()
        stmt = select(RecoveryTest).where(
            RecoveryTest.parent_test_id.is_(None),
            RecoveryTest.cadence_cron.is_not(None),
            RecoveryTest.next_run_at.is_not(None),
            RecoveryTest.next_run_at <= now,
        )
        due = list(self.db.scalars(stmt).all())
        for template in due:
            template.next_run_at = next_cron_time(template.cadence_cron, now)
        self.db.commit()

        results = []
        for template in due:
            try:
                results.append(self.run_test(template.test_id))
            except DREngineError:
                logger.exception("Recovery test %s could not start", template.test_id)
        return results

    def run_test(self, test_id: UUID) -> RecoveryTest:
        template = self.get_test(test_id)
        if template.parent_test_id is not None:
            raise ConfigurationError("Run the scheduled test, not a previous result", {"test_id": str(test_id)})

        result = RecoveryTest(
            parent_test_id=template.test_id,
            scenario=template.scenario,
            environment=template.environment,
            job_id=template.job_id,
            config_id=template.config_id,
            target_timestamp=template.target_timestamp,
            expected_rto_minutes=template.expected_rto_minutes,
            expected_rpo_minutes=template.expected_rpo_minutes,
            status=RecoveryTestStatus.running,
            started_at=self.clock(),
            issues_found=[],
        )
        self.db.add(result)
        self.db.commit()

        start = self.monotonic()
        try:
            measured = self._measure(result, start)
        except Exception as e:
            logger.exception("Recovery test %s (%s) errored", result.test_id, result.scenario.value)
            self.db.rollback()
            measured = Measurement(issues=[f"{type(e).__name__}: {e}"])
            result.error_message = str(e)[:2000]

        self._finalize(result, measured, start)
        return result

    def _measure(self, result: RecoveryTest, start: float) -> Measurement:
        binding = self.environments.bind(result.environment)
        match result.scenario:
            case ScenarioType.backup_restore:
                return self._backup_restore(result, binding, start)
            case ScenarioType.point_in_time:
                return self._point_in_time(result, binding, start)
            case ScenarioType.failover:
                return self._failover(result, binding, start)
            case ScenarioType.full_disaster:
                return self._full_disaster(result, binding, start)
        raise ConfigurationError(f"Unknown scenario {result.scenario}")

    def _elapsed_minutes(self, start: float) -> float:
        return round((self.monotonic() - start) / 60.0, 4)

    def _restore(
        self,
        binding: EnvironmentBinding,
        chain: list[BackupExecution],
        until: datetime | None,
    ) -> tuple[Measurement, datetime | None]:
        measured = Measurement(used=list(chain))
        if binding.restore_target is None:
            raise ConfigurationError("Environment has no restore target")
        artifacts = [self.backups.load_artifact(execution) for execution in chain]
        expected = merge_artifacts(artifacts, until)
        restored = binding.restore_target.restore(artifacts, until)

        checksum_ok = restored.checksum == dataset_checksum(expected)
        rows_ok = restored.row_count == len(expected)
        if not checksum_ok:
            measured.issues.append("restored data checksum does not match the backup")
        if not rows_ok:
            measured.issues.append(f"restored {restored.row_count} rows, backup holds {len(expected)}")
        measured.integrity = checksum_ok and rows_ok
        return measured, restored.latest_change_at

    def _backup_restore(self, result: RecoveryTest, binding: EnvironmentBinding, start: float) -> Measurement:
        chain = self.backups.restore_chain(result.job_id)
        if not chain:
            return Measurement(issues=["no successful full backup to restore"])
        measured, _ = self._restore(binding, chain, None)
        measured.rto_minutes = self._elapsed_minutes(start)
        captured = as_utc(chain[-1].started_at)
        measured.rpo_minutes = round(max(0.0, (as_utc(result.started_at) - captured).total_seconds()) / 60.0, 4)
        return measured

    def _point_in_time(self, result: RecoveryTest, binding: EnvironmentBinding, start: float) -> Measurement:
        target = as_utc(result.target_timestamp) or as_utc(result.started_at) - POINT_IN_TIME_OFFSET
        result.target_timestamp = target
        chain = self.backups.restore_chain(result.job_id, until=target, include_logs=True)
        if not chain:
            return Measurement(issues=[f"no full backup taken before {target.isoformat()}"])
        measured, latest = self._restore(binding, chain, target)
        measured.rto_minutes = self._elapsed_minutes(start)
        if latest is None:
            measured.issues.append("restored data carries no change timestamps")
            measured.integrity = False
        else:
            measured.rpo_minutes = round(max(0.0, (target - as_utc(latest)).total_seconds()) / 60.0, 4)
        return measured

    def _failover(self, result: RecoveryTest, binding: EnvironmentBinding, start: float) -> Measurement:
        if binding.failover is None or not binding.source_region or not binding.target_region:
            raise ConfigurationError(f"No failover topology configured for {result.environment.value}")
        outcome = binding.failover.trigger(
            binding.source_region,
            binding.target_region,
            TriggerType.planned,
            requested_by="recovery-test",
            environment=result.environment.value,
        )
        link = binding.failover.replication.find_link(binding.source_region, binding.target_region)
        lag = (link.last_lag_seconds or 0.0) if link is not None else 0.0
        measured = Measurement(
            rto_minutes=self._elapsed_minutes(start),
            rpo_minutes=round(lag / 60.0, 4),
            integrity=outcome.completed,
            failover_event_id=outcome.event_id,
        )
        if not outcome.completed:
            measured.issues.append(f"failover ended {outcome.state.value}: {outcome.error or 'no detail'}")
        return measured

    def _full_disaster(self, result: RecoveryTest, binding: EnvironmentBinding, start: float) -> Measurement:
        parts = [
            self._backup_restore(result, binding, start),
            self._point_in_time(result, binding, start),
            self._failover(result, binding, start),
        ]
        rpos = [p.rpo_minutes for p in parts]
        return Measurement(
            rto_minutes=self._elapsed_minutes(start),
            rpo_minutes=None if any(r is None for r in rpos) else max(rpos),
            integrity=all(p.integrity for p in parts),
            issues=[issue for p in parts for issue in p.issues],
            used=[e for p in parts[:2] for e in p.used],
            failover_event_id=parts[2].failover_event_id,
        )

    def _finalize(self, result: RecoveryTest, measured: Measurement, start: float) -> None:
        result.actual_rto_minutes = (
            measured.rto_minutes if measured.rto_minutes is not None else self._elapsed_minutes(start)
        )
        result.actual_rpo_minutes = measured.rpo_minutes
        result.data_integrity_verified = measured.integrity
        result.failover_event_id = measured.failover_event_id

        issues = list(measured.issues)
        if result.actual_rto_minutes > (result.expected_rto_minutes or 0):
            issues.append(f"RTO {result.actual_rto_minutes:.2f}m exceeds target {result.expected_rto_minutes:.0f}m")
        if result.actual_rpo_minutes is None:
            issues.append("RPO could not be measured")
        elif result.actual_rpo_minutes > (result.expected_rpo_minutes or 0):
            issues.append(f"RPO {result.actual_rpo_minutes:.2f}m exceeds target {result.expected_rpo_minutes:.0f}m")

        passed = (
            result.actual_rto_minutes <= (result.expected_rto_minutes or 0)
            and result.actual_rpo_minutes is not None
            and result.actual_rpo_minutes <= (result.expected_rpo_minutes or 0)
            and measured.integrity
        )
        result.passed = passed
        result.issues_found = issues
        result.remediation_required = not passed
        result.status = RecoveryTestStatus.passed if passed else RecoveryTestStatus.failed
        result.finished_at = self.clock()
        if passed and measured.used:
            self.backups.mark_recovery_tested(measured.used)
        self.db.commit()

        RECOVERY_TEST_RESULTS.labels(scenario=result.scenario.value, result=result.status.value).inc()
        logger.info(
            "Recovery test %s (%s in %s) %s",
            result.test_id,
            result.scenario.value,
            result.environment.value,
            result.status.value,
        )
        if result.remediation_required and self.notifier is not None:
            self.notifier.notify(
                AlertSeverity.warning,
                f"Recovery test {result.scenario.value} in {result.environment.value} failed: "
                + "; ".join(issues or ["no detail"]),
                {"test_id": str(result.test_id), "scenario": result.scenario.value},
                title=f"Recovery test {result.scenario.value} needs remediation",
            )
            self.db.commit()
