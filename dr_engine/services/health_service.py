"""
Health Service — periodic health snapshots of a primary region.

Each snapshot aggregates connections, the maximum replication lag of the
region's active links, resource saturation and recent backup failures, then
classifies severity and decides whether failover is recommended. Snapshots
are append-only; consumers read the latest row.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from dr_engine.config import settings
from dr_engine.metrics import HEALTH_FAILOVER_RECOMMENDED, HEALTH_SEVERITY
from dr_engine.models.backup import BackupExecution, BackupJob, ExecutionStatus
from dr_engine.models.health_snapshot import HealthSnapshot, Severity
from dr_engine.services.common import TRANSIENT_ERRORS, call_with_read_retry, utcnow
from dr_engine.services.region import MetricsSource
from dr_engine.services.replication_service import ReplicationService

logger = logging.getLogger(__name__)

_SEVERITY_LEVEL = {Severity.healthy: 0, Severity.warning: 1, Severity.critical: 2}


@dataclass(frozen=True)
class Assessment:
    severity: Severity
    critical_signals: int
    failover_recommended: bool


def assess(
    lag_seconds: float | None,
    saturation_percent: float | None,
    failed_backups_24h: int,
    consecutive_backup_failures: int,
) -> Assessment:
    """Classify one set of observations.

    Failover needs more independent signals than the configured threshold:
    lag past the failover-lag bound, critical saturation, and backups failing.
    """
    lag = lag_seconds or 0.0
    saturation = saturation_percent or 0.0
    backups_failing = (
        consecutive_backup_failures >= settings.backup_failure_threshold
        or failed_backups_24h >= settings.backup_failure_threshold
    )

    if lag > settings.lag_critical_seconds or saturation > settings.saturation_critical_percent or backups_failing:
        severity = Severity.critical
    elif lag > settings.lag_warning_seconds or saturation > settings.saturation_warning_percent:
        severity = Severity.warning
    else:
        severity = Severity.healthy

    signals = sum(
        (
            lag > settings.failover_lag_signal_seconds,
            saturation > settings.saturation_critical_percent,
            backups_failing,
        )
    )
    return Assessment(severity, signals, signals > settings.failover_signal_threshold)


class HealthService:
    def __init__(
        self,
        db: Session,
        metrics: MetricsSource,
        replication: ReplicationService,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.metrics = metrics
        self.replication = replication
        self.clock = clock

    def _connections(self, region: str) -> int | None:
        try:
            return call_with_read_retry(self.metrics.connection_count, region, description="connection count")
        except TRANSIENT_ERRORS:
            logger.warning("Connection count unavailable for %s", region, exc_info=True)
            return None

    def _usage(self, region: str) -> dict[str, float]:
        try:
            return call_with_read_retry(self.metrics.resource_usage, region, description="resource usage") or {}
        except TRANSIENT_ERRORS:
            logger.warning("Resource usage unavailable for %s", region, exc_info=True)
            return {}

    def _backup_failures(self, now: datetime) -> tuple[int, int]:
        failed_24h = self.db.scalar(
            select(func.count(BackupExecution.execution_id)).where(
                BackupExecution.status == ExecutionStatus.failed,
                BackupExecution.started_at >= now - timedelta(hours=24),
            )
        )
        consecutive = self.db.scalar(
            select(func.max(BackupJob.consecutive_failures)).where(BackupJob.is_active.is_(True))
        )
        return int(failed_24h or 0), int(consecutive or 0)

    def snapshot(self, primary_region: str) -> HealthSnapshot:
        now = self.clock()
        usage = self._usage(primary_region)
        saturation = max(usage.values()) if usage else None
        lag = self.replication.max_lag(primary_region)
        failed_24h, consecutive = self._backup_failures(now)
        result = assess(lag, saturation, failed_24h, consecutive)

        snap = HealthSnapshot(
            primary_region=primary_region,
            captured_at=now,
            connection_count=self._connections(primary_region),
            replication_lag_seconds=lag,
            cpu_percent=usage.get("cpu"),
            memory_percent=usage.get("memory"),
            disk_percent=usage.get("disk"),
            saturation_percent=saturation,
            failed_backups_24h=failed_24h,
            consecutive_backup_failures=consecutive,
            critical_signals=result.critical_signals,
            severity=result.severity,
            failover_recommended=result.failover_recommended,
        )
        self.db.add(snap)
        self.db.flush()

        HEALTH_SEVERITY.labels(primary_region=primary_region).set(_SEVERITY_LEVEL[result.severity])
        HEALTH_FAILOVER_RECOMMENDED.labels(primary_region=primary_region).set(int(result.failover_recommended))
        if result.severity != Severity.healthy:
            logger.warning(
                "Health of %s is %s (%d signals, failover recommended: %s)",
                primary_region,
                result.severity.value,
                result.critical_signals,
                result.failover_recommended,
            )
        return snap

    def latest(self, primary_region: str) -> HealthSnapshot | None:
        stmt = (
            select(HealthSnapshot)
            .where(HealthSnapshot.primary_region == primary_region)
            .order_by(HealthSnapshot.captured_at.desc())
        )
        return self.db.scalars(stmt).first()

    def history(self, primary_region: str, limit: int = 50) -> list[HealthSnapshot]:
        stmt = (
            select(HealthSnapshot)
            .where(HealthSnapshot.primary_region == primary_region)
            .order_by(HealthSnapshot.captured_at.desc())
            .limit(limit)
        )
        return list(self.db.scalars(stmt).all())

    def prune(self, now: datetime | None = None) -> int:
        cutoff = (now or self.clock()) - timedelta(days=settings.health_snapshot_retention_days)
        result = self.db.execute(delete(HealthSnapshot).where(HealthSnapshot.captured_at < cutoff))
        self.db.flush()
        deleted = result.rowcount or 0
        if deleted:
            logger.info("Pruned %d health snapshots older than %s", deleted, cutoff.isoformat())
        return deleted
