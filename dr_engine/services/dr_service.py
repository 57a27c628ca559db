"""Disaster Recovery Service — wires collaborators and exposes the engine's components."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from functools import lru_cache
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from dr_engine.config import settings
from dr_engine.errors import ConfigurationError
from dr_engine.models.dr_alert import AlertSeverity, DRAlert
from dr_engine.models.health_snapshot import HealthSnapshot
from dr_engine.models.recovery_test import RecoveryEnvironment
from dr_engine.services.backup_service import BackupService
from dr_engine.services.common import as_utc, utcnow
from dr_engine.services.data_source import DataSource, SqlRestoreTarget, SqlTableSource
from dr_engine.services.dr_config_service import DRConfigService
from dr_engine.services.failover_service import FailoverResult, FailoverService
from dr_engine.services.health_service import HealthService
from dr_engine.services.notification_service import NotificationService, Notifier
from dr_engine.services.recovery_test_service import EnvironmentBinding, EnvironmentProvider, RecoveryTestService
from dr_engine.services.region import (
    ConnectionRouter,
    FileConnectionRouter,
    MetricsSource,
    PostgresRegionDriver,
    RegionController,
    ReplicationDriver,
)
from dr_engine.services.replication_service import ReplicationService
from dr_engine.services.storage_backend import FilesystemStorageBackend, StorageBackend

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def default_region_driver() -> PostgresRegionDriver:
    return PostgresRegionDriver(settings.region_dsns)


@lru_cache(maxsize=16)
def _engine_for(dsn: str) -> Engine:
    return create_engine(dsn, pool_pre_ping=True)


def default_data_source() -> DataSource | None:
    if not settings.source_dsn:
        return None
    return SqlTableSource(_engine_for(settings.source_dsn), change_column=settings.change_column)


class SettingsEnvironmentProvider:
    """Builds environment bindings from ENVIRONMENT_DSNS and ENVIRONMENT_FAILOVER_PAIRS."""

    def __init__(
        self,
        db: Session,
        replication: ReplicationService,
        controller: RegionController,
        notifier: Notifier | None = None,
    ):
        self.db = db
        self.replication = replication
        self.controller = controller
        self.notifier = notifier

    def bind(self, environment: RecoveryEnvironment) -> EnvironmentBinding:
        binding = EnvironmentBinding()
        dsn = settings.environment_dsns.get(environment.value)
        if dsn:
            binding.restore_target = SqlRestoreTarget(_engine_for(dsn), change_column=settings.change_column)

        pair = settings.environment_failover_pairs.get(environment.value)
        if pair:
            source, _, target = pair.partition(":")
            shared = {source, target} & self._production_regions()
            if shared:
                raise ConfigurationError(
                    f"Failover drills in {environment.value} cannot use production regions",
                    {"environment": environment.value, "regions": sorted(shared)},
                )
            routing = Path(settings.routing_file)
            binding.failover = FailoverService(
                self.db,
                self.replication,
                self.controller,
                FileConnectionRouter(routing.with_name(f"{routing.stem}-{environment.value}{routing.suffix}")),
                self.notifier,
            )
            binding.source_region = source or None
            binding.target_region = target or None
        return binding

    def _production_regions(self) -> set[str]:
        primary = settings.primary_region
        regions = {primary}
        for link in self.replication.list_links():
            if primary in (link.primary_region, link.replica_region):
                regions.update((link.primary_region, link.replica_region))
        return regions


class DisasterRecoveryService:
    def __init__(
        self,
        db: Session,
        *,
        storage: StorageBackend | None = None,
        source: DataSource | None = None,
        driver: ReplicationDriver | None = None,
        controller: RegionController | None = None,
        metrics: MetricsSource | None = None,
        router: ConnectionRouter | None = None,
        notifier: Notifier | None = None,
        environments: EnvironmentProvider | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        region_driver = None
        if driver is None or controller is None or metrics is None:
            region_driver = default_region_driver()

        self.notifier = notifier or NotificationService(db)
        self.configs = DRConfigService(db)
        self.backups = BackupService(
            db,
            storage or FilesystemStorageBackend(settings.backup_storage_dir),
            source if source is not None else default_data_source(),
            self.notifier,
            clock=clock,
        )
        self.replication = ReplicationService(db, driver or region_driver, clock=clock)
        self.health = HealthService(db, metrics or region_driver, self.replication, clock=clock)
        self.failover = FailoverService(
            db,
            self.replication,
            controller or region_driver,
            router or FileConnectionRouter(settings.routing_file),
            self.notifier,
            clock=clock,
        )
        self.recovery_tests = RecoveryTestService(
            db,
            self.backups,
            environments
            or SettingsEnvironmentProvider(db, self.replication, controller or region_driver, self.notifier),
            self.notifier,
            clock=clock,
        )

    def monitor(self, primary_region: str) -> tuple[HealthSnapshot, FailoverResult | None]:
        """Take a health snapshot and hand it to the failover policy."""
        snap = self.health.snapshot(primary_region)
        self.db.commit()
        return snap, self.failover.evaluate_snapshot(snap)

    def status(self, primary_region: str | None = None) -> dict:
        region = primary_region or settings.primary_region
        latest = self.health.latest(region)
        active = self.failover.active_event(region)
        jobs = self.backups.list_jobs()
        links = self.replication.list_links(region)
        results = self.recovery_tests.list_results(limit=10)
        return {
            "primary_region": region,
            "health": None
            if latest is None
            else {
                "snapshot_id": str(latest.snapshot_id),
                "severity": latest.severity.value,
                "failover_recommended": latest.failover_recommended,
                "captured_at": as_utc(latest.captured_at),
            },
            "active_failover": None
            if active is None
            else {"event_id": str(active.event_id), "state": active.state.value, "target_region": active.target_region},
            "links": [
                {
                    "replica_region": link.replica_region,
                    "mode": link.mode.value,
                    "status": link.status.value,
                    "health": link.health.value,
                    "lag_seconds": link.last_lag_seconds,
                }
                for link in links
            ],
            "backup_jobs": {
                "total": len(jobs),
                "failing": sum(1 for job in jobs if job.consecutive_failures),
                "last_success_at": max(
                    (as_utc(job.last_success_at) for job in jobs if job.last_success_at), default=None
                ),
            },
            "recovery_tests": {
                "recent": len(results),
                "passed": sum(1 for r in results if r.passed),
            },
        }

    def recent_alerts(self, limit: int = 50, severity: AlertSeverity | None = None) -> list[DRAlert]:
        return NotificationService(self.db).recent(limit=limit, severity=severity)
