"""DR Configuration Service — RTO/RPO targets, schedules and failover policy."""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import exists, select
from sqlalchemy.orm import Session

from dr_engine.errors import ConfigurationError, ConfigurationLockedError, NotFoundError
from dr_engine.models.backup import BackupExecution, BackupJob, ExecutionStatus
from dr_engine.models.dr_configuration import ConfigScope, DRConfiguration, ReplicationMode
from dr_engine.models.failover_event import FailoverEvent
from dr_engine.models.recovery_test import RecoveryTest, RecoveryTestStatus
from dr_engine.services.common import validate_cron

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = {
    "rto_minutes",
    "rpo_minutes",
    "backup_schedule_cron",
    "retention_days",
    "replication_mode",
    "cross_region",
    "auto_failover",
    "approval_required",
    "is_active",
}


def _validate_targets(rto_minutes: int, rpo_minutes: int, retention_days: int) -> None:
    if rto_minutes <= 0 or rpo_minutes <= 0:
        raise ConfigurationError("RTO and RPO must be positive")
    if retention_days <= 0:
        raise ConfigurationError("Retention days must be positive")


class DRConfigService:
    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        scope: ConfigScope = ConfigScope.system,
        tenant_id: UUID | None = None,
        rto_minutes: int = 240,
        rpo_minutes: int = 15,
        backup_schedule_cron: str = "0 2 * * *",
        retention_days: int = 30,
        replication_mode: ReplicationMode = ReplicationMode.async_,
        cross_region: bool = True,
        auto_failover: bool = False,
        approval_required: bool = True,
    ) -> DRConfiguration:
        if scope == ConfigScope.tenant and tenant_id is None:
            raise ConfigurationError("Tenant-scoped configuration requires tenant_id")
        if scope == ConfigScope.system and tenant_id is not None:
            raise ConfigurationError("System configuration cannot carry a tenant_id")
        _validate_targets(rto_minutes, rpo_minutes, retention_days)
        cron = validate_cron(backup_schedule_cron)

        previous = self.get_active(scope, tenant_id)
        if previous is not None:
            if self.is_locked(previous.config_id):
                raise ConfigurationLockedError(
                    "Active configuration is referenced by an in-flight operation",
                    {"config_id": str(previous.config_id)},
                )
            previous.is_active = False

        config = DRConfiguration(
            scope=scope,
            tenant_id=tenant_id,
            rto_minutes=rto_minutes,
            rpo_minutes=rpo_minutes,
            backup_schedule_cron=cron,
            retention_days=retention_days,
            replication_mode=replication_mode,
            cross_region=cross_region,
            auto_failover=auto_failover,
            approval_required=approval_required,
            is_active=True,
        )
        self.db.add(config)
        self.db.flush()
        logger.info("Created %s DR configuration %s", scope.value, config.config_id)
        return config

    def get(self, config_id: UUID) -> DRConfiguration:
        config = self.db.get(DRConfiguration, config_id)
        if not config:
            raise NotFoundError("DR configuration not found", {"config_id": str(config_id)})
        return config

    def get_active(self, scope: ConfigScope = ConfigScope.system, tenant_id: UUID | None = None) -> DRConfiguration | None:
        stmt = select(DRConfiguration).where(
            DRConfiguration.scope == scope,
            DRConfiguration.is_active.is_(True),
        )
        if tenant_id is None:
            stmt = stmt.where(DRConfiguration.tenant_id.is_(None))
        else:
            stmt = stmt.where(DRConfiguration.tenant_id == tenant_id)
        return self.db.scalars(stmt.order_by(DRConfiguration.created_at.desc())).first()

    def effective(self, tenant_id: UUID | None = None) -> DRConfiguration | None:
        """Tenant configuration when one is active, otherwise the system one."""
        if tenant_id is not None:
            config = self.get_active(ConfigScope.tenant, tenant_id)
            if config is not None:
                return config
        return self.get_active(ConfigScope.system)

    def list_configs(self, active_only: bool = False) -> list[DRConfiguration]:
        stmt = select(DRConfiguration).order_by(DRConfiguration.created_at.desc())
        if active_only:
            stmt = stmt.where(DRConfiguration.is_active.is_(True))
        return list(self.db.scalars(stmt).all())

    def is_locked(self, config_id: UUID) -> bool:
        running_backup = (
            select(BackupExecution.execution_id)
            .join(BackupJob, BackupJob.job_id == BackupExecution.job_id)
            .where(BackupJob.config_id == config_id, BackupExecution.status == ExecutionStatus.running)
        )
        active_failover = select(FailoverEvent.event_id).where(
            FailoverEvent.config_id == config_id,
            FailoverEvent.active_key.is_not(None),
        )
        running_test = select(RecoveryTest.test_id).where(
            RecoveryTest.config_id == config_id,
            RecoveryTest.status == RecoveryTestStatus.running,
        )
        return bool(
            self.db.scalar(select(exists(running_backup)))
            or self.db.scalar(select(exists(active_failover)))
            or self.db.scalar(select(exists(running_test)))
        )

    def update(self, config_id: UUID, **kwargs) -> DRConfiguration:
        config = self.get(config_id)
        unknown = set(kwargs) - _EDITABLE_FIELDS
        if unknown:
            raise ConfigurationError(f"Fields are not editable: {', '.join(sorted(unknown))}")
        if self.is_locked(config_id):
            raise ConfigurationLockedError(
                "Configuration is referenced by an in-flight operation",
                {"config_id": str(config_id)},
            )

        if kwargs.get("backup_schedule_cron") is not None:
            kwargs["backup_schedule_cron"] = validate_cron(kwargs["backup_schedule_cron"])

        def pick(name: str):
            value = kwargs.get(name)
            return getattr(config, name) if value is None else value

        _validate_targets(pick("rto_minutes"), pick("rpo_minutes"), pick("retention_days"))
        if kwargs.get("is_active") and not config.is_active:
            other = self.get_active(config.scope, config.tenant_id)
            if other is not None and other.config_id != config.config_id:
                other.is_active = False

        for key, value in kwargs.items():
            if value is not None:
                setattr(config, key, value)
        self.db.flush()
        return config
