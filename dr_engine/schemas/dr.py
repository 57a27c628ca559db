"""Disaster Recovery API schemas."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from dr_engine.models.backup import BackupType, ExecutionStatus, VerificationStatus
from dr_engine.models.dr_alert import AlertSeverity
from dr_engine.models.dr_configuration import ConfigScope, ReplicationMode
from dr_engine.models.failover_event import FailoverOutcome, FailoverState, TriggerType
from dr_engine.models.health_snapshot import Severity
from dr_engine.models.recovery_test import RecoveryEnvironment, RecoveryTestStatus, ScenarioType
from dr_engine.models.replication import LinkHealth, LinkStatus


class _ReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# -- configurations ---------------------------------------------------------


class DRConfigurationCreate(BaseModel):
    scope: ConfigScope = ConfigScope.system
    tenant_id: UUID | None = None
    rto_minutes: int = Field(default=240, gt=0)
    rpo_minutes: int = Field(default=15, gt=0)
    backup_schedule_cron: str = "0 2 * * *"
    retention_days: int = Field(default=30, gt=0)
    replication_mode: ReplicationMode = ReplicationMode.async_
    cross_region: bool = True
    auto_failover: bool = False
    approval_required: bool = True


class DRConfigurationUpdate(BaseModel):
    rto_minutes: int | None = Field(default=None, gt=0)
    rpo_minutes: int | None = Field(default=None, gt=0)
    backup_schedule_cron: str | None = None
    retention_days: int | None = Field(default=None, gt=0)
    replication_mode: ReplicationMode | None = None
    cross_region: bool | None = None
    auto_failover: bool | None = None
    approval_required: bool | None = None
    is_active: bool | None = None


class DRConfigurationRead(_ReadModel):
    config_id: UUID
    scope: ConfigScope
    tenant_id: UUID | None = None
    rto_minutes: int
    rpo_minutes: int
    backup_schedule_cron: str
    retention_days: int
    replication_mode: ReplicationMode
    cross_region: bool
    auto_failover: bool
    approval_required: bool
    is_active: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None


# -- backups ------------------------------------------------------------------


class BackupJobCreate(BaseModel):
    name: str = Field(min_length=1, max_length=160)
    backup_type: BackupType = BackupType.full
    scope: dict = Field(default_factory=dict)
    config_id: UUID | None = None
    schedule_cron: str | None = None
    retention_days: int | None = Field(default=None, gt=0)
    storage_prefix: str = Field(default="", max_length=255)
    allow_concurrent: bool = True


class BackupJobRead(_ReadModel):
    job_id: UUID
    config_id: UUID | None = None
    name: str
    backup_type: BackupType
    scope: dict
    storage_prefix: str
    retention_days: int
    allow_concurrent: bool
    schedule_cron: str
    next_execution_at: datetime | None = None
    is_active: bool
    total_runs: int
    successful_runs: int
    failed_runs: int
    consecutive_failures: int
    last_run_at: datetime | None = None
    last_success_at: datetime | None = None


class ExecuteNowRequest(BaseModel):
    backup_type: BackupType | None = None


class BackupExecutionRead(_ReadModel):
    execution_id: UUID
    job_id: UUID
    backup_type: BackupType
    status: ExecutionStatus
    verification: VerificationStatus
    artifact_key: str | None = None
    checksum: str | None = None
    size_bytes: int | None = None
    raw_size_bytes: int | None = None
    row_count: int | None = None
    base_execution_id: UUID | None = None
    data_through: datetime | None = None
    recovery_tested: bool
    error_message: str | None = None
    started_at: datetime
    finished_at: datetime | None = None
    duration_seconds: float | None = None


# -- replication & health -----------------------------------------------------


class ReplicationLinkCreate(BaseModel):
    primary_region: str = Field(min_length=1, max_length=64)
    replica_region: str = Field(min_length=1, max_length=64)
    mode: ReplicationMode = ReplicationMode.async_


class ReplicationLinkReconfigure(BaseModel):
    mode: ReplicationMode


class ReplicationLinkRead(_ReadModel):
    link_id: UUID
    primary_region: str
    replica_region: str
    slot_id: str
    mode: ReplicationMode
    status: LinkStatus
    health: LinkHealth
    last_lag_seconds: float | None = None
    lag_measured_at: datetime | None = None
    error_count: int


class HealthSnapshotRead(_ReadModel):
    snapshot_id: UUID
    primary_region: str
    captured_at: datetime
    connection_count: int | None = None
    replication_lag_seconds: float | None = None
    cpu_percent: float | None = None
    memory_percent: float | None = None
    disk_percent: float | None = None
    saturation_percent: float | None = None
    failed_backups_24h: int
    consecutive_backup_failures: int
    critical_signals: int
    severity: Severity
    failover_recommended: bool


# -- failover -----------------------------------------------------------------


class FailoverTriggerRequest(BaseModel):
    source_region: str = Field(min_length=1, max_length=64)
    target_region: str | None = Field(default=None, max_length=64)
    trigger_type: TriggerType = TriggerType.manual
    override_safety_checks: bool = False
    requested_by: str | None = Field(default=None, max_length=120)
    environment: str = Field(default="production", max_length=40)


class FailoverCancelRequest(BaseModel):
    requested_by: str | None = Field(default=None, max_length=120)


class FailoverTransitionRead(_ReadModel):
    sequence: int
    from_state: FailoverState | None = None
    to_state: FailoverState
    detail: str | None = None
    occurred_at: datetime


class FailoverEventRead(_ReadModel):
    event_id: UUID
    environment: str
    source_region: str
    target_region: str
    trigger_type: TriggerType
    state: FailoverState
    outcome: FailoverOutcome | None = None
    requested_by: str | None = None
    override_safety_checks: bool
    cancel_requested: bool
    completed: bool
    rollback_attempted: bool
    rollback_successful: bool | None = None
    rollback_error: str | None = None
    error_message: str | None = None
    started_at: datetime
    finished_at: datetime | None = None
    transitions: list[FailoverTransitionRead] = Field(default_factory=list)


# -- recovery tests -----------------------------------------------------------


class RecoveryTestCreate(BaseModel):
    scenario: ScenarioType
    environment: str
    cadence_cron: str | None = None
    job_id: UUID | None = None
    config_id: UUID | None = None
    target_timestamp: datetime | None = None


class RecoveryTestRead(_ReadModel):
    test_id: UUID
    parent_test_id: UUID | None = None
    scenario: ScenarioType
    environment: RecoveryEnvironment
    cadence_cron: str | None = None
    next_run_at: datetime | None = None
    status: RecoveryTestStatus
    target_timestamp: datetime | None = None
    expected_rto_minutes: float | None = None
    expected_rpo_minutes: float | None = None
    actual_rto_minutes: float | None = None
    actual_rpo_minutes: float | None = None
    data_integrity_verified: bool | None = None
    passed: bool | None = None
    issues_found: list[str] = Field(default_factory=list)
    remediation_required: bool
    failover_event_id: UUID | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


# -- alerts -------------------------------------------------------------------


class DRAlertRead(_ReadModel):
    alert_id: UUID
    severity: AlertSeverity
    title: str
    message: str
    context: dict = Field(default_factory=dict)
    dispatched: bool
    created_at: datetime
