import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, Enum, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dr_engine.db import Base


class BackupType(str, enum.Enum):
    full = "full"
    incremental = "incremental"
    log_archive = "log_archive"


class ExecutionStatus(str, enum.Enum):
    running = "running"
    completed = "completed"
    failed = "failed"


class VerificationStatus(str, enum.Enum):
    pending = "pending"
    verified = "verified"
    failed = "failed"


class BackupJob(Base):
    __tablename__ = "backup_jobs"

    job_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    config_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("dr_configurations.config_id"), index=True
    )
    name: Mapped[str] = mapped_column(String(160), unique=True, nullable=False)
    backup_type: Mapped[BackupType] = mapped_column(Enum(BackupType, name="backuptype"), default=BackupType.full)
    # Scope: {"schemas": [...], "tables": [...], "tenant_id": "..."}
    scope: Mapped[dict] = mapped_column(JSON, default=dict)
    storage_prefix: Mapped[str] = mapped_column(String(255), default="")
    retention_days: Mapped[int] = mapped_column(Integer, default=30)
    allow_concurrent: Mapped[bool] = mapped_column(Boolean, default=True)
    schedule_cron: Mapped[str] = mapped_column(String(120), default="0 2 * * *")
    next_execution_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Statistics
    total_runs: Mapped[int] = mapped_column(Integer, default=0)
    successful_runs: Mapped[int] = mapped_column(Integer, default=0)
    failed_runs: Mapped[int] = mapped_column(Integer, default=0)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_success_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    avg_duration_seconds: Mapped[float] = mapped_column(Float, default=0.0)
    avg_size_bytes: Mapped[float] = mapped_column(Float, default=0.0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))

    configuration = relationship("DRConfiguration")


class BackupExecution(Base):
    __tablename__ = "backup_executions"
    __table_args__ = (Index("ix_backup_executions_job_started", "job_id", "started_at"),)

    execution_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("backup_jobs.job_id"), nullable=False, index=True
    )
    # Holds job_id while running, NULL once finalized: the per-job lock.
    running_job_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), unique=True)
    backup_type: Mapped[BackupType] = mapped_column(Enum(BackupType, name="backuptype"), nullable=False)
    status: Mapped[ExecutionStatus] = mapped_column(
        Enum(ExecutionStatus, name="backupexecutionstatus"), default=ExecutionStatus.running
    )
    verification: Mapped[VerificationStatus] = mapped_column(
        Enum(VerificationStatus, name="backupverification"), default=VerificationStatus.pending
    )
    artifact_key: Mapped[str | None] = mapped_column(String(512))
    checksum: Mapped[str | None] = mapped_column(String(64))
    size_bytes: Mapped[int | None] = mapped_column(BigInteger)
    raw_size_bytes: Mapped[int | None] = mapped_column(BigInteger)
    row_count: Mapped[int | None] = mapped_column(BigInteger)
    base_execution_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("backup_executions.execution_id", ondelete="SET NULL")
    )
    data_since: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    data_through: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    recovery_tested: Mapped[bool] = mapped_column(Boolean, default=False)
    error_message: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    duration_seconds: Mapped[float | None] = mapped_column(Float)

    job = relationship("BackupJob")
