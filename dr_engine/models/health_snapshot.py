import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Enum, Float, Index, Integer, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from dr_engine.db import Base


class Severity(str, enum.Enum):
    healthy = "healthy"
    warning = "warning"
    critical = "critical"


class HealthSnapshot(Base):
    __tablename__ = "health_snapshots"
    __table_args__ = (Index("ix_health_snapshots_region_captured", "primary_region", "captured_at"),)

    snapshot_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    primary_region: Mapped[str] = mapped_column(String(64), nullable=False)
    captured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    connection_count: Mapped[int | None] = mapped_column(Integer)
    replication_lag_seconds: Mapped[float | None] = mapped_column(Float)
    cpu_percent: Mapped[float | None] = mapped_column(Float)
    memory_percent: Mapped[float | None] = mapped_column(Float)
    disk_percent: Mapped[float | None] = mapped_column(Float)
    saturation_percent: Mapped[float | None] = mapped_column(Float)
    failed_backups_24h: Mapped[int] = mapped_column(Integer, default=0)
    consecutive_backup_failures: Mapped[int] = mapped_column(Integer, default=0)
    critical_signals: Mapped[int] = mapped_column(Integer, default=0)
    severity: Mapped[Severity] = mapped_column(Enum(Severity, name="healthseverity"), default=Severity.healthy)
    failover_recommended: Mapped[bool] = mapped_column(Boolean, default=False)
