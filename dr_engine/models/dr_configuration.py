import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Enum, Integer, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from dr_engine.db import Base


class ConfigScope(str, enum.Enum):
    system = "system"
    tenant = "tenant"


class ReplicationMode(str, enum.Enum):
    sync = "sync"
    async_ = "async"


class DRConfiguration(Base):
    __tablename__ = "dr_configurations"

    config_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    scope: Mapped[ConfigScope] = mapped_column(Enum(ConfigScope, name="drconfigscope"), default=ConfigScope.system)
    tenant_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), index=True)
    rto_minutes: Mapped[int] = mapped_column(Integer, default=240)
    rpo_minutes: Mapped[int] = mapped_column(Integer, default=15)
    backup_schedule_cron: Mapped[str] = mapped_column(String(120), default="0 2 * * *")
    retention_days: Mapped[int] = mapped_column(Integer, default=30)
    replication_mode: Mapped[ReplicationMode] = mapped_column(
        Enum(ReplicationMode, name="drreplicationmode", values_callable=lambda e: [m.value for m in e]),
        default=ReplicationMode.async_,
    )
    cross_region: Mapped[bool] = mapped_column(Boolean, default=True)
    auto_failover: Mapped[bool] = mapped_column(Boolean, default=False)
    approval_required: Mapped[bool] = mapped_column(Boolean, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
