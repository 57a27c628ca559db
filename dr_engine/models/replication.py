import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, Enum, Float, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from dr_engine.db import Base
from dr_engine.models.dr_configuration import ReplicationMode


class LinkStatus(str, enum.Enum):
    active = "active"
    inactive = "inactive"
    promoted = "promoted"


class LinkHealth(str, enum.Enum):
    healthy = "healthy"
    warning = "warning"
    critical = "critical"
    failed = "failed"


class ReplicationLink(Base):
    __tablename__ = "replication_links"
    __table_args__ = (UniqueConstraint("primary_region", "replica_region", name="uq_replication_link_pair"),)

    link_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    primary_region: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    replica_region: Mapped[str] = mapped_column(String(64), nullable=False)
    slot_id: Mapped[str] = mapped_column(String(128), nullable=False)
    mode: Mapped[ReplicationMode] = mapped_column(
        Enum(ReplicationMode, name="drreplicationmode", values_callable=lambda e: [m.value for m in e]),
        default=ReplicationMode.async_,
    )
    status: Mapped[LinkStatus] = mapped_column(Enum(LinkStatus, name="replicationlinkstatus"), default=LinkStatus.active)
    health: Mapped[LinkHealth] = mapped_column(Enum(LinkHealth, name="replicationlinkhealth"), default=LinkHealth.healthy)
    last_lag_seconds: Mapped[float | None] = mapped_column(Float)
    lag_measured_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
