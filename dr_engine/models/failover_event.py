import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dr_engine.db import Base


class FailoverState(str, enum.Enum):
    idle = "idle"
    safety_check = "safety_check"
    draining = "draining"
    promoting = "promoting"
    rerouting = "rerouting"
    verifying = "verifying"
    completed = "completed"
    rolling_back = "rolling_back"
    rolled_back = "rolled_back"
    aborted = "aborted"


TERMINAL_STATES = frozenset({FailoverState.completed, FailoverState.rolled_back, FailoverState.aborted})
CANCELLABLE_STATES = frozenset({FailoverState.idle, FailoverState.safety_check, FailoverState.draining})


class TriggerType(str, enum.Enum):
    automatic = "automatic"
    manual = "manual"
    planned = "planned"


class FailoverOutcome(str, enum.Enum):
    completed = "completed"
    aborted = "aborted"
    rolled_back = "rolled_back"
    rollback_failed = "rollback_failed"


class FailoverEvent(Base):
    __tablename__ = "failover_events"
    __table_args__ = (Index("ix_failover_events_region_started", "source_region", "started_at"),)

    event_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    environment: Mapped[str] = mapped_column(String(40), default="production")
    source_region: Mapped[str] = mapped_column(String(64), nullable=False)
    target_region: Mapped[str] = mapped_column(String(64), nullable=False)
    # "<environment>:<source_region>" while non-terminal, NULL afterwards.
    active_key: Mapped[str | None] = mapped_column(String(128), unique=True)
    trigger_type: Mapped[TriggerType] = mapped_column(Enum(TriggerType, name="failovertrigger"), nullable=False)
    state: Mapped[FailoverState] = mapped_column(Enum(FailoverState, name="failoverstate"), default=FailoverState.idle)
    outcome: Mapped[FailoverOutcome | None] = mapped_column(Enum(FailoverOutcome, name="failoveroutcome"))
    config_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("dr_configurations.config_id"))
    snapshot_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("health_snapshots.snapshot_id", ondelete="SET NULL")
    )
    requested_by: Mapped[str | None] = mapped_column(String(120))
    override_safety_checks: Mapped[bool] = mapped_column(Boolean, default=False)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False)
    cancelled_by: Mapped[str | None] = mapped_column(String(120))
    completed: Mapped[bool] = mapped_column(Boolean, default=False)
    rollback_attempted: Mapped[bool] = mapped_column(Boolean, default=False)
    rollback_successful: Mapped[bool | None] = mapped_column(Boolean)
    rollback_error: Mapped[str | None] = mapped_column(Text)
    error_message: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    transitions = relationship(
        "FailoverTransition",
        order_by="FailoverTransition.sequence",
        cascade="all, delete-orphan",
    )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class FailoverTransition(Base):
    __tablename__ = "failover_transitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("failover_events.event_id"), nullable=False, index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    from_state: Mapped[FailoverState | None] = mapped_column(Enum(FailoverState, name="failoverstate"))
    to_state: Mapped[FailoverState] = mapped_column(Enum(FailoverState, name="failoverstate"), nullable=False)
    detail: Mapped[str | None] = mapped_column(Text)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
