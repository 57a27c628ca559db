"""
Failover Service — state machine that moves a primary region to a replica.

    idle → safety_check → draining → promoting → rerouting → verifying → completed
                 ↘            ↘           ↘            ↘            ↘
                  aborted      aborted     rolling_back → rolled_back

Promoting is the point of no return: before it the attempt can be cancelled
or aborted without touching production; from it on, any failure rolls back.
Only one non-terminal event may exist per (environment, source region); the
``active_key`` unique column enforces that across workers.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dr_engine.config import settings
from dr_engine.errors import ConfigurationError, FailoverInProgressError, InvalidTransitionError, NotFoundError
from dr_engine.metrics import FAILOVER_DURATION, FAILOVER_TRANSITIONS
from dr_engine.models.dr_alert import AlertSeverity
from dr_engine.models.dr_configuration import DRConfiguration
from dr_engine.models.failover_event import (
    CANCELLABLE_STATES,
    FailoverEvent,
    FailoverOutcome,
    FailoverState,
    FailoverTransition,
    TriggerType,
)
from dr_engine.models.health_snapshot import HealthSnapshot
from dr_engine.models.replication import LinkStatus
from dr_engine.services.common import TRANSIENT_ERRORS, as_utc, call_with_read_retry, utcnow
from dr_engine.services.notification_service import Notifier
from dr_engine.services.region import ConnectionRouter, RegionController
from dr_engine.services.replication_service import ReplicationService

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[FailoverState, frozenset[FailoverState]] = {
    FailoverState.idle: frozenset({FailoverState.safety_check, FailoverState.aborted}),
    FailoverState.safety_check: frozenset({FailoverState.draining, FailoverState.aborted}),
    FailoverState.draining: frozenset({FailoverState.promoting, FailoverState.aborted}),
    FailoverState.promoting: frozenset({FailoverState.rerouting, FailoverState.rolling_back}),
    FailoverState.rerouting: frozenset({FailoverState.verifying, FailoverState.rolling_back}),
    FailoverState.verifying: frozenset({FailoverState.completed, FailoverState.rolling_back}),
    FailoverState.rolling_back: frozenset({FailoverState.rolled_back}),
}


def active_key(environment: str, source_region: str) -> str:
    return f"{environment}:{source_region}"


@dataclass(frozen=True)
class FailoverResult:
    event_id: UUID
    source_region: str
    target_region: str
    state: FailoverState
    outcome: FailoverOutcome | None
    completed: bool
    rollback_successful: bool | None
    error: str | None

    @classmethod
    def from_event(cls, event: FailoverEvent) -> FailoverResult:
        return cls(
            event_id=event.event_id,
            source_region=event.source_region,
            target_region=event.target_region,
            state=event.state,
            outcome=event.outcome,
            completed=event.completed,
            rollback_successful=event.rollback_successful,
            error=event.error_message,
        )


class _Cancelled(Exception):
    pass


class FailoverService:
    def __init__(
        self,
        db: Session,
        replication: ReplicationService,
        controller: RegionController,
        router: ConnectionRouter,
        notifier: Notifier | None = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.replication = replication
        self.controller = controller
        self.router = router
        self.notifier = notifier
        self.sleep = sleep
        self.monotonic = monotonic
        self.clock = clock

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_event(self, event_id: UUID) -> FailoverEvent:
        event = self.db.get(FailoverEvent, event_id)
        if not event:
            raise NotFoundError("Failover event not found", {"event_id": str(event_id)})
        return event

    def active_event(self, source_region: str, environment: str = "production") -> FailoverEvent | None:
        stmt = select(FailoverEvent).where(FailoverEvent.active_key == active_key(environment, source_region))
        return self.db.scalars(stmt).first()

    def history(
        self,
        source_region: str | None = None,
        limit: int = 50,
        environment: str | None = None,
    ) -> list[FailoverEvent]:
        stmt = select(FailoverEvent).order_by(FailoverEvent.started_at.desc()).limit(limit)
        if source_region is not None:
            stmt = stmt.where(FailoverEvent.source_region == source_region)
        if environment is not None:
            stmt = stmt.where(FailoverEvent.environment == environment)
        return list(self.db.scalars(stmt).all())

    # ------------------------------------------------------------------
    # Triggering
    # ------------------------------------------------------------------

    def open_event(
        self,
        source_region: str,
        target_region: str | None = None,
        trigger_type: TriggerType = TriggerType.manual,
        *,
        override_safety_checks: bool = False,
        requested_by: str | None = None,
        environment: str = "production",
        snapshot_id: UUID | None = None,
        config_id: UUID | None = None,
    ) -> FailoverEvent:
        """Create the idle event, or raise FailoverInProgressError if one is active."""
        existing = self.active_event(source_region, environment)
        if existing is not None:
            raise FailoverInProgressError(source_region, str(existing.event_id))

        if target_region is None:
            best = self.replication.best_target(source_region)
            if best is None:
                raise ConfigurationError(f"No replica available to fail {source_region} over to")
            target_region = best.replica_region
        if target_region == source_region:
            raise ConfigurationError("Source and target region must differ")
        if self.replication.find_link(source_region, target_region) is None:
            raise ConfigurationError(f"No replication link {source_region} -> {target_region}")

        key = active_key(environment, source_region)
        event = FailoverEvent(
            environment=environment,
            source_region=source_region,
            target_region=target_region,
            active_key=key,
            trigger_type=trigger_type,
            state=FailoverState.idle,
            requested_by=requested_by,
            override_safety_checks=override_safety_checks,
            snapshot_id=snapshot_id,
            config_id=config_id,
            started_at=self.clock(),
        )
        event.transitions.append(
            FailoverTransition(sequence=1, from_state=None, to_state=FailoverState.idle, detail="requested")
        )
        self.db.add(event)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.active_event(source_region, environment)
            raise FailoverInProgressError(source_region, str(existing.event_id) if existing else None) from None

        FAILOVER_TRANSITIONS.labels(state=FailoverState.idle.value, trigger_type=trigger_type.value).inc()
        logger.info(
            "Opened %s failover %s: %s -> %s (%s)",
            trigger_type.value,
            event.event_id,
            source_region,
            target_region,
            environment,
        )
        return event

    def trigger(
        self,
        source_region: str,
        target_region: str | None = None,
        trigger_type: TriggerType = TriggerType.manual,
        *,
        override_safety_checks: bool = False,
        requested_by: str | None = None,
        environment: str = "production",
        snapshot_id: UUID | None = None,
        config_id: UUID | None = None,
    ) -> FailoverResult:
        event = self.open_event(
            source_region,
            target_region,
            trigger_type,
            override_safety_checks=override_safety_checks,
            requested_by=requested_by,
            environment=environment,
            snapshot_id=snapshot_id,
            config_id=config_id,
        )
        return self.run(event.event_id)

    def evaluate_snapshot(self, snapshot: HealthSnapshot, config: DRConfiguration | None = None) -> FailoverResult | None:
        """Start an automatic failover when the snapshot and policy allow it."""
        if not snapshot.failover_recommended:
            return None

        if config is None:
            from dr_engine.services.dr_config_service import DRConfigService

            config = DRConfigService(self.db).effective()
        region = snapshot.primary_region
        if config is None or not config.auto_failover:
            logger.info("Failover recommended for %s but automatic failover is disabled", region)
            return None

        existing = self.active_event(region)
        if existing is not None:
            logger.info("Failover %s already active for %s", existing.event_id, region)
            return None

        target = self.replication.best_target(region)
        if target is None:
            self._notify(
                AlertSeverity.critical,
                f"Failover recommended for {region} but no replica is available",
                {"region": region, "snapshot_id": str(snapshot.snapshot_id)},
                title=f"No failover target for {region}",
            )
            return None

        if config.approval_required:
            self._notify(
                AlertSeverity.warning,
                f"Failover of {region} to {target.replica_region} is recommended and awaits operator approval.",
                {
                    "region": region,
                    "target_region": target.replica_region,
                    "snapshot_id": str(snapshot.snapshot_id),
                    "critical_signals": snapshot.critical_signals,
                },
                title=f"Failover approval required for {region}",
            )
            return None

        try:
            return self.trigger(
                region,
                target.replica_region,
                TriggerType.automatic,
                requested_by="health-monitor",
                snapshot_id=snapshot.snapshot_id,
                config_id=config.config_id,
            )
        except FailoverInProgressError:
            logger.info("Automatic failover for %s lost the race to another trigger", region)
            return None

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self, event_id: UUID, requested_by: str | None = None) -> FailoverEvent:
        event = self.get_event(event_id)
        if event.is_terminal:
            raise InvalidTransitionError(f"Failover {event_id} already finished as {event.state.value}")
        if event.state not in CANCELLABLE_STATES:
            raise InvalidTransitionError(
                f"Failover {event_id} is {event.state.value}; it can no longer be cancelled",
                {"state": event.state.value},
            )
        event.cancel_requested = True
        event.cancelled_by = requested_by
        if event.state == FailoverState.idle:
            self._abort(event, f"cancelled by {requested_by or 'operator'}", notify=False)
        else:
            self.db.commit()
            logger.info("Cancellation of failover %s requested by %s", event_id, requested_by)
        return event

    def _check_cancel(self, event: FailoverEvent) -> None:
        self.db.refresh(event)
        if event.cancel_requested:
            raise _Cancelled(f"cancelled by {event.cancelled_by or 'operator'}")

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, event: FailoverEvent, to_state: FailoverState, detail: str | None = None) -> None:
        if event.is_terminal:
            raise InvalidTransitionError(f"Failover {event.event_id} is terminal ({event.state.value})")
        allowed = ALLOWED_TRANSITIONS.get(event.state, frozenset())
        if to_state not in allowed:
            raise InvalidTransitionError(f"Cannot move failover from {event.state.value} to {to_state.value}")

        sequence = (
            self.db.scalar(
                select(func.max(FailoverTransition.sequence)).where(FailoverTransition.event_id == event.event_id)
            )
            or 0
        ) + 1
        now = self.clock()
        self.db.add(
            FailoverTransition(
                event_id=event.event_id,
                sequence=sequence,
                from_state=event.state,
                to_state=to_state,
                detail=detail,
                occurred_at=now,
            )
        )
        event.state = to_state
        if event.is_terminal:
            event.active_key = None
            event.finished_at = now
        self.db.commit()
        FAILOVER_TRANSITIONS.labels(state=to_state.value, trigger_type=event.trigger_type.value).inc()
        logger.info("Failover %s -> %s%s", event.event_id, to_state.value, f" ({detail})" if detail else "")

    def _finish(self, event: FailoverEvent, state: FailoverState, outcome: FailoverOutcome, detail: str | None) -> None:
        event.outcome = outcome
        self._transition(event, state, detail)
        elapsed = (as_utc(event.finished_at) - as_utc(event.started_at)).total_seconds()
        FAILOVER_DURATION.labels(outcome=outcome.value).observe(max(0.0, elapsed))

    def _abort(self, event: FailoverEvent, reason: str, notify: bool = True) -> None:
        event.error_message = reason[:2000]
        self._finish(event, FailoverState.aborted, FailoverOutcome.aborted, reason)
        if notify:
            self._notify(
                AlertSeverity.warning,
                f"Failover of {event.source_region} to {event.target_region} aborted: {reason}",
                {"event_id": str(event.event_id)},
                title=f"Failover aborted for {event.source_region}",
            )

    def run(self, event_id: UUID) -> FailoverResult:
        """Drive an idle event through the state machine to a terminal state."""
        event = self.get_event(event_id)
        if event.is_terminal:
            return FailoverResult.from_event(event)
        if event.state != FailoverState.idle:
            raise InvalidTransitionError(f"Failover {event_id} is already running ({event.state.value})")

        writes_blocked = False
        try:
            self._check_cancel(event)
            self._transition(event, FailoverState.safety_check)
            reason = self._safety_check(event)
            if reason:
                self._abort(event, f"safety check failed: {reason}")
                return FailoverResult.from_event(event)

            self._transition(event, FailoverState.draining)
            writes_blocked = True
            self.controller.block_writes(event.source_region)
            self._drain(event)
            self._transition(event, FailoverState.promoting)
        except _Cancelled as e:
            self._release_writes(event, writes_blocked)
            self._abort(event, str(e), notify=False)
            return FailoverResult.from_event(event)
        except Exception as e:
            logger.exception("Failover %s failed before promotion", event.event_id)
            self.db.rollback()
            self._release_writes(event, writes_blocked)
            self._abort(event, f"{type(e).__name__}: {e}")
            return FailoverResult.from_event(event)

        # Point of no return: from here failures roll back.
        promoted = False
        try:
            self.controller.promote(event.target_region)
            promoted = True
            self._transition(event, FailoverState.rerouting)
            self.router.update_target(event.target_region)
            self._transition(event, FailoverState.verifying)
            healthy = call_with_read_retry(
                self.controller.synthetic_check, event.target_region, description="synthetic check"
            )
            if not healthy:
                raise RuntimeError(f"Synthetic health check failed on {event.target_region}")
        except Exception as e:
            logger.exception("Failover %s failed in %s", event.event_id, event.state.value)
            self.db.rollback()
            event.error_message = f"{type(e).__name__}: {e}"[:2000]
            self._roll_back(event, promoted)
            return FailoverResult.from_event(event)

        event.completed = True
        self.replication.mark_promoted(event.source_region, event.target_region)
        self._finish(event, FailoverState.completed, FailoverOutcome.completed, f"{event.target_region} is primary")
        self._notify(
            AlertSeverity.info,
            f"Failover of {event.source_region} to {event.target_region} completed.",
            {"event_id": str(event.event_id), "trigger_type": event.trigger_type.value},
            title=f"Failover completed for {event.source_region}",
        )
        return FailoverResult.from_event(event)

    def _safety_check(self, event: FailoverEvent) -> str | None:
        """Return a failure reason, or None when it is safe to proceed."""
        link = self.replication.find_link(event.source_region, event.target_region)
        if link is None or link.status != LinkStatus.active:
            return f"replication link to {event.target_region} is not active"

        if not event.override_safety_checks:
            bound = settings.safety_max_lag_seconds
            deadline = self.monotonic() + settings.safety_check_timeout_seconds
            while True:
                self._check_cancel(event)
                try:
                    lag = self.replication.current_lag(link.link_id).total_seconds()
                except TRANSIENT_ERRORS:
                    lag = None
                if lag is not None and lag <= bound:
                    break
                remaining = deadline - self.monotonic()
                if remaining <= 0:
                    observed = "unmeasurable" if lag is None else f"{lag:.6f}s"
                    return f"target lag {observed} did not reach {bound}s within {settings.safety_check_timeout_seconds}s"
                self.sleep(min(settings.poll_interval_seconds, remaining))

            fallbacks = self.replication.healthy_fallbacks(
                event.source_region, exclude=event.target_region, refresh=True
            )
            if not fallbacks:
                return "no other healthy replica available as fallback"
        else:
            logger.warning("Failover %s overrides safety checks", event.event_id)
        return None

    def _drain(self, event: FailoverEvent) -> None:
        region = event.source_region
        deadline = self.monotonic() + settings.drain_grace_seconds
        while True:
            self._check_cancel(event)
            in_flight = call_with_read_retry(self.controller.in_flight_writes, region, description="in-flight writes")
            if in_flight <= 0:
                return
            remaining = deadline - self.monotonic()
            if remaining <= 0:
                terminated = self.controller.terminate_writes(region)
                logger.warning("Terminated %d in-flight writes on %s after grace period", terminated, region)
                return
            self.sleep(min(settings.poll_interval_seconds, remaining))

    def _release_writes(self, event: FailoverEvent, writes_blocked: bool) -> None:
        if not writes_blocked:
            return
        try:
            self.controller.unblock_writes(event.source_region)
        except Exception:
            logger.exception("Could not re-enable writes on %s", event.source_region)

    def _roll_back(self, event: FailoverEvent, promoted: bool) -> None:
        event.rollback_attempted = True
        self._transition(event, FailoverState.rolling_back, event.error_message)
        try:
            if promoted:
                try:
                    self.controller.block_writes(event.target_region)
                except Exception:
                    logger.warning("Could not fence promoted region %s", event.target_region, exc_info=True)
            self.router.update_target(event.source_region)
            self.controller.unblock_writes(event.source_region)
        except Exception as e:
            logger.exception("Rollback of failover %s failed", event.event_id)
            self.db.rollback()
            event.rollback_successful = False
            event.rollback_error = f"{type(e).__name__}: {e}"[:2000]
            event.completed = False
            self._finish(event, FailoverState.rolled_back, FailoverOutcome.rollback_failed, "rollback failed")
            self._notify(
                AlertSeverity.critical,
                f"Rollback of failover {event.source_region} -> {event.target_region} failed: {event.rollback_error}. "
                "Manual intervention required.",
                {"event_id": str(event.event_id), "source_region": event.source_region},
                title=f"Failover rollback failed for {event.source_region}",
            )
            return

        event.rollback_successful = True
        event.completed = False
        self._finish(event, FailoverState.rolled_back, FailoverOutcome.rolled_back, f"{event.source_region} restored")
        self._notify(
            AlertSeverity.warning,
            f"Failover of {event.source_region} to {event.target_region} rolled back: {event.error_message}",
            {"event_id": str(event.event_id)},
            title=f"Failover rolled back for {event.source_region}",
        )

    def _notify(self, severity: AlertSeverity, message: str, context: dict, title: str) -> None:
        if self.notifier is None:
            return
        self.notifier.notify(severity, message, context, title=title)
        self.db.commit()
