"""
Replication Service — primary → replica links across regions.

Lag is measured as the primary's latest commit minus the replica's latest
applied change and is never negative. Read-path queries are retried with
backoff; a link whose lag cannot be measured is marked ``failed``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from dr_engine.config import settings
from dr_engine.errors import ConfigurationError, LagTooHighError, NotFoundError
from dr_engine.metrics import REPLICATION_LAG
from dr_engine.models.dr_configuration import ReplicationMode
from dr_engine.models.replication import LinkHealth, LinkStatus, ReplicationLink
from dr_engine.services.common import TRANSIENT_ERRORS, as_utc, call_with_read_retry, utcnow
from dr_engine.services.region import ReplicationDriver, validate_region_name

logger = logging.getLogger(__name__)


def classify_lag(lag_seconds: float | None) -> LinkHealth:
    if lag_seconds is None:
        return LinkHealth.failed
    if lag_seconds <= settings.lag_warning_seconds:
        return LinkHealth.healthy
    if lag_seconds <= settings.lag_critical_seconds:
        return LinkHealth.warning
    return LinkHealth.critical


class ReplicationService:
    def __init__(
        self,
        db: Session,
        driver: ReplicationDriver,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.driver = driver
        self.clock = clock

    def get_link(self, link_id: UUID) -> ReplicationLink:
        link = self.db.get(ReplicationLink, link_id)
        if not link:
            raise NotFoundError("Replication link not found", {"link_id": str(link_id)})
        return link

    def find_link(self, primary: str, replica: str) -> ReplicationLink | None:
        stmt = select(ReplicationLink).where(
            ReplicationLink.primary_region == primary,
            ReplicationLink.replica_region == replica,
        )
        return self.db.scalars(stmt).first()

    def list_links(self, primary: str | None = None, active_only: bool = False) -> list[ReplicationLink]:
        stmt = select(ReplicationLink).order_by(ReplicationLink.primary_region, ReplicationLink.replica_region)
        if primary is not None:
            stmt = stmt.where(ReplicationLink.primary_region == primary)
        if active_only:
            stmt = stmt.where(ReplicationLink.status == LinkStatus.active)
        return list(self.db.scalars(stmt).all())

    def establish_link(
        self,
        primary: str,
        replica: str,
        mode: ReplicationMode = ReplicationMode.async_,
    ) -> ReplicationLink:
        """Create or re-activate the link; an existing active link is returned as-is."""
        if not primary or not replica:
            raise ConfigurationError("Primary and replica regions are required")
        if primary == replica:
            raise ConfigurationError("A region cannot replicate to itself")
        validate_region_name(primary)
        validate_region_name(replica)

        link = self.find_link(primary, replica)
        if link is not None and link.status == LinkStatus.active:
            return link

        slot_id = self.driver.create_slot(primary, replica)
        if mode == ReplicationMode.sync:
            self.driver.set_mode(primary, replica, mode)

        if link is None:
            link = ReplicationLink(primary_region=primary, replica_region=replica, slot_id=slot_id)
            self.db.add(link)
        else:
            logger.info("Re-activating replication link %s -> %s", primary, replica)
            link.slot_id = slot_id
            link.error_count = 0
        link.mode = mode
        link.status = LinkStatus.active
        link.health = LinkHealth.healthy
        link.last_lag_seconds = None
        link.lag_measured_at = None
        self.db.flush()
        logger.info("Established %s replication %s -> %s (slot %s)", mode.value, primary, replica, slot_id)
        return link

    def _measure(self, link: ReplicationLink) -> float:
        committed = call_with_read_retry(self.driver.latest_commit, link.primary_region, description="latest commit")
        applied = call_with_read_retry(self.driver.latest_applied, link.replica_region, description="latest applied")
        if committed is None:
            return 0.0
        if applied is None:
            raise ConnectionError(f"Replica {link.replica_region} reports no applied changes")
        return max(0.0, (as_utc(committed) - as_utc(applied)).total_seconds())

    def current_lag(self, link_id: UUID) -> timedelta:
        """Measure lag now and record it on the link."""
        link = self.get_link(link_id)
        try:
            lag = self._measure(link)
        except TRANSIENT_ERRORS:
            logger.warning("Lag unavailable for %s -> %s", link.primary_region, link.replica_region, exc_info=True)
            link.health = LinkHealth.failed
            link.error_count = (link.error_count or 0) + 1
            self.db.flush()
            raise
        link.last_lag_seconds = lag
        link.lag_measured_at = self.clock()
        link.health = classify_lag(lag)
        self.db.flush()
        REPLICATION_LAG.labels(primary_region=link.primary_region, replica_region=link.replica_region).set(lag)
        return timedelta(seconds=lag)

    def refresh_all(self, primary: str) -> dict[str, float | None]:
        """Re-measure every active link of ``primary``; unmeasurable links map to None."""
        results: dict[str, float | None] = {}
        for link in self.list_links(primary, active_only=True):
            try:
                results[link.replica_region] = self.current_lag(link.link_id).total_seconds()
            except TRANSIENT_ERRORS:
                results[link.replica_region] = None
        return results

    def max_lag(self, primary: str, refresh: bool = True) -> float | None:
        if refresh:
            values = [v for v in self.refresh_all(primary).values() if v is not None]
        else:
            values = [
                link.last_lag_seconds
                for link in self.list_links(primary, active_only=True)
                if link.last_lag_seconds is not None
            ]
        return max(values) if values else None

    def healthy_fallbacks(
        self, primary: str, exclude: str | None = None, refresh: bool = False
    ) -> list[ReplicationLink]:
        """Active links other than ``exclude`` with a measured, healthy lag."""
        candidates = [
            link for link in self.list_links(primary, active_only=True) if link.replica_region != exclude
        ]
        if refresh:
            for link in candidates:
                try:
                    self.current_lag(link.link_id)
                except TRANSIENT_ERRORS:
                    continue  # current_lag marked the link failed
        return [
            link
            for link in candidates
            if link.health == LinkHealth.healthy and link.last_lag_seconds is not None
        ]

    def best_target(self, primary: str) -> ReplicationLink | None:
        """Active link with the lowest measured lag."""
        candidates = [
            link
            for link in self.list_links(primary, active_only=True)
            if link.last_lag_seconds is not None and link.health != LinkHealth.failed
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda link: link.last_lag_seconds)

    def reconfigure(self, link_id: UUID, mode: ReplicationMode) -> ReplicationLink:
        link = self.get_link(link_id)
        if link.status != LinkStatus.active:
            raise ConfigurationError(f"Link {link_id} is {link.status.value}, not active")
        if link.mode == mode:
            return link
        if mode == ReplicationMode.sync:
            lag = self.current_lag(link_id).total_seconds()
            threshold = settings.sync_switch_max_lag_seconds
            if not lag < threshold:
                raise LagTooHighError(lag, threshold)
        self.driver.set_mode(link.primary_region, link.replica_region, mode)
        link.mode = mode
        self.db.flush()
        logger.info("Reconfigured %s -> %s to %s", link.primary_region, link.replica_region, mode.value)
        return link

    def retire_link(self, link_id: UUID) -> ReplicationLink:
        link = self.get_link(link_id)
        if link.status == LinkStatus.inactive:
            return link
        try:
            self.driver.drop_slot(link.primary_region, link.slot_id)
        except Exception:
            logger.warning("Could not drop slot %s on %s", link.slot_id, link.primary_region, exc_info=True)
        link.status = LinkStatus.inactive
        self.db.flush()
        return link

    def mark_promoted(self, primary: str, replica: str) -> ReplicationLink | None:
        link = self.find_link(primary, replica)
        if link is not None:
            link.status = LinkStatus.promoted
            self.db.flush()
        return link
