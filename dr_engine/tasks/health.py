"""
Health Tasks — Celery beat tasks for health snapshots of the primary region.
"""

import logging
import time

from celery import shared_task

from dr_engine.config import settings
from dr_engine.db import SessionLocal
from dr_engine.metrics import observe_job

logger = logging.getLogger(__name__)


@shared_task(bind=True, max_retries=3, default_retry_delay=30)
def capture_health_snapshot(self, primary_region: str | None = None) -> dict:
    """Snapshot the primary region's health and let the failover policy react."""
    region = primary_region or settings.primary_region
    start = time.monotonic()

    with SessionLocal() as db:
        from dr_engine.services.dr_service import DisasterRecoveryService

        snap, failover = DisasterRecoveryService(db).monitor(region)
        db.commit()
        result = {
            "snapshot_id": str(snap.snapshot_id),
            "severity": snap.severity.value,
            "failover_recommended": snap.failover_recommended,
            "failover_event_id": str(failover.event_id) if failover else None,
        }

    observe_job("capture_health_snapshot", "success", time.monotonic() - start)
    logger.info(
        "Health snapshot for %s: %s (failover recommended: %s)",
        region,
        result["severity"],
        result["failover_recommended"],
    )
    return result


@shared_task
def prune_health_snapshots() -> int:
    with SessionLocal() as db:
        from dr_engine.services.dr_service import DisasterRecoveryService

        deleted = DisasterRecoveryService(db).health.prune()
        db.commit()
        return deleted
