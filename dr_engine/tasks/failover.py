"""Failover Tasks — drive a requested failover event to a terminal state."""

from __future__ import annotations

import logging
import time
from uuid import UUID

from celery import shared_task

from dr_engine.db import SessionLocal
from dr_engine.metrics import observe_job

logger = logging.getLogger(__name__)


@shared_task
def run_failover(event_id: str) -> dict:
    start = time.monotonic()
    with SessionLocal() as db:
        from dr_engine.services.dr_service import DisasterRecoveryService

        result = DisasterRecoveryService(db).failover.run(UUID(event_id))
        db.commit()

    observe_job("run_failover", result.state.value, time.monotonic() - start)
    return {
        "event_id": str(result.event_id),
        "state": result.state.value,
        "outcome": result.outcome.value if result.outcome else None,
        "completed": result.completed,
        "rollback_successful": result.rollback_successful,
        "error": result.error,
    }
