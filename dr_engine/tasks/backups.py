"""Backup Tasks — scheduler tick, on-demand execution and retention sweep."""

from __future__ import annotations

import logging
import time
from uuid import UUID

from celery import shared_task

from dr_engine.db import SessionLocal
from dr_engine.metrics import observe_job

logger = logging.getLogger(__name__)


@shared_task(bind=True, max_retries=2, default_retry_delay=60)
def run_scheduled_backups(self) -> dict:
    """Periodic task: claim due backup jobs and dispatch one execution task per job.

    Claiming advances ``next_execution_at`` before dispatch, so a tick that
    runs twice in the same minute dispatches nothing the second time.
    """
    start = time.monotonic()
    with SessionLocal() as db:
        from dr_engine.services.dr_service import DisasterRecoveryService

        jobs = DisasterRecoveryService(db).backups.claim_due_jobs()
        job_ids = [str(job.job_id) for job in jobs]

    dispatched: list[str] = []
    errors = 0
    for job_id in job_ids:
        try:
            execute_backup.delay(job_id)
            dispatched.append(job_id)
        except Exception:
            logger.exception("Failed to dispatch backup job %s", job_id)
            errors += 1

    observe_job("run_scheduled_backups", "success" if not errors else "partial", time.monotonic() - start)
    logger.info("Backup scheduler tick: %d dispatched, %d errors", len(dispatched), errors)
    return {"dispatched": dispatched, "errors": errors}


@shared_task
def execute_backup(job_id: str, backup_type: str | None = None, execution_id: str | None = None) -> dict:
    """Run a backup; ``execution_id`` names an execution already claimed by the caller."""
    start = time.monotonic()
    with SessionLocal() as db:
        from dr_engine.models.backup import BackupType
        from dr_engine.services.dr_service import DisasterRecoveryService

        backups = DisasterRecoveryService(db).backups
        if execution_id:
            execution = backups.run_claimed(UUID(execution_id))
        else:
            override = BackupType(backup_type) if backup_type else None
            execution = backups.execute_now(UUID(job_id), type_override=override)
        db.commit()
        result = {
            "execution_id": str(execution.execution_id),
            "backup_type": execution.backup_type.value,
            "status": execution.status.value,
        }
    observe_job("execute_backup", result["status"], time.monotonic() - start)
    return result


@shared_task(bind=True, max_retries=2, default_retry_delay=120)
def prune_expired_backups(self) -> dict:
    """Periodic task: delete executions past retention."""
    start = time.monotonic()
    with SessionLocal() as db:
        from dr_engine.services.dr_service import DisasterRecoveryService

        result = DisasterRecoveryService(db).backups.prune_expired()
        db.commit()

    observe_job("prune_expired_backups", "success", time.monotonic() - start)
    logger.info("Retention sweep pruned %d executions", result["pruned"])
    return result
