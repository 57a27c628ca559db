"""
Backup Service — scheduled full, incremental and log-archive backups.

Each execution exports data through the DataSource, gzips it, stores it
through the StorageBackend and verifies the stored bytes by reading them back.
At most one execution per job runs at a time: the running execution carries
the job id in a unique column, so a second claim fails atomically.
"""

from __future__ import annotations

import gzip
import logging
import re
import time
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dr_engine.config import settings
from dr_engine.errors import ConfigurationError, NotFoundError, StorageError
from dr_engine.metrics import (
    BACKUP_CONSECUTIVE_FAILURES,
    BACKUP_EXECUTIONS,
    BACKUP_LAST_SUCCESS,
    BACKUP_SIZE,
)
from dr_engine.models.backup import (
    BackupExecution,
    BackupJob,
    BackupType,
    ExecutionStatus,
    VerificationStatus,
)
from dr_engine.models.dr_alert import AlertSeverity
from dr_engine.models.dr_configuration import DRConfiguration
from dr_engine.services.common import as_utc, call_with_read_retry, next_cron_time, utcnow, validate_cron
from dr_engine.services.data_source import DataSource
from dr_engine.services.notification_service import Notifier
from dr_engine.services.storage_backend import StorageBackend, sha256_hex

logger = logging.getLogger(__name__)

CHAIN_TYPES = (BackupType.full, BackupType.incremental)


def _slug(value: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_.-]+", "-", value).strip("-") or "job"


class BackupService:
    def __init__(
        self,
        db: Session,
        storage: StorageBackend,
        source: DataSource | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.storage = storage
        self.source = source
        self.notifier = notifier
        self.clock = clock

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def schedule_job(
        self,
        name: str,
        backup_type: BackupType = BackupType.full,
        scope: dict | None = None,
        config_id: UUID | None = None,
        schedule_cron: str | None = None,
        retention_days: int | None = None,
        storage_prefix: str = "",
        allow_concurrent: bool = True,
    ) -> BackupJob:
        """Register a backup job; cron and retention default to the configuration's."""
        config = None
        if config_id is not None:
            config = self.db.get(DRConfiguration, config_id)
            if not config:
                raise NotFoundError("DR configuration not found", {"config_id": str(config_id)})

        cron = validate_cron(schedule_cron or (config.backup_schedule_cron if config else "0 2 * * *"))
        retention = retention_days if retention_days is not None else (config.retention_days if config else 30)
        if retention <= 0:
            raise ConfigurationError("Retention days must be positive")
        if self.db.scalar(select(BackupJob.job_id).where(BackupJob.name == name)):
            raise ConfigurationError(f"Backup job {name!r} already exists")

        job = BackupJob(
            name=name,
            config_id=config_id,
            backup_type=backup_type,
            scope=scope or {},
            schedule_cron=cron,
            retention_days=retention,
            storage_prefix=storage_prefix.strip("/"),
            allow_concurrent=allow_concurrent,
            next_execution_at=next_cron_time(cron, self.clock()),
        )
        self.db.add(job)
        self.db.flush()
        logger.info("Scheduled %s backup job %s (%s)", backup_type.value, name, cron)
        return job

    def get_job(self, job_id: UUID) -> BackupJob:
        job = self.db.get(BackupJob, job_id)
        if not job:
            raise NotFoundError("Backup job not found", {"job_id": str(job_id)})
        return job

    def list_jobs(self, active_only: bool = True) -> list[BackupJob]:
        stmt = select(BackupJob).order_by(BackupJob.name)
        if active_only:
            stmt = stmt.where(BackupJob.is_active.is_(True))
        return list(self.db.scalars(stmt).all())

    def deactivate_job(self, job_id: UUID) -> BackupJob:
        job = self.get_job(job_id)
        job.is_active = False
        job.next_execution_at = None
        self.db.flush()
        return job

    def job_statistics(self, job_id: UUID) -> dict:
        job = self.get_job(job_id)
        success_rate = (job.successful_runs / job.total_runs * 100.0) if job.total_runs else 0.0
        return {
            "job_id": str(job.job_id),
            "name": job.name,
            "total_runs": job.total_runs,
            "successful_runs": job.successful_runs,
            "failed_runs": job.failed_runs,
            "consecutive_failures": job.consecutive_failures,
            "success_rate": round(success_rate, 2),
            "last_run_at": as_utc(job.last_run_at),
            "last_success_at": as_utc(job.last_success_at),
            "next_execution_at": as_utc(job.next_execution_at),
            "avg_duration_seconds": job.avg_duration_seconds,
            "avg_size_bytes": job.avg_size_bytes,
        }

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    def execution_status(self, execution_id: UUID) -> BackupExecution:
        execution = self.db.get(BackupExecution, execution_id)
        if not execution:
            raise NotFoundError("Backup execution not found", {"execution_id": str(execution_id)})
        return execution

    def list_executions(self, job_id: UUID, limit: int = 100, offset: int = 0) -> list[BackupExecution]:
        stmt = (
            select(BackupExecution)
            .where(BackupExecution.job_id == job_id)
            .order_by(BackupExecution.started_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(self.db.scalars(stmt).all())

    def running_execution(self, job_id: UUID) -> BackupExecution | None:
        stmt = select(BackupExecution).where(BackupExecution.running_job_id == job_id)
        return self.db.scalars(stmt).first()

    def latest_successful(
        self,
        job_id: UUID,
        types: Iterable[BackupType] = CHAIN_TYPES,
        before: datetime | None = None,
    ) -> BackupExecution | None:
        stmt = select(BackupExecution).where(
            BackupExecution.job_id == job_id,
            BackupExecution.status == ExecutionStatus.completed,
            BackupExecution.backup_type.in_(list(types)),
        )
        if before is not None:
            stmt = stmt.where(BackupExecution.started_at <= before)
        return self.db.scalars(stmt.order_by(BackupExecution.started_at.desc())).first()

    def execute_now(
        self,
        job_id: UUID,
        type_override: BackupType | None = None,
        now: datetime | None = None,
    ) -> BackupExecution:
        """Run a backup for ``job_id`` unless one is already running.

        Returns the running execution when the job is busy, otherwise the
        finalized execution of this run.
        """
        execution, claimed = self.claim(job_id, type_override, now)
        if not claimed:
            return execution
        return self._run(self.get_job(execution.job_id), execution)

    def claim(
        self,
        job_id: UUID,
        type_override: BackupType | None = None,
        now: datetime | None = None,
    ) -> tuple[BackupExecution, bool]:
        """Commit a running execution for ``job_id``.

        Returns ``(execution, True)`` for a new claim and the execution that
        already holds the job with ``False`` otherwise.
        """
        job = self.get_job(job_id)
        if self.source is None:
            raise ConfigurationError("No data source configured for backups")

        running = self.running_execution(job_id)
        if running is not None:
            logger.info("Backup job %s already running as %s", job.name, running.execution_id)
            return running, False

        requested = type_override or job.backup_type
        effective, base = self._resolve_base(job, requested)
        execution = BackupExecution(
            job_id=job.job_id,
            running_job_id=job.job_id,
            backup_type=effective,
            status=ExecutionStatus.running,
            base_execution_id=base.execution_id if base else None,
            data_since=base.data_through if base else None,
            started_at=now or self.clock(),
        )
        self.db.add(execution)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            running = self.running_execution(job_id)
            if running is None:
                raise
            logger.info("Backup job %s claimed concurrently by %s", job.name, running.execution_id)
            return running, False

        if effective != requested:
            logger.info("No base for %s backup of %s; running %s", requested.value, job.name, effective.value)
        return execution, True

    def run_claimed(self, execution_id: UUID) -> BackupExecution:
        """Run an execution returned by :meth:`claim`; finished ones are returned as-is."""
        execution = self.execution_status(execution_id)
        if execution.status != ExecutionStatus.running:
            return execution
        if self.source is None:
            raise ConfigurationError("No data source configured for backups")
        return self._run(self.get_job(execution.job_id), execution)

    def release_claim(self, execution_id: UUID, reason: str) -> BackupExecution:
        """Fail a claimed execution that never started so the job can run again."""
        execution = self.execution_status(execution_id)
        if execution.status != ExecutionStatus.running:
            return execution
        execution.status = ExecutionStatus.failed
        execution.running_job_id = None
        execution.verification = VerificationStatus.failed
        execution.error_message = reason[:2000]
        execution.finished_at = max(self.clock(), as_utc(execution.started_at))
        self.db.commit()
        logger.warning("Released backup claim %s: %s", execution_id, reason)
        return execution

    def _resolve_base(self, job: BackupJob, requested: BackupType) -> tuple[BackupType, BackupExecution | None]:
        match requested:
            case BackupType.full:
                return BackupType.full, None
            case BackupType.incremental:
                base = self.latest_successful(job.job_id, CHAIN_TYPES)
            case BackupType.log_archive:
                base = self.latest_successful(job.job_id, (BackupType.log_archive, BackupType.full))
        if base is None:
            return BackupType.full, None
        return requested, base

    def _artifact_key(self, job: BackupJob, execution: BackupExecution) -> str:
        stamp = as_utc(execution.started_at).strftime("%Y%m%dT%H%M%SZ")
        name = f"{stamp}-{execution.execution_id.hex[:12]}-{execution.backup_type.value}.jsonl.gz"
        parts = [p for p in (job.storage_prefix, _slug(job.name), name) if p]
        return "/".join(parts)

    def _run(self, job: BackupJob, execution: BackupExecution) -> BackupExecution:
        start = time.monotonic()
        try:
            exported = self.source.export(
                execution.backup_type,
                job.scope or {},
                as_utc(execution.data_since),
            )
            compressed = gzip.compress(exported.payload, mtime=0)
            key = self._artifact_key(job, execution)
            execution.artifact_key = key
            checksum = self.storage.put(key, compressed)

            stored = call_with_read_retry(self.storage.get, key, description=f"read back {key}")
            if sha256_hex(stored) != checksum:
                raise StorageError(f"Checksum mismatch on read-back of {key}")

            execution.checksum = checksum
            execution.verification = VerificationStatus.verified
            execution.size_bytes = len(compressed)
            execution.raw_size_bytes = len(exported.payload)
            execution.row_count = exported.row_count
            execution.data_through = exported.latest_change_at or execution.data_since or execution.started_at
            self._finalize(job, execution, ExecutionStatus.completed, time.monotonic() - start)
            logger.info(
                "Backup %s of %s completed: %d rows, %d bytes",
                execution.backup_type.value,
                job.name,
                exported.row_count,
                len(compressed),
            )
        except Exception as e:
            logger.exception("Backup %s of %s failed", execution.execution_id, job.name)
            partial_key = execution.artifact_key
            self.db.rollback()
            if partial_key:
                self._discard_artifact(partial_key)
            execution.error_message = str(e)[:2000]
            execution.verification = VerificationStatus.failed
            self._finalize(job, execution, ExecutionStatus.failed, time.monotonic() - start)
        return execution

    def _discard_artifact(self, key: str) -> None:
        try:
            self.storage.delete(key)
        except Exception:
            logger.warning("Could not delete partial artifact %s", key, exc_info=True)

    def _finalize(self, job: BackupJob, execution: BackupExecution, status: ExecutionStatus, duration: float) -> None:
        finished = max(self.clock(), as_utc(execution.started_at))
        execution.status = status
        execution.running_job_id = None
        execution.finished_at = finished
        execution.duration_seconds = round(duration, 3)

        job.total_runs = (job.total_runs or 0) + 1
        job.last_run_at = finished
        if status == ExecutionStatus.completed:
            job.successful_runs = (job.successful_runs or 0) + 1
            job.consecutive_failures = 0
            job.last_success_at = finished
            n = job.successful_runs
            job.avg_duration_seconds = (job.avg_duration_seconds or 0.0) + (duration - (job.avg_duration_seconds or 0.0)) / n
            job.avg_size_bytes = (job.avg_size_bytes or 0.0) + ((execution.size_bytes or 0) - (job.avg_size_bytes or 0.0)) / n
            BACKUP_LAST_SUCCESS.labels(job=job.name).set(finished.timestamp())
            BACKUP_SIZE.labels(job=job.name).set(execution.size_bytes or 0)
        else:
            job.failed_runs = (job.failed_runs or 0) + 1
            job.consecutive_failures = (job.consecutive_failures or 0) + 1
        BACKUP_EXECUTIONS.labels(job=job.name, backup_type=execution.backup_type.value, status=status.value).inc()
        BACKUP_CONSECUTIVE_FAILURES.labels(job=job.name).set(job.consecutive_failures)
        self.db.commit()

        if status == ExecutionStatus.failed and job.consecutive_failures >= settings.backup_failure_threshold:
            self._alert_failures(job, execution)

    def _alert_failures(self, job: BackupJob, execution: BackupExecution) -> None:
        if self.notifier is None:
            return
        self.notifier.notify(
            AlertSeverity.critical,
            f"Backup job {job.name} failed {job.consecutive_failures} times in a row. "
            f"Last error: {execution.error_message or 'unknown'}",
            {"job_id": str(job.job_id), "execution_id": str(execution.execution_id)},
            title=f"Backup job {job.name} is failing",
        )
        self.db.commit()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _others_running(self, job_id: UUID) -> bool:
        stmt = select(func.count(BackupExecution.execution_id)).where(
            BackupExecution.status == ExecutionStatus.running,
            BackupExecution.job_id != job_id,
        )
        return bool(self.db.scalar(stmt))

    def claim_due_jobs(self, now: datetime | None = None) -> list[BackupJob]:
        """Advance ``next_execution_at`` of every due job and return them.

        The schedule is moved forward and committed before anything runs, so a
        tick issued twice for the same minute claims nothing the second time.
        Serial jobs stay due while any other execution is running.
        """
        now = now or self.clock()
        stmt = (
            select(BackupJob)
            .where(
                BackupJob.is_active.is_(True),
                BackupJob.next_execution_at.is_not(None),
                BackupJob.next_execution_at <= now,
            )
            .order_by(BackupJob.next_execution_at)
        )
        due: list[BackupJob] = []
        for job in self.db.scalars(stmt).all():
            if not job.allow_concurrent and self._others_running(job.job_id):
                logger.info("Skipping serial backup job %s while other backups run", job.name)
                continue
            job.next_execution_at = next_cron_time(job.schedule_cron, now)
            due.append(job)
        self.db.commit()
        return due

    def run_due_jobs(self, now: datetime | None = None) -> list[BackupExecution]:
        now = now or self.clock()
        return [self.execute_now(job.job_id, now=now) for job in self.claim_due_jobs(now)]

    # ------------------------------------------------------------------
    # Restore support
    # ------------------------------------------------------------------

    def restore_chain(
        self,
        job_id: UUID,
        until: datetime | None = None,
        include_logs: bool = False,
    ) -> list[BackupExecution]:
        """Latest full backup (before ``until``) followed by later chain members."""
        full = self.latest_successful(job_id, (BackupType.full,), before=until)
        if full is None:
            return []
        types = [BackupType.incremental]
        if include_logs:
            types.append(BackupType.log_archive)
        stmt = (
            select(BackupExecution)
            .where(
                BackupExecution.job_id == job_id,
                BackupExecution.status == ExecutionStatus.completed,
                BackupExecution.backup_type.in_(types),
                BackupExecution.started_at > full.started_at,
            )
            .order_by(BackupExecution.started_at)
        )
        return [full, *self.db.scalars(stmt).all()]

    def load_artifact(self, execution: BackupExecution) -> bytes:
        """Fetch an artifact, verify its stored checksum and decompress it."""
        if not execution.artifact_key:
            raise StorageError(f"Execution {execution.execution_id} has no artifact")
        data = call_with_read_retry(self.storage.get, execution.artifact_key, description="load artifact")
        if sha256_hex(data) != execution.checksum:
            raise StorageError(
                f"Checksum mismatch for {execution.artifact_key}",
                {"execution_id": str(execution.execution_id)},
            )
        return gzip.decompress(data)

    def mark_recovery_tested(self, executions: Iterable[BackupExecution]) -> None:
        for execution in executions:
            execution.recovery_tested = True
        self.db.flush()

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def prune_expired(self, now: datetime | None = None) -> dict:
        now = now or self.clock()
        grace = timedelta(days=settings.retention_grace_days)
        pruned = kept_tested = 0
        for job in self.db.scalars(select(BackupJob)).all():
            cutoff = now - timedelta(days=job.retention_days)
            anchor = self.latest_successful(job.job_id, (BackupType.full,))
            stmt = select(BackupExecution).where(
                BackupExecution.job_id == job.job_id,
                BackupExecution.status != ExecutionStatus.running,
                BackupExecution.started_at < cutoff,
            )
            for execution in self.db.scalars(stmt).all():
                if anchor is not None:
                    if execution.execution_id == anchor.execution_id:
                        continue
                    # Chain members newer than the anchor are still needed for restores.
                    if (
                        execution.status == ExecutionStatus.completed
                        and as_utc(execution.started_at) > as_utc(anchor.started_at)
                    ):
                        continue
                if execution.recovery_tested and as_utc(execution.started_at) + grace >= cutoff:
                    kept_tested += 1
                    continue
                key = execution.artifact_key
                self.db.delete(execution)
                self.db.commit()
                pruned += 1
                if key:
                    self._discard_artifact(key)
        if pruned:
            logger.info("Pruned %d expired backup executions", pruned)
        return {"pruned": pruned, "kept_recovery_tested": kept_tested}
