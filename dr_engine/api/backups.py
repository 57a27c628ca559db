"""Backup API — jobs, executions and on-demand runs."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from dr_engine.api.deps import get_dr_service
from dr_engine.schemas.dr import BackupExecutionRead, BackupJobCreate, BackupJobRead, ExecuteNowRequest

router = APIRouter(prefix="/dr/jobs", tags=["backups"])


@router.post("", status_code=status.HTTP_201_CREATED, response_model=BackupJobRead)
def schedule_job(payload: BackupJobCreate, svc=Depends(get_dr_service)):
    job = svc.backups.schedule_job(**payload.model_dump())
    svc.db.commit()
    return job


@router.get("", response_model=list[BackupJobRead])
def list_jobs(active_only: bool = Query(default=True), svc=Depends(get_dr_service)):
    return svc.backups.list_jobs(active_only=active_only)


@router.get("/{job_id}", response_model=BackupJobRead)
def get_job(job_id: UUID, svc=Depends(get_dr_service)):
    return svc.backups.get_job(job_id)


@router.delete("/{job_id}", response_model=BackupJobRead)
def deactivate_job(job_id: UUID, svc=Depends(get_dr_service)):
    job = svc.backups.deactivate_job(job_id)
    svc.db.commit()
    return job


@router.get("/{job_id}/statistics")
def job_statistics(job_id: UUID, svc=Depends(get_dr_service)):
    return svc.backups.job_statistics(job_id)


@router.get("/{job_id}/executions", response_model=list[BackupExecutionRead])
def list_executions(
    job_id: UUID,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    svc=Depends(get_dr_service),
):
    svc.backups.get_job(job_id)
    return svc.backups.list_executions(job_id, limit=limit, offset=offset)


@router.post("/{job_id}/execute", status_code=status.HTTP_202_ACCEPTED)
def execute_now(job_id: UUID, payload: ExecuteNowRequest | None = None, svc=Depends(get_dr_service)):
    from dr_engine.tasks.backups import execute_backup

    override = payload.backup_type if payload and payload.backup_type else None
    execution, claimed = svc.backups.claim(job_id, type_override=override)
    if not claimed:
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"queued": False, "execution_id": str(execution.execution_id)},
        )
    try:
        task = execute_backup.delay(str(job_id), override.value if override else None, str(execution.execution_id))
    except Exception as e:
        svc.backups.release_claim(execution.execution_id, f"Could not queue backup: {e}")
        raise
    return {
        "queued": True,
        "task_id": task.id,
        "job_id": str(job_id),
        "execution_id": str(execution.execution_id),
    }


@router.get("/executions/{execution_id}", response_model=BackupExecutionRead)
def execution_status(execution_id: UUID, svc=Depends(get_dr_service)):
    return svc.backups.execution_status(execution_id)
