"""Failover API — trigger, cancel and inspect failover events."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from dr_engine.api.deps import get_dr_service
from dr_engine.schemas.dr import FailoverCancelRequest, FailoverEventRead, FailoverTriggerRequest

router = APIRouter(prefix="/dr/failovers", tags=["failover"])


@router.post("", status_code=status.HTTP_202_ACCEPTED)
def trigger_failover(payload: FailoverTriggerRequest, svc=Depends(get_dr_service)):
    """Open the event synchronously (409 if one is active) and run it in a worker."""
    from dr_engine.tasks.failover import run_failover

    event = svc.failover.open_event(
        payload.source_region,
        payload.target_region,
        payload.trigger_type,
        override_safety_checks=payload.override_safety_checks,
        requested_by=payload.requested_by,
        environment=payload.environment,
    )
    task = run_failover.delay(str(event.event_id))
    return {
        "queued": True,
        "task_id": task.id,
        "event_id": str(event.event_id),
        "target_region": event.target_region,
    }


@router.get("", response_model=list[FailoverEventRead])
def failover_history(
    source_region: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    svc=Depends(get_dr_service),
):
    return svc.failover.history(source_region, limit=limit)


@router.get("/{event_id}", response_model=FailoverEventRead)
def get_failover(event_id: UUID, svc=Depends(get_dr_service)):
    return svc.failover.get_event(event_id)


@router.post("/{event_id}/cancel", response_model=FailoverEventRead)
def cancel_failover(event_id: UUID, payload: FailoverCancelRequest | None = None, svc=Depends(get_dr_service)):
    event = svc.failover.cancel(event_id, payload.requested_by if payload else None)
    svc.db.commit()
    return event
