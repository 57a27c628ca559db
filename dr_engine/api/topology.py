"""Topology API — replication links and health snapshots."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from dr_engine.api.deps import get_dr_service
from dr_engine.schemas.dr import (
    HealthSnapshotRead,
    ReplicationLinkCreate,
    ReplicationLinkRead,
    ReplicationLinkReconfigure,
)

router = APIRouter(prefix="/dr", tags=["topology"])


@router.post("/links", status_code=status.HTTP_201_CREATED, response_model=ReplicationLinkRead)
def establish_link(payload: ReplicationLinkCreate, svc=Depends(get_dr_service)):
    link = svc.replication.establish_link(payload.primary_region, payload.replica_region, payload.mode)
    svc.db.commit()
    return link


@router.get("/links", response_model=list[ReplicationLinkRead])
def list_links(primary_region: str | None = Query(default=None), svc=Depends(get_dr_service)):
    return svc.replication.list_links(primary_region)


@router.get("/links/{link_id}/lag")
def current_lag(link_id: UUID, svc=Depends(get_dr_service)):
    lag = svc.replication.current_lag(link_id)
    link = svc.replication.get_link(link_id)
    svc.db.commit()
    return {"link_id": str(link_id), "lag_seconds": lag.total_seconds(), "health": link.health.value}


@router.patch("/links/{link_id}", response_model=ReplicationLinkRead)
def reconfigure_link(link_id: UUID, payload: ReplicationLinkReconfigure, svc=Depends(get_dr_service)):
    link = svc.replication.reconfigure(link_id, payload.mode)
    svc.db.commit()
    return link


@router.delete("/links/{link_id}", response_model=ReplicationLinkRead)
def retire_link(link_id: UUID, svc=Depends(get_dr_service)):
    link = svc.replication.retire_link(link_id)
    svc.db.commit()
    return link


@router.post("/health/{primary_region}/snapshot", status_code=status.HTTP_201_CREATED, response_model=HealthSnapshotRead)
def take_snapshot(primary_region: str, svc=Depends(get_dr_service)):
    snap = svc.health.snapshot(primary_region)
    svc.db.commit()
    return snap


@router.get("/health/{primary_region}", response_model=HealthSnapshotRead)
def latest_snapshot(primary_region: str, svc=Depends(get_dr_service)):
    snap = svc.health.latest(primary_region)
    if snap is None:
        raise HTTPException(status_code=404, detail="No health snapshot recorded for region")
    return snap


@router.get("/health/{primary_region}/history", response_model=list[HealthSnapshotRead])
def snapshot_history(
    primary_region: str,
    limit: int = Query(default=50, ge=1, le=500),
    svc=Depends(get_dr_service),
):
    return svc.health.history(primary_region, limit=limit)
