"""Disaster Recovery API — configurations, alerts and the status summary."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from dr_engine.api.deps import get_dr_service
from dr_engine.models.dr_alert import AlertSeverity
from dr_engine.schemas.dr import DRAlertRead, DRConfigurationCreate, DRConfigurationRead, DRConfigurationUpdate

router = APIRouter(prefix="/dr", tags=["disaster-recovery"])


@router.get("/status")
def dr_status(
    primary_region: str | None = Query(default=None),
    svc=Depends(get_dr_service),
):
    return svc.status(primary_region)


@router.post("/configurations", status_code=status.HTTP_201_CREATED, response_model=DRConfigurationRead)
def create_configuration(payload: DRConfigurationCreate, svc=Depends(get_dr_service)):
    config = svc.configs.create(**payload.model_dump())
    svc.db.commit()
    return config


@router.get("/configurations", response_model=list[DRConfigurationRead])
def list_configurations(active_only: bool = Query(default=False), svc=Depends(get_dr_service)):
    return svc.configs.list_configs(active_only=active_only)


@router.get("/configurations/{config_id}", response_model=DRConfigurationRead)
def get_configuration(config_id: UUID, svc=Depends(get_dr_service)):
    return svc.configs.get(config_id)


@router.patch("/configurations/{config_id}", response_model=DRConfigurationRead)
def update_configuration(config_id: UUID, payload: DRConfigurationUpdate, svc=Depends(get_dr_service)):
    config = svc.configs.update(config_id, **payload.model_dump(exclude_none=True))
    svc.db.commit()
    return config


@router.get("/alerts", response_model=list[DRAlertRead])
def list_alerts(
    severity: AlertSeverity | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    svc=Depends(get_dr_service),
):
    return svc.recent_alerts(limit=limit, severity=severity)
