from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from clinicdb.core import Core, get_core
from clinicdb.security import CurrentContext, get_current_context

from . import schemas

router = APIRouter(prefix="/alerts", tags=["alerts"])


@router.get("/", response_model=schemas.AlertScanResult)
def scan_alerts(
    threshold_days: Optional[int] = Query(None, ge=0),
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(get_current_context),
):
    return core.alerts.scan(current.clinic_id, threshold_days)


@router.post("/notify", response_model=schemas.AlertScanResult)
def scan_and_notify(
    threshold_days: Optional[int] = Query(None, ge=0),
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(get_current_context),
):
    return core.alerts.scan_and_notify(current.clinic_id, threshold_days)
