"""Auto-sync settings routes."""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ValidationError

from yardsync.models.records import PackageStatus
from yardsync.sync.auto_sync import AutoSyncConfig
from yardsync.sync.coordinator import SyncCoordinator, get_coordinator

router = APIRouter()


class AutoSyncConfigUpdate(BaseModel):
    enabled: Optional[bool] = None
    trigger_statuses: Optional[List[PackageStatus]] = None
    retry_attempts: Optional[int] = None
    retry_delay_seconds: Optional[float] = None


@router.get("/auto-sync", response_model=AutoSyncConfig)
def get_auto_sync(coordinator: SyncCoordinator = Depends(get_coordinator)):
    return coordinator.get_auto_sync_config()


@router.patch("/auto-sync", response_model=AutoSyncConfig)
def update_auto_sync(
    update: AutoSyncConfigUpdate,
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    """Partial update; omitted fields keep their saved values."""
    try:
        return coordinator.update_auto_sync_config(update.model_dump(exclude_unset=True))
    except (ValidationError, ValueError) as exc:
        raise HTTPException(status_code=422, detail=str(exc))
