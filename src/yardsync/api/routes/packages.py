"""Package status route: the primary write that feeds auto-sync."""
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel

from yardsync.models.records import PackageStatus
from yardsync.sync.coordinator import SyncCoordinator, get_coordinator

router = APIRouter()


class StatusChangeRequest(BaseModel):
    status: PackageStatus


@router.patch("/{package_id}/status")
def change_status(
    package_id: int,
    request: StatusChangeRequest,
    background_tasks: BackgroundTasks,
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    """
    Commit the new status, then hand the change to auto-sync as a background
    task. The response never waits on (or fails because of) the remote system.
    """
    event = coordinator.change_package_status(package_id, request.status.value)
    if event is None:
        raise HTTPException(status_code=404, detail=f"Package {package_id} not found")

    background_tasks.add_task(coordinator.auto_sync.handle, event)
    return {
        "package_id": package_id,
        "old_status": event.old_status,
        "new_status": event.new_status,
    }
