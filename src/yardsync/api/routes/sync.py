"""Bulk sync session routes: start, poll, cancel, list, plus the per-package sync log."""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from yardsync.models.sync import SyncLog, SyncSession
from yardsync.sync.coordinator import SyncCoordinator, get_coordinator
from yardsync.sync.errors import SessionConflict, SessionNotFound

router = APIRouter()

RATE_LIMIT_ACTION = "bulk_sync"


class StartSessionRequest(BaseModel):
    filter_key: str  # supplier name the import is scoped to


class StartSessionResponse(BaseModel):
    session_id: int
    filter_key: str


class SessionProgressResponse(BaseModel):
    id: int
    filter_key: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime]
    total_units: Optional[int]
    processed_units: int
    created_records: int
    updated_records: int
    created_related_entities: int
    error_count: int  # always reported next to status
    last_error: Optional[str]
    progress_percent: float


def _progress(row: SyncSession) -> SessionProgressResponse:
    return SessionProgressResponse(
        id=row.id,
        filter_key=row.filter_key,
        status=row.status,
        started_at=row.started_at,
        completed_at=row.completed_at,
        total_units=row.total_units,
        processed_units=row.processed_units,
        created_records=row.created_records,
        updated_records=row.updated_records,
        created_related_entities=row.created_related_entities,
        error_count=row.error_count,
        last_error=row.last_error,
        progress_percent=round(row.progress_percent, 1),
    )


@router.post("/sessions", status_code=202, response_model=StartSessionResponse)
async def start_session(
    request: StartSessionRequest,
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    """
    Start a bulk import for one supplier. Returns immediately; poll
    GET /sync/sessions/{id} for progress.
    """
    limit = coordinator.check_rate_limit(RATE_LIMIT_ACTION, request.filter_key)
    if not limit.allowed:
        detail = "Too many sync attempts for this supplier"
        if limit.reset_time:
            detail += f"; retry after {limit.reset_time.isoformat()}"
        raise HTTPException(status_code=429, detail=detail)

    try:
        session_id = await coordinator.start_session(request.filter_key)
    except SessionConflict as exc:
        coordinator.record_attempt(RATE_LIMIT_ACTION, request.filter_key, success=False)
        raise HTTPException(status_code=409, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))

    coordinator.record_attempt(RATE_LIMIT_ACTION, request.filter_key, success=True)
    return StartSessionResponse(session_id=session_id, filter_key=request.filter_key)


@router.get("/sessions", response_model=List[SessionProgressResponse])
def list_sessions(
    limit: int = 20,
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    """Most recent sessions first."""
    return [_progress(row) for row in coordinator.list_sessions(limit)]


@router.get("/sessions/{session_id}", response_model=SessionProgressResponse)
def session_progress(
    session_id: int,
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    try:
        return _progress(coordinator.get_progress(session_id))
    except SessionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.post("/sessions/{session_id}/cancel")
def cancel_session(
    session_id: int,
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    try:
        cancelled = coordinator.cancel_session(session_id)
    except SessionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"session_id": session_id, "cancelled": cancelled}


@router.get("/log", response_model=List[SyncLog])
def sync_log(
    package_id: Optional[int] = None,
    limit: int = 50,
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    """Recent single-package sync attempts, newest first."""
    return coordinator.sync_log(package_id, limit)
