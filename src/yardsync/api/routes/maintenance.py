"""Reconciliation and rate-limit routes."""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel

from yardsync.sync.coordinator import SyncCoordinator, get_coordinator

router = APIRouter()


class IssueResponse(BaseModel):
    kind: str
    affected_ids: List[int]
    resolution: str
    detail: str
    placeholder: bool
    detected_at: datetime


class ReconciliationResponse(BaseModel):
    issues: List[IssueResponse]
    fixed_count: int
    health: str
    errors: List[str]


class RateLimitRequest(BaseModel):
    action: str
    identifier: str


class AttemptRequest(RateLimitRequest):
    success: bool


class RateLimitResponse(BaseModel):
    allowed: bool
    remaining_attempts: Optional[int] = None
    reset_time: Optional[datetime] = None


@router.post("/reconciliation/run", response_model=ReconciliationResponse)
def run_reconciliation(coordinator: SyncCoordinator = Depends(get_coordinator)):
    """Audit local records, repair orphans and flag duplicate identities."""
    report = coordinator.run_reconciliation()
    return ReconciliationResponse(
        issues=[
            IssueResponse(
                kind=issue.kind.value,
                affected_ids=list(issue.affected_ids),
                resolution=issue.resolution.value,
                detail=issue.detail,
                placeholder=issue.placeholder,
                detected_at=issue.detected_at,
            )
            for issue in report.issues
        ],
        fixed_count=report.fixed_count,
        health=report.health,
        errors=report.errors,
    )


@router.post("/security/rate-limit/check", response_model=RateLimitResponse)
def check_rate_limit(
    request: RateLimitRequest,
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    try:
        status = coordinator.check_rate_limit(request.action, request.identifier)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return RateLimitResponse(
        allowed=status.allowed,
        remaining_attempts=status.remaining_attempts,
        reset_time=status.reset_time,
    )


@router.post("/security/rate-limit/attempts", status_code=204)
def record_attempt(
    request: AttemptRequest,
    coordinator: SyncCoordinator = Depends(get_coordinator),
):
    try:
        coordinator.record_attempt(request.action, request.identifier, request.success)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return Response(status_code=204)
