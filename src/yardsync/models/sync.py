"""Sync bookkeeping models: bulk sessions, per-package sync log, auto-sync config, rate limits."""
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Index, text
from sqlmodel import Field, SQLModel


class SyncStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = (SyncStatus.PENDING.value, SyncStatus.IN_PROGRESS.value)
TERMINAL_STATUSES = (SyncStatus.COMPLETED.value, SyncStatus.FAILED.value)

# Shared by the table definition and the migration for pre-existing databases
ACTIVE_SESSION_INDEX = "uq_syncsession_active_filter_key"
ACTIVE_SESSION_PREDICATE = "status IN ('pending', 'in_progress')"


class SyncSession(SQLModel, table=True):
    """One bulk import run for a filter key (e.g. a supplier name)."""

    __table_args__ = (
        Index(
            ACTIVE_SESSION_INDEX,
            "filter_key",
            unique=True,
            sqlite_where=text(ACTIVE_SESSION_PREDICATE),
            postgresql_where=text(ACTIVE_SESSION_PREDICATE),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    filter_key: str
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    status: str = SyncStatus.PENDING.value
    total_units: Optional[int] = None  # unknown until the first page arrives
    processed_units: int = 0
    created_records: int = 0
    updated_records: int = 0
    created_related_entities: int = 0
    error_count: int = 0
    last_error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def progress_percent(self) -> float:
        if not self.total_units:
            return 0.0
        return min(self.processed_units / self.total_units * 100.0, 100.0)


class SyncLog(SQLModel, table=True):
    """Records each single-package sync attempt for audit and debugging."""

    id: Optional[int] = Field(default=None, primary_key=True)
    package_id: Optional[int] = Field(default=None, index=True)
    external_id: Optional[str] = None
    sync_type: str = "auto_sync"
    status: str = "success"  # "success", "failed", "skipped"
    attempts: int = 0
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class AutoSyncConfigRow(SQLModel, table=True):
    """Single configuration row backing AutoSyncConfig."""

    id: Optional[int] = Field(default=None, primary_key=True)
    is_enabled: bool = False
    trigger_statuses_json: str = '["arrived", "ready_for_pickup", "picked_up"]'
    retry_attempts: int = 3
    retry_delay_seconds: float = 30.0
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class RateLimitAttempt(SQLModel, table=True):
    """One recorded attempt of a rate-limited action."""

    id: Optional[int] = Field(default=None, primary_key=True)
    action: str = Field(index=True)
    identifier: str = Field(index=True)  # external key, stored lower-cased
    attempted_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    success: bool = False
