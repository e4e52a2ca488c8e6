"""
Best-effort single-package sync triggered by local status changes.

The status write commits first; the sync is scheduled afterwards as a
detached task (or a request background task), so a slow or broken remote
system can never fail the primary write. Failures are retried under the
operator's retry_attempts / retry_delay_seconds, then logged and written to
the SyncLog table. They are never raised to the caller.
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional, Set

from pydantic import BaseModel, Field
from sqlmodel import Session, col, select

from yardsync.models.records import PackageStatus
from yardsync.models.sync import AutoSyncConfigRow, SyncLog
from yardsync.remote.client import RemoteSyncSource
from yardsync.remote.normalizer import normalize_packages, shipment_id
from yardsync.sync.errors import MappingError
from yardsync.sync.repository import RecordRepository
from yardsync.sync.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_TRIGGER_STATUSES = frozenset({
    PackageStatus.ARRIVED,
    PackageStatus.READY_FOR_PICKUP,
    PackageStatus.PICKED_UP,
})


class AutoSyncConfig(BaseModel):
    enabled: bool = False
    trigger_statuses: FrozenSet[PackageStatus] = DEFAULT_TRIGGER_STATUSES
    retry_attempts: int = Field(default=3, ge=0)
    retry_delay_seconds: float = Field(default=30.0, ge=0)

    class Config:
        frozen = True


@dataclass(frozen=True)
class StatusChangeEvent:
    record_id: int
    old_status: Optional[str]
    new_status: str
    occurred_at: datetime = field(default_factory=datetime.utcnow)


class AutoSyncConfigStore:
    """
    The one load/save path for AutoSyncConfig.

    get() serves an in-process cache; update() saves the configuration row
    and invalidates the cache so the next read reloads it.
    """

    def __init__(self, engine):
        self.engine = engine
        self._cached: Optional[AutoSyncConfig] = None

    def get(self) -> AutoSyncConfig:
        if self._cached is None:
            self._cached = self._load()
        return self._cached

    def invalidate(self) -> None:
        self._cached = None

    def update(self, changes: Dict[str, Any]) -> AutoSyncConfig:
        """
        Apply a partial update and persist it.

        Raises:
            ValueError: on unknown keys.
            pydantic.ValidationError: on out-of-range values.
        """
        unknown = set(changes) - set(AutoSyncConfig.model_fields)
        if unknown:
            raise ValueError(f"Unknown auto-sync settings: {', '.join(sorted(unknown))}")

        merged = self.get().model_dump()
        merged.update({k: v for k, v in changes.items() if v is not None})
        config = AutoSyncConfig(**merged)

        with Session(self.engine) as s:
            row = self._row(s)
            row.is_enabled = config.enabled
            row.trigger_statuses_json = json.dumps(sorted(st.value for st in config.trigger_statuses))
            row.retry_attempts = config.retry_attempts
            row.retry_delay_seconds = config.retry_delay_seconds
            row.updated_at = datetime.utcnow()
            s.add(row)
            s.commit()

        self.invalidate()
        logger.info(
            "Auto-sync config saved: enabled=%s statuses=%s retries=%d delay=%.0fs",
            config.enabled, sorted(st.value for st in config.trigger_statuses),
            config.retry_attempts, config.retry_delay_seconds,
        )
        return self.get()

    def _load(self) -> AutoSyncConfig:
        with Session(self.engine) as s:
            row = self._row(s)
            return AutoSyncConfig(
                enabled=row.is_enabled,
                trigger_statuses=frozenset(json.loads(row.trigger_statuses_json or "[]")),
                retry_attempts=row.retry_attempts,
                retry_delay_seconds=row.retry_delay_seconds,
            )

    @staticmethod
    def _row(s: Session) -> AutoSyncConfigRow:
        row = s.exec(select(AutoSyncConfigRow).order_by(AutoSyncConfigRow.id)).first()
        if row is None:
            row = AutoSyncConfigRow()
            s.add(row)
            s.commit()
            s.refresh(row)
        return row


class AutoSyncTrigger:
    """Reacts to package status changes with a bounded, retried, single-package sync."""

    def __init__(
        self,
        config_store: AutoSyncConfigStore,
        remote: RemoteSyncSource,
        repository: RecordRepository,
        *,
        max_concurrency: int = 4,
        timeout_seconds: float = 30.0,
        sleep=asyncio.sleep,
    ):
        self.config_store = config_store
        self.remote = remote
        self.repository = repository
        self.timeout_seconds = timeout_seconds
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._in_flight: Set[int] = set()
        self._tasks: Set[asyncio.Task] = set()

    def on_status_changed(self, event: StatusChangeEvent) -> Optional[asyncio.Task]:
        """Schedule a detached sync for the event. Returns the task, or None for a no-op.

        Raises:
            RuntimeError: outside a running event loop. Nothing is marked in flight then.
        """
        loop = asyncio.get_running_loop()
        config = self._accept(event)
        if config is None:
            return None
        task = loop.create_task(
            self._sync(event, config), name=f"auto-sync-{event.record_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def handle(self, event: StatusChangeEvent) -> None:
        """Awaitable form of on_status_changed, for request background tasks."""
        config = self._accept(event)
        if config is not None:
            await self._sync(event, config)

    async def drain(self) -> None:
        """Wait for every scheduled sync to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def recent_log(self, package_id: Optional[int] = None, limit: int = 50) -> List[SyncLog]:
        with Session(self.repository.engine) as s:
            query = select(SyncLog).order_by(col(SyncLog.created_at).desc(), col(SyncLog.id).desc())
            if package_id is not None:
                query = query.where(SyncLog.package_id == package_id)
            return list(s.exec(query.limit(limit)).all())

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _accept(self, event: StatusChangeEvent) -> Optional[AutoSyncConfig]:
        config = self.config_store.get()
        if not config.enabled:
            return None
        if event.new_status not in {st.value for st in config.trigger_statuses}:
            return None
        if event.record_id in self._in_flight:
            # Events are delivered at least once; one sync per package at a time is enough
            logger.debug("Auto-sync for package %s already in flight", event.record_id)
            return None
        self._in_flight.add(event.record_id)
        return config

    async def _sync(self, event: StatusChangeEvent, config: AutoSyncConfig) -> None:
        package_id = event.record_id
        external_id: Optional[str] = None
        remote_id: Optional[str] = None
        customer_id: Optional[int] = None
        attempts = 0

        async def attempt() -> None:
            nonlocal attempts
            attempts += 1
            raw = await asyncio.wait_for(
                self.remote.fetch_one(remote_id), timeout=self.timeout_seconds
            )
            fields = _package_fields_for(raw, external_id)
            fields["customer_id"] = customer_id
            self.repository.upsert_child(external_id, fields)

        try:
            async with self._semaphore:
                package = self.repository.get_package(package_id)
                if package is None or not package.external_id:
                    logger.info("Auto-sync skipped for package %s: not linked to a remote shipment", package_id)
                    self._write_log(package_id, None, "skipped", 0, None)
                    return
                external_id = package.external_id
                remote_id = _remote_shipment_id(package.raw_remote_json) or external_id
                customer_id = package.customer_id

                policy = RetryPolicy(
                    max_retries=config.retry_attempts,
                    delay_seconds=config.retry_delay_seconds,
                    sleep=self._sleep,
                )
                await policy.call(attempt)

            self._write_log(package_id, external_id, "success", attempts, None)
            logger.info("Auto-synced package %s (%s) after %s -> %s", package_id, external_id, event.old_status, event.new_status)

        except Exception as exc:
            logger.error(
                "Auto-sync for package %s (%s) failed after %d attempts: %s",
                package_id, external_id, attempts, exc,
            )
            self._write_log(package_id, external_id, "failed", attempts, str(exc))
        finally:
            self._in_flight.discard(package_id)

    def _write_log(
        self,
        package_id: int,
        external_id: Optional[str],
        status: str,
        attempts: int,
        error_message: Optional[str],
    ) -> None:
        try:
            with Session(self.repository.engine) as s:
                s.add(SyncLog(
                    package_id=package_id,
                    external_id=external_id,
                    sync_type="auto_sync",
                    status=status,
                    attempts=attempts,
                    error_message=error_message,
                ))
                s.commit()
        except Exception:
            logger.exception("Failed to write sync log for package %s", package_id)


def _package_fields_for(raw: Dict[str, Any], external_id: str) -> Dict[str, Any]:
    """Pick the normalized package matching external_id out of a fetched shipment."""
    for fields in normalize_packages(raw):
        if fields["external_id"] == external_id:
            return fields
    raise MappingError(f"shipment no longer lists package {external_id}", external_id=external_id)


def _remote_shipment_id(raw_json: Optional[str]) -> Optional[str]:
    """Shipment id from the last stored payload; items are fetched through their shipment."""
    if not raw_json:
        return None
    try:
        raw = json.loads(raw_json)
    except ValueError:
        return None
    return shipment_id(raw) if isinstance(raw, dict) else None
