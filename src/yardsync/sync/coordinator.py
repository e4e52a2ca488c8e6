"""
SyncCoordinator: the surface the rest of the application talks to.

Wires the session manager, auto-sync trigger, reconciliation service and
rate limiter around one DB engine and one remote source, and exposes the
operations the API routes, the scheduler and the CLI need.
"""
import logging
from typing import Any, Dict, List, Optional

from yardsync.config import Settings, get_settings
from yardsync.models.records import PackageStatus
from yardsync.models.sync import SyncLog, SyncSession
from yardsync.remote.client import RemoteSyncSource
from yardsync.sync.auto_sync import (
    AutoSyncConfig,
    AutoSyncConfigStore,
    AutoSyncTrigger,
    StatusChangeEvent,
)
from yardsync.sync.rate_limit import RateLimiter, RateLimitStatus
from yardsync.sync.reconciliation import ReconciliationReport, ReconciliationService
from yardsync.sync.repository import RecordRepository
from yardsync.sync.retry import RetryPolicy
from yardsync.sync.session_manager import SyncSessionManager

logger = logging.getLogger(__name__)


class SyncCoordinator:
    def __init__(self, engine, remote: RemoteSyncSource, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.engine = engine
        self.remote = remote
        self.repository = RecordRepository(engine)
        self.sessions = SyncSessionManager(
            remote,
            self.repository,
            engine,
            RetryPolicy(
                max_retries=settings.session_retry_attempts,
                delay_seconds=settings.session_retry_delay_seconds,
            ),
            error_ceiling=settings.session_error_ceiling,
            timeout_seconds=settings.remote_timeout_seconds,
        )
        self.auto_sync_config = AutoSyncConfigStore(engine)
        self.auto_sync = AutoSyncTrigger(
            self.auto_sync_config,
            remote,
            self.repository,
            max_concurrency=settings.auto_sync_max_concurrency,
            timeout_seconds=settings.remote_timeout_seconds,
        )
        self.reconciliation = ReconciliationService(self.repository)
        self.rate_limiter = RateLimiter(engine)

    # Bulk sessions
    async def start_session(self, filter_key: str) -> int:
        return await self.sessions.start(filter_key)

    def get_progress(self, session_id: int) -> SyncSession:
        return self.sessions.get_progress(session_id)

    def list_sessions(self, limit: int = 20) -> List[SyncSession]:
        return self.sessions.list_sessions(limit)

    def cancel_session(self, session_id: int) -> bool:
        return self.sessions.cancel(session_id)

    # Auto-sync
    def get_auto_sync_config(self) -> AutoSyncConfig:
        return self.auto_sync_config.get()

    def update_auto_sync_config(self, changes: Dict[str, Any]) -> AutoSyncConfig:
        return self.auto_sync_config.update(changes)

    def change_package_status(self, package_id: int, new_status: str) -> Optional[StatusChangeEvent]:
        """
        Commit a status change (the primary write). Returns the event to hand to
        the auto-sync trigger, or None if the package does not exist.
        """
        new_status = PackageStatus(new_status).value
        old_status = self.repository.set_package_status(package_id, new_status)
        if old_status is None:
            return None
        return StatusChangeEvent(record_id=package_id, old_status=old_status, new_status=new_status)

    def on_status_changed(self, event: StatusChangeEvent):
        return self.auto_sync.on_status_changed(event)

    def sync_log(self, package_id: Optional[int] = None, limit: int = 50) -> List[SyncLog]:
        return self.auto_sync.recent_log(package_id, limit)

    # Reconciliation
    def run_reconciliation(self) -> ReconciliationReport:
        return self.reconciliation.audit_and_repair()

    # Rate limiting
    def check_rate_limit(self, action: str, identifier: str) -> RateLimitStatus:
        return self.rate_limiter.check(action, identifier)

    def record_attempt(self, action: str, identifier: str, success: bool) -> None:
        self.rate_limiter.record(action, identifier, success)

    async def shutdown(self) -> None:
        """Let in-flight auto-syncs finish and release the remote client."""
        await self.auto_sync.drain()
        aclose = getattr(self.remote, "aclose", None)
        if aclose is not None:
            await aclose()


_coordinator: Optional[SyncCoordinator] = None


def get_coordinator() -> SyncCoordinator:
    """Return the process-wide coordinator, building it on first call."""
    global _coordinator
    if _coordinator is None:
        from yardsync.db.engine import get_engine
        from yardsync.remote.client import WarehouseClient

        settings = get_settings()
        remote = WarehouseClient(
            settings.remote_base_url,
            settings.remote_api_token,
            timeout_seconds=settings.remote_timeout_seconds,
            page_size=settings.remote_page_size,
        )
        _coordinator = SyncCoordinator(get_engine(), remote, settings)
        recovered = _coordinator.sessions.recover_interrupted()
        if recovered:
            logger.warning("Closed %d sync session(s) interrupted by a restart", recovered)
    return _coordinator


async def shutdown_coordinator() -> None:
    """Shut down the process-wide coordinator if one was built."""
    global _coordinator
    if _coordinator is not None:
        await _coordinator.shutdown()
        _coordinator = None
