"""
SyncSessionManager: orchestrates bulk imports from the warehouse system.

Flow for one session:
  1. start(): refuse if the filter key already has an active session,
     otherwise insert a SyncSession (status="pending") and spawn a task
  2. Task marks the session "in_progress" and pages through list_since()
  3. Each shipment is normalized, its customer resolved (external id, then
     name+address heuristic, then create) and its packages upserted; every
     DB write goes through RetryPolicy
  4. Running counters are persisted after every page, so a poller is never
     more than one page behind
  5. On exhaustion the session is "completed" if error_count stayed below
     the ceiling, else "failed" with last_error set

Per-record failures are logged with the shipment id and counted; they never
abort the run. A page that can't be fetched after retries aborts the session.
cancel() is honoured between pages.

Idempotency: packages are keyed on the remote id, so re-running a filter key
against unchanged remote data creates nothing new.
"""
import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from yardsync.models.sync import ACTIVE_STATUSES, SyncSession, SyncStatus
from yardsync.remote.client import RemotePage, RemoteSyncSource
from yardsync.remote.normalizer import normalize_shipment, shipment_id
from yardsync.sync.errors import SessionConflict, SessionNotFound
from yardsync.sync.matching import ParentMatch
from yardsync.sync.repository import RecordRepository
from yardsync.sync.retry import RetryPolicy

logger = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled"
INTERRUPTED_REASON = "interrupted: process stopped while the session was running"


@dataclass
class _Counters:
    total_units: Optional[int] = None
    processed_units: int = 0
    created_records: int = 0
    updated_records: int = 0
    created_related_entities: int = 0
    error_count: int = 0
    last_error: Optional[str] = None


class SyncSessionManager:
    """Runs and tracks bulk sync sessions, one asyncio task per session."""

    def __init__(
        self,
        remote: RemoteSyncSource,
        repository: RecordRepository,
        engine,
        retry_policy: Optional[RetryPolicy] = None,
        *,
        error_ceiling: int = 25,
        timeout_seconds: float = 30.0,
    ):
        """
        Args:
            remote: Source of shipments (WarehouseClient or a fake in tests).
            repository: Local record access.
            engine: SQLAlchemy engine holding the SyncSession table.
            retry_policy: Applied to page fetches and record upserts.
            error_ceiling: A session with this many record errors ends "failed".
            timeout_seconds: Hard timeout on every remote call.
        """
        self.remote = remote
        self.repository = repository
        self.engine = engine
        self.retry_policy = retry_policy or RetryPolicy()
        self.error_ceiling = error_ceiling
        self.timeout_seconds = timeout_seconds
        self._tasks: Dict[int, asyncio.Task] = {}
        self._cancelled: Set[int] = set()

    # ─── Public API ───────────────────────────────────────────────────────────

    async def start(self, filter_key: str) -> int:
        """
        Begin a bulk session for filter_key and return its id.

        Raises:
            SessionConflict: if a session for the same key is pending or in progress.
            ValueError: if filter_key is blank.
        """
        filter_key = (filter_key or "").strip()
        if not filter_key:
            raise ValueError("filter_key must not be empty")

        session_id = self._create_session(filter_key)
        task = asyncio.create_task(
            self._run(session_id, filter_key), name=f"sync-session-{session_id}"
        )
        self._tasks[session_id] = task
        task.add_done_callback(lambda _t, sid=session_id: self._tasks.pop(sid, None))
        logger.info("Sync session %s started for %r", session_id, filter_key)
        return session_id

    def get_progress(self, session_id: int) -> SyncSession:
        """Return the last persisted snapshot of a session."""
        with Session(self.engine) as s:
            row = s.get(SyncSession, session_id)
        if row is None:
            raise SessionNotFound(f"Sync session {session_id} does not exist")
        return row

    def list_sessions(self, limit: int = 20) -> List[SyncSession]:
        with Session(self.engine) as s:
            return list(s.exec(
                select(SyncSession)
                .order_by(col(SyncSession.started_at).desc(), col(SyncSession.id).desc())
                .limit(limit)
            ).all())

    def cancel(self, session_id: int) -> bool:
        """
        Request cancellation. The page being processed finishes; later pages are skipped.

        Returns:
            True if the session was active, False if it had already finished.
        """
        row = self.get_progress(session_id)
        if row.is_terminal:
            return False
        if session_id in self._tasks:
            self._cancelled.add(session_id)
        else:
            # Active row with no task in this process: nothing will pick it up
            self._finalize(session_id, _counters_from(row), SyncStatus.FAILED, CANCELLED_REASON)
        logger.info("Cancellation requested for sync session %s", session_id)
        return True

    async def wait(self, session_id: int) -> SyncSession:
        """Await a running session (if any) and return its final snapshot."""
        task = self._tasks.get(session_id)
        if task is not None:
            await task
        return self.get_progress(session_id)

    def recover_interrupted(self) -> int:
        """Fail sessions left active by a previous process. Returns how many were closed."""
        with Session(self.engine) as s:
            stale = s.exec(
                select(SyncSession).where(col(SyncSession.status).in_(ACTIVE_STATUSES))
            ).all()
            stale_ids = [row.id for row in stale if row.id not in self._tasks]
        for sid in stale_ids:
            self._finalize(sid, _counters_from(self.get_progress(sid)), SyncStatus.FAILED, INTERRUPTED_REASON)
            logger.warning("Sync session %s marked failed (interrupted)", sid)
        return len(stale_ids)

    # ─── Session task ─────────────────────────────────────────────────────────

    async def _run(self, session_id: int, filter_key: str) -> None:
        counters = _Counters()
        self._write(session_id, status=SyncStatus.IN_PROGRESS.value)
        page_token: Optional[str] = None

        try:
            while True:
                if session_id in self._cancelled:
                    logger.info("Sync session %s cancelled after %d units", session_id, counters.processed_units)
                    self._finalize(session_id, counters, SyncStatus.FAILED, CANCELLED_REASON)
                    return

                try:
                    page = await self.retry_policy.call(self._fetch_page, filter_key, page_token)
                except Exception as exc:
                    logger.error("Sync session %s aborted, remote source unreachable: %s", session_id, exc)
                    self._finalize(
                        session_id, counters, SyncStatus.FAILED,
                        f"Remote source unavailable: {exc}",
                    )
                    return

                counters.total_units = max(
                    counters.total_units or 0,
                    page.total_hint or 0,
                    counters.processed_units + len(page.records),
                )

                for record in page.records:
                    await self._process_record(record, counters)

                self._write(session_id, **_progress_fields(counters))

                next_token = page.next_page_token
                if not next_token or not page.records:
                    break
                if next_token == page_token:
                    logger.warning("Remote source repeated page token %r; stopping", next_token)
                    break
                page_token = next_token

            status = (
                SyncStatus.COMPLETED
                if counters.error_count < self.error_ceiling
                else SyncStatus.FAILED
            )
            self._finalize(session_id, counters, status, counters.last_error)
            logger.info(
                "Sync session %s %s: %d/%s processed, %d created, %d updated, %d errors",
                session_id, status.value, counters.processed_units, counters.total_units,
                counters.created_records, counters.updated_records, counters.error_count,
            )

        except asyncio.CancelledError:
            self._finalize(session_id, counters, SyncStatus.FAILED, CANCELLED_REASON)
            raise
        except Exception as exc:
            logger.exception("Sync session %s crashed", session_id)
            self._finalize(session_id, counters, SyncStatus.FAILED, str(exc))
        finally:
            self._cancelled.discard(session_id)

    async def _fetch_page(self, filter_key: str, page_token: Optional[str]) -> RemotePage:
        return await asyncio.wait_for(
            self.remote.list_since(filter_key, page_token), timeout=self.timeout_seconds
        )

    async def _process_record(self, record: Dict[str, Any], counters: _Counters) -> None:
        external_id = shipment_id(record) if isinstance(record, dict) else None
        try:
            parent_fields, children = normalize_shipment(record)
            match = ParentMatch(
                external_id=parent_fields["external_id"],
                full_name=parent_fields["full_name"],
                address=parent_fields["address"],
            )
            parent = await self._local(self.repository.upsert_parent, match, parent_fields)
            if parent.created:
                counters.created_related_entities += 1

            for child in children:
                result = await self._local(
                    self.repository.upsert_child,
                    child["external_id"],
                    {**child, "customer_id": parent.id},
                )
                if result.created:
                    counters.created_records += 1
                else:
                    counters.updated_records += 1

        except Exception as exc:
            counters.error_count += 1
            counters.last_error = f"{external_id or '<no id>'}: {exc}"
            logger.warning("Failed to import shipment %s: %s", external_id, exc)
        finally:
            counters.processed_units += 1

    async def _local(self, fn: Callable[..., Any], *args) -> Any:
        """Run a synchronous repository call under the retry policy."""
        async def _call():
            return fn(*args)
        return await self.retry_policy.call(_call)

    # ─── Persistence helpers ──────────────────────────────────────────────────

    def _create_session(self, filter_key: str) -> int:
        with Session(self.engine) as s:
            active = s.exec(
                select(SyncSession)
                .where(SyncSession.filter_key == filter_key)
                .where(col(SyncSession.status).in_(ACTIVE_STATUSES))
            ).first()
            if active is not None:
                raise SessionConflict(filter_key, active.id)

            row = SyncSession(filter_key=filter_key, status=SyncStatus.PENDING.value)
            s.add(row)
            try:
                s.commit()
            except IntegrityError:
                # Lost a race with another process on the partial unique index
                s.rollback()
                raise SessionConflict(filter_key) from None
            s.refresh(row)
            return row.id

    def _write(self, session_id: int, **fields) -> None:
        with Session(self.engine) as s:
            row = s.get(SyncSession, session_id)
            if row is None or row.is_terminal:
                logger.warning("Refusing to modify finished sync session %s", session_id)
                return
            for k, v in fields.items():
                setattr(row, k, v)
            s.add(row)
            s.commit()

    def _finalize(
        self,
        session_id: int,
        counters: _Counters,
        status: SyncStatus,
        last_error: Optional[str],
    ) -> None:
        fields = _progress_fields(counters)
        fields.update(
            status=status.value,
            completed_at=datetime.utcnow(),
            last_error=last_error,
        )
        self._write(session_id, **fields)


def _progress_fields(counters: _Counters) -> Dict[str, Any]:
    fields = asdict(counters)
    fields.pop("last_error")
    return fields


def _counters_from(row: SyncSession) -> _Counters:
    return _Counters(
        total_units=row.total_units,
        processed_units=row.processed_units,
        created_records=row.created_records,
        updated_records=row.updated_records,
        created_related_entities=row.created_related_entities,
        error_count=row.error_count,
        last_error=row.last_error,
    )
