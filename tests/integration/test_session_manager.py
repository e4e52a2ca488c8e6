"""
Integration tests for SyncSessionManager.

Uses the in-memory FakeRemoteSource and an in-memory SQLite DB.
No real network calls are made.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func
from sqlmodel import Session, select

from yardsync.models.records import Customer, Package
from yardsync.models.sync import SyncSession
from yardsync.sync.errors import RemoteRejected, RemoteUnavailable, SessionConflict, SessionNotFound
from yardsync.sync.repository import RecordRepository
from yardsync.sync.retry import RetryPolicy
from yardsync.sync.session_manager import CANCELLED_REASON, SyncSessionManager


@pytest.fixture(name="manager")
def manager_fixture(engine, remote):
    return SyncSessionManager(
        remote,
        RecordRepository(engine),
        engine,
        RetryPolicy(max_retries=2, delay_seconds=0, sleep=AsyncMock()),
        timeout_seconds=5,
    )


def _load(remote, shipment, count=42, broken=()):
    """Queue `count` shipments; indexes in `broken` have no receiver name."""
    remote.shipments = [
        shipment(
            f"S-{i:03d}",
            name=f"Customer {i}",
            **({"receiver": {"name": ""}} if i in broken else {}),
        )
        for i in range(count)
    ]


def _count(engine, model):
    with Session(engine) as s:
        return s.exec(select(func.count()).select_from(model)).one()


# ─── Session outcome ──────────────────────────────────────────────────────────

class TestSessionOutcome:
    async def test_completes_with_errors_counted(self, manager, remote, shipment, engine):
        _load(remote, shipment, count=42, broken={5, 17, 40})

        session_id = await manager.start("Acme Supplies")
        row = await manager.wait(session_id)

        assert row.status == "completed"
        assert row.total_units == 42
        assert row.processed_units == 42
        assert row.error_count == 3
        assert row.created_records == 39
        assert row.updated_records == 0
        assert row.created_related_entities == 39
        assert row.completed_at is not None
        assert row.last_error.startswith("S-040")
        assert _count(engine, Package) == 39

    async def test_rerun_is_idempotent(self, manager, remote, shipment, engine):
        _load(remote, shipment, count=25)

        first = await manager.wait(await manager.start("Acme Supplies"))
        second = await manager.wait(await manager.start("Acme Supplies"))

        assert first.created_records == 25
        assert second.status == "completed"
        assert second.created_records == 0
        assert second.created_related_entities == 0
        assert second.updated_records == 25
        assert _count(engine, Package) == 25
        assert _count(engine, Customer) == 25

    async def test_error_ceiling_fails_session(self, engine, remote, shipment):
        _load(remote, shipment, count=10, broken={1, 2, 3})
        manager = SyncSessionManager(
            remote, RecordRepository(engine), engine,
            RetryPolicy(max_retries=0, delay_seconds=0), error_ceiling=3,
        )
        row = await manager.wait(await manager.start("Acme"))
        assert row.status == "failed"
        assert row.error_count == 3
        assert row.processed_units == 10
        assert row.last_error is not None

    async def test_total_units_from_running_count_without_hint(self, manager, remote, shipment):
        remote.report_total = False
        _load(remote, shipment, count=15)
        row = await manager.wait(await manager.start("Acme"))
        assert row.total_units == 15
        assert row.progress_percent == 100.0

    async def test_items_counted_as_records(self, manager, remote, shipment):
        remote.shipments = [shipment("S-1", items=[{"id": "I-1"}, {"id": "I-2"}, {"id": "I-3"}])]
        row = await manager.wait(await manager.start("Acme"))
        assert row.processed_units == 1
        assert row.created_records == 3
        assert row.created_related_entities == 1

    async def test_same_consignee_shared_across_shipments(self, manager, remote, shipment, engine):
        remote.shipments = [shipment(f"S-{i}") for i in range(4)]
        row = await manager.wait(await manager.start("Acme"))
        assert row.created_related_entities == 1
        assert _count(engine, Customer) == 1


# ─── Exclusivity and lifecycle ────────────────────────────────────────────────

class TestExclusivity:
    async def test_second_start_for_same_key_conflicts(self, manager, remote, shipment):
        _load(remote, shipment, count=5)
        session_id = await manager.start("Acme")
        with pytest.raises(SessionConflict) as excinfo:
            await manager.start("Acme")
        assert excinfo.value.active_session_id == session_id
        await manager.wait(session_id)

    async def test_other_keys_run_concurrently(self, manager, remote, shipment):
        _load(remote, shipment, count=5)
        a = await manager.start("Acme")
        b = await manager.start("Globex")
        assert (await manager.wait(a)).status == "completed"
        assert (await manager.wait(b)).status == "completed"

    async def test_key_free_again_after_finish(self, manager, remote, shipment):
        _load(remote, shipment, count=3)
        await manager.wait(await manager.start("Acme"))
        await manager.wait(await manager.start("Acme"))

    async def test_blank_key_rejected(self, manager):
        with pytest.raises(ValueError):
            await manager.start("   ")

    def test_unknown_session(self, manager):
        with pytest.raises(SessionNotFound):
            manager.get_progress(404)


class TestProgress:
    async def test_progress_is_monotonic(self, manager, remote, shipment):
        _load(remote, shipment, count=35)
        snapshots = []
        current = {}

        async def observe(offset):
            row = manager.get_progress(current["id"])
            snapshots.append((row.status, row.processed_units))

        remote.before_page = observe
        current["id"] = await manager.start("Acme")
        final = await manager.wait(current["id"])

        processed = [p for _, p in snapshots] + [final.processed_units]
        assert processed == sorted(processed)
        assert processed == [0, 10, 20, 30, 35]
        assert {status for status, _ in snapshots} == {"in_progress"}

    def test_progress_percent_capped(self):
        row = SyncSession(filter_key="x", total_units=10, processed_units=12)
        assert row.progress_percent == 100.0
        assert SyncSession(filter_key="x").progress_percent == 0.0

    async def test_list_sessions_newest_first(self, manager, remote, shipment):
        _load(remote, shipment, count=2)
        first = await manager.wait(await manager.start("Acme"))
        second = await manager.wait(await manager.start("Globex"))
        ids = [row.id for row in manager.list_sessions()]
        assert ids == [second.id, first.id]


class TestCancellation:
    async def test_cancel_between_pages(self, manager, remote, shipment):
        _load(remote, shipment, count=40)
        current = {}

        async def cancel_on_second_page(offset):
            if offset == 10:
                assert manager.cancel(current["id"]) is True

        remote.before_page = cancel_on_second_page
        current["id"] = await manager.start("Acme")
        row = await manager.wait(current["id"])

        # The page in flight when cancel() was called still completes
        assert row.status == "failed"
        assert row.last_error == CANCELLED_REASON
        assert row.processed_units == 20

    async def test_cancel_finished_session_returns_false(self, manager, remote, shipment):
        _load(remote, shipment, count=1)
        session_id = await manager.start("Acme")
        await manager.wait(session_id)
        assert manager.cancel(session_id) is False

    def test_cancel_orphan_active_row(self, manager, engine):
        with Session(engine) as s:
            row = SyncSession(filter_key="Acme", status="in_progress")
            s.add(row)
            s.commit()
            s.refresh(row)
            session_id = row.id
        assert manager.cancel(session_id) is True
        assert manager.get_progress(session_id).status == "failed"

    def test_recover_interrupted(self, manager, engine):
        with Session(engine) as s:
            s.add(SyncSession(filter_key="Acme", status="in_progress", processed_units=7))
            s.add(SyncSession(filter_key="Globex", status="completed"))
            s.commit()

        assert manager.recover_interrupted() == 1
        rows = {row.filter_key: row for row in manager.list_sessions()}
        assert rows["Acme"].status == "failed"
        assert rows["Acme"].processed_units == 7
        assert rows["Acme"].last_error.startswith("interrupted")
        assert rows["Globex"].status == "completed"


class TestRemoteFailures:
    async def test_transient_page_failure_retried(self, manager, remote, shipment):
        _load(remote, shipment, count=5)
        remote.list_failures = [RemoteUnavailable("503")]
        row = await manager.wait(await manager.start("Acme"))
        assert row.status == "completed"
        assert len(remote.list_calls) == 2

    async def test_unreachable_remote_aborts(self, manager, remote, shipment):
        _load(remote, shipment, count=5)
        remote.list_failures = [RemoteUnavailable("down")] * 3
        row = await manager.wait(await manager.start("Acme"))
        assert row.status == "failed"
        assert row.last_error.startswith("Remote source unavailable")
        assert row.processed_units == 0
        assert len(remote.list_calls) == 3

    async def test_hanging_page_times_out_and_aborts(self, engine, remote, shipment):
        _load(remote, shipment, count=5)

        async def hang(offset):
            await asyncio.sleep(10)

        remote.before_page = hang
        manager = SyncSessionManager(
            remote,
            RecordRepository(engine),
            engine,
            RetryPolicy(max_retries=2, delay_seconds=0, sleep=AsyncMock()),
            timeout_seconds=0.01,
        )
        row = await manager.wait(await manager.start("Acme"))
        assert row.status == "failed"
        assert row.last_error.startswith("Remote source unavailable")
        assert row.processed_units == 0
        assert len(remote.list_calls) == 3

    async def test_rejected_request_not_retried(self, manager, remote):
        remote.list_failures = [RemoteRejected("bad supplier", status_code=400)]
        row = await manager.wait(await manager.start("Acme"))
        assert row.status == "failed"
        assert len(remote.list_calls) == 1

    async def test_failure_mid_run_keeps_earlier_pages(self, manager, remote, shipment, engine):
        _load(remote, shipment, count=20)

        async def fail_second_page(offset):
            if offset == 10:
                raise RemoteUnavailable("gateway timeout")

        remote.before_page = fail_second_page
        row = await manager.wait(await manager.start("Acme"))
        assert row.status == "failed"
        assert row.processed_units == 10
        assert _count(engine, Package) == 10
