"""
Main entrypoint: maintenance worker and one-off commands.

The HTTP API runs separately under uvicorn.

Usage:
    python -m yardsync                    # starts the APScheduler worker
    python -m yardsync sync "Acme Ltd"    # runs one bulk sync session in the foreground
    python -m yardsync reconcile          # runs one reconciliation audit
    uvicorn yardsync.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import argparse
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)

PROGRESS_POLL_SECONDS = 2.0


async def _run_worker() -> None:
    from yardsync.config import get_settings
    from yardsync.scheduler.jobs import build_scheduler
    from yardsync.sync.coordinator import get_coordinator, shutdown_coordinator

    settings = get_settings()
    coordinator = get_coordinator()

    scheduler = build_scheduler(coordinator)
    scheduler.start()
    logger.info(
        "Scheduler started (nightly reconciliation at %02d:00 UTC)",
        settings.reconciliation_hour,
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        await shutdown_coordinator()
        logger.info("Goodbye.")


async def _run_sync(filter_key: str) -> int:
    from yardsync.sync.coordinator import get_coordinator, shutdown_coordinator
    from yardsync.sync.errors import SessionConflict

    coordinator = get_coordinator()
    try:
        try:
            session_id = await coordinator.start_session(filter_key)
        except SessionConflict as exc:
            logger.error("%s", exc)
            return 1

        waiter = asyncio.ensure_future(coordinator.sessions.wait(session_id))
        while not waiter.done():
            row = coordinator.get_progress(session_id)
            logger.info(
                "Session %s %s: %d/%s processed, %d errors",
                session_id, row.status, row.processed_units,
                row.total_units if row.total_units is not None else "?", row.error_count,
            )
            await asyncio.wait([waiter], timeout=PROGRESS_POLL_SECONDS)

        row = waiter.result()
        logger.info(
            "Session %s finished %s: created=%d updated=%d new_customers=%d errors=%d%s",
            session_id, row.status, row.created_records, row.updated_records,
            row.created_related_entities, row.error_count,
            f" last_error={row.last_error}" if row.last_error else "",
        )
        return 0 if row.status == "completed" else 1
    finally:
        await shutdown_coordinator()


def _run_reconcile() -> int:
    from yardsync.sync.coordinator import get_coordinator

    report = get_coordinator().run_reconciliation()
    for issue in report.issues:
        logger.info(
            "%s %s %s %s", issue.kind.value, list(issue.affected_ids),
            issue.resolution.value, issue.detail,
        )
    logger.info("Health: %s, fixed: %d", report.health, report.fixed_count)
    return 1 if report.errors else 0


def main() -> None:
    parser = argparse.ArgumentParser(prog="yardsync", description="Warehouse sync engine")
    sub = parser.add_subparsers(dest="command")
    sync_parser = sub.add_parser("sync", help="Run one bulk sync session")
    sync_parser.add_argument("filter_key", help="Supplier name to import")
    sub.add_parser("reconcile", help="Run one reconciliation audit")
    args = parser.parse_args()

    if args.command == "sync":
        sys.exit(asyncio.run(_run_sync(args.filter_key)))
    elif args.command == "reconcile":
        sys.exit(_run_reconcile())
    else:
        asyncio.run(_run_worker())


if __name__ == "__main__":
    main()
