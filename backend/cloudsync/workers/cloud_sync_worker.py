"""Cloud sync job worker.

Drains the ``cloud_sync_jobs`` ledger one job at a time:

- claims the oldest pending job (pending -> running),
- resolves its stored connection,
- runs the export / import / verify operation for its type,
- records success (with the result as job details) or failure (with the
  error message as ``last_error``).

Nothing raised by a job escapes: every failure ends up on the job row.
"""
from __future__ import annotations

import asyncio
import threading
import time
from typing import Any, Callable, Dict, Optional

from cloudsync.config import settings
from cloudsync.exceptions import CloudSyncError, ConnectionNotFoundError
from cloudsync.models.sync import ConflictStrategy, JobResult, JobStatus, JobType, ProcessAllResult
from cloudsync.services.cloud_sync_connections import get_connection
from cloudsync.services.cloud_sync_export import export_to_postgres
from cloudsync.services.cloud_sync_import import import_from_postgres
from cloudsync.services.cloud_sync_jobs import claim_next_job, cleanup_old_jobs, complete_job, fail_job
from cloudsync.services.cloud_sync_verify import verify_export, verify_import
from cloudsync.services.local_store import LocalStore, get_store
from cloudsync.services.remote_client import ClientFactory, RemoteClient
from cloudsync.utils.logger import logger, sync_event_logger

JobHandler = Callable[..., Dict[str, Any]]

# Held while a job is claimed and dispatched. The background loop and the
# /jobs/process route run in different threads and share it.
_job_lock = threading.Lock()


def _job_details(job: Dict[str, Any]) -> Dict[str, Any]:
    details = job.get("details")
    return details if isinstance(details, dict) else {}


def _run_export(job, connection_string, *, store, client_factory) -> Dict[str, Any]:
    result = export_to_postgres(
        connection_string, dry_run=job["dry_run"], store=store, client_factory=client_factory
    )
    return result.model_dump(mode="json")


def _run_import(job, connection_string, *, store, client_factory) -> Dict[str, Any]:
    details = _job_details(job)
    result = import_from_postgres(
        connection_string,
        strategy=details.get("strategy") or ConflictStrategy.MERGE,
        dry_run=job["dry_run"],
        create_backup_first=details.get("createBackup", details.get("create_backup", True)),
        store=store,
        client_factory=client_factory,
    )
    return result.model_dump(mode="json")


def _run_verify_export(job, connection_string, *, store, client_factory) -> Dict[str, Any]:
    return verify_export(connection_string, store=store, client_factory=client_factory).model_dump(mode="json")


def _run_verify_import(job, connection_string, *, store, client_factory) -> Dict[str, Any]:
    return verify_import(connection_string, store=store, client_factory=client_factory).model_dump(mode="json")


JOB_HANDLERS: Dict[str, JobHandler] = {
    JobType.EXPORT.value: _run_export,
    JobType.IMPORT.value: _run_import,
    JobType.VERIFY_EXPORT.value: _run_verify_export,
    JobType.VERIFY_IMPORT.value: _run_verify_import,
}


def _run_next_job(store: LocalStore, client_factory: ClientFactory) -> Optional[JobResult]:
    job = claim_next_job(store=store)
    if job is None:
        return None

    job_id = job["id"]
    job_type = job["job_type"]
    started = time.monotonic()
    sync_event_logger.log_sync_event(
        "job_started",
        f"Processing {job_type} job {job_id}",
        job_id=job_id,
        details={"attempt": job["attempts"], "dry_run": job["dry_run"]},
    )

    try:
        handler = JOB_HANDLERS.get(job_type)
        if handler is None:
            raise CloudSyncError(f"Unknown job type: {job_type}")

        connection = get_connection(job["connection_id"], store=store)
        if connection is None:
            raise ConnectionNotFoundError("Connection not found")

        result = handler(job, connection["connection_string"], store=store, client_factory=client_factory)
    except Exception as exc:  # noqa: BLE001
        duration = int((time.monotonic() - started) * 1000)
        message = str(exc) or exc.__class__.__name__
        fail_job(job_id, message, store=store)
        sync_event_logger.log_sync_event(
            "job_failed",
            f"{job_type} job {job_id} failed after {duration}ms",
            job_id=job_id,
            status="error",
            error=message,
        )
        return JobResult(id=job_id, status=JobStatus.FAILED, error=message, duration=duration)

    duration = int((time.monotonic() - started) * 1000)
    complete_job(job_id, result, store=store)
    sync_event_logger.log_sync_event(
        "job_completed",
        f"{job_type} job {job_id} completed in {duration}ms",
        job_id=job_id,
        status="success",
    )
    return JobResult(id=job_id, status=JobStatus.SUCCESS, result=result, duration=duration)


def process_next_job(
    *,
    store: Optional[LocalStore] = None,
    client_factory: ClientFactory = RemoteClient,
) -> Optional[JobResult]:
    """Claim and run the oldest pending job.

    Returns None when the queue is empty or another thread is already running
    a job; nothing is claimed in that case.
    """

    if not _job_lock.acquire(blocking=False):
        logger.info("[cloud-sync-worker] Another job is running, not claiming")
        return None
    try:
        return _run_next_job(store or get_store(), client_factory)
    finally:
        _job_lock.release()


def process_all_pending_jobs(
    *,
    store: Optional[LocalStore] = None,
    client_factory: ClientFactory = RemoteClient,
    delay_seconds: Optional[float] = None,
) -> ProcessAllResult:
    """Run pending jobs one after another until the queue is empty.

    When another thread is already draining, returns immediately with
    ``busy=True`` and nothing processed.
    """

    if not _job_lock.acquire(blocking=False):
        logger.info("[cloud-sync-worker] Worker busy, skipping drain")
        return ProcessAllResult(processed=0, busy=True)

    store = store or get_store()
    delay = settings.CLOUD_SYNC_JOB_DELAY_SECONDS if delay_seconds is None else delay_seconds
    results = []
    try:
        while True:
            result = _run_next_job(store, client_factory)
            if result is None:
                break
            results.append(result)
            if delay > 0:
                time.sleep(delay)
    finally:
        _job_lock.release()

    return ProcessAllResult(processed=len(results), results=results)


async def run_cloud_sync_worker_once() -> Dict[str, Any]:
    """Drain the queue and purge old terminal jobs, off the event loop."""

    summary = await asyncio.to_thread(process_all_pending_jobs)
    purged = await asyncio.to_thread(cleanup_old_jobs, settings.CLOUD_SYNC_JOB_RETENTION_DAYS)
    return {"status": "ok", "processed": summary.processed, "purged": purged}


async def run_cloud_sync_worker_loop(interval_seconds: Optional[int] = None) -> None:
    """Poll the job ledger forever.

    One cycle at a time; jobs run in a worker thread under the same lock as
    the /jobs/process route, so at most one sync job runs in this process.
    """

    interval = interval_seconds or settings.CLOUD_SYNC_WORKER_INTERVAL_SECONDS
    logger.info(f"[cloud-sync-worker] Worker loop started (interval={interval} seconds)")

    while True:
        try:
            summary = await run_cloud_sync_worker_once()
            if summary["processed"] or summary["purged"]:
                logger.info(f"[cloud-sync-worker] cycle completed: {summary}")
        except Exception as exc:  # noqa: BLE001
            logger.error(f"[cloud-sync-worker] loop error: {exc}", exc_info=True)

        await asyncio.sleep(interval)


if __name__ == "__main__":  # pragma: no cover - manual invocation
    asyncio.run(run_cloud_sync_worker_loop())
