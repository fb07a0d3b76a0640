"""
SQLite-backed cloud sync job ledger.

Durable queue of export/import/verify jobs. Status flow:

    pending -> running -> success | failed
    pending -> cancelled            (cancel_job)
    failed  -> pending              (retry_job)

Usage:
    job_id = enqueue_job(job_type="export", provider="postgres", connection_id="main")
    job = claim_next_job()          # pending -> running, attempts + 1
    complete_job(job["id"], {...}) / fail_job(job["id"], "message")
"""
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from cloudsync.exceptions import JobStateError
from cloudsync.models.sync import JobStatus, JobType, TERMINAL_JOB_STATUSES
from cloudsync.services.local_store import LocalStore, get_store, utcnow_str
from cloudsync.utils.logger import logger


def _enum_value(value: Union[str, JobType, JobStatus]) -> str:
    return getattr(value, "value", value)


def _serialize_details(details: Any) -> Optional[str]:
    if details is None:
        return None
    if isinstance(details, str):
        return details
    return json.dumps(details, default=str)


def _row_to_job(row) -> Dict[str, Any]:
    job = dict(row)
    job["dry_run"] = bool(job.get("dry_run"))
    raw = job.get("details")
    if raw:
        try:
            job["details"] = json.loads(raw)
        except (TypeError, ValueError):
            job["details"] = raw
    return job


def enqueue_job(
    job_type: Union[str, JobType],
    provider: str,
    connection_id: str,
    dry_run: bool = False,
    initiated_by: Optional[str] = None,
    details: Any = None,
    *,
    id: Optional[str] = None,
    store: Optional[LocalStore] = None,
) -> str:
    """Insert a new ``pending`` job and return its id."""

    store = store or get_store()
    job_id = id or str(uuid.uuid4())
    now = utcnow_str()

    with store.connection() as conn:
        conn.execute('''
            INSERT INTO cloud_sync_jobs
                (id, job_type, provider, connection_id, status, dry_run, initiated_by,
                 details, attempts, created_at, updated_at)
            VALUES (?, ?, ?, ?, 'pending', ?, ?, ?, 0, ?, ?)
        ''', (
            job_id,
            _enum_value(job_type),
            provider,
            connection_id,
            1 if dry_run else 0,
            initiated_by,
            _serialize_details(details),
            now,
            now,
        ))

    logger.info(f"[cloud-sync-jobs] Enqueued job {job_id} type={_enum_value(job_type)} dry_run={dry_run}")
    return job_id


def get_job_status(job_id: str, *, store: Optional[LocalStore] = None) -> Optional[Dict[str, Any]]:
    """Return the job row (details decoded when JSON) or None."""

    store = store or get_store()
    with store.connection() as conn:
        row = conn.execute("SELECT * FROM cloud_sync_jobs WHERE id = ?", (job_id,)).fetchone()
    return _row_to_job(row) if row else None


def list_jobs(
    limit: int = 50,
    status: Optional[Union[str, JobStatus]] = None,
    *,
    store: Optional[LocalStore] = None,
) -> List[Dict[str, Any]]:
    store = store or get_store()
    query = "SELECT * FROM cloud_sync_jobs"
    params: List[Any] = []
    if status:
        query += " WHERE status = ?"
        params.append(_enum_value(status))
    query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
    params.append(int(limit))

    with store.connection() as conn:
        rows = conn.execute(query, params).fetchall()
    return [_row_to_job(row) for row in rows]


def _transition(
    job_id: str,
    *,
    from_status: JobStatus,
    to_status: JobStatus,
    action: str,
    clear_error: bool = False,
    store: LocalStore,
) -> bool:
    set_clause = "status = ?, updated_at = ?"
    if clear_error:
        set_clause += ", last_error = NULL"

    with store.connection() as conn:
        cursor = conn.execute(
            f"UPDATE cloud_sync_jobs SET {set_clause} WHERE id = ? AND status = ?",
            (to_status.value, utcnow_str(), job_id, from_status.value),
        )
        if cursor.rowcount:
            return True
        row = conn.execute("SELECT status FROM cloud_sync_jobs WHERE id = ?", (job_id,)).fetchone()

    if row is None:
        return False
    raise JobStateError(f"Cannot {action} job with status: {row['status']}")


def cancel_job(job_id: str, *, store: Optional[LocalStore] = None) -> bool:
    """Cancel a pending job.

    Returns False when the job does not exist; raises JobStateError when it
    is not pending (running jobs cannot be cancelled).
    """

    cancelled = _transition(
        job_id,
        from_status=JobStatus.PENDING,
        to_status=JobStatus.CANCELLED,
        action="cancel",
        store=store or get_store(),
    )
    if cancelled:
        logger.info(f"[cloud-sync-jobs] Cancelled job {job_id}")
    return cancelled


def retry_job(job_id: str, *, store: Optional[LocalStore] = None) -> bool:
    """Put a failed job back to pending and clear its last error."""

    retried = _transition(
        job_id,
        from_status=JobStatus.FAILED,
        to_status=JobStatus.PENDING,
        action="retry",
        clear_error=True,
        store=store or get_store(),
    )
    if retried:
        logger.info(f"[cloud-sync-jobs] Job {job_id} queued for retry")
    return retried


def claim_next_job(*, store: Optional[LocalStore] = None) -> Optional[Dict[str, Any]]:
    """Atomically move the oldest pending job to ``running``.

    Oldest means earliest ``created_at``; ties are broken by insertion order.
    The attempt counter is incremented in the same transaction.
    """

    store = store or get_store()
    with store.connection() as conn:
        conn.execute("BEGIN IMMEDIATE")
        try:
            row = conn.execute(
                "SELECT id FROM cloud_sync_jobs WHERE status = 'pending' "
                "ORDER BY created_at ASC, rowid ASC LIMIT 1"
            ).fetchone()
            if row is None:
                conn.execute("COMMIT")
                return None
            conn.execute(
                "UPDATE cloud_sync_jobs SET status = 'running', attempts = attempts + 1, "
                "updated_at = ? WHERE id = ?",
                (utcnow_str(), row["id"]),
            )
            claimed = conn.execute("SELECT * FROM cloud_sync_jobs WHERE id = ?", (row["id"],)).fetchone()
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise

    job = _row_to_job(claimed)
    logger.info(f"[cloud-sync-jobs] Claimed job {job['id']} type={job['job_type']} attempt={job['attempts']}")
    return job


def complete_job(job_id: str, details: Any, *, store: Optional[LocalStore] = None) -> None:
    store = store or get_store()
    with store.connection() as conn:
        conn.execute(
            "UPDATE cloud_sync_jobs SET status = 'success', details = ?, last_error = NULL, "
            "updated_at = ? WHERE id = ?",
            (_serialize_details(details), utcnow_str(), job_id),
        )


def fail_job(job_id: str, error: str, *, store: Optional[LocalStore] = None) -> None:
    store = store or get_store()
    with store.connection() as conn:
        conn.execute(
            "UPDATE cloud_sync_jobs SET status = 'failed', last_error = ?, updated_at = ? WHERE id = ?",
            (error, utcnow_str(), job_id),
        )


def cleanup_old_jobs(days_old: int = 30, *, store: Optional[LocalStore] = None) -> int:
    """Delete terminal jobs last updated more than ``days_old`` days ago."""

    store = store or get_store()
    cutoff = (datetime.now(timezone.utc) - timedelta(days=days_old)).strftime("%Y-%m-%d %H:%M:%S.%f")
    terminal = [status.value for status in TERMINAL_JOB_STATUSES]

    with store.connection() as conn:
        cursor = conn.execute(
            f"DELETE FROM cloud_sync_jobs WHERE status IN ({', '.join('?' for _ in terminal)}) "
            "AND updated_at < ?",
            (*terminal, cutoff),
        )
        count = cursor.rowcount

    if count > 0:
        logger.info(f"[cloud-sync-jobs] Cleaned up {count} jobs older than {days_old} days")
    return count
