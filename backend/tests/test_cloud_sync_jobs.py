import pytest

from cloudsync.exceptions import JobStateError
from cloudsync.services.cloud_sync_jobs import (
    cancel_job,
    claim_next_job,
    cleanup_old_jobs,
    complete_job,
    enqueue_job,
    fail_job,
    get_job_status,
    list_jobs,
    retry_job,
)


def _set_timestamps(store, job_id, created_at, updated_at=None):
    with store.connection() as conn:
        conn.execute(
            "UPDATE cloud_sync_jobs SET created_at = ?, updated_at = ? WHERE id = ?",
            (created_at, updated_at or created_at, job_id),
        )


def test_enqueue_creates_pending_job(empty_store):
    job_id = enqueue_job(
        "import", "postgres", "main", dry_run=True, initiated_by="admin",
        details={"strategy": "overwrite"}, store=empty_store,
    )

    job = get_job_status(job_id, store=empty_store)
    assert job["status"] == "pending"
    assert job["job_type"] == "import"
    assert job["dry_run"] is True
    assert job["attempts"] == 0
    assert job["initiated_by"] == "admin"
    assert job["details"] == {"strategy": "overwrite"}


def test_enqueue_accepts_explicit_id_and_raw_details(empty_store):
    enqueue_job("export", "postgres", "main", details="free text", id="job-1", store=empty_store)

    job = get_job_status("job-1", store=empty_store)
    assert job["details"] == "free text"


def test_get_job_status_missing(empty_store):
    assert get_job_status("nope", store=empty_store) is None


def test_cancel_only_pending_jobs(empty_store):
    job_id = enqueue_job("export", "postgres", "main", store=empty_store)

    assert cancel_job(job_id, store=empty_store) is True
    assert get_job_status(job_id, store=empty_store)["status"] == "cancelled"

    with pytest.raises(JobStateError, match="Cannot cancel job with status: cancelled"):
        cancel_job(job_id, store=empty_store)


def test_cancel_running_job_is_rejected(empty_store):
    job_id = enqueue_job("export", "postgres", "main", store=empty_store)
    claim_next_job(store=empty_store)

    with pytest.raises(JobStateError, match="running"):
        cancel_job(job_id, store=empty_store)


def test_cancel_and_retry_missing_job_return_false(empty_store):
    assert cancel_job("nope", store=empty_store) is False
    assert retry_job("nope", store=empty_store) is False


def test_retry_failed_job_clears_error(empty_store):
    job_id = enqueue_job("export", "postgres", "main", store=empty_store)
    claim_next_job(store=empty_store)
    fail_job(job_id, "boom", store=empty_store)

    assert retry_job(job_id, store=empty_store) is True

    job = get_job_status(job_id, store=empty_store)
    assert job["status"] == "pending"
    assert job["last_error"] is None
    assert job["attempts"] == 1


def test_retry_pending_job_is_rejected(empty_store):
    job_id = enqueue_job("export", "postgres", "main", store=empty_store)

    with pytest.raises(JobStateError, match="Cannot retry job with status: pending"):
        retry_job(job_id, store=empty_store)


def test_claim_takes_oldest_first_and_counts_attempts(empty_store):
    newer = enqueue_job("export", "postgres", "main", id="newer", store=empty_store)
    older = enqueue_job("export", "postgres", "main", id="older", store=empty_store)
    _set_timestamps(empty_store, newer, "2024-01-02 00:00:00.000000")
    _set_timestamps(empty_store, older, "2024-01-01 00:00:00.000000")

    first = claim_next_job(store=empty_store)
    second = claim_next_job(store=empty_store)

    assert first["id"] == "older"
    assert first["status"] == "running"
    assert first["attempts"] == 1
    assert second["id"] == "newer"
    assert claim_next_job(store=empty_store) is None


def test_claim_breaks_timestamp_ties_by_insertion_order(empty_store):
    for job_id in ("a", "b", "c"):
        enqueue_job("export", "postgres", "main", id=job_id, store=empty_store)
        _set_timestamps(empty_store, job_id, "2024-01-01 00:00:00.000000")

    claimed = [claim_next_job(store=empty_store)["id"] for _ in range(3)]
    assert claimed == ["a", "b", "c"]


def test_complete_job_stores_details(empty_store):
    job_id = enqueue_job("verify_import", "postgres", "main", store=empty_store)
    claim_next_job(store=empty_store)

    complete_job(job_id, {"ok": True, "mismatches": []}, store=empty_store)

    job = get_job_status(job_id, store=empty_store)
    assert job["status"] == "success"
    assert job["details"] == {"ok": True, "mismatches": []}


def test_list_jobs_filters_by_status(empty_store):
    pending = enqueue_job("export", "postgres", "main", store=empty_store)
    cancelled = enqueue_job("export", "postgres", "main", store=empty_store)
    cancel_job(cancelled, store=empty_store)

    assert [j["id"] for j in list_jobs(status="pending", store=empty_store)] == [pending]
    assert len(list_jobs(store=empty_store)) == 2
    assert len(list_jobs(limit=1, store=empty_store)) == 1


def test_cleanup_removes_only_old_terminal_jobs(empty_store):
    old_done = enqueue_job("export", "postgres", "main", id="old-done", store=empty_store)
    old_pending = enqueue_job("export", "postgres", "main", id="old-pending", store=empty_store)
    fresh_done = enqueue_job("export", "postgres", "main", id="fresh-done", store=empty_store)
    cancel_job(old_done, store=empty_store)
    cancel_job(fresh_done, store=empty_store)
    _set_timestamps(empty_store, old_done, "2020-01-01 00:00:00.000000")
    _set_timestamps(empty_store, old_pending, "2020-01-01 00:00:00.000000")

    assert cleanup_old_jobs(days_old=30, store=empty_store) == 1
    assert get_job_status(old_done, store=empty_store) is None
    assert get_job_status(old_pending, store=empty_store) is not None
    assert get_job_status(fresh_done, store=empty_store) is not None
