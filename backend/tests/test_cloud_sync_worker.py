import asyncio
import threading

import pytest

from cloudsync.models.sync import JobStatus
from cloudsync.services.cloud_sync_connections import save_connection
from cloudsync.services.cloud_sync_jobs import cancel_job, enqueue_job, get_job_status, retry_job
from cloudsync.services.sync_tables import advisory_lock_key
from cloudsync.utils.logger import sync_event_logger
from cloudsync.workers import cloud_sync_worker
from cloudsync.workers.cloud_sync_worker import (
    process_all_pending_jobs,
    process_next_job,
    run_cloud_sync_worker_once,
)

from conftest import SqliteRemoteClient, insert_rows, local_row, remote_execute


@pytest.fixture
def connected(seeded_store, remote_url):
    save_connection("main", "postgres", remote_url, "Test remote", store=seeded_store)
    sync_event_logger.clear_events()
    return seeded_store


def _run_next(store):
    return process_next_job(store=store, client_factory=SqliteRemoteClient)


def test_empty_queue_returns_none(connected):
    assert _run_next(connected) is None


def test_export_job_succeeds_and_stores_result(connected):
    job_id = enqueue_job("export", "postgres", "main", store=connected)

    result = _run_next(connected)

    assert result.id == job_id
    assert result.status == JobStatus.SUCCESS
    assert result.result["total_exported"] == 7

    job = get_job_status(job_id, store=connected)
    assert job["status"] == "success"
    assert job["attempts"] == 1
    assert job["details"]["summary"]["products"]["inserted"] == 2
    assert job["last_error"] is None


def test_row_failures_do_not_fail_the_job(connected):
    insert_rows(connected, "products", [
        {"id": "p3", "company": "", "product_name": "Nameless", "created_at": None, "updated_at": None},
    ])
    job_id = enqueue_job("export", "postgres", "main", store=connected)

    result = _run_next(connected)

    assert result.status == JobStatus.SUCCESS
    products = get_job_status(job_id, store=connected)["details"]["summary"]["products"]
    assert products["inserted"] == 2
    assert products["errors"] == 1


def test_dry_run_flag_is_passed_through(connected, remote_url):
    enqueue_job("export", "postgres", "main", dry_run=True, store=connected)

    result = _run_next(connected)

    assert result.result["dry_run"] is True
    assert result.result["total_exported"] == 0
    with SqliteRemoteClient(remote_url) as client:
        assert not client.table_exists("products")


def test_import_job_reads_strategy_and_backup_from_details(connected, remote_url):
    enqueue_job("export", "postgres", "main", store=connected)
    _run_next(connected)
    remote_execute(remote_url, "UPDATE colors SET color_name = NULL WHERE id = 'c1'")

    job_id = enqueue_job(
        "import", "postgres", "main",
        details={"strategy": "overwrite", "createBackup": False},
        store=connected,
    )
    result = _run_next(connected)

    assert result.status == JobStatus.SUCCESS
    assert result.result["strategy"] == "overwrite"
    assert result.result["backup_path"] is None
    assert local_row(connected, "colors", "c1")["color_name"] is None
    assert get_job_status(job_id, store=connected)["status"] == "success"


def test_import_job_defaults_to_merge_with_backup(connected, remote_url):
    enqueue_job("export", "postgres", "main", store=connected)
    _run_next(connected)

    enqueue_job("import", "postgres", "main", store=connected)
    result = _run_next(connected)

    assert result.result["strategy"] == "merge"
    assert result.result["backup_path"] is not None


def test_verify_jobs(connected):
    enqueue_job("export", "postgres", "main", store=connected)
    enqueue_job("verify_export", "postgres", "main", store=connected)
    enqueue_job("verify_import", "postgres", "main", store=connected)

    results = process_all_pending_jobs(
        store=connected, client_factory=SqliteRemoteClient, delay_seconds=0
    ).results

    assert [r.status for r in results] == [JobStatus.SUCCESS] * 3
    assert results[1].result["ok"] is True
    assert results[2].result["ok"] is True


def test_unknown_job_type_fails_the_job(connected):
    job_id = enqueue_job("compact", "postgres", "main", store=connected)

    result = _run_next(connected)

    assert result.status == JobStatus.FAILED
    assert result.error == "Unknown job type: compact"
    assert get_job_status(job_id, store=connected)["last_error"] == "Unknown job type: compact"


def test_missing_connection_fails_the_job(connected):
    job_id = enqueue_job("export", "postgres", "gone", store=connected)

    result = _run_next(connected)

    assert result.status == JobStatus.FAILED
    assert get_job_status(job_id, store=connected)["last_error"] == "Connection not found"
    assert sync_event_logger.get_events()[-1]["event_type"] == "job_failed"


def test_lock_contention_fails_the_job_and_retry_succeeds(connected, remote_url):
    holder = SqliteRemoteClient(remote_url).connect()
    holder.try_advisory_lock(advisory_lock_key(remote_url))
    job_id = enqueue_job("export", "postgres", "main", store=connected)

    failed = _run_next(connected)

    assert failed.status == JobStatus.FAILED
    assert "another sync may be in progress" in failed.error

    holder.release(advisory_lock_key(remote_url))
    retry_job(job_id, store=connected)
    retried = _run_next(connected)

    assert retried.status == JobStatus.SUCCESS
    job = get_job_status(job_id, store=connected)
    assert job["attempts"] == 2
    assert job["last_error"] is None


def test_process_all_runs_jobs_in_order(connected, fast_jobs):
    first = enqueue_job("export", "postgres", "main", id="first", store=connected)
    second = enqueue_job("compact", "postgres", "main", id="second", store=connected)
    cancelled = enqueue_job("export", "postgres", "main", id="third", store=connected)
    cancel_job(cancelled, store=connected)

    summary = process_all_pending_jobs(store=connected, client_factory=SqliteRemoteClient)

    assert summary.processed == 2
    assert [r.id for r in summary.results] == [first, second]
    assert [r.status for r in summary.results] == [JobStatus.SUCCESS, JobStatus.FAILED]
    assert get_job_status(cancelled, store=connected)["status"] == "cancelled"


def test_worker_cycle_purges_old_terminal_jobs(connected):
    job_id = enqueue_job("export", "postgres", "main", store=connected)
    cancel_job(job_id, store=connected)
    with connected.connection() as conn:
        conn.execute(
            "UPDATE cloud_sync_jobs SET updated_at = '2020-01-01 00:00:00.000000' WHERE id = ?", (job_id,)
        )

    summary = asyncio.run(run_cloud_sync_worker_once())

    assert summary == {"status": "ok", "processed": 0, "purged": 1}
    assert get_job_status(job_id, store=connected) is None


def test_only_one_job_runs_at_a_time(connected, monkeypatch):
    first = enqueue_job("verify_import", "postgres", "main", id="a", store=connected)
    second = enqueue_job("verify_import", "postgres", "main", id="b", store=connected)
    entered = threading.Event()
    release = threading.Event()

    def slow_handler(job, connection_string, *, store, client_factory):
        entered.set()
        assert release.wait(timeout=10)
        return {"ok": True}

    monkeypatch.setitem(cloud_sync_worker.JOB_HANDLERS, "verify_import", slow_handler)
    results = []
    runner = threading.Thread(target=lambda: results.append(_run_next(connected)))
    runner.start()
    try:
        assert entered.wait(timeout=10)

        assert _run_next(connected) is None
        drained = process_all_pending_jobs(store=connected, client_factory=SqliteRemoteClient, delay_seconds=0)
        assert drained.busy is True
        assert drained.processed == 0
        assert get_job_status(second, store=connected)["status"] == "pending"
    finally:
        release.set()
        runner.join(timeout=10)

    assert results[0].id == first
    assert results[0].status == JobStatus.SUCCESS
    assert _run_next(connected).id == second
