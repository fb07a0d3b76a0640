"""
Background workers for cloud sync.

Workers:
- cloud_sync_worker: drains the cloud sync job ledger one job at a time and
  purges old finished jobs
"""

from cloudsync.workers.cloud_sync_worker import (
    process_all_pending_jobs,
    process_next_job,
    run_cloud_sync_worker_loop,
    run_cloud_sync_worker_once,
)

__all__ = [
    "process_all_pending_jobs",
    "process_next_job",
    "run_cloud_sync_worker_loop",
    "run_cloud_sync_worker_once",
]
