from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from cloudsync.exceptions import BackupNotFoundError, JobStateError, RestoreError, SyncImportError
from cloudsync.models.sync import JobStatus, JobType, ProcessAllResult, RestoreResult
from cloudsync.services import cloud_sync_connections as connections
from cloudsync.services import cloud_sync_jobs as jobs
from cloudsync.services.cloud_sync_import import parse_strategy, restore_from_backup
from cloudsync.services.local_store import LocalStore, get_store
from cloudsync.utils.logger import logger, sync_event_logger
from cloudsync.workers.cloud_sync_worker import process_all_pending_jobs


router = APIRouter(prefix="/api/cloud-sync", tags=["cloud-sync"])


def get_local_store() -> LocalStore:
    return get_store()


class ConnectionCreateRequest(BaseModel):
    id: str = Field(min_length=1)
    provider: str = "postgres"
    connection_string: str = Field(min_length=1)
    label: Optional[str] = None


class ConnectionDto(BaseModel):
    id: str
    provider: str
    label: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class JobCreateRequest(BaseModel):
    job_type: JobType
    connection_id: str
    dry_run: bool = False
    initiated_by: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class JobCreatedResponse(BaseModel):
    job_id: str
    status: JobStatus = JobStatus.PENDING


class RestoreRequest(BaseModel):
    backup_path: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------

@router.post("/connections", response_model=ConnectionDto, status_code=status.HTTP_201_CREATED)
def create_connection(
    payload: ConnectionCreateRequest,
    store: LocalStore = Depends(get_local_store),
) -> ConnectionDto:
    """Store (or replace) a remote connection. The secret is never echoed back."""

    connections.save_connection(
        payload.id, payload.provider, payload.connection_string, payload.label, store=store
    )
    saved = next((c for c in connections.list_connections(store=store) if c["id"] == payload.id), None)
    if saved is None:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="connection_not_saved")
    return ConnectionDto(**saved)


@router.get("/connections", response_model=List[ConnectionDto])
def get_connections(store: LocalStore = Depends(get_local_store)) -> List[ConnectionDto]:
    return [ConnectionDto(**c) for c in connections.list_connections(store=store)]


@router.delete("/connections/{connection_id}")
def remove_connection(connection_id: str, store: LocalStore = Depends(get_local_store)) -> Dict[str, Any]:
    if not connections.delete_connection(connection_id, store=store):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="connection_not_found")
    return {"ok": True}


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

@router.post("/jobs", response_model=JobCreatedResponse, status_code=status.HTTP_202_ACCEPTED)
def create_job(
    payload: JobCreateRequest,
    store: LocalStore = Depends(get_local_store),
) -> JobCreatedResponse:
    """Queue an export/import/verify job; the worker picks it up."""

    connection = connections.get_connection(payload.connection_id, store=store)
    if connection is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="connection_not_found")

    if payload.job_type == JobType.IMPORT and payload.details and payload.details.get("strategy"):
        try:
            parse_strategy(payload.details["strategy"])
        except SyncImportError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    job_id = jobs.enqueue_job(
        payload.job_type,
        connection["provider"],
        payload.connection_id,
        dry_run=payload.dry_run,
        initiated_by=payload.initiated_by,
        details=payload.details,
        store=store,
    )
    return JobCreatedResponse(job_id=job_id)


@router.get("/jobs")
def get_jobs(
    limit: int = Query(50, ge=1, le=500),
    job_status: Optional[JobStatus] = Query(None, alias="status"),
    store: LocalStore = Depends(get_local_store),
) -> List[Dict[str, Any]]:
    return jobs.list_jobs(limit=limit, status=job_status, store=store)


@router.post("/jobs/process", response_model=ProcessAllResult)
def process_jobs(store: LocalStore = Depends(get_local_store)) -> ProcessAllResult:
    """Drain the queue synchronously (useful when the background loop is off)."""

    result = process_all_pending_jobs(store=store)
    if result.busy:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="worker_busy")
    logger.info(f"[cloud-sync] Processed {result.processed} jobs on request")
    return result


@router.get("/jobs/{job_id}")
def get_job(job_id: str, store: LocalStore = Depends(get_local_store)) -> Dict[str, Any]:
    job = jobs.get_job_status(job_id, store=store)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job_not_found")
    return job


@router.post("/jobs/{job_id}/cancel")
def cancel_job(job_id: str, store: LocalStore = Depends(get_local_store)) -> Dict[str, Any]:
    try:
        cancelled = jobs.cancel_job(job_id, store=store)
    except JobStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if not cancelled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job_not_found")
    return {"ok": True, "status": JobStatus.CANCELLED.value}


@router.post("/jobs/{job_id}/retry")
def retry_job(job_id: str, store: LocalStore = Depends(get_local_store)) -> Dict[str, Any]:
    try:
        retried = jobs.retry_job(job_id, store=store)
    except JobStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if not retried:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job_not_found")
    return {"ok": True, "status": JobStatus.PENDING.value}


# ---------------------------------------------------------------------------
# Restore / events
# ---------------------------------------------------------------------------

@router.post("/restore", response_model=RestoreResult)
def restore(payload: RestoreRequest, store: LocalStore = Depends(get_local_store)) -> RestoreResult:
    try:
        return restore_from_backup(payload.backup_path, store=store)
    except BackupNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except RestoreError as exc:
        logger.error(f"[cloud-sync] Restore failed: {exc}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


@router.get("/events")
async def get_events(limit: int = Query(100, ge=1, le=1000)) -> Dict[str, Any]:
    """Recent job lifecycle events recorded by the worker."""

    events = sync_event_logger.get_events(limit)
    return {"events": events, "count": len(events)}
