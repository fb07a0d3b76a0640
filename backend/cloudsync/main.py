import asyncio
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from cloudsync import __version__
from cloudsync.config import settings
from cloudsync.routers import cloud_sync
from cloudsync.services.local_store import get_store
from cloudsync.utils.logger import logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = get_store()
    logger.info(f"Local database: {store.db_path}")

    worker_task = None
    if settings.CLOUD_SYNC_WORKER_ENABLED:
        from cloudsync.workers import run_cloud_sync_worker_loop

        worker_task = asyncio.create_task(
            run_cloud_sync_worker_loop(settings.CLOUD_SYNC_WORKER_INTERVAL_SECONDS)
        )
        logger.info(
            "✅ Cloud sync worker started (runs every %s seconds)",
            settings.CLOUD_SYNC_WORKER_INTERVAL_SECONDS,
        )
    else:
        logger.info("⏭️  Cloud sync worker disabled (CLOUD_SYNC_WORKER_ENABLED=false)")

    yield

    if worker_task is not None:
        worker_task.cancel()
        try:
            await worker_task
        except asyncio.CancelledError:
            pass
        logger.info("Cloud sync worker stopped")


app = FastAPI(title="Cloud Sync API", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def request_logger(request: Request, call_next):
    """Tag each request with an id (the caller's X-Request-ID when given)."""

    rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
    started = time.monotonic()
    try:
        resp = await call_next(request)
    except Exception as exc:
        logger.exception(f"[cloud-sync-api] {request.method} {request.url.path} failed rid={rid}")
        resp = JSONResponse(
            {"error": "internal_error", "rid": rid, "type": type(exc).__name__},
            status_code=500,
        )
    elapsed_ms = int((time.monotonic() - started) * 1000)
    if request.url.path != "/healthz":
        logger.info(
            f"[cloud-sync-api] {request.method} {request.url.path} -> {resp.status_code} "
            f"({elapsed_ms}ms) rid={rid}"
        )
    resp.headers["X-Request-ID"] = rid
    return resp


app.include_router(cloud_sync.router)


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}
