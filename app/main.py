import asyncio
import os
import socket

from fastapi import FastAPI

from app.config import settings
from app.database import SessionLocal
from app.logging_config import get_logger, setup_logging
from app.routers import health, jobs, messages
from app.services.job_processor import process_jobs

setup_logging(settings.log_level)

app = FastAPI(
    title="Concierge API",
    description="Inbound message orchestration: supervisor routing, job queue and delivery",
    version="0.1.0",
)

app.include_router(health.router)
app.include_router(messages.router)
app.include_router(jobs.router)

worker_logger = get_logger("job_worker")
_job_worker_task: asyncio.Task | None = None

WORKER_ID = f"{socket.gethostname()}:{os.getpid()}"


def _is_job_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.job_worker_enabled


def _run_batch() -> dict:
    db = SessionLocal()
    try:
        return process_jobs(db, max_jobs=settings.job_worker_batch_size)
    finally:
        db.close()


async def _job_worker_loop() -> None:
    interval_seconds = max(settings.job_worker_interval_seconds, 0.1)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            # Handlers are blocking (SQLAlchemy, httpx); keep them off the event loop.
            summary = await asyncio.to_thread(_run_batch)
            if summary["processed"]:
                worker_logger.info("Job worker processed", extra={"context": summary})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            worker_logger.error(
                "Job worker loop failed",
                extra={"context": {"worker_id": WORKER_ID, "error": str(exc)}},
            )


@app.on_event("startup")
async def start_job_worker() -> None:
    global _job_worker_task
    if not _is_job_worker_enabled():
        return
    if _job_worker_task is None or _job_worker_task.done():
        _job_worker_task = asyncio.create_task(_job_worker_loop())
        worker_logger.info("Job worker started", extra={"context": {"worker_id": WORKER_ID}})


@app.on_event("shutdown")
async def stop_job_worker() -> None:
    global _job_worker_task
    if _job_worker_task is None:
        return
    _job_worker_task.cancel()
    try:
        await _job_worker_task
    except asyncio.CancelledError:
        pass
    _job_worker_task = None
