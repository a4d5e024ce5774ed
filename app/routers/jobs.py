"""Cron-facing endpoints for the job queue."""

import hmac
import os
import socket
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.schemas.job import MaintenanceResponse, ProcessJobsRequest, ProcessJobsResponse
from app.services.job_processor import process_jobs, run_maintenance

router = APIRouter(prefix="/jobs")


def require_cron_auth(authorization: Optional[str] = Header(default=None)) -> None:
    expected = settings.cron_secret
    if not expected:
        if settings.debug:
            return
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="CRON_SECRET not configured")

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid cron credentials")


def _holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


@router.post("/process", response_model=ProcessJobsResponse, dependencies=[Depends(require_cron_auth)])
def process(request: Optional[ProcessJobsRequest] = None, db: Session = Depends(get_db)):
    request = request or ProcessJobsRequest()
    return process_jobs(db, max_jobs=request.max_jobs, job_type=request.job_type)


@router.post("/maintenance", response_model=MaintenanceResponse, dependencies=[Depends(require_cron_auth)])
def maintenance(db: Session = Depends(get_db)):
    return run_maintenance(db, holder_id=_holder_id())
