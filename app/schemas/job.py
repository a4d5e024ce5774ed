from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

JobTypeName = Literal["response_generation", "send_whatsapp", "send_instagram", "update_score"]


class ProcessJobsRequest(BaseModel):
    max_jobs: int = Field(default=10, ge=1)
    job_type: Optional[JobTypeName] = None


class ProcessJobsResponse(BaseModel):
    processed: int
    completed: int
    retried: int
    failed: int
    errors: list[dict[str, Any]] = []


class RecoverySummary(BaseModel):
    scanned: int
    recovered: int
    skipped: int
    errors: list[dict[str, Any]] = []


class MaintenanceResponse(BaseModel):
    skipped: bool
    locked_by: Optional[str] = None
    jobs_deleted: Optional[int] = None
    locks_deleted: Optional[int] = None
    recovery: Optional[RecoverySummary] = None
