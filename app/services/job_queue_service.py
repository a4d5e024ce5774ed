from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional, Sequence

from sqlalchemy import and_, delete, func, select, text, update
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import Job, Message
from app.models.message import DELIVERED_STATUSES

logger = get_logger("job_queue")


class JobType(str, Enum):
    RESPONSE_GENERATION = "response_generation"
    SEND_WHATSAPP = "send_whatsapp"
    SEND_INSTAGRAM = "send_instagram"
    UPDATE_SCORE = "update_score"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Lower number is claimed first.
PRIORITY_RECOVERY = 0
PRIORITY_DELIVERY = 1
PRIORITY_DEFAULT = 5
PRIORITY_BACKGROUND = 8

SEND_JOB_TYPES = (JobType.SEND_WHATSAPP.value, JobType.SEND_INSTAGRAM.value)
CHANNEL_SEND_JOB_TYPES = {
    "whatsapp": JobType.SEND_WHATSAPP,
    "instagram": JobType.SEND_INSTAGRAM,
}

CLAIM_SQL = text(
    """
    UPDATE jobs
    SET status = 'processing',
        started_at = NOW(),
        attempts = attempts + 1,
        updated_at = NOW()
    WHERE id = (
        SELECT id
        FROM jobs
        WHERE status = 'pending'
          AND scheduled_for <= NOW()
          AND (CAST(:job_types AS TEXT[]) IS NULL OR job_type = ANY(CAST(:job_types AS TEXT[])))
          AND (CAST(:tenant_id AS UUID) IS NULL OR tenant_id = CAST(:tenant_id AS UUID))
        ORDER BY priority ASC, scheduled_for ASC
        LIMIT 1
        FOR UPDATE SKIP LOCKED
    )
    RETURNING id, tenant_id, job_type, payload, status, priority, attempts,
              max_attempts, scheduled_for, started_at, cached_result
    """
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def enqueue_job(
    db: Session,
    *,
    tenant_id,
    job_type: JobType | str,
    payload: dict[str, Any],
    priority: int = PRIORITY_DEFAULT,
    max_attempts: Optional[int] = None,
    scheduled_for: Optional[datetime] = None,
    commit: bool = True,
) -> Job:
    """Add a pending job. With `commit=False` the caller commits it together with its own writes."""
    now = _now()
    job = Job(
        id=uuid.uuid4(),
        tenant_id=tenant_id,
        job_type=JobType(job_type).value,
        payload=payload,
        status=JobStatus.PENDING.value,
        priority=priority,
        attempts=0,
        max_attempts=max_attempts or settings.job_default_max_attempts,
        scheduled_for=scheduled_for or now,
        created_at=now,
        updated_at=now,
    )
    db.add(job)
    if commit:
        db.commit()
    logger.info(
        "Job enqueued",
        extra={"context": {"job_id": str(job.id), "job_type": job.job_type, "priority": priority}},
    )
    return job


def claim_next_job(
    db: Session,
    job_types: Optional[Sequence[str]] = None,
    tenant_id=None,
) -> Optional[dict[str, Any]]:
    """Atomically move the next eligible pending job to processing and return it.

    The select-for-update-skip-locked subquery and the update are one statement,
    so concurrent workers never receive the same job.
    """
    row = (
        db.execute(
            CLAIM_SQL,
            {
                "job_types": list(job_types) if job_types else None,
                "tenant_id": str(tenant_id) if tenant_id else None,
            },
        )
        .mappings()
        .first()
    )
    db.commit()
    if row is None:
        return None
    job = dict(row)
    logger.debug(
        "Job claimed",
        extra={"context": {"job_id": str(job["id"]), "job_type": job["job_type"], "attempt": job["attempts"]}},
    )
    return job


def complete_job(db: Session, job_id, result: Optional[dict[str, Any]] = None) -> None:
    now = _now()
    db.execute(
        update(Job)
        .where(Job.id == job_id)
        .values(status=JobStatus.COMPLETED.value, result=result, completed_at=now, updated_at=now)
    )
    db.commit()


def fail_job(db: Session, job_id, error_message: str, permanent: bool = False) -> Optional[str]:
    """Reschedule with exponential backoff, or fail permanently once attempts run out.

    `permanent` skips the retry for errors that another attempt cannot fix.

    Returns the resulting status, or None when the job does not exist.
    """
    job = db.query(Job).filter(Job.id == job_id).first()
    if job is None:
        logger.warning(f"fail_job called for unknown job {job_id}")
        return None

    now = _now()
    job.error_message = error_message
    job.updated_at = now
    if not permanent and job.attempts < job.max_attempts:
        job.status = JobStatus.PENDING.value
        job.scheduled_for = now + timedelta(seconds=2 ** job.attempts)
        logger.warning(
            "Job failed, retry scheduled",
            extra={
                "context": {
                    "job_id": str(job_id),
                    "attempts": job.attempts,
                    "max_attempts": job.max_attempts,
                    "retry_at": job.scheduled_for.isoformat(),
                    "error": error_message,
                }
            },
        )
    else:
        job.status = JobStatus.FAILED.value
        job.completed_at = now
        logger.error(
            "Job permanently failed",
            extra={
                "context": {
                    "job_id": str(job_id),
                    "attempts": job.attempts,
                    "permanent": permanent,
                    "error": error_message,
                }
            },
        )
    db.commit()
    return job.status


def cache_job_result(db: Session, job_id, cached_result: dict[str, Any]) -> None:
    """Persist an intermediate result so a retry can skip the expensive step."""
    db.execute(update(Job).where(Job.id == job_id).values(cached_result=cached_result, updated_at=_now()))
    db.commit()


def cleanup_old_jobs(db: Session, days_old: Optional[int] = None) -> int:
    days = days_old if days_old is not None else settings.job_retention_days
    cutoff = _now() - timedelta(days=days)
    result = db.execute(
        delete(Job).where(
            Job.status.in_([JobStatus.COMPLETED.value, JobStatus.FAILED.value]),
            Job.completed_at < cutoff,
        )
    )
    db.commit()
    logger.info(f"Cleaned up {result.rowcount} jobs older than {days} days")
    return result.rowcount


def get_queue_stats(db: Session) -> dict[str, Any]:
    rows = db.execute(
        select(Job.job_type, Job.status, func.count(Job.id)).group_by(Job.job_type, Job.status)
    ).all()
    by_status = {status.value: 0 for status in JobStatus}
    by_type: dict[str, dict[str, int]] = {}
    for job_type, status, count in rows:
        by_status[status] = by_status.get(status, 0) + count
        by_type.setdefault(job_type, {})[status] = count
    return {"total": sum(by_status.values()), "by_status": by_status, "by_type": by_type}


def _has_pending_delivery(db: Session, message_id: str) -> bool:
    existing = db.execute(
        select(Job.id)
        .where(
            Job.job_type.in_(SEND_JOB_TYPES),
            Job.status.in_([JobStatus.PENDING.value, JobStatus.PROCESSING.value]),
            Job.payload["message_id"].astext == message_id,
        )
        .limit(1)
    ).first()
    return existing is not None


def recover_unsent_messages(db: Session, max_age_minutes: Optional[int] = None) -> dict[str, Any]:
    """Re-enqueue delivery for generated responses that never reached the customer.

    A response_generation job can complete while its delivery job later fails for
    good (expired channel token, provider outage). This scans recent completed
    generation jobs and re-enqueues delivery for any whose message is still not
    sent and has no delivery in flight. Per-item errors are collected.
    """
    minutes = max_age_minutes if max_age_minutes is not None else settings.recovery_window_minutes
    since = _now() - timedelta(minutes=minutes)
    summary: dict[str, Any] = {"scanned": 0, "recovered": 0, "skipped": 0, "errors": []}

    jobs = db.execute(
        select(Job).where(
            and_(
                Job.job_type == JobType.RESPONSE_GENERATION.value,
                Job.status == JobStatus.COMPLETED.value,
                Job.completed_at >= since,
            )
        )
    ).scalars().all()

    for job in jobs:
        summary["scanned"] += 1
        try:
            result = job.result or {}
            message_id = result.get("message_id")
            channel = result.get("channel")
            if not message_id or result.get("escalated"):
                summary["skipped"] += 1
                continue

            message = db.query(Message).filter(Message.id == message_id).first()
            if message is None or message.status in DELIVERED_STATUSES:
                summary["skipped"] += 1
                continue

            # One recovery per generation job.
            previous = (message.message_metadata or {}).get("recovery") or {}
            if previous.get("from_job_id") == str(job.id):
                summary["skipped"] += 1
                continue

            if _has_pending_delivery(db, str(message_id)):
                summary["skipped"] += 1
                continue

            job_type = CHANNEL_SEND_JOB_TYPES.get(channel or message.channel)
            if job_type is None:
                raise ValueError(f"No delivery job for channel {channel or message.channel}")

            enqueue_job(
                db,
                tenant_id=job.tenant_id,
                job_type=job_type,
                payload={
                    "message_id": str(message_id),
                    "conversation_id": str(message.conversation_id),
                    "lead_id": str(message.lead_id) if message.lead_id else None,
                    "content": message.content,
                    "recovered_from_job_id": str(job.id),
                },
                priority=PRIORITY_RECOVERY,
                commit=False,
            )
            # The delivery job and the recovery marker commit together.
            metadata = dict(message.message_metadata or {})
            metadata["recovery"] = {"from_job_id": str(job.id), "recovered_at": _now().isoformat()}
            message.message_metadata = metadata
            db.commit()
            summary["recovered"] += 1
        except Exception as exc:
            db.rollback()
            summary["errors"].append({"job_id": str(job.id), "error": str(exc)})
            logger.error(
                "Recovery failed for job",
                extra={"context": {"job_id": str(job.id), "error": str(exc)}},
            )

    logger.info("Recovery scan finished", extra={"context": {k: v for k, v in summary.items() if k != "errors"}})
    return summary
