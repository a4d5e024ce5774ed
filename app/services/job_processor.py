"""Runs claimed jobs through their handlers.

Handlers raise on failure; the loop turns every exception into fail_job (retry
with backoff or permanent failure) and moves on to the next job.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import LoggerAdapter, get_logger
from app.models import ChannelConnection, Conversation, Lead, Message, Tenant
from app.models.message import DELIVERED_STATUSES
from app.services.alert_service import alert_error, alert_warning
from app.services.channel_service import send_instagram_message, send_whatsapp_message
from app.services.job_queue_service import (
    CHANNEL_SEND_JOB_TYPES,
    PRIORITY_BACKGROUND,
    PRIORITY_DELIVERY,
    JobStatus,
    JobType,
    cache_job_result,
    claim_next_job,
    cleanup_old_jobs,
    complete_job,
    enqueue_job,
    fail_job,
    recover_unsent_messages,
)
from app.services.lock_service import cleanup_expired_locks, lock_context
from app.services.response_service import generate_response

logger = get_logger("job_processor")

MAINTENANCE_LOCK = "maintenance:jobs"

SCORE_MIN = 0
SCORE_MAX = 100
WARM_THRESHOLD = 40
HOT_THRESHOLD = 80


class JobHandlerError(Exception):
    """Expected handler failure (missing record, disconnected channel, provider error)."""


class PermanentJobError(JobHandlerError):
    """Failure that a retry cannot fix, such as a revoked token or a lead without a recipient id."""


Handler = Callable[[Session, dict], dict]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def classify_score(score: int) -> str:
    if score >= HOT_THRESHOLD:
        return "hot"
    if score >= WARM_THRESHOLD:
        return "warm"
    return "cold"


def _escalate_conversation(db: Session, conversation: Conversation, reason: str) -> None:
    conversation.status = "escalated"
    conversation.ai_handling = False
    conversation.escalation_reason = reason
    conversation.escalated_at = _now()
    db.commit()
    alert_warning(
        "Conversación escalada sin entrega automática",
        {"conversation_id": str(conversation.id), "reason": reason},
    )


# Handlers ----------------------------------------------------------------


def handle_response_generation(db: Session, job: dict) -> dict:
    payload = job["payload"] or {}
    tenant = db.query(Tenant).filter(Tenant.id == job["tenant_id"]).first()
    if tenant is None:
        raise JobHandlerError(f"Tenant {job['tenant_id']} not found")
    if tenant.status != "active":
        return {"skipped": True, "reason": f"tenant_{tenant.status}"}

    conversation = db.query(Conversation).filter(Conversation.id == payload.get("conversation_id")).first()
    if conversation is None:
        raise JobHandlerError(f"Conversation {payload.get('conversation_id')} not found")
    if conversation.status == "escalated" or not conversation.ai_handling:
        return {"skipped": True, "reason": "human_handling", "escalated": True}

    channel = payload.get("channel") or conversation.channel
    cached = job.get("cached_result") or {}

    if cached.get("content"):
        content = cached["content"]
        model = cached.get("model")
        used_fallback = bool(cached.get("used_fallback"))
    else:
        generated = generate_response(
            db,
            tenant_name=tenant.name,
            conversation_id=conversation.id,
            payload=payload,
            business_context=tenant.business_context,
        )
        if not generated.ok:
            raise JobHandlerError(f"Response generation failed: {generated.error}")
        content = generated.value.content
        model = generated.value.model
        used_fallback = generated.value.used_fallback
        cached = {"content": content, "model": model, "used_fallback": used_fallback}
        cache_job_result(db, job["id"], cached)

    message_id = cached.get("message_id")
    if not message_id:
        message = Message(
            id=uuid.uuid4(),
            tenant_id=tenant.id,
            conversation_id=conversation.id,
            lead_id=conversation.lead_id,
            role="assistant",
            channel=channel,
            content=content,
            status="pending",
            message_metadata={
                "job_id": str(job["id"]),
                "model": model,
                "used_fallback": used_fallback,
                "agent": payload.get("next_agent"),
            },
            created_at=_now(),
        )
        db.add(message)
        conversation.last_message_at = message.created_at
        db.commit()
        message_id = str(message.id)
        cached = {**cached, "message_id": message_id}
        cache_job_result(db, job["id"], cached)

    # A retry must not apply the score delta twice.
    score_change = payload.get("score_change") or 0
    if score_change and conversation.lead_id and not cached.get("score_job_id"):
        score_job = enqueue_job(
            db,
            tenant_id=tenant.id,
            job_type=JobType.UPDATE_SCORE,
            payload={"lead_id": str(conversation.lead_id), "score_change": score_change},
            priority=PRIORITY_BACKGROUND,
            commit=False,
        )
        cached = {**cached, "score_job_id": str(score_job.id)}
        cache_job_result(db, job["id"], cached)

    send_type = CHANNEL_SEND_JOB_TYPES.get(channel)
    if send_type is None:
        _escalate_conversation(db, conversation, f"Canal sin entrega automática: {channel}")
        return {"message_id": message_id, "channel": channel, "escalated": True}

    delivery = enqueue_job(
        db,
        tenant_id=tenant.id,
        job_type=send_type,
        payload={
            "message_id": message_id,
            "conversation_id": str(conversation.id),
            "lead_id": str(conversation.lead_id) if conversation.lead_id else None,
            "content": content,
        },
        priority=PRIORITY_DELIVERY,
    )
    return {
        "message_id": message_id,
        "channel": channel,
        "model": model,
        "used_fallback": used_fallback,
        "delivery_job_id": str(delivery.id),
    }


def _load_delivery(db: Session, job: dict, channel: str) -> tuple[Message, ChannelConnection, Optional[Lead]]:
    payload = job["payload"] or {}
    message = db.query(Message).filter(Message.id == payload.get("message_id")).first()
    if message is None:
        raise JobHandlerError(f"Message {payload.get('message_id')} not found")

    connection = (
        db.query(ChannelConnection)
        .filter(ChannelConnection.tenant_id == job["tenant_id"], ChannelConnection.channel == channel)
        .first()
    )
    if connection is None:
        raise JobHandlerError(f"No {channel} connection for tenant {job['tenant_id']}")
    if connection.status != "connected":
        raise JobHandlerError(f"{channel} connection is {connection.status}")

    lead_id = payload.get("lead_id") or message.lead_id
    lead = db.query(Lead).filter(Lead.id == lead_id).first() if lead_id else None
    return message, connection, lead


def _deliver(db: Session, job: dict, channel: str, send: Callable) -> dict:
    payload = job["payload"] or {}
    message, connection, lead = _load_delivery(db, job, channel)
    if message.status in DELIVERED_STATUSES:
        return {"message_id": str(message.id), "already_sent": True}

    if channel == "whatsapp":
        recipient = lead.phone if lead else None
    else:
        recipient = lead.instagram_psid if lead else None

    result = send(connection, recipient, payload.get("content") or message.content)
    if not result.ok:
        message.status = "failed"
        message.error_message = result.error
        db.commit()
        error_class = JobHandlerError if result.retryable else PermanentJobError
        raise error_class(f"{channel} send failed ({result.error_code}): {result.error}")

    message.status = "sent"
    message.external_id = result.value
    message.sent_at = _now()
    message.error_message = None
    db.commit()
    summary = {"message_id": str(message.id), "external_id": result.value}
    if payload.get("recovered_from_job_id"):
        summary["recovered_from_job_id"] = payload["recovered_from_job_id"]
    return summary


def handle_send_whatsapp(db: Session, job: dict) -> dict:
    return _deliver(db, job, "whatsapp", send_whatsapp_message)


def handle_send_instagram(db: Session, job: dict) -> dict:
    return _deliver(db, job, "instagram", send_instagram_message)


def handle_update_score(db: Session, job: dict) -> dict:
    payload = job["payload"] or {}
    lead = db.query(Lead).filter(Lead.id == payload.get("lead_id")).first()
    if lead is None:
        raise JobHandlerError(f"Lead {payload.get('lead_id')} not found")

    previous = lead.score if lead.score is not None else 50
    lead.score = max(SCORE_MIN, min(SCORE_MAX, previous + int(payload.get("score_change") or 0)))
    lead.classification = classify_score(lead.score)
    lead.score_updated_at = _now()
    db.commit()
    return {"lead_id": str(lead.id), "previous_score": previous, "score": lead.score, "classification": lead.classification}


HANDLERS: dict[str, Handler] = {
    JobType.RESPONSE_GENERATION.value: handle_response_generation,
    JobType.SEND_WHATSAPP.value: handle_send_whatsapp,
    JobType.SEND_INSTAGRAM.value: handle_send_instagram,
    JobType.UPDATE_SCORE.value: handle_update_score,
}


# Loop --------------------------------------------------------------------


def process_job(db: Session, job: dict) -> str:
    """Run one claimed job. Returns the job's resulting status."""
    log = LoggerAdapter(
        logger,
        {"job_id": str(job["id"]), "job_type": job["job_type"], "tenant_id": str(job["tenant_id"])},
    )
    handler = HANDLERS.get(job["job_type"])
    try:
        if handler is None:
            raise JobHandlerError(f"No handler for job type {job['job_type']}")
        result = handler(db, job)
    except Exception as exc:
        db.rollback()
        status = fail_job(db, job["id"], str(exc), permanent=isinstance(exc, PermanentJobError))
        log.warning("Job attempt failed", context={"attempt": job["attempts"], "error": str(exc), "status": status})
        if status == JobStatus.FAILED.value:
            alert_error(
                "Job falló sin reintentos" if isinstance(exc, PermanentJobError) else "Job agotó sus intentos",
                {"job_id": str(job["id"]), "job_type": job["job_type"], "error": str(exc)},
            )
        return status or JobStatus.FAILED.value

    complete_job(db, job["id"], result)
    log.info("Job completed", context={"attempt": job["attempts"]})
    return JobStatus.COMPLETED.value


def process_jobs(db: Session, max_jobs: Optional[int] = None, job_type: Optional[str] = None) -> dict[str, Any]:
    limit = min(max_jobs or settings.job_worker_batch_size, settings.job_process_max_batch)
    job_types = [JobType(job_type).value] if job_type else None
    summary: dict[str, Any] = {"processed": 0, "completed": 0, "retried": 0, "failed": 0, "errors": []}

    for _ in range(limit):
        job = claim_next_job(db, job_types=job_types)
        if job is None:
            break
        summary["processed"] += 1
        status = process_job(db, job)
        if status == JobStatus.COMPLETED.value:
            summary["completed"] += 1
            continue
        if status == JobStatus.PENDING.value:
            summary["retried"] += 1
        else:
            summary["failed"] += 1
        summary["errors"].append({"job_id": str(job["id"]), "job_type": job["job_type"], "status": status})

    if summary["processed"]:
        logger.info("Job batch processed", extra={"context": {k: v for k, v in summary.items() if k != "errors"}})
    return summary


def run_maintenance(db: Session, holder_id: str) -> dict[str, Any]:
    """Retention sweep, expired-lock cleanup and unsent-message recovery, once across the fleet."""
    with lock_context(db, MAINTENANCE_LOCK, holder_id) as lock:
        if not lock.acquired:
            logger.info(
                "Maintenance skipped, lock held elsewhere",
                extra={"context": {"holder_id": holder_id, "locked_by": lock.already_locked_by}},
            )
            return {"skipped": True, "locked_by": lock.already_locked_by}

        summary = {
            "skipped": False,
            "jobs_deleted": cleanup_old_jobs(db),
            "locks_deleted": cleanup_expired_locks(db),
            "recovery": recover_unsent_messages(db),
        }

    recovered = summary["recovery"]["recovered"]
    if recovered:
        alert_warning(
            f"Se reencolaron {recovered} mensajes no enviados",
            {"scanned": summary["recovery"]["scanned"], "errors": len(summary["recovery"]["errors"])},
        )
    return summary
