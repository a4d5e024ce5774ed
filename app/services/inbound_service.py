"""Inbound message intake: persist, supervise, then queue generation or escalate."""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Conversation, Lead, Message, Tenant
from app.services.agent_state import (
    AIConfig,
    BranchContext,
    BusinessContext,
    ConversationState,
    LeadInfo,
    TenantContext,
)
from app.services.incident_service import IncidentSink
from app.services.job_queue_service import (
    CHANNEL_SEND_JOB_TYPES,
    PRIORITY_DEFAULT,
    PRIORITY_DELIVERY,
    JobType,
    enqueue_job,
)
from app.services.safety_service import generate_escalation_fallback, generate_incomplete_config_response
from app.services.supervisor_service import STAGE_ESCALATION, route_next, run_supervisor

logger = get_logger("inbound_service")


class RecordNotFoundError(Exception):
    pass


ROUTE_HUMAN_HANDLING = "human_handling"


@dataclass
class InboundOutcome:
    route: str
    conversation_id: str
    message_id: str
    # None when a human already owns the conversation and the supervisor did not run.
    state: Optional[ConversationState] = None
    job_id: Optional[str] = None
    reply_message_id: Optional[str] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _business_context(tenant: Tenant) -> Optional[BusinessContext]:
    try:
        return BusinessContext.model_validate(tenant.business_context or {})
    except ValidationError as exc:
        logger.warning(
            "Invalid business context, continuing without it",
            extra={"context": {"tenant_id": str(tenant.id), "errors": exc.error_count()}},
        )
        return None


def _ai_config(tenant: Tenant) -> AIConfig:
    try:
        return AIConfig.model_validate(tenant.ai_config or {})
    except ValidationError:
        logger.warning(f"Invalid ai_config for tenant {tenant.id}, using defaults")
        return AIConfig()


def _get_conversation(db: Session, tenant: Tenant, lead: Lead, channel: str, conversation_id=None) -> Conversation:
    if conversation_id:
        conversation = (
            db.query(Conversation)
            .filter(Conversation.id == conversation_id, Conversation.tenant_id == tenant.id)
            .first()
        )
        if conversation is None:
            raise RecordNotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    conversation = (
        db.query(Conversation)
        .filter(
            Conversation.tenant_id == tenant.id,
            Conversation.lead_id == lead.id,
            Conversation.channel == channel,
            Conversation.status != "closed",
        )
        .order_by(Conversation.started_at.desc())
        .first()
    )
    if conversation is None:
        conversation = Conversation(
            id=uuid.uuid4(),
            tenant_id=tenant.id,
            lead_id=lead.id,
            channel=channel,
            status="active",
            ai_handling=True,
            started_at=_now(),
            context={},
        )
        db.add(conversation)
        db.flush()
    return conversation


def build_state(tenant: Tenant, lead: Lead, conversation: Conversation, channel: str, content: str) -> ConversationState:
    saved = conversation.context or {}
    state = ConversationState(
        tenant=TenantContext(
            tenant_id=str(tenant.id),
            tenant_name=tenant.name or "",
            vertical=tenant.vertical or "general",
            ai_config=_ai_config(tenant),
        ),
        vertical=tenant.vertical or "general",
        current_message=content,
        channel=channel,
        conversation_id=str(conversation.id),
        lead=LeadInfo(
            lead_id=str(lead.id),
            name=lead.name,
            phone=lead.phone,
            preferred_branch_id=lead.preferred_branch_id,
        ),
        business_context=_business_context(tenant),
    )
    if saved.get("branch_context"):
        try:
            state.branch_context = BranchContext.model_validate(saved["branch_context"])
        except ValidationError:
            logger.warning(f"Discarding invalid branch context for conversation {conversation.id}")
    return state


def _queue_reply(db: Session, tenant: Tenant, conversation: Conversation, channel: str, text: str) -> Optional[str]:
    """Store a fixed reply and queue its delivery. Returns the message id."""
    send_type = CHANNEL_SEND_JOB_TYPES.get(channel)
    message = Message(
        id=uuid.uuid4(),
        tenant_id=tenant.id,
        conversation_id=conversation.id,
        lead_id=conversation.lead_id,
        role="assistant",
        channel=channel,
        content=text,
        status="pending",
        message_metadata={"source": "escalation_fallback"},
        created_at=_now(),
    )
    db.add(message)
    db.commit()
    if send_type is not None:
        enqueue_job(
            db,
            tenant_id=tenant.id,
            job_type=send_type,
            payload={
                "message_id": str(message.id),
                "conversation_id": str(conversation.id),
                "lead_id": str(conversation.lead_id),
                "content": text,
            },
            priority=PRIORITY_DELIVERY,
        )
    return str(message.id)


def handle_inbound_message(
    db: Session,
    *,
    tenant_id,
    lead_id,
    channel: str,
    content: str,
    conversation_id=None,
    external_id: Optional[str] = None,
) -> InboundOutcome:
    tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
    if tenant is None:
        raise RecordNotFoundError(f"Tenant {tenant_id} not found")
    lead = db.query(Lead).filter(Lead.id == lead_id, Lead.tenant_id == tenant.id).first()
    if lead is None:
        raise RecordNotFoundError(f"Lead {lead_id} not found")

    conversation = _get_conversation(db, tenant, lead, channel, conversation_id)
    inbound = Message(
        id=uuid.uuid4(),
        tenant_id=tenant.id,
        conversation_id=conversation.id,
        lead_id=lead.id,
        role="user",
        channel=channel,
        content=content,
        status="delivered",
        external_id=external_id,
        message_metadata={},
        created_at=_now(),
    )
    db.add(inbound)
    conversation.last_message_at = inbound.created_at
    db.commit()

    if conversation.status == "escalated" or not conversation.ai_handling:
        logger.info(
            "Conversation handled by a human, supervisor skipped",
            extra={"context": {"conversation_id": str(conversation.id), "message_id": str(inbound.id)}},
        )
        return InboundOutcome(
            route=ROUTE_HUMAN_HANDLING,
            conversation_id=str(conversation.id),
            message_id=str(inbound.id),
        )

    # iteration_count starts at zero on every inbound message; it guards a single routing run.
    state = build_state(tenant, lead, conversation, channel, content)
    run_supervisor(state, incident_sink=IncidentSink(db))
    route = route_next(state)

    conversation.context = {
        **(conversation.context or {}),
        "branch_context": state.branch_context.model_dump(),
        "last_intent": state.detected_intent.value,
    }
    db.commit()

    outcome = InboundOutcome(
        state=state,
        route=route,
        conversation_id=str(conversation.id),
        message_id=str(inbound.id),
    )

    if route == STAGE_ESCALATION:
        reason = state.control.escalation_reason or "Límite de turnos alcanzado"
        conversation.status = "escalated"
        conversation.ai_handling = False
        conversation.escalation_reason = reason
        conversation.escalated_at = _now()
        db.commit()

        ai_config = tenant.ai_config or {}
        fallback = generate_escalation_fallback(
            reason,
            has_callback_option=bool(ai_config.get("callback_enabled")),
            business_hours=ai_config.get("business_hours"),
        )
        reply = state.safety_analysis.emergency_message or fallback.fallback_message
        outcome.reply_message_id = _queue_reply(db, tenant, conversation, channel, reply)
        logger.warning(
            "Conversation escalated",
            extra={"context": {"conversation_id": outcome.conversation_id, "reason": reason, "task": fallback.task_description}},
        )
        return outcome

    payload = {
        "message_id": outcome.message_id,
        "conversation_id": outcome.conversation_id,
        "lead_id": str(lead.id),
        "channel": channel,
        "message": content,
        "next_agent": route,
        "score_change": state.score_change,
        "safety_disclaimer": state.safety_analysis.safety_disclaimer or None,
        "emergency_message": state.safety_analysis.emergency_message,
        "clarification_question": state.control.clarification_question,
    }
    if state.safety_analysis.config_missing_critical:
        payload["config_notice"] = generate_incomplete_config_response(state.safety_analysis.config_missing_critical)

    job = enqueue_job(
        db,
        tenant_id=tenant.id,
        job_type=JobType.RESPONSE_GENERATION,
        payload=payload,
        priority=PRIORITY_DEFAULT,
    )
    outcome.job_id = str(job.id)
    return outcome
