from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from app.services.agent_state import (
    AgentTrace,
    ControlState,
    ExtractedData,
    Intent,
    SafetyAnalysis,
    Signal,
)


class InboundMessageRequest(BaseModel):
    tenant_id: UUID
    lead_id: UUID
    channel: Literal["whatsapp", "instagram", "webchat"] = "whatsapp"
    content: str = Field(min_length=1)
    conversation_id: Optional[UUID] = None
    external_id: Optional[str] = None


class SupervisorOutput(BaseModel):
    detected_intent: Intent
    detected_signals: list[Signal]
    extracted_data: ExtractedData
    next_agent: Optional[str] = None
    routing_reason: Optional[str] = None
    score_change: int
    control: ControlState
    agent_trace: list[AgentTrace]
    safety_analysis: SafetyAnalysis
    errors: list[str] = []


class InboundMessageResponse(BaseModel):
    conversation_id: UUID
    message_id: UUID
    route: str
    escalated: bool
    job_id: Optional[UUID] = None
    reply_message_id: Optional[UUID] = None
    supervisor: Optional[SupervisorOutput] = None
