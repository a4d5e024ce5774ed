"""Per-turn working record shared by the supervisor and downstream agents."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class Intent(str, Enum):
    GREETING = "GREETING"
    PRICE_INQUIRY = "PRICE_INQUIRY"
    BOOK_APPOINTMENT = "BOOK_APPOINTMENT"
    PAIN_URGENT = "PAIN_URGENT"
    HUMAN_REQUEST = "HUMAN_REQUEST"
    LOCATION = "LOCATION"
    HOURS = "HOURS"
    FAQ = "FAQ"
    INVOICE_REQUEST = "INVOICE_REQUEST"
    UNKNOWN = "UNKNOWN"


# Classes the learned vocabulary is allowed to refine.
LOW_CONFIDENCE_INTENTS = {Intent.UNKNOWN, Intent.FAQ}


class Signal(BaseModel):
    signal: str
    points: int


class ServiceInterest(BaseModel):
    service_name: str = ""
    urgency: Literal["low", "medium", "high", "urgent"] = "medium"
    price_sensitive: bool = False


class ExtractedData(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    preferred_date: Optional[str] = None
    preferred_time: Optional[str] = None
    is_flexible_schedule: Optional[bool] = None
    service_interest: Optional[ServiceInterest] = None
    symptoms: Optional[list[str]] = None
    pain_level: Optional[int] = None
    preferred_branch_id: Optional[str] = None
    preferred_branch_name: Optional[str] = None
    branch_detection_confidence: Optional[float] = None


class AgentTrace(BaseModel):
    model_config = ConfigDict(frozen=True)

    agent_name: str
    input_summary: str
    output_summary: str
    decision: str
    duration_ms: int
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ControlState(BaseModel):
    should_escalate: bool = False
    escalation_reason: Optional[str] = None
    iteration_count: int = 0
    needs_clarification: bool = False
    clarification_question: Optional[str] = None


class SafetyAnalysis(BaseModel):
    emergency_detected: bool = False
    emergency_type: str = "none"
    emergency_severity: int = 1
    emergency_message: Optional[str] = None
    safety_disclaimer: str = ""
    safety_category: str = "none"
    special_event_type: str = "none"
    special_event_requirements: list[str] = Field(default_factory=list)
    config_completeness_score: int = 100
    config_missing_critical: list[str] = Field(default_factory=list)


class ScoringRule(BaseModel):
    signal_name: str
    points: int
    keywords: list[str] = Field(default_factory=list)
    category: Optional[str] = None


class LearnedTerm(BaseModel):
    term: str
    meaning: str = ""
    category: str


class LearningContext(BaseModel):
    top_service_requests: list[str] = Field(default_factory=list)
    common_objections: list[str] = Field(default_factory=list)
    pain_points: list[str] = Field(default_factory=list)
    learned_vocabulary: list[LearnedTerm] = Field(default_factory=list)


class Branch(BaseModel):
    id: str
    name: str
    address: str = ""
    city: str = ""
    phone: str = ""
    is_headquarters: bool = False


class BusinessContext(BaseModel):
    """Tenant catalog consumed by the supervisor; field names double as config-check keys."""

    services: list[dict[str, Any]] = Field(default_factory=list)
    branches: list[Branch] = Field(default_factory=list)
    staff: list[dict[str, Any]] = Field(default_factory=list)
    faqs: list[dict[str, Any]] = Field(default_factory=list)
    operating_hours: dict[str, Any] = Field(default_factory=dict)
    custom_instructions: list[dict[str, Any]] = Field(default_factory=list)
    menu_categories: list[str] = Field(default_factory=list)
    scoring_rules: list[ScoringRule] = Field(default_factory=list)
    learning_context: Optional[LearningContext] = None


class AIConfig(BaseModel):
    auto_escalate_keywords: list[str] = Field(default_factory=list)
    max_turns_before_escalation: Optional[int] = None


class TenantContext(BaseModel):
    tenant_id: str
    tenant_name: str = ""
    vertical: str = "general"
    ai_config: AIConfig = Field(default_factory=AIConfig)


class LeadInfo(BaseModel):
    lead_id: str
    name: Optional[str] = None
    phone: Optional[str] = None
    preferred_branch_id: Optional[str] = None


class BranchContext(BaseModel):
    is_multi_branch: bool = False
    current_branch_id: Optional[str] = None
    current_branch_name: Optional[str] = None
    resolution_source: Optional[str] = None
    resolution_confidence: float = 0.0
    disambiguation_state: Literal["not_needed", "pending", "asked", "resolved"] = "not_needed"
    user_confirmed: bool = False


class ConversationState(BaseModel):
    tenant: TenantContext
    vertical: str = "general"
    current_message: str
    channel: str = "whatsapp"
    conversation_id: Optional[str] = None
    lead: Optional[LeadInfo] = None
    business_context: Optional[BusinessContext] = None

    extracted_data: ExtractedData = Field(default_factory=ExtractedData)
    detected_intent: Intent = Intent.UNKNOWN
    detected_signals: list[Signal] = Field(default_factory=list)
    current_agent: Optional[str] = None
    next_agent: Optional[str] = None
    routing_reason: Optional[str] = None
    score_change: int = 0
    control: ControlState = Field(default_factory=ControlState)
    safety_analysis: SafetyAnalysis = Field(default_factory=SafetyAnalysis)
    branch_context: BranchContext = Field(default_factory=BranchContext)
    agent_trace: list[AgentTrace] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


def add_agent_trace(
    state: ConversationState,
    *,
    agent_name: str,
    input_summary: str,
    output_summary: str,
    decision: str,
    duration_ms: int,
) -> AgentTrace:
    trace = AgentTrace(
        agent_name=agent_name,
        input_summary=input_summary,
        output_summary=output_summary,
        decision=decision,
        duration_ms=duration_ms,
    )
    state.agent_trace.append(trace)
    return trace
