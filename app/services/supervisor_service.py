"""Supervisor: classifies a turn, applies safety escalation and picks the next stage.

One pass per inbound message:
    detecting -> safety_checking -> escalation_deciding -> routed

Any exception inside the pass is converted into an escalation with an error
trace; callers never see it.
"""

import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from app.config import settings
from app.logging_config import get_logger
from app.services.agent_state import (
    Branch,
    BranchContext,
    ConversationState,
    Intent,
    Signal,
    add_agent_trace,
)
from app.services.detector_service import (
    detect_intent_with_learning,
    detect_signals,
    extract_data,
    merge_extracted_data,
    normalize_text,
)
from app.services.safety_service import (
    ACTION_URGENT_CARE,
    ConfigCompleteness,
    EmergencyResult,
    SafetyResult,
    SpecialEventResult,
    detect_emergency,
    detect_safety_requirements,
    detect_special_event,
    validate_business_configuration,
)
from app.services.state_machine import (
    SupervisorStage,
    mark_routed,
    start_escalation_decision,
    start_safety_checks,
)

logger = get_logger("supervisor")

AGENT_NAME = "supervisor"

STAGE_ESCALATION = "escalation"
STAGE_URGENT_CARE = "urgent_care"
STAGE_GENERAL = "general"
STAGE_BRANCH_SELECTOR = "branch_selector"

INTENT_STAGES = {
    Intent.GREETING: "greeting",
    Intent.PRICE_INQUIRY: "pricing",
    Intent.PAIN_URGENT: "urgent_care",
    Intent.HUMAN_REQUEST: "escalation",
    Intent.LOCATION: "location",
    Intent.HOURS: "hours",
    Intent.FAQ: "faq",
    Intent.UNKNOWN: "general",
}

BRANCH_REQUIRED_INTENTS = {Intent.BOOK_APPOINTMENT, Intent.LOCATION, Intent.HOURS}

HIGH_VALUE_SIGNAL_POINTS = 15
HIGH_VALUE_SIGNAL_COUNT = 2
CRITICAL_EMERGENCY_SEVERITY = 4

BRANCH_CONFIDENCE_EXACT = 1.0
BRANCH_CONFIDENCE_CITY = 0.8
BRANCH_CONFIDENCE_NAME_WORD = 0.6
BRANCH_CONFIDENCE_ADDRESS_WORD = 0.5
BRANCH_CONFIDENCE_ACCEPT = 0.7
BRANCH_CONFIDENCE_RESOLVED = 0.9
# A runner-up within this fraction of the top score makes the mention ambiguous.
BRANCH_AMBIGUITY_RATIO = 0.8


class IncidentRecorder(Protocol):
    def log_emergency(self, **kwargs) -> bool: ...

    def log_safety_requirement(self, **kwargs) -> bool: ...

    def log_special_event(self, **kwargs) -> bool: ...


@dataclass(frozen=True)
class EscalationDecision:
    escalate: bool
    reason: Optional[str] = None


NO_ESCALATION = EscalationDecision(escalate=False)


@dataclass
class SafetyFindings:
    emergency: EmergencyResult
    safety: SafetyResult
    special_event: SpecialEventResult
    config: ConfigCompleteness

    @property
    def notable(self) -> bool:
        return (
            self.emergency.is_emergency
            or self.safety.requires_disclaimer
            or self.special_event.is_special_event
        )


@dataclass
class BranchMatch:
    detected: bool = False
    branch_id: Optional[str] = None
    branch_name: Optional[str] = None
    confidence: float = 0.0
    match_type: Optional[str] = None
    multiple_matches: bool = False


# Escalation --------------------------------------------------------------


def base_escalation(
    intent: Intent,
    signals: list[Signal],
    message: str,
    auto_escalate_keywords: Optional[list[str]] = None,
) -> EscalationDecision:
    if intent == Intent.HUMAN_REQUEST:
        return EscalationDecision(True, "Cliente solicitó hablar con un humano")
    if intent == Intent.PAIN_URGENT:
        return EscalationDecision(True, "Situación de dolor/urgencia detectada")

    lowered = (message or "").lower()
    for keyword in auto_escalate_keywords or []:
        if keyword and keyword.lower() in lowered:
            return EscalationDecision(True, f"Keyword de escalación: {keyword}")

    high_value = [signal for signal in signals if signal.points >= HIGH_VALUE_SIGNAL_POINTS]
    if len(high_value) >= HIGH_VALUE_SIGNAL_COUNT:
        return EscalationDecision(True, "Lead de alto valor detectado")

    return NO_ESCALATION


def _critical_emergency_rule(findings: SafetyFindings, base: EscalationDecision) -> Optional[EscalationDecision]:
    emergency = findings.emergency
    if emergency.is_emergency and emergency.severity >= CRITICAL_EMERGENCY_SEVERITY:
        return EscalationDecision(
            True, f"EMERGENCIA: {emergency.emergency_type} (severidad {emergency.severity}/5)"
        )
    return None


def _allergy_rule(findings: SafetyFindings, base: EscalationDecision) -> Optional[EscalationDecision]:
    if base.escalate or not findings.safety.should_escalate_to_human:
        return None
    return EscalationDecision(True, f"SEGURIDAD: {findings.safety.category} - requiere atención humana")


def _special_event_rule(findings: SafetyFindings, base: EscalationDecision) -> Optional[EscalationDecision]:
    event = findings.special_event
    if base.escalate or not event.should_escalate:
        return None
    return EscalationDecision(True, event.escalation_reason or f"Evento especial: {event.event_type}")


OverrideRule = Callable[[SafetyFindings, EscalationDecision], Optional[EscalationDecision]]

# Highest priority first; the first rule that returns a decision replaces the base one.
ESCALATION_OVERRIDE_RULES: tuple[OverrideRule, ...] = (
    _critical_emergency_rule,
    _allergy_rule,
    _special_event_rule,
)


def decide_escalation(base: EscalationDecision, findings: SafetyFindings) -> EscalationDecision:
    for rule in ESCALATION_OVERRIDE_RULES:
        decision = rule(findings, base)
        if decision is not None:
            return decision
    return base


# Routing -----------------------------------------------------------------


def stage_for_intent(intent: Intent, vertical: str) -> str:
    if intent == Intent.BOOK_APPOINTMENT:
        return f"booking_{vertical}"
    if intent == Intent.INVOICE_REQUEST:
        return "invoicing_restaurant" if vertical == "restaurant" else STAGE_GENERAL
    return INTENT_STAGES.get(intent, STAGE_GENERAL)


def detect_branch_mention(message: str, branches: list[Branch]) -> BranchMatch:
    if not branches:
        return BranchMatch()
    if len(branches) == 1:
        return BranchMatch(
            detected=True,
            branch_id=branches[0].id,
            branch_name=branches[0].name,
            confidence=BRANCH_CONFIDENCE_EXACT,
            match_type="single",
        )

    text = normalize_text(message)
    matches: list[tuple[float, str, Branch]] = []
    for branch in branches:
        name = normalize_text(branch.name)
        city = normalize_text(branch.city)
        address = normalize_text(branch.address)

        if name and name in text:
            matches.append((BRANCH_CONFIDENCE_EXACT, "exact", branch))
            continue
        if len(city) >= 4 and city in text:
            matches.append((BRANCH_CONFIDENCE_CITY, "city", branch))
            continue
        if any(word in text for word in name.split() if len(word) >= 4):
            matches.append((BRANCH_CONFIDENCE_NAME_WORD, "partial", branch))
            continue
        if any(word in text for word in address.split() if len(word) >= 5):
            matches.append((BRANCH_CONFIDENCE_ADDRESS_WORD, "partial", branch))

    if not matches:
        return BranchMatch()

    matches.sort(key=lambda item: item[0], reverse=True)
    confidence, match_type, top = matches[0]
    ambiguous = len(matches) > 1 and matches[1][0] >= confidence * BRANCH_AMBIGUITY_RATIO
    return BranchMatch(
        detected=True,
        branch_id=top.id,
        branch_name=top.name,
        confidence=confidence,
        match_type=match_type,
        multiple_matches=ambiguous,
    )


def resolve_branch_context(state: ConversationState, match: BranchMatch) -> BranchContext:
    branches = state.business_context.branches if state.business_context else []
    previous = state.branch_context

    if len(branches) <= 1:
        if not branches:
            return BranchContext(is_multi_branch=False)
        return BranchContext(
            is_multi_branch=False,
            current_branch_id=branches[0].id,
            current_branch_name=branches[0].name,
            resolution_source="single_branch",
            resolution_confidence=1.0,
            disambiguation_state="resolved",
        )

    lead_branch = state.lead.preferred_branch_id if state.lead else None
    known_id = previous.current_branch_id or lead_branch
    known = next((branch for branch in branches if branch.id == known_id), None)
    if known is not None:
        return BranchContext(
            is_multi_branch=True,
            current_branch_id=known.id,
            current_branch_name=known.name,
            resolution_source="lead_preference" if known.id == lead_branch else "conversation",
            resolution_confidence=1.0,
            disambiguation_state="resolved",
            user_confirmed=previous.user_confirmed,
        )

    if match.detected and not match.multiple_matches and match.confidence >= BRANCH_CONFIDENCE_ACCEPT:
        return BranchContext(
            is_multi_branch=True,
            current_branch_id=match.branch_id,
            current_branch_name=match.branch_name,
            resolution_source="message_mention",
            resolution_confidence=match.confidence,
            disambiguation_state="resolved" if match.confidence >= BRANCH_CONFIDENCE_RESOLVED else "pending",
        )

    # Unresolved; keep whatever we already asked so the question is not repeated.
    state_name = previous.disambiguation_state if previous.disambiguation_state != "not_needed" else "pending"
    return BranchContext(is_multi_branch=True, disambiguation_state=state_name)


def branch_question(branches: list[Branch], preferred_branch_id: Optional[str] = None) -> str:
    if not branches:
        return "¿A cuál sucursal te gustaría acudir?"

    preferred = next((branch for branch in branches if branch.id == preferred_branch_id), None)
    if preferred is not None:
        return f"Veo que anteriormente has visitado {preferred.name}. ¿Te gustaría agendar ahí o en otra sucursal?"
    if len(branches) == 2:
        return f"Tenemos dos sucursales: {branches[0].name} y {branches[1].name}. ¿Cuál prefieres?"
    if len(branches) <= 4:
        names = ", ".join(branch.name for branch in branches)
        return f"Tenemos las siguientes sucursales: {names}. ¿A cuál te gustaría acudir?"
    return f"Tenemos {len(branches)} sucursales. ¿En qué zona o ciudad te gustaría agendar?"


# Supervisor pass ---------------------------------------------------------


def _run_safety_checks(state: ConversationState) -> SafetyFindings:
    message = state.current_message
    vertical = state.vertical
    return SafetyFindings(
        emergency=detect_emergency(message, vertical),
        safety=detect_safety_requirements(message, vertical),
        special_event=detect_special_event(message, vertical),
        config=validate_business_configuration(state.business_context, vertical),
    )


def _record_incidents(
    sink: Optional[IncidentRecorder],
    state: ConversationState,
    findings: SafetyFindings,
) -> None:
    if sink is None or not state.tenant.tenant_id:
        return

    lead_id = state.lead.lead_id if state.lead else None
    common = {
        "tenant_id": state.tenant.tenant_id,
        "conversation_id": state.conversation_id,
        "lead_id": lead_id,
    }
    try:
        if findings.emergency.is_emergency:
            sink.log_emergency(
                **common,
                message=state.current_message,
                channel=state.channel,
                vertical=state.vertical,
                emergency=findings.emergency,
            )
        if findings.safety.requires_disclaimer:
            sink.log_safety_requirement(
                **common,
                message=state.current_message,
                channel=state.channel,
                vertical=state.vertical,
                safety=findings.safety,
            )
        if findings.special_event.is_special_event and findings.special_event.should_escalate:
            branches = state.business_context.branches if state.business_context else []
            sink.log_special_event(
                **common,
                branch_id=state.branch_context.current_branch_id or (branches[0].id if branches else None),
                event=findings.special_event,
                contact_name=state.lead.name if state.lead else None,
                contact_phone=state.lead.phone if state.lead else None,
            )
    except Exception as exc:
        logger.error(
            "Incident recording failed",
            extra={"context": {"tenant_id": state.tenant.tenant_id, "error": str(exc)}},
        )


def _input_summary(message: str) -> str:
    return f'Message: "{(message or "")[:50]}..."'


def run_supervisor(
    state: ConversationState,
    incident_sink: Optional[IncidentRecorder] = None,
) -> ConversationState:
    """Run one supervisor pass, updating `state` in place. Never raises."""
    started = time.monotonic()
    stage = SupervisorStage.DETECTING
    state.current_agent = AGENT_NAME

    try:
        business = state.business_context
        branches = business.branches if business else []

        match = detect_branch_mention(state.current_message, branches)
        branch_context = resolve_branch_context(state, match)

        learning_context = business.learning_context if business else None
        intent, learning_reason = detect_intent_with_learning(state.current_message, learning_context)
        signals = detect_signals(state.current_message, business.scoring_rules if business else None)
        extracted = extract_data(state.current_message)

        stage = start_safety_checks(stage)
        findings = _run_safety_checks(state)
        if findings.notable:
            logger.info(
                "Safety findings",
                extra={
                    "context": {
                        "tenant_id": state.tenant.tenant_id,
                        "emergency": findings.emergency.emergency_type,
                        "safety": findings.safety.category,
                        "special_event": findings.special_event.event_type,
                        "config_complete": findings.config.is_complete,
                    }
                },
            )
            _record_incidents(incident_sink, state, findings)

        stage = start_escalation_decision(stage)
        base = base_escalation(
            intent,
            signals,
            state.current_message,
            state.tenant.ai_config.auto_escalate_keywords,
        )
        decision = decide_escalation(base, findings)
        if decision.escalate and decision is not base:
            logger.warning(
                "Safety override escalation",
                extra={"context": {"tenant_id": state.tenant.tenant_id, "reason": decision.reason}},
            )

        needs_branch = False
        question = None
        if decision.escalate:
            if findings.emergency.is_emergency and findings.emergency.recommended_action == ACTION_URGENT_CARE:
                next_agent = STAGE_URGENT_CARE
            else:
                next_agent = STAGE_ESCALATION
        else:
            next_agent = stage_for_intent(intent, state.vertical)
            has_branch = bool(branch_context.current_branch_id) and branch_context.disambiguation_state == "resolved"
            already_asked = state.branch_context.disambiguation_state == "asked"
            if intent in BRANCH_REQUIRED_INTENTS and len(branches) > 1 and not has_branch and not already_asked:
                needs_branch = True
                question = branch_question(branches, state.lead.preferred_branch_id if state.lead else None)
                next_agent = STAGE_BRANCH_SELECTOR
                branch_context.disambiguation_state = "asked"

        score_change = sum(signal.points for signal in signals)

        merged = merge_extracted_data(state.extracted_data, extracted)
        pain_levels = [level for level in (state.extracted_data.pain_level, extracted.pain_level) if level]
        if findings.emergency.emergency_type != "none":
            pain_levels.append(findings.emergency.severity)
        if pain_levels:
            merged.pain_level = max(pain_levels)
        if match.detected and merged.preferred_branch_id is None:
            merged.preferred_branch_id = match.branch_id
            merged.preferred_branch_name = match.branch_name
            merged.branch_detection_confidence = match.confidence

        state.detected_intent = intent
        state.detected_signals = signals
        state.extracted_data = merged
        state.next_agent = next_agent
        state.routing_reason = (
            f"Intent {intent.value} requires branch context - asking user to select branch"
            if needs_branch
            else f"Intent {intent.value} detected with {len(signals)} signals"
        )
        state.score_change = score_change
        state.branch_context = branch_context
        state.control.should_escalate = decision.escalate
        state.control.escalation_reason = decision.reason
        state.control.needs_clarification = needs_branch
        state.control.clarification_question = question
        state.safety_analysis.emergency_detected = findings.emergency.is_emergency
        state.safety_analysis.emergency_type = findings.emergency.emergency_type
        state.safety_analysis.emergency_severity = findings.emergency.severity
        state.safety_analysis.emergency_message = findings.emergency.message
        state.safety_analysis.safety_disclaimer = findings.safety.disclaimer
        state.safety_analysis.safety_category = findings.safety.category
        state.safety_analysis.special_event_type = findings.special_event.event_type
        state.safety_analysis.special_event_requirements = list(findings.special_event.special_requirements)
        state.safety_analysis.config_completeness_score = findings.config.completeness_score
        state.safety_analysis.config_missing_critical = list(findings.config.missing_critical)

        tags = ""
        if findings.emergency.is_emergency:
            tags += " [EMERGENCY]"
        if learning_reason:
            tags += " [LEARNING]"
        if needs_branch:
            tags += " [BRANCH_DISAMBIGUATION]"
        elif match.detected:
            tags += " [BRANCH_DETECTED]"

        details = []
        if findings.emergency.is_emergency:
            details.append(f"Emergency: {findings.emergency.emergency_type}")
        if learning_reason:
            details.append(f"Learning: {learning_reason}")
        if needs_branch:
            details.append("Branch disambiguation needed")
        decision_text = f"Routing to {next_agent} because {intent.value}"
        if details:
            decision_text += f" ({'; '.join(details)})"

        stage = mark_routed(stage)
        add_agent_trace(
            state,
            agent_name=AGENT_NAME,
            input_summary=_input_summary(state.current_message),
            output_summary=f"Intent: {intent.value}, Next: {next_agent}{tags}",
            decision=decision_text,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        state.control.iteration_count += 1

        logger.info(
            "Supervisor routed",
            extra={
                "context": {
                    "tenant_id": state.tenant.tenant_id,
                    "conversation_id": state.conversation_id,
                    "intent": intent.value,
                    "next_agent": next_agent,
                    "score_change": score_change,
                    "should_escalate": decision.escalate,
                    "iteration": state.control.iteration_count,
                }
            },
        )
    except Exception as exc:
        logger.exception(
            "Supervisor failed, escalating",
            extra={"context": {"tenant_id": state.tenant.tenant_id, "stage": stage.value}},
        )
        add_agent_trace(
            state,
            agent_name=AGENT_NAME,
            input_summary=_input_summary(state.current_message),
            output_summary=f"ERROR at {stage.value}: {exc}",
            decision="Escalating due to error",
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        state.next_agent = STAGE_ESCALATION
        state.control.should_escalate = True
        state.control.escalation_reason = f"Error en supervisor: {exc}"
        state.errors.append(str(exc))

    return state


def route_next(state: ConversationState) -> str:
    """Pick the stage the outer loop runs next. Escalates on request or when turns run out."""
    if state.control.should_escalate:
        return STAGE_ESCALATION

    max_turns = state.tenant.ai_config.max_turns_before_escalation
    if max_turns is None:
        max_turns = settings.default_max_turns_before_escalation
    if state.control.iteration_count >= max_turns:
        return STAGE_ESCALATION

    if (
        state.control.needs_clarification
        and state.branch_context.disambiguation_state == "asked"
        and state.next_agent == STAGE_BRANCH_SELECTOR
    ):
        return STAGE_GENERAL

    return state.next_agent or STAGE_GENERAL
