"""Pattern-based safety checks: emergencies, allergies, special events, config gaps.

Every check is a pure function of the message text and the vertical. Unmatched or
malformed input yields the neutral result; nothing here raises.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from app.logging_config import get_logger
from app.services.pattern_service import (
    EMERGENCY_PATTERNS,
    SAFETY_PATTERNS,
    SPECIAL_EVENT_PATTERNS,
    PatternSet,
    load_pattern_set,
)

logger = get_logger("safety_service")

HEALTH_VERTICALS = {"dental", "medical"}
LARGE_GROUP_SIZE = 10
ESCALATING_EVENT_TYPES = {"wedding", "catering", "corporate", "vip"}
MIN_REQUIREMENTS_FOR_ESCALATION = 2

ACTION_ESCALATE_IMMEDIATE = "escalate_immediate"
ACTION_URGENT_CARE = "urgent_care"
ACTION_PRIORITY_BOOKING = "priority_booking"
ACTION_NORMAL = "normal"

DENTAL_EMERGENCY_MESSAGE = (
    "Detectamos una posible emergencia dental. Un especialista te contactará de inmediato. "
    "Si el dolor es insoportable, te recomendamos acudir directamente a urgencias dentales."
)
MEDICAL_EMERGENCY_MESSAGE = (
    "Detectamos una posible emergencia médica. Si es una emergencia grave, "
    "por favor llama al 911 o acude a urgencias inmediatamente."
)
SEVERE_PAIN_MESSAGE = (
    "Entiendo que estás pasando por una situación difícil. Vamos a conseguirte una cita lo antes posible."
)
ACCIDENT_MESSAGE = (
    "Si has tenido un accidente, tu seguridad es lo primero. ¿Necesitas atención médica de emergencia?"
)

SEVERE_ALLERGY_DISCLAIMER = (
    "IMPORTANTE: Para alergias severas, por tu seguridad te recomendamos hablar directamente con "
    "nuestro personal. Nuestra cocina maneja diversos ingredientes y no podemos garantizar ausencia "
    "de contaminación cruzada al 100%. Un miembro de nuestro equipo te ayudará a seleccionar opciones seguras."
)
MODERATE_ALLERGY_DISCLAIMER = (
    "Tomamos las alergias muy en serio. Te recomendamos informar a tu mesero al llegar para que te "
    "asesore sobre las opciones más seguras."
)
DIETARY_DISCLAIMER = (
    "Contamos con opciones para tu preferencia alimentaria. Te recomendamos confirmarlo con tu mesero "
    "al ordenar para asegurar que tu platillo cumpla con tus requerimientos."
)
MEDICAL_CONDITION_DISCLAIMER = (
    "Es importante que informes sobre tu condición médica durante la consulta. Nuestros especialistas "
    "evaluarán el mejor tratamiento considerando tu historial de salud."
)

CRITICAL_CONFIG_FIELDS = {
    "dental": ["services", "branches", "staff"],
    "medical": ["services", "branches", "staff"],
    "restaurant": ["services", "branches"],
    "general": ["services", "branches"],
}

RECOMMENDED_CONFIG_FIELDS = {
    "dental": ["faqs", "operating_hours", "custom_instructions"],
    "medical": ["faqs", "operating_hours", "custom_instructions"],
    "restaurant": ["faqs", "operating_hours", "menu_categories"],
    "general": ["faqs", "operating_hours"],
}

CONFIG_FIELD_LABELS = {
    "services": "servicios/productos",
    "branches": "sucursales",
    "staff": "personal/especialistas",
    "faqs": "preguntas frecuentes",
    "operating_hours": "horarios de atención",
    "custom_instructions": "instrucciones",
    "menu_categories": "menú",
}

INCOMPLETE_CONFIG_CAP = 50


@dataclass
class EmergencyResult:
    is_emergency: bool = False
    emergency_type: str = "none"  # dental_emergency, medical_emergency, severe_pain, accident
    severity: int = 1
    keywords: list[str] = field(default_factory=list)
    recommended_action: str = ACTION_NORMAL
    message: Optional[str] = None


@dataclass
class SafetyResult:
    requires_disclaimer: bool = False
    category: str = "none"  # food_allergy, dietary_restriction, medical_condition
    detected_items: list[str] = field(default_factory=list)
    disclaimer: str = ""
    should_escalate_to_human: bool = False


@dataclass
class SpecialEventResult:
    is_special_event: bool = False
    event_type: str = "none"
    group_size: Optional[int] = None
    special_requirements: list[str] = field(default_factory=list)
    should_escalate: bool = False
    escalation_reason: Optional[str] = None


@dataclass
class ConfigCompleteness:
    is_complete: bool = True
    missing_critical: list[str] = field(default_factory=list)
    missing_recommended: list[str] = field(default_factory=list)
    completeness_score: int = 100


@dataclass(frozen=True)
class EscalationFallback:
    primary_action: str  # callback, message, alternative
    fallback_message: str
    should_create_task: bool
    task_description: str


def _lower(text: Optional[str]) -> str:
    return text.lower() if isinstance(text, str) else ""


def detect_emergency(
    text: Optional[str],
    vertical: Optional[str],
    patterns: Optional[PatternSet] = None,
) -> EmergencyResult:
    result = EmergencyResult()
    message = _lower(text)
    if not message:
        return result

    patterns = patterns or load_pattern_set(EMERGENCY_PATTERNS)

    if vertical in HEALTH_VERTICALS:
        match = patterns.first_match(f"{vertical}.critical", message)
        if match:
            result.is_emergency = True
            result.emergency_type = f"{vertical}_emergency"
            result.severity = 5
            result.keywords.append(match.group(0))
            result.recommended_action = ACTION_ESCALATE_IMMEDIATE
            result.message = DENTAL_EMERGENCY_MESSAGE if vertical == "dental" else MEDICAL_EMERGENCY_MESSAGE
            return result

        match = patterns.first_match(f"{vertical}.severe", message)
        if match:
            result.is_emergency = True
            result.emergency_type = "severe_pain"
            result.severity = 4
            result.keywords.append(match.group(0))
            result.recommended_action = ACTION_URGENT_CARE
            result.message = SEVERE_PAIN_MESSAGE
            return result

        match = patterns.first_match(f"{vertical}.moderate", message)
        if match:
            # Moderate pain gets a priority slot but is not an emergency.
            result.emergency_type = "severe_pain"
            result.severity = 2
            result.keywords.append(match.group(0))
            result.recommended_action = ACTION_PRIORITY_BOOKING

    match = patterns.first_match("accident", message)
    if match:
        result.is_emergency = True
        result.emergency_type = "accident"
        result.severity = 4
        result.keywords.append(match.group(0))
        result.recommended_action = ACTION_ESCALATE_IMMEDIATE
        result.message = ACCIDENT_MESSAGE

    return result


def detect_safety_requirements(
    text: Optional[str],
    vertical: Optional[str],
    patterns: Optional[PatternSet] = None,
) -> SafetyResult:
    result = SafetyResult()
    message = _lower(text)
    if not message:
        return result

    patterns = patterns or load_pattern_set(SAFETY_PATTERNS)

    if vertical == "restaurant":
        match = patterns.first_match("severe_allergy", message)
        if match:
            result.requires_disclaimer = True
            result.category = "food_allergy"
            result.detected_items.append(match.group(0))
            result.should_escalate_to_human = True
            result.disclaimer = SEVERE_ALLERGY_DISCLAIMER
            return result

        if patterns.matches("moderate_allergy", message):
            result.requires_disclaimer = True
            result.category = "food_allergy"
            result.disclaimer = MODERATE_ALLERGY_DISCLAIMER

        match = patterns.first_match("dietary_restriction", message)
        if match:
            result.requires_disclaimer = True
            result.category = "dietary_restriction"
            result.detected_items.append(match.group(0))
            result.disclaimer = DIETARY_DISCLAIMER

    if vertical in HEALTH_VERTICALS and patterns.matches("medical_condition", message):
        result.requires_disclaimer = True
        result.category = "medical_condition"
        result.detected_items.append("condición médica")
        result.disclaimer = MEDICAL_CONDITION_DISCLAIMER

    return result


def detect_special_event(
    text: Optional[str],
    vertical: Optional[str],
    patterns: Optional[PatternSet] = None,
) -> SpecialEventResult:
    result = SpecialEventResult()
    if vertical != "restaurant":
        return result
    message = _lower(text)
    if not message:
        return result

    patterns = patterns or load_pattern_set(SPECIAL_EVENT_PATTERNS)

    size_match = patterns.first_match("group_size", message)
    if size_match and size_match.groups():
        try:
            result.group_size = int(size_match.group(1))
        except ValueError:
            result.group_size = None
        if result.group_size is not None and result.group_size >= LARGE_GROUP_SIZE:
            result.is_special_event = True
            result.event_type = "large_group"
            result.should_escalate = True
            result.escalation_reason = f"Grupo de {result.group_size} personas requiere coordinación especial"

    for event_type, event_patterns in patterns.with_prefix("event"):
        if any(pattern.search(message) for pattern in event_patterns):
            result.is_special_event = True
            result.event_type = event_type
            if event_type in ESCALATING_EVENT_TYPES:
                result.should_escalate = True
                result.escalation_reason = f'Evento de tipo "{event_type}" requiere atención personalizada'
            break

    for requirement, requirement_patterns in patterns.with_prefix("requirement"):
        if any(pattern.search(message) for pattern in requirement_patterns):
            result.special_requirements.append(requirement)
            result.is_special_event = True

    if len(result.special_requirements) >= MIN_REQUIREMENTS_FOR_ESCALATION:
        result.should_escalate = True
        result.escalation_reason = (
            f"Múltiples requerimientos especiales: {', '.join(result.special_requirements)}"
        )

    return result


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (list, tuple, dict, str, set)):
        return len(value) == 0
    return False


def _field_value(context: Any, name: str) -> Any:
    if context is None:
        return None
    if isinstance(context, dict):
        return context.get(name)
    return getattr(context, name, None)


def validate_business_configuration(context: Any, vertical: Optional[str]) -> ConfigCompleteness:
    """Score how much of the vertical's required catalog the tenant has filled in."""
    result = ConfigCompleteness()
    key = vertical if vertical in CRITICAL_CONFIG_FIELDS else "general"
    critical_fields = CRITICAL_CONFIG_FIELDS[key]
    recommended_fields = RECOMMENDED_CONFIG_FIELDS[key]

    for name in critical_fields:
        if _is_empty(_field_value(context, name)):
            result.missing_critical.append(name)
            result.is_complete = False

    for name in recommended_fields:
        if _is_empty(_field_value(context, name)):
            result.missing_recommended.append(name)

    total = len(critical_fields) + len(recommended_fields)
    missing = len(result.missing_critical) + len(result.missing_recommended)
    result.completeness_score = round((total - missing) / total * 100)

    if result.missing_critical:
        result.completeness_score = min(result.completeness_score, INCOMPLETE_CONFIG_CAP)

    return result


def generate_incomplete_config_response(missing_fields: list[str]) -> str:
    labels = " y ".join(CONFIG_FIELD_LABELS.get(name, name) for name in missing_fields[:2])
    return (
        f"Gracias por tu interés. Estamos actualizando nuestra información de {labels}. "
        "¿Me permites tu número o correo para que un asesor te contacte con los detalles completos?"
    )


def generate_escalation_fallback(
    reason: str,
    has_callback_option: bool,
    business_hours: Optional[dict] = None,
) -> EscalationFallback:
    """Pick what to tell the customer when no human can take the conversation right now."""
    is_open = bool(business_hours and business_hours.get("is_open"))

    if has_callback_option and is_open:
        return EscalationFallback(
            primary_action="callback",
            fallback_message=(
                "Nuestros asesores están atendiendo otras llamadas en este momento. "
                "¿Te gustaría que te devolvamos la llamada en los próximos 15 minutos?"
            ),
            should_create_task=True,
            task_description=f"Callback solicitado - Razón: {reason}",
        )

    if not is_open:
        next_open = (business_hours or {}).get("next_open_time") or "mañana"
        return EscalationFallback(
            primary_action="message",
            fallback_message=(
                f"En este momento nuestro equipo no está disponible. Un asesor te contactará {next_open}. "
                "¿Puedo tomar tu mensaje para que estén preparados cuando te llamen?"
            ),
            should_create_task=True,
            task_description=f"Contacto fuera de horario - Razón: {reason}",
        )

    return EscalationFallback(
        primary_action="alternative",
        fallback_message=(
            "Gracias por tu paciencia. ¿Prefieres que te enviemos la información por mensaje "
            "o que un asesor te contacte más tarde?"
        ),
        should_create_task=True,
        task_description=f"Escalamiento pendiente - Razón: {reason}",
    )
