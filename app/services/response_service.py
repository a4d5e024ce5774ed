"""Response generation: primary model guarded by the circuit breaker, lighter model as fallback."""

from dataclasses import dataclass
from typing import Any, List, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import Message
from app.services.circuit_breaker import CircuitBreaker, get_circuit_breaker
from app.services.llm import LLMProvider, OpenAIProvider
from app.services.result import Result

logger = get_logger("response_service")

MAX_HISTORY_MESSAGES = 10
FALLBACK_MAX_TOKENS = 300

BASE_PROMPT = (
    "Eres el asistente virtual de {tenant_name}. Responde en español, de forma breve, "
    "cordial y precisa. No inventes precios, horarios ni disponibilidad que no estén en el contexto."
)
FALLBACK_PROMPT = (
    "Eres el asistente de {tenant_name}. Responde en una o dos frases y ofrece que un asesor "
    "dé seguimiento si no tienes la información."
)

_llm_provider: Optional[LLMProvider] = None


@dataclass
class GeneratedResponse:
    content: str
    model: str
    used_fallback: bool


def get_llm_provider() -> LLMProvider:
    global _llm_provider
    if _llm_provider is None:
        _llm_provider = OpenAIProvider(api_key=settings.openai_api_key, default_model=settings.primary_model)
    return _llm_provider


def get_conversation_history(db: Session, conversation_id, limit: int = MAX_HISTORY_MESSAGES) -> List[dict]:
    messages = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc())
        .limit(limit)
        .all()
    )
    return [
        {"role": "assistant" if msg.role == "assistant" else "user", "content": msg.content}
        for msg in reversed(messages)
    ]


def build_system_prompt(tenant_name: str, payload: dict[str, Any], business_context: Optional[dict] = None) -> str:
    """System prompt for the stage the supervisor picked, plus any safety text that must be relayed."""
    parts = [BASE_PROMPT.format(tenant_name=tenant_name or "el negocio")]
    stage = payload.get("next_agent")
    if stage:
        parts.append(f"Etapa de la conversación: {stage}.")

    instructions = (business_context or {}).get("custom_instructions") or []
    for item in instructions:
        text = item.get("instruction") if isinstance(item, dict) else str(item)
        if text:
            parts.append(text)

    if payload.get("clarification_question"):
        parts.append(f"Antes de continuar pregunta: {payload['clarification_question']}")
    if payload.get("safety_disclaimer"):
        parts.append(f"Incluye este aviso tal cual: {payload['safety_disclaimer']}")
    if payload.get("emergency_message"):
        parts.append(f"Incluye este mensaje tal cual: {payload['emergency_message']}")
    if payload.get("config_notice"):
        parts.append(f"Si no tienes el dato que piden, responde: {payload['config_notice']}")
    return "\n\n".join(parts)


def generate_response(
    db: Session,
    *,
    tenant_name: str,
    conversation_id,
    payload: dict[str, Any],
    business_context: Optional[dict] = None,
    provider: Optional[LLMProvider] = None,
    breaker: Optional[CircuitBreaker] = None,
) -> Result[GeneratedResponse]:
    provider = provider or get_llm_provider()
    breaker = breaker or get_circuit_breaker("response_generation")

    history = get_conversation_history(db, conversation_id)
    if not history or history[-1]["content"] != payload.get("message"):
        history.append({"role": "user", "content": payload.get("message") or ""})

    def primary() -> GeneratedResponse:
        messages = [{"role": "system", "content": build_system_prompt(tenant_name, payload, business_context)}]
        response = provider.generate(
            messages + history,
            model=settings.primary_model,
            timeout_seconds=settings.llm_timeout_seconds,
        )
        return GeneratedResponse(content=response.content, model=response.model, used_fallback=False)

    def fallback() -> GeneratedResponse:
        messages = [{"role": "system", "content": FALLBACK_PROMPT.format(tenant_name=tenant_name or "el negocio")}]
        response = provider.generate(
            messages + history[-1:],
            model=settings.fallback_model,
            max_tokens=FALLBACK_MAX_TOKENS,
            timeout_seconds=settings.llm_timeout_seconds,
        )
        return GeneratedResponse(content=response.content, model=response.model, used_fallback=True)

    try:
        generated, used_fallback = breaker.execute_with_fallback(primary, fallback)
    except Exception as exc:
        logger.error(
            "Primary and fallback generation failed",
            extra={"context": {"conversation_id": str(conversation_id), "error": str(exc)}},
        )
        return Result.failure(str(exc), "generation_failed")

    if used_fallback:
        logger.warning(
            "Response generated by fallback",
            extra={"context": {"conversation_id": str(conversation_id), "circuit": breaker.state.value}},
        )
    generated.used_fallback = used_fallback
    return Result.success(generated)
