import re
import unicodedata
from typing import Optional, Tuple

from app.logging_config import get_logger
from app.services.agent_state import (
    LOW_CONFIDENCE_INTENTS,
    ExtractedData,
    Intent,
    LearningContext,
    ScoringRule,
    ServiceInterest,
    Signal,
)
from app.services.pattern_service import INTENT_PATTERNS, PatternSet, load_pattern_set

logger = get_logger("detector_service")

MIN_LEARNED_TERM_LENGTH = 4
MAX_LEARNED_SERVICES = 10
MAX_LEARNED_OBJECTIONS = 5
MAX_LEARNED_PAIN_POINTS = 5
MAX_LEARNED_VOCABULARY = 20

EMAIL_RE = re.compile(r"[\w.-]+@[\w.-]+\.\w+")
# Mexican numbers: optional +52, then 10 digits in 2/3-3/4-4 groups.
PHONE_RE = re.compile(r"(?<!\w)(\+?52)?[\s.-]?\d{2,3}[\s.-]?\d{3,4}[\s.-]?\d{4}\b")
TODAY_RE = re.compile(r"\b(hoy|ahora|ya)\b")
TOMORROW_RE = re.compile(r"\bmanana\b")
THIS_WEEK_RE = re.compile(r"\b(esta semana|proxima semana)\b")
MORNING_RE = re.compile(r"\b(manana|temprano|am)\b")
AFTERNOON_RE = re.compile(r"\b(tarde|pm|despues de las 2|despues del mediodia)\b")
PAIN_SEVERE_RE = re.compile(r"\b(mucho dolor|dolor fuerte|insoportable|no aguanto)\b")
PAIN_MODERATE_RE = re.compile(r"\b(bastante dolor|dolor moderado)\b")
PAIN_MILD_RE = re.compile(r"\b(molestia|incomodidad|leve)\b")
PRICE_SENSITIVE_RE = re.compile(r"\b(barato|economico|presupuesto|caro|precio|cuanto)\b")

LEARNED_PRICE_RE = re.compile(r"\b(precio|costo|cuanto|vale|valor)\b")
LEARNED_BOOKING_RE = re.compile(r"\b(cita|agendar|reservar|turno|cuando)\b")

VOCABULARY_CATEGORY_INTENTS = {
    "symptom": Intent.PAIN_URGENT,
    "urgency": Intent.PAIN_URGENT,
    "procedure": Intent.FAQ,
    "service": Intent.FAQ,
    "time": Intent.BOOK_APPOINTMENT,
    "scheduling_preference": Intent.BOOK_APPOINTMENT,
    "payment": Intent.PRICE_INQUIRY,
}


def normalize_text(text: Optional[str]) -> str:
    """Lower-case and strip diacritics ("Mañana" -> "manana")."""
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFD", text.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"\s+", " ", stripped).strip()


def detect_intent(text: Optional[str], patterns: Optional[PatternSet] = None) -> Intent:
    """Return the first intent whose patterns match, in table priority order."""
    normalized = normalize_text(text)
    if not normalized:
        return Intent.UNKNOWN

    patterns = patterns or load_pattern_set(INTENT_PATTERNS)
    for category in patterns.categories:
        if not patterns.matches(category, normalized):
            continue
        try:
            return Intent(category)
        except ValueError:
            logger.warning(f"Intent table has unknown category {category}")
    return Intent.UNKNOWN


def _mentions_any_term(normalized: str, phrase: str) -> bool:
    terms = normalize_text(phrase).split()
    return any(len(term) >= MIN_LEARNED_TERM_LENGTH and term in normalized for term in terms)


def refine_intent_with_learning(
    text: Optional[str],
    learning_context: Optional[LearningContext],
) -> Tuple[Optional[Intent], Optional[str]]:
    """Look for a more specific intent using the tenant's learned vocabulary.

    Returns (intent, reason) or (None, None) when nothing learned applies.
    """
    if not learning_context:
        return None, None
    normalized = normalize_text(text)
    if not normalized:
        return None, None

    for service in learning_context.top_service_requests[:MAX_LEARNED_SERVICES]:
        if not _mentions_any_term(normalized, service):
            continue
        if LEARNED_PRICE_RE.search(normalized):
            return Intent.PRICE_INQUIRY, f'Learned service "{service}" mentioned with price inquiry'
        if LEARNED_BOOKING_RE.search(normalized):
            return Intent.BOOK_APPOINTMENT, f'Learned service "{service}" mentioned with booking intent'

    for objection in learning_context.common_objections[:MAX_LEARNED_OBJECTIONS]:
        if _mentions_any_term(normalized, objection):
            return Intent.PRICE_INQUIRY, f'Learned objection pattern: "{objection}"'

    for pain in learning_context.pain_points[:MAX_LEARNED_PAIN_POINTS]:
        if _mentions_any_term(normalized, pain):
            return Intent.PAIN_URGENT, f'Learned pain pattern: "{pain}"'

    for entry in learning_context.learned_vocabulary[:MAX_LEARNED_VOCABULARY]:
        term = normalize_text(entry.term)
        if not term or term not in normalized:
            continue
        intent = VOCABULARY_CATEGORY_INTENTS.get(entry.category)
        if intent:
            return intent, f'Learned vocabulary: "{entry.term}" ({entry.category})'

    return None, None


def detect_intent_with_learning(
    text: Optional[str],
    learning_context: Optional[LearningContext] = None,
    patterns: Optional[PatternSet] = None,
) -> Tuple[Intent, Optional[str]]:
    """Primary detection plus learned refinement for low-confidence results only."""
    intent = detect_intent(text, patterns)
    if intent not in LOW_CONFIDENCE_INTENTS or not learning_context:
        return intent, None

    refined, reason = refine_intent_with_learning(text, learning_context)
    if refined is None:
        return intent, None
    logger.info(f"Intent refined by learning: {intent.value} -> {refined.value}")
    return refined, reason


def detect_signals(text: Optional[str], scoring_rules: Optional[list[ScoringRule]]) -> list[Signal]:
    """One signal per matching rule, however many of its keywords appear."""
    if not text or not scoring_rules:
        return []
    lowered = text.lower()
    signals: list[Signal] = []
    for rule in scoring_rules:
        for keyword in rule.keywords:
            if keyword and keyword.lower() in lowered:
                signals.append(Signal(signal=rule.signal_name, points=rule.points))
                break
    return signals


def extract_data(text: Optional[str]) -> ExtractedData:
    """Pull contact, scheduling and pain hints out of a message. Only matched fields are set."""
    extracted = ExtractedData()
    if not text:
        return extracted

    email_match = EMAIL_RE.search(text)
    if email_match:
        extracted.email = email_match.group(0)

    phone_match = PHONE_RE.search(text)
    if phone_match:
        extracted.phone = re.sub(r"[\s.-]", "", phone_match.group(0))

    normalized = normalize_text(text)

    if TODAY_RE.search(normalized):
        extracted.preferred_date = "today"
        extracted.service_interest = ServiceInterest(urgency="urgent")
    elif TOMORROW_RE.search(normalized):
        extracted.preferred_date = "tomorrow"
    elif THIS_WEEK_RE.search(normalized):
        extracted.preferred_date = "this_week"
        extracted.is_flexible_schedule = True

    if MORNING_RE.search(normalized):
        extracted.preferred_time = "morning"
    elif AFTERNOON_RE.search(normalized):
        extracted.preferred_time = "afternoon"

    if PAIN_SEVERE_RE.search(normalized):
        extracted.pain_level = 5
        extracted.symptoms = ["dolor intenso"]
    elif PAIN_MODERATE_RE.search(normalized):
        extracted.pain_level = 3
    elif PAIN_MILD_RE.search(normalized):
        extracted.pain_level = 1

    if PRICE_SENSITIVE_RE.search(normalized):
        if extracted.service_interest is None:
            extracted.service_interest = ServiceInterest()
        extracted.service_interest.price_sensitive = True

    return extracted


def merge_extracted_data(current: ExtractedData, update: ExtractedData) -> ExtractedData:
    """Fill only the fields `current` does not have yet."""
    merged = current.model_copy(deep=True)
    for name, value in update.model_dump(exclude_none=True).items():
        if getattr(merged, name) is None:
            setattr(merged, name, getattr(update, name))
    return merged
