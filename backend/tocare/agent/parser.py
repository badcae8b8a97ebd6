import logging
import re
from dataclasses import dataclass, field, asdict
from typing import List, Dict, Any

from tocare.agent.llm import LLMClient, Validation, RetryPolicy, parse_json_text
from tocare.agent.prompts import build_parse_messages
from tocare.agent.severity import coerce_severity
from tocare.errors import LLMError

logger = logging.getLogger(__name__)

INTENTS = {"symptom_report", "question", "medication_question", "general"}
SENTIMENTS = {"positive", "neutral", "concerned", "distressed"}

_NEGATION = re.compile(
    r"\b(no|not|never|without|none|denies|deny)\b|don't have|do not have|haven't had|have not had|didn't have"
)
_CLAUSE_SPLIT = re.compile(r"[.!?;]+|,\s*(?:and|but)?|\b(?:and|but|though)\b")
_QUESTION_START = re.compile(r"^(what|how|when|why|should|can|could|is|are|do|does|will|may)\b")

CRITICAL_TERMS = ["chest pain", "can't breathe", "cant breathe", "emergency", "severe", "unconscious"]
HIGH_TERMS = ["pain", "swelling", "swollen", "fever", "dizzy", "nausea", "vomiting"]
MODERATE_TERMS = ["tired", "weak", "difficulty", "concern", "cough"]

SYMPTOM_TERMS = [
    "chest pain", "pressure", "shortness of breath", "short of breath", "can't breathe", "cant breathe",
    "swelling", "swollen", "weight gain", "gained", "cough", "fever", "dizzy", "dizziness", "nausea",
    "vomiting", "tired", "fatigue", "weak", "confused", "discomfort", "pain", "wheezing", "off", "weird",
]

MEDICATION_TERMS = ["medication", "medicine", "meds", "pill", "dose", "prescription", "inhaler", "diuretic"]

WELLNESS_AREAS = {
    "breathing": ["breath", "breathing"],
    "medications": ["med", "meds", "medication", "medicine", "pill"],
    "weight": ["weight", "pounds", "lbs"],
    "swelling": ["swell", "swollen", "ankle"],
    "chest_pain": ["chest"],
    "energy": ["energy", "tired"],
    "sleep": ["sleep"],
}
_POSITIVE_CLAUSE = re.compile(r"\b(fine|good|great|normal|ok|okay|well|better|taking|took|stable)\b")

DISTRESSED_TERMS = ["scared", "terrified", "help me", "can't breathe", "worst", "terrible", "emergency", "dying"]
CONCERNED_TERMS = ["worried", "concerned", "nervous", "not sure", "anxious", "worse"]
POSITIVE_TERMS = ["good", "great", "fine", "better", "well", "okay"]
POSITIVE_PHRASES = ["no problems", "no issues", "no complaints"]


@dataclass
class ParsedResponse:
    symptoms: List[str] = field(default_factory=list)
    severity: str = "NONE"
    intent: str = "general"
    sentiment: str = "neutral"
    confidence: float | None = None
    normalized_text: str = ""
    covered_categories: List[str] = field(default_factory=list)
    new_wellness_confirmations: List[str] = field(default_factory=list)
    raw_input: str = ""
    source: str = "llm"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _clauses(text: str) -> list[str]:
    parts = _CLAUSE_SPLIT.split((text or "").lower())
    return [p.strip() for p in parts if p and p.strip()]


def _is_negated(clause: str) -> bool:
    return _NEGATION.search(clause) is not None


def mentions_pattern(text: str, pattern: str) -> bool:
    """True when ``pattern`` appears in a clause that does not negate it.

    A pattern that carries its own negation ("no energy") still matches
    inside a negated clause.
    """
    p = (pattern or "").lower().strip()
    if not p:
        return False
    negated_pattern = _is_negated(p)
    return any(p in c and (negated_pattern or not _is_negated(c)) for c in _clauses(text))


def _contains_any(text: str, terms: List[str]) -> bool:
    return any(term in text for term in terms)


def _contains_word(text: str, words: List[str]) -> bool:
    return any(re.search(rf"\b{re.escape(w)}", text) for w in words)


def _detect_intent(text: str, has_symptoms: bool) -> str:
    t = (text or "").strip().lower()
    is_question = t.endswith("?") or _QUESTION_START.match(t) is not None
    if is_question and _contains_word(t, MEDICATION_TERMS):
        return "medication_question"
    if is_question:
        return "question"
    if has_symptoms:
        return "symptom_report"
    return "general"


def _detect_sentiment(text: str) -> str:
    t = (text or "").lower()
    if _contains_any(t, DISTRESSED_TERMS):
        return "distressed"
    if _contains_any(t, CONCERNED_TERMS):
        return "concerned"
    clauses = _clauses(t)
    affirmed = " ".join(c for c in clauses if not _is_negated(c))
    if _contains_any(t, POSITIVE_PHRASES) or _contains_word(affirmed, POSITIVE_TERMS):
        return "positive"
    # "not feeling good"
    if any(_is_negated(c) and _contains_word(c, POSITIVE_TERMS) for c in clauses):
        return "concerned"
    return "neutral"


def _keyword_severity(text: str) -> str:
    if _contains_any(text, CRITICAL_TERMS):
        return "CRITICAL"
    if _contains_any(text, HIGH_TERMS):
        return "HIGH"
    if _contains_any(text, MODERATE_TERMS):
        return "MODERATE"
    return "NONE"


def _wellness_areas(clauses: List[str]) -> list[str]:
    areas = []
    for clause in clauses:
        if not (_is_negated(clause) or _POSITIVE_CLAUSE.search(clause)):
            continue
        for area, words in WELLNESS_AREAS.items():
            if area not in areas and _contains_word(clause, words):
                areas.append(area)
    return areas


def keyword_parse(patient_input: str, patterns: List[str] | None = None) -> ParsedResponse:
    """Deterministic parse used when the model is unavailable."""
    clauses = _clauses(patient_input)
    affirmed = [c for c in clauses if not _is_negated(c)]
    affirmed_text = " ".join(affirmed)

    matched = []
    for pattern in patterns or []:
        p = (pattern or "").lower().strip()
        if p and p not in matched and mentions_pattern(patient_input, p):
            matched.append(p)

    symptoms = []
    for term in SYMPTOM_TERMS:
        if any(re.search(rf"\b{re.escape(term)}\b", c) for c in affirmed) and term not in symptoms:
            symptoms.append(term)

    confirmations = _wellness_areas(clauses) if not symptoms else []
    return ParsedResponse(
        symptoms=symptoms,
        severity=_keyword_severity(affirmed_text),
        intent=_detect_intent(patient_input, bool(symptoms)),
        sentiment=_detect_sentiment(patient_input),
        confidence=0.5,
        normalized_text=", ".join(matched),
        covered_categories=list(confirmations),
        new_wellness_confirmations=confirmations,
        raw_input=patient_input,
        source="keywords",
    )


def _as_list(value) -> list[str]:
    if isinstance(value, list):
        return [str(v) for v in value if v is not None and str(v).strip()]
    if isinstance(value, str) and value.strip():
        return [value.strip()]
    return []


def _clamp_confidence(value) -> float | None:
    if value is None:
        return None
    try:
        c = float(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, min(1.0, c))


def from_llm_payload(data: Dict[str, Any], patient_input: str) -> ParsedResponse:
    intent = str(data.get("intent") or "general").strip().lower()
    if intent == "medication":
        intent = "medication_question"
    sentiment = str(data.get("sentiment") or "neutral").strip().lower()
    return ParsedResponse(
        symptoms=_as_list(data.get("symptoms")),
        severity=coerce_severity(data.get("severity")),
        intent=intent if intent in INTENTS else "general",
        sentiment=sentiment if sentiment in SENTIMENTS else "neutral",
        confidence=_clamp_confidence(data.get("confidence")),
        normalized_text=str(data.get("normalized_text") or ""),
        covered_categories=_as_list(data.get("coveredCategories")),
        new_wellness_confirmations=_as_list(data.get("newWellnessConfirmations")),
        raw_input=patient_input,
        source="llm",
    )


async def parse_patient_input(llm: LLMClient | None, patient_input: str, condition: str,
                              history: List[Dict[str, str]] | None = None, patterns: List[str] | None = None,
                              symptom_categories: List[Dict[str, Any]] | None = None,
                              wellness_confirmation_count: int = 0) -> ParsedResponse:
    patterns = patterns or []
    if not llm or not llm.enabled:
        return keyword_parse(patient_input, patterns)

    messages = build_parse_messages(
        condition=condition,
        protocol_patterns=patterns,
        patterns_requiring_numbers=[p for p in patterns if re.search(r"\d", p or "")],
        symptom_categories=symptom_categories or [],
        conversation_history=history or [],
        patient_input=patient_input,
        wellness_confirmation_count=wellness_confirmation_count,
    )
    try:
        result = await llm.call(
            {"messages": messages, "temperature": 0.1, "max_tokens": 500,
             "response_format": {"type": "json_object"}},
            Validation(require_text=True, require_json=True, allow_tool_calls=False),
            RetryPolicy(enable_fallback=False),
            label="parse",
        )
        parsed = from_llm_payload(parse_json_text(result.text), patient_input)
    except (LLMError, ValueError) as exc:
        logger.warning("[parser] model parse failed, using keyword parser: %s", exc)
        return keyword_parse(patient_input, patterns)

    logger.info("[parser] %s severity=%s intent=%s confidence=%s",
                parsed.symptoms, parsed.severity, parsed.intent, parsed.confidence)
    return parsed
