import logging
import re
from dataclasses import dataclass, field, asdict
from typing import List, Dict, Any

from tocare.agent.parser import ParsedResponse, mentions_pattern
from tocare.agent.protocols import RulesDSL, clarifying_questions, default_questions
from tocare.agent.severity import validate_severity
from tocare.errors import ProtocolConfigurationError

logger = logging.getLogger(__name__)

MEDICATION_ROUTING_QUESTION = "I can help with that. Can you tell me more about your medication question?"
GENERAL_ROUTING_QUESTION = "I can help with that. Can you tell me more about your question?"
WEIGHT_NUMBER_QUESTION = "How many pounds have you gained? It's important to know the specific amount."
AMOUNT_NUMBER_QUESTION = "Can you be more specific about the amount or severity?"

_DIGIT = re.compile(r"\d")


@dataclass
class DecisionHint:
    action: str
    reason: str | None = None
    flag_type: str | None = None
    severity: str | None = None
    matched_pattern: str | None = None
    questions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v not in (None, [])}


def evaluate_rule_condition(any_text: List[str], parsed: ParsedResponse) -> str | None:
    """Return the first pattern found in the combined parsed text, or None.

    Keyword parses only match the raw input clause by clause, so a negated
    mention ("no chest pain") never fires a rule.
    """
    keyword_parse = parsed.source == "keywords"
    parts = [(parsed.normalized_text or "").lower(), " ".join(parsed.symptoms or []).lower()]
    if not keyword_parse:
        parts.append((parsed.raw_input or "").lower())
    combined = " ".join(parts)
    for pattern in any_text or []:
        if not pattern:
            continue
        if pattern.lower() in combined or (keyword_parse and mentions_pattern(parsed.raw_input, pattern)):
            return pattern
    return None


def _needs_number(pattern: str, parsed: ParsedResponse) -> bool:
    if not _DIGIT.search(pattern or ""):
        return False
    return not _DIGIT.search(parsed.raw_input or "") and not _DIGIT.search(parsed.normalized_text or "")


def evaluate_rules(parsed: ParsedResponse, condition: str, rules: RulesDSL, config) -> DecisionHint:
    critical_threshold = config.critical_confidence_threshold
    low_threshold = config.low_confidence_threshold
    vague = config.vague_symptoms
    if not isinstance(vague, list):
        raise ProtocolConfigurationError("Protocol configuration error: vague_symptoms must be a list")

    confidence = parsed.confidence
    if parsed.severity == "CRITICAL" and (confidence or 0) > critical_threshold:
        logger.info("[rules] model assessed CRITICAL at %.2f confidence", confidence)
        return DecisionHint(
            action="FLAG",
            flag_type="AI_CRITICAL_ASSESSMENT",
            severity="CRITICAL",
            reason=f"AI assessed as critical with {round((confidence or 0) * 100)}% confidence",
        )

    if config.route_medication_questions_to_info and parsed.intent == "medication_question":
        return DecisionHint(action="ASK_MORE", reason="Routing to medication information",
                            questions=[MEDICATION_ROUTING_QUESTION])

    if config.route_general_questions_to_info and parsed.intent == "question":
        return DecisionHint(action="ASK_MORE", reason="Routing to appropriate information",
                            questions=[GENERAL_ROUTING_QUESTION])

    effective_confidence = confidence or 1.0
    has_vague = any(
        v.lower() in s.lower() for s in (parsed.symptoms or []) for v in vague if v
    )
    if effective_confidence < low_threshold and has_vague:
        logger.info("[rules] low confidence with vague symptoms, asking to clarify")
        return DecisionHint(action="ASK_MORE", reason="Need more specific information",
                            questions=clarifying_questions(parsed, condition))

    for rule in rules.red_flags:
        pattern = evaluate_rule_condition(rule.text_patterns, parsed)
        if pattern is None:
            continue
        logger.info("[rules] red flag %s matched on %r", rule.rule_code, pattern)

        if _needs_number(pattern, parsed):
            question = rule.numeric_follow_up_question or (
                WEIGHT_NUMBER_QUESTION if "WEIGHT" in rule.rule_code.upper() else AMOUNT_NUMBER_QUESTION
            )
            return DecisionHint(action="ASK_MORE", matched_pattern=pattern,
                                reason="Need specific numeric detail for accurate assessment",
                                questions=[question])

        severity = validate_severity(rule.severity, f"rule {rule.rule_code}")
        if config.enable_sentiment_boost and parsed.severity == "CRITICAL" and parsed.sentiment == "distressed":
            if not config.distressed_severity_upgrade:
                raise ProtocolConfigurationError("Protocol config missing distressed_severity_upgrade")
            severity = validate_severity(config.distressed_severity_upgrade, "distressed_severity_upgrade")
            logger.info("[rules] severity upgraded to %s for distressed patient", severity)

        return DecisionHint(action="FLAG", flag_type=rule.rule_code, severity=severity,
                            reason=rule.message, matched_pattern=pattern)

    for closure in rules.closures:
        pattern = evaluate_rule_condition(closure.text_patterns, parsed)
        if pattern is not None:
            logger.info("[rules] closure %s matched on %r", closure.rule_code, pattern)
            return DecisionHint(action="CLOSE", reason="Patient is doing well", matched_pattern=pattern)

    return DecisionHint(action="ASK_MORE", questions=default_questions(parsed, condition))
