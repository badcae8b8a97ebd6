import logging
from dataclasses import dataclass
from typing import List, Dict, Any

from tocare.agent.llm import LLMClient, Validation, RetryPolicy, parse_json_text
from tocare.agent.prompts import build_analysis_prompt
from tocare.agent.severity import coerce_severity
from tocare.errors import LLMError

logger = logging.getLogger(__name__)

CRITICAL_KEYWORDS = ["chest pain", "can't breathe", "emergency", "severe", "unconscious"]
HIGH_KEYWORDS = ["pain", "swelling", "fever", "dizzy", "nausea"]
MODERATE_KEYWORDS = ["tired", "weak", "difficulty", "concern"]

ANALYSIS_SYSTEM_PROMPT = (
    "You are a medical AI assistant specializing in Transition of Care analysis. Always respond with valid JSON."
)


@dataclass
class AnalysisResult:
    severity: str
    red_flag_code: str
    reasoning: str

    def to_dict(self) -> Dict[str, Any]:
        return {"severity": self.severity, "redFlagCode": self.red_flag_code, "reasoning": self.reasoning}


def fallback_rule_based_analysis(responses: List[Dict[str, Any]]) -> AnalysisResult:
    text = " ".join(
        str(r.get("valueText") or r.get("valueChoice") or "").lower() for r in responses
    )
    if any(k in text for k in CRITICAL_KEYWORDS):
        return AnalysisResult("CRITICAL", "CRITICAL_SYMPTOMS", "Critical symptoms detected in patient responses")
    if any(k in text for k in HIGH_KEYWORDS):
        return AnalysisResult("HIGH", "SYMPTOM_WORSENING", "Concerning symptoms reported by patient")
    if any(k in text for k in MODERATE_KEYWORDS):
        return AnalysisResult("MODERATE", "GENERAL_CONCERN", "Patient expressing concerns or mild symptoms")
    return AnalysisResult("NONE", "NONE", "No red flags detected in patient responses")


async def analyze_responses(llm: LLMClient | None, responses: List[Dict[str, Any]], condition: str,
                            rules: List[Dict[str, Any]]) -> AnalysisResult:
    if not llm or not llm.enabled:
        return fallback_rule_based_analysis(responses)

    messages = [
        {"role": "system", "content": ANALYSIS_SYSTEM_PROMPT},
        {"role": "user", "content": build_analysis_prompt(condition, rules, responses)},
    ]
    try:
        result = await llm.call(
            {"messages": messages, "temperature": 0.1, "max_tokens": 500},
            Validation(require_text=True, require_json=True, allow_tool_calls=False),
            RetryPolicy(enable_fallback=False),
            label="analyze",
        )
        data = parse_json_text(result.text)
    except (LLMError, ValueError) as exc:
        logger.warning("[triage] model analysis failed, using keyword analysis: %s", exc)
        return fallback_rule_based_analysis(responses)

    return AnalysisResult(
        severity=coerce_severity(data.get("severity")),
        red_flag_code=str(data.get("redFlagCode") or "NONE"),
        reasoning=str(data.get("reasoning") or "No specific reasoning provided"),
    )


def _compare(number: float, operator: str, threshold) -> bool:
    try:
        threshold = float(threshold)
    except (TypeError, ValueError):
        return False
    if operator == ">=":
        return number >= threshold
    if operator == ">":
        return number > threshold
    if operator == "<=":
        return number <= threshold
    if operator == "<":
        return number < threshold
    if operator in ("=", "=="):
        return number == threshold
    return False


def evaluate_rule(logic_spec: Dict[str, Any] | None, value_number=None, value_choice=None) -> bool:
    """Evaluate a structured red flag rule against one coded answer."""
    if not logic_spec:
        return False
    operator = logic_spec.get("operator")
    if value_number is not None:
        return _compare(float(value_number), operator, logic_spec.get("threshold"))
    if value_choice:
        expected = logic_spec.get("value")
        return operator in ("=", "==") and str(value_choice).strip().upper() == str(expected).strip().upper()
    return False
