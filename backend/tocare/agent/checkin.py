import logging
from datetime import datetime
from dataclasses import dataclass, field
from typing import List, Dict, Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tocare.agent.llm import LLMClient
from tocare.agent.red_flags import AnalysisResult, analyze_responses
from tocare.db.models import Episode, OutreachResponse, naive_utc, utcnow
from tocare.agent.severity import validate_condition
from tocare.errors import NotFoundError
from tocare.services.escalation import create_escalation_task
from tocare.services.triage import active_red_flag_rules, rule_summaries

logger = logging.getLogger(__name__)

CALLBACK_MESSAGES = {
    "CRITICAL": "Thank you for your responses. A nurse will call you within 30 minutes to discuss your care.",
    "HIGH": "Thank you for your responses. A nurse will call you within 2 hours to follow up on your care.",
    "MODERATE": "Thank you for your responses. A nurse will call you within 4 hours to discuss your care.",
}

CARE_ADVICE = {
    "HF": "Thank you for your responses. Continue taking your medications as prescribed and monitor your weight "
          "daily. Contact us if you have any concerns.",
    "COPD": "Thank you for your responses. Continue using your inhalers as prescribed and avoid triggers. "
            "Contact us if you have breathing difficulties.",
    "AMI": "Thank you for your responses. Continue following your heart-healthy diet and taking medications as "
           "prescribed. Contact us if you have chest pain.",
    "PNA": "Thank you for your responses. Continue resting and taking your antibiotics as prescribed. "
           "Contact us if your symptoms worsen.",
}
DEFAULT_CARE_ADVICE = (
    "Thank you for your responses. Continue following your care plan and contact us if you have any concerns."
)


@dataclass
class CheckInResult:
    severity: str
    red_flag_code: str
    reasoning: str
    escalation_task_id: int | None = None
    next_actions: List[str] = field(default_factory=list)
    response_to_patient: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity,
            "redFlagCode": self.red_flag_code,
            "reasoning": self.reasoning,
            "escalationTaskId": self.escalation_task_id,
            "nextActions": self.next_actions,
            "responseToPatient": self.response_to_patient,
        }


def patient_message(condition: str, severity: str) -> str:
    if severity in CALLBACK_MESSAGES:
        return CALLBACK_MESSAGES[severity]
    return CARE_ADVICE.get(condition, DEFAULT_CARE_ADVICE)


def next_actions(severity: str, escalation_task_id=None) -> List[str]:
    actions = []
    if escalation_task_id:
        actions.append(f"Escalation task created: {escalation_task_id}")
    if severity == "CRITICAL":
        actions += ["Immediate nurse callback required", "Consider ED referral"]
    elif severity == "HIGH":
        actions += ["Nurse callback within 2 hours", "Schedule follow-up appointment"]
    elif severity == "MODERATE":
        actions.append("Nurse callback within 4 hours")
    else:
        actions.append("Continue routine monitoring")
    return actions


def _captured_at(value, now: datetime) -> datetime:
    if isinstance(value, str) and value.strip():
        try:
            value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            raise ValueError(f"Invalid response timestamp {value!r}") from None
    if isinstance(value, datetime):
        return naive_utc(value)
    return now


def latest_episode(db: Session, patient_id: int) -> Episode:
    episode = (
        db.query(Episode)
        .filter(Episode.patient_id == patient_id)
        .order_by(Episode.created_at.desc(), Episode.id.desc())
        .first()
    )
    if not episode:
        raise NotFoundError("Episode for patient", patient_id)
    return episode


async def process_checkin(db: Session, llm: LLMClient | None, patient_id: int, condition: str,
                          responses: List[Dict[str, Any]], channel: str = "SMS",
                          session_id: str | None = None) -> CheckInResult:
    episode = latest_episode(db, patient_id)

    now = utcnow()
    for r in responses:
        db.add(OutreachResponse(
            session_id=session_id,
            episode_id=episode.id,
            question_code=r.get("questionCode"),
            question_version=1,
            response_type=r.get("responseType"),
            value_text=r.get("responseText"),
            captured_at=_captured_at(r.get("timestamp"), now),
        ))
    db.flush()

    analysis_input = [
        {"questionCode": r.get("questionCode"), "questionText": r.get("questionText"),
         "valueText": r.get("responseText")}
        for r in responses
    ]
    try:
        rules = active_red_flag_rules(db, validate_condition(condition))
    except (ValueError, SQLAlchemyError) as exc:
        logger.error("[checkin] rules unavailable for %s: %s", condition, exc)
        rules = None

    if rules is None:
        analysis = AnalysisResult("NONE", "NONE", "Unable to analyze - rules not found")
    else:
        analysis = await analyze_responses(llm, analysis_input, condition, rule_summaries(rules))

    task_id = None
    if analysis.severity != "NONE":
        task = create_escalation_task(db, episode.id, analysis.severity, [analysis.red_flag_code], now=now)
        task_id = task.id

    logger.info("[checkin] patient %s via %s: %s (%s)", patient_id, channel, analysis.severity,
                analysis.red_flag_code)
    return CheckInResult(
        severity=analysis.severity,
        red_flag_code=analysis.red_flag_code,
        reasoning=analysis.reasoning,
        escalation_task_id=task_id,
        next_actions=next_actions(analysis.severity, task_id),
        response_to_patient=patient_message(condition, analysis.severity),
    )
