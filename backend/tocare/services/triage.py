import logging
from typing import List, Dict, Any

from sqlalchemy.orm import Session

from tocare.agent.llm import LLMClient
from tocare.agent.red_flags import analyze_responses, evaluate_rule
from tocare.agent.severity import max_severity
from tocare.db.models import (
    AgentInteraction,
    Episode,
    OutreachAttempt,
    OutreachPlan,
    OutreachResponse,
    RedFlagRule,
    utcnow,
)
from tocare.errors import NotFoundError
from tocare.services.audit import record_audit
from tocare.services.escalation import create_escalation_task

logger = logging.getLogger(__name__)


def active_red_flag_rules(db: Session, condition: str) -> List[RedFlagRule]:
    return (
        db.query(RedFlagRule)
        .filter(RedFlagRule.condition_code == condition)
        .filter(RedFlagRule.active.is_(True))
        .order_by(RedFlagRule.id.asc())
        .all()
    )


def rule_summaries(rules: List[RedFlagRule]) -> List[Dict[str, Any]]:
    return [
        {
            "rule_code": r.rule_code,
            "description": r.description,
            "severity": r.severity,
            "action_hint": r.action_hint,
        }
        for r in rules
    ]


def episode_for_attempt(db: Session, attempt: OutreachAttempt) -> Episode:
    episode = (
        db.query(Episode)
        .join(OutreachPlan, OutreachPlan.episode_id == Episode.id)
        .filter(OutreachPlan.id == attempt.outreach_plan_id)
        .first()
    )
    if not episode:
        raise NotFoundError("Episode for outreach attempt", attempt.id)
    return episode


def triage_responses(db: Session, attempt: OutreachAttempt, responses: List[OutreachResponse]):
    """Apply structured red flag rules to coded answers; returns the task or None."""
    episode = episode_for_attempt(db, attempt)
    rules = active_red_flag_rules(db, episode.condition_code)
    if not rules:
        logger.info("[triage] no rules configured for %s", episode.condition_code)
        return None

    triggered = []
    for response in responses:
        for rule in rules:
            spec = rule.logic_spec or {}
            if spec.get("question_code") != response.question_code:
                continue
            if evaluate_rule(spec, response.value_number, response.value_choice):
                triggered.append(rule)
                response.red_flag_severity = rule.severity
                response.red_flag_code = rule.rule_code
                logger.info("[triage] rule %s triggered (%s)", rule.rule_code, rule.severity)

    if not triggered:
        logger.info("[triage] no red flags for attempt %s", attempt.id)
        return None

    severity = max_severity(r.severity for r in triggered)
    reason_codes = []
    for rule in triggered:
        if rule.rule_code not in reason_codes:
            reason_codes.append(rule.rule_code)
    task = create_escalation_task(db, episode.id, severity, reason_codes, source_attempt_id=attempt.id)
    now = utcnow()
    db.add(AgentInteraction(
        episode_id=episode.id,
        outreach_attempt_id=attempt.id,
        interaction_type="TRIAGE_EVALUATION",
        status="COMPLETED",
        meta={"triggered_rules": reason_codes, "max_severity": severity, "escalation_task_id": task.id},
        started_at=now,
        completed_at=now,
    ))
    db.flush()
    return task


async def analyze_outreach_attempt(db: Session, llm: LLMClient | None, attempt_id: int,
                                   responses: List[Dict[str, Any]], condition: str) -> Dict[str, Any]:
    attempt = db.query(OutreachAttempt).filter(OutreachAttempt.id == attempt_id).first()
    if not attempt:
        raise NotFoundError("Outreach attempt", attempt_id)
    episode = episode_for_attempt(db, attempt)

    rules = active_red_flag_rules(db, condition)
    analysis = await analyze_responses(llm, responses, condition, rule_summaries(rules))
    logger.info("[triage] attempt %s analyzed as %s (%s)", attempt_id, analysis.severity, analysis.red_flag_code)

    now = utcnow()
    for r in responses:
        db.add(OutreachResponse(
            outreach_attempt_id=attempt.id,
            episode_id=episode.id,
            question_code=r.get("questionCode"),
            question_version=r.get("questionVersion") or 1,
            response_type=r.get("responseType"),
            value_text=r.get("valueText"),
            value_number=r.get("valueNumber"),
            value_choice=r.get("valueChoice"),
            value_multi_choice=r.get("valueMultiChoice"),
            captured_at=now,
            red_flag_severity=analysis.severity,
            red_flag_code=analysis.red_flag_code,
        ))

    task = None
    if analysis.severity != "NONE":
        task = create_escalation_task(db, episode.id, analysis.severity, [analysis.red_flag_code],
                                      source_attempt_id=attempt.id, now=now)

    attempt.status = "COMPLETED"
    attempt.completed_at = now
    attempt.updated_at = now
    record_audit(db, "CREATE", "OutreachResponse", attempt.id, {
        "condition": condition,
        "severity": analysis.severity,
        "red_flag_code": analysis.red_flag_code,
        "escalation_created": task is not None,
        "analysis_reasoning": analysis.reasoning,
    })
    db.flush()
    return {
        **analysis.to_dict(),
        "escalationCreated": task is not None,
        "escalationTaskId": task.id if task else None,
    }


def attempt_responses(db: Session, attempt_id: int) -> List[OutreachResponse]:
    return (
        db.query(OutreachResponse)
        .filter(OutreachResponse.outreach_attempt_id == attempt_id)
        .order_by(OutreachResponse.captured_at.asc(), OutreachResponse.id.asc())
        .all()
    )


def record_coded_responses(db: Session, attempt_id: int, responses: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Store structured answers for an attempt and run the red flag rules over them."""
    attempt = db.query(OutreachAttempt).filter(OutreachAttempt.id == attempt_id).first()
    if not attempt:
        raise NotFoundError("Outreach attempt", attempt_id)
    episode = episode_for_attempt(db, attempt)

    now = utcnow()
    rows = []
    for r in responses:
        if not r.get("questionCode"):
            raise ValueError("Each response needs a questionCode")
        row = OutreachResponse(
            outreach_attempt_id=attempt.id,
            episode_id=episode.id,
            question_code=r["questionCode"],
            question_version=r.get("questionVersion") or 1,
            response_type=r.get("responseType"),
            value_text=r.get("valueText"),
            value_number=r.get("valueNumber"),
            value_choice=r.get("valueChoice"),
            value_multi_choice=r.get("valueMultiChoice"),
            captured_at=now,
        )
        db.add(row)
        rows.append(row)
    db.flush()

    task = triage_responses(db, attempt, rows)
    attempt.status = "COMPLETED"
    attempt.connect = True
    attempt.completed_at = now
    db.flush()
    return {
        "recorded": len(rows),
        "severity": task.severity if task else "NONE",
        "reasonCodes": list(task.reason_codes) if task else [],
        "escalationTaskId": task.id if task else None,
    }
