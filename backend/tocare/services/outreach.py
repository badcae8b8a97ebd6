import logging
from datetime import datetime, timedelta
from typing import List, Dict, Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from tocare.agent.llm import LLMClient
from tocare.agent.prompts import build_initial_checkin_prompt, fallback_checkin_message
from tocare.agent.severity import RISK_LEVELS, validate_risk_level
from tocare.db.models import (
    AgentInteraction,
    AgentMessage,
    Episode,
    EscalationTask,
    OutreachAttempt,
    OutreachPlan,
    OutreachPlanTemplate,
    Patient,
    ProtocolAssignment,
    naive_utc,
    utcnow,
)
from tocare.errors import NotFoundError, ProtocolConfigurationError
from tocare.services.audit import record_audit
from tocare.services.notifications import send_notification

logger = logging.getLogger(__name__)

CLOSED_PLAN_STATUSES = ["COMPLETED", "NO_CONTACT", "CANCELLED"]


def get_outreach_template(db: Session, condition: str, risk_level: str) -> OutreachPlanTemplate | None:
    return (
        db.query(OutreachPlanTemplate)
        .filter(OutreachPlanTemplate.condition_code == condition)
        .filter(OutreachPlanTemplate.risk_level == risk_level)
        .filter(OutreachPlanTemplate.active.is_(True))
        .order_by(OutreachPlanTemplate.id.asc())
        .first()
    )


def _require_template(db: Session, condition: str, risk_level: str | None) -> OutreachPlanTemplate:
    template = get_outreach_template(db, condition, risk_level) if risk_level else None
    if not template:
        raise ProtocolConfigurationError(f"No outreach template found for {condition} {risk_level}")
    return template


def _apply_template(plan: OutreachPlan, template: OutreachPlanTemplate, start_from: datetime):
    plan.template_id = template.id
    plan.preferred_channel = template.preferred_channel
    plan.fallback_channel = template.fallback_channel
    plan.window_start_at = start_from + timedelta(hours=template.first_contact_delay_hours)
    plan.window_end_at = plan.window_start_at + timedelta(hours=template.contact_window_hours)
    plan.max_attempts = template.max_attempts
    plan.attempt_interval_hours = template.attempt_interval_hours
    plan.timezone = template.timezone


def get_plan_for_episode(db: Session, episode_id: int) -> OutreachPlan | None:
    return db.query(OutreachPlan).filter(OutreachPlan.episode_id == episode_id).first()


def plan_attempts(db: Session, plan: OutreachPlan) -> List[OutreachAttempt]:
    return (
        db.query(OutreachAttempt)
        .filter(OutreachAttempt.outreach_plan_id == plan.id)
        .order_by(OutreachAttempt.attempt_number.asc())
        .all()
    )


def create_outreach_plan(db: Session, episode: Episode, discharge_at: datetime | None = None) -> OutreachPlan:
    """Create the episode's plan from its template and schedule attempt 1; returns an existing plan as is."""
    existing = get_plan_for_episode(db, episode.id)
    if existing:
        logger.info("[outreach] plan %s already exists for episode %s", existing.id, episode.id)
        return existing

    template = _require_template(db, episode.condition_code, episode.risk_level)
    patient = db.query(Patient).filter(Patient.id == episode.patient_id).first()
    discharge = naive_utc(discharge_at) or episode.discharge_at or utcnow()

    plan = OutreachPlan(
        episode_id=episode.id,
        language_code=patient.language_code if patient else "EN",
        include_caregiver=False,
        status="PENDING",
    )
    _apply_template(plan, template, discharge)
    db.add(plan)
    db.flush()

    db.add(OutreachAttempt(
        outreach_plan_id=plan.id,
        attempt_number=1,
        scheduled_at=plan.window_start_at,
        channel=plan.preferred_channel,
        status="SCHEDULED",
    ))
    db.flush()
    record_audit(db, "CREATE", "OutreachPlan", plan.id,
                 {"episode_id": episode.id, "template_id": template.id, "max_attempts": plan.max_attempts})
    logger.info("[outreach] plan %s for episode %s, first contact %s, max attempts %s",
                plan.id, episode.id, plan.window_start_at, plan.max_attempts)
    return plan


def schedule_next_attempt(db: Session, plan: OutreachPlan, now: datetime | None = None) -> OutreachAttempt | None:
    now = now or utcnow()
    attempts = plan_attempts(db, plan)
    if len(attempts) >= plan.max_attempts:
        plan.status = "NO_CONTACT"
        plan.updated_at = now
        db.flush()
        logger.warning("[outreach] plan %s reached max attempts (%s)", plan.id, plan.max_attempts)
        return None

    if attempts:
        scheduled_at = attempts[-1].scheduled_at + timedelta(hours=plan.attempt_interval_hours)
    else:
        scheduled_at = plan.window_start_at
    attempt = OutreachAttempt(
        outreach_plan_id=plan.id,
        attempt_number=len(attempts) + 1,
        scheduled_at=max(scheduled_at, now),
        channel=plan.preferred_channel,
        status="SCHEDULED",
    )
    db.add(attempt)
    db.flush()
    logger.info("[outreach] attempt %s of plan %s scheduled for %s",
                attempt.attempt_number, plan.id, attempt.scheduled_at)
    return attempt


def schedule_immediate_attempt(db: Session, plan: OutreachPlan, now: datetime | None = None) -> OutreachAttempt | None:
    """Pull the pending attempt forward to now, or add one when none is pending."""
    now = now or utcnow()
    pending = (
        db.query(OutreachAttempt)
        .filter(OutreachAttempt.outreach_plan_id == plan.id)
        .filter(OutreachAttempt.status == "SCHEDULED")
        .order_by(OutreachAttempt.scheduled_at.asc())
        .first()
    )
    if pending:
        pending.scheduled_at = now
        db.flush()
        return pending
    if plan.status in CLOSED_PLAN_STATUSES:
        plan.status = "IN_PROGRESS"
    return schedule_next_attempt(db, plan, now)


def reschedule_pending_attempts(db: Session, plan: OutreachPlan, now: datetime) -> int:
    """Move SCHEDULED attempts onto the plan's current window and spacing.

    Pending attempts numbered past ``max_attempts`` are cancelled. Returns how
    many attempts changed.
    """
    changed = 0
    previous = None
    for attempt in plan_attempts(db, plan):
        if attempt.status != "SCHEDULED":
            previous = attempt
            continue
        if attempt.attempt_number > plan.max_attempts:
            attempt.status = "CANCELLED"
            attempt.reason_code = "RISK_CHANGE"
            changed += 1
            continue
        if previous is None:
            target = plan.window_start_at
        else:
            target = previous.scheduled_at + timedelta(hours=plan.attempt_interval_hours)
        target = max(target, now)
        if attempt.scheduled_at != target:
            attempt.scheduled_at = target
            changed += 1
        previous = attempt
    db.flush()
    return changed


def _log_system_message(db: Session, episode_id: int, content: str) -> int | None:
    interaction = (
        db.query(AgentInteraction)
        .filter(AgentInteraction.episode_id == episode_id)
        .order_by(AgentInteraction.started_at.desc(), AgentInteraction.id.desc())
        .first()
    )
    if not interaction:
        logger.warning("[outreach] no interaction to log risk change for episode %s", episode_id)
        return None
    current = (
        db.query(func.max(AgentMessage.sequence_number))
        .filter(AgentMessage.agent_interaction_id == interaction.id)
        .scalar()
    )
    db.add(AgentMessage(
        agent_interaction_id=interaction.id,
        role="system",
        message_type="SYSTEM",
        content=content,
        sequence_number=(current or 0) + 1,
    ))
    return interaction.id


def _assigned_nurse(db: Session, episode_id: int) -> int | None:
    task = (
        db.query(EscalationTask)
        .filter(EscalationTask.episode_id == episode_id)
        .filter(EscalationTask.status == "OPEN")
        .filter(EscalationTask.assigned_to_user_id.isnot(None))
        .order_by(EscalationTask.created_at.desc())
        .first()
    )
    return task.assigned_to_user_id if task else None


def update_plan_for_risk_change(db: Session, episode: Episode, new_risk_level: str, reason: str,
                                by: str = "SYSTEM", now: datetime | None = None) -> Dict[str, Any]:
    now = now or utcnow()
    new_level = validate_risk_level(new_risk_level)
    old_level = episode.risk_level
    template = _require_template(db, episode.condition_code, new_level)

    episode.risk_level = new_level
    episode.updated_at = now
    for assignment in (
        db.query(ProtocolAssignment)
        .filter(ProtocolAssignment.episode_id == episode.id)
        .filter(ProtocolAssignment.is_active.is_(True))
        .all()
    ):
        assignment.risk_level = new_level

    plan = get_plan_for_episode(db, episode.id)
    if plan:
        _apply_template(plan, template, now)
        plan.updated_at = now
        db.flush()
        rescheduled = reschedule_pending_attempts(db, plan, now)
    else:
        plan = create_outreach_plan(db, episode, now)
        rescheduled = 0

    increased = old_level in RISK_LEVELS and RISK_LEVELS.index(new_level) > RISK_LEVELS.index(old_level)
    direction = "UPGRADE" if increased else "CHANGE"
    _log_system_message(
        db, episode.id,
        f"RISK LEVEL {direction}: {old_level or 'UNSET'} -> {new_level}\n\nReason: {reason}\n\n"
        f"Changed by: {by}\nTimestamp: {now.isoformat()}",
    )
    record_audit(db, "RISK_CHANGE", "Episode", episode.id,
                 {"old": old_level, "new": new_level, "reason": reason}, actor_type="USER" if by != "SYSTEM" else "SYSTEM",
                 actor_id=None if by == "SYSTEM" else by)

    nurse_id = _assigned_nurse(db, episode.id)
    if nurse_id:
        send_notification(
            db, "RISK_CHANGE",
            f"A patient's risk level has changed from {old_level or 'UNSET'} to {new_level}. "
            "Please log in to review details.",
            recipient_user_id=nurse_id, episode_id=episode.id,
        )

    immediate = None
    if increased:
        immediate = schedule_immediate_attempt(db, plan, now)
    db.flush()
    logger.info("[outreach] episode %s risk %s -> %s (rescheduled: %s, nurse notified: %s, immediate: %s)",
                episode.id, old_level, new_level, rescheduled, bool(nurse_id), bool(immediate))
    return {
        "episodeId": episode.id,
        "oldRiskLevel": old_level,
        "newRiskLevel": new_level,
        "outreachPlanId": plan.id,
        "outreachPlanUpdated": True,
        "attemptsRescheduled": rescheduled,
        "nurseNotified": bool(nurse_id),
        "immediateCheckinScheduled": immediate is not None,
    }


def due_attempts(db: Session, now: datetime) -> List[OutreachAttempt]:
    return (
        db.query(OutreachAttempt)
        .filter(OutreachAttempt.status == "SCHEDULED")
        .filter(OutreachAttempt.scheduled_at <= now)
        .order_by(OutreachAttempt.scheduled_at.asc(), OutreachAttempt.id.asc())
        .all()
    )


async def initial_checkin_message(db: Session, llm: LLMClient | None, patient: Patient, episode: Episode,
                                  now: datetime) -> str:
    summaries = [
        i.summary for i in (
            db.query(AgentInteraction)
            .filter(AgentInteraction.episode_id == episode.id)
            .filter(AgentInteraction.status.in_(["COMPLETED", "ESCALATED"]))
            .filter(AgentInteraction.summary.isnot(None))
            .order_by(AgentInteraction.started_at.desc())
            .limit(3)
            .all()
        )
    ]
    first_contact = not summaries
    text = None
    if llm and llm.enabled:
        days = max((now - (episode.discharge_at or now)).days, 0)
        prompt = build_initial_checkin_prompt(
            first_name=patient.first_name,
            condition=episode.condition_code,
            risk_level=episode.risk_level,
            education_level=patient.education_level or "MEDIUM",
            days_since_discharge=days,
            is_first_contact=first_contact,
            language=patient.language_code or "EN",
            medications=episode.medications,
            previous_summaries=summaries,
            facility_name=episode.facility_name,
        )
        text = await llm.chat([{"role": "user", "content": prompt}], temperature=0.7, max_tokens=200,
                              label="initial check-in")
    return text or fallback_checkin_message(patient.first_name, first_contact)


async def run_due_attempts(db: Session, llm: LLMClient | None, now: datetime | None = None) -> Dict[str, int]:
    now = now or utcnow()
    sent = failed = cancelled = 0
    for attempt in due_attempts(db, now):
        plan = db.query(OutreachPlan).filter(OutreachPlan.id == attempt.outreach_plan_id).first()
        if not plan or plan.status in CLOSED_PLAN_STATUSES:
            attempt.status = "CANCELLED"
            attempt.completed_at = now
            cancelled += 1
            continue
        episode = db.query(Episode).filter(Episode.id == plan.episode_id).first()
        if not episode:
            raise NotFoundError("Episode", plan.episode_id)
        patient = db.query(Patient).filter(Patient.id == episode.patient_id).first()

        attempt.started_at = now
        if not patient or not patient.primary_phone:
            attempt.status = "FAILED"
            attempt.reason_code = "NO_PHONE"
            attempt.completed_at = now
            failed += 1
            logger.warning("[outreach] attempt %s failed: patient has no phone number", attempt.id)
            continue

        message = await initial_checkin_message(db, llm, patient, episode, now)
        note = send_notification(db, "CHECKIN", message, recipient_phone=patient.primary_phone,
                                 episode_id=episode.id, channel=attempt.channel or "SMS")
        if note.status == "FAILED":
            attempt.status = "FAILED"
            attempt.reason_code = "DELIVERY_FAILED"
            attempt.completed_at = now
            failed += 1
            schedule_next_attempt(db, plan, now)
            continue

        attempt.status = "IN_PROGRESS"
        attempt.provider_message_id = note.provider_message_id
        if plan.status == "PENDING":
            plan.status = "IN_PROGRESS"
        sent += 1
        logger.info("[outreach] attempt %s sent to patient %s (%s)", attempt.id, patient.id, note.status)
    db.flush()
    return {"sent": sent, "failed": failed, "cancelled": cancelled}
