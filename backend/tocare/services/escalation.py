import logging
from datetime import datetime, timedelta
from typing import List

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from tocare.agent.severity import (
    OPEN_TASK_STATUSES,
    TASK_STATUSES,
    priority_from_severity,
    sla_due_at,
    sla_minutes_from_severity,
    validate_severity,
)
from tocare.config import SLA_WARNING_FRACTION
from tocare.db.models import EscalationTask, User, utcnow
from tocare.errors import InvalidStateError, NotFoundError
from tocare.services.audit import record_audit
from tocare.services.notifications import send_notification

logger = logging.getLogger(__name__)

CLOSED_TASK_STATUSES = ["RESOLVED", "CANCELLED", "EXPIRED"]

_PRIORITY_RANK = case(
    {"URGENT": 4, "HIGH": 3, "NORMAL": 2, "LOW": 1},
    value=EscalationTask.priority,
    else_=0,
)


def create_escalation_task(db: Session, episode_id: int, severity: str, reason_codes: List[str],
                           source_attempt_id: int | None = None, agent_interaction_id: int | None = None,
                           now: datetime | None = None) -> EscalationTask:
    now = now or utcnow()
    severity = validate_severity(severity, "escalation task")
    task = EscalationTask(
        episode_id=episode_id,
        source_attempt_id=source_attempt_id,
        agent_interaction_id=agent_interaction_id,
        reason_codes=[code for code in reason_codes if code],
        severity=severity,
        priority=priority_from_severity(severity),
        status="OPEN",
        sla_due_at=sla_due_at(severity, now),
        created_at=now,
        updated_at=now,
    )
    db.add(task)
    db.flush()
    logger.info("[escalation] task %s created for episode %s severity=%s priority=%s",
                task.id, episode_id, task.severity, task.priority)
    record_audit(db, "CREATE", "EscalationTask", task.id,
                 {"severity": severity, "priority": task.priority, "reason_codes": task.reason_codes})

    for coordinator in _coordinators(db):
        send_notification(
            db, "TASK_CREATED",
            f"New {task.priority} escalation task {task.id} for episode {episode_id}: "
            f"{', '.join(task.reason_codes) or severity}.",
            recipient_user_id=coordinator.id, task_id=task.id, episode_id=episode_id,
        )
    assign_task(db, task)
    return task


def _coordinators(db: Session) -> List[User]:
    return (
        db.query(User)
        .filter(User.role == "COORDINATOR")
        .filter(User.active.is_(True))
        .all()
    )


def _open_task_counts(db: Session) -> dict:
    rows = (
        db.query(EscalationTask.assigned_to_user_id, func.count(EscalationTask.id))
        .filter(EscalationTask.status.in_(OPEN_TASK_STATUSES))
        .filter(EscalationTask.assigned_to_user_id.isnot(None))
        .group_by(EscalationTask.assigned_to_user_id)
        .all()
    )
    return {user_id: count for user_id, count in rows}


def assign_task(db: Session, task: EscalationTask) -> User | None:
    """Give the task to the active nurse carrying the fewest open tasks."""
    nurses = (
        db.query(User)
        .filter(User.role == "NURSE")
        .filter(User.active.is_(True))
        .order_by(User.created_at.asc(), User.id.asc())
        .all()
    )
    if not nurses:
        logger.warning("[escalation] no active nurses, task %s stays unassigned", task.id)
        return None

    counts = _open_task_counts(db)
    nurse = min(nurses, key=lambda n: counts.get(n.id, 0))
    task.assigned_to_user_id = nurse.id
    task.updated_at = utcnow()
    db.flush()
    logger.info("[escalation] task %s assigned to nurse %s", task.id, nurse.id)
    send_notification(
        db, "TASK_ASSIGNED",
        f"New {task.priority} priority task assigned. Patient needs {task.severity} severity follow-up.",
        recipient_user_id=nurse.id, task_id=task.id, episode_id=task.episode_id,
    )
    return nurse


def get_task(db: Session, task_id: int) -> EscalationTask:
    task = db.query(EscalationTask).filter(EscalationTask.id == task_id).first()
    if not task:
        raise NotFoundError("Task", task_id)
    return task


def list_tasks(db: Session, status: str | None = None, nurse_id: int | None = None,
               episode_id: int | None = None) -> List[EscalationTask]:
    q = db.query(EscalationTask)
    if status:
        q = q.filter(EscalationTask.status == status.upper())
    if nurse_id is not None:
        q = q.filter(EscalationTask.assigned_to_user_id == nurse_id)
    if episode_id is not None:
        q = q.filter(EscalationTask.episode_id == episode_id)
    return q.order_by(_PRIORITY_RANK.desc(), EscalationTask.created_at.asc(), EscalationTask.id.asc()).all()


def nurse_tasks(db: Session, nurse_id: int, include_completed: bool = False) -> List[EscalationTask]:
    q = db.query(EscalationTask).filter(EscalationTask.assigned_to_user_id == nurse_id)
    if not include_completed:
        q = q.filter(EscalationTask.status.in_(OPEN_TASK_STATUSES))
    return q.order_by(_PRIORITY_RANK.desc(), EscalationTask.created_at.asc(), EscalationTask.id.asc()).all()


def update_task_status(db: Session, task_id: int, status: str, now: datetime | None = None) -> EscalationTask:
    status = (status or "").upper()
    if status not in TASK_STATUSES:
        raise ValueError(f"Invalid task status {status!r}. Valid values: {', '.join(TASK_STATUSES)}")
    task = get_task(db, task_id)
    if task.status in CLOSED_TASK_STATUSES and status != task.status:
        raise InvalidStateError(f"Task {task_id} is already {task.status}")
    now = now or utcnow()
    task.status = status
    task.updated_at = now
    if status == "IN_PROGRESS" and task.picked_up_at is None:
        task.picked_up_at = now
    if status == "RESOLVED" and task.resolved_at is None:
        task.resolved_at = now
    db.flush()
    return task


def pick_up_task(db: Session, task_id: int, user_id: int | None = None,
                 now: datetime | None = None) -> EscalationTask:
    task = get_task(db, task_id)
    if task.status != "OPEN":
        raise InvalidStateError(f"Task {task_id} is {task.status}, only OPEN tasks can be picked up")
    now = now or utcnow()
    if user_id is not None:
        task.assigned_to_user_id = user_id
    task.status = "IN_PROGRESS"
    task.picked_up_at = now
    task.updated_at = now
    db.flush()
    record_audit(db, "PICKUP", "EscalationTask", task.id, actor_type="USER" if user_id else "SYSTEM",
                 actor_id=user_id)
    return task


def resolve_task(db: Session, task_id: int, outcome_code: str, notes: str | None = None,
                 user_id: int | None = None, now: datetime | None = None) -> EscalationTask:
    task = get_task(db, task_id)
    if task.status in CLOSED_TASK_STATUSES:
        raise InvalidStateError(f"Task {task_id} is already {task.status}")
    now = now or utcnow()
    task.status = "RESOLVED"
    task.resolution_outcome_code = outcome_code
    task.resolution_notes = notes
    task.resolved_at = now
    task.updated_at = now
    if task.picked_up_at is None:
        task.picked_up_at = now
    db.flush()
    record_audit(db, "RESOLVE", "EscalationTask", task.id, {"outcome": outcome_code},
                 actor_type="USER" if user_id else "SYSTEM", actor_id=user_id)
    logger.info("[escalation] task %s resolved with %s", task.id, outcome_code)
    return task


def tasks_approaching_sla(db: Session, minutes: int = 30, now: datetime | None = None) -> List[EscalationTask]:
    now = now or utcnow()
    return (
        db.query(EscalationTask)
        .filter(EscalationTask.status.in_(OPEN_TASK_STATUSES))
        .filter(EscalationTask.sla_due_at.isnot(None))
        .filter(EscalationTask.sla_due_at > now)
        .filter(EscalationTask.sla_due_at <= now + timedelta(minutes=minutes))
        .order_by(EscalationTask.sla_due_at.asc())
        .all()
    )


def check_sla(db: Session, now: datetime | None = None) -> dict:
    """Send each open task at most one SLA warning and one breach notice."""
    now = now or utcnow()
    tasks = (
        db.query(EscalationTask)
        .filter(EscalationTask.status.in_(OPEN_TASK_STATUSES))
        .filter(EscalationTask.sla_due_at.isnot(None))
        .all()
    )
    warnings = breaches = 0
    for task in tasks:
        window = sla_minutes_from_severity(task.severity)
        if window <= 0:
            window = max(int((task.sla_due_at - task.created_at).total_seconds() // 60), 0)
        if window <= 0:
            continue
        warning_at = task.sla_due_at - timedelta(minutes=window * (1 - SLA_WARNING_FRACTION))

        if now >= task.sla_due_at:
            if task.sla_breached_at is None:
                task.sla_breached_at = now
                if task.sla_warning_sent_at is None:
                    task.sla_warning_sent_at = now
                send_notification(
                    db, "SLA_BREACH",
                    f"SLA BREACH: Task {task.id} has exceeded its SLA deadline. Immediate action required.",
                    recipient_user_id=task.assigned_to_user_id, task_id=task.id, episode_id=task.episode_id,
                )
                breaches += 1
                logger.warning("[sla] task %s breached SLA", task.id)
        elif now >= warning_at and task.sla_warning_sent_at is None:
            remaining = max(int((task.sla_due_at - now).total_seconds() // 60), 0)
            task.sla_warning_sent_at = now
            send_notification(
                db, "SLA_WARNING",
                f"SLA Warning: Task {task.id} has {remaining} minutes remaining until breach.",
                recipient_user_id=task.assigned_to_user_id, task_id=task.id, episode_id=task.episode_id,
            )
            warnings += 1
            logger.info("[sla] task %s warning sent, %s minutes left", task.id, remaining)
    db.flush()
    return {"checked": len(tasks), "warnings": warnings, "breaches": breaches}
