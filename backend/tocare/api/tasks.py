from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from tocare.api.deps import http_error
from tocare.db.models import EscalationTask
from tocare.db.session import get_db
from tocare.errors import ToCareError
from tocare.services import escalation

router = APIRouter(prefix="/toc/tasks")


class PickupIn(BaseModel):
    userId: Optional[int] = None


class ResolveIn(BaseModel):
    outcomeCode: str = Field(..., min_length=1)
    notes: Optional[str] = None
    userId: Optional[int] = None


class StatusIn(BaseModel):
    status: str


def _iso(value):
    return value.isoformat() if value else None


def task_out(task: EscalationTask) -> dict:
    return {
        "id": task.id,
        "episodeId": task.episode_id,
        "sourceAttemptId": task.source_attempt_id,
        "agentInteractionId": task.agent_interaction_id,
        "reasonCodes": list(task.reason_codes or []),
        "severity": task.severity,
        "priority": task.priority,
        "status": task.status,
        "slaDueAt": _iso(task.sla_due_at),
        "assignedToUserId": task.assigned_to_user_id,
        "pickedUpAt": _iso(task.picked_up_at),
        "resolvedAt": _iso(task.resolved_at),
        "resolutionOutcomeCode": task.resolution_outcome_code,
        "resolutionNotes": task.resolution_notes,
        "createdAt": _iso(task.created_at),
    }


@router.get("")
def list_tasks(
    status: Optional[str] = Query(default=None),
    nurse_id: Optional[int] = Query(default=None, alias="nurseId"),
    episode_id: Optional[int] = Query(default=None, alias="episodeId"),
    db: Session = Depends(get_db),
):
    tasks = escalation.list_tasks(db, status=status, nurse_id=nurse_id, episode_id=episode_id)
    return {"tasks": [task_out(t) for t in tasks]}


@router.get("/approaching-sla")
def approaching_sla(minutes: int = Query(default=30, ge=1), db: Session = Depends(get_db)):
    return {"tasks": [task_out(t) for t in escalation.tasks_approaching_sla(db, minutes)]}


@router.get("/nurse/{nurse_id}")
def tasks_for_nurse(nurse_id: int, include_completed: bool = Query(default=False, alias="includeCompleted"),
                    db: Session = Depends(get_db)):
    return {"tasks": [task_out(t) for t in escalation.nurse_tasks(db, nurse_id, include_completed)]}


@router.get("/{task_id}")
def get_task(task_id: int, db: Session = Depends(get_db)):
    try:
        return task_out(escalation.get_task(db, task_id))
    except ToCareError as exc:
        raise http_error(exc) from exc


@router.post("/{task_id}/pickup")
def pickup_task(task_id: int, payload: Optional[PickupIn] = None, db: Session = Depends(get_db)):
    try:
        task = escalation.pick_up_task(db, task_id, user_id=payload.userId if payload else None)
        db.commit()
    except ToCareError as exc:
        db.rollback()
        raise http_error(exc) from exc
    return task_out(task)


@router.post("/{task_id}/resolve")
def resolve_task(task_id: int, payload: ResolveIn, db: Session = Depends(get_db)):
    try:
        task = escalation.resolve_task(db, task_id, payload.outcomeCode, notes=payload.notes,
                                       user_id=payload.userId)
        db.commit()
    except ToCareError as exc:
        db.rollback()
        raise http_error(exc) from exc
    return task_out(task)


@router.post("/{task_id}/status")
def update_status(task_id: int, payload: StatusIn, db: Session = Depends(get_db)):
    try:
        task = escalation.update_task_status(db, task_id, payload.status)
        db.commit()
    except (ToCareError, ValueError) as exc:
        db.rollback()
        raise http_error(exc) from exc
    return task_out(task)
