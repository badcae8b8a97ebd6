from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from tocare.agent.severity import validate_condition, validate_education_level, validate_risk_level
from tocare.api.deps import http_error
from tocare.db.models import Episode, Patient, ProtocolAssignment, naive_utc, utcnow
from tocare.db.session import get_db
from tocare.errors import ToCareError
from tocare.services.audit import record_audit
from tocare.services.outreach import create_outreach_plan, get_plan_for_episode, plan_attempts, update_plan_for_risk_change

router = APIRouter(prefix="/toc/episodes")


class PatientIn(BaseModel):
    firstName: str = Field(..., min_length=1)
    lastName: str = ""
    dob: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    languageCode: str = "EN"
    educationLevel: str = "MEDIUM"


class EnrollIn(BaseModel):
    patientId: Optional[int] = None
    patient: Optional[PatientIn] = None
    conditionCode: str
    riskLevel: Optional[str] = None
    dischargeAt: Optional[datetime] = None
    admitAt: Optional[datetime] = None
    facilityName: Optional[str] = None
    medications: List[Dict[str, Any]] = []


class RiskLevelIn(BaseModel):
    riskLevel: str
    reason: str = Field(..., min_length=1)
    changedBy: str = "SYSTEM"


def _iso(value):
    return value.isoformat() if value else None


def episode_out(db: Session, episode: Episode) -> dict:
    plan = get_plan_for_episode(db, episode.id)
    return {
        "id": episode.id,
        "patientId": episode.patient_id,
        "conditionCode": episode.condition_code,
        "riskLevel": episode.risk_level,
        "dischargeAt": _iso(episode.discharge_at),
        "facilityName": episode.facility_name,
        "medications": episode.medications or [],
        "outreachPlan": None if not plan else {
            "id": plan.id,
            "status": plan.status,
            "windowStartAt": _iso(plan.window_start_at),
            "windowEndAt": _iso(plan.window_end_at),
            "maxAttempts": plan.max_attempts,
            "attempts": [
                {"id": a.id, "attemptNumber": a.attempt_number, "status": a.status,
                 "scheduledAt": _iso(a.scheduled_at), "channel": a.channel}
                for a in plan_attempts(db, plan)
            ],
        },
    }


def _episode_or_404(db: Session, episode_id: int) -> Episode:
    episode = db.query(Episode).filter(Episode.id == episode_id).first()
    if not episode:
        raise HTTPException(status_code=404, detail="Episode not found")
    return episode


@router.post("")
def enroll_patient(payload: EnrollIn, db: Session = Depends(get_db)):
    try:
        condition = validate_condition(payload.conditionCode)
        risk_level = validate_risk_level(payload.riskLevel) if payload.riskLevel else None
        education_level = validate_education_level(payload.patient.educationLevel) if payload.patient else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if payload.patientId:
        patient = db.query(Patient).filter(Patient.id == payload.patientId).first()
        if not patient:
            raise HTTPException(status_code=404, detail="Patient not found")
    elif payload.patient:
        patient = Patient(
            first_name=payload.patient.firstName,
            last_name=payload.patient.lastName,
            dob=payload.patient.dob,
            primary_phone=payload.patient.phone,
            email=payload.patient.email,
            language_code=payload.patient.languageCode.upper(),
            education_level=education_level,
        )
        db.add(patient)
        db.flush()
    else:
        raise HTTPException(status_code=400, detail="patientId or patient is required")

    try:
        episode = Episode(
            patient_id=patient.id,
            condition_code=condition,
            risk_level=risk_level,
            admit_at=naive_utc(payload.admitAt),
            discharge_at=naive_utc(payload.dischargeAt) or utcnow(),
            facility_name=payload.facilityName,
            medications=payload.medications,
        )
        db.add(episode)
        db.flush()
        db.add(ProtocolAssignment(episode_id=episode.id, condition_code=condition, risk_level=risk_level))
        record_audit(db, "ENROLL", "Episode", episode.id, {"patient_id": patient.id, "condition": condition})
        if risk_level:
            create_outreach_plan(db, episode, episode.discharge_at)
        db.commit()
    except ToCareError as exc:
        db.rollback()
        raise http_error(exc) from exc
    return episode_out(db, episode)


@router.get("/{episode_id}")
def get_episode(episode_id: int, db: Session = Depends(get_db)):
    return episode_out(db, _episode_or_404(db, episode_id))


@router.post("/{episode_id}/risk-level")
def change_risk_level(episode_id: int, payload: RiskLevelIn, db: Session = Depends(get_db)):
    episode = _episode_or_404(db, episode_id)
    try:
        result = update_plan_for_risk_change(db, episode, payload.riskLevel, payload.reason, by=payload.changedBy)
        db.commit()
    except (ToCareError, ValueError) as exc:
        db.rollback()
        raise http_error(exc) from exc
    return result
