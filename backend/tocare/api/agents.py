from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from tocare.agent.checkin import process_checkin
from tocare.agent.interaction import handle_interaction
from tocare.agent.llm import LLMClient
from tocare.api.deps import get_llm, http_error
from tocare.db.session import get_db
from tocare.errors import ToCareError
from tocare.services.triage import analyze_outreach_attempt

router = APIRouter(prefix="/toc/agents")


class AnalyzeResponseIn(BaseModel):
    outreachAttemptId: Optional[int] = None
    responses: Optional[List[Dict[str, Any]]] = None
    condition: Optional[str] = None
    patientId: Optional[int] = None


class CheckInResponseIn(BaseModel):
    questionCode: str
    questionText: Optional[str] = None
    responseText: Optional[str] = None
    responseType: Optional[str] = "TEXT"
    timestamp: Optional[datetime] = None


class CheckInIn(BaseModel):
    patientId: int
    condition: str
    responses: List[CheckInResponseIn]
    channel: str = "SMS"
    sessionId: Optional[str] = None


class InteractionIn(BaseModel):
    patientId: Optional[int] = None
    episodeId: Optional[int] = None
    patientInput: Optional[str] = None
    interactionType: str = "SMS"
    interactionId: Optional[int] = None


@router.post("/analyze-response")
async def analyze_response(payload: AnalyzeResponseIn, db: Session = Depends(get_db),
                           llm: LLMClient = Depends(get_llm)):
    if not payload.outreachAttemptId or not payload.responses or not payload.condition:
        raise HTTPException(status_code=400, detail="Missing required fields")
    try:
        analysis = await analyze_outreach_attempt(
            db, llm, payload.outreachAttemptId, payload.responses, payload.condition.upper()
        )
        db.commit()
    except (ToCareError, ValueError) as exc:
        db.rollback()
        raise http_error(exc) from exc
    return {"success": True, "analysis": analysis}


@router.post("/core/checkin")
async def core_checkin(payload: CheckInIn, db: Session = Depends(get_db), llm: LLMClient = Depends(get_llm)):
    try:
        result = await process_checkin(
            db, llm, payload.patientId, payload.condition.upper(),
            [r.model_dump() for r in payload.responses],
            channel=payload.channel, session_id=payload.sessionId,
        )
        db.commit()
    except (ToCareError, ValueError) as exc:
        db.rollback()
        raise http_error(exc) from exc
    return {"result": {"success": True, **result.to_dict()}}


@router.post("/core/interaction")
async def core_interaction(payload: InteractionIn, db: Session = Depends(get_db),
                           llm: LLMClient = Depends(get_llm)):
    if not payload.patientId or not payload.episodeId or not payload.patientInput:
        raise HTTPException(status_code=400, detail="Patient ID, Episode ID, and patient input are required")
    try:
        result = await handle_interaction(
            db, llm, payload.patientId, payload.episodeId, payload.patientInput,
            interaction_type=payload.interactionType, interaction_id=payload.interactionId,
        )
        db.commit()
    except (ToCareError, ValueError) as exc:
        db.rollback()
        raise http_error(exc) from exc
    return result.to_dict()
