from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from tocare.agent.checklist import advance_checklist
from tocare.agent.llm import LLMClient
from tocare.api.deps import get_llm, http_error
from tocare.db.session import get_db
from tocare.errors import ToCareError

router = APIRouter(prefix="/toc/conversation")


class ChecklistIn(BaseModel):
    interactionId: Optional[int] = None
    patientInput: Optional[str] = None
    conditionCode: Optional[str] = None
    riskLevel: Optional[str] = None
    episodeId: Optional[int] = None


@router.post("/checklist")
async def conversation_checklist(payload: ChecklistIn, db: Session = Depends(get_db),
                                 llm: LLMClient = Depends(get_llm)):
    if not payload.interactionId or not payload.conditionCode or not payload.riskLevel:
        raise HTTPException(status_code=400, detail="Missing required parameters")
    try:
        result = await advance_checklist(
            db, llm, payload.interactionId, payload.patientInput or "",
            payload.conditionCode.upper(), payload.riskLevel.upper(),
        )
        db.commit()
    except (ToCareError, ValueError) as exc:
        db.rollback()
        raise http_error(exc) from exc
    return {"success": True, **result}
