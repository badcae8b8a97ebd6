from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from tocare.api.deps import http_error
from tocare.db.session import get_db
from tocare.errors import ToCareError
from tocare.services.triage import attempt_responses, record_coded_responses

router = APIRouter(prefix="/toc/outreach")


class CodedResponseIn(BaseModel):
    questionCode: str
    questionVersion: int = 1
    responseType: Optional[str] = None
    valueText: Optional[str] = None
    valueNumber: Optional[float] = None
    valueChoice: Optional[str] = None
    valueMultiChoice: Optional[List[str]] = None


class CodedResponsesIn(BaseModel):
    responses: List[CodedResponseIn]


@router.get("/attempts/{attempt_id}/responses")
def list_responses(attempt_id: int, db: Session = Depends(get_db)):
    return {
        "responses": [
            {
                "id": r.id,
                "questionCode": r.question_code,
                "responseType": r.response_type,
                "valueText": r.value_text,
                "valueNumber": r.value_number,
                "valueChoice": r.value_choice,
                "redFlagSeverity": r.red_flag_severity,
                "redFlagCode": r.red_flag_code,
            }
            for r in attempt_responses(db, attempt_id)
        ]
    }


@router.post("/attempts/{attempt_id}/responses")
def submit_responses(attempt_id: int, payload: CodedResponsesIn, db: Session = Depends(get_db)):
    try:
        result = record_coded_responses(db, attempt_id, [r.model_dump() for r in payload.responses])
        db.commit()
    except (ToCareError, ValueError) as exc:
        db.rollback()
        raise http_error(exc) from exc
    return result
