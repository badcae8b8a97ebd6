from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from tocare.agent.severity import validate_condition, validate_severity
from tocare.db.models import ProtocolConfig, ProtocolContentPack, utcnow
from tocare.db.session import get_db
from tocare.services.audit import record_audit

router = APIRouter(prefix="/toc/admin")

RULE_TYPES = {"RED_FLAG", "CLOSURE", "CLARIFICATION"}


class ProtocolRuleIn(BaseModel):
    conditionCode: str
    ruleCode: str = Field(..., min_length=1)
    ruleType: str
    textPatterns: List[str] = []
    actionType: Optional[str] = None
    severity: Optional[str] = None
    message: Optional[str] = None
    questionText: Optional[str] = None
    questionCategory: Optional[str] = None
    followUpQuestion: Optional[str] = None
    numericFollowUpQuestion: Optional[str] = None
    isCritical: bool = False
    active: bool = True


class ProtocolRuleUpdateIn(BaseModel):
    textPatterns: Optional[List[str]] = None
    actionType: Optional[str] = None
    severity: Optional[str] = None
    message: Optional[str] = None
    questionText: Optional[str] = None
    questionCategory: Optional[str] = None
    followUpQuestion: Optional[str] = None
    numericFollowUpQuestion: Optional[str] = None
    isCritical: Optional[bool] = None
    active: Optional[bool] = None


class ProtocolConfigUpdateIn(BaseModel):
    criticalConfidenceThreshold: Optional[float] = Field(default=None, ge=0, le=1)
    lowConfidenceThreshold: Optional[float] = Field(default=None, ge=0, le=1)
    vagueSymptoms: Optional[List[str]] = None
    enableSentimentBoost: Optional[bool] = None
    distressedSeverityUpgrade: Optional[str] = None
    routeMedicationQuestionsToInfo: Optional[bool] = None
    routeGeneralQuestionsToInfo: Optional[bool] = None
    systemPrompt: Optional[str] = None
    active: Optional[bool] = None


RULE_FIELDS = {
    "textPatterns": "text_patterns",
    "actionType": "action_type",
    "severity": "severity",
    "message": "message",
    "questionText": "question_text",
    "questionCategory": "question_category",
    "followUpQuestion": "follow_up_question",
    "numericFollowUpQuestion": "numeric_follow_up_question",
    "isCritical": "is_critical",
    "active": "active",
}

CONFIG_FIELDS = {
    "criticalConfidenceThreshold": "critical_confidence_threshold",
    "lowConfidenceThreshold": "low_confidence_threshold",
    "vagueSymptoms": "vague_symptoms",
    "enableSentimentBoost": "enable_sentiment_boost",
    "distressedSeverityUpgrade": "distressed_severity_upgrade",
    "routeMedicationQuestionsToInfo": "route_medication_questions_to_info",
    "routeGeneralQuestionsToInfo": "route_general_questions_to_info",
    "systemPrompt": "system_prompt",
    "active": "active",
}

RULE_CLEARABLE = {"actionType", "severity", "message", "questionText", "questionCategory", "followUpQuestion",
                  "numericFollowUpQuestion"}
CONFIG_CLEARABLE = {"distressedSeverityUpgrade"}


def _reject_nulls(changes: dict, clearable: set):
    nulls = sorted(k for k, v in changes.items() if v is None and k not in clearable)
    if nulls:
        raise HTTPException(status_code=400, detail=f"Fields cannot be null: {', '.join(nulls)}")


def rule_out(row: ProtocolContentPack) -> dict:
    out = {"id": row.id, "conditionCode": row.condition_code, "ruleCode": row.rule_code, "ruleType": row.rule_type}
    for key, attr in RULE_FIELDS.items():
        out[key] = getattr(row, attr)
    return out


def config_out(row: ProtocolConfig) -> dict:
    out = {"id": row.id, "conditionCode": row.condition_code, "riskLevel": row.risk_level}
    for key, attr in CONFIG_FIELDS.items():
        out[key] = getattr(row, attr)
    return out


def _check_rule(rule_type: str, severity: Optional[str], message: Optional[str]):
    if rule_type not in RULE_TYPES:
        raise HTTPException(status_code=400, detail=f"Invalid rule type: {rule_type}")
    if rule_type in {"RED_FLAG", "CLOSURE"} and not message:
        raise HTTPException(status_code=400, detail=f"{rule_type} rules require a message")
    if rule_type == "RED_FLAG" and not severity:
        raise HTTPException(status_code=400, detail="RED_FLAG rules require a severity")


@router.get("/protocol-rules")
def list_protocol_rules(
    condition: Optional[str] = Query(default=None),
    rule_type: Optional[str] = Query(default=None, alias="ruleType"),
    db: Session = Depends(get_db),
):
    query = db.query(ProtocolContentPack)
    if condition:
        query = query.filter(ProtocolContentPack.condition_code == condition.upper())
    if rule_type:
        query = query.filter(ProtocolContentPack.rule_type == rule_type.upper())
    rows = query.order_by(ProtocolContentPack.condition_code, ProtocolContentPack.rule_code).all()
    return {"rules": [rule_out(r) for r in rows]}


@router.post("/protocol-rules", status_code=201)
def create_protocol_rule(payload: ProtocolRuleIn, db: Session = Depends(get_db)):
    rule_type = payload.ruleType.upper()
    try:
        condition = validate_condition(payload.conditionCode)
        severity = validate_severity(payload.severity) if payload.severity else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    _check_rule(rule_type, severity, payload.message)

    row = ProtocolContentPack(condition_code=condition, rule_code=payload.ruleCode, rule_type=rule_type)
    for key, attr in RULE_FIELDS.items():
        setattr(row, attr, getattr(payload, key))
    row.severity = severity
    db.add(row)
    db.flush()
    record_audit(db, "CREATE", "ProtocolContentPack", row.id, {"rule_code": row.rule_code})
    db.commit()
    return rule_out(row)


@router.patch("/protocol-rules/{rule_id}")
def update_protocol_rule(rule_id: int, payload: ProtocolRuleUpdateIn, db: Session = Depends(get_db)):
    row = db.query(ProtocolContentPack).filter(ProtocolContentPack.id == rule_id).first()
    if not row:
        raise HTTPException(status_code=404, detail="Protocol rule not found")

    changes = payload.model_dump(exclude_unset=True)
    _reject_nulls(changes, RULE_CLEARABLE)
    if changes.get("severity"):
        try:
            changes["severity"] = validate_severity(changes["severity"])
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    _check_rule(row.rule_type, changes.get("severity", row.severity), changes.get("message", row.message))

    for key, value in changes.items():
        setattr(row, RULE_FIELDS[key], list(value) if isinstance(value, list) else value)
    row.updated_at = utcnow()
    record_audit(db, "UPDATE", "ProtocolContentPack", row.id, {"fields": sorted(changes)})
    db.commit()
    return rule_out(row)


@router.get("/protocol-config/{config_id}")
def get_protocol_config(config_id: int, db: Session = Depends(get_db)):
    row = db.query(ProtocolConfig).filter(ProtocolConfig.id == config_id).first()
    if not row:
        raise HTTPException(status_code=404, detail="Protocol config not found")
    return config_out(row)


@router.patch("/protocol-config/{config_id}")
def update_protocol_config(config_id: int, payload: ProtocolConfigUpdateIn, db: Session = Depends(get_db)):
    row = db.query(ProtocolConfig).filter(ProtocolConfig.id == config_id).first()
    if not row:
        raise HTTPException(status_code=404, detail="Protocol config not found")

    changes = payload.model_dump(exclude_unset=True)
    _reject_nulls(changes, CONFIG_CLEARABLE)
    if changes.get("distressedSeverityUpgrade"):
        try:
            changes["distressedSeverityUpgrade"] = validate_severity(changes["distressedSeverityUpgrade"])
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    critical = changes.get("criticalConfidenceThreshold", row.critical_confidence_threshold)
    low = changes.get("lowConfidenceThreshold", row.low_confidence_threshold)
    if low > critical:
        raise HTTPException(status_code=400, detail="lowConfidenceThreshold cannot exceed criticalConfidenceThreshold")

    for key, value in changes.items():
        setattr(row, CONFIG_FIELDS[key], list(value) if isinstance(value, list) else value)
    row.updated_at = utcnow()
    record_audit(db, "UPDATE", "ProtocolConfig", row.id, {"fields": sorted(changes)})
    db.commit()
    return config_out(row)
