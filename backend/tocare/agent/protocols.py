import logging
from dataclasses import dataclass, field, asdict
from typing import List, Dict, Any

from sqlalchemy.orm import Session

from tocare.agent.severity import severity_filter_for_risk_level, validate_risk_level
from tocare.db.models import ProtocolConfig, ProtocolContentPack
from tocare.errors import ProtocolConfigurationError

logger = logging.getLogger(__name__)


CONDITION_NAMES = {
    "HF": "Heart Failure",
    "COPD": "Chronic Obstructive Pulmonary Disease",
    "AMI": "Acute Myocardial Infarction",
    "PNA": "Pneumonia",
}

CONDITION_RED_FLAGS = {
    "HF": [
        "Weight gain of 3+ pounds in 1 day or 5+ pounds in 1 week",
        "Increased shortness of breath",
        "Swelling in feet, ankles, or legs",
        "Difficulty sleeping due to breathing problems",
        "Persistent cough or wheezing",
        "Fatigue or weakness",
        "Confusion or memory problems",
    ],
    "COPD": [
        "Increased shortness of breath",
        "Change in sputum color or amount",
        "Fever or signs of infection",
        "Increased use of rescue inhaler",
        "Difficulty sleeping due to breathing",
        "Swelling in feet or ankles",
        "Confusion or drowsiness",
    ],
    "AMI": [
        "Chest pain or pressure",
        "Pain in arms, back, neck, or jaw",
        "Shortness of breath",
        "Nausea or vomiting",
        "Cold sweat",
        "Feeling lightheaded or dizzy",
        "Irregular heartbeat",
    ],
    "PNA": [
        "Fever returns or gets worse",
        "Increased breathing difficulty",
        "Chest pain that worsens",
        "Coughing up blood",
        "Confusion or disorientation",
        "Inability to keep food/fluids down",
        "Blue lips or fingernails",
    ],
}

CONDITION_RED_FLAG_TITLES = {
    "HF": "Heart Failure Red Flags",
    "COPD": "COPD Red Flags",
    "AMI": "Post-Heart Attack Red Flags",
    "PNA": "Pneumonia Recovery Red Flags",
}

GENERIC_RED_FLAGS = (
    "General medical red flags: severe pain, breathing difficulty, confusion, fever, "
    "bleeding, or any concerning symptoms."
)

# Opening-message focus per condition: (display name, focus areas, key symptoms)
CHECKIN_FOCUS = {
    "HF": (
        "Heart Failure",
        "Focus on: shortness of breath, swelling, weight changes, fatigue, medication adherence.",
        ["breathing", "swelling", "weight", "energy levels"],
    ),
    "COPD": (
        "COPD",
        "Focus on: breathing difficulty, cough, mucus, energy levels, oxygen use, medication adherence.",
        ["breathing", "cough", "mucus", "activity tolerance"],
    ),
    "AMI": (
        "Heart Attack (AMI)",
        "Focus on: chest pain/discomfort, shortness of breath, fatigue, medication adherence, cardiac rehab.",
        ["chest discomfort", "breathing", "energy", "pain"],
    ),
    "PNA": (
        "Pneumonia",
        "Focus on: breathing, cough, fever, fatigue, appetite, medication completion.",
        ["breathing", "cough", "fever", "energy"],
    ),
    "OTHER": (
        "Post-Discharge Care",
        "Focus on: general recovery, symptoms, medication adherence, any concerns.",
        ["overall health", "symptoms", "recovery progress"],
    ),
}


def condition_full_name(code: str) -> str:
    return CONDITION_NAMES.get(code, code)


def condition_context(code: str) -> str:
    flags = CONDITION_RED_FLAGS.get(code)
    if not flags:
        return GENERIC_RED_FLAGS
    lines = [f"{CONDITION_RED_FLAG_TITLES[code]}:"]
    lines.extend(f"- {flag}" for flag in flags)
    return "\n".join(lines)


def checkin_focus(code: str):
    return CHECKIN_FOCUS.get(code, CHECKIN_FOCUS["OTHER"])


@dataclass
class RedFlagPattern:
    rule_code: str
    severity: str
    message: str
    text_patterns: List[str] = field(default_factory=list)
    action_type: str | None = None
    numeric_follow_up_question: str | None = None


@dataclass
class ClosurePattern:
    rule_code: str
    message: str
    text_patterns: List[str] = field(default_factory=list)
    action_type: str | None = None


@dataclass
class RulesDSL:
    red_flags: List[RedFlagPattern] = field(default_factory=list)
    closures: List[ClosurePattern] = field(default_factory=list)

    def all_patterns(self) -> List[str]:
        patterns = []
        for rule in self.red_flags:
            patterns.extend(rule.text_patterns)
        for rule in self.closures:
            patterns.extend(rule.text_patterns)
        return patterns

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ChecklistQuestion:
    rule_code: str
    category: str
    question: str
    follow_up: str | None = None
    is_critical: bool = False


def get_protocol_rules(db: Session, condition: str, risk_level: str) -> RulesDSL:
    severities = severity_filter_for_risk_level(risk_level)
    red_rows = (
        db.query(ProtocolContentPack)
        .filter(ProtocolContentPack.condition_code == condition)
        .filter(ProtocolContentPack.rule_type == "RED_FLAG")
        .filter(ProtocolContentPack.severity.in_(severities))
        .filter(ProtocolContentPack.active.is_(True))
        .order_by(ProtocolContentPack.id.asc())
        .all()
    )
    closure_rows = (
        db.query(ProtocolContentPack)
        .filter(ProtocolContentPack.condition_code == condition)
        .filter(ProtocolContentPack.rule_type == "CLOSURE")
        .filter(ProtocolContentPack.active.is_(True))
        .order_by(ProtocolContentPack.id.asc())
        .all()
    )

    red_flags = []
    for row in red_rows:
        if not row.rule_code or not row.severity or not row.message:
            raise ProtocolConfigurationError(
                f"Red flag rule {row.id} is missing rule_code, severity or message"
            )
        red_flags.append(RedFlagPattern(
            rule_code=row.rule_code,
            severity=row.severity,
            message=row.message,
            text_patterns=list(row.text_patterns or []),
            action_type=row.action_type,
            numeric_follow_up_question=row.numeric_follow_up_question,
        ))

    closures = []
    for row in closure_rows:
        if not row.rule_code or not row.message:
            raise ProtocolConfigurationError(f"Closure rule {row.id} is missing rule_code or message")
        closures.append(ClosurePattern(
            rule_code=row.rule_code,
            message=row.message,
            text_patterns=list(row.text_patterns or []),
            action_type=row.action_type,
        ))

    logger.info(
        "[rules] loaded %s red flags and %s closures for %s/%s",
        len(red_flags), len(closures), condition, risk_level,
    )
    return RulesDSL(red_flags=red_flags, closures=closures)


def get_protocol_config(db: Session, condition: str, risk_level: str) -> ProtocolConfig:
    level = validate_risk_level(risk_level)
    config = (
        db.query(ProtocolConfig)
        .filter(ProtocolConfig.condition_code == condition)
        .filter(ProtocolConfig.risk_level == level)
        .filter(ProtocolConfig.active.is_(True))
        .order_by(ProtocolConfig.updated_at.desc())
        .first()
    )
    if not config:
        raise ProtocolConfigurationError(
            f"No protocol configuration found for {condition} at {level} risk level"
        )
    if not isinstance(config.vague_symptoms, list):
        raise ProtocolConfigurationError("Protocol configuration error: vague_symptoms must be a list")
    return config


def config_snapshot(config: ProtocolConfig) -> Dict[str, Any]:
    return {
        "id": config.id,
        "condition_code": config.condition_code,
        "risk_level": config.risk_level,
        "critical_confidence_threshold": config.critical_confidence_threshold,
        "low_confidence_threshold": config.low_confidence_threshold,
        "vague_symptoms": list(config.vague_symptoms or []),
        "enable_sentiment_boost": config.enable_sentiment_boost,
        "distressed_severity_upgrade": config.distressed_severity_upgrade,
        "route_medication_questions_to_info": config.route_medication_questions_to_info,
        "route_general_questions_to_info": config.route_general_questions_to_info,
    }


def get_checklist_questions(db: Session, condition: str) -> List[ChecklistQuestion]:
    rows = (
        db.query(ProtocolContentPack)
        .filter(ProtocolContentPack.condition_code == condition)
        .filter(ProtocolContentPack.rule_type == "CLARIFICATION")
        .filter(ProtocolContentPack.active.is_(True))
        .order_by(ProtocolContentPack.rule_code.asc())
        .all()
    )
    return [
        ChecklistQuestion(
            rule_code=row.rule_code,
            category=row.question_category or "general",
            question=row.question_text or row.message or "",
            follow_up=row.follow_up_question,
            is_critical=bool(row.is_critical),
        )
        for row in rows
    ]


def get_symptom_categories(db: Session, condition: str) -> List[Dict[str, Any]]:
    rows = (
        db.query(ProtocolContentPack)
        .filter(ProtocolContentPack.condition_code == condition)
        .filter(ProtocolContentPack.rule_type.in_(["RED_FLAG", "CLARIFICATION"]))
        .filter(ProtocolContentPack.active.is_(True))
        .order_by(ProtocolContentPack.rule_code.asc())
        .all()
    )
    grouped: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        category = row.question_category or "general"
        entry = grouped.setdefault(category, {"category": category, "patterns": [], "examples": []})
        if row.rule_type == "RED_FLAG":
            entry["patterns"].extend(row.text_patterns or [])
        elif row.question_text:
            entry["examples"].append(row.question_text)
    return list(grouped.values())


def _empathy_prefix(sentiment: str | None) -> str:
    if sentiment in ("distressed", "concerned"):
        return "I understand you're concerned. "
    if sentiment == "positive":
        return "That's good to hear. "
    return ""


def default_questions(parsed, condition: str) -> List[str]:
    prefix = _empathy_prefix(getattr(parsed, "sentiment", None) or "neutral")
    if condition == "HF":
        return [
            f"{prefix}How are you feeling today?",
            "Have you noticed any changes in your breathing, swelling, or weight?",
        ]
    if condition == "COPD":
        return [
            f"{prefix}How is your breathing today?",
            "Have you needed to use your rescue inhaler more than usual?",
        ]
    if condition == "AMI":
        return [
            f"{prefix}How are you feeling today?",
            "Any chest discomfort, shortness of breath, or unusual fatigue?",
        ]
    if condition == "PNA":
        return [
            f"{prefix}How are you feeling today?",
            "How is your cough and breathing?",
        ]
    return [
        f"{prefix}How are you feeling today?",
        "Any new symptoms since we last talked?",
    ]


def clarifying_questions(parsed, condition: str) -> List[str]:
    symptoms = [s.lower() for s in (getattr(parsed, "symptoms", None) or [])]
    questions = []
    if any("discomfort" in s for s in symptoms):
        questions.append(
            "Can you be more specific about the discomfort? Is it more like pain, pressure, "
            "tightness, or something else?"
        )
    if any("off" in s or "weird" in s for s in symptoms):
        questions.append("Can you describe what feels 'off'? Where do you feel it?")

    if condition == "HF":
        if not questions:
            questions.append(
                "Can you tell me more about what you're experiencing? Is it related to breathing, "
                "swelling, or something else?"
            )
        questions.append("On a scale of 1-10, how severe is this feeling?")
    if condition == "COPD":
        questions.append("Is this affecting your breathing? Can you describe how?")

    if len(questions) < 2:
        questions.append("How severe would you rate this on a scale of 1-10?")
    return questions[:3]
