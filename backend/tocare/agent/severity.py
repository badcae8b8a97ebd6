from datetime import datetime, timedelta
from typing import Iterable

SEVERITY_ORDER = ["NONE", "LOW", "MODERATE", "HIGH", "CRITICAL"]
RISK_LEVELS = ["LOW", "MEDIUM", "HIGH"]
CONDITIONS = ["HF", "COPD", "AMI", "PNA", "OTHER"]
EDUCATION_LEVELS = ["LOW", "MEDIUM", "HIGH"]

TASK_PRIORITIES = ["LOW", "NORMAL", "HIGH", "URGENT"]
TASK_STATUSES = ["OPEN", "IN_PROGRESS", "RESOLVED", "CANCELLED", "EXPIRED"]
OPEN_TASK_STATUSES = ["OPEN", "IN_PROGRESS"]
INTERACTION_STATUSES = ["IN_PROGRESS", "COMPLETED", "ESCALATED", "FAILED", "TIMEOUT"]

PRIORITY_BY_SEVERITY = {
    "CRITICAL": "URGENT",
    "HIGH": "HIGH",
    "MODERATE": "NORMAL",
    "LOW": "LOW",
    "NONE": "LOW",
}

SLA_MINUTES_BY_SEVERITY = {
    "CRITICAL": 30,
    "HIGH": 120,
    "MODERATE": 240,
    "LOW": 480,
    "NONE": 0,
}

# Which red-flag severities are monitored for each risk level.
SEVERITY_FILTER_BY_RISK = {
    "HIGH": ["CRITICAL", "HIGH", "MODERATE", "LOW"],
    "MEDIUM": ["CRITICAL", "HIGH"],
    "LOW": ["CRITICAL"],
}


def _upper(value) -> str:
    return str(value or "").strip().upper()


def validate_severity(value, context: str = "severity") -> str:
    sev = _upper(value)
    if sev not in SEVERITY_ORDER:
        raise ValueError(
            f"Invalid severity {value!r} for {context}. Valid values: {', '.join(SEVERITY_ORDER)}"
        )
    return sev


def validate_risk_level(value, context: str = "risk level") -> str:
    level = _upper(value)
    if level not in RISK_LEVELS:
        raise ValueError(
            f"Invalid risk level {value!r} for {context}. Valid values: {', '.join(RISK_LEVELS)}"
        )
    return level


def validate_education_level(value, context: str = "education level") -> str:
    level = _upper(value)
    if level not in EDUCATION_LEVELS:
        raise ValueError(
            f"Invalid education level {value!r} for {context}. Valid values: {', '.join(EDUCATION_LEVELS)}"
        )
    return level


def validate_condition(value, context: str = "condition") -> str:
    code = _upper(value)
    if code not in CONDITIONS:
        raise ValueError(
            f"Invalid condition {value!r} for {context}. Valid values: {', '.join(CONDITIONS)}"
        )
    return code


def coerce_severity(value) -> str:
    sev = _upper(value)
    return sev if sev in SEVERITY_ORDER else "NONE"


def severity_rank(value) -> int:
    return SEVERITY_ORDER.index(coerce_severity(value))


def max_severity(values: Iterable[str]) -> str:
    best = "NONE"
    for value in values:
        if severity_rank(value) > severity_rank(best):
            best = coerce_severity(value)
    return best


def priority_from_severity(severity) -> str:
    # Unknown severities fall back to NORMAL so a malformed flag is still looked at.
    return PRIORITY_BY_SEVERITY.get(_upper(severity), "NORMAL")


def sla_minutes_from_severity(severity) -> int:
    return SLA_MINUTES_BY_SEVERITY.get(_upper(severity), 0)


def sla_due_at(severity, now: datetime) -> datetime | None:
    minutes = sla_minutes_from_severity(severity)
    if minutes <= 0:
        return None
    return now + timedelta(minutes=minutes)


def severity_filter_for_risk_level(risk_level) -> list[str]:
    level = validate_risk_level(risk_level)
    return list(SEVERITY_FILTER_BY_RISK[level])


def format_timeframe(minutes: int) -> str:
    if minutes < 60:
        return f"{minutes} minutes"
    return f"{round(minutes / 60)} hours"
