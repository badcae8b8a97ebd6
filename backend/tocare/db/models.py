from datetime import datetime, timezone

from sqlalchemy import Column, Integer, Float, String, Boolean, JSON, DateTime, ForeignKey, Index, CheckConstraint
from sqlalchemy import Text

from tocare.db.base import Base


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def naive_utc(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


class Patient(Base):
    __tablename__ = "patients"
    id = Column(Integer, primary_key=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False, default="")
    dob = Column(String)
    primary_phone = Column(String)
    email = Column(String)
    language_code = Column(String, nullable=False, default="EN")
    education_level = Column(String, nullable=False, default="MEDIUM")
    preferred_channel = Column(String, default="SMS")
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        CheckConstraint("education_level IN ('LOW', 'MEDIUM', 'HIGH')", name="check_patient_education"),
        Index("idx_patient_phone", "primary_phone"),
    )


class User(Base):
    """Care team member; nurses receive escalation tasks."""
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False, default="")
    email = Column(String, nullable=False, unique=True)
    phone = Column(String)
    role = Column(String, nullable=False, default="NURSE")
    active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        CheckConstraint("role IN ('ADMIN', 'NURSE', 'MD', 'ANALYST', 'COORDINATOR')", name="check_user_role"),
        Index("idx_user_role_active", "role", "active"),
    )


class Episode(Base):
    __tablename__ = "episodes"
    id = Column(Integer, primary_key=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    condition_code = Column(String, nullable=False)
    risk_level = Column(String, nullable=True)
    admit_at = Column(DateTime)
    discharge_at = Column(DateTime, default=utcnow)
    facility_name = Column(String)
    medications = Column(JSON, default=list)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("condition_code IN ('HF', 'COPD', 'AMI', 'PNA', 'OTHER')", name="check_episode_condition"),
        CheckConstraint("risk_level IS NULL OR risk_level IN ('LOW', 'MEDIUM', 'HIGH')", name="check_episode_risk"),
        Index("idx_episode_patient", "patient_id", "created_at"),
    )


class ProtocolAssignment(Base):
    __tablename__ = "protocol_assignments"
    id = Column(Integer, primary_key=True)
    episode_id = Column(Integer, ForeignKey("episodes.id"), nullable=False)
    condition_code = Column(String, nullable=False)
    risk_level = Column(String)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("idx_protocol_assignment_episode", "episode_id", "is_active"),
    )


class ProtocolConfig(Base):
    """AI decision parameters per condition and risk level."""
    __tablename__ = "protocol_configs"
    id = Column(Integer, primary_key=True)
    condition_code = Column(String, nullable=False)
    risk_level = Column(String, nullable=False)
    critical_confidence_threshold = Column(Float, nullable=False, default=0.8)
    low_confidence_threshold = Column(Float, nullable=False, default=0.6)
    vague_symptoms = Column(JSON, default=list)
    enable_sentiment_boost = Column(Boolean, default=False)
    distressed_severity_upgrade = Column(String, nullable=True)
    route_medication_questions_to_info = Column(Boolean, default=True)
    route_general_questions_to_info = Column(Boolean, default=False)
    system_prompt = Column(Text)
    active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_protocol_config_lookup", "condition_code", "risk_level", "active"),
    )


class ProtocolContentPack(Base):
    """RED_FLAG, CLOSURE and CLARIFICATION rows for one condition."""
    __tablename__ = "protocol_content_pack"
    id = Column(Integer, primary_key=True)
    condition_code = Column(String, nullable=False)
    rule_code = Column(String, nullable=False)
    rule_type = Column(String, nullable=False)
    text_patterns = Column(JSON, default=list)
    action_type = Column(String)
    severity = Column(String, nullable=True)
    message = Column(Text)
    question_text = Column(Text)
    question_category = Column(String)
    follow_up_question = Column(Text)
    numeric_follow_up_question = Column(Text)
    is_critical = Column(Boolean, default=False)
    active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("rule_type IN ('RED_FLAG', 'CLOSURE', 'CLARIFICATION')", name="check_content_rule_type"),
        CheckConstraint(
            "severity IS NULL OR severity IN ('NONE', 'LOW', 'MODERATE', 'HIGH', 'CRITICAL')",
            name="check_content_severity",
        ),
        Index("idx_content_pack_lookup", "condition_code", "rule_type", "active"),
    )


class RedFlagRule(Base):
    """Structured rule evaluated against coded check-in answers."""
    __tablename__ = "red_flag_rules"
    id = Column(Integer, primary_key=True)
    condition_code = Column(String, nullable=False)
    rule_code = Column(String, nullable=False)
    description = Column(Text)
    severity = Column(String, nullable=False)
    logic_spec = Column(JSON)
    action_hint = Column(String)
    active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("idx_red_flag_rule_condition", "condition_code", "active"),
    )


class OutreachPlanTemplate(Base):
    __tablename__ = "outreach_plan_templates"
    id = Column(Integer, primary_key=True)
    condition_code = Column(String, nullable=False)
    risk_level = Column(String, nullable=False)
    preferred_channel = Column(String, nullable=False, default="SMS")
    fallback_channel = Column(String)
    first_contact_delay_hours = Column(Integer, nullable=False, default=24)
    max_attempts = Column(Integer, nullable=False, default=3)
    attempt_interval_hours = Column(Integer, nullable=False, default=24)
    contact_window_hours = Column(Integer, nullable=False, default=72)
    timezone = Column(String, default="UTC")
    active = Column(Boolean, default=True)


class OutreachPlan(Base):
    __tablename__ = "outreach_plans"
    id = Column(Integer, primary_key=True)
    episode_id = Column(Integer, ForeignKey("episodes.id"), nullable=False, unique=True)
    template_id = Column(Integer, ForeignKey("outreach_plan_templates.id"), nullable=True)
    preferred_channel = Column(String, default="SMS")
    fallback_channel = Column(String)
    window_start_at = Column(DateTime, nullable=False)
    window_end_at = Column(DateTime, nullable=False)
    max_attempts = Column(Integer, nullable=False, default=3)
    attempt_interval_hours = Column(Integer, nullable=False, default=24)
    timezone = Column(String, default="UTC")
    language_code = Column(String, default="EN")
    include_caregiver = Column(Boolean, default=False)
    status = Column(String, nullable=False, default="PENDING")
    exclusion_reason = Column(String)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class OutreachAttempt(Base):
    __tablename__ = "outreach_attempts"
    id = Column(Integer, primary_key=True)
    outreach_plan_id = Column(Integer, ForeignKey("outreach_plans.id"), nullable=False)
    attempt_number = Column(Integer, nullable=False, default=1)
    scheduled_at = Column(DateTime, nullable=False)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    channel = Column(String, default="SMS")
    status = Column(String, nullable=False, default="SCHEDULED")
    connect = Column(Boolean)
    reason_code = Column(String)
    provider_message_id = Column(String)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_attempt_status_due", "status", "scheduled_at"),
        Index("idx_attempt_plan", "outreach_plan_id", "attempt_number"),
    )


class OutreachResponse(Base):
    __tablename__ = "outreach_responses"
    id = Column(Integer, primary_key=True)
    outreach_attempt_id = Column(Integer, ForeignKey("outreach_attempts.id"), nullable=True)
    session_id = Column(String)
    episode_id = Column(Integer, ForeignKey("episodes.id"), nullable=True)
    question_code = Column(String, nullable=False)
    question_version = Column(Integer, default=1)
    response_type = Column(String)
    value_text = Column(Text)
    value_number = Column(Float)
    value_choice = Column(String)
    value_multi_choice = Column(JSON)
    captured_at = Column(DateTime, default=utcnow)
    red_flag_severity = Column(String)
    red_flag_code = Column(String)
    created_at = Column(DateTime, default=utcnow)


class AgentInteraction(Base):
    __tablename__ = "agent_interactions"
    id = Column(Integer, primary_key=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=True)
    episode_id = Column(Integer, ForeignKey("episodes.id"), nullable=True)
    outreach_attempt_id = Column(Integer, ForeignKey("outreach_attempts.id"), nullable=True)
    interaction_type = Column(String, nullable=False, default="SMS")
    status = Column(String, nullable=False, default="IN_PROGRESS")
    conversation_phase = Column(String, default="greeting")
    current_checklist_position = Column(Integer, default=0)
    checklist_progress = Column(JSON, default=dict)
    protocol_config_snapshot = Column(JSON)
    protocol_rules_snapshot = Column(JSON)
    summary = Column(Text)
    meta = Column(JSON, default=dict)
    started_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime)

    __table_args__ = (
        CheckConstraint(
            "status IN ('IN_PROGRESS', 'COMPLETED', 'ESCALATED', 'FAILED', 'TIMEOUT')",
            name="check_interaction_status",
        ),
        Index("idx_interaction_episode", "episode_id", "started_at"),
    )


class AgentMessage(Base):
    __tablename__ = "agent_messages"
    id = Column(Integer, primary_key=True)
    agent_interaction_id = Column(Integer, ForeignKey("agent_interactions.id"), nullable=False)
    role = Column(String, nullable=False)
    message_type = Column(String, nullable=False, default="USER")
    content = Column(Text, nullable=False, default="")
    sequence_number = Column(Integer, nullable=False)
    function_name = Column(String)
    function_arguments = Column(JSON)
    model_used = Column(String)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("idx_agent_message_sequence", "agent_interaction_id", "sequence_number"),
    )


class EscalationTask(Base):
    __tablename__ = "escalation_tasks"
    id = Column(Integer, primary_key=True)
    episode_id = Column(Integer, ForeignKey("episodes.id"), nullable=False)
    source_attempt_id = Column(Integer, ForeignKey("outreach_attempts.id"), nullable=True)
    agent_interaction_id = Column(Integer, ForeignKey("agent_interactions.id"), nullable=True)
    reason_codes = Column(JSON, default=list)
    severity = Column(String, nullable=False)
    priority = Column(String, nullable=False)
    status = Column(String, nullable=False, default="OPEN")
    sla_due_at = Column(DateTime)
    assigned_to_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    picked_up_at = Column(DateTime)
    resolved_at = Column(DateTime)
    resolution_outcome_code = Column(String)
    resolution_notes = Column(Text)
    sla_warning_sent_at = Column(DateTime)
    sla_breached_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("severity IN ('NONE', 'LOW', 'MODERATE', 'HIGH', 'CRITICAL')", name="check_task_severity"),
        CheckConstraint("priority IN ('LOW', 'NORMAL', 'HIGH', 'URGENT')", name="check_task_priority"),
        CheckConstraint(
            "status IN ('OPEN', 'IN_PROGRESS', 'RESOLVED', 'CANCELLED', 'EXPIRED')",
            name="check_task_status",
        ),
        Index("idx_task_status_sla", "status", "sla_due_at"),
        Index("idx_task_assignee", "assigned_to_user_id", "status"),
    )


class Notification(Base):
    __tablename__ = "notifications"
    id = Column(Integer, primary_key=True)
    recipient_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    recipient_phone = Column(String)
    notification_type = Column(String, nullable=False)
    channel = Column(String, nullable=False, default="SMS")
    content = Column(Text, nullable=False)
    task_id = Column(Integer, ForeignKey("escalation_tasks.id"), nullable=True)
    episode_id = Column(Integer, ForeignKey("episodes.id"), nullable=True)
    status = Column(String, nullable=False, default="PENDING")
    provider_message_id = Column(String)
    error = Column(Text)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "notification_type IN ('TASK_CREATED', 'TASK_ASSIGNED', 'SLA_WARNING', 'SLA_BREACH', "
            "'RISK_CHANGE', 'CHECKIN')",
            name="check_notification_type",
        ),
        Index("idx_notification_task", "task_id", "notification_type"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True)
    actor_type = Column(String, nullable=False, default="SYSTEM")
    actor_id = Column(String)
    action = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String)
    meta = Column(JSON)
    occurred_at = Column(DateTime, default=utcnow)
