import logging
from dataclasses import dataclass, field
from typing import List, Dict, Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from tocare.agent.llm import LLMClient, Validation, RetryPolicy
from tocare.agent.parser import ParsedResponse, parse_patient_input
from tocare.agent.prompts import (
    AI_TOOLS,
    build_escalation_messages,
    build_response_messages,
    build_summary_messages,
)
from tocare.agent.protocols import (
    config_snapshot,
    get_checklist_questions,
    get_protocol_config,
    get_protocol_rules,
    get_symptom_categories,
)
from tocare.agent.rules import DecisionHint, evaluate_rules
from tocare.agent.severity import format_timeframe, sla_minutes_from_severity, validate_severity
from tocare.config import OPENAI_SUMMARY_MODEL
from tocare.db.models import (
    AgentInteraction,
    AgentMessage,
    Episode,
    Patient,
    ProtocolAssignment,
    utcnow,
)
from tocare.errors import LLMError, NotFoundError, ProtocolConfigurationError, ToCareError
from tocare.services.escalation import create_escalation_task

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 10
PREVIOUS_INTERACTION_LIMIT = 5
ENDING_TOOLS = {"handoff_to_nurse", "raise_flag", "log_checkin"}

CRITICAL_URGENCY_NOTE = (
    " If your symptoms get worse or you feel you need immediate help, please call 911 or go to the emergency room."
)
DEFAULT_URGENCY_NOTE = " If anything gets worse, please contact us right away."
CLOSE_FALLBACK_MESSAGE = (
    "Thank you for checking in! It sounds like you're doing well. Please reach out if anything changes."
)
ASK_FALLBACK_MESSAGE = "How are you feeling today?"


@dataclass
class InteractionResult:
    parsed: ParsedResponse
    decision_hint: DecisionHint
    message: str
    interaction_id: int
    status: str = "IN_PROGRESS"
    tool_results: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "parsedResponse": self.parsed.to_dict(),
            "decisionHint": self.decision_hint.to_dict(),
            "message": self.message,
            "aiResponse": self.message,
            "toolResults": self.tool_results,
            "interactionId": self.interaction_id,
            "status": self.status,
        }


def load_protocol_assignment(db: Session, episode_id: int) -> ProtocolAssignment:
    episode = db.query(Episode).filter(Episode.id == episode_id).first()
    if not episode:
        raise NotFoundError("Episode", episode_id)
    assignment = (
        db.query(ProtocolAssignment)
        .filter(ProtocolAssignment.episode_id == episode_id)
        .filter(ProtocolAssignment.is_active.is_(True))
        .order_by(ProtocolAssignment.created_at.desc(), ProtocolAssignment.id.desc())
        .first()
    )
    if assignment:
        return assignment

    logger.info("[interaction] no protocol assignment for episode %s, creating one", episode_id)
    assignment = ProtocolAssignment(
        episode_id=episode.id,
        condition_code=episode.condition_code,
        risk_level=episode.risk_level,
        is_active=True,
    )
    db.add(assignment)
    db.flush()
    return assignment


def conversation_history(db: Session, interaction_id: int | None, limit: int = HISTORY_LIMIT) -> List[Dict[str, str]]:
    if not interaction_id:
        return []
    rows = (
        db.query(AgentMessage)
        .filter(AgentMessage.agent_interaction_id == interaction_id)
        .filter(AgentMessage.role.in_(["user", "assistant"]))
        .order_by(AgentMessage.sequence_number.desc())
        .limit(limit)
        .all()
    )
    return [{"role": m.role, "content": m.content} for m in reversed(rows)]


def previous_interactions(db: Session, episode_id: int, exclude_id: int | None = None) -> List[AgentInteraction]:
    q = (
        db.query(AgentInteraction)
        .filter(AgentInteraction.episode_id == episode_id)
        .filter(AgentInteraction.status.in_(["COMPLETED", "ESCALATED"]))
    )
    if exclude_id:
        q = q.filter(AgentInteraction.id != exclude_id)
    return q.order_by(AgentInteraction.started_at.desc()).limit(PREVIOUS_INTERACTION_LIMIT).all()


def previous_summaries(interactions: List[AgentInteraction]) -> List[str]:
    return [
        f"[{i.started_at:%Y-%m-%d}] {i.summary}"
        for i in interactions if i.summary and i.started_at
    ]


def contact_context(condition: str, contacted_before: bool, first_message: bool, summaries: List[str]) -> str:
    if not contacted_before:
        return (
            f"This is your VERY FIRST contact with this patient since their hospital discharge for {condition}. "
            "Introduce yourself warmly as their post-discharge care coordinator. Explain that you'll be checking "
            "in with them regularly during their recovery."
        )
    if first_message:
        history = ""
        if summaries:
            history = (
                "\n\nPREVIOUS INTERACTIONS:\n" + "\n".join(summaries)
                + "\n\nUse this context to reference past issues naturally."
            )
        return (
            "This patient has been contacted before as part of their post-discharge care. This is a NEW "
            "follow-up check-in. Greet them warmly and ask how they've been doing since your last contact. "
            "Do not introduce yourself as if it's the first time." + history
        )
    return (
        "You are continuing an ONGOING conversation with this patient in their current check-in. "
        "Continue naturally from the previous messages."
    )


def next_sequence_number(db: Session, interaction_id: int) -> int:
    current = (
        db.query(func.max(AgentMessage.sequence_number))
        .filter(AgentMessage.agent_interaction_id == interaction_id)
        .scalar()
    )
    return (current or 0) + 1


def forced_tool_call(hint: DecisionHint) -> Dict[str, Any]:
    name = "handoff_to_nurse" if hint.severity == "CRITICAL" else "raise_flag"
    reason = hint.reason or f"{hint.flag_type}: {hint.severity} severity"
    return {
        "name": name,
        "parameters": {
            "reason": reason,
            "rationale": reason,
            "flagType": hint.flag_type,
            "severity": hint.severity,
        },
    }


async def escalation_message(llm: LLMClient | None, condition: str, patient_input: str,
                             hint: DecisionHint) -> str:
    timeframe = format_timeframe(sla_minutes_from_severity(hint.severity))
    urgency = CRITICAL_URGENCY_NOTE if hint.severity == "CRITICAL" else DEFAULT_URGENCY_NOTE
    text = None
    if llm and llm.enabled:
        text = await llm.chat(
            build_escalation_messages(condition, patient_input, hint.reason or "", timeframe),
            temperature=0.7, max_tokens=150, label="escalation message",
        )
    if not text:
        text = f"Thank you for letting me know about this. A nurse will call you within {timeframe} to discuss your symptoms."
    return f"{text}{urgency}"


def fallback_response(hint: DecisionHint) -> str:
    if hint.action == "CLOSE":
        return CLOSE_FALLBACK_MESSAGE
    if hint.questions:
        return hint.questions[0]
    return ASK_FALLBACK_MESSAGE


async def generate_response(llm: LLMClient | None, messages: List[Dict[str, str]], hint: DecisionHint):
    """Model reply with tool calls; returns (text, tool_calls, model_used)."""
    if not llm or not llm.enabled:
        return fallback_response(hint), [], "fallback"
    try:
        result = await llm.call(
            {"messages": messages, "tools": AI_TOOLS, "tool_choice": "auto",
             "temperature": 0.7, "max_tokens": 300},
            Validation(require_text=True, allow_tool_calls=True),
            RetryPolicy(),
            label="interaction",
        )
    except LLMError as exc:
        logger.error("[interaction] response generation failed: %s", exc)
        return fallback_response(hint), [], "fallback"
    return result.text, result.tool_calls, llm.model


def _raise_flag(db: Session, params: Dict[str, Any], episode_id: int, interaction_id: int) -> Dict[str, Any]:
    severity = validate_severity(params.get("severity"), "raise_flag")
    flag_type = str(params.get("flagType") or "SYMPTOM_ESCALATION")
    task = create_escalation_task(db, episode_id, severity, [flag_type], agent_interaction_id=interaction_id)
    return {"success": True, "taskId": task.id}


def _handoff_to_nurse(db: Session, params: Dict[str, Any], episode_id: int, interaction_id: int) -> Dict[str, Any]:
    if not params.get("reason"):
        raise ValueError("handoff_to_nurse requires reason parameter")
    if not params.get("flagType"):
        raise ValueError("handoff_to_nurse requires flagType parameter")
    task = create_escalation_task(
        db, episode_id, "CRITICAL", [str(params["flagType"]), str(params["reason"])],
        agent_interaction_id=interaction_id,
    )
    return {"success": True, "taskId": task.id}


def _record_meta(interaction: AgentInteraction, key: str, entry) -> None:
    meta = dict(interaction.meta or {})
    meta[key] = list(meta.get(key) or []) + [entry]
    interaction.meta = meta


def _run_tool(db: Session, name: str, params: Dict[str, Any], interaction: AgentInteraction) -> Dict[str, Any]:
    if name == "raise_flag":
        return _raise_flag(db, params, interaction.episode_id, interaction.id)
    if name == "handoff_to_nurse":
        return _handoff_to_nurse(db, params, interaction.episode_id, interaction.id)
    if name == "ask_more":
        _record_meta(interaction, "followUpQuestions", list(params.get("questions") or []))
        return {"success": True}
    if name == "log_checkin":
        _record_meta(interaction, "checkinLog", {"result": params.get("result"), "summary": params.get("summary")})
        return {"success": True}
    if name == "count_wellness_confirmation":
        meta = dict(interaction.meta or {})
        if params.get("isConfirmation"):
            meta["wellnessConfirmationCount"] = int(meta.get("wellnessConfirmationCount") or 0) + 1
            area = params.get("areaConfirmed")
            if area and area not in (meta.get("coveredCategories") or []):
                meta["coveredCategories"] = list(meta.get("coveredCategories") or []) + [area]
        interaction.meta = meta
        return {"success": True, "wellnessConfirmationCount": meta.get("wellnessConfirmationCount", 0)}
    return {"success": False, "error": "Unknown tool"}


def execute_tool_calls(db: Session, tool_calls: List[Dict[str, Any]], interaction: AgentInteraction) -> List[Dict[str, Any]]:
    """Run each tool in its own savepoint; one failing tool never stops the rest."""
    results = []
    for call in tool_calls or []:
        name = call.get("name")
        params = call.get("parameters")
        if params is None:
            params = {}
        if not isinstance(params, dict):
            logger.warning("[interaction] tool %s called with non-object parameters: %r", name, params)
            results.append({"tool": name, "parameters": params,
                            "result": {"success": False, "error": "Tool parameters must be a JSON object"}})
            continue
        try:
            with db.begin_nested():
                result = _run_tool(db, name, params, interaction)
        except (ValueError, ToCareError) as exc:
            logger.error("[interaction] tool %s failed: %s", name, exc)
            result = {"success": False, "error": str(exc)}
        except Exception as exc:
            logger.exception("[interaction] tool %s raised", name)
            result = {"success": False, "error": f"{type(exc).__name__}: {exc}"}
        results.append({"tool": name, "parameters": params, "result": result})
    db.flush()
    return results


def _outcome(hint: DecisionHint) -> str:
    if hint.action == "FLAG":
        return f"Escalated - {hint.reason}"
    if hint.action == "CLOSE":
        return "Patient doing well"
    return "Ongoing monitoring"


async def summarize_interaction(db: Session, llm: LLMClient | None, interaction: AgentInteraction,
                                hint: DecisionHint, patient_input: str) -> str:
    rows = (
        db.query(AgentMessage)
        .filter(AgentMessage.agent_interaction_id == interaction.id)
        .order_by(AgentMessage.sequence_number.asc())
        .all()
    )
    messages = [{"role": m.role, "content": m.content} for m in rows]
    if llm and llm.enabled and messages:
        text = await llm.chat(build_summary_messages(messages, _outcome(hint)), temperature=0.3,
                              max_tokens=150, model=OPENAI_SUMMARY_MODEL, label="summary")
        if text:
            return text
    lead = f"Escalated: {hint.reason}" if hint.action == "FLAG" else "Check-in completed"
    return f"{lead}. Last message: {patient_input[:100]}"


def _checklist_dicts(db: Session, condition: str) -> List[Dict[str, Any]]:
    return [
        {"category": q.category, "question": q.question, "follow_up": q.follow_up, "is_critical": q.is_critical}
        for q in get_checklist_questions(db, condition)
    ]


async def handle_interaction(db: Session, llm: LLMClient | None, patient_id: int, episode_id: int,
                             patient_input: str, interaction_type: str = "SMS",
                             interaction_id: int | None = None) -> InteractionResult:
    assignment = load_protocol_assignment(db, episode_id)
    condition = assignment.condition_code

    interaction = None
    if interaction_id:
        interaction = db.query(AgentInteraction).filter(AgentInteraction.id == interaction_id).first()
        if not interaction:
            raise NotFoundError("Interaction", interaction_id)
    history = conversation_history(db, interaction_id)

    if not assignment.risk_level:
        raise ValueError(
            f"Episode {episode_id} is missing risk_level. Please set the risk level (LOW/MEDIUM/HIGH) "
            "for this episode."
        )
    risk_level = assignment.risk_level

    config = get_protocol_config(db, condition, risk_level)
    rules = get_protocol_rules(db, condition, risk_level)
    meta = dict(interaction.meta or {}) if interaction else {}

    parsed = await parse_patient_input(
        llm, patient_input, condition, history=history, patterns=rules.all_patterns(),
        symptom_categories=get_symptom_categories(db, condition),
        wellness_confirmation_count=int(meta.get("wellnessConfirmationCount") or 0),
    )
    hint = evaluate_rules(parsed, condition, rules, config)
    logger.info("[interaction] episode %s decision %s (%s)", episode_id, hint.action, hint.reason)

    earlier = previous_interactions(db, episode_id, exclude_id=interaction_id)
    summaries = previous_summaries(earlier)

    if hint.action == "FLAG":
        text = await escalation_message(llm, condition, parsed.raw_input, hint)
        tool_calls = [forced_tool_call(hint)]
        model_used = llm.model if llm and llm.enabled else "fallback"
    else:
        if not config.system_prompt:
            raise ProtocolConfigurationError(
                f"ProtocolConfig for {condition} {risk_level} is missing system_prompt"
            )
        patient = db.query(Patient).filter(Patient.id == patient_id).first()
        episode = db.query(Episode).filter(Episode.id == episode_id).first()
        covered = list(dict.fromkeys(list(meta.get("coveredCategories") or []) + parsed.covered_categories))
        checklist = _checklist_dicts(db, condition)
        upcoming = [q["category"] for q in checklist if q["category"] not in covered]
        context = " ".join([
            config.system_prompt,
            contact_context(condition, bool(earlier), interaction is None, summaries),
            "Use the decision hint to guide your response and call appropriate tools.",
        ])
        messages = build_response_messages(
            context=context,
            education_level=patient.education_level if patient else "MEDIUM",
            medications=episode.medications if episode else None,
            checklist_questions=checklist,
            wellness_confirmation_count=int(meta.get("wellnessConfirmationCount") or 0),
            decision_hint=hint.to_dict(),
            conversation_history=history,
            patient_response=parsed.raw_input,
            covered_categories=covered,
            next_category_suggestion=upcoming[0] if upcoming else None,
            current_risk_level=risk_level,
        )
        text, tool_calls, model_used = await generate_response(llm, messages, hint)

    if interaction is None:
        interaction = AgentInteraction(
            patient_id=patient_id,
            episode_id=episode_id,
            interaction_type="VOICE_CALL" if interaction_type == "VOICE" else interaction_type,
            status="IN_PROGRESS",
            protocol_config_snapshot=config_snapshot(config),
            protocol_rules_snapshot=rules.to_dict(),
            meta={"condition": condition, "decisionHint": hint.to_dict(), "protocolAssignment": assignment.id},
            started_at=utcnow(),
        )
        db.add(interaction)
        db.flush()

    meta = dict(interaction.meta or {})
    meta["coveredCategories"] = list(dict.fromkeys(list(meta.get("coveredCategories") or []) + parsed.covered_categories))
    interaction.meta = meta

    sequence = next_sequence_number(db, interaction.id)
    first_call = tool_calls[0] if tool_calls else {}
    db.add(AgentMessage(agent_interaction_id=interaction.id, role="user", message_type="USER",
                        content=patient_input, sequence_number=sequence))
    db.add(AgentMessage(agent_interaction_id=interaction.id, role="assistant", message_type="ASSISTANT",
                        content=text, sequence_number=sequence + 1, function_name=first_call.get("name"),
                        function_arguments=first_call.get("parameters"), model_used=model_used))
    db.flush()

    tool_results = execute_tool_calls(db, tool_calls, interaction)

    ending = hint.action in ("FLAG", "CLOSE") or any(c.get("name") in ENDING_TOOLS for c in tool_calls)
    if ending:
        interaction.summary = await summarize_interaction(db, llm, interaction, hint, patient_input)
        interaction.status = "ESCALATED" if hint.action == "FLAG" else "COMPLETED"
        interaction.completed_at = utcnow()
        db.flush()
        logger.info("[interaction] %s marked %s", interaction.id, interaction.status)

    return InteractionResult(
        parsed=parsed,
        decision_hint=hint,
        message=text,
        interaction_id=interaction.id,
        status=interaction.status,
        tool_results=tool_results,
    )
