import asyncio
import json

import pytest
from sqlalchemy.exc import SQLAlchemyError

from tocare.agent import interaction as interaction_agent
from tocare.agent.interaction import execute_tool_calls, handle_interaction
from tocare.db.models import AgentInteraction, AgentMessage, EscalationTask
from tocare.errors import NotFoundError


def _run(db, llm, episode, text, interaction_id=None):
    return asyncio.run(handle_interaction(db, llm, episode.patient_id, episode.id, text,
                                          interaction_id=interaction_id))


def _parse_reply(**fields):
    payload = {"symptoms": [], "severity": "NONE", "intent": "general", "sentiment": "neutral",
               "confidence": 0.9, "normalized_text": ""}
    payload.update(fields)
    return json.dumps(payload)


def test_red_flag_without_model_escalates_to_nurse(seeded_db, make_episode, make_user, offline_llm):
    db = seeded_db
    episode = make_episode()
    make_user("nina@example.org")

    result = _run(db, offline_llm, episode, "I have chest pain")

    assert result.decision_hint.action == "FLAG"
    assert result.decision_hint.flag_type == "HF_CHEST_PAIN"
    assert result.status == "ESCALATED"
    assert result.message.startswith(
        "Thank you for letting me know about this. A nurse will call you within 30 minutes"
    )
    assert "call 911" in result.message
    assert result.tool_results[0]["tool"] == "handoff_to_nurse"

    task = db.query(EscalationTask).one()
    assert task.severity == "CRITICAL"
    assert task.reason_codes == ["HF_CHEST_PAIN", "Chest pain in a heart failure patient"]
    assert task.agent_interaction_id == result.interaction_id
    interaction = db.get(AgentInteraction, result.interaction_id)
    assert interaction.summary == "Escalated: Chest pain in a heart failure patient. Last message: I have chest pain"
    assert interaction.protocol_config_snapshot["risk_level"] == "HIGH"
    assert interaction.meta["condition"] == "HF"


def test_doing_well_closes_the_interaction(seeded_db, make_episode, offline_llm):
    db = seeded_db
    episode = make_episode(condition="PNA", risk_level="MEDIUM")

    result = _run(db, offline_llm, episode, "I'm feeling good today")

    assert result.decision_hint.action == "CLOSE"
    assert result.status == "COMPLETED"
    assert result.message.startswith("Thank you for checking in!")
    assert db.query(EscalationTask).count() == 0
    interaction = db.get(AgentInteraction, result.interaction_id)
    assert interaction.summary == "Check-in completed. Last message: I'm feeling good today"
    assert interaction.completed_at is not None


def test_conversation_continues_then_escalates_on_model_assessment(seeded_db, make_episode, make_llm):
    db = seeded_db
    episode = make_episode()
    llm = make_llm(
        _parse_reply(sentiment="positive", coveredCategories=["breathing"]),
        {"content": "Glad your breathing is good. Have you weighed yourself today?",
         "tool_calls": [("count_wellness_confirmation", {"isConfirmation": True, "areaConfirmed": "breathing"})]},
        _parse_reply(severity="CRITICAL", sentiment="distressed", confidence=0.95, symptoms=["fainting"]),
        "I'm so sorry you're going through this.",
        "Patient reported feeling faint; escalated to nurse.",
    )

    first = _run(db, llm, episode, "My breathing is fine")
    assert first.status == "IN_PROGRESS"
    assert first.decision_hint.action == "ASK_MORE"
    assert first.message == "Glad your breathing is good. Have you weighed yourself today?"
    interaction = db.get(AgentInteraction, first.interaction_id)
    assert interaction.meta["wellnessConfirmationCount"] == 1
    assert interaction.meta["coveredCategories"] == ["breathing"]

    second = _run(db, llm, episode, "I almost passed out just now", interaction_id=first.interaction_id)
    assert second.interaction_id == first.interaction_id
    assert second.decision_hint.flag_type == "AI_CRITICAL_ASSESSMENT"
    assert second.status == "ESCALATED"
    assert second.message.startswith("I'm so sorry you're going through this. If your symptoms get worse")

    db.refresh(interaction)
    assert interaction.summary == "Patient reported feeling faint; escalated to nurse."
    rows = (
        db.query(AgentMessage)
        .filter(AgentMessage.agent_interaction_id == interaction.id)
        .order_by(AgentMessage.sequence_number)
        .all()
    )
    assert [m.sequence_number for m in rows] == [1, 2, 3, 4]
    assert rows[3].function_name == "handoff_to_nurse"
    assert rows[3].model_used == "test-model"


def test_missing_risk_level_is_rejected(seeded_db, make_episode, offline_llm):
    episode = make_episode(risk_level=None)
    with pytest.raises(ValueError, match="missing risk_level"):
        _run(seeded_db, offline_llm, episode, "hello")


def test_unknown_episode(seeded_db, offline_llm):
    with pytest.raises(NotFoundError):
        asyncio.run(handle_interaction(seeded_db, offline_llm, 1, 999, "hello"))


def test_tool_errors_are_reported_per_call(seeded_db, make_episode):
    db = seeded_db
    episode = make_episode()
    interaction = AgentInteraction(patient_id=episode.patient_id, episode_id=episode.id, meta={})
    db.add(interaction)
    db.flush()

    results = execute_tool_calls(db, [
        {"name": "handoff_to_nurse", "parameters": {"reason": "Chest pain"}},
        {"name": "raise_flag", "parameters": {"severity": "BAD", "flagType": "X"}},
        {"name": "ask_more", "parameters": {"questions": ["Any swelling?"]}},
        {"name": "teleport", "parameters": {}},
    ], interaction)

    assert results[0]["result"] == {"success": False, "error": "handoff_to_nurse requires flagType parameter"}
    assert results[1]["result"]["success"] is False
    assert results[2]["result"] == {"success": True}
    assert results[3]["result"] == {"success": False, "error": "Unknown tool"}
    assert interaction.meta["followUpQuestions"] == [["Any swelling?"]]
    assert db.query(EscalationTask).count() == 0


def test_negated_red_flag_does_not_escalate(seeded_db, make_episode, make_user, offline_llm):
    db = seeded_db
    make_user("nina@example.org")
    episode = make_episode()

    result = _run(db, offline_llm, episode, "I have no chest pain")

    assert result.decision_hint.action == "ASK_MORE"
    assert result.status == "IN_PROGRESS"
    assert "911" not in result.message
    assert db.query(EscalationTask).count() == 0


def test_negated_wellness_does_not_close(seeded_db, make_episode, offline_llm):
    db = seeded_db
    episode = make_episode(condition="PNA", risk_level="MEDIUM")

    result = _run(db, offline_llm, episode, "I'm not feeling good")

    assert result.parsed.sentiment == "concerned"
    assert result.decision_hint.action == "ASK_MORE"
    assert result.status == "IN_PROGRESS"
    assert db.get(AgentInteraction, result.interaction_id).completed_at is None


def test_malformed_and_failing_tools_do_not_stop_later_tools(seeded_db, make_episode, monkeypatch):
    db = seeded_db
    episode = make_episode()
    interaction = AgentInteraction(patient_id=episode.patient_id, episode_id=episode.id, meta={})
    db.add(interaction)
    db.flush()

    def broken_task(*args, **kwargs):
        raise SQLAlchemyError("database unavailable")

    monkeypatch.setattr(interaction_agent, "create_escalation_task", broken_task)

    results = execute_tool_calls(db, [
        {"name": "ask_more", "parameters": ["Any swelling?"]},
        {"name": "raise_flag", "parameters": {"severity": "HIGH", "flagType": "HF_EDEMA"}},
        {"name": "ask_more", "parameters": {"questions": ["Any swelling?"]}},
    ], interaction)

    assert results[0]["result"] == {"success": False, "error": "Tool parameters must be a JSON object"}
    assert results[1]["result"]["success"] is False
    assert "database unavailable" in results[1]["result"]["error"]
    assert results[2]["result"] == {"success": True}
    assert interaction.meta["followUpQuestions"] == [["Any swelling?"]]
