import asyncio
from datetime import datetime

import pytest

from tocare.agent.checkin import next_actions, patient_message, process_checkin
from tocare.db.models import EscalationTask, Notification, OutreachResponse
from tocare.errors import NotFoundError


def _responses(*answers):
    return [
        {"questionCode": f"Q{i}", "questionText": "How are you?", "responseText": text, "responseType": "TEXT"}
        for i, text in enumerate(answers, start=1)
    ]


def test_critical_checkin_escalates_and_notifies_nurse(seeded_db, make_episode, make_user, offline_llm):
    db = seeded_db
    episode = make_episode()
    nurse = make_user("nina@example.org", phone="+15555550111")

    result = asyncio.run(process_checkin(db, offline_llm, episode.patient_id, "HF",
                                         _responses("I have chest pain since this morning")))

    assert result.severity == "CRITICAL"
    assert result.red_flag_code == "CRITICAL_SYMPTOMS"
    assert result.response_to_patient.startswith("Thank you for your responses. A nurse will call you within 30 minutes")
    assert result.next_actions[0] == f"Escalation task created: {result.escalation_task_id}"
    task = db.get(EscalationTask, result.escalation_task_id)
    assert task.assigned_to_user_id == nurse.id
    note = db.query(Notification).filter(Notification.notification_type == "TASK_ASSIGNED").one()
    assert note.recipient_phone == "+15555550111"
    assert note.status == "SKIPPED"
    assert db.query(OutreachResponse).filter(OutreachResponse.episode_id == episode.id).count() == 1


def test_quiet_checkin_gets_condition_advice(seeded_db, make_episode, offline_llm):
    episode = make_episode(condition="COPD", risk_level="LOW")
    result = asyncio.run(process_checkin(seeded_db, offline_llm, episode.patient_id, "COPD",
                                         _responses("All good today", "Slept well")))
    assert result.severity == "NONE"
    assert result.escalation_task_id is None
    assert result.next_actions == ["Continue routine monitoring"]
    assert "inhalers" in result.response_to_patient


def test_unknown_condition_is_not_analyzed(seeded_db, make_episode, offline_llm):
    episode = make_episode()
    result = asyncio.run(process_checkin(seeded_db, offline_llm, episode.patient_id, "XYZ",
                                         _responses("chest pain")))
    assert result.severity == "NONE"
    assert result.reasoning == "Unable to analyze - rules not found"


def test_patient_without_episode(seeded_db, offline_llm):
    with pytest.raises(NotFoundError):
        asyncio.run(process_checkin(seeded_db, offline_llm, 42, "HF", _responses("fine")))


def test_messages_and_actions_by_severity():
    assert "2 hours" in patient_message("HF", "HIGH")
    assert patient_message("OTHER", "LOW").startswith("Thank you for your responses. Continue following")
    assert next_actions("MODERATE") == ["Nurse callback within 4 hours"]


def test_response_timestamps_are_kept(seeded_db, make_episode, offline_llm):
    db = seeded_db
    episode = make_episode(condition="COPD", risk_level="LOW")
    responses = _responses("All good today", "Slept well")
    responses[0]["timestamp"] = "2026-03-04T09:30:00Z"
    responses[1]["timestamp"] = datetime(2026, 3, 4, 9, 31)

    asyncio.run(process_checkin(db, offline_llm, episode.patient_id, "COPD", responses))

    stored = (
        db.query(OutreachResponse)
        .filter(OutreachResponse.episode_id == episode.id)
        .order_by(OutreachResponse.id)
        .all()
    )
    assert [r.captured_at for r in stored] == [datetime(2026, 3, 4, 9, 30), datetime(2026, 3, 4, 9, 31)]

    bad = _responses("fine")
    bad[0]["timestamp"] = "yesterday"
    with pytest.raises(ValueError, match="Invalid response timestamp"):
        asyncio.run(process_checkin(db, offline_llm, episode.patient_id, "COPD", bad))
