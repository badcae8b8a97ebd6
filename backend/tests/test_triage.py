import asyncio
import json

import pytest

from tocare.agent.red_flags import evaluate_rule, fallback_rule_based_analysis
from tocare.db.models import AgentInteraction, EscalationTask, OutreachResponse
from tocare.errors import NotFoundError
from tocare.services.outreach import create_outreach_plan, plan_attempts
from tocare.services.triage import analyze_outreach_attempt, record_coded_responses


@pytest.mark.parametrize(
    "spec, number, choice, expected",
    [
        ({"operator": ">=", "threshold": 3}, 3, None, True),
        ({"operator": ">=", "threshold": 3}, 2.5, None, False),
        ({"operator": "<", "threshold": 90}, 88, None, True),
        ({"operator": "=", "value": "YES"}, None, "yes", True),
        ({"operator": "=", "value": "YES"}, None, "NO", False),
        ({"operator": ">=", "threshold": "n/a"}, 5, None, False),
        (None, 5, None, False),
    ],
)
def test_evaluate_rule(spec, number, choice, expected):
    assert evaluate_rule(spec, number, choice) is expected


def test_keyword_analysis_picks_highest_band():
    assert fallback_rule_based_analysis([{"valueText": "I have chest pain"}]).severity == "CRITICAL"
    assert fallback_rule_based_analysis([{"valueText": "a bit dizzy"}]).red_flag_code == "SYMPTOM_WORSENING"
    assert fallback_rule_based_analysis([{"valueChoice": "tired"}]).severity == "MODERATE"
    assert fallback_rule_based_analysis([{"valueText": "all good"}]).severity == "NONE"


def _attempt(db, make_episode, **kwargs):
    episode = make_episode(**kwargs)
    plan = create_outreach_plan(db, episode)
    db.commit()
    return episode, plan_attempts(db, plan)[0]


def test_coded_answers_trigger_structured_rules(seeded_db, make_episode):
    db = seeded_db
    episode, attempt = _attempt(db, make_episode)

    result = record_coded_responses(db, attempt.id, [
        {"questionCode": "HF_WEIGHT_CHANGE", "responseType": "NUMBER", "valueNumber": 4},
        {"questionCode": "HF_CHEST_PAIN", "responseType": "CHOICE", "valueChoice": "YES"},
        {"questionCode": "HF_SOB", "responseType": "CHOICE", "valueChoice": "NO"},
    ])
    db.commit()

    assert result["recorded"] == 3
    assert result["severity"] == "CRITICAL"
    assert result["reasonCodes"] == ["HF_WEIGHT_GAIN_3LB", "HF_CHEST_PAIN_YES"]
    task = db.query(EscalationTask).one()
    assert task.id == result["escalationTaskId"]
    assert task.priority == "URGENT"
    assert task.source_attempt_id == attempt.id
    assert attempt.status == "COMPLETED"
    assert attempt.connect is True

    evaluation = db.query(AgentInteraction).filter(AgentInteraction.interaction_type == "TRIAGE_EVALUATION").one()
    assert evaluation.meta["max_severity"] == "CRITICAL"
    flagged = db.query(OutreachResponse).filter(OutreachResponse.red_flag_code.isnot(None)).count()
    assert flagged == 2


def test_clean_coded_answers_create_no_task(seeded_db, make_episode):
    db = seeded_db
    _, attempt = _attempt(db, make_episode)
    result = record_coded_responses(db, attempt.id, [
        {"questionCode": "HF_WEIGHT_CHANGE", "valueNumber": 1},
    ])
    assert result["severity"] == "NONE"
    assert result["escalationTaskId"] is None
    assert db.query(EscalationTask).count() == 0


def test_coded_answer_needs_question_code(seeded_db, make_episode):
    _, attempt = _attempt(seeded_db, make_episode)
    with pytest.raises(ValueError):
        record_coded_responses(seeded_db, attempt.id, [{"valueNumber": 1}])


def test_model_analysis_escalates(seeded_db, make_episode, make_llm):
    db = seeded_db
    _, attempt = _attempt(db, make_episode)
    llm = make_llm(json.dumps({"severity": "HIGH", "redFlagCode": "HF_WEIGHT_GAIN", "reasoning": "4 lb gain"}))

    analysis = asyncio.run(analyze_outreach_attempt(
        db, llm, attempt.id, [{"questionCode": "HF_WEIGHT_CHANGE", "valueText": "gained 4 pounds"}], "HF"
    ))

    assert analysis["severity"] == "HIGH"
    assert analysis["redFlagCode"] == "HF_WEIGHT_GAIN"
    assert analysis["escalationCreated"] is True
    task = db.query(EscalationTask).one()
    assert task.sla_due_at is not None
    assert attempt.status == "COMPLETED"
    prompt = llm.client.completions.calls[0]["messages"][1]["content"]
    assert "HF_WEIGHT_GAIN_3LB" in prompt


def test_analysis_of_unknown_attempt(seeded_db, offline_llm):
    with pytest.raises(NotFoundError):
        asyncio.run(analyze_outreach_attempt(seeded_db, offline_llm, 999, [{"valueText": "fine"}], "HF"))
