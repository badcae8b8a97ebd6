import pytest

from tocare.agent.parser import ParsedResponse, keyword_parse
from tocare.agent.protocols import ClosurePattern, RedFlagPattern, RulesDSL
from tocare.agent.rules import evaluate_rule_condition, evaluate_rules
from tocare.errors import ProtocolConfigurationError
from tocare.db.models import ProtocolConfig

RULES = RulesDSL(
    red_flags=[
        RedFlagPattern(rule_code="HF_CHEST_PAIN", severity="CRITICAL", message="Chest pain",
                       text_patterns=["chest pain"]),
        RedFlagPattern(rule_code="HF_WEIGHT_GAIN", severity="HIGH", message="Weight gain",
                       text_patterns=["gained 3 pounds", "weight gain"]),
        RedFlagPattern(rule_code="HF_EDEMA", severity="MODERATE", message="Swelling",
                       text_patterns=["swollen ankles"]),
    ],
    closures=[ClosurePattern(rule_code="HF_DOING_WELL", message="Doing well", text_patterns=["feeling good"])],
)


def _config(**overrides):
    values = dict(
        critical_confidence_threshold=0.8,
        low_confidence_threshold=0.6,
        vague_symptoms=["off", "weird"],
        enable_sentiment_boost=False,
        distressed_severity_upgrade=None,
        route_medication_questions_to_info=True,
        route_general_questions_to_info=False,
    )
    values.update(overrides)
    return ProtocolConfig(condition_code="HF", risk_level="HIGH", **values)


def _parsed(text, **fields):
    fields.setdefault("confidence", 0.9)
    fields.setdefault("raw_input", text)
    fields.setdefault("normalized_text", text.lower())
    return ParsedResponse(**fields)


def test_confident_critical_assessment_flags_before_rules():
    hint = evaluate_rules(_parsed("I feel awful", severity="CRITICAL", confidence=0.95), "HF", RULES, _config())
    assert hint.action == "FLAG"
    assert hint.flag_type == "AI_CRITICAL_ASSESSMENT"
    assert hint.reason == "AI assessed as critical with 95% confidence"


def test_medication_question_is_routed_to_information():
    hint = evaluate_rules(_parsed("should I take my water pill?", intent="medication_question"), "HF", RULES,
                          _config())
    assert hint.action == "ASK_MORE"
    assert hint.questions == ["I can help with that. Can you tell me more about your medication question?"]


def test_low_confidence_vague_symptom_asks_to_clarify():
    parsed = _parsed("I feel off", symptoms=["feeling off"], confidence=0.4)
    hint = evaluate_rules(parsed, "HF", RULES, _config())
    assert hint.action == "ASK_MORE"
    assert hint.reason == "Need more specific information"
    assert hint.questions


def test_unset_or_zero_confidence_counts_as_confident():
    for confidence in (None, 0.0):
        parsed = _parsed("I feel off", symptoms=["feeling off"], confidence=confidence)
        hint = evaluate_rules(parsed, "HF", RULES, _config())
        assert hint.reason != "Need more specific information"


def test_first_matching_red_flag_wins():
    hint = evaluate_rules(_parsed("I have chest pain and swollen ankles"), "HF", RULES, _config())
    assert hint.action == "FLAG"
    assert hint.flag_type == "HF_CHEST_PAIN"
    assert hint.severity == "CRITICAL"
    assert hint.matched_pattern == "chest pain"


def test_numeric_pattern_without_a_number_asks_for_the_amount():
    hint = evaluate_rules(_parsed("I gained 3 pounds", raw_input="I gained three pounds",
                                  normalized_text="gained 3 pounds"), "HF", RULES, _config())
    assert hint.action == "FLAG"

    parsed = _parsed("I gained some weight", normalized_text="", symptoms=["gained 3 pounds"])
    hint = evaluate_rules(parsed, "HF", RULES, _config())
    assert hint.action == "ASK_MORE"
    assert hint.questions == ["How many pounds have you gained? It's important to know the specific amount."]


def test_distressed_patient_gets_severity_upgrade():
    config = _config(enable_sentiment_boost=True, distressed_severity_upgrade="CRITICAL")
    parsed = _parsed("I have swollen ankles and I'm scared", severity="CRITICAL", sentiment="distressed",
                     confidence=0.5)
    hint = evaluate_rules(parsed, "HF", RULES, config)
    assert hint.flag_type == "HF_EDEMA"
    assert hint.severity == "CRITICAL"


def test_sentiment_boost_without_upgrade_target_is_a_configuration_error():
    config = _config(enable_sentiment_boost=True, distressed_severity_upgrade=None)
    parsed = _parsed("swollen ankles", severity="CRITICAL", sentiment="distressed", confidence=0.5)
    with pytest.raises(ProtocolConfigurationError):
        evaluate_rules(parsed, "HF", RULES, config)


def test_closure_pattern_closes():
    hint = evaluate_rules(_parsed("I'm feeling good today", sentiment="positive"), "HF", RULES, _config())
    assert hint.action == "CLOSE"
    assert hint.reason == "Patient is doing well"


def test_no_match_asks_default_questions():
    hint = evaluate_rules(_parsed("just watching tv"), "HF", RULES, _config())
    assert hint.action == "ASK_MORE"
    assert hint.questions


def test_vague_symptoms_must_be_a_list():
    with pytest.raises(ProtocolConfigurationError):
        evaluate_rules(_parsed("hello"), "HF", RULES, _config(vague_symptoms="off"))


def test_keyword_parse_never_matches_negated_mentions():
    negated = keyword_parse("I have no chest pain")
    assert evaluate_rule_condition(["chest pain"], negated) is None
    assert evaluate_rules(keyword_parse("I'm not feeling good"), "HF", RULES, _config()).action == "ASK_MORE"
