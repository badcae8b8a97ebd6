import logging

from sqlalchemy.orm import Session

from tocare.agent.protocols import CONDITION_NAMES
from tocare.agent.severity import RISK_LEVELS
from tocare.db.models import (
    OutreachPlanTemplate,
    ProtocolConfig,
    ProtocolContentPack,
    RedFlagRule,
)

logger = logging.getLogger(__name__)

# rule_code, severity, message, text patterns, numeric follow-up question
RED_FLAGS = {
    "HF": [
        ("HF_CHEST_PAIN", "CRITICAL", "Chest pain in a heart failure patient",
         ["chest pain", "chest pressure", "chest tightness"], None),
        ("HF_SEVERE_DYSPNEA", "CRITICAL", "Severe shortness of breath at rest",
         ["can't breathe", "cant breathe", "short of breath at rest", "gasping"], None),
        ("HF_WEIGHT_GAIN", "HIGH", "Rapid weight gain suggests fluid retention",
         ["gained 3 pounds", "gained 5 pounds", "weight gain", "gained weight"],
         "How many pounds have you gained, and over how many days?"),
        ("HF_ORTHOPNEA", "HIGH", "Needs more pillows or cannot lie flat to breathe",
         ["extra pillows", "can't lie flat", "sleep sitting up", "wake up short of breath"], None),
        ("HF_EDEMA", "MODERATE", "New or worsening swelling in legs or ankles",
         ["swollen ankles", "swelling in my legs", "swollen feet", "ankles are swollen"], None),
        ("HF_FATIGUE", "LOW", "Increased fatigue or weakness",
         ["more tired", "exhausted", "no energy"], None),
    ],
    "COPD": [
        ("COPD_SEVERE_DYSPNEA", "CRITICAL", "Severe breathing difficulty",
         ["can't breathe", "cant breathe", "struggling to breathe", "blue lips"], None),
        ("COPD_RESCUE_INHALER", "HIGH", "Increased rescue inhaler use",
         ["using my inhaler more", "rescue inhaler more", "inhaler isn't helping"], None),
        ("COPD_SPUTUM_CHANGE", "MODERATE", "Change in sputum color or amount",
         ["green sputum", "yellow sputum", "more mucus", "coughing up more"], None),
        ("COPD_FEVER", "MODERATE", "Fever or signs of infection",
         ["fever", "chills"], None),
        ("COPD_COUGH", "LOW", "Persistent cough or wheezing",
         ["coughing", "wheezing"], None),
    ],
    "AMI": [
        ("AMI_CHEST_PAIN", "CRITICAL", "Recurrent chest pain after heart attack",
         ["chest pain", "chest pressure", "crushing", "pain in my arm", "jaw pain"], None),
        ("AMI_SYNCOPE", "CRITICAL", "Fainting or near fainting",
         ["passed out", "fainted", "blacked out"], None),
        ("AMI_DYSPNEA", "HIGH", "New shortness of breath",
         ["short of breath", "shortness of breath", "out of breath"], None),
        ("AMI_DIZZINESS", "MODERATE", "Lightheaded or dizzy",
         ["dizzy", "lightheaded", "light headed"], None),
        ("AMI_FATIGUE", "LOW", "Unusual fatigue",
         ["more tired", "exhausted"], None),
    ],
    "PNA": [
        ("PNA_BLOOD", "CRITICAL", "Coughing up blood",
         ["coughing up blood", "blood in my sputum"], None),
        ("PNA_SEVERE_DYSPNEA", "CRITICAL", "Breathing is getting much harder",
         ["can't breathe", "cant breathe", "blue lips", "struggling to breathe"], None),
        ("PNA_FEVER_RETURN", "HIGH", "Fever has returned or is getting worse",
         ["fever is back", "fever came back", "fever of 101", "fever of 102", "high fever"],
         "What was your temperature when you last checked it?"),
        ("PNA_NO_FLUIDS", "MODERATE", "Unable to keep food or fluids down",
         ["can't keep anything down", "throwing up", "vomiting"], None),
        ("PNA_COUGH", "LOW", "Cough is not improving",
         ["cough is worse", "still coughing"], None),
    ],
}

CLOSURE_PATTERNS = ["feeling good", "feeling great", "doing well", "doing good", "feeling better", "no problems"]

# rule_code, category, question, follow-up, is critical
CHECKLIST = {
    "HF": [
        ("HF_Q1_WEIGHT", "weight", "Have you weighed yourself today? Any change from yesterday?",
         "How many pounds have you gained?", True),
        ("HF_Q2_BREATHING", "breathing", "How is your breathing compared to when you left the hospital?",
         "Is it harder to breathe when you lie down?", True),
        ("HF_Q3_SWELLING", "swelling", "Have you noticed any swelling in your feet, ankles, or legs?",
         None, True),
        ("HF_Q4_MEDICATIONS", "medications", "Have you been able to take all of your medications as prescribed?",
         "Which doses have you missed?", False),
    ],
    "COPD": [
        ("COPD_Q1_BREATHING", "breathing", "How is your breathing today compared to yesterday?",
         None, True),
        ("COPD_Q2_INHALER", "medications", "How often have you needed your rescue inhaler today?",
         "Is it helping when you use it?", True),
        ("COPD_Q3_SPUTUM", "sputum", "Have you noticed any change in the color or amount of mucus?",
         None, False),
    ],
    "AMI": [
        ("AMI_Q1_CHEST_PAIN", "chest_pain", "Have you had any chest pain, pressure, or discomfort?",
         "When did it start and how long did it last?", True),
        ("AMI_Q2_BREATHING", "breathing", "Any shortness of breath with activity or at rest?",
         None, True),
        ("AMI_Q3_MEDICATIONS", "medications", "Are you taking your heart medications every day?",
         "Which ones have you missed?", False),
    ],
    "PNA": [
        ("PNA_Q1_FEVER", "fever", "Have you had a fever since you got home?",
         "What was your temperature?", True),
        ("PNA_Q2_BREATHING", "breathing", "How is your breathing and your cough today?",
         None, True),
        ("PNA_Q3_MEDICATIONS", "medications", "Are you taking your antibiotics as prescribed?",
         "How many doses are left?", False),
    ],
}

# rule_code, severity, question code, operator, threshold or choice, description, action hint
STRUCTURED_RULES = {
    "HF": [
        ("HF_WEIGHT_GAIN_3LB", "HIGH", "HF_WEIGHT_CHANGE", ">=", 3, "Weight gain of 3+ pounds", "Nurse callback"),
        ("HF_SOB_YES", "HIGH", "HF_SOB", "=", "YES", "Worsening shortness of breath", "Nurse callback"),
        ("HF_CHEST_PAIN_YES", "CRITICAL", "HF_CHEST_PAIN", "=", "YES", "Chest pain reported", "Immediate callback"),
    ],
    "COPD": [
        ("COPD_RESCUE_USES", "HIGH", "COPD_RESCUE_INHALER_USES", ">=", 4, "Rescue inhaler 4+ times a day",
         "Nurse callback"),
        ("COPD_SOB_YES", "HIGH", "COPD_SOB", "=", "YES", "Worsening shortness of breath", "Nurse callback"),
    ],
    "AMI": [
        ("AMI_CHEST_PAIN_YES", "CRITICAL", "AMI_CHEST_PAIN", "=", "YES", "Chest pain reported", "Immediate callback"),
        ("AMI_MISSED_DOSES", "MODERATE", "AMI_MISSED_DOSES", ">=", 2, "Missed 2+ medication doses",
         "Medication review"),
    ],
    "PNA": [
        ("PNA_TEMP_HIGH", "HIGH", "PNA_TEMPERATURE", ">=", 101, "Temperature of 101F or higher", "Nurse callback"),
        ("PNA_SOB_YES", "HIGH", "PNA_SOB", "=", "YES", "Worsening shortness of breath", "Nurse callback"),
    ],
}

# risk level: (first contact delay, max attempts, attempt interval, contact window) in hours
OUTREACH_SCHEDULE = {
    "HIGH": (24, 5, 12, 72),
    "MEDIUM": (48, 3, 24, 96),
    "LOW": (72, 2, 48, 120),
}

THRESHOLDS = {
    "HIGH": (0.7, 0.6),
    "MEDIUM": (0.8, 0.6),
    "LOW": (0.85, 0.5),
}

VAGUE_SYMPTOMS = ["off", "weird", "not great", "not right", "funny", "discomfort"]

SYSTEM_PROMPT = (
    "You are Sarah, a warm and professional post-discharge care coordinator checking in with a patient "
    "recovering from {name}. Ask about one symptom area at a time, stay within general wellness guidance, "
    "and escalate anything that matches a red flag."
)


def seed_protocols(db: Session) -> bool:
    """Insert the default content pack, configs, rules and templates when the tables are empty."""
    if db.query(ProtocolContentPack).first() or db.query(ProtocolConfig).first():
        logger.info("[seed] protocol tables already populated, skipping")
        return False

    for condition, flags in RED_FLAGS.items():
        for rule_code, severity, message, patterns, numeric in flags:
            db.add(ProtocolContentPack(
                condition_code=condition, rule_code=rule_code, rule_type="RED_FLAG", text_patterns=patterns,
                action_type="FLAG", severity=severity, message=message, numeric_follow_up_question=numeric,
                question_category=rule_code.split("_", 1)[1].lower(),
            ))
        db.add(ProtocolContentPack(
            condition_code=condition, rule_code=f"{condition}_DOING_WELL", rule_type="CLOSURE",
            text_patterns=CLOSURE_PATTERNS, action_type="CLOSE", message="Patient is doing well",
        ))
        for rule_code, category, question, follow_up, critical in CHECKLIST[condition]:
            db.add(ProtocolContentPack(
                condition_code=condition, rule_code=rule_code, rule_type="CLARIFICATION", action_type="ASK_MORE",
                question_text=question, question_category=category, follow_up_question=follow_up,
                is_critical=critical,
            ))
        for rule_code, severity, question_code, operator, expected, description, hint in STRUCTURED_RULES[condition]:
            spec = {"question_code": question_code, "operator": operator}
            spec["threshold" if isinstance(expected, (int, float)) else "value"] = expected
            db.add(RedFlagRule(condition_code=condition, rule_code=rule_code, description=description,
                               severity=severity, logic_spec=spec, action_hint=hint))

        for level in RISK_LEVELS:
            critical, low = THRESHOLDS[level]
            db.add(ProtocolConfig(
                condition_code=condition, risk_level=level,
                critical_confidence_threshold=critical, low_confidence_threshold=low,
                vague_symptoms=VAGUE_SYMPTOMS, enable_sentiment_boost=level == "HIGH",
                distressed_severity_upgrade="CRITICAL" if level == "HIGH" else None,
                route_medication_questions_to_info=True, route_general_questions_to_info=False,
                system_prompt=SYSTEM_PROMPT.format(name=CONDITION_NAMES[condition]),
            ))
            delay, attempts, interval, window = OUTREACH_SCHEDULE[level]
            db.add(OutreachPlanTemplate(
                condition_code=condition, risk_level=level, preferred_channel="SMS", fallback_channel="VOICE",
                first_contact_delay_hours=delay, max_attempts=attempts, attempt_interval_hours=interval,
                contact_window_hours=window, timezone="UTC",
            ))

    db.commit()
    logger.info("[seed] protocols seeded for %s", ", ".join(RED_FLAGS))
    return True
