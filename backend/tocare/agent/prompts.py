import json
from typing import List, Dict, Any

from tocare.agent.protocols import condition_context, condition_full_name, checkin_focus
from tocare.agent.severity import SEVERITY_ORDER

AI_TOOLS = [
    {
        "type": "function",
        "function": {
            "name": "raise_flag",
            "description": "Raise a flag when patient symptoms require attention",
            "parameters": {
                "type": "object",
                "properties": {
                    "flagType": {"type": "string", "description": "Type of flag (symptom_escalation, respiratory, etc.)"},
                    "severity": {"type": "string", "enum": ["LOW", "MODERATE", "HIGH", "CRITICAL"]},
                    "rationale": {"type": "string", "description": "Brief explanation of why this flag was raised"},
                },
                "required": ["flagType", "severity", "rationale"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "ask_more",
            "description": "Ask follow-up questions to gather more information",
            "parameters": {
                "type": "object",
                "properties": {
                    "questions": {"type": "array", "items": {"type": "string"}, "minItems": 1, "maxItems": 3},
                },
                "required": ["questions"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "log_checkin",
            "description": "Log the check-in result when patient is doing well",
            "parameters": {
                "type": "object",
                "properties": {
                    "result": {"type": "string", "enum": ["ASK_MORE", "FLAG", "CLOSE"]},
                    "summary": {"type": "string", "description": "Brief summary of the check-in"},
                },
                "required": ["result"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "handoff_to_nurse",
            "description": "Hand off to a nurse when immediate attention is needed (CRITICAL situations only)",
            "parameters": {
                "type": "object",
                "properties": {
                    "reason": {"type": "string", "description": "Reason for handoff, specific about symptoms"},
                    "flagType": {"type": "string", "description": "Type of red flag (e.g. HF_CHEST_PAIN)"},
                },
                "required": ["reason", "flagType"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "count_wellness_confirmation",
            "description": (
                "Call after every patient response to report whether it confirms a specific "
                "health area is fine."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "isConfirmation": {"type": "boolean"},
                    "areaConfirmed": {"type": "string", "description": "e.g. breathing, medications"},
                },
                "required": ["isConfirmation"],
            },
        },
    },
]

EDUCATION_GUIDANCE = {
    "LOW": "Use very simple words (5th grade level). Short sentences. No medical jargon. Be extra reassuring and warm.",
    "MEDIUM": "Use clear everyday language. Some medical terms OK if briefly explained. Conversational tone.",
    "HIGH": "Medical terminology is fine. Can be more direct and informative.",
}

DEFAULT_SEVERITY_FRAMEWORK = "\n".join([
    "- CRITICAL: Life-threatening (chest pain, severe breathing trouble, altered mental status, severe orthostatic symptoms)",
    "- HIGH: Multiple concerning symptoms, medication issues plus symptoms, rapid changes, patient distress",
    "- MODERATE: Isolated concerning symptom, mild symptom combinations, patient somewhat worried",
    "- LOW: Mild isolated issue, patient stable",
])


def _history_lines(history: List[Dict[str, str]]) -> str:
    return "\n".join(f"{(m.get('role') or '').upper()}: {m.get('content') or ''}" for m in history)


def _bullets(items: List[str], empty: str = "") -> str:
    if not items:
        return empty
    return "\n".join(f"- {item}" for item in items)


def _medication_lines(medications: List[Dict[str, Any]] | None) -> str:
    lines = []
    for med in medications or []:
        line = f"- {med.get('name', '')}"
        if med.get("dosage"):
            line += f" {med['dosage']}"
        if med.get("frequency"):
            line += f", {med['frequency']}"
        if med.get("timing"):
            line += f" ({med['timing']})"
        lines.append(line)
    return "\n".join(lines) or "- No medications on file"


def _more(items: List[str], limit: int = 5) -> str:
    text = ", ".join(items[:limit])
    if len(items) > limit:
        text += f" (and {len(items) - limit} more)"
    return text


def build_parse_messages(condition: str, protocol_patterns: List[str], patterns_requiring_numbers: List[str],
                         symptom_categories: List[Dict[str, Any]], conversation_history: List[Dict[str, str]],
                         patient_input: str, severity_mapping: Dict[str, Dict[str, Any]] | None = None,
                         wellness_confirmation_count: int = 0) -> List[Dict[str, str]]:
    if severity_mapping:
        framework = "\n".join(
            f"- {sev}: {', '.join(m.get('examples', []))} (escalation: {m.get('escalation')}, urgency: {m.get('timeUrgency')})"
            for sev, m in severity_mapping.items()
        )
    else:
        framework = DEFAULT_SEVERITY_FRAMEWORK

    if symptom_categories:
        category_lines = []
        for cat in symptom_categories:
            category_lines.append(f"{cat['category'].upper()}:")
            if cat.get("examples"):
                category_lines.append(f"- Example questions: {', '.join(cat['examples'])}")
            if cat.get("patterns"):
                category_lines.append(f"- Related patterns: {_more(cat['patterns'])}")
        categories = "Symptom categories for this condition:\n" + "\n".join(category_lines)
    else:
        categories = (
            "Common symptom areas: respiratory, cardiovascular, fluid/weight, GI, neurological, "
            "medication, general fatigue or weakness."
        )

    numeric = ""
    if patterns_requiring_numbers:
        numeric = f"Patterns requiring numbers: {_more(patterns_requiring_numbers)}"

    system = f"""You are a medical AI that parses patient symptom reports for {condition} patients.
Extract structured information from the patient's message using the whole conversation for context.

PROTOCOL PATTERNS TO DETECT:
{_bullets(protocol_patterns, 'No patterns configured')}

NORMALIZATION:
- When the patient's meaning matches a pattern above, put that pattern in normalized_text using its exact phrasing.
- Convert "lbs" to "pounds" and keep any numbers the patient gave.
- Several patterns can match one message; separate them with commas.

NEGATION:
- Never report symptoms the patient denies ("no", "not", "never", "without", "don't have", "haven't had").
- "No chest pain or PND" gives symptoms [] and normalized_text "".

NUMERIC PATTERNS:
- Use a pattern containing a number only when the patient stated that number.
- For vague amounts ("some weight", "a bit") use the generic pattern without a number so a follow-up is asked.
{numeric}

Return JSON:
{{
  "symptoms": ["symptom"],
  "severity": "{'|'.join(SEVERITY_ORDER)}",
  "intent": "symptom_report|question|medication_question|general",
  "sentiment": "positive|neutral|concerned|distressed",
  "confidence": 0.0,
  "normalized_text": "",
  "coveredCategories": [],
  "wellnessConfirmationCount": {wellness_confirmation_count},
  "newWellnessConfirmations": []
}}

{categories}

SEVERITY uses clinical reasoning over the whole picture, not keywords alone:
{framework}
Medication non-adherence with symptoms, orthostatic symptoms and a worried patient all raise severity.

COVERED CATEGORIES: only add an area the patient explicitly confirmed is fine (weight, breathing,
medications, swelling, chest_pain, energy, sleep). Vague "I'm fine" confirms nothing.

WELLNESS CONFIRMATIONS: the current total is {wellness_confirmation_count}; return it unchanged in
wellnessConfirmationCount and list only this message's new confirmed areas in newWellnessConfirmations."""

    messages = [{"role": "system", "content": system}]
    if conversation_history:
        messages.append({
            "role": "user",
            "content": (
                f"CONVERSATION HISTORY:\n{_history_lines(conversation_history)}\n\n"
                "Now analyzing the patient's latest message considering this context."
            ),
        })
    messages.append({
        "role": "user",
        "content": (
            f"Patient's CURRENT message: \"{patient_input}\"\n\n"
            "Extract structured information in JSON format, considering the conversation above."
        ),
    })
    return messages


def build_response_messages(context: str, education_level: str, medications: List[Dict[str, Any]] | None,
                            checklist_questions: List[Dict[str, Any]] | None, wellness_confirmation_count: int,
                            decision_hint: Dict[str, Any], conversation_history: List[Dict[str, str]],
                            patient_response: str, covered_categories: List[str] | None = None,
                            next_category_suggestion: str | None = None,
                            current_risk_level: str | None = None) -> List[Dict[str, str]]:
    checklist = ""
    if checklist_questions:
        lines = []
        for q in checklist_questions:
            critical = " (CRITICAL)" if q.get("is_critical") else ""
            line = f"- {(q.get('category') or '').upper()}{critical}: \"{q.get('question')}\""
            if q.get("follow_up"):
                line += f" (Follow-up: \"{q['follow_up']}\")"
            lines.append(line)
        checklist = "Structured questions available:\n" + "\n".join(lines) + \
            "\nCover one category at a time, never repeat one, and prioritize critical items."

    flow = ["Read the conversation history first and never repeat a covered area."]
    if covered_categories:
        flow.append(f"Already covered: {', '.join(covered_categories)}. Do not ask about these again.")
    flow.append("Systematic coverage: weight, breathing, medications, swelling, chest pain, other.")
    if next_category_suggestion:
        flow.append(f"Suggested next category: {next_category_suggestion}.")
    flow.append("After 3 or more specific confirmations with no red flags you can close.")
    if current_risk_level:
        depth = {"HIGH": "be very thorough", "MEDIUM": "standard checks needed"}.get(
            current_risk_level, "basic checks sufficient")
        flow.append(f"Current risk level: {current_risk_level}, {depth}.")
    flow_text = "\n".join(f"{i}. {line}" for i, line in enumerate(flow, start=1))

    system = f"""{context}

IDENTITY: Sarah, a post-discharge care coordinator.

PATIENT EDUCATION LEVEL: {education_level}
{EDUCATION_GUIDANCE.get(education_level, EDUCATION_GUIDANCE['MEDIUM'])}

PATIENT MEDICATIONS:
{_medication_lines(medications)}

Do not invent facts or give medical advice beyond general wellness guidance. When asked about
something outside symptom checking, say you don't have that information and suggest contacting their doctor.

{checklist}

CONVERSATION FLOW:
{flow_text}

WELLNESS CONFIRMATIONS: {wellness_confirmation_count}/3 so far. Specific answers count; vague "I'm fine" does not.
With 3 or more and no red flags call log_checkin, otherwise ask about one new area.

RESPONSE FORMAT: 2-3 plain sentences for the patient. Tool calls go through function calling only;
never put function names or JSON in the text.

TOOLS: count_wellness_confirmation per confirmed area; raise_flag for LOW to HIGH concerns;
handoff_to_nurse for CRITICAL emergencies only; log_checkin after 3+ confirmations with no red flags;
ask_more when more information is needed. Precedence: handoff_to_nurse > raise_flag > log_checkin.

DECISION HINT: {json.dumps(decision_hint, default=str)}

Red flags always take precedence over closing."""

    messages = [{"role": "system", "content": system}]
    if conversation_history:
        messages.append({
            "role": "user",
            "content": (
                f"CONVERSATION HISTORY (what has already been discussed):\n{_history_lines(conversation_history)}\n\n"
                "Review this history and do not repeat questions about areas already covered."
            ),
        })
    messages.append({
        "role": "user",
        "content": (
            f"Patient's CURRENT response: \"{patient_response}\"\n\nContext: {context}\n\n"
            "Respond to the patient and use the tools the decision hint calls for."
        ),
    })
    return messages


def build_initial_checkin_prompt(first_name: str, condition: str, risk_level: str | None, education_level: str,
                                 days_since_discharge: int, is_first_contact: bool, language: str = "EN",
                                 medications: List[Dict[str, Any]] | None = None,
                                 previous_summaries: List[str] | None = None,
                                 facility_name: str | None = None) -> str:
    name, focus, key_symptoms = checkin_focus(condition)
    previous_summaries = previous_summaries or []
    language_note = (
        'Generate the ENTIRE message in Spanish. Use "Hola" instead of "Hi".'
        if language == "ES" else "Generate the message in English."
    )
    sections = [
        "You are Sarah, a warm and professional post-discharge care coordinator.",
        "",
        f"Write a personalized check-in message for {first_name}, discharged {days_since_discharge} days ago"
        + (f" from {facility_name}." if facility_name else "."),
        "",
        f"Condition: {condition} ({name})",
        f"Risk level: {risk_level or 'UNKNOWN'}",
        f"Education level: {education_level}",
        f"First contact: {'YES' if is_first_contact else 'NO, this is a follow-up'}",
        "",
        language_note,
        EDUCATION_GUIDANCE.get(education_level, EDUCATION_GUIDANCE["MEDIUM"]),
        focus,
    ]
    if medications:
        sections += ["", "Patient medications:", _medication_lines(medications),
                     "You may briefly mention medication adherence if relevant."]
    if previous_summaries:
        sections += ["", "Previous check-ins:"]
        sections += [f"{i}. {s}" for i, s in enumerate(previous_summaries, start=1)]
        sections.append("Reference past issues naturally.")
    if is_first_contact:
        opening = "Introduce yourself, explain you will check in regularly during recovery, and acknowledge the discharge."
    else:
        opening = f"Greet them warmly and note it has been {days_since_discharge} days since discharge."
    sections += [
        "",
        opening,
        f"Ask one open-ended question about how they feel, focused on {', '.join(key_symptoms)}.",
        "Keep it to 2-3 SMS-friendly sentences. No yes/no questions, no form-letter tone.",
        "Output ONLY the message text.",
    ]
    return "\n".join(sections)


def fallback_checkin_message(first_name: str, is_first_contact: bool) -> str:
    if is_first_contact:
        return (
            f"Hi {first_name}, this is Sarah from your care team. I'll be checking in with you regularly "
            "after your recent discharge. How are you feeling today?"
        )
    return f"Hi {first_name}, it's Sarah checking in. How have you been feeling since we last talked?"


def build_analysis_prompt(condition: str, rules: List[Dict[str, Any]], responses: List[Dict[str, Any]]) -> str:
    rule_lines = "\n".join(
        f"- {r.get('rule_code')}: {r.get('description') or ''}\n  Severity: {r.get('severity')}\n  Action: {r.get('action_hint') or ''}"
        for r in rules
    )
    response_lines = "\n".join(
        f"Question: {r.get('questionText') or r.get('questionCode') or ''}\n"
        f"Response: {r.get('valueText') or r.get('valueNumber') or r.get('valueChoice') or 'No response'}"
        for r in responses
    )
    return f"""You are a medical AI assistant analyzing patient responses for {condition} ({condition_full_name(condition)})
in a Transition of Care program. Identify red flags that require nurse escalation.

CONDITION CONTEXT:
{condition_context(condition)}

RED FLAG RULES:
{rule_lines or '- none configured'}

PATIENT RESPONSES:
{response_lines}

Determine the severity level (NONE, LOW, MODERATE, HIGH, CRITICAL), the most relevant red flag code
and a brief reasoning. Respond in JSON:
{{"severity": "NONE|LOW|MODERATE|HIGH|CRITICAL", "redFlagCode": "rule_code_or_NONE", "reasoning": "brief explanation"}}"""


def build_escalation_messages(condition: str, patient_input: str, reason: str, timeframe: str) -> List[Dict[str, str]]:
    content = f"""Generate a warm, empathetic escalation message for a {condition} patient.

Patient said: "{patient_input}"
Red flag detected: {reason}

Acknowledge their specific symptom, explain in one sentence why it matters for their condition,
tell them a nurse will call within {timeframe}, and be reassuring while taking it seriously.
Keep it to 2-3 sentences."""
    return [{"role": "system", "content": content}]


def build_summary_messages(messages: List[Dict[str, str]], outcome: str) -> List[Dict[str, str]]:
    content = f"""Summarize this patient interaction in 2-3 concise sentences. Focus on the key symptoms or
concerns mentioned and the outcome. Be factual and clinical.

Conversation:
{_history_lines(messages)}

Outcome: {outcome}"""
    return [{"role": "system", "content": content}]
