import logging
from dataclasses import dataclass, field
from typing import List, Dict, Any

from sqlalchemy.orm import Session

from tocare.agent.llm import LLMClient
from tocare.agent.parser import ParsedResponse, parse_patient_input
from tocare.agent.protocols import ChecklistQuestion, get_checklist_questions
from tocare.db.models import AgentInteraction, utcnow
from tocare.errors import NotFoundError

logger = logging.getLogger(__name__)

PHASES = ["greeting", "symptom_check", "follow_up", "closing"]

ESCALATE_MESSAGE = "I need to connect you with a nurse right away. Please hold on."
CLOSE_CRITICAL_MESSAGE = "Thank you for the update! You're doing great. Please reach out if anything changes."
CLOSE_ALL_ASKED_MESSAGE = "Thank you for the update! You're doing well. Please reach out if anything changes."
FOLLOW_UP_MESSAGE = "Can you tell me more about how you're feeling?"
DEFAULT_PROMPT = "How are you feeling today?"


@dataclass
class ConversationState:
    phase: str = "greeting"
    current_position: int = 0
    checklist_progress: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    wellness_confirmations: int = 0
    red_flags_detected: List[str] = field(default_factory=list)

    @classmethod
    def load(cls, interaction: AgentInteraction) -> "ConversationState":
        meta = interaction.meta or {}
        return cls(
            phase=interaction.conversation_phase or "greeting",
            current_position=interaction.current_checklist_position or 0,
            checklist_progress=dict(interaction.checklist_progress or {}),
            wellness_confirmations=int(meta.get("wellnessConfirmationCount") or 0),
            red_flags_detected=list(meta.get("redFlagsDetected") or []),
        )

    def save(self, interaction: AgentInteraction):
        # JSON columns are replaced wholesale so the change is flushed.
        interaction.conversation_phase = self.phase
        interaction.current_checklist_position = self.current_position
        interaction.checklist_progress = {k: dict(v) for k, v in self.checklist_progress.items()}
        meta = dict(interaction.meta or {})
        meta["wellnessConfirmationCount"] = self.wellness_confirmations
        meta["redFlagsDetected"] = list(self.red_flags_detected)
        interaction.meta = meta

    def answered_question(self, questions: List[ChecklistQuestion]) -> ChecklistQuestion | None:
        """The checklist question the patient is replying to, if one was asked."""
        if self.phase != "symptom_check" or self.current_position <= 0:
            return None
        index = self.current_position - 1
        return questions[index] if index < len(questions) else None

    def next_question(self, questions: List[ChecklistQuestion]) -> ChecklistQuestion | None:
        if self.current_position < len(questions):
            return questions[self.current_position]
        return None

    def record_response(self, question: ChecklistQuestion | None, parsed: ParsedResponse):
        if parsed.sentiment == "positive" and parsed.intent == "general":
            self.wellness_confirmations += 1
        if parsed.severity in ("HIGH", "CRITICAL"):
            for symptom in parsed.symptoms or [parsed.raw_input]:
                if symptom not in self.red_flags_detected:
                    self.red_flags_detected.append(symptom)
        if question and question.category:
            self.checklist_progress[question.category] = {
                "asked": True,
                "answered": True,
                "answerText": parsed.normalized_text or parsed.raw_input,
                "updatedAt": utcnow().isoformat(),
            }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase,
            "currentPosition": self.current_position,
            "wellnessConfirmations": self.wellness_confirmations,
            "redFlagsDetected": list(self.red_flags_detected),
        }


def all_critical_answered(state: ConversationState, questions: List[ChecklistQuestion]) -> bool:
    return all(
        state.checklist_progress.get(q.category, {}).get("answered") is True
        for q in questions if q.is_critical
    )


def decide(state: ConversationState, parsed: ParsedResponse, questions: List[ChecklistQuestion]) -> Dict[str, Any]:
    if parsed.severity in ("CRITICAL", "HIGH"):
        return {"action": "escalate", "reason": "Critical or high severity symptoms detected",
                "message": ESCALATE_MESSAGE}

    if state.wellness_confirmations >= 3 and state.phase == "symptom_check" \
            and all_critical_answered(state, questions):
        return {"action": "close", "reason": "Patient doing well and all critical questions answered",
                "message": CLOSE_CRITICAL_MESSAGE, "nextPhase": "closing"}

    question = state.next_question(questions)
    if question:
        return {"action": "ask_question", "reason": "Asking question in checklist",
                "question": {"ruleCode": question.rule_code, "category": question.category,
                             "questionText": question.question, "isCritical": question.is_critical},
                "nextPhase": "symptom_check"}

    if state.wellness_confirmations >= 2:
        return {"action": "close", "reason": "All questions asked and patient doing well",
                "message": CLOSE_ALL_ASKED_MESSAGE, "nextPhase": "closing"}

    return {"action": "follow_up", "reason": "Need more information to complete assessment",
            "message": FOLLOW_UP_MESSAGE}


def response_text(decision: Dict[str, Any]) -> str:
    if decision["action"] == "ask_question" and decision.get("question"):
        return decision["question"]["questionText"]
    return decision.get("message") or DEFAULT_PROMPT


async def advance_checklist(db: Session, llm: LLMClient | None, interaction_id: int, patient_input: str,
                            condition: str, risk_level: str, parsed: ParsedResponse | None = None) -> Dict[str, Any]:
    interaction = db.query(AgentInteraction).filter(AgentInteraction.id == interaction_id).first()
    if not interaction:
        raise NotFoundError("Interaction", interaction_id)

    state = ConversationState.load(interaction)
    questions = get_checklist_questions(db, condition)
    if parsed is None:
        parsed = await parse_patient_input(llm, patient_input or "", condition)

    state.record_response(state.answered_question(questions), parsed)
    decision = decide(state, parsed, questions)
    if decision["action"] == "ask_question":
        state.current_position += 1
    if decision.get("nextPhase"):
        state.phase = decision["nextPhase"]
    state.save(interaction)
    db.flush()

    logger.info("[checklist] interaction %s (%s/%s) -> %s at position %s",
                interaction_id, condition, risk_level, decision["action"], state.current_position)
    return {"decision": decision, "response": response_text(decision), "conversationState": state.to_dict()}
