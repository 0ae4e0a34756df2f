"""
Triage Conversation State

The persisted record of one intake dialogue. Created on the first message,
mutated on every turn, marked complete when a case is filed; never deleted.
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import BaseModel, Field

from app.db.records import Record, utcnow
from app.orchestration.triage.slots import SlotSet


class TriagePhase(str, Enum):
    STARTED = "started"
    GATHERING_INFO = "gathering_info"
    AWAITING_MEDIA = "awaiting_media"
    RECOMMENDING_DIY = "recommending_diy"
    COMPLETE = "complete"
    EMERGENCY = "emergency"


# Phases the automated flow never leaves
TERMINAL_PHASES = {TriagePhase.COMPLETE, TriagePhase.EMERGENCY}


class NextAction(str, Enum):
    ESCALATE_IMMEDIATE = "escalate_immediate"
    ASK_FOLLOWUP = "ask_followup"
    REQUEST_MEDIA = "request_media"
    RECOMMEND_DIY = "recommend_diy"
    COMPLETE_TRIAGE = "complete_triage"


class ConversationMessage(BaseModel):
    role: str  # requester, assistant
    content: str
    media_refs: List[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)


class DIYAction(BaseModel):
    """A bounded self-help suggestion for a known low-risk problem."""

    issue: str
    title: str
    instructions: List[str]
    safety_warnings: List[str]
    escalate_if: str


class TriageConversation(Record):
    kind: ClassVar[str] = "triage_conversation"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    requester_id: str
    phase: TriagePhase = TriagePhase.STARTED
    slots: SlotSet = Field(default_factory=SlotSet)
    messages: List[ConversationMessage] = Field(default_factory=list)
    media_refs: List[str] = Field(default_factory=list)

    # One-shot prompts: never asked twice in the same conversation
    media_requested: bool = False
    diy_offered: bool = False

    last_action: Optional[NextAction] = None
    pending_slot: Optional[str] = None
    turn_count: int = 0

    is_complete: bool = False
    case_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None

    def add_message(self, role: str, content: str, media_refs: Optional[List[str]] = None) -> None:
        self.messages.append(
            ConversationMessage(role=role, content=content, media_refs=media_refs or [])
        )

    def history(self) -> List[Dict[str, Any]]:
        return [{"role": m.role, "content": m.content} for m in self.messages]

    @property
    def requester_text(self) -> str:
        return "\n".join(m.content for m in self.messages if m.role == "requester")

    @property
    def initial_request(self) -> str:
        for message in self.messages:
            if message.role == "requester":
                return message.content
        return ""


class TurnResult(BaseModel):
    """What a triage turn returns to the caller."""

    conversation_id: str
    message: str
    phase: TriagePhase
    urgency: str
    safety_flags: List[str]
    next_action: NextAction
    next_question: Optional[str] = None
    diy_action: Optional[DIYAction] = None
    media_request: Optional[str] = None
    used_fallback: bool = False
    escalated: bool = False
