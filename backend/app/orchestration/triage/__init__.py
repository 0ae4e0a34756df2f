"""
Triage conversation: slot model, safety screening and conversation state

The engine lives in ``app.orchestration.triage.machine`` and is imported from
there; it depends on the extraction service, which itself reads the slot
model from this package.
"""
from app.orchestration.triage.slots import SlotSet, SlotSource, SlotValue, UrgencyLevel
from app.orchestration.triage.state import NextAction, TriageConversation, TriagePhase, TurnResult

__all__ = [
    "SlotSet",
    "SlotSource",
    "SlotValue",
    "UrgencyLevel",
    "NextAction",
    "TriageConversation",
    "TriagePhase",
    "TurnResult",
]
