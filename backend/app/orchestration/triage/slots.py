"""
Slot model for triage conversations.

A slot is one named fact pulled out of free text (building, room, category,
urgency, contact details...). Each slot carries the confidence of the
extraction that produced it so later turns can decide whether to overwrite.

Merge rules:
- an empty slot always takes the new value
- a filled slot is only overwritten by a strictly more confident extraction
- urgency_level only moves up the ordinal scale; downgrades are logged and dropped
- safety flags are append-only
"""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from app.core.logging import get_logger
from app.db.records import CasePriority

logger = get_logger(__name__)


class UrgencyLevel(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    URGENT = "urgent"
    EMERGENCY = "emergency"


URGENCY_RANK: Dict[UrgencyLevel, int] = {
    UrgencyLevel.LOW: 0,
    UrgencyLevel.NORMAL: 1,
    UrgencyLevel.URGENT: 2,
    UrgencyLevel.EMERGENCY: 3,
}

# The single mapping between triage urgency and case priority
URGENCY_TO_PRIORITY: Dict[UrgencyLevel, CasePriority] = {
    UrgencyLevel.LOW: CasePriority.LOW,
    UrgencyLevel.NORMAL: CasePriority.MEDIUM,
    UrgencyLevel.URGENT: CasePriority.HIGH,
    UrgencyLevel.EMERGENCY: CasePriority.CRITICAL,
}


def urgency_rank(level: Any) -> int:
    return URGENCY_RANK[UrgencyLevel(level)]


def priority_for_urgency(level: Any) -> CasePriority:
    return URGENCY_TO_PRIORITY[UrgencyLevel(level)]


class SlotSource(str, Enum):
    LLM = "llm"
    KEYWORD = "keyword"
    REQUESTER = "requester"  # supplied directly by the caller, e.g. a contact form
    SAFETY = "safety"


class SlotValue(BaseModel):
    """A single extracted value with confidence."""

    value: Any
    confidence: float = Field(ge=0.0, le=1.0)
    source: SlotSource = SlotSource.LLM


LOCATION_SLOTS = ("building", "room")
CONTACT_SLOTS = ("name", "email", "phone")

# Order in which missing required slots are asked for
REQUIRED_SLOTS = ("building", "room", "category")


class SlotSet(BaseModel):
    """Partial record of the facts gathered so far."""

    building: Optional[SlotValue] = None
    room: Optional[SlotValue] = None
    unit_id: Optional[SlotValue] = None
    category: Optional[SlotValue] = None
    severity: Optional[SlotValue] = None
    timeline: Optional[SlotValue] = None
    description: Optional[SlotValue] = None
    urgency_level: Optional[SlotValue] = None
    name: Optional[SlotValue] = None
    email: Optional[SlotValue] = None
    phone: Optional[SlotValue] = None

    safety_flags: List[str] = Field(default_factory=list)

    @classmethod
    def slot_names(cls) -> List[str]:
        return [name for name in cls.model_fields if name != "safety_flags"]

    def value(self, name: str) -> Any:
        slot = getattr(self, name)
        return slot.value if slot is not None else None

    def is_filled(self, name: str) -> bool:
        value = self.value(name)
        return value is not None and value != ""

    @property
    def urgency(self) -> UrgencyLevel:
        if self.urgency_level is None:
            return UrgencyLevel.NORMAL
        return UrgencyLevel(self.urgency_level.value)

    def missing_required(self) -> List[str]:
        return [name for name in REQUIRED_SLOTS if not self.is_filled(name)]

    def missing_contact(self) -> List[str]:
        return [name for name in CONTACT_SLOTS if not self.is_filled(name)]

    def add_safety_flags(self, flags: List[str]) -> List[str]:
        """Append unseen flags; returns the ones that were new."""
        added = [flag for flag in flags if flag not in self.safety_flags]
        self.safety_flags.extend(added)
        return added

    def merge(self, update: "SlotSet") -> List[str]:
        """
        Fold a fresh extraction into this slot set.

        Returns the names of slots that changed.
        """
        changed = []
        for name in self.slot_names():
            incoming = getattr(update, name)
            if incoming is None or incoming.value in (None, ""):
                continue
            existing = getattr(self, name)
            if self._should_replace(name, existing, incoming):
                setattr(self, name, incoming)
                changed.append(name)

        if self.add_safety_flags(update.safety_flags):
            changed.append("safety_flags")
        return changed

    @staticmethod
    def _should_replace(name: str, existing: Optional[SlotValue], incoming: SlotValue) -> bool:
        if existing is None or existing.value in (None, ""):
            return True

        if name == "urgency_level":
            current, proposed = urgency_rank(existing.value), urgency_rank(incoming.value)
            if proposed < current:
                logger.info(
                    f"Ignoring urgency downgrade {existing.value} -> {incoming.value} "
                    f"(source={incoming.source.value})"
                )
                return False
            if proposed > current:
                return True

        return incoming.confidence > existing.confidence
