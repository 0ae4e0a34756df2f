"""
Slot Extraction Service

Pulls triage slots (location, category, urgency, contact details...) out of
requester messages. The language model does the primary extraction with a
schema-constrained reply; when it times out or answers with garbage, a
deterministic keyword extractor produces a lower-confidence slot set so the
conversation keeps moving.
"""
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from app.core.config import settings
from app.core.exceptions import ExtractionTimeout, LLMResponseError
from app.core.failure_policy import Operation, get_failure_policy
from app.core.logging import get_logger
from app.orchestration.triage.safety import is_immediate_hazard
from app.orchestration.triage.slots import SlotSet, SlotSource, SlotValue, UrgencyLevel
from app.services.llm.client import LLMService, get_llm_service

logger = get_logger(__name__)


CATEGORIES = [
    "Plumbing", "Electrical", "HVAC", "Appliances",
    "Structural", "Pest Control", "Security", "General",
]


class KeywordSlotExtractor:
    """
    Deterministic extraction from keyword and regex matches.

    Confidences stay well below what the model reports so that any later
    model extraction replaces these values.
    """

    BUILDING_CONFIDENCE = 0.6
    ROOM_CONFIDENCE = 0.6
    BARE_NUMBER_ROOM_CONFIDENCE = 0.4
    CATEGORY_CONFIDENCE = 0.5
    URGENCY_CONFIDENCE = 0.5
    DEFAULT_URGENCY_CONFIDENCE = 0.3
    CONTACT_CONFIDENCE = 0.9
    NAME_CONFIDENCE = 0.7

    CATEGORY_KEYWORDS = {
        "Plumbing": [
            r"sinks?", r"leak\w*", r"toilets?", r"drains?", r"faucets?", r"pipes?",
            r"showers?", r"clog\w*", r"tub", r"water heater",
        ],
        "Electrical": [
            r"outlets?", r"lights?", r"breakers?", r"switch(es)?", r"power",
            r"electric\w*", r"wiring", r"gfci", r"sockets?", r"spark\w*", r"bulbs?",
        ],
        "HVAC": [
            r"heat(er|ing)?", r"radiators?", r"ac", r"a/c", r"air condition\w*",
            r"thermostat", r"vents?", r"hvac",
        ],
        "Appliances": [
            r"fridge", r"refrigerator", r"stove", r"oven", r"microwave",
            r"dishwasher", r"washer", r"dryer", r"freezer",
        ],
        "Structural": [
            r"ceiling", r"walls?", r"floors?", r"windows?", r"doors?", r"cracks?", r"roof",
        ],
        "Pest Control": [
            r"mice", r"mouse", r"(cock)?roach(es)?", r"bugs?", r"ants", r"rats?", r"pests?",
        ],
        "Security": [r"locks?", r"keys?", r"card reader", r"locked out"],
    }

    URGENT_KEYWORDS = [
        r"urgent", r"asap", r"immediately", r"right away", r"flood\w*",
        r"gushing", r"overflow\w*", r"no heat", r"no power", r"no water",
    ]
    LOW_KEYWORDS = [
        r"not urgent", r"no rush", r"whenever", r"minor", r"cosmetic", r"when you can",
    ]

    TIMELINE_PATTERNS = [
        r"since (yesterday|last \w+|this \w+|\w+day)",
        r"for (the past |the last )?(\d+|a few|a couple( of)?|several) (minutes|hours|days|weeks)",
        r"(this morning|last night|yesterday|today|just now|an hour ago)",
    ]

    SEVERITY_KEYWORDS = {
        "major": [r"severe", r"major", r"really bad", r"terrible", r"everywhere"],
        "minor": [r"minor", r"small", r"slight", r"a little"],
    }

    PHONE_PATTERNS = [
        r'\((\d{3})\)\s*(\d{3})[-.\s]?(\d{4})',
        r'\b(\d{3})[-.\s]?(\d{3})[-.\s]?(\d{4})\b',
    ]
    EMAIL_PATTERN = r'[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}'
    NAME_PATTERN = r"(?i:my name is|this is|i am|i'm)\s+([A-Z][a-zA-Z'-]+(?:\s+[A-Z][a-zA-Z'-]+)?)"
    ROOM_PATTERN = r'(?i:\b(?:room|rm\.?|apt\.?|apartment|unit|suite)\s*#?|#)\s*(\d{1,4}[A-Za-z]?)\b'
    BARE_ROOM_PATTERN = r'\b(\d{2,4}[A-Za-z]?)\b'

    def __init__(self, known_buildings: Optional[List[str]] = None):
        self.known_buildings = known_buildings or list(settings.KNOWN_BUILDINGS)

    def extract(self, text: str) -> SlotSet:
        slots = SlotSet()
        if not text:
            return slots

        # Contact details first, then strip them so digits are not read as rooms
        remaining = self._extract_contact(text, slots)
        self._extract_location(remaining, slots)
        self._extract_category(remaining, slots)
        self._extract_urgency(remaining, slots)
        self._extract_timeline(remaining, slots)
        self._extract_severity(remaining, slots)

        slots.description = self._slot(text.strip(), 0.3)
        return slots

    def _slot(self, value: Any, confidence: float) -> SlotValue:
        return SlotValue(value=value, confidence=confidence, source=SlotSource.KEYWORD)

    def _extract_contact(self, text: str, slots: SlotSet) -> str:
        match = re.search(self.EMAIL_PATTERN, text)
        if match:
            slots.email = self._slot(match.group().lower(), self.CONTACT_CONFIDENCE)
            text = text.replace(match.group(), " ")

        for pattern in self.PHONE_PATTERNS:
            match = re.search(pattern, text)
            if match:
                slots.phone = self._slot("".join(match.groups()), self.CONTACT_CONFIDENCE)
                text = text.replace(match.group(), " ")
                break

        match = re.search(self.NAME_PATTERN, text)
        if match:
            candidate = match.group(1).strip()
            if not any(candidate.lower() in b.lower() for b in self.known_buildings):
                slots.name = self._slot(candidate, self.NAME_CONFIDENCE)

        return text

    def _extract_location(self, text: str, slots: SlotSet):
        text_lower = text.lower()
        for building in self.known_buildings:
            index = text_lower.find(building.lower())
            if index != -1:
                slots.building = self._slot(building, self.BUILDING_CONFIDENCE)
                # Keep the building name's own digits (if any) out of room detection
                text = text[:index] + " " + text[index + len(building):]
                break

        match = re.search(self.ROOM_PATTERN, text)
        if match:
            slots.room = self._slot(match.group(1).upper(), self.ROOM_CONFIDENCE)
            return

        match = re.search(self.BARE_ROOM_PATTERN, text)
        if match:
            slots.room = self._slot(match.group(1).upper(), self.BARE_NUMBER_ROOM_CONFIDENCE)

    def _extract_category(self, text: str, slots: SlotSet):
        text_lower = text.lower()
        best, best_hits = None, 0
        for category, patterns in self.CATEGORY_KEYWORDS.items():
            hits = sum(1 for p in patterns if re.search(rf"\b{p}\b", text_lower))
            if hits > best_hits:
                best, best_hits = category, hits
        if best:
            slots.category = self._slot(best, self.CATEGORY_CONFIDENCE)

    def _extract_urgency(self, text: str, slots: SlotSet):
        text_lower = text.lower()
        if any(re.search(rf"\b{p}\b", text_lower) for p in self.LOW_KEYWORDS):
            level, confidence = UrgencyLevel.LOW, self.URGENCY_CONFIDENCE
        elif any(re.search(rf"\b{p}\b", text_lower) for p in self.URGENT_KEYWORDS):
            level, confidence = UrgencyLevel.URGENT, self.URGENCY_CONFIDENCE
        else:
            level, confidence = UrgencyLevel.NORMAL, self.DEFAULT_URGENCY_CONFIDENCE
        slots.urgency_level = self._slot(level.value, confidence)

    def _extract_timeline(self, text: str, slots: SlotSet):
        for pattern in self.TIMELINE_PATTERNS:
            match = re.search(pattern, text, re.IGNORECASE)
            if match:
                slots.timeline = self._slot(match.group(0).lower(), 0.5)
                return

    def _extract_severity(self, text: str, slots: SlotSet):
        text_lower = text.lower()
        for severity, patterns in self.SEVERITY_KEYWORDS.items():
            if any(re.search(rf"\b{p}\b", text_lower) for p in patterns):
                slots.severity = self._slot(severity, 0.4)
                return


# ---------------------------------------------------------------------------
# Model-backed extraction
# ---------------------------------------------------------------------------

URGENCY_ALIASES = {
    "critical": UrgencyLevel.EMERGENCY,
    "emergency": UrgencyLevel.EMERGENCY,
    "high": UrgencyLevel.URGENT,
    "urgent": UrgencyLevel.URGENT,
    "medium": UrgencyLevel.NORMAL,
    "normal": UrgencyLevel.NORMAL,
    "low": UrgencyLevel.LOW,
}


class SlotExtractionReply(BaseModel):
    """Shape the model is asked to answer with."""

    acknowledgement: str = ""
    building: Optional[str] = None
    room: Optional[str] = None
    unit_id: Optional[str] = None
    category: Optional[str] = None
    severity: Optional[str] = None
    timeline: Optional[str] = None
    description: Optional[str] = None
    urgency_level: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    safety_flags: List[str] = Field(default_factory=list)
    confidence: float = 0.8

    @field_validator(
        "building", "room", "unit_id", "category", "severity", "timeline",
        "description", "urgency_level", "name", "email", "phone",
        mode="before",
    )
    @classmethod
    def _coerce_to_text(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        try:
            return max(0.0, min(1.0, float(value)))
        except (TypeError, ValueError):
            return 0.8

    def to_slot_set(self) -> SlotSet:
        slots = SlotSet()
        for name in SlotSet.slot_names():
            value = getattr(self, name)
            if value is None:
                continue
            if name == "urgency_level":
                level = URGENCY_ALIASES.get(value.lower())
                if level is None:
                    logger.debug(f"Dropping unknown urgency '{value}' from model reply")
                    continue
                value = level.value
            elif name == "category":
                value = _normalize_category(value)
            setattr(slots, name, SlotValue(value=value, confidence=self.confidence, source=SlotSource.LLM))

        # The model may repeat a hazard we recognise; anything else is informational
        slots.safety_flags = [
            flag if is_immediate_hazard(flag) else f"reported_{flag}"
            for flag in self.safety_flags
        ]
        return slots


def _normalize_category(value: str) -> str:
    for category in CATEGORIES:
        if value.lower() == category.lower():
            return category
    return value.title()


EXTRACTION_SYSTEM_PROMPT = """You are a maintenance intake assistant for campus housing.
Extract structured facts from the requester's latest message, using the facts already
known as context. Respond with ONE JSON object and nothing else, with these keys:

acknowledgement: one short, warm sentence acknowledging what they said (no questions)
building, room, unit_id, category, severity, timeline, description, name, email, phone:
  strings, or null if not stated
category: one of {categories}
urgency_level: one of "low", "normal", "urgent", "emergency"
safety_flags: list of short snake_case strings for any safety concerns
confidence: number between 0 and 1 for how sure you are overall

Known buildings: {buildings}
Only include facts the requester actually stated."""


@dataclass
class ExtractionOutcome:
    slots: SlotSet
    acknowledgement: str = ""
    used_fallback: bool = False


class SlotExtractionService:
    """
    Model-first slot extraction with a keyword fallback.

    Whether a model failure falls back or propagates is decided by the
    slot_extraction entry of the failure policy.
    """

    def __init__(
        self,
        llm_service: Optional[LLMService] = None,
        keyword_extractor: Optional[KeywordSlotExtractor] = None,
        timeout: Optional[float] = None,
    ):
        self.llm_service = llm_service or get_llm_service()
        self.keyword_extractor = keyword_extractor or KeywordSlotExtractor()
        self.timeout = timeout if timeout is not None else settings.EXTRACTION_TIMEOUT_SECONDS

    async def extract(
        self,
        text: str,
        known_slots: Optional[SlotSet] = None,
        history: Optional[List[Dict[str, Any]]] = None,
    ) -> ExtractionOutcome:
        system_prompt = EXTRACTION_SYSTEM_PROMPT.format(
            categories=", ".join(CATEGORIES),
            buildings=", ".join(settings.KNOWN_BUILDINGS),
        )
        user_prompt = self._build_prompt(text, known_slots, history or [])

        try:
            reply = await self.llm_service.complete_json(
                system_prompt,
                user_prompt,
                SlotExtractionReply,
                timeout=self.timeout,
                operation=Operation.SLOT_EXTRACTION.value,
            )
        except (ExtractionTimeout, LLMResponseError) as e:
            if not get_failure_policy().fails_open(Operation.SLOT_EXTRACTION):
                raise
            logger.warning(f"Slot extraction fell back to keywords: {e.message}")
            return ExtractionOutcome(
                slots=self.keyword_extractor.extract(text),
                used_fallback=True,
            )

        return ExtractionOutcome(slots=reply.to_slot_set(), acknowledgement=reply.acknowledgement)

    @staticmethod
    def _build_prompt(text: str, known_slots: Optional[SlotSet], history: List[Dict[str, Any]]) -> str:
        prompt = f'Requester message: "{text}"\n'
        if known_slots is not None:
            known = {
                name: known_slots.value(name)
                for name in SlotSet.slot_names()
                if known_slots.is_filled(name)
            }
            if known:
                prompt += f"Facts already known: {known}\n"
        if history:
            recent = history[-6:]
            transcript = "\n".join(f"{m.get('role')}: {m.get('content')}" for m in recent)
            prompt += f"Recent conversation:\n{transcript}\n"
        return prompt
