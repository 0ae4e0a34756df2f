"""
Safety screening for triage messages.

Runs on every turn against the raw requester text, independently of the
language model, so an outage or a bad model reply can never hide a hazard.
Immediate hazards put the conversation into the Emergency phase; urgent
conditions only raise urgency.
"""
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from app.core.config import settings

HAZARD_PREFIX = "hazard_"
URGENT_PREFIX = "urgent_"


# Immediate hazards: flag -> patterns (matched case-insensitively)
IMMEDIATE_HAZARDS: Dict[str, List[str]] = {
    "hazard_gas": [
        r"\bgas (smell|leak|odou?r)",
        r"\bsmell(s|ing)? (of |like )?gas\b",
        r"\brotten eggs?\b",
    ],
    "hazard_electrical_arcing": [
        r"\barcing\b",
        r"\bsparks? (are )?(flying|coming)",
        r"\b(still|keeps?|constantly|actively) spark",
        r"\bexposed wir(e|es|ing)\b",
        r"\b(electrical|electric) shock\b",
        r"\bgot shocked\b",
    ],
    "hazard_structural_collapse": [
        r"\b(ceiling|roof|wall|floor|stairs?) (has |is )?(collaps\w*|caved|caving|fell|falling|coming down)",
        r"\bcollaps(ed|ing)\b",
        r"\bcaved in\b",
    ],
    "hazard_flooding_electrical": [
        r"\b(water|flood\w*|leak\w*)\b(\W+\w+){0,6}?\W+(outlets?|electrical|breaker|panel|wiring|wires|sockets?)\b",
        r"\b(outlets?|electrical|panel|wiring|wires|sockets?) (is |are )?(wet|soaked|under water|flooded)",
    ],
    "hazard_carbon_monoxide": [
        r"\bcarbon monoxide\b",
        r"\bco (alarm|detector)\b",
    ],
    "hazard_fire_smoke": [
        r"\bon fire\b",
        r"\bflames?\b",
        r"\bburning smell\b",
        r"\bsmell(s|ing)? (of |like )?(burning|smoke)\b",
        r"\bsmoke\b(?! (detector|alarm))",
    ],
}

# Serious but not immediately dangerous: raise urgency to "urgent"
URGENT_CONDITIONS: Dict[str, List[str]] = {
    "urgent_no_power": [r"\bno (power|electricity)\b", r"\bpower (is )?out\b"],
    "urgent_no_heat": [r"\bno heat\b", r"\bheat(er|ing)? (is )?(not working|broken|out)\b"],
    "urgent_no_cooling": [r"\bno (ac|a/c|air conditioning)\b", r"\b(ac|a/c) (is )?(not working|broken)\b"],
    "urgent_flooding": [r"\bflood\w*\b", r"\bwater (is )?gushing\b", r"\boverflow\w*\b"],
    "urgent_locked_out": [r"\blocked out\b", r"\bdoor (won'?t|will not) lock\b"],
}


EMERGENCY_MESSAGES: Dict[str, str] = {
    "hazard_gas": (
        "EMERGENCY - POSSIBLE GAS LEAK.\n"
        "Leave the building now. Do not use light switches, phones or anything "
        "that could spark while inside. Once outside, {contact} and the gas "
        "company emergency line. Do not go back in until responders say it is safe."
    ),
    "hazard_electrical_arcing": (
        "ELECTRICAL HAZARD.\n"
        "Stay away from the sparking equipment and do not touch it. If you can "
        "reach the circuit breaker safely, switch it off. Otherwise leave the "
        "area and {contact}."
    ),
    "hazard_structural_collapse": (
        "STRUCTURAL HAZARD.\n"
        "Move away from the damaged area immediately and keep others out. "
        "Leave the building if anything else is moving or cracking, then {contact}."
    ),
    "hazard_flooding_electrical": (
        "WATER AND ELECTRICITY HAZARD.\n"
        "Do not touch the water or anything electrical near it. Leave the room, "
        "switch off the breaker only if you can do it without standing in water, "
        "and {contact}."
    ),
    "hazard_carbon_monoxide": (
        "EMERGENCY - POSSIBLE CARBON MONOXIDE.\n"
        "Get everyone outside into fresh air now and leave doors open behind "
        "you. Once outside, {contact}. Do not go back in until responders say "
        "it is safe."
    ),
    "hazard_fire_smoke": (
        "EMERGENCY - FIRE OR SMOKE.\n"
        "Pull the nearest fire alarm, leave the building by the stairs and "
        "{contact}. Do not stop to collect belongings."
    ),
}

GENERIC_EMERGENCY_MESSAGE = (
    "This sounds like a safety emergency. Move to a safe place and {contact} now."
)


@dataclass
class SafetyAssessment:
    """Result of screening one message."""
    hazards: List[str] = field(default_factory=list)
    urgent_flags: List[str] = field(default_factory=list)

    @property
    def is_emergency(self) -> bool:
        return bool(self.hazards)

    @property
    def flags(self) -> List[str]:
        return self.hazards + self.urgent_flags


def _matches_any(text: str, patterns: List[str]) -> bool:
    return any(re.search(pattern, text, re.IGNORECASE) for pattern in patterns)


def assess_safety(text: str) -> SafetyAssessment:
    """Screen a message for immediate hazards and urgent conditions."""
    assessment = SafetyAssessment()
    if not text:
        return assessment

    for flag, patterns in IMMEDIATE_HAZARDS.items():
        if _matches_any(text, patterns):
            assessment.hazards.append(flag)

    for flag, patterns in URGENT_CONDITIONS.items():
        if _matches_any(text, patterns):
            assessment.urgent_flags.append(flag)

    return assessment


def is_immediate_hazard(flag: str) -> bool:
    return flag in IMMEDIATE_HAZARDS


def immediate_hazards(flags: List[str]) -> List[str]:
    return [flag for flag in flags if is_immediate_hazard(flag)]


def emergency_message(flags: List[str], contact: Optional[str] = None) -> str:
    """
    Fixed instruction text for the first recorded hazard.

    Always names the emergency contact, whatever else happened on the turn.
    """
    contact = contact or settings.EMERGENCY_CONTACT_TEXT
    for flag in flags:
        if flag in EMERGENCY_MESSAGES:
            return EMERGENCY_MESSAGES[flag].format(contact=contact)
    return GENERIC_EMERGENCY_MESSAGE.format(contact=contact)
