"""
Next-Action Engine

Decides what the triage assistant does after each turn. Rules are evaluated
in priority order and the first one that applies wins:

1. immediate hazard recorded        -> escalate_immediate
2. building, room or category missing -> ask_followup (one slot at a time)
3. a photo would change routing     -> request_media (asked once)
4. a known low-risk fix exists      -> recommend_diy (offered once)
5. contact details missing          -> ask_followup for contact
6. otherwise                        -> complete_triage
"""
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from app.core.config import settings
from app.orchestration.triage.safety import emergency_message, immediate_hazards
from app.orchestration.triage.slots import CONTACT_SLOTS
from app.orchestration.triage.state import DIYAction, NextAction, TriageConversation


SLOT_QUESTIONS = {
    "building": "Which building are you in?",
    "room": "What's your room or unit number?",
    "category": (
        "Can you tell me a bit more about what's wrong? For example, is it a leak, "
        "an electrical problem, heating or cooling, an appliance, pests or a lock?"
    ),
}

CONTACT_LABELS = {"name": "full name", "email": "email address", "phone": "phone number"}

MEDIA_REQUEST = (
    "Could you attach a photo or short video of the problem? It helps us send "
    "the right person with the right parts."
)

# Descriptions where seeing the problem changes who gets sent
VISUAL_TRIGGERS = [
    r"\bdrip\w*", r"\bspark\w*", r"\bsmell\w*", r"\bstain\w*", r"\bmou?ld\w*",
    r"\bcrack\w*", r"\bbulg\w*", r"\bdiscolou?r\w*", r"\bpuddl\w*",
]

# Warnings attached to every self-help suggestion, whatever the fix
BASE_SAFETY_WARNINGS = [
    "Stop immediately if you see sparks, smell burning or feel heat.",
    "Never touch electrical equipment with wet hands or while standing in water.",
    "Do not open panels, covers or fixtures.",
    "If anything gets worse, leave the area and {contact}.",
]

MAX_DIY_INSTRUCTIONS = 5


@dataclass
class DIYFix:
    """Catalog entry for a known low-risk fix."""
    issue: str
    title: str
    category: str
    patterns: List[str]
    instructions: List[str]
    extra_warnings: List[str] = field(default_factory=list)
    escalate_if: str = "If this doesn't fix it, reply here and we'll send someone."

    def applies(self, category: Optional[str], text: str) -> bool:
        if category != self.category:
            return False
        return any(re.search(p, text, re.IGNORECASE) for p in self.patterns)

    def to_action(self) -> DIYAction:
        warnings = self.extra_warnings + [
            w.format(contact=settings.EMERGENCY_CONTACT_TEXT) for w in BASE_SAFETY_WARNINGS
        ]
        return DIYAction(
            issue=self.issue,
            title=self.title,
            instructions=self.instructions[:MAX_DIY_INSTRUCTIONS],
            safety_warnings=warnings,
            escalate_if=self.escalate_if,
        )


DIY_CATALOG: List[DIYFix] = [
    DIYFix(
        issue="tripped_gfci",
        title="Reset the GFCI outlet",
        category="Electrical",
        patterns=[r"\bgfci\b", r"outlets? (is |are )?(not working|dead|stopped working)", r"dead outlets?"],
        instructions=[
            "Find the outlet with TEST and RESET buttons, usually in the bathroom or kitchen.",
            "Press TEST until it clicks, then press RESET firmly.",
            "Plug a lamp or phone charger into the dead outlet to check it.",
            "If the RESET button will not stay in, leave it alone.",
        ],
        escalate_if="If the outlet trips again right away or will not reset, reply here.",
    ),
    DIYFix(
        issue="tripped_breaker",
        title="Check the circuit breaker",
        category="Electrical",
        patterns=[r"\bbreaker\b", r"lights? (went|are|is) out", r"half (of )?(my|the) room"],
        instructions=[
            "Unplug space heaters, hair dryers and other high-power devices in the room.",
            "Open your unit's breaker panel door (do not remove the cover).",
            "Look for a switch sitting in the middle or OFF position.",
            "Push it fully to OFF, then back to ON.",
        ],
        extra_warnings=["Only touch the breaker switches, never the wiring or the panel cover."],
        escalate_if="If the breaker trips again, leave it off and reply here.",
    ),
    DIYFix(
        issue="clogged_drain",
        title="Clear a slow or clogged drain",
        category="Plumbing",
        patterns=[r"\bclog\w*", r"slow drain", r"drain\w* (is |are )?slow", r"won'?t drain"],
        instructions=[
            "Remove the drain stopper and clear any hair or debris you can see.",
            "Run very hot tap water for a minute.",
            "Use a plunger with a few inches of water covering the drain.",
            "Run water again to check whether it drains normally.",
        ],
        extra_warnings=["Do not use chemical drain cleaners; they damage pipes and can burn skin."],
    ),
    DIYFix(
        issue="running_toilet",
        title="Stop a running toilet",
        category="Plumbing",
        patterns=[r"toilet (keeps |is |won'?t stop )?running", r"running toilet"],
        instructions=[
            "Lift the tank lid and set it somewhere safe.",
            "Check whether the flapper chain is tangled or caught under the flapper.",
            "Give it a little slack so the flapper seals, then flush once.",
            "If water is still running, turn the valve behind the toilet clockwise to shut it off.",
        ],
    ),
    DIYFix(
        issue="thermostat_settings",
        title="Check the thermostat",
        category="HVAC",
        patterns=[r"\bthermostat\b", r"too (hot|cold)", r"(room|it)'?s? (freezing|boiling)"],
        instructions=[
            "Make sure the thermostat is set to HEAT or COOL, not OFF.",
            "Set the temperature a few degrees past the current room temperature.",
            "Replace the thermostat batteries if the display is blank.",
            "Wait 15 minutes for the system to respond.",
        ],
    ),
]


@dataclass
class ActionDecision:
    """Outcome of evaluating the rules for one turn."""
    action: NextAction
    rule_id: str
    reasons: List[str] = field(default_factory=list)
    message: str = ""
    question: Optional[str] = None
    pending_slot: Optional[str] = None
    diy_action: Optional[DIYAction] = None
    media_request: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "rule_id": self.rule_id,
            "reasons": self.reasons,
            "pending_slot": self.pending_slot,
        }


@dataclass
class ActionRule:
    """A single next-action rule."""
    rule_id: str
    description: str
    action: NextAction

    def evaluate(self, conversation: TriageConversation) -> Tuple[bool, Optional[ActionDecision]]:
        """Evaluate if this rule applies. Returns (applies, decision)."""
        raise NotImplementedError


class ImmediateHazardRule(ActionRule):
    def __init__(self):
        super().__init__(
            rule_id="immediate_hazard",
            description="Immediate hazard recorded - escalate",
            action=NextAction.ESCALATE_IMMEDIATE,
        )

    def evaluate(self, conversation):
        hazards = immediate_hazards(conversation.slots.safety_flags)
        if not hazards:
            return False, None
        return True, ActionDecision(
            action=self.action,
            rule_id=self.rule_id,
            reasons=[f"Hazard: {h}" for h in hazards],
            message=emergency_message(hazards),
        )


class MissingRequiredSlotRule(ActionRule):
    def __init__(self):
        super().__init__(
            rule_id="missing_required_slot",
            description="Location or category missing - ask for it",
            action=NextAction.ASK_FOLLOWUP,
        )

    def evaluate(self, conversation):
        missing = conversation.slots.missing_required()
        if not missing:
            return False, None
        slot = missing[0]
        return True, ActionDecision(
            action=self.action,
            rule_id=self.rule_id,
            reasons=[f"Missing {name}" for name in missing],
            question=SLOT_QUESTIONS[slot],
            pending_slot=slot,
        )


class VisualDiagnosisRule(ActionRule):
    def __init__(self):
        super().__init__(
            rule_id="visual_diagnosis",
            description="A photo would change routing and none is attached",
            action=NextAction.REQUEST_MEDIA,
        )

    def evaluate(self, conversation):
        if conversation.media_refs or conversation.media_requested:
            return False, None
        text = conversation.requester_text
        triggers = [p for p in VISUAL_TRIGGERS if re.search(p, text, re.IGNORECASE)]
        if not triggers:
            return False, None
        return True, ActionDecision(
            action=self.action,
            rule_id=self.rule_id,
            reasons=["Visual symptoms described without media"],
            media_request=MEDIA_REQUEST,
        )


class KnownDIYFixRule(ActionRule):
    def __init__(self, catalog: Optional[List[DIYFix]] = None):
        super().__init__(
            rule_id="known_diy_fix",
            description="Known low-risk fix for this category",
            action=NextAction.RECOMMEND_DIY,
        )
        self.catalog = catalog if catalog is not None else DIY_CATALOG

    def evaluate(self, conversation):
        if conversation.diy_offered:
            return False, None
        category = conversation.slots.value("category")
        text = conversation.requester_text
        for fix in self.catalog:
            if fix.applies(category, text):
                return True, ActionDecision(
                    action=self.action,
                    rule_id=self.rule_id,
                    reasons=[f"DIY fix available: {fix.issue}"],
                    diy_action=fix.to_action(),
                )
        return False, None


class MissingContactRule(ActionRule):
    def __init__(self):
        super().__init__(
            rule_id="missing_contact",
            description="Contact details missing - ask before filing",
            action=NextAction.ASK_FOLLOWUP,
        )

    def evaluate(self, conversation):
        missing = conversation.slots.missing_contact()
        if not missing:
            return False, None
        labels = [CONTACT_LABELS[name] for name in missing]
        if len(labels) > 1:
            wanted = ", ".join(labels[:-1]) + " and " + labels[-1]
        else:
            wanted = labels[0]
        return True, ActionDecision(
            action=self.action,
            rule_id=self.rule_id,
            reasons=[f"Missing contact {name}" for name in missing],
            question=f"To file your request, could you share your {wanted}?",
            pending_slot=missing[0],
        )


class CompleteTriageRule(ActionRule):
    def __init__(self):
        super().__init__(
            rule_id="complete",
            description="Everything needed is present",
            action=NextAction.COMPLETE_TRIAGE,
        )

    def evaluate(self, conversation):
        slots = conversation.slots
        summary = (
            f"Thanks, I have everything I need: {slots.value('category')} issue in "
            f"{slots.value('building')} room {slots.value('room')}. "
            "I'll submit your request now."
        )
        return True, ActionDecision(
            action=self.action,
            rule_id=self.rule_id,
            reasons=["All required and contact slots present"],
            message=summary,
        )


class NextActionEngine:
    """
    Deterministic next-action policy.

    Evaluates rules in order; the first rule that applies decides the turn.
    """

    RULE_VERSION = "v1.0"

    def __init__(self, rules: Optional[List[ActionRule]] = None):
        self.rules: List[ActionRule] = rules or [
            ImmediateHazardRule(),
            MissingRequiredSlotRule(),
            VisualDiagnosisRule(),
            KnownDIYFixRule(),
            MissingContactRule(),
            CompleteTriageRule(),
        ]

    def decide(self, conversation: TriageConversation) -> ActionDecision:
        for rule in self.rules:
            applies, decision = rule.evaluate(conversation)
            if applies:
                return decision
        # CompleteTriageRule always applies; only reachable with a custom rule list
        return ActionDecision(action=NextAction.COMPLETE_TRIAGE, rule_id="default")

    def get_rule_descriptions(self) -> List[Dict[str, Any]]:
        return [
            {"rule_id": rule.rule_id, "description": rule.description, "action": rule.action.value}
            for rule in self.rules
        ]


# Singleton instance
_next_action_engine: Optional[NextActionEngine] = None


def get_next_action_engine() -> NextActionEngine:
    """Get or create the next-action engine singleton."""
    global _next_action_engine
    if _next_action_engine is None:
        _next_action_engine = NextActionEngine()
    return _next_action_engine
