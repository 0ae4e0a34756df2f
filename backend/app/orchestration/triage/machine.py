"""
Triage Conversation Engine

Drives the multi-turn intake dialogue:

    Started -> GatheringInfo -> {AwaitingMedia, RecommendingDIY} -> Complete

with a side transition from any phase to Emergency as soon as an immediate
hazard is recorded. Each turn screens the text for hazards, extracts slots
(model first, keywords as fallback), merges them without regressing, asks the
next-action engine what to do and persists the conversation.

Turns on one conversation are strictly ordered: a per-conversation lock
serialises them in this process and the versioned save rejects a turn that
lost a race with another process.
"""
from typing import Dict, List, Optional

from app.core.exceptions import (
    ConversationClosed,
    ConversationNotFound,
    IncompleteConversation,
    MissingContactInfo,
    RecordNotFound,
    TurnOutOfOrder,
    VersionConflict,
)
from app.core.failure_policy import Operation, get_failure_policy
from app.core.locks import KeyedLocks
from app.core.logging import get_logger, log_audit_event
from app.db.records import CaseDraft, utcnow
from app.orchestration.triage.safety import assess_safety, immediate_hazards
from app.orchestration.triage.slots import (
    SlotSet,
    SlotSource,
    SlotValue,
    UrgencyLevel,
    priority_for_urgency,
)
from app.orchestration.triage.state import (
    NextAction,
    TriageConversation,
    TriagePhase,
    TurnResult,
)
from app.services.llm.extraction_service import SlotExtractionService
from app.services.record_store import RecordStore, get_record_store
from app.services.triage.engine import ActionDecision, NextActionEngine, get_next_action_engine

logger = get_logger(__name__)


ACTION_PHASES = {
    NextAction.ESCALATE_IMMEDIATE: TriagePhase.EMERGENCY,
    NextAction.ASK_FOLLOWUP: TriagePhase.GATHERING_INFO,
    NextAction.REQUEST_MEDIA: TriagePhase.AWAITING_MEDIA,
    NextAction.RECOMMEND_DIY: TriagePhase.RECOMMENDING_DIY,
    NextAction.COMPLETE_TRIAGE: TriagePhase.COMPLETE,
}


class TriageConversationEngine:
    """Owns TriageConversation records; nothing else writes them."""

    def __init__(
        self,
        store: Optional[RecordStore] = None,
        extraction_service: Optional[SlotExtractionService] = None,
        action_engine: Optional[NextActionEngine] = None,
    ):
        self.store = store or get_record_store()
        self.extraction_service = extraction_service or SlotExtractionService()
        self.action_engine = action_engine or get_next_action_engine()
        self._locks = KeyedLocks()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def start(
        self,
        org_id: str,
        requester_id: str,
        initial_text: str,
        contact: Optional[Dict[str, str]] = None,
        media_refs: Optional[List[str]] = None,
    ) -> TurnResult:
        """Open a conversation from the requester's first message."""
        conversation = TriageConversation(org_id=org_id, requester_id=requester_id)
        if contact:
            self._seed_contact(conversation.slots, contact)

        result = await self._process_turn(conversation, initial_text, media_refs or [])
        conversation = await self.store.create(conversation)

        logger.info(
            f"Triage conversation {conversation.id} started: phase={conversation.phase.value} "
            f"next_action={result.next_action.value}"
        )
        return result

    async def continue_(
        self,
        org_id: str,
        conversation_id: str,
        text: str,
        media_refs: Optional[List[str]] = None,
    ) -> TurnResult:
        """Process the next requester message."""
        async with self._locks.hold((org_id, conversation_id)):
            conversation = await self.get(org_id, conversation_id)
            if conversation.is_complete:
                raise ConversationClosed(
                    f"Conversation {conversation_id} already filed case {conversation.case_id}"
                )

            expected_version = conversation.version
            result = await self._process_turn(conversation, text, media_refs or [])
            try:
                await self.store.update(conversation, expected_version)
            except VersionConflict:
                raise TurnOutOfOrder(
                    f"Conversation {conversation_id} was updated by another turn; resend the message"
                )
            return result

    async def complete(self, org_id: str, conversation_id: str, force: bool = False) -> CaseDraft:
        """
        Turn the conversation into a case draft.

        Contact details are checked first; missing ones block completion as
        long as the failure policy keeps contact validation fail-closed. Otherwise the conversation must have reached Complete, have
        every required slot, or be force-completed by the caller.
        """
        conversation = await self.get(org_id, conversation_id)
        slots = conversation.slots

        missing_contact = slots.missing_contact()
        if missing_contact:
            if not get_failure_policy().fails_open(Operation.CONTACT_VALIDATION):
                raise MissingContactInfo(missing_contact)
            logger.warning(
                f"Completing conversation {conversation_id} without {', '.join(missing_contact)}"
            )

        missing_required = slots.missing_required()
        completable = force or conversation.phase == TriagePhase.COMPLETE or not missing_required
        if not completable:
            raise IncompleteConversation(conversation.phase.value, missing_required)

        return self._build_draft(conversation)

    async def mark_filed(self, org_id: str, conversation_id: str, case_id: str) -> TriageConversation:
        """Record the case created from this conversation; later turns are rejected."""
        async with self._locks.hold((org_id, conversation_id)):
            conversation = await self.get(org_id, conversation_id)
            if conversation.case_id == case_id:
                return conversation
            expected_version = conversation.version
            conversation.is_complete = True
            conversation.case_id = case_id
            conversation.completed_at = utcnow()
            if conversation.phase != TriagePhase.EMERGENCY:
                conversation.phase = TriagePhase.COMPLETE
            return await self.store.update(conversation, expected_version)

    async def get(self, org_id: str, conversation_id: str) -> TriageConversation:
        try:
            return await self.store.get(TriageConversation, org_id, conversation_id)
        except RecordNotFound:
            raise ConversationNotFound(f"Conversation {conversation_id} not found")

    # ------------------------------------------------------------------
    # Turn processing
    # ------------------------------------------------------------------

    async def _process_turn(
        self,
        conversation: TriageConversation,
        text: str,
        media_refs: List[str],
    ) -> TurnResult:
        conversation.turn_count += 1
        conversation.add_message("requester", text, media_refs)
        conversation.media_refs.extend(ref for ref in media_refs if ref not in conversation.media_refs)

        safety = assess_safety(text)
        new_flags = conversation.slots.add_safety_flags(safety.flags)

        used_fallback = False
        acknowledgement = ""
        if safety.is_emergency or conversation.phase == TriagePhase.EMERGENCY:
            # Do not wait on the model when someone may be in danger
            update = self.extraction_service.keyword_extractor.extract(text)
        else:
            outcome = await self.extraction_service.extract(
                text, conversation.slots, conversation.history()
            )
            update, acknowledgement, used_fallback = (
                outcome.slots, outcome.acknowledgement, outcome.used_fallback
            )

        changed = conversation.slots.merge(update)
        self._apply_safety_urgency(conversation.slots, safety.urgent_flags)

        was_emergency = conversation.phase == TriagePhase.EMERGENCY
        decision = self.action_engine.decide(conversation)
        self._advance_phase(conversation, decision)

        message = self._compose_message(decision, acknowledgement)
        conversation.add_message("assistant", message)

        if new_flags and immediate_hazards(new_flags):
            log_audit_event(
                event_type="triage_emergency_detected",
                actor_id=conversation.requester_id,
                actor_type="requester",
                details={
                    "conversation_id": conversation.id,
                    "org_id": conversation.org_id,
                    "hazards": immediate_hazards(new_flags),
                },
            )

        logger.debug(
            f"Turn {conversation.turn_count} of {conversation.id}: changed={changed} "
            f"rule={decision.rule_id} fallback={used_fallback}"
        )

        return TurnResult(
            conversation_id=conversation.id,
            message=message,
            phase=conversation.phase,
            urgency=conversation.slots.urgency.value,
            safety_flags=list(conversation.slots.safety_flags),
            next_action=decision.action,
            next_question=decision.question,
            diy_action=decision.diy_action,
            media_request=decision.media_request,
            used_fallback=used_fallback,
            escalated=not was_emergency and conversation.phase == TriagePhase.EMERGENCY,
        )

    @staticmethod
    def _apply_safety_urgency(slots: SlotSet, urgent_flags: List[str]) -> None:
        """Safety screening sets an urgency floor; merge keeps it from ever dropping."""
        floor = None
        if immediate_hazards(slots.safety_flags):
            floor = UrgencyLevel.EMERGENCY
        elif urgent_flags:
            floor = UrgencyLevel.URGENT
        if floor is not None:
            slots.merge(
                SlotSet(urgency_level=SlotValue(value=floor.value, confidence=1.0, source=SlotSource.SAFETY))
            )

    @staticmethod
    def _advance_phase(conversation: TriageConversation, decision: ActionDecision) -> None:
        if conversation.phase == TriagePhase.EMERGENCY:
            # Terminal for the automated flow
            conversation.last_action = NextAction.ESCALATE_IMMEDIATE
            return

        conversation.phase = ACTION_PHASES[decision.action]
        conversation.last_action = decision.action
        conversation.pending_slot = decision.pending_slot

        if decision.action == NextAction.ESCALATE_IMMEDIATE:
            conversation.escalated_at = utcnow()
        elif decision.action == NextAction.REQUEST_MEDIA:
            conversation.media_requested = True
        elif decision.action == NextAction.RECOMMEND_DIY:
            conversation.diy_offered = True

    @staticmethod
    def _compose_message(decision: ActionDecision, acknowledgement: str) -> str:
        if decision.action == NextAction.ESCALATE_IMMEDIATE:
            # Fixed text; nothing the model said is mixed in
            return decision.message

        if decision.action == NextAction.RECOMMEND_DIY and decision.diy_action:
            body = (
                f"This might be something you can fix safely yourself: "
                f"{decision.diy_action.title.lower()}. {decision.diy_action.escalate_if}"
            )
        elif decision.action == NextAction.REQUEST_MEDIA:
            body = decision.media_request or ""
        elif decision.action == NextAction.ASK_FOLLOWUP:
            body = decision.question or ""
        else:
            body = decision.message

        if acknowledgement:
            return f"{acknowledgement.strip()} {body}".strip()
        return body

    @staticmethod
    def _seed_contact(slots: SlotSet, contact: Dict[str, str]) -> None:
        for name in ("name", "email", "phone"):
            value = contact.get(name)
            if value:
                setattr(slots, name, SlotValue(value=value, confidence=1.0, source=SlotSource.REQUESTER))

    @staticmethod
    def _build_draft(conversation: TriageConversation) -> CaseDraft:
        slots = conversation.slots
        category = slots.value("category")
        building = slots.value("building")
        room = slots.value("room")

        initial = conversation.initial_request
        title_text = initial if len(initial) <= 60 else initial[:57].rstrip() + "..."
        title = f"{category or 'Maintenance'}: {title_text}"

        description = slots.value("description") or initial
        details = []
        if building:
            details.append(f"Location: {building}" + (f", Room {room}" if room else ""))
        if slots.is_filled("timeline"):
            details.append(f"Timeline: {slots.value('timeline')}")
        if slots.is_filled("severity"):
            details.append(f"Severity: {slots.value('severity')}")
        if details:
            description = description + "\n\n" + "\n".join(details)

        hazards = immediate_hazards(slots.safety_flags)
        return CaseDraft(
            org_id=conversation.org_id,
            title=title,
            description=description,
            category=category,
            priority=priority_for_urgency(slots.urgency),
            building=building,
            room=room,
            unit_id=slots.value("unit_id"),
            safety_risk=bool(hazards),
            safety_flags=list(slots.safety_flags),
            media_refs=list(conversation.media_refs),
            conversation_id=conversation.id,
            reporter_id=conversation.requester_id,
            reporter_name=slots.value("name"),
            reporter_email=slots.value("email"),
            reporter_phone=slots.value("phone"),
        )
