"""
Intake Service

Front door of the pipeline:

    triage turns -> completed draft -> duplicate analysis -> contractor ranking
    -> case creation -> notifications

plus pass-throughs to the coordinator for acceptance and scheduling. Every
operation takes the caller's org id explicitly.
"""
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from app.core.exceptions import CaseNotFound, RecordNotFound
from app.core.locks import KeyedLocks
from app.core.logging import get_logger, log_audit_event
from app.db.records import (
    ActorType,
    Appointment,
    Case,
    CaseDraft,
    CaseStatus,
    DuplicateAnalysisResult,
    Vendor,
)
from app.orchestration.triage.machine import TriageConversationEngine
from app.orchestration.triage.safety import emergency_message, immediate_hazards
from app.orchestration.triage.state import TurnResult
from app.services.coordination import (
    AcceptanceResult,
    CaseCoordinator,
    DeclineResult,
)
from app.services.duplicate_detection import DuplicateDetector, get_duplicate_detector
from app.services.matching import ContractorMatcher, RankedCandidate, get_contractor_matcher
from app.services.notifications import NotificationDispatcher, get_notification_dispatcher
from app.services.record_store import RecordStore, get_record_store
from app.services.scheduling import SlotSuggestion

logger = get_logger(__name__)

NO_CONTRACTOR_NOTE = "No eligible contractor found - manual assignment required"


class CompletionResult(BaseModel):
    case_id: str
    status: CaseStatus
    is_duplicate: bool = False
    duplicate_of_id: Optional[str] = None
    needs_manual_assignment: bool = False
    recommended_contractors: List[RankedCandidate] = Field(default_factory=list)
    safety_risk: bool = False


class IntakeService:
    """Wires the triage engine, duplicate detector, matcher and coordinator together."""

    def __init__(
        self,
        store: Optional[RecordStore] = None,
        conversations: Optional[TriageConversationEngine] = None,
        detector: Optional[DuplicateDetector] = None,
        matcher: Optional[ContractorMatcher] = None,
        coordinator: Optional[CaseCoordinator] = None,
        notifier: Optional[NotificationDispatcher] = None,
    ):
        self.store = store or get_record_store()
        self.notifier = notifier or get_notification_dispatcher()
        self.conversations = conversations or TriageConversationEngine(store=self.store)
        self.detector = detector or get_duplicate_detector()
        self.matcher = matcher or get_contractor_matcher()
        self.coordinator = coordinator or CaseCoordinator(store=self.store, notifier=self.notifier)
        self._locks = KeyedLocks()

    # ------------------------------------------------------------------
    # Triage
    # ------------------------------------------------------------------

    async def start_triage(
        self,
        org_id: str,
        requester_id: str,
        initial_text: str,
        contact: Optional[Dict[str, str]] = None,
        media_refs: Optional[List[str]] = None,
    ) -> TurnResult:
        result = await self.conversations.start(org_id, requester_id, initial_text, contact, media_refs)
        await self._escalate_if_needed(org_id, requester_id, result)
        return result

    async def continue_triage(
        self,
        org_id: str,
        conversation_id: str,
        text: str,
        media_refs: Optional[List[str]] = None,
    ) -> TurnResult:
        result = await self.conversations.continue_(org_id, conversation_id, text, media_refs)
        if result.escalated:
            conversation = await self.conversations.get(org_id, conversation_id)
            await self._escalate_if_needed(org_id, conversation.requester_id, result)
        return result

    async def complete_triage(
        self,
        org_id: str,
        conversation_id: str,
        force: bool = False,
    ) -> CompletionResult:
        """
        File the conversation as a case.

        Completing an already-filed conversation returns the existing case
        instead of creating a second one.
        """
        async with self._locks.hold((org_id, conversation_id)):
            conversation = await self.conversations.get(org_id, conversation_id)
            if conversation.case_id:
                case = await self.get_case(org_id, conversation.case_id)
                return self._completion(case, [])

            draft = await self.conversations.complete(org_id, conversation_id, force=force)
            case, ranked = await self._route_draft(org_id, draft)
            case = await self.store.create(case)
            await self.conversations.mark_filed(org_id, conversation_id, case.id)

        log_audit_event(
            event_type="case_created",
            actor_id=conversation.requester_id,
            actor_type="requester",
            details={
                "case_id": case.id,
                "org_id": org_id,
                "conversation_id": conversation_id,
                "status": case.status.value,
                "priority": case.priority.value,
            },
        )
        await self.notifier.case_created(case)
        if case.safety_risk:
            await self.notifier.emergency(
                org_id,
                conversation.requester_id,
                case.safety_flags,
                emergency_message(case.safety_flags),
                conversation_id=conversation_id,
                case=case,
            )

        return self._completion(case, ranked)

    async def _route_draft(self, org_id: str, draft: CaseDraft) -> Tuple[Case, List[RankedCandidate]]:
        analysis = await self.analyze_duplicates(org_id, draft)
        case = draft.to_case(duplicate_analysis=analysis)
        case.add_audit(
            "case_created",
            draft.reporter_id,
            ActorType.REQUESTER,
            conversation_id=draft.conversation_id,
        )

        if case.safety_risk:
            hazards = ", ".join(immediate_hazards(case.safety_flags))
            case.routing_notes.append(f"Immediate hazard reported ({hazards}); requester told to get to safety")

        if not analysis.is_unique and analysis.duplicate_of_id:
            recommendation = self.detector.recommend_merge(
                analysis.duplicate_of_id, case.id, analysis.confidence
            )
            case.duplicate_of_id = analysis.duplicate_of_id
            case.status = CaseStatus.MERGED if recommendation.should_merge else CaseStatus.IN_REVIEW
            case.routing_notes.append(recommendation.reasoning)
            case.add_audit(
                "duplicate_detected",
                None,
                ActorType.AI,
                duplicate_of_id=analysis.duplicate_of_id,
                similarity_score=recommendation.similarity_score,
                should_merge=recommendation.should_merge,
            )
            return case, []

        vendors = await self.store.list(Vendor, org_id)
        ranked = self.matcher.rank(case, vendors)
        if ranked:
            case.recommended_contractor_ids = [r.contractor_id for r in ranked]
            top = ranked[0]
            case.routing_notes.append(
                f"Recommended contractor: {top.name} (score {top.match_score:g}) - {top.reasoning}"
            )
        else:
            case.needs_manual_assignment = True
            case.routing_notes.append(NO_CONTRACTOR_NOTE)
        return case, ranked

    async def _escalate_if_needed(self, org_id: str, requester_id: str, result: TurnResult) -> None:
        if not result.escalated:
            return
        await self.notifier.emergency(
            org_id,
            requester_id,
            result.safety_flags,
            result.message,
            conversation_id=result.conversation_id,
        )

    # ------------------------------------------------------------------
    # Analysis and ranking
    # ------------------------------------------------------------------

    async def analyze_duplicates(self, org_id: str, draft: CaseDraft) -> DuplicateAnalysisResult:
        pool = await self.store.list(Case, org_id)
        return await self.detector.analyze(draft, pool)

    async def rank_contractors(self, org_id: str, case_id: str) -> List[RankedCandidate]:
        case = await self.get_case(org_id, case_id)
        vendors = await self.store.list(Vendor, org_id)
        return self.matcher.rank(case, vendors)

    # ------------------------------------------------------------------
    # Coordination
    # ------------------------------------------------------------------

    async def accept_case(self, org_id: str, case_id: str, contractor_id: str) -> AcceptanceResult:
        return await self.coordinator.accept(org_id, case_id, contractor_id)

    async def schedule_case(
        self,
        org_id: str,
        case_id: str,
        contractor_id: str,
        start: datetime,
        duration_minutes: int,
    ) -> Appointment:
        return await self.coordinator.schedule(org_id, case_id, contractor_id, start, duration_minutes)

    async def suggest_slots(
        self,
        org_id: str,
        case_id: str,
        contractor_id: str,
        duration_minutes: int,
        horizon_days: Optional[int] = None,
    ) -> List[SlotSuggestion]:
        return await self.coordinator.suggest_slots(
            org_id, case_id, contractor_id, duration_minutes, horizon_days=horizon_days
        )

    async def decline_case(self, org_id: str, case_id: str, contractor_id: str, reason: str) -> DeclineResult:
        return await self.coordinator.decline(org_id, case_id, contractor_id, reason)

    async def override_assignment(
        self,
        org_id: str,
        case_id: str,
        contractor_id: str,
        actor_id: str,
        reason: str,
    ) -> Case:
        return await self.coordinator.override_assignment(org_id, case_id, contractor_id, actor_id, reason)

    async def start_work(self, org_id: str, case_id: str, contractor_id: str) -> Case:
        return await self.coordinator.start_work(org_id, case_id, contractor_id)

    async def resolve_case(
        self,
        org_id: str,
        case_id: str,
        contractor_id: str,
        notes: Optional[str] = None,
    ) -> Case:
        return await self.coordinator.resolve(org_id, case_id, contractor_id, notes)

    async def get_case(self, org_id: str, case_id: str) -> Case:
        try:
            return await self.store.get(Case, org_id, case_id)
        except RecordNotFound:
            raise CaseNotFound(f"Case {case_id} not found")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _completion(case: Case, ranked: List[RankedCandidate]) -> CompletionResult:
        return CompletionResult(
            case_id=case.id,
            status=case.status,
            is_duplicate=case.duplicate_of_id is not None,
            duplicate_of_id=case.duplicate_of_id,
            needs_manual_assignment=case.needs_manual_assignment,
            recommended_contractors=ranked,
            safety_risk=case.safety_risk,
        )


_intake_service: Optional[IntakeService] = None


def get_intake_service() -> IntakeService:
    """Get or create the intake service singleton."""
    global _intake_service
    if _intake_service is None:
        _intake_service = IntakeService()
    return _intake_service


def set_intake_service(service: Optional[IntakeService]) -> None:
    """Replace the singleton (tests and alternative wiring)."""
    global _intake_service
    _intake_service = service
