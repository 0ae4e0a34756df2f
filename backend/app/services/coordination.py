"""
Case Acceptance & Scheduling Coordinator

The only writer of a case's assignment and of contractor calendars.

    Unassigned -> Accepted(contractor) -> Scheduled(appointment) -> In Progress -> Resolved
    Accepted/Scheduled -> Unassigned on decline

There are no transactions. Every write is a compare-and-swap against the
version read just before it, and scheduling undoes its own partial writes
when a later step fails.
"""
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from pydantic import BaseModel

from app.core.config import settings
from app.core.exceptions import (
    AlreadyAssigned,
    CaseNotFound,
    Conflict,
    ContractorIneligible,
    InvalidCaseState,
    InvalidRequest,
    RecordNotFound,
    ScheduleConflict,
    SchedulingFailed,
    VersionConflict,
)
from app.core.logging import get_logger, log_audit_event
from app.db.records import (
    ACCEPTABLE_CASE_STATUSES,
    INACTIVE_CASE_STATUSES,
    ActorType,
    Appointment,
    AppointmentStatus,
    BookedWindow,
    Case,
    CaseStatus,
    ContractorCalendar,
    Vendor,
    as_utc,
    utcnow,
)
from app.services.matching import ContractorMatcher, get_contractor_matcher
from app.services.notifications import (
    NotificationDispatcher,
    NotificationEvent,
    get_notification_dispatcher,
)
from app.services.record_store import RecordStore, get_record_store
from app.services.scheduling import SlotFinder, SlotSuggestion, get_slot_finder

logger = get_logger(__name__)

# Statuses in which the holder may repeat an accept without side effects
HELD_CASE_STATUSES = ACCEPTABLE_CASE_STATUSES | {CaseStatus.SCHEDULED, CaseStatus.IN_PROGRESS}

# Statuses a contractor may still decline from
DECLINABLE_CASE_STATUSES = {CaseStatus.IN_REVIEW, CaseStatus.SCHEDULED}

CALENDAR_RETRIES = 3


class AcceptanceResult(BaseModel):
    ok: bool = True
    case_id: str
    contractor_id: str
    status: CaseStatus
    already_accepted: bool = False


class DeclineResult(BaseModel):
    ok: bool = True
    case_id: str
    status: CaseStatus
    escalated: bool = False


class CaseCoordinator:
    """Race-safe acceptance, scheduling and assignment changes."""

    def __init__(
        self,
        store: Optional[RecordStore] = None,
        notifier: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = utcnow,
        matcher: Optional[ContractorMatcher] = None,
        slot_finder: Optional[SlotFinder] = None,
    ):
        self.store = store or get_record_store()
        self.notifier = notifier or get_notification_dispatcher()
        self.matcher = matcher or get_contractor_matcher()
        self.slot_finder = slot_finder or get_slot_finder()
        self.clock = clock

    # ------------------------------------------------------------------
    # Acceptance
    # ------------------------------------------------------------------

    async def accept(self, org_id: str, case_id: str, contractor_id: str) -> AcceptanceResult:
        """
        First accept wins.

        ContractorIneligible when the contractor fails the matcher's hard
        filters; AlreadyAssigned when another contractor holds the case when we
        read it; Conflict when someone else writes between our check and our
        commit.
        """
        case = await self.get_case(org_id, case_id)

        if case.assigned_contractor_id == contractor_id and case.status in HELD_CASE_STATUSES:
            logger.info(f"Contractor {contractor_id} re-accepted case {case_id}; no change")
            return AcceptanceResult(
                case_id=case_id,
                contractor_id=contractor_id,
                status=case.status,
                already_accepted=True,
            )
        if case.assigned_contractor_id:
            raise AlreadyAssigned(case_id, case.assigned_contractor_id)
        if case.status not in ACCEPTABLE_CASE_STATUSES:
            raise InvalidCaseState(case_id, case.status.value, "accept")
        await self._check_eligible(case, contractor_id)

        expected_version = case.version

        # Final re-check immediately before the write
        current = await self.get_case(org_id, case_id)
        if current.version != expected_version or current.assigned_contractor_id:
            raise Conflict(case_id)

        current.assigned_contractor_id = contractor_id
        current.status = CaseStatus.IN_REVIEW
        current.accepted_at = self.clock()
        current.needs_manual_assignment = False
        current.add_audit("case_accepted", contractor_id, ActorType.CONTRACTOR)
        saved = await self._save_case(current, expected_version)

        log_audit_event(
            event_type="case_accepted",
            actor_id=contractor_id,
            actor_type="contractor",
            details={"case_id": case_id, "org_id": org_id},
        )
        await self.notifier.case_accepted(saved, contractor_id)

        return AcceptanceResult(case_id=case_id, contractor_id=contractor_id, status=saved.status)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def schedule(
        self,
        org_id: str,
        case_id: str,
        contractor_id: str,
        start: datetime,
        duration_minutes: int,
    ) -> Appointment:
        """
        Book [start, start + duration) on the contractor's calendar, create the
        appointment and move the case to Scheduled.

        An overlapping booking fails with ScheduleConflict before anything is
        written. A failure after the calendar write is compensated and
        surfaces as SchedulingFailed.
        """
        start = as_utc(start)
        if start <= self.clock():
            raise InvalidRequest("Appointment start must be in the future")
        if duration_minutes <= 0:
            raise InvalidRequest("Appointment duration must be positive")
        end = start + timedelta(minutes=duration_minutes)

        case = await self.get_case(org_id, case_id)
        if case.assigned_contractor_id != contractor_id:
            if case.assigned_contractor_id:
                raise AlreadyAssigned(case_id, case.assigned_contractor_id)
            raise InvalidCaseState(case_id, case.status.value, "schedule an unaccepted")
        if case.status != CaseStatus.IN_REVIEW:
            raise InvalidCaseState(case_id, case.status.value, "schedule")
        case_version = case.version

        appointment = Appointment(
            org_id=org_id,
            case_id=case_id,
            contractor_id=contractor_id,
            start=start,
            end=end,
        )
        await self._reserve(org_id, contractor_id, appointment)

        try:
            appointment = await self.store.create(appointment)
        except Exception as e:
            logger.error(f"Appointment creation failed for case {case_id}: {e}")
            await self._release(org_id, contractor_id, appointment.id)
            raise SchedulingFailed(case_id, e) from e

        case.status = CaseStatus.SCHEDULED
        case.appointment_id = appointment.id
        case.scheduled_at = self.clock()
        case.add_audit(
            "case_scheduled",
            contractor_id,
            ActorType.CONTRACTOR,
            appointment_id=appointment.id,
            start=start.isoformat(),
            end=end.isoformat(),
        )
        try:
            saved = await self.store.update(case, case_version)
        except Exception as e:
            logger.error(f"Case transition to Scheduled failed for case {case_id}: {e}")
            await self._cancel_appointment(appointment)
            await self._release(org_id, contractor_id, appointment.id)
            raise SchedulingFailed(case_id, e) from e

        log_audit_event(
            event_type="case_scheduled",
            actor_id=contractor_id,
            actor_type="contractor",
            details={
                "case_id": case_id,
                "org_id": org_id,
                "appointment_id": appointment.id,
                "start": start.isoformat(),
                "end": end.isoformat(),
            },
        )
        await self.notifier.case_scheduled(saved, contractor_id, start.isoformat(), end.isoformat())
        return appointment

    async def suggest_slots(
        self,
        org_id: str,
        case_id: str,
        contractor_id: str,
        duration_minutes: int,
        horizon_days: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[SlotSuggestion]:
        """
        Free windows on the contractor's calendar for this case, best first.

        Read-only: nothing is reserved until schedule() is called.
        """
        if horizon_days is None:
            horizon_days = settings.SLOT_HORIZON_DAYS
        if limit is None:
            limit = settings.SLOT_SUGGESTION_LIMIT
        if duration_minutes <= 0:
            raise InvalidRequest("Appointment duration must be positive")
        if not 1 <= horizon_days <= settings.SLOT_MAX_HORIZON_DAYS:
            raise InvalidRequest(
                f"Look-ahead must be between 1 and {settings.SLOT_MAX_HORIZON_DAYS} days"
            )
        if limit < 1:
            raise InvalidRequest("At least one suggestion must be requested")

        case = await self.get_case(org_id, case_id)
        vendor = await self.store.find(Vendor, org_id, contractor_id)
        if vendor is None:
            raise ContractorIneligible(case_id, contractor_id, "unknown contractor")
        calendar = await self._get_calendar(org_id, contractor_id)

        return self.slot_finder.suggest(
            vendor,
            calendar,
            case.priority,
            duration_minutes,
            now=self.clock(),
            horizon_days=horizon_days,
            limit=limit,
        )

    async def _reserve(self, org_id: str, contractor_id: str, appointment: Appointment) -> None:
        """
        CAS the window onto the calendar; re-check overlap after a lost race.

        ScheduleConflict names the overlapping booking. Conflict means the
        calendar kept changing under us without ever overlapping.
        """
        for _ in range(CALENDAR_RETRIES):
            calendar = await self._get_calendar(org_id, contractor_id)
            overlap = calendar.find_overlap(appointment.start, appointment.end)
            if overlap is not None:
                raise ScheduleConflict(contractor_id, overlap.appointment_id)

            expected_version = calendar.version
            calendar.windows.append(
                BookedWindow(
                    appointment_id=appointment.id,
                    case_id=appointment.case_id,
                    start=appointment.start,
                    end=appointment.end,
                )
            )
            try:
                if expected_version == 0:
                    await self.store.create(calendar)
                else:
                    await self.store.update(calendar, expected_version)
                return
            except VersionConflict:
                logger.debug(f"Calendar for contractor {contractor_id} moved; re-checking")

        # Still no overlap, just too much contention on the calendar
        logger.warning(
            f"Calendar for contractor {contractor_id} kept moving; "
            f"giving up after {CALENDAR_RETRIES} tries"
        )
        raise Conflict(appointment.case_id)

    async def _release(self, org_id: str, contractor_id: str, appointment_id: str) -> None:
        for _ in range(CALENDAR_RETRIES):
            calendar = await self._get_calendar(org_id, contractor_id)
            if not any(w.appointment_id == appointment_id for w in calendar.windows):
                return
            expected_version = calendar.version
            calendar.release(appointment_id)
            try:
                await self.store.update(calendar, expected_version)
                return
            except VersionConflict:
                continue
        logger.error(
            f"Could not release appointment {appointment_id} from calendar of contractor {contractor_id}"
        )

    async def _cancel_appointment(self, appointment: Appointment) -> None:
        try:
            current = await self.store.get(Appointment, appointment.org_id, appointment.id)
            current.status = AppointmentStatus.CANCELLED
            await self.store.update(current, current.version)
        except (RecordNotFound, VersionConflict) as e:
            logger.error(f"Could not cancel appointment {appointment.id}: {e}")

    async def _get_calendar(self, org_id: str, contractor_id: str) -> ContractorCalendar:
        calendar = await self.store.find(ContractorCalendar, org_id, contractor_id)
        if calendar is None:
            calendar = ContractorCalendar(id=contractor_id, org_id=org_id)
        return calendar

    # ------------------------------------------------------------------
    # Decline and override
    # ------------------------------------------------------------------

    async def decline(self, org_id: str, case_id: str, contractor_id: str, reason: str) -> DeclineResult:
        """Hand the case back. Critical cases escalate with the reason attached."""
        if not reason or not reason.strip():
            raise InvalidRequest("A reason is required to decline a case")

        case = await self.get_case(org_id, case_id)
        if case.assigned_contractor_id != contractor_id:
            raise InvalidCaseState(case_id, case.status.value, f"decline as contractor {contractor_id}")
        if case.status not in DECLINABLE_CASE_STATUSES:
            raise InvalidCaseState(case_id, case.status.value, "decline")

        expected_version = case.version
        appointment_id = case.appointment_id

        case.assigned_contractor_id = None
        case.appointment_id = None
        case.accepted_at = None
        case.scheduled_at = None
        case.status = CaseStatus.NEW
        case.routing_notes.append(f"Declined by contractor {contractor_id}: {reason}")
        case.add_audit("case_declined", contractor_id, ActorType.CONTRACTOR, reason=reason)
        saved = await self._save_case(case, expected_version)

        if appointment_id:
            appointment = await self.store.find(Appointment, org_id, appointment_id)
            if appointment is not None:
                await self._cancel_appointment(appointment)
            await self._release(org_id, contractor_id, appointment_id)

        log_audit_event(
            event_type="case_declined",
            actor_id=contractor_id,
            actor_type="contractor",
            details={"case_id": case_id, "org_id": org_id, "reason": reason},
        )
        notification = await self.notifier.case_declined(saved, contractor_id, reason)

        return DeclineResult(
            case_id=case_id,
            status=saved.status,
            escalated=notification.event == NotificationEvent.DECLINE_ESCALATION,
        )

    async def override_assignment(
        self,
        org_id: str,
        case_id: str,
        contractor_id: str,
        actor_id: str,
        reason: str,
    ) -> Case:
        """
        Human override of the matcher's choice; the reason goes into the audit trail.

        The manager's judgement replaces the hard filters, but the contractor
        must exist in the organization.
        """
        if not reason or not reason.strip():
            raise InvalidRequest("A reason is required to override an assignment")

        case = await self.get_case(org_id, case_id)
        if case.status in INACTIVE_CASE_STATUSES or case.status == CaseStatus.IN_PROGRESS:
            raise InvalidCaseState(case_id, case.status.value, "reassign")
        if await self.store.find(Vendor, org_id, contractor_id) is None:
            raise ContractorIneligible(case_id, contractor_id, "unknown contractor")

        expected_version = case.version
        previous_contractor_id = case.assigned_contractor_id
        stale_appointment_id = None
        if case.appointment_id and previous_contractor_id != contractor_id:
            stale_appointment_id = case.appointment_id
            case.appointment_id = None
            case.scheduled_at = None

        case.assigned_contractor_id = contractor_id
        if stale_appointment_id or case.status == CaseStatus.NEW:
            case.status = CaseStatus.IN_REVIEW
        case.accepted_at = self.clock()
        case.needs_manual_assignment = False
        case.add_audit(
            "assignment_overridden",
            actor_id,
            ActorType.MANAGER,
            previous_contractor_id=previous_contractor_id,
            contractor_id=contractor_id,
            reason=reason,
        )
        saved = await self._save_case(case, expected_version)

        if stale_appointment_id and previous_contractor_id:
            appointment = await self.store.find(Appointment, org_id, stale_appointment_id)
            if appointment is not None:
                await self._cancel_appointment(appointment)
            await self._release(org_id, previous_contractor_id, stale_appointment_id)

        log_audit_event(
            event_type="assignment_overridden",
            actor_id=actor_id,
            actor_type="manager",
            details={
                "case_id": case_id,
                "org_id": org_id,
                "previous_contractor_id": previous_contractor_id,
                "contractor_id": contractor_id,
                "reason": reason,
            },
        )
        await self.notifier.case_accepted(saved, contractor_id)
        return saved

    # ------------------------------------------------------------------
    # Work progress
    # ------------------------------------------------------------------

    async def start_work(self, org_id: str, case_id: str, contractor_id: str) -> Case:
        case = await self._held_case(org_id, case_id, contractor_id, CaseStatus.SCHEDULED, "start work on")
        expected_version = case.version
        case.status = CaseStatus.IN_PROGRESS
        case.add_audit("work_started", contractor_id, ActorType.CONTRACTOR)
        return await self._save_case(case, expected_version)

    async def resolve(
        self,
        org_id: str,
        case_id: str,
        contractor_id: str,
        notes: Optional[str] = None,
    ) -> Case:
        case = await self._held_case(org_id, case_id, contractor_id, CaseStatus.IN_PROGRESS, "resolve")
        expected_version = case.version
        case.status = CaseStatus.RESOLVED
        case.resolved_at = self.clock()
        case.add_audit("case_resolved", contractor_id, ActorType.CONTRACTOR, notes=notes)
        saved = await self._save_case(case, expected_version)

        if saved.appointment_id:
            appointment = await self.store.find(Appointment, org_id, saved.appointment_id)
            if appointment is not None and appointment.status == AppointmentStatus.SCHEDULED:
                appointment.status = AppointmentStatus.COMPLETED
                await self.store.update(appointment, appointment.version)

        log_audit_event(
            event_type="case_resolved",
            actor_id=contractor_id,
            actor_type="contractor",
            details={"case_id": case_id, "org_id": org_id},
        )
        return saved

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def get_case(self, org_id: str, case_id: str) -> Case:
        try:
            return await self.store.get(Case, org_id, case_id)
        except RecordNotFound:
            raise CaseNotFound(f"Case {case_id} not found")

    async def _check_eligible(self, case: Case, contractor_id: str) -> Vendor:
        vendor = await self.store.find(Vendor, case.org_id, contractor_id)
        if vendor is None:
            raise ContractorIneligible(case.id, contractor_id, "unknown contractor")
        excluded, reason = self.matcher.exclusion_reason(case, vendor)
        if excluded:
            raise ContractorIneligible(case.id, contractor_id, reason)
        return vendor

    async def _held_case(
        self,
        org_id: str,
        case_id: str,
        contractor_id: str,
        status: CaseStatus,
        action: str,
    ) -> Case:
        case = await self.get_case(org_id, case_id)
        if case.assigned_contractor_id != contractor_id or case.status != status:
            raise InvalidCaseState(case_id, case.status.value, action)
        return case

    async def _save_case(self, case: Case, expected_version: int) -> Case:
        try:
            return await self.store.update(case, expected_version)
        except VersionConflict:
            raise Conflict(case.id)


_case_coordinator: Optional[CaseCoordinator] = None


def get_case_coordinator() -> CaseCoordinator:
    """Get or create the case coordinator singleton."""
    global _case_coordinator
    if _case_coordinator is None:
        _case_coordinator = CaseCoordinator()
    return _case_coordinator
