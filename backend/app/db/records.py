"""
Domain records persisted through the record store.

Every record is scoped to an organization and carries a version used for
compare-and-swap updates.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Record(BaseModel):
    """Base class for anything the record store can hold."""

    kind: ClassVar[str] = "record"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    org_id: str
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Cases
# ---------------------------------------------------------------------------

class CasePriority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class CaseStatus(str, Enum):
    NEW = "New"
    IN_REVIEW = "In Review"
    SCHEDULED = "Scheduled"
    IN_PROGRESS = "In Progress"
    RESOLVED = "Resolved"
    CLOSED = "Closed"
    MERGED = "Merged"


# Statuses that no longer take part in duplicate detection
INACTIVE_CASE_STATUSES = {CaseStatus.RESOLVED, CaseStatus.CLOSED, CaseStatus.MERGED}

# Statuses a contractor may accept from
ACCEPTABLE_CASE_STATUSES = {CaseStatus.NEW, CaseStatus.IN_REVIEW}


class ActorType(str, Enum):
    AI = "ai"
    REQUESTER = "requester"
    CONTRACTOR = "contractor"
    MANAGER = "manager"
    SYSTEM = "system"


class CaseAuditEntry(BaseModel):
    """One entry of a case's embedded audit trail."""

    event_type: str
    actor_id: Optional[str] = None
    actor_type: ActorType = ActorType.SYSTEM
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class SimilarityMatch(BaseModel):
    case_id: str
    title: str = ""
    category: Optional[str] = None
    similarity_score: float = Field(ge=0.0, le=1.0)
    match_reason: str = ""
    is_duplicate: bool = False


class DuplicateAnalysisResult(BaseModel):
    is_unique: bool
    duplicate_of_id: Optional[str] = None
    similar_cases: List[SimilarityMatch] = Field(default_factory=list)
    analysis_reason: str = ""
    confidence: float = Field(ge=0.0, le=1.0)
    analysis_completed_at: datetime = Field(default_factory=utcnow)


class Case(Record):
    """A maintenance request."""

    kind: ClassVar[str] = "case"

    title: str
    description: str = ""
    category: Optional[str] = None
    priority: CasePriority = CasePriority.MEDIUM
    status: CaseStatus = CaseStatus.NEW

    building: Optional[str] = None
    room: Optional[str] = None
    unit_id: Optional[str] = None

    assigned_contractor_id: Optional[str] = None
    appointment_id: Optional[str] = None
    needs_manual_assignment: bool = False
    recommended_contractor_ids: List[str] = Field(default_factory=list)

    safety_risk: bool = False
    safety_flags: List[str] = Field(default_factory=list)
    media_refs: List[str] = Field(default_factory=list)

    duplicate_analysis: Optional[DuplicateAnalysisResult] = None
    duplicate_of_id: Optional[str] = None
    routing_notes: List[str] = Field(default_factory=list)

    conversation_id: Optional[str] = None
    reporter_id: Optional[str] = None
    reporter_name: Optional[str] = None
    reporter_email: Optional[str] = None
    reporter_phone: Optional[str] = None

    accepted_at: Optional[datetime] = None
    scheduled_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    audit_trail: List[CaseAuditEntry] = Field(default_factory=list)

    def add_audit(
        self,
        event_type: str,
        actor_id: Optional[str] = None,
        actor_type: ActorType = ActorType.SYSTEM,
        **details: Any,
    ) -> None:
        self.audit_trail.append(
            CaseAuditEntry(
                event_type=event_type,
                actor_id=actor_id,
                actor_type=actor_type,
                details=details,
            )
        )


class CaseDraft(BaseModel):
    """A case as produced by triage, before duplicate analysis and routing."""

    org_id: str
    title: str
    description: str = ""
    category: Optional[str] = None
    priority: CasePriority = CasePriority.MEDIUM
    building: Optional[str] = None
    room: Optional[str] = None
    unit_id: Optional[str] = None
    safety_risk: bool = False
    safety_flags: List[str] = Field(default_factory=list)
    media_refs: List[str] = Field(default_factory=list)
    conversation_id: Optional[str] = None
    reporter_id: Optional[str] = None
    reporter_name: Optional[str] = None
    reporter_email: Optional[str] = None
    reporter_phone: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    def to_case(self, **overrides: Any) -> Case:
        data = self.model_dump()
        data.update(overrides)
        return Case(**data)


# ---------------------------------------------------------------------------
# Contractors and appointments
# ---------------------------------------------------------------------------

class Vendor(Record):
    """A contractor profile; the matcher reads it, never writes it."""

    kind: ClassVar[str] = "vendor"

    name: str
    category: str
    specializations: List[str] = Field(default_factory=list)
    availability_pattern: str = "weekdays"
    current_workload: int = 0
    max_jobs_per_day: int = 5
    response_time_hours: float = 24.0
    rating: float = 0.0
    emergency_available: bool = False
    is_active: bool = True


class AppointmentStatus(str, Enum):
    SCHEDULED = "Scheduled"
    CANCELLED = "Cancelled"
    COMPLETED = "Completed"


class Appointment(Record):
    kind: ClassVar[str] = "appointment"

    case_id: str
    contractor_id: str
    start: datetime
    end: datetime
    status: AppointmentStatus = AppointmentStatus.SCHEDULED


class BookedWindow(BaseModel):
    appointment_id: str
    case_id: str
    start: datetime
    end: datetime

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Half-open [start, end) intersection."""
        return start < self.end and end > self.start


class ContractorCalendar(Record):
    """Booked windows for one contractor; the record id is the contractor id."""

    kind: ClassVar[str] = "contractor_calendar"

    windows: List[BookedWindow] = Field(default_factory=list)

    def find_overlap(self, start: datetime, end: datetime) -> Optional[BookedWindow]:
        for window in self.windows:
            if window.overlaps(start, end):
                return window
        return None

    def release(self, appointment_id: str) -> None:
        self.windows = [w for w in self.windows if w.appointment_id != appointment_id]
