"""
Case API routes - duplicate analysis, contractor ranking, acceptance and scheduling
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.api.deps import get_intake, get_org_id, get_user_id, to_http_exception
from app.db.records import Appointment, Case, CaseDraft, CasePriority, DuplicateAnalysisResult
from app.services.coordination import AcceptanceResult, DeclineResult
from app.services.intake import IntakeService
from app.services.matching import RankedCandidate
from app.services.scheduling import SlotSuggestion

router = APIRouter()


# Request schemas
class DraftRequest(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    category: Optional[str] = None
    priority: CasePriority = CasePriority.MEDIUM
    building: Optional[str] = None
    room: Optional[str] = None
    unit_id: Optional[str] = None


class ScheduleRequest(BaseModel):
    start: datetime
    duration_minutes: int = Field(gt=0)


class DeclineRequest(BaseModel):
    reason: str = Field(min_length=1)


class OverrideRequest(BaseModel):
    contractor_id: str
    reason: str = Field(min_length=1)


class ResolveRequest(BaseModel):
    notes: Optional[str] = None


@router.post("/duplicates/analyze", response_model=DuplicateAnalysisResult)
async def analyze_duplicates(
    request: DraftRequest,
    org_id: str = Depends(get_org_id),
    intake: IntakeService = Depends(get_intake),
):
    """Check a draft against the organization's recent open cases."""
    draft = CaseDraft(org_id=org_id, **request.model_dump())
    try:
        return await intake.analyze_duplicates(org_id, draft)
    except Exception as e:
        raise to_http_exception(e)


@router.get("/{case_id}", response_model=Case)
async def get_case(
    case_id: str,
    org_id: str = Depends(get_org_id),
    intake: IntakeService = Depends(get_intake),
):
    try:
        return await intake.get_case(org_id, case_id)
    except Exception as e:
        raise to_http_exception(e)


@router.get("/{case_id}/contractors", response_model=List[RankedCandidate])
async def rank_contractors(
    case_id: str,
    org_id: str = Depends(get_org_id),
    intake: IntakeService = Depends(get_intake),
):
    """Eligible contractors for the case, best match first."""
    try:
        return await intake.rank_contractors(org_id, case_id)
    except Exception as e:
        raise to_http_exception(e)


@router.post("/{case_id}/accept", response_model=AcceptanceResult)
async def accept_case(
    case_id: str,
    org_id: str = Depends(get_org_id),
    contractor_id: str = Depends(get_user_id),
    intake: IntakeService = Depends(get_intake),
):
    """Accept the case as the calling contractor. 409 means try the next candidate."""
    try:
        return await intake.accept_case(org_id, case_id, contractor_id)
    except Exception as e:
        raise to_http_exception(e)


@router.get("/{case_id}/slots", response_model=List[SlotSuggestion])
async def suggest_slots(
    case_id: str,
    contractor_id: str,
    duration_minutes: int = Query(default=60, gt=0),
    horizon_days: Optional[int] = Query(default=None, ge=1),
    org_id: str = Depends(get_org_id),
    intake: IntakeService = Depends(get_intake),
):
    """Free appointment windows for a contractor, best first."""
    try:
        return await intake.suggest_slots(org_id, case_id, contractor_id, duration_minutes, horizon_days)
    except Exception as e:
        raise to_http_exception(e)


@router.post("/{case_id}/schedule", response_model=Appointment)
async def schedule_case(
    case_id: str,
    request: ScheduleRequest,
    org_id: str = Depends(get_org_id),
    contractor_id: str = Depends(get_user_id),
    intake: IntakeService = Depends(get_intake),
):
    try:
        return await intake.schedule_case(
            org_id, case_id, contractor_id, request.start, request.duration_minutes
        )
    except Exception as e:
        raise to_http_exception(e)


@router.post("/{case_id}/decline", response_model=DeclineResult)
async def decline_case(
    case_id: str,
    request: DeclineRequest,
    org_id: str = Depends(get_org_id),
    contractor_id: str = Depends(get_user_id),
    intake: IntakeService = Depends(get_intake),
):
    try:
        return await intake.decline_case(org_id, case_id, contractor_id, request.reason)
    except Exception as e:
        raise to_http_exception(e)


@router.post("/{case_id}/assignment", response_model=Case)
async def override_assignment(
    case_id: str,
    request: OverrideRequest,
    org_id: str = Depends(get_org_id),
    actor_id: str = Depends(get_user_id),
    intake: IntakeService = Depends(get_intake),
):
    """Manager override of the recommended contractor."""
    try:
        return await intake.override_assignment(
            org_id, case_id, request.contractor_id, actor_id, request.reason
        )
    except Exception as e:
        raise to_http_exception(e)


@router.post("/{case_id}/start", response_model=Case)
async def start_work(
    case_id: str,
    org_id: str = Depends(get_org_id),
    contractor_id: str = Depends(get_user_id),
    intake: IntakeService = Depends(get_intake),
):
    try:
        return await intake.start_work(org_id, case_id, contractor_id)
    except Exception as e:
        raise to_http_exception(e)


@router.post("/{case_id}/resolve", response_model=Case)
async def resolve_case(
    case_id: str,
    request: Optional[ResolveRequest] = None,
    org_id: str = Depends(get_org_id),
    contractor_id: str = Depends(get_user_id),
    intake: IntakeService = Depends(get_intake),
):
    notes = request.notes if request else None
    try:
        return await intake.resolve_case(org_id, case_id, contractor_id, notes)
    except Exception as e:
        raise to_http_exception(e)
