"""
Triage API routes
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.api.deps import get_intake, get_org_id, get_requester_id, to_http_exception
from app.core import logger
from app.orchestration.triage.state import TriagePhase, TurnResult
from app.services.intake import CompletionResult, IntakeService

router = APIRouter()


# Request/Response schemas
class ContactInfo(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class StartTriageRequest(BaseModel):
    text: str = Field(min_length=1)
    contact: Optional[ContactInfo] = None
    media_refs: List[str] = Field(default_factory=list)


class StartTriageResponse(TurnResult):
    requester_id: str


class ContinueTriageRequest(BaseModel):
    text: str = Field(min_length=1)
    media_refs: List[str] = Field(default_factory=list)


class CompleteTriageRequest(BaseModel):
    force: bool = False


class ConversationResponse(BaseModel):
    conversation_id: str
    requester_id: str
    phase: TriagePhase
    urgency: str
    slots: Dict[str, Any]
    safety_flags: List[str]
    turn_count: int
    is_complete: bool
    case_id: Optional[str] = None


@router.post("/start", response_model=StartTriageResponse)
async def start_triage(
    request: StartTriageRequest,
    org_id: str = Depends(get_org_id),
    requester_id: str = Depends(get_requester_id),
    intake: IntakeService = Depends(get_intake),
):
    """Open a triage conversation from the requester's first message."""
    contact = request.contact.model_dump(exclude_none=True) if request.contact else None
    try:
        result = await intake.start_triage(org_id, requester_id, request.text, contact, request.media_refs)
    except Exception as e:
        raise to_http_exception(e)

    logger.info(f"Triage started: {result.conversation_id} ({result.next_action.value})")
    return StartTriageResponse(requester_id=requester_id, **result.model_dump())


@router.post("/{conversation_id}/messages", response_model=TurnResult)
async def continue_triage(
    conversation_id: str,
    request: ContinueTriageRequest,
    org_id: str = Depends(get_org_id),
    intake: IntakeService = Depends(get_intake),
):
    """Send the next requester message."""
    try:
        return await intake.continue_triage(org_id, conversation_id, request.text, request.media_refs)
    except Exception as e:
        raise to_http_exception(e)


@router.post("/{conversation_id}/complete", response_model=CompletionResult)
async def complete_triage(
    conversation_id: str,
    request: Optional[CompleteTriageRequest] = None,
    org_id: str = Depends(get_org_id),
    intake: IntakeService = Depends(get_intake),
):
    """File the conversation as a case."""
    force = request.force if request else False
    try:
        return await intake.complete_triage(org_id, conversation_id, force=force)
    except Exception as e:
        raise to_http_exception(e)


@router.get("/{conversation_id}", response_model=ConversationResponse)
async def get_conversation(
    conversation_id: str,
    org_id: str = Depends(get_org_id),
    intake: IntakeService = Depends(get_intake),
):
    """Current state of a triage conversation."""
    try:
        conversation = await intake.conversations.get(org_id, conversation_id)
    except Exception as e:
        raise to_http_exception(e)

    slots = conversation.slots
    return ConversationResponse(
        conversation_id=conversation.id,
        requester_id=conversation.requester_id,
        phase=conversation.phase,
        urgency=slots.urgency.value,
        slots={name: slots.value(name) for name in slots.slot_names()},
        safety_flags=list(slots.safety_flags),
        turn_count=conversation.turn_count,
        is_complete=conversation.is_complete,
        case_id=conversation.case_id,
    )
