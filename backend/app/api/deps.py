"""
API dependencies

Identity arrives already authenticated from the gateway in headers; this
layer only reads it. Callers without a user id get an anonymous pseudo-id.
"""
import uuid
from typing import Optional

from fastapi import Header, HTTPException, status

from app.core.exceptions import (
    AlreadyAssigned,
    CaseNotFound,
    Conflict,
    ContractorIneligible,
    ConversationClosed,
    ConversationNotFound,
    DuplicateServiceUnavailable,
    IncompleteConversation,
    InvalidCaseState,
    InvalidRequest,
    MissingContactInfo,
    ScheduleConflict,
    StoreUnavailable,
    TriageBotError,
    TurnOutOfOrder,
)
from app.core.logging import logger
from app.services.intake import IntakeService, get_intake_service

ANONYMOUS_PREFIX = "anon-"

GENERIC_ERROR_MESSAGE = "Something went wrong on our side. Please try again."

NOT_FOUND_ERRORS = (ConversationNotFound, CaseNotFound)
CONFLICT_ERRORS = (Conflict, AlreadyAssigned, ScheduleConflict, TurnOutOfOrder, ConversationClosed, InvalidCaseState)
USER_CORRECTABLE_ERRORS = (MissingContactInfo, IncompleteConversation, InvalidRequest)


async def get_org_id(x_org_id: Optional[str] = Header(default=None)) -> str:
    """Organization of the caller; every operation is scoped to it."""
    if not x_org_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Org-Id header is required",
        )
    return x_org_id


async def get_requester_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Authenticated user id, or a fresh anonymous pseudo-id."""
    if x_user_id:
        return x_user_id
    return f"{ANONYMOUS_PREFIX}{uuid.uuid4()}"


async def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Authenticated user id; contractor and manager actions require one."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Id header is required",
        )
    return x_user_id


def get_intake() -> IntakeService:
    return get_intake_service()


def to_http_exception(error: Exception) -> HTTPException:
    """Map pipeline errors to HTTP responses without leaking internals."""
    if isinstance(error, NOT_FOUND_ERRORS):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=error.message)

    if isinstance(error, ContractorIneligible):
        detail = {"code": error.code, "message": error.message, "reason": error.reason}
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)

    if isinstance(error, CONFLICT_ERRORS):
        detail = {"code": error.code, "message": error.message}
        if isinstance(error, ScheduleConflict) and error.conflicting_appointment_id:
            detail["conflicting_appointment_id"] = error.conflicting_appointment_id
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)

    if isinstance(error, USER_CORRECTABLE_ERRORS):
        detail = {"code": error.code, "message": error.message}
        missing = getattr(error, "missing_fields", None)
        if missing:
            detail["missing_fields"] = missing
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)

    if isinstance(error, (DuplicateServiceUnavailable, StoreUnavailable)):
        logger.error(f"Dependency unavailable ({error.code}): {error.message}")
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=GENERIC_ERROR_MESSAGE)

    if isinstance(error, TriageBotError):
        logger.error(f"Unhandled pipeline error {error.code}: {error.message}")
    else:
        logger.exception(f"Unexpected error: {error}")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=GENERIC_ERROR_MESSAGE)


__all__ = [
    "get_org_id",
    "get_requester_id",
    "get_user_id",
    "get_intake",
    "to_http_exception",
]
