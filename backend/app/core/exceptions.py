"""
Error taxonomy for the triage and coordination pipeline.

Recoverable errors carry the data a caller needs to act on them
(missing fields, the conflicting appointment, the current holder).
"""
from typing import List, Optional


class TriageBotError(Exception):
    """Base class for all pipeline errors."""

    code = "error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


# ---------------------------------------------------------------------------
# Language model
# ---------------------------------------------------------------------------

class ExtractionTimeout(TriageBotError):
    """The language model did not answer within the caller's budget."""

    code = "extraction_timeout"


class LLMResponseError(TriageBotError):
    """The language model answered with something we could not parse."""

    code = "llm_response_error"

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.original_error = original_error
        super().__init__(message)


class DuplicateServiceUnavailable(TriageBotError):
    """Similarity scoring failed and the policy says not to fail open."""

    code = "duplicate_service_unavailable"


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------

class ConversationNotFound(TriageBotError):
    code = "conversation_not_found"


class MissingContactInfo(TriageBotError):
    """Name, email and phone are all required before a case can be created."""

    code = "missing_contact_info"

    def __init__(self, missing_fields: List[str]):
        self.missing_fields = missing_fields
        super().__init__(
            f"Contact information required before submitting: {', '.join(missing_fields)}"
        )


class IncompleteConversation(TriageBotError):
    code = "incomplete_conversation"

    def __init__(self, phase: str, missing_fields: Optional[List[str]] = None):
        self.phase = phase
        self.missing_fields = missing_fields or []
        super().__init__(f"Conversation cannot be completed from phase '{phase}'")


class TurnOutOfOrder(TriageBotError):
    """Another turn on the same conversation committed first."""

    code = "turn_out_of_order"


class ConversationClosed(TriageBotError):
    """The conversation already produced a case and takes no more turns."""

    code = "conversation_closed"


# ---------------------------------------------------------------------------
# Cases, assignment and scheduling
# ---------------------------------------------------------------------------

class CaseNotFound(TriageBotError):
    code = "case_not_found"


class InvalidCaseState(TriageBotError):
    code = "invalid_case_state"

    def __init__(self, case_id: str, status: str, action: str):
        self.case_id = case_id
        self.status = status
        super().__init__(f"Cannot {action} case {case_id} in status '{status}'")


class AlreadyAssigned(TriageBotError):
    """Another contractor already holds the case."""

    code = "already_assigned"

    def __init__(self, case_id: str, holder_id: Optional[str]):
        self.case_id = case_id
        self.holder_id = holder_id
        super().__init__(f"Case {case_id} is already assigned to another contractor")


class Conflict(TriageBotError):
    """Another actor won the race between our check and our commit.

    Callers retry against the next-ranked contractor.
    """

    code = "conflict"

    def __init__(self, case_id: str):
        self.case_id = case_id
        super().__init__(f"Case {case_id} changed while the request was in flight")


class ContractorIneligible(TriageBotError):
    """The contractor is unknown or fails the hard filters for this case."""

    code = "contractor_ineligible"

    def __init__(self, case_id: str, contractor_id: str, reason: str):
        self.case_id = case_id
        self.contractor_id = contractor_id
        self.reason = reason
        super().__init__(f"Contractor {contractor_id} cannot take case {case_id}: {reason}")


class ScheduleConflict(TriageBotError):
    code = "schedule_conflict"

    def __init__(self, contractor_id: str, conflicting_appointment_id: Optional[str] = None):
        self.contractor_id = contractor_id
        self.conflicting_appointment_id = conflicting_appointment_id
        super().__init__(
            f"Contractor {contractor_id} already has an appointment in that window"
        )


class SchedulingFailed(TriageBotError):
    """Scheduling was rolled back after a partial commit."""

    code = "scheduling_failed"

    def __init__(self, case_id: str, original_error: Optional[Exception] = None):
        self.case_id = case_id
        self.original_error = original_error
        super().__init__(f"Scheduling case {case_id} failed and was rolled back")


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class RecordNotFound(TriageBotError):
    code = "record_not_found"


class VersionConflict(TriageBotError):
    """Compare-and-swap lost: the stored version moved since it was read."""

    code = "version_conflict"

    def __init__(self, kind: str, record_id: str, expected_version: int):
        self.kind = kind
        self.record_id = record_id
        self.expected_version = expected_version
        super().__init__(
            f"{kind} {record_id} is no longer at version {expected_version}"
        )


class StoreUnavailable(TriageBotError):
    """The backing database kept failing after the configured retries."""

    code = "store_unavailable"


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class InvalidRequest(TriageBotError):
    """The caller sent something we cannot act on (past start time, empty reason)."""

    code = "invalid_request"
