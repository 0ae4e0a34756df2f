"""
Per-operation failure policy.

Each pipeline operation that depends on an unreliable collaborator is either
fail-open (degrade to a safe default and keep going) or fail-closed (surface
the error). The table lives here so it can be audited and overridden in one
place instead of being scattered across try/except blocks.
"""
from enum import Enum
from typing import Dict, Optional

from app.core.config import settings


class FailureMode(str, Enum):
    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


class Operation(str, Enum):
    SLOT_EXTRACTION = "slot_extraction"
    DUPLICATE_DETECTION = "duplicate_detection"
    CONTACT_VALIDATION = "contact_validation"
    NOTIFICATION_DELIVERY = "notification_delivery"


DEFAULT_POLICIES: Dict[Operation, FailureMode] = {
    Operation.SLOT_EXTRACTION: FailureMode.FAIL_OPEN,  # keyword fallback
    Operation.DUPLICATE_DETECTION: FailureMode.FAIL_OPEN,  # treat as unique
    Operation.CONTACT_VALIDATION: FailureMode.FAIL_CLOSED,
    Operation.NOTIFICATION_DELIVERY: FailureMode.FAIL_OPEN,
}


class FailurePolicy:
    """Resolved policy table: defaults plus configured overrides."""

    def __init__(self, overrides: Optional[Dict[str, str]] = None):
        self._modes: Dict[Operation, FailureMode] = dict(DEFAULT_POLICIES)
        for operation, mode in (overrides or {}).items():
            self._modes[Operation(operation)] = FailureMode(mode)
        if self._modes[Operation.CONTACT_VALIDATION] != FailureMode.FAIL_CLOSED:
            raise ValueError("contact_validation cannot be configured to fail open")

    def mode_for(self, operation: Operation) -> FailureMode:
        return self._modes[operation]

    def fails_open(self, operation: Operation) -> bool:
        return self.mode_for(operation) == FailureMode.FAIL_OPEN

    def describe(self) -> Dict[str, str]:
        return {op.value: mode.value for op, mode in self._modes.items()}


_failure_policy: Optional[FailurePolicy] = None


def get_failure_policy() -> FailurePolicy:
    """Get or create the failure policy singleton."""
    global _failure_policy
    if _failure_policy is None:
        _failure_policy = FailurePolicy(settings.FAILURE_POLICY_OVERRIDES)
    return _failure_policy
