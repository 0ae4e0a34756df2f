"""
Appointment slot suggestions
"""
from app.services.scheduling.engine import (
    AVAILABILITY_PATTERNS,
    SlotFinder,
    SlotSuggestion,
    get_slot_finder,
)

__all__ = [
    "AVAILABILITY_PATTERNS",
    "SlotFinder",
    "SlotSuggestion",
    "get_slot_finder",
]
