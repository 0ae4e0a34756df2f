"""
Tests for the slot model and its merge rules.
"""

from app.db.records import CasePriority
from app.orchestration.triage.slots import (
    SlotSet,
    SlotSource,
    SlotValue,
    UrgencyLevel,
    priority_for_urgency,
)


def slot(value, confidence, source=SlotSource.LLM):
    return SlotValue(value=value, confidence=confidence, source=source)


class TestSlotMerge:
    """Test confidence-aware merging."""

    def test_empty_slot_takes_any_value(self):
        slots = SlotSet()
        changed = slots.merge(SlotSet(building=slot("Baker House", 0.2, SlotSource.KEYWORD)))
        assert changed == ["building"]
        assert slots.value("building") == "Baker House"

    def test_lower_confidence_does_not_overwrite(self):
        slots = SlotSet(room=slot("305", 0.9))
        changed = slots.merge(SlotSet(room=slot("30", 0.4, SlotSource.KEYWORD)))
        assert changed == []
        assert slots.value("room") == "305"

    def test_equal_confidence_does_not_overwrite(self):
        slots = SlotSet(category=slot("Plumbing", 0.8))
        slots.merge(SlotSet(category=slot("General", 0.8)))
        assert slots.value("category") == "Plumbing"

    def test_higher_confidence_overwrites(self):
        slots = SlotSet(room=slot("30", 0.4, SlotSource.KEYWORD))
        slots.merge(SlotSet(room=slot("305", 0.9)))
        assert slots.room.value == "305"
        assert slots.room.source == SlotSource.LLM

    def test_blank_incoming_value_is_ignored(self):
        slots = SlotSet(building=slot("Baker House", 0.6))
        slots.merge(SlotSet(building=slot("", 1.0)))
        assert slots.value("building") == "Baker House"

    def test_urgency_escalates_even_with_lower_confidence(self):
        slots = SlotSet(urgency_level=slot("normal", 0.9))
        slots.merge(SlotSet(urgency_level=slot("urgent", 0.3, SlotSource.KEYWORD)))
        assert slots.urgency == UrgencyLevel.URGENT

    def test_urgency_never_downgrades(self):
        slots = SlotSet(urgency_level=slot("emergency", 0.5, SlotSource.SAFETY))
        changed = slots.merge(SlotSet(urgency_level=slot("low", 1.0)))
        assert changed == []
        assert slots.urgency == UrgencyLevel.EMERGENCY

    def test_safety_flags_are_append_only(self):
        slots = SlotSet(safety_flags=["hazard_gas"])
        slots.merge(SlotSet(safety_flags=["urgent_no_heat", "hazard_gas"]))
        assert slots.safety_flags == ["hazard_gas", "urgent_no_heat"]
        slots.merge(SlotSet())
        assert "hazard_gas" in slots.safety_flags


class TestSlotQueries:
    """Test missing-slot helpers and the urgency scale."""

    def test_missing_required_in_ask_order(self):
        slots = SlotSet(category=slot("Plumbing", 0.9))
        assert slots.missing_required() == ["building", "room"]

    def test_missing_contact(self):
        slots = SlotSet(email=slot("sam@mit.edu", 0.9))
        assert slots.missing_contact() == ["name", "phone"]

    def test_default_urgency_is_normal(self):
        assert SlotSet().urgency == UrgencyLevel.NORMAL

    def test_urgency_to_priority_mapping(self):
        assert priority_for_urgency("low") == CasePriority.LOW
        assert priority_for_urgency("normal") == CasePriority.MEDIUM
        assert priority_for_urgency("urgent") == CasePriority.HIGH
        assert priority_for_urgency(UrgencyLevel.EMERGENCY) == CasePriority.CRITICAL
