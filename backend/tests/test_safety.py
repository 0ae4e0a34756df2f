"""
Tests for safety screening.
"""

import pytest

from app.core.config import settings
from app.orchestration.triage.safety import (
    assess_safety,
    emergency_message,
    immediate_hazards,
)


class TestHazardDetection:
    """Test immediate hazard and urgent condition patterns."""

    @pytest.mark.parametrize(
        "text,flag",
        [
            ("I smell gas in the kitchen", "hazard_gas"),
            ("The outlet is arcing and smoking", "hazard_electrical_arcing"),
            ("Part of the ceiling collapsed in my room", "hazard_structural_collapse"),
            ("Water is leaking onto the outlet", "hazard_flooding_electrical"),
            ("My carbon monoxide detector keeps beeping", "hazard_carbon_monoxide"),
            ("There is smoke coming from the dryer", "hazard_fire_smoke"),
        ],
    )
    def test_immediate_hazards(self, text, flag):
        assessment = assess_safety(text)
        assert flag in assessment.hazards
        assert assessment.is_emergency is True

    def test_smoke_detector_is_not_a_fire(self):
        assessment = assess_safety("The smoke detector battery is chirping")
        assert assessment.hazards == []

    def test_ordinary_leak_is_not_an_emergency(self):
        assessment = assess_safety("My sink is leaking in Baker House 305")
        assert assessment.is_emergency is False
        assert assessment.flags == []

    def test_urgent_conditions(self):
        assessment = assess_safety("We have no heat and it's freezing")
        assert assessment.urgent_flags == ["urgent_no_heat"]
        assert assessment.is_emergency is False

    def test_immediate_hazards_filters_flags(self):
        flags = ["urgent_no_heat", "hazard_gas", "reported_mold"]
        assert immediate_hazards(flags) == ["hazard_gas"]


class TestEmergencyMessage:
    """Emergency text is fixed and always names the contact."""

    def test_gas_message(self):
        message = emergency_message(["hazard_gas"])
        assert "GAS LEAK" in message
        assert settings.EMERGENCY_CONTACT_TEXT in message

    def test_unknown_flag_falls_back_to_generic(self):
        message = emergency_message(["hazard_something_new"])
        assert settings.EMERGENCY_CONTACT_TEXT in message

    def test_custom_contact(self):
        message = emergency_message(["hazard_fire_smoke"], contact="call x3-1212")
        assert "call x3-1212" in message
