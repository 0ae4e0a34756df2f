"""
Tests for slot extraction: keyword fallback, model replies and timeouts.
"""

import asyncio

import pytest
from pydantic import BaseModel

from app.core.exceptions import ExtractionTimeout, LLMResponseError
from app.core.failure_policy import FailurePolicy
from app.orchestration.triage.slots import SlotSource, UrgencyLevel
from app.orchestration.utils import extract_json_from_llm_response
from app.services.llm.client import LLMService
from app.services.llm.extraction_service import KeywordSlotExtractor, SlotExtractionService

from conftest import SlowChatModel, failing_llm, scripted_llm


class AnswerReply(BaseModel):
    answer: str = ""


class TestKeywordExtractor:
    """Test the deterministic fallback extractor."""

    def test_sink_leak_in_baker_house(self):
        slots = KeywordSlotExtractor().extract("My sink is leaking in Baker House 305")
        assert slots.value("building") == "Baker House"
        assert slots.value("room") == "305"
        assert slots.value("category") == "Plumbing"
        assert slots.urgency == UrgencyLevel.NORMAL
        assert slots.building.source == SlotSource.KEYWORD

    def test_labelled_room_is_more_confident_than_bare_number(self):
        extractor = KeywordSlotExtractor()
        labelled = extractor.extract("Toilet is clogged in room 12B")
        bare = extractor.extract("Toilet is clogged in 412")
        assert labelled.value("room") == "12B"
        assert labelled.room.confidence > bare.room.confidence

    def test_contact_details(self):
        slots = KeywordSlotExtractor().extract(
            "My name is Sam Lee, sam.lee@mit.edu, 617-555-0142"
        )
        assert slots.value("name") == "Sam Lee"
        assert slots.value("email") == "sam.lee@mit.edu"
        assert slots.value("phone") == "6175550142"
        # Digits of the phone number are not mistaken for a room
        assert slots.room is None

    def test_urgent_and_low_keywords(self):
        extractor = KeywordSlotExtractor()
        assert extractor.extract("Water is overflowing, please come asap").urgency == UrgencyLevel.URGENT
        assert extractor.extract("Minor paint chip, no rush").urgency == UrgencyLevel.LOW

    def test_keyword_confidence_stays_below_model(self):
        slots = KeywordSlotExtractor().extract("The heater in Tang Hall room 210 is broken")
        assert slots.value("category") == "HVAC"
        assert all(
            getattr(slots, name).confidence < 0.8
            for name in ("building", "room", "category")
        )


class TestModelExtraction:
    """Test model-first extraction with fallback."""

    def test_model_reply_is_normalized(self):
        service = SlotExtractionService(
            llm_service=scripted_llm(
                {
                    "acknowledgement": "Sorry to hear about the leak.",
                    "building": "Baker House",
                    "room": 305,
                    "category": "plumbing",
                    "urgency_level": "High",
                    "safety_flags": ["mold"],
                    "confidence": 0.9,
                }
            )
        )
        outcome = asyncio.run(service.extract("My sink is leaking in Baker House 305"))

        assert outcome.used_fallback is False
        assert outcome.acknowledgement == "Sorry to hear about the leak."
        assert outcome.slots.value("room") == "305"
        assert outcome.slots.value("category") == "Plumbing"
        assert outcome.slots.urgency == UrgencyLevel.URGENT
        assert outcome.slots.safety_flags == ["reported_mold"]
        assert outcome.slots.building.confidence == 0.9

    def test_model_reply_in_code_fence(self):
        reply = 'Here you go:\n```json\n{"category": "Electrical", "confidence": 0.85,}\n```'
        service = SlotExtractionService(llm_service=scripted_llm(reply))
        outcome = asyncio.run(service.extract("The outlet by my desk is dead"))
        assert outcome.slots.value("category") == "Electrical"

    def test_timeout_falls_back_to_keywords(self):
        slow = SlowChatModel(delay=1.0)
        service = SlotExtractionService(llm_service=LLMService(llm=slow), timeout=0.01)
        outcome = asyncio.run(service.extract("My sink is leaking in Baker House 305"))

        assert slow.calls == 1
        assert outcome.used_fallback is True
        assert outcome.slots.value("building") == "Baker House"
        assert outcome.slots.building.source == SlotSource.KEYWORD

    def test_unparsable_reply_falls_back_to_keywords(self):
        service = SlotExtractionService(llm_service=scripted_llm("Sorry, I can't help with that."))
        outcome = asyncio.run(service.extract("The fridge in Next House 101 is warm"))
        assert outcome.used_fallback is True
        assert outcome.slots.value("category") == "Appliances"

    def test_fail_closed_policy_propagates(self, monkeypatch):
        monkeypatch.setattr(
            "app.services.llm.extraction_service.get_failure_policy",
            lambda: FailurePolicy({"slot_extraction": "fail_closed"}),
        )
        service = SlotExtractionService(llm_service=failing_llm())
        with pytest.raises(LLMResponseError):
            asyncio.run(service.extract("My sink is leaking"))


class TestLLMService:
    """Test the typed errors of the bounded model call."""

    def test_timeout_is_typed(self):
        service = LLMService(llm=SlowChatModel(delay=1.0))
        with pytest.raises(ExtractionTimeout):
            asyncio.run(service.complete_json("system", "prompt", AnswerReply, timeout=0.01))

    def test_connection_error_is_typed(self):
        with pytest.raises(LLMResponseError) as exc_info:
            asyncio.run(failing_llm().complete_json("system", "prompt", AnswerReply, timeout=1))
        assert isinstance(exc_info.value.original_error, ConnectionError)

    def test_trailing_comma_is_repaired(self):
        assert extract_json_from_llm_response('Result: {"a": 1, "b": [1, 2,],}') == {"a": 1, "b": [1, 2]}

    def test_no_object_returns_none(self):
        assert extract_json_from_llm_response("no json here") is None
