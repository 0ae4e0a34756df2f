"""
Bounded LLM Services

The model is used for constrained tasks only: slot extraction and duplicate
similarity scoring, both returning schema-validated JSON. It never writes the
messages shown in an emergency.
"""
from app.services.llm.client import LLMService, get_llm_service
from app.services.llm.extraction_service import (
    ExtractionOutcome,
    KeywordSlotExtractor,
    SlotExtractionService,
)

__all__ = [
    "LLMService",
    "get_llm_service",
    "ExtractionOutcome",
    "KeywordSlotExtractor",
    "SlotExtractionService",
]
