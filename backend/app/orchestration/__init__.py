"""
Orchestration package - model routing and the triage conversation flow
"""
from app.orchestration.routing import get_llm, LLMProvider

__all__ = [
    "get_llm",
    "LLMProvider",
]
