"""
Triage Engine Module

Deterministic next-action policy for triage conversations.
"""
from app.services.triage.engine import ActionDecision, NextActionEngine, get_next_action_engine

__all__ = ["ActionDecision", "NextActionEngine", "get_next_action_engine"]
