"""
API routes package
"""
from app.api.routes import triage, cases, websocket

__all__ = [
    "triage",
    "cases",
    "websocket",
]
