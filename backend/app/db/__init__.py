"""
Database package
"""
from app.db.base import Base
from app.db.session import get_engine, get_session_factory, get_db
from app.db.models import StoredRecord

__all__ = [
    "Base",
    "get_engine",
    "get_session_factory",
    "get_db",
    "StoredRecord",
]
