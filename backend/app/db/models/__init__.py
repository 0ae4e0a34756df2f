"""
Database models package
"""
from app.db.models.record import StoredRecord

__all__ = [
    "StoredRecord",
]
