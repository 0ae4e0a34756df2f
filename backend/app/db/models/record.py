"""
StoredRecord database model: one versioned JSON document per domain record
"""
from datetime import datetime

from sqlalchemy import Column, String, DateTime, Integer, JSON, Index

from app.db.base import Base


class StoredRecord(Base):
    """Versioned document row backing the SQL record store."""

    __tablename__ = "records"

    kind = Column(String(50), primary_key=True)  # e.g. case, appointment, vendor
    record_id = Column(String(64), primary_key=True)
    org_id = Column(String(64), nullable=False)

    # Compare-and-swap token; bumped on every successful update
    version = Column(Integer, nullable=False, default=1)
    payload = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_records_kind_org", "kind", "org_id"),
    )

    def __repr__(self) -> str:
        return f"<StoredRecord {self.kind}:{self.record_id} v{self.version}>"
