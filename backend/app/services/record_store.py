"""
Record Store Service - org-scoped versioned records with compare-and-swap updates.

The store offers no multi-statement transactions. Callers that need to guard a
read-check-write sequence pass the version they read to ``update``; the write
only lands if nobody else has written in between.
"""
import asyncio
import copy
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

from sqlalchemy import select, update as sql_update
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import settings
from app.core.exceptions import RecordNotFound, VersionConflict
from app.core.logging import get_logger
from app.db.models import StoredRecord
from app.db.records import Record, utcnow
from app.services.db_utils import with_db_retry

logger = get_logger(__name__)

R = TypeVar("R", bound=Record)


class RecordStore(ABC):
    """Abstract base class for record storage."""

    @abstractmethod
    async def get(self, model: Type[R], org_id: str, record_id: str) -> R:
        """Get a record by id; raises RecordNotFound."""
        pass

    @abstractmethod
    async def create(self, record: R) -> R:
        """Insert a new record at version 1."""
        pass

    @abstractmethod
    async def update(self, record: R, expected_version: int) -> R:
        """Write the record only if the stored version still equals expected_version."""
        pass

    @abstractmethod
    async def list(self, model: Type[R], org_id: str, **filters: Any) -> List[R]:
        """List records of one kind for an org, filtered by top-level field equality."""
        pass

    async def find(self, model: Type[R], org_id: str, record_id: str) -> Optional[R]:
        """Like get, but returns None instead of raising."""
        try:
            return await self.get(model, org_id, record_id)
        except RecordNotFound:
            return None


def _matches(payload: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for field, expected in filters.items():
        if hasattr(expected, "value"):
            expected = expected.value
        if payload.get(field) != expected:
            return False
    return True


class InMemoryRecordStore(RecordStore):
    """In-memory record store for development and tests.

    Each call yields to the event loop once before touching state, so
    concurrent callers interleave the way they would against a remote store.
    The version check and the write happen without an await in between.
    """

    def __init__(self):
        self._records: Dict[Tuple[str, str, str], Dict[str, Any]] = {}

    async def get(self, model: Type[R], org_id: str, record_id: str) -> R:
        await asyncio.sleep(0)
        payload = self._records.get((model.kind, org_id, record_id))
        if payload is None:
            raise RecordNotFound(f"{model.kind} {record_id} not found")
        return model.model_validate(copy.deepcopy(payload))

    async def create(self, record: R) -> R:
        await asyncio.sleep(0)
        key = (record.kind, record.org_id, record.id)
        if key in self._records:
            raise VersionConflict(record.kind, record.id, 0)
        created = record.model_copy(update={"version": 1, "updated_at": utcnow()})
        self._records[key] = created.model_dump(mode="json")
        return created

    async def update(self, record: R, expected_version: int) -> R:
        await asyncio.sleep(0)
        key = (record.kind, record.org_id, record.id)
        stored = self._records.get(key)
        if stored is None:
            raise RecordNotFound(f"{record.kind} {record.id} not found")
        if stored["version"] != expected_version:
            raise VersionConflict(record.kind, record.id, expected_version)
        updated = record.model_copy(
            update={"version": expected_version + 1, "updated_at": utcnow()}
        )
        self._records[key] = updated.model_dump(mode="json")
        return updated

    async def list(self, model: Type[R], org_id: str, **filters: Any) -> List[R]:
        await asyncio.sleep(0)
        return [
            model.model_validate(copy.deepcopy(payload))
            for (kind, record_org, _), payload in self._records.items()
            if kind == model.kind and record_org == org_id and _matches(payload, filters)
        ]

    def count(self) -> int:
        return len(self._records)


# ---------------------------------------------------------------------------
# SQL backend
# ---------------------------------------------------------------------------

@with_db_retry()
def _fetch_row(db: Session, kind: str, org_id: str, record_id: str) -> Optional[StoredRecord]:
    return db.execute(
        select(StoredRecord).where(
            StoredRecord.kind == kind,
            StoredRecord.org_id == org_id,
            StoredRecord.record_id == record_id,
        )
    ).scalar_one_or_none()


@with_db_retry()
def _insert_row(db: Session, row: StoredRecord) -> None:
    db.add(row)
    db.commit()


@with_db_retry()
def _compare_and_swap(
    db: Session,
    kind: str,
    org_id: str,
    record_id: str,
    expected_version: int,
    payload: Dict[str, Any],
) -> int:
    result = db.execute(
        sql_update(StoredRecord)
        .where(
            StoredRecord.kind == kind,
            StoredRecord.org_id == org_id,
            StoredRecord.record_id == record_id,
            StoredRecord.version == expected_version,
        )
        .values(version=expected_version + 1, payload=payload, updated_at=utcnow())
    )
    db.commit()
    return result.rowcount


@with_db_retry()
def _query_rows(db: Session, kind: str, org_id: str) -> List[StoredRecord]:
    return list(
        db.execute(
            select(StoredRecord)
            .where(StoredRecord.kind == kind, StoredRecord.org_id == org_id)
            .order_by(StoredRecord.created_at)
        ).scalars()
    )


class SqlRecordStore(RecordStore):
    """SQLAlchemy-backed record store: one versioned JSON document per record."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        if session_factory is None:
            from app.db.session import get_session_factory
            session_factory = get_session_factory()
        self._session_factory = session_factory

    async def get(self, model: Type[R], org_id: str, record_id: str) -> R:
        db = self._session_factory()
        try:
            row = _fetch_row(db, model.kind, org_id, record_id)
            if row is None:
                raise RecordNotFound(f"{model.kind} {record_id} not found")
            return self._to_record(model, row)
        finally:
            db.close()

    async def create(self, record: R) -> R:
        created = record.model_copy(update={"version": 1, "updated_at": utcnow()})
        db = self._session_factory()
        try:
            if _fetch_row(db, record.kind, record.org_id, record.id) is not None:
                raise VersionConflict(record.kind, record.id, 0)
            _insert_row(
                db,
                StoredRecord(
                    kind=record.kind,
                    record_id=record.id,
                    org_id=record.org_id,
                    version=1,
                    payload=created.model_dump(mode="json"),
                ),
            )
            return created
        finally:
            db.close()

    async def update(self, record: R, expected_version: int) -> R:
        updated = record.model_copy(
            update={"version": expected_version + 1, "updated_at": utcnow()}
        )
        db = self._session_factory()
        try:
            rowcount = _compare_and_swap(
                db,
                record.kind,
                record.org_id,
                record.id,
                expected_version,
                updated.model_dump(mode="json"),
            )
            if rowcount == 0:
                if _fetch_row(db, record.kind, record.org_id, record.id) is None:
                    raise RecordNotFound(f"{record.kind} {record.id} not found")
                raise VersionConflict(record.kind, record.id, expected_version)
            return updated
        finally:
            db.close()

    async def list(self, model: Type[R], org_id: str, **filters: Any) -> List[R]:
        db = self._session_factory()
        try:
            rows = _query_rows(db, model.kind, org_id)
            return [
                self._to_record(model, row)
                for row in rows
                if _matches(row.payload, filters)
            ]
        finally:
            db.close()

    @staticmethod
    def _to_record(model: Type[R], row: StoredRecord) -> R:
        data = dict(row.payload)
        data["version"] = row.version
        return model.model_validate(data)


# Singleton record store instance
_record_store: Optional[RecordStore] = None


def get_record_store() -> RecordStore:
    """Get the record store instance (creates if needed)."""
    global _record_store

    if _record_store is not None:
        return _record_store

    if settings.STORE_BACKEND == "sql":
        from app.db.base import Base
        from app.db.session import get_engine

        Base.metadata.create_all(bind=get_engine())
        _record_store = SqlRecordStore()
        logger.info("Using SQL record store")
    else:
        logger.info("Using in-memory record store")
        _record_store = InMemoryRecordStore()

    return _record_store


def set_record_store(store: Optional[RecordStore]) -> None:
    """Replace the singleton (tests and alternative wiring)."""
    global _record_store
    _record_store = store
