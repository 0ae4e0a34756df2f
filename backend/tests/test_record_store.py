"""
Tests for the record stores: org scoping and compare-and-swap updates.
"""

import asyncio

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.exceptions import RecordNotFound, StoreUnavailable, VersionConflict
from app.db.base import Base
from app.db.models import StoredRecord
from app.db.records import Case, CaseStatus, Vendor
from app.services.db_utils import with_db_retry
from app.services.record_store import InMemoryRecordStore, SqlRecordStore

from conftest import ORG_ID, OTHER_ORG_ID, make_case, make_vendor


@pytest.fixture
def sql_store() -> SqlRecordStore:
    """SQL record store over a private in-memory SQLite database."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return SqlRecordStore(sessionmaker(autocommit=False, autoflush=False, bind=engine))


@pytest.fixture(params=["memory", "sql"])
def any_store(request, sql_store):
    if request.param == "memory":
        return InMemoryRecordStore()
    return sql_store


class TestRecordStore:
    """Behaviour shared by every backend."""

    def test_create_and_get(self, any_store):
        async def scenario():
            created = await any_store.create(make_case())
            return created, await any_store.get(Case, ORG_ID, created.id)

        created, fetched = asyncio.run(scenario())

        assert created.version == 1
        assert fetched.id == created.id
        assert fetched.version == 1
        assert fetched.building == "Baker House"
        assert fetched.created_at.tzinfo is not None

    def test_update_with_current_version(self, any_store):
        async def scenario():
            created = await any_store.create(make_case())
            created.status = CaseStatus.IN_REVIEW
            updated = await any_store.update(created, expected_version=1)
            return updated, await any_store.get(Case, ORG_ID, created.id)

        updated, fetched = asyncio.run(scenario())

        assert updated.version == 2
        assert fetched.version == 2
        assert fetched.status == CaseStatus.IN_REVIEW

    def test_stale_update_is_rejected(self, any_store):
        async def scenario():
            created = await any_store.create(make_case())
            first = created.model_copy()
            second = created.model_copy()
            first.status = CaseStatus.IN_REVIEW
            await any_store.update(first, expected_version=1)
            second.status = CaseStatus.CLOSED
            with pytest.raises(VersionConflict):
                await any_store.update(second, expected_version=1)
            return await any_store.get(Case, ORG_ID, created.id)

        assert asyncio.run(scenario()).status == CaseStatus.IN_REVIEW

    def test_update_of_missing_record(self, any_store):
        async def scenario():
            await any_store.update(make_case(), expected_version=1)

        with pytest.raises(RecordNotFound):
            asyncio.run(scenario())

    def test_duplicate_create_is_rejected(self, any_store):
        async def scenario():
            case = make_case()
            await any_store.create(case)
            await any_store.create(case)

        with pytest.raises(VersionConflict):
            asyncio.run(scenario())

    def test_records_are_org_scoped(self, any_store):
        async def scenario():
            ours = await any_store.create(make_case())
            await any_store.create(make_case(org_id=OTHER_ORG_ID))
            with pytest.raises(RecordNotFound):
                await any_store.get(Case, OTHER_ORG_ID, ours.id)
            return await any_store.list(Case, ORG_ID)

        listed = asyncio.run(scenario())
        assert [c.org_id for c in listed] == [ORG_ID]

    def test_list_filters_by_kind_and_field(self, any_store):
        async def scenario():
            await any_store.create(make_case())
            await any_store.create(make_case(status=CaseStatus.CLOSED))
            await any_store.create(make_vendor())
            return (
                await any_store.list(Case, ORG_ID, status=CaseStatus.CLOSED),
                await any_store.list(Vendor, ORG_ID),
            )

        closed, vendors = asyncio.run(scenario())

        assert [c.status for c in closed] == [CaseStatus.CLOSED]
        assert [v.name for v in vendors] == ["Charles River Plumbing"]

    def test_find_returns_none_when_missing(self, any_store):
        assert asyncio.run(any_store.find(Case, ORG_ID, "no-such-case")) is None


class TestInMemoryRecordStore:
    """Memory backend specifics."""

    def test_returned_records_are_copies(self):
        store = InMemoryRecordStore()

        async def scenario():
            created = await store.create(make_case())
            fetched = await store.get(Case, ORG_ID, created.id)
            fetched.routing_notes.append("local edit")
            return await store.get(Case, ORG_ID, created.id)

        assert asyncio.run(scenario()).routing_notes == []

    def test_concurrent_updates_from_same_version(self):
        store = InMemoryRecordStore()

        async def scenario():
            created = await store.create(make_case())
            return await asyncio.gather(
                store.update(created.model_copy(update={"room": "306"}), 1),
                store.update(created.model_copy(update={"room": "307"}), 1),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())
        assert sum(isinstance(r, VersionConflict) for r in results) == 1
        assert store.count() == 1


class FakeSession:
    def __init__(self):
        self.rollbacks = 0

    def rollback(self):
        self.rollbacks += 1


class TestDbRetry:
    """Transient failures are retried; insert races become version conflicts."""

    def test_transient_failure_is_retried(self):
        calls = []

        @with_db_retry(attempts=2, delay=0)
        def flaky(db):
            calls.append(1)
            if len(calls) < 3:
                raise OperationalError("UPDATE records", {}, Exception("database is locked"))
            return "ok"

        session = FakeSession()
        assert flaky(session) == "ok"
        assert len(calls) == 3
        assert session.rollbacks == 2

    def test_persistent_failure_surfaces_as_unavailable(self):
        @with_db_retry(attempts=1, delay=0)
        def down(db):
            raise OperationalError("SELECT 1", {}, Exception("no such host"))

        with pytest.raises(StoreUnavailable):
            down(FakeSession())

    def test_insert_race_is_a_version_conflict(self):
        row = StoredRecord(kind="case", record_id="case-1", org_id=ORG_ID, version=1, payload={})

        @with_db_retry(delay=0)
        def insert(db, stored):
            raise IntegrityError("INSERT INTO records", {}, Exception("UNIQUE constraint failed"))

        with pytest.raises(VersionConflict) as exc_info:
            insert(FakeSession(), row)
        assert exc_info.value.record_id == "case-1"
