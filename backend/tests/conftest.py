"""
Test configuration and fixtures for TriageBot backend tests.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Generator, List, Optional

import pytest
from fastapi.testclient import TestClient
from langchain_core.language_models import FakeListChatModel

from main import app
from app.api.deps import get_intake
from app.db.records import Case, CasePriority, CaseStatus, Vendor
from app.orchestration.triage.machine import TriageConversationEngine
from app.services.coordination import CaseCoordinator
from app.services.duplicate_detection import DuplicateDetector
from app.services.intake import IntakeService
from app.services.llm.client import LLMService
from app.services.llm.extraction_service import SlotExtractionService
from app.services.matching import ContractorMatcher
from app.services.notifications import NotificationDispatcher
from app.services.record_store import InMemoryRecordStore
from app.services.triage.engine import NextActionEngine
from app.services.websocket_manager import ConnectionManager


ORG_ID = "org-mit-housing"
OTHER_ORG_ID = "org-elsewhere"

# Scheduling tests run against a fixed "now"
FIXED_NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


class SlowChatModel:
    """Stands in for a chat model that never answers in time."""

    def __init__(self, delay: float = 1.0):
        self.delay = delay
        self.calls = 0

    async def ainvoke(self, messages, config=None):
        self.calls += 1
        await asyncio.sleep(self.delay)
        raise AssertionError("the caller should have timed out first")


class FailingChatModel:
    """Stands in for a chat model whose endpoint is down."""

    def __init__(self):
        self.calls = 0

    async def ainvoke(self, messages, config=None):
        self.calls += 1
        raise ConnectionError("model endpoint unreachable")


def scripted_llm(*replies: Any) -> LLMService:
    """LLM service answering with the given replies in order (dicts become JSON)."""
    responses = [r if isinstance(r, str) else json.dumps(r) for r in replies]
    return LLMService(llm=FakeListChatModel(responses=responses))


def failing_llm() -> LLMService:
    return LLMService(llm=FailingChatModel())


def fixed_clock() -> datetime:
    return FIXED_NOW


def make_case(**overrides: Any) -> Case:
    data: Dict[str, Any] = {
        "org_id": ORG_ID,
        "title": "Plumbing: Sink leaking",
        "description": "My sink is leaking",
        "category": "Plumbing",
        "priority": CasePriority.MEDIUM,
        "status": CaseStatus.NEW,
        "building": "Baker House",
        "room": "305",
    }
    data.update(overrides)
    return Case(**data)


def make_vendor(**overrides: Any) -> Vendor:
    data: Dict[str, Any] = {
        "org_id": ORG_ID,
        "name": "Charles River Plumbing",
        "category": "Plumbing",
        "specializations": ["leak", "drain"],
        "current_workload": 1,
        "max_jobs_per_day": 5,
        "response_time_hours": 4,
        "rating": 4.5,
        "emergency_available": True,
    }
    data.update(overrides)
    return Vendor(**data)


async def seed(store: InMemoryRecordStore, records: List[Any]) -> List[Any]:
    return [await store.create(record) for record in records]


def crew(*contractor_ids: str, **overrides: Any) -> List[Vendor]:
    """Plumbers able to take the default test case, one per id."""
    return [
        make_vendor(id=cid, name=f"Plumber {cid}", **overrides) for cid in contractor_ids
    ]


@pytest.fixture
def store() -> InMemoryRecordStore:
    """Fresh in-memory record store for each test."""
    return InMemoryRecordStore()


@pytest.fixture
def notifier() -> NotificationDispatcher:
    return NotificationDispatcher(manager=ConnectionManager())


@pytest.fixture
def keyword_engine(store) -> TriageConversationEngine:
    """Conversation engine whose model is down, so every turn uses keyword extraction."""
    return TriageConversationEngine(
        store=store,
        extraction_service=SlotExtractionService(llm_service=failing_llm()),
        action_engine=NextActionEngine(),
    )


@pytest.fixture
def coordinator(store, notifier) -> CaseCoordinator:
    asyncio.run(seed(store, crew("c1", "c2", "c3")))
    return CaseCoordinator(store=store, notifier=notifier, clock=fixed_clock)


def build_intake(
    store: InMemoryRecordStore,
    notifier: NotificationDispatcher,
    similarity_llm: Optional[LLMService] = None,
) -> IntakeService:
    return IntakeService(
        store=store,
        conversations=TriageConversationEngine(
            store=store,
            extraction_service=SlotExtractionService(llm_service=failing_llm()),
            action_engine=NextActionEngine(),
        ),
        detector=DuplicateDetector(llm_service=similarity_llm or failing_llm()),
        matcher=ContractorMatcher(),
        coordinator=CaseCoordinator(store=store, notifier=notifier, clock=fixed_clock),
        notifier=notifier,
    )


@pytest.fixture
def intake(store, notifier) -> IntakeService:
    return build_intake(store, notifier)


@pytest.fixture(scope="function")
def client(intake: IntakeService) -> Generator[TestClient, None, None]:
    """Create a test client wired to the in-memory intake service."""
    app.dependency_overrides[get_intake] = lambda: intake
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def org_headers() -> dict:
    return {"X-Org-Id": ORG_ID}


@pytest.fixture
def future_start() -> datetime:
    return FIXED_NOW + timedelta(hours=2)
