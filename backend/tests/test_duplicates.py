"""
Tests for duplicate detection.
"""

import asyncio
from datetime import timedelta

import pytest

from app.core.exceptions import DuplicateServiceUnavailable
from app.core.failure_policy import FailurePolicy
from app.db.records import CaseDraft, CaseStatus, utcnow
from app.services.duplicate_detection import (
    EMPTY_POOL_REASON,
    FAILURE_REASON,
    DuplicateDetector,
)
from app.services.llm.client import LLMService

from conftest import ORG_ID, SlowChatModel, failing_llm, make_case, scripted_llm


def sink_draft(**overrides) -> CaseDraft:
    data = {
        "org_id": ORG_ID,
        "title": "Plumbing: My sink is leaking in Baker House 305",
        "description": "My sink is leaking",
        "category": "Plumbing",
        "building": "Baker House",
        "room": "305",
    }
    data.update(overrides)
    return CaseDraft(**data)


def similarity(case_id, score, is_duplicate=False, reason="Same leak"):
    return {
        "case_id": case_id,
        "similarity_score": score,
        "match_reason": reason,
        "is_duplicate": is_duplicate,
    }


class TestAnalyze:
    """Test end-to-end analysis outcomes."""

    def test_same_room_yesterday_is_duplicate(self):
        existing = make_case(created_at=utcnow() - timedelta(days=1))
        detector = DuplicateDetector(
            llm_service=scripted_llm({"similarities": [similarity(existing.id, 0.93, True)]})
        )

        result = asyncio.run(detector.analyze(sink_draft(), [existing]))

        assert result.is_unique is False
        assert result.duplicate_of_id == existing.id
        assert result.confidence == pytest.approx(0.93)
        assert result.similar_cases[0].is_duplicate is True

    def test_empty_pool_skips_the_model(self):
        model = SlowChatModel()
        detector = DuplicateDetector(llm_service=LLMService(llm=model))

        result = asyncio.run(detector.analyze(sink_draft(), []))

        assert model.calls == 0
        assert result.is_unique is True
        assert result.confidence == 1.0
        assert result.analysis_reason == EMPTY_POOL_REASON

    def test_timeout_fails_open(self):
        existing = make_case()
        detector = DuplicateDetector(llm_service=LLMService(llm=SlowChatModel(delay=1.0)), timeout=0.01)

        result = asyncio.run(detector.analyze(sink_draft(), [existing]))

        assert result.is_unique is True
        assert result.analysis_reason == FAILURE_REASON
        assert result.similar_cases == []

    def test_fail_closed_policy_raises(self, monkeypatch):
        monkeypatch.setattr(
            "app.services.duplicate_detection.get_failure_policy",
            lambda: FailurePolicy({"duplicate_detection": "fail_closed"}),
        )
        detector = DuplicateDetector(llm_service=failing_llm())
        with pytest.raises(DuplicateServiceUnavailable):
            asyncio.run(detector.analyze(sink_draft(), [make_case()]))

    def test_similar_but_not_duplicate_is_unique(self):
        existing = make_case()
        detector = DuplicateDetector(
            llm_service=scripted_llm({"similarities": [similarity(existing.id, 0.8, True)]})
        )

        result = asyncio.run(detector.analyze(sink_draft(), [existing]))

        assert result.is_unique is True
        assert result.duplicate_of_id is None
        assert len(result.similar_cases) == 1
        assert result.similar_cases[0].is_duplicate is False

    def test_nan_score_from_the_model_is_not_a_duplicate(self):
        existing = make_case()
        reply = '{"similarities": [{"case_id": "' + existing.id + '", "similarity_score": NaN}]}'
        detector = DuplicateDetector(llm_service=scripted_llm(reply))

        result = asyncio.run(detector.analyze(sink_draft(), [existing]))

        assert result.is_unique is True
        assert result.similar_cases == []

    def test_unhashable_case_id_does_not_block_analysis(self):
        existing = make_case()
        detector = DuplicateDetector(
            llm_service=scripted_llm({"similarities": [similarity(["a"], 0.9, True)]})
        )

        result = asyncio.run(detector.analyze(sink_draft(), [existing]))

        assert result.is_unique is True
        assert result.duplicate_of_id is None


class TestNormalizeMatches:
    """Scores are clamped, thresholded and classified server-side."""

    def test_scores_are_clamped_and_classified(self):
        cases = [make_case() for _ in range(4)]
        raw = [
            similarity(cases[0].id, 1.7, False),
            similarity(cases[1].id, 0.86, False),
            similarity(cases[2].id, 0.85, True),
            similarity(cases[3].id, -3, True),
        ]

        matches = DuplicateDetector(llm_service=failing_llm()).normalize_matches(raw, cases)

        assert [m.similarity_score for m in matches] == [1.0, 0.86, 0.85]
        assert [m.is_duplicate for m in matches] == [True, True, False]
        assert all(0.0 <= m.similarity_score <= 1.0 for m in matches)

    def test_floor_unknown_ids_and_bad_scores_are_dropped(self):
        cases = [make_case(), make_case(), make_case()]
        raw = [
            similarity(cases[0].id, 0.6),
            similarity("not-a-candidate", 0.99),
            similarity(cases[1].id, "very similar"),
            similarity(cases[2].id, True),
            "garbage",
        ]
        assert DuplicateDetector(llm_service=failing_llm()).normalize_matches(raw, cases) == []

    def test_non_finite_scores_are_dropped(self):
        cases = [make_case(), make_case(), make_case(), make_case()]
        raw = [
            similarity(cases[0].id, float("nan"), True),
            similarity(cases[1].id, "nan", True),
            similarity(cases[2].id, float("inf"), True),
            similarity(cases[3].id, "-inf"),
        ]
        assert DuplicateDetector(llm_service=failing_llm()).normalize_matches(raw, cases) == []

    def test_malformed_case_ids_are_skipped(self):
        case = make_case()
        raw = [
            similarity([case.id], 0.95, True),
            similarity({"id": case.id}, 0.95, True),
            similarity(42, 0.95, True),
            similarity(case.id, 0.9, reason=["not", "text"]),
        ]

        matches = DuplicateDetector(llm_service=failing_llm()).normalize_matches(raw, [case])

        assert [m.case_id for m in matches] == [case.id]
        assert matches[0].match_reason == "Similar maintenance request"

    def test_results_are_capped_and_sorted(self):
        cases = [make_case() for _ in range(15)]
        raw = [similarity(c.id, 0.61 + i * 0.01) for i, c in enumerate(cases)]

        matches = DuplicateDetector(llm_service=failing_llm()).normalize_matches(raw, cases)

        assert len(matches) == 10
        scores = [m.similarity_score for m in matches]
        assert scores == sorted(scores, reverse=True)
        assert scores[0] == pytest.approx(0.75)


class TestCandidateFiltering:
    """Candidates are narrowed down before any model call."""

    def test_old_and_closed_cases_are_excluded(self):
        now = utcnow()
        recent = make_case(created_at=now - timedelta(days=2))
        old = make_case(created_at=now - timedelta(days=45))
        closed = make_case(status=CaseStatus.RESOLVED)
        merged = make_case(status=CaseStatus.MERGED)

        detector = DuplicateDetector(llm_service=failing_llm())
        candidates = detector.filter_candidates(sink_draft(), [recent, old, closed, merged], now=now)

        assert candidates == [recent]

    def test_same_location_is_preferred(self):
        here = make_case()
        elsewhere = make_case(building="Tang Hall", room="101")
        detector = DuplicateDetector(llm_service=failing_llm())
        assert detector.filter_candidates(sink_draft(), [here, elsewhere]) == [here]

    def test_large_pool_narrows_to_category(self):
        plumbing = [make_case() for _ in range(5)]
        electrical = [make_case(category="Electrical") for _ in range(20)]
        detector = DuplicateDetector(llm_service=failing_llm())

        candidates = detector.filter_candidates(sink_draft(), plumbing + electrical)

        assert candidates == plumbing

    def test_large_pool_without_category_match_keeps_most_recent(self):
        now = utcnow()
        pool = [
            make_case(category="Electrical", created_at=now - timedelta(hours=i))
            for i in range(25)
        ]
        detector = DuplicateDetector(llm_service=failing_llm())

        candidates = detector.filter_candidates(sink_draft(), pool, now=now)

        assert len(candidates) == 20
        assert candidates == pool[:20]


class TestMergeRecommendation:
    """Auto-merge only above 0.90."""

    def test_high_similarity_merges(self):
        rec = DuplicateDetector(llm_service=failing_llm()).recommend_merge("orig", "dup", 0.93)
        assert rec.should_merge is True
        assert rec.merge_strategy == "keep_original"

    def test_borderline_goes_to_manual_review(self):
        rec = DuplicateDetector(llm_service=failing_llm()).recommend_merge("orig", "dup", 0.90)
        assert rec.should_merge is False
        assert "manual review" in rec.reasoning

    def test_non_finite_score_never_merges(self):
        rec = DuplicateDetector(llm_service=failing_llm()).recommend_merge("orig", "dup", float("nan"))
        assert rec.should_merge is False
