"""
Duplicate Detection Service

Decides whether a new maintenance request describes the same underlying
problem as a recent open case. Candidates are narrowed down locally, scored
by the language model, and classified here: a match is a duplicate only when
its (clamped) score is above the duplicate threshold, whatever the model says.

A scoring outage never blocks case creation: by default the request is
treated as unique.
"""
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from app.core.config import settings
from app.core.exceptions import DuplicateServiceUnavailable, ExtractionTimeout, LLMResponseError
from app.core.failure_policy import Operation, get_failure_policy
from app.core.logging import get_logger
from app.db.records import (
    INACTIVE_CASE_STATUSES,
    Case,
    CaseDraft,
    DuplicateAnalysisResult,
    SimilarityMatch,
    as_utc,
    utcnow,
)
from app.services.llm.client import LLMService, get_llm_service

logger = get_logger(__name__)

EMPTY_POOL_REASON = "No existing cases found for comparison"
FAILURE_REASON = "Duplicate detection failed - treating as unique request"
UNIQUE_REASON = "No significant duplicates found - appears to be a unique request"

FAILURE_CONFIDENCE = 0.5
UNIQUE_CONFIDENCE = 0.95


class SimilarityReply(BaseModel):
    """Model reply; items are validated one by one so a bad entry does not sink the rest."""

    similarities: List[Dict[str, Any]] = Field(default_factory=list)


class MergeRecommendation(BaseModel):
    original_case_id: str
    duplicate_case_id: str
    similarity_score: float
    should_merge: bool
    merge_strategy: str = "keep_original"
    reasoning: str
    merge_actions: List[str]


SIMILARITY_SYSTEM_PROMPT = (
    "You are an expert at analyzing maintenance requests to detect duplicates and "
    "similar issues. Focus on the core problem, location and symptoms rather than "
    "just keywords. Respond with a single JSON object."
)

SIMILARITY_PROMPT = """Analyze this NEW maintenance request against existing cases.

NEW REQUEST:
Title: {title}
Description: {description}
Category: {category}
Building: {building}
Room: {room}

EXISTING CASES TO COMPARE:
{cases}

For each existing case consider: same core problem, same or very close location,
similar symptoms, and whether they could be the same underlying issue.

Respond with JSON:
{{"similarities": [{{"case_id": "...", "similarity_score": 0.95, "match_reason": "...", "is_duplicate": true}}]}}

Scoring guidelines:
- 1.0 = identical issue, same location
- 0.9-0.95 = same problem, same room/unit
- 0.8-0.89 = same problem type, nearby location
- 0.7-0.79 = similar problem, same building
- 0.6-0.69 = related issue type
- 0.5 and below = different issues
Only include cases with similarity above 0.6."""


class DuplicateDetector:
    """Semantic duplicate detection against recent open cases."""

    def __init__(self, llm_service: Optional[LLMService] = None, timeout: Optional[float] = None):
        self.llm_service = llm_service or get_llm_service()
        self.timeout = timeout if timeout is not None else settings.SIMILARITY_TIMEOUT_SECONDS

    async def analyze(
        self,
        draft: Union[CaseDraft, Case],
        candidate_pool: List[Case],
        now: Optional[datetime] = None,
    ) -> DuplicateAnalysisResult:
        candidates = self.filter_candidates(draft, candidate_pool, now=now)
        logger.info(
            f"Duplicate analysis for '{draft.title}': {len(candidate_pool)} cases, "
            f"{len(candidates)} after filtering"
        )

        if not candidates:
            return DuplicateAnalysisResult(
                is_unique=True,
                analysis_reason=EMPTY_POOL_REASON,
                confidence=1.0,
            )

        try:
            reply = await self.llm_service.complete_json(
                SIMILARITY_SYSTEM_PROMPT,
                self._build_prompt(draft, candidates),
                SimilarityReply,
                timeout=self.timeout,
                operation=Operation.DUPLICATE_DETECTION.value,
                org_id=draft.org_id,
            )
        except (ExtractionTimeout, LLMResponseError) as e:
            if not get_failure_policy().fails_open(Operation.DUPLICATE_DETECTION):
                raise DuplicateServiceUnavailable(f"Similarity scoring unavailable: {e.message}")
            logger.warning(f"Duplicate detection failed open: {e.message}")
            return DuplicateAnalysisResult(
                is_unique=True,
                analysis_reason=FAILURE_REASON,
                confidence=FAILURE_CONFIDENCE,
            )

        matches = self.normalize_matches(reply.similarities, candidates)
        duplicate = next((m for m in matches if m.is_duplicate), None)

        if duplicate is not None:
            result = DuplicateAnalysisResult(
                is_unique=False,
                duplicate_of_id=duplicate.case_id,
                similar_cases=matches,
                analysis_reason=(
                    f"High similarity ({duplicate.similarity_score * 100:.1f}%) detected "
                    f"with case {duplicate.case_id}"
                ),
                confidence=duplicate.similarity_score,
            )
        else:
            result = DuplicateAnalysisResult(
                is_unique=True,
                similar_cases=matches,
                analysis_reason=UNIQUE_REASON,
                confidence=UNIQUE_CONFIDENCE,
            )

        logger.info(
            f"Duplicate analysis complete: {'UNIQUE' if result.is_unique else 'DUPLICATE'} "
            f"(confidence {result.confidence:.2f})"
        )
        return result

    def filter_candidates(
        self,
        draft: Union[CaseDraft, Case],
        pool: List[Case],
        now: Optional[datetime] = None,
    ) -> List[Case]:
        """
        Narrow the pool before any model call.

        Recent (lookback window) open cases only; same-location cases when any
        exist; if still too many, same-category cases when that fits, else the
        most recent ones.
        """
        now = as_utc(now) if now is not None else utcnow()
        cutoff = now - timedelta(days=settings.DUPLICATE_LOOKBACK_DAYS)
        max_candidates = settings.DUPLICATE_MAX_CANDIDATES
        draft_id = getattr(draft, "id", None)

        relevant = [
            c for c in pool
            if as_utc(c.created_at) >= cutoff
            and c.status not in INACTIVE_CASE_STATUSES
            and c.id != draft_id
        ]

        if draft.unit_id or draft.building or draft.room:
            same_location = [
                c for c in relevant
                if (draft.unit_id and c.unit_id == draft.unit_id)
                or (draft.building and c.building == draft.building)
                or (draft.room and c.room == draft.room)
            ]
            if same_location:
                relevant = same_location

        if len(relevant) > max_candidates:
            same_category = [c for c in relevant if draft.category and c.category == draft.category]
            if 0 < len(same_category) <= max_candidates:
                relevant = same_category
            else:
                relevant = sorted(relevant, key=lambda c: as_utc(c.created_at), reverse=True)
                relevant = relevant[:max_candidates]

        return relevant

    def normalize_matches(self, raw: List[Dict[str, Any]], candidates: List[Case]) -> List[SimilarityMatch]:
        """Clamp, threshold, classify and sort model scores; drop unknown case ids."""
        by_id = {c.id: c for c in candidates}
        matches: List[SimilarityMatch] = []

        for item in raw:
            if not isinstance(item, dict):
                continue
            case_id = item.get("case_id") or item.get("caseId")
            score = item.get("similarity_score", item.get("similarityScore"))
            if not isinstance(case_id, str) or case_id not in by_id or isinstance(score, bool):
                continue
            try:
                score = float(score)
            except (TypeError, ValueError):
                continue
            # NaN would survive min/max as 1.0
            if not math.isfinite(score):
                continue
            score = max(0.0, min(1.0, score))
            if score <= settings.SIMILARITY_FLOOR:
                continue

            candidate = by_id[case_id]
            matches.append(
                SimilarityMatch(
                    case_id=case_id,
                    title=candidate.title,
                    category=candidate.category,
                    similarity_score=score,
                    match_reason=_reason_text(item),
                    # The model's own is_duplicate claim is ignored
                    is_duplicate=score > settings.DUPLICATE_THRESHOLD,
                )
            )

        matches.sort(key=lambda m: m.similarity_score, reverse=True)
        return matches[:settings.DUPLICATE_MAX_RESULTS]

    def recommend_merge(
        self,
        original_case_id: str,
        duplicate_case_id: str,
        similarity_score: float,
    ) -> MergeRecommendation:
        """Auto-merge only for very high similarity; anything else goes to a human."""
        score = max(0.0, min(1.0, similarity_score)) if math.isfinite(similarity_score) else 0.0
        should_merge = score > settings.AUTO_MERGE_THRESHOLD

        if should_merge:
            reasoning = (
                f"High confidence duplicate detected ({score * 100:.1f}% similarity). "
                "Recommend merging to avoid duplicate work."
            )
            actions = [
                "Mark duplicate case as merged",
                "Transfer any unique information to original case",
                "Notify submitters about case consolidation",
            ]
        else:
            reasoning = (
                f"Moderate similarity ({score * 100:.1f}%). Recommend manual review before merging."
            )
            actions = [
                "Flag for manual review",
                "Add note about similar case for reference",
                "Monitor both cases for resolution",
            ]

        return MergeRecommendation(
            original_case_id=original_case_id,
            duplicate_case_id=duplicate_case_id,
            similarity_score=score,
            should_merge=should_merge,
            reasoning=reasoning,
            merge_actions=actions,
        )

    @staticmethod
    def _build_prompt(draft: Union[CaseDraft, Case], candidates: List[Case]) -> str:
        cases = "\n\n".join(
            f"{i}. ID: {c.id}\n"
            f"   Title: {c.title}\n"
            f"   Description: {c.description or 'No description'}\n"
            f"   Category: {c.category or 'Uncategorized'}\n"
            f"   Building: {c.building or 'Unknown'}\n"
            f"   Room: {c.room or 'Unknown'}\n"
            f"   Status: {c.status.value}\n"
            f"   Created: {c.created_at.isoformat()}"
            for i, c in enumerate(candidates, start=1)
        )
        return SIMILARITY_PROMPT.format(
            title=draft.title,
            description=draft.description,
            category=draft.category or "Unknown",
            building=draft.building or "Unknown",
            room=draft.room or "Unknown",
            cases=cases,
        )


def _reason_text(item: Dict[str, Any]) -> str:
    reason = item.get("match_reason") or item.get("matchReason")
    if isinstance(reason, str) and reason.strip():
        return reason.strip()
    return "Similar maintenance request"


_duplicate_detector: Optional[DuplicateDetector] = None


def get_duplicate_detector() -> DuplicateDetector:
    """Get or create duplicate detector singleton."""
    global _duplicate_detector
    if _duplicate_detector is None:
        _duplicate_detector = DuplicateDetector()
    return _duplicate_detector
