"""
Deterministic Contractor Matching
Ranking is plain arithmetic over vendor attributes, NOT an LLM judgement.

Hard filters exclude a contractor outright:
- inactive
- outside the case's category (neither primary category nor a specialization)
- already at max jobs for the day
- Critical case and no emergency availability

Everyone left is scored 0-100:
    base 40
    + 10  specialization keyword appears in the case text
    + 0..20 spare capacity (1 - workload / max_jobs_per_day)
    + 20  response time within the priority's window, else -30 (High/Critical) or -10
    + 10  emergency availability on a High/Critical case
    + 0..10 rating (2 points per star)
"""
import re
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from app.core.logging import get_logger
from app.db.records import Case, CasePriority, Vendor

logger = get_logger(__name__)


BASE_SCORE = 40.0
SPECIALIZATION_BONUS = 10.0
CAPACITY_WEIGHT = 20.0
RESPONSE_WITHIN_BONUS = 20.0
RESPONSE_SLOW_PENALTY_URGENT = 30.0
RESPONSE_SLOW_PENALTY = 10.0
EMERGENCY_BONUS = 10.0
RATING_WEIGHT = 2.0
NEAR_CAPACITY_RATIO = 0.8

# Hours within which a contractor should respond, per case priority
RESPONSE_WINDOW_HOURS: Dict[CasePriority, float] = {
    CasePriority.CRITICAL: 2.0,
    CasePriority.HIGH: 8.0,
    CasePriority.MEDIUM: 24.0,
    CasePriority.LOW: 72.0,
}

URGENT_PRIORITIES = {CasePriority.HIGH, CasePriority.CRITICAL}


class RankedCandidate(BaseModel):
    contractor_id: str
    name: str
    match_score: float = Field(ge=0.0, le=100.0)
    reasoning: str
    risk_factors: List[str] = Field(default_factory=list)
    estimated_response_time: str


def _normalize(text: Optional[str]) -> str:
    return (text or "").strip().lower()


class ContractorMatcher:
    """Ranks contractors for a case. Reads vendors, never writes them."""

    def rank(self, case: Case, candidates: List[Vendor]) -> List[RankedCandidate]:
        ranked = []
        for vendor in candidates:
            excluded, reason = self.exclusion_reason(case, vendor)
            if excluded:
                logger.debug(f"Excluding contractor {vendor.id} for case {case.id}: {reason}")
                continue
            ranked.append(self.score(case, vendor))

        ranked.sort(key=lambda r: r.match_score, reverse=True)
        logger.info(f"Ranked {len(ranked)} of {len(candidates)} contractors for case {case.id}")
        return ranked

    def exclusion_reason(self, case: Case, vendor: Vendor) -> Tuple[bool, str]:
        """Hard filters. Returns (excluded, reason)."""
        if not vendor.is_active:
            return True, "inactive"
        if case.category and not self.covers_category(vendor, case.category):
            return True, f"does not cover {case.category}"
        if vendor.max_jobs_per_day <= 0 or vendor.current_workload >= vendor.max_jobs_per_day:
            return True, "at max daily capacity"
        if case.priority == CasePriority.CRITICAL and not vendor.emergency_available:
            return True, "no emergency availability for a critical case"
        return False, ""

    @staticmethod
    def covers_category(vendor: Vendor, category: str) -> bool:
        wanted = _normalize(category)
        if _normalize(vendor.category) == wanted:
            return True
        return any(_normalize(s) == wanted for s in vendor.specializations)

    def score(self, case: Case, vendor: Vendor) -> RankedCandidate:
        score = BASE_SCORE
        reasons: List[str] = [f"{vendor.category} contractor"]
        risks: List[str] = []

        # Specialization keywords in the case text
        case_text = _normalize(f"{case.title} {case.description}")
        matched = [
            s for s in vendor.specializations
            if s and re.search(rf"\b{re.escape(_normalize(s))}\b", case_text)
        ]
        if matched:
            score += SPECIALIZATION_BONUS
            reasons.append(f"specializes in {', '.join(matched)}")

        # Workload
        load = vendor.current_workload / vendor.max_jobs_per_day
        score += CAPACITY_WEIGHT * (1.0 - load)
        reasons.append(f"{vendor.current_workload}/{vendor.max_jobs_per_day} jobs today")
        if load >= NEAR_CAPACITY_RATIO:
            risks.append("near max daily capacity")

        # Response time against the urgency window
        window = RESPONSE_WINDOW_HOURS[case.priority]
        if vendor.response_time_hours <= window:
            score += RESPONSE_WITHIN_BONUS
            reasons.append(f"responds within {vendor.response_time_hours:g}h")
        else:
            if case.priority in URGENT_PRIORITIES:
                score -= RESPONSE_SLOW_PENALTY_URGENT
            else:
                score -= RESPONSE_SLOW_PENALTY
            risks.append(
                f"response time {vendor.response_time_hours:g}h exceeds the "
                f"{window:g}h window for a {case.priority.value} case"
            )

        # Emergency availability
        if vendor.emergency_available and case.priority in URGENT_PRIORITIES:
            score += EMERGENCY_BONUS
            reasons.append("available for emergencies")

        # Rating as a tie-breaker
        rating = max(0.0, min(5.0, vendor.rating))
        score += rating * RATING_WEIGHT
        if rating:
            reasons.append(f"rated {rating:.1f}/5")

        return RankedCandidate(
            contractor_id=vendor.id,
            name=vendor.name,
            match_score=round(max(0.0, min(100.0, score)), 1),
            reasoning="; ".join(reasons),
            risk_factors=risks,
            estimated_response_time=f"{vendor.response_time_hours:g} hours",
        )


_contractor_matcher: Optional[ContractorMatcher] = None


def get_contractor_matcher() -> ContractorMatcher:
    """Get or create the contractor matcher singleton."""
    global _contractor_matcher
    if _contractor_matcher is None:
        _contractor_matcher = ContractorMatcher()
    return _contractor_matcher
