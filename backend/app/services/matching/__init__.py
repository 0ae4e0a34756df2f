"""
Contractor matching package
"""
from app.services.matching.engine import (
    ContractorMatcher,
    RankedCandidate,
    get_contractor_matcher,
)

__all__ = [
    "ContractorMatcher",
    "RankedCandidate",
    "get_contractor_matcher",
]
