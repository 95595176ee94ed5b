"""Cleanup policies: persistence and evaluation."""

from .engine import (
    Candidate,
    CandidateSet,
    PolicyEngine,
    PolicyRecommendation,
    RecommendationReport,
    build_search_criteria,
    protection_reason,
)
from .store import PolicyStore

__all__ = [
    "Candidate",
    "CandidateSet",
    "PolicyEngine",
    "PolicyRecommendation",
    "PolicyStore",
    "RecommendationReport",
    "build_search_criteria",
    "protection_reason",
]
