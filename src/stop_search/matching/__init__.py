"""Stop name normalization and candidate ranking."""

from stop_search.matching.models import (
    MatchTier,
    NormalizedQuery,
    ScoreBreakdown,
    StopResult,
    StopSearchDebug,
    StopSearchResponse,
)
from stop_search.matching.normalizers import (
    MIN_QUERY_LEN,
    normalize_search_text,
    remove_accents,
    strip_stop_words,
    tokenize,
    trigram_similarity,
)
from stop_search.matching.ranker import (
    CandidateRow,
    build_query_context,
    clamp_limit,
    rank_stop_candidates,
    rank_stop_candidates_detailed,
)

__all__ = [
    # Ranking
    "rank_stop_candidates",
    "rank_stop_candidates_detailed",
    "build_query_context",
    "clamp_limit",
    "CandidateRow",
    # Models
    "MatchTier",
    "NormalizedQuery",
    "StopResult",
    "ScoreBreakdown",
    "StopSearchDebug",
    "StopSearchResponse",
    # Normalizers
    "MIN_QUERY_LEN",
    "normalize_search_text",
    "strip_stop_words",
    "remove_accents",
    "tokenize",
    "trigram_similarity",
]
