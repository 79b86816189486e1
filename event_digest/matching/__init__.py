# Match scoring
from .similarity import (
    SIMILARITY_THRESHOLD,
    MatchResult,
    cosine_similarity,
    keyword_score,
    meets_threshold,
    score_match,
)

__all__ = [
    'SIMILARITY_THRESHOLD', 'MatchResult',
    'cosine_similarity', 'keyword_score', 'meets_threshold', 'score_match',
]
