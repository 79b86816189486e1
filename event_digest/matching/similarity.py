"""Match scoring: embedding cosine similarity with a keyword-overlap fallback."""
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from event_digest.models import AllEventsSubscription, Event, PromptSubscription

SIMILARITY_THRESHOLD = 0.2


@dataclass
class MatchResult:
    accepted: bool
    score: float
    match_type: str  # "semantic", "title" or "all_events"
    semantic_score: float = 0.0
    keyword_score: float = 0.0
    reason: Optional[str] = None


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """dot(a, b) / (|a| |b|). Zero for mismatched lengths or an all-zero vector."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def meets_threshold(score: float, threshold: float = SIMILARITY_THRESHOLD) -> bool:
    return score >= threshold


def prompt_words(prompt: str) -> list[str]:
    return [w for w in prompt.lower().split() if len(w) > 2]


def keyword_score(prompt: str, title: str, description: str) -> float:
    """Share of prompt words (longer than two characters) found in the event text."""
    words = prompt_words(prompt)
    if not words:
        return 0.0
    text = f"{title} {description}".lower()
    matches = sum(1 for w in words if w in text)
    return matches / len(words)


def score_match(
    subscription: Union[PromptSubscription, AllEventsSubscription],
    event: Event,
    now: datetime,
    threshold: float = SIMILARITY_THRESHOLD,
) -> MatchResult:
    """
    Score one event for one subscription.

    Accepted iff the final score reaches the threshold and the event is still in
    the future. all_events subscriptions skip scoring and match at 1.0.
    """
    if event.event_date <= now:
        return MatchResult(accepted=False, score=0.0, match_type="title", reason="event already started")

    if isinstance(subscription, AllEventsSubscription):
        return MatchResult(accepted=True, score=1.0, match_type="all_events")

    semantic = 0.0
    if subscription.prompt_embedding and event.description_embedding:
        semantic = cosine_similarity(subscription.prompt_embedding, event.description_embedding)
    keyword = keyword_score(subscription.prompt, event.title, event.description)

    final = max(semantic, keyword)
    match_type = "semantic" if semantic > keyword else "title"
    # Clamp negative cosine and float overshoot into [0, 1]
    final = min(max(final, 0.0), 1.0)

    if not meets_threshold(final, threshold):
        return MatchResult(
            accepted=False,
            score=final,
            match_type=match_type,
            semantic_score=semantic,
            keyword_score=keyword,
            reason=f"score {final:.3f} below threshold {threshold}",
        )
    return MatchResult(
        accepted=True,
        score=final,
        match_type=match_type,
        semantic_score=semantic,
        keyword_score=keyword,
    )
