"""Event de-duplication: by canonical URL for scraped candidates, by id for search hits."""
from typing import Any, Iterable
from urllib.parse import urldefrag

from event_digest.models import Event


def normalize_url(url: str) -> str:
    """Canonical form used for the uniqueness check: trimmed, without a #fragment."""
    return urldefrag(url.strip())[0]


def dedupe_candidates_by_url(candidates: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    Drop repeated URLs within one extracted list, keeping the first occurrence.

    Candidates without a usable url are passed through untouched so the caller
    can count and skip them.
    """
    deduplicated = []
    seen_urls = set()

    for candidate in candidates:
        url = candidate.get("url")
        if not isinstance(url, str) or not url.strip():
            deduplicated.append(candidate)
            continue

        key = normalize_url(url)
        if key in seen_urls:
            continue
        seen_urls.add(key)
        deduplicated.append(candidate)

    return deduplicated


def merge_scored_results(*result_sets: Iterable[tuple[Event, float]]) -> list[tuple[Event, float]]:
    """
    Merge search hits from several retrievers, keeping the max score per event id.

    Ordered by score (desc), then event date, then id so ties are deterministic.
    """
    best: dict[str, tuple[Event, float]] = {}
    for results in result_sets:
        for event, score in results:
            current = best.get(event.id)
            if current is None or score > current[1]:
                best[event.id] = (event, score)

    return sorted(best.values(), key=lambda hit: (-hit[1], hit[0].event_date, hit[0].id))
