"""Pick the best poster image from the image URLs found on an event page."""
import re
from typing import Optional

IMAGE_EXTENSION = re.compile(r"\.(jpg|jpeg|png|gif|webp|svg)(\?|$)", re.IGNORECASE)
WIDTH_TRANSFORM = re.compile(r"tr=w-(\d+)")
EVENT_PAGE_SEGMENTS = ("/event/", "/events/")


def filter_image_urls(urls: list[str]) -> list[str]:
    """Drop event page links and anything without an image extension or a media host."""
    kept = []
    for url in urls:
        if not url or any(segment in url for segment in EVENT_PAGE_SEGMENTS):
            continue
        if IMAGE_EXTENSION.search(url) or "media." in url:
            kept.append(url)
    return kept


def image_width(url: str) -> int:
    """Width from a `tr=w-<n>` transform, 0 when there is none."""
    match = WIDTH_TRANSFORM.search(url)
    return int(match.group(1)) if match else 0


def _rank(url: str) -> tuple[int, int, int]:
    width = image_width(url)
    if width:
        return (0, -width, 0)
    return (1, 0, 1 if "scaled" in url else 0)


def select_best_image_url(urls: list[str]) -> Optional[str]:
    """
    Deterministic choice: widest `tr=w-<n>` transform first, URLs with a width
    before those without. Among URLs without a width, non-"scaled" ones come
    first. Ties keep their original order.
    """
    candidates = filter_image_urls(urls)
    if not candidates:
        return None
    return sorted(candidates, key=_rank)[0]
