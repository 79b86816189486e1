"""
LLM-based extraction of event listings from a fetched page.

A malformed model response yields an empty list so one bad page never aborts
the enclosing scrape.
"""
import logging
from typing import Any, Optional

from pydantic import BaseModel

from event_digest.errors import PipelineError
from event_digest.scrapers.content_fetcher import ContentFetcher
from event_digest.scrapers.llm import LLMClient, parse_json_from_response

logger = logging.getLogger(__name__)


def build_event_list_prompt(content: str) -> str:
    return f"""You extract event listings from web page content.

Read the markdown below and list every event on the page. For each event return:
- title: the event name
- description: one to three sentences on what the event is and who it is for
- url: the full (absolute) URL of the page with more details about this event
- eventDate: the event date if shown (YYYY-MM-DD preferred, any parseable date is fine)
- imageUrl: the full URL of a poster, venue photo or promo image, if there is one

Only extract real events (conferences, meetups, workshops, concerts, classes...).
Skip navigation links, general site pages and anything else that is not an event.

Return ONLY a JSON array (no markdown, no explanation):
[
  {{
    "title": "Event Title",
    "description": "What the event is about and who should attend.",
    "url": "https://example.com/events/event-title",
    "eventDate": "2030-03-15",
    "imageUrl": "https://example.com/poster.jpg"
  }}
]

Omit imageUrl (or use null) when an event has no image. If a description is not
available, write a short one from the title and surrounding context.
If no events are found, return: []

Markdown content:

{content}
"""


class ScrapeResult(BaseModel):
    success: bool
    message: str
    url: str
    content_length: int = 0
    content: Optional[str] = None
    extracted_events: list[dict[str, Any]] = []


class EventListExtractor:
    def __init__(self, llm: LLMClient):
        self.llm = llm

    async def extract(self, content: str) -> list[dict[str, Any]]:
        """
        Ask the LLM for the events listed in content.

        Returns the parsed list verbatim; non-dict entries are dropped, and any
        parse failure returns []. LLM call failures propagate as UpstreamError.
        """
        response = await self.llm.generate(build_event_list_prompt(content))
        parsed = parse_json_from_response(response)
        if not isinstance(parsed, list):
            logger.warning("Event list extraction returned no JSON array, treating as no events")
            return []
        events = [item for item in parsed if isinstance(item, dict)]
        logger.info(f"Extracted {len(events)} candidate events")
        return events


async def scrape_url(fetcher: ContentFetcher, extractor: EventListExtractor, url: str) -> ScrapeResult:
    """Fetch a listing page and extract its events, reporting failure as a result instead of raising."""
    try:
        content = await fetcher.fetch(url)
        events = await extractor.extract(content)
    except PipelineError as e:
        logger.error(f"Scrape of {url} failed: {e}")
        return ScrapeResult(success=False, message=f"Failed to scrape URL: {e}", url=url)

    return ScrapeResult(
        success=True,
        message=f"Successfully scraped {len(content)} characters, found {len(events)} events",
        url=url,
        content_length=len(content),
        content=content,
        extracted_events=events,
    )
