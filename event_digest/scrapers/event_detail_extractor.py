"""LLM-based extraction of structured details from a single event page."""
import logging
from typing import Any, Optional

from event_digest.models import ScrapedEventData
from event_digest.scrapers.llm import LLMClient, parse_json_from_response

logger = logging.getLogger(__name__)

DETAIL_FIELDS = (
    "title", "description", "eventDate", "location", "organizer", "price",
    "category", "tags", "imageUrls", "registrationUrl", "contactInfo", "additionalDetails",
)


def build_event_detail_prompt(content: str) -> str:
    return f"""You extract detailed information about one event from its web page.

Read the markdown below and pull out whatever of the following is available:
- title: the event name
- description: a full description of the event (merge paragraphs if needed)
- eventDate: date and time (YYYY-MM-DD HH:MM if possible, otherwise as written)
- location: venue name and/or address
- organizer: who runs the event
- price: ticket price or cost
- category: kind of event (conference, workshop, concert...)
- tags: keywords or topics
- imageUrls: image URLs on the page (posters, venue photos...)
- registrationUrl: where to register or buy tickets
- contactInfo: email, phone or other contact details
- additionalDetails: anything else useful (dress code, what to bring...)

Return ONLY a JSON object (no markdown, no explanation):
{{
  "title": "Event Title",
  "description": "Detailed description...",
  "eventDate": "2030-03-15 19:00",
  "location": "Venue Name, Address",
  "organizer": "Organization Name",
  "price": "Free",
  "category": "conference",
  "tags": ["technology", "networking"],
  "imageUrls": ["https://example.com/poster.jpg"],
  "registrationUrl": "https://example.com/register",
  "contactInfo": "contact@example.com",
  "additionalDetails": "Bring your laptop"
}}

Omit any field that is not available, or set it to null.

Markdown content:

{content}
"""


class EventDetailExtractor:
    def __init__(self, llm: LLMClient):
        self.llm = llm

    async def extract(self, content: str) -> dict[str, Any]:
        """Ask the LLM for event details. A response that does not parse to an object yields {}."""
        response = await self.llm.generate(build_event_detail_prompt(content))
        parsed = parse_json_from_response(response)
        if not isinstance(parsed, dict):
            logger.warning("Event detail extraction returned no JSON object, no enrichment available")
            return {}
        return {key: value for key, value in parsed.items() if key in DETAIL_FIELDS and value is not None}


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    return str(value)


def _as_str_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        return [str(item) for item in value if item]
    return []


def to_scraped_data(details: dict[str, Any], event_url: str) -> ScrapedEventData:
    """Convert raw extractor output into the persisted detail blob. Registration falls back to the event URL."""
    return ScrapedEventData(
        description=_as_text(details.get("description")),
        original_event_date=_as_text(details.get("eventDate")),
        location=_as_text(details.get("location")),
        organizer=_as_text(details.get("organizer")),
        price=_as_text(details.get("price")),
        category=_as_text(details.get("category")),
        tags=_as_str_list(details.get("tags")),
        image_urls=_as_str_list(details.get("imageUrls")),
        registration_url=_as_text(details.get("registrationUrl")) or event_url,
        contact_info=_as_text(details.get("contactInfo")),
        additional_details=_as_text(details.get("additionalDetails")),
    )
