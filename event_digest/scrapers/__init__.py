# Content fetching and LLM extraction
from .content_fetcher import ContentFetcher, validate_url
from .event_detail_extractor import EventDetailExtractor, to_scraped_data
from .event_list_extractor import EventListExtractor, ScrapeResult, scrape_url
from .images import filter_image_urls, select_best_image_url
from .llm import GeminiClient, LLMClient, parse_json_from_response

__all__ = [
    'ContentFetcher', 'validate_url',
    'EventDetailExtractor', 'to_scraped_data',
    'EventListExtractor', 'ScrapeResult', 'scrape_url',
    'filter_image_urls', 'select_best_image_url',
    'GeminiClient', 'LLMClient', 'parse_json_from_response',
]
