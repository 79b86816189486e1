import asyncio

import httpx
import pytest

from conftest import FakeLLM

from event_digest.errors import InvalidInputError, UpstreamError
from event_digest.scrapers.content_fetcher import ContentFetcher, truncate_content
from event_digest.scrapers.event_detail_extractor import EventDetailExtractor, to_scraped_data
from event_digest.scrapers.event_list_extractor import EventListExtractor, scrape_url
from event_digest.scrapers.images import filter_image_urls, select_best_image_url
from event_digest.scrapers.llm import parse_json_from_response


def make_fetcher(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ContentFetcher("secret", client=client, **kwargs)


# =============================================================================
# Content fetcher
# =============================================================================

def test_fetch_sends_proxy_headers():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        return httpx.Response(200, text="# Events")

    content = asyncio.run(make_fetcher(handler).fetch("https://example.com/events"))

    assert content == "# Events"
    assert seen["url"].startswith("https://r.jina.ai/")
    assert seen["url"].endswith("example.com/events")
    assert seen["headers"]["authorization"] == "Bearer secret"
    assert seen["headers"]["x-return-format"] == "markdown"
    assert seen["headers"]["x-with-images-summary"] == "true"
    assert seen["headers"]["x-with-links-summary"] == "true"


def test_fetch_truncates_to_byte_cap():
    def handler(request):
        return httpx.Response(200, text="x" * 500)

    content = asyncio.run(make_fetcher(handler, max_bytes=100).fetch("https://example.com"))

    assert content == "x" * 100 + "..."


def test_truncate_content_does_not_split_multibyte_characters():
    assert truncate_content("é" * 10, 5) == "éé..."
    assert truncate_content("short", 100) == "short"


def test_fetch_non_2xx_raises_upstream_error_with_status():
    def handler(request):
        return httpx.Response(503)

    with pytest.raises(UpstreamError) as excinfo:
        asyncio.run(make_fetcher(handler).fetch("https://example.com"))

    assert excinfo.value.status_code == 503
    assert "503 Service Unavailable" in str(excinfo.value)


def test_fetch_rejects_bad_url_before_any_request():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, text="")

    for bad in ("not a url", "ftp://example.com/file", "", "https://"):
        with pytest.raises(InvalidInputError):
            asyncio.run(make_fetcher(handler).fetch(bad))
    assert calls == []


def test_fetch_without_api_key_fails():
    with pytest.raises(UpstreamError):
        asyncio.run(ContentFetcher(None).fetch("https://example.com"))


def test_fetch_network_error_becomes_upstream_error():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    with pytest.raises(UpstreamError, match="network"):
        asyncio.run(make_fetcher(handler).fetch("https://example.com"))


# =============================================================================
# JSON extraction
# =============================================================================

def test_parse_json_with_prose_and_fences():
    text = 'Sure! Here you go:\n```json\n[{"title": "A [draft]"}]\n```\nHope that helps.'
    assert parse_json_from_response(text) == [{"title": "A [draft]"}]


def test_parse_json_first_balanced_value():
    assert parse_json_from_response('Result: {"a": {"b": 1}} trailing }') == {"a": {"b": 1}}


def test_parse_json_skips_non_json_brackets():
    assert parse_json_from_response("See [ref] for details: []") == []


def test_parse_json_failure_returns_none():
    assert parse_json_from_response("no json here") is None
    assert parse_json_from_response('{"unterminated": ') is None
    assert parse_json_from_response("") is None


# =============================================================================
# Extractors
# =============================================================================

def test_list_extractor_returns_items():
    llm = FakeLLM(list_response='[{"title": "Tech Talk", "url": "https://e.com/t1"}, "junk"]')

    events = asyncio.run(EventListExtractor(llm).extract("# page"))

    assert events == [{"title": "Tech Talk", "url": "https://e.com/t1"}]
    assert "# page" in llm.prompts[0]


def test_list_extractor_parse_failure_is_empty_list():
    llm = FakeLLM(list_response="I could not find any events, sorry.")
    assert asyncio.run(EventListExtractor(llm).extract("# page")) == []

    llm = FakeLLM(list_response='{"title": "not a list"}')
    assert asyncio.run(EventListExtractor(llm).extract("# page")) == []


def test_detail_extractor_parse_failure_is_empty_dict():
    llm = FakeLLM(detail_response="```json\n{broken\n```")
    assert asyncio.run(EventDetailExtractor(llm).extract("# page")) == {}


def test_detail_extractor_drops_unknown_and_null_fields():
    llm = FakeLLM(detail_response='{"location": "Hall A", "price": null, "mood": "great"}')
    assert asyncio.run(EventDetailExtractor(llm).extract("# page")) == {"location": "Hall A"}


def test_to_scraped_data_falls_back_to_event_url_for_registration():
    data = to_scraped_data({"tags": "ai", "eventDate": "2030-01-01 19:00"}, "https://e.com/t1")

    assert data.registration_url == "https://e.com/t1"
    assert data.tags == ["ai"]
    assert data.original_event_date == "2030-01-01 19:00"
    assert data.image_urls == []


def test_scrape_url_reports_failure_as_result():
    class BrokenFetcher:
        async def fetch(self, url):
            raise UpstreamError("Content fetch request failed: 500 Internal Server Error", status_code=500)

    result = asyncio.run(scrape_url(BrokenFetcher(), EventListExtractor(FakeLLM()), "https://e.com"))

    assert not result.success
    assert "500" in result.message


# =============================================================================
# Image selection
# =============================================================================

def test_image_selection_prefers_widest_transform():
    urls = [
        "https://x/img.jpg",
        "https://x/tr=w-3240,h-1920/img2.jpg",
        "https://x/events/poster.jpg",
    ]

    assert filter_image_urls(urls) == urls[:2]
    assert select_best_image_url(urls) == "https://x/tr=w-3240,h-1920/img2.jpg"


def test_image_selection_orders_by_width_then_scaled():
    urls = [
        "https://cdn.x/photo-scaled.png",
        "https://cdn.x/photo.png",
        "https://cdn.x/tr=w-800/a.webp",
        "https://cdn.x/tr=w-1600/b.webp",
    ]
    assert select_best_image_url(urls) == "https://cdn.x/tr=w-1600/b.webp"
    assert select_best_image_url(urls[:2]) == "https://cdn.x/photo.png"


def test_image_filter_keeps_media_hosts_and_query_strings():
    urls = [
        "https://media.example.com/abc123",
        "https://x/pic.JPEG?v=2",
        "https://x/event/123",
        "https://x/page.html",
    ]
    assert filter_image_urls(urls) == ["https://media.example.com/abc123", "https://x/pic.JPEG?v=2"]
    assert select_best_image_url(["https://x/page.html"]) is None


def test_zero_width_counts_as_no_width_and_equal_widths_keep_order():
    zero = ["https://cdn.x/tr=w-0/a.jpg", "https://cdn.x/plain.jpg"]
    equal = ["https://cdn.x/tr=w-800/a-scaled.jpg", "https://cdn.x/tr=w-800/b.jpg"]

    assert select_best_image_url(zero) == "https://cdn.x/tr=w-0/a.jpg"
    assert select_best_image_url(list(reversed(zero))) == "https://cdn.x/plain.jpg"
    assert select_best_image_url(equal) == "https://cdn.x/tr=w-800/a-scaled.jpg"
