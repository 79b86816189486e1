import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from conftest import START

from event_digest.errors import InvalidInputError
from event_digest.models import EventSource
from event_digest.sources import parse_event_date
from event_digest.workpool import SCRAPE_POOL

LISTING_URL = "https://e.com/events"


def listing(*items):
    return json.dumps(list(items))


# =============================================================================
# Date parsing
# =============================================================================

@pytest.mark.parametrize(
    "value, expected",
    [
        ("2030-01-01", datetime(2030, 1, 1, tzinfo=timezone.utc)),
        ("2030-03-15 19:00", datetime(2030, 3, 15, 19, 0, tzinfo=timezone.utc)),
        ("March 15, 2030", datetime(2030, 3, 15, tzinfo=timezone.utc)),
        ("03/15/2030", datetime(2030, 3, 15, tzinfo=timezone.utc)),
        (1893456000, datetime(2030, 1, 1, tzinfo=timezone.utc)),
        (1893456000000, datetime(2030, 1, 1, tzinfo=timezone.utc)),
    ],
)
def test_parse_event_date_formats(value, expected):
    assert parse_event_date(value, START) == expected


def test_parse_event_date_keeps_explicit_offset():
    parsed = parse_event_date("2030-01-01T19:00:00+02:00", START)
    assert parsed.utcoffset() == timedelta(hours=2)


@pytest.mark.parametrize("value", [None, "", "next tuesday", True, ["2030-01-01"]])
def test_parse_event_date_defaults_to_tomorrow(value):
    assert parse_event_date(value, START) == START + timedelta(days=1)


# =============================================================================
# Source scrape -> events
# =============================================================================

def test_source_scrape_creates_events_and_chains_jobs(pipeline, fetcher, llm, clock):
    fetcher.pages[LISTING_URL] = "# Upcoming events"
    fetcher.pages["https://e.com/t1"] = "# Tech Talk\nHall A"
    llm.list_response = listing({"title": "Tech Talk", "url": "https://e.com/t1", "eventDate": "2030-01-01"})
    llm.detail_response = json.dumps({"description": "Lightning talks on AI", "location": "Hall A"})

    async def scenario():
        source = pipeline.sources.create_source("Tech", LISTING_URL)
        result = await pipeline.sources.perform_source_scrape(source.id)
        await pipeline.queue.join()
        rerun = await pipeline.sources.perform_source_scrape(source.id)
        await pipeline.queue.join()
        return source, result, rerun

    source, result, rerun = asyncio.run(scenario())

    assert result.success
    assert result.data["total_events_found"] == 1
    assert result.data["new_events_created"] == 1

    [event] = pipeline.store.list_events()
    assert event.source_id == source.id
    assert event.event_date == datetime(2030, 1, 1, tzinfo=timezone.utc)
    assert event.description == "Lightning talks on AI"
    assert event.scraped_data.location == "Hall A"
    assert event.scrape_work_id is None
    assert event.description_embedding is not None
    assert event.embedding_work_id is None
    assert event.subscription_match_work_id is not None
    assert event.subscription_match_scheduled_at == clock.now() + timedelta(hours=8)
    assert pipeline.queue.status(event.subscription_match_work_id).state == "pending"

    assert rerun.data["new_events_created"] == 0
    assert rerun.data["existing_events_skipped"] == 1
    assert len(pipeline.store.list_events()) == 1


def test_source_scrape_counts_invalid_and_duplicate_candidates(pipeline, fetcher, llm):
    fetcher.pages[LISTING_URL] = "# Upcoming events"
    llm.list_response = listing(
        {"title": "Tech Talk", "url": "https://e.com/t1"},
        {"title": "Tech Talk again", "url": "https://e.com/t1#tickets"},
        {"title": "No link"},
        {"title": "Relative", "url": "/events/relative"},
    )

    async def scenario():
        source = pipeline.sources.create_source("Tech", LISTING_URL)
        result = await pipeline.sources.perform_source_scrape(source.id)
        await pipeline.queue.join()
        return result

    result = asyncio.run(scenario())

    assert result.data["total_events_found"] == 3
    assert result.data["new_events_created"] == 1
    assert result.data["invalid_events_skipped"] == 1
    assert result.data["failed_events"] == 1
    [event] = pipeline.store.list_events()
    assert event.description == "Event: Tech Talk. More details available at https://e.com/t1"


def test_failed_scrape_still_stamps_and_reschedules(pipeline, clock):
    async def scenario():
        source = pipeline.sources.create_source("Broken", LISTING_URL)
        first_handle = source.next_scrape_scheduled_id
        result = await pipeline.sources.perform_source_scrape(source.id)
        return first_handle, result, pipeline.store.get_source(source.id)

    first_handle, result, source = asyncio.run(scenario())

    assert not result.success
    assert "404" in result.message
    assert source.last_scraped_at == clock.now()
    assert source.next_scrape_scheduled_at == clock.now() + timedelta(days=3)
    assert source.next_scrape_scheduled_id != first_handle
    assert pipeline.queue.status(first_handle).state == "canceled"


def test_scheduled_scrape_runs_after_initial_delay(pipeline, fetcher, llm, clock):
    fetcher.pages[LISTING_URL] = "# Upcoming events"
    llm.list_response = listing({"title": "Tech Talk", "url": "https://e.com/t1"})

    async def scenario():
        source = pipeline.sources.create_source("Tech", LISTING_URL)
        await pipeline.queue.join()
        assert fetcher.requests == []

        clock.advance(minutes=5)
        pipeline.queue.pump()
        await pipeline.queue.join()
        return pipeline.store.get_source(source.id)

    source = asyncio.run(scenario())

    assert fetcher.requests[0] == LISTING_URL
    assert source.last_scraped_at == START + timedelta(minutes=5)
    assert source.next_scrape_scheduled_at == START + timedelta(minutes=5, days=3)
    assert len(pipeline.store.list_events()) == 1


# =============================================================================
# Scheduling
# =============================================================================

def test_reschedule_replaces_pending_scrape(pipeline):
    source = pipeline.sources.create_source("Tech", LISTING_URL)
    first = source.next_scrape_scheduled_id

    second = pipeline.sources.schedule_next_scrape(source.id)

    assert pipeline.queue.status(first).state == "canceled"
    assert pipeline.queue.status(second).state == "pending"
    assert pipeline.queue.pending_count(SCRAPE_POOL) == 1
    assert pipeline.store.get_source(source.id).next_scrape_scheduled_id == second


def test_new_source_is_scheduled_after_initial_delay(pipeline, clock):
    source = pipeline.sources.create_source("Tech", LISTING_URL)

    assert source.next_scrape_scheduled_at == clock.now() + timedelta(minutes=5)


def test_create_source_rejects_bad_input(pipeline):
    with pytest.raises(InvalidInputError):
        pipeline.sources.create_source("Tech", "e.com/events")
    with pytest.raises(InvalidInputError):
        pipeline.sources.create_source("  ", LISTING_URL)


def test_deactivating_source_cancels_pending_scrape(pipeline):
    source = pipeline.sources.create_source("Tech", LISTING_URL)
    handle = source.next_scrape_scheduled_id

    updated = pipeline.sources.update_source(source.id, is_active=False)

    assert updated.next_scrape_scheduled_id is None
    assert updated.next_scrape_scheduled_at is None
    assert pipeline.queue.status(handle).state == "canceled"
    assert pipeline.sources.schedule_next_scrape(source.id) is None


def test_reactivating_source_schedules_again(pipeline):
    source = pipeline.sources.create_source("Tech", LISTING_URL, is_active=False)
    assert source.next_scrape_scheduled_id is None

    updated = pipeline.sources.update_source(source.id, is_active=True)

    assert pipeline.queue.status(updated.next_scrape_scheduled_id).state == "pending"


def test_scheduled_scrape_of_inactive_source_does_nothing(pipeline, fetcher):
    source = pipeline.store.insert_source(EventSource(name="Off", starting_url=LISTING_URL, is_active=False))

    result = asyncio.run(pipeline.sources.perform_scheduled_scrape(source.id))

    assert not result.success
    assert fetcher.requests == []
    assert pipeline.store.get_source(source.id).next_scrape_scheduled_id is None


def test_delete_source_cancels_pending_scrape(pipeline):
    source = pipeline.sources.create_source("Tech", LISTING_URL)

    assert pipeline.sources.delete_source(source.id).success
    assert pipeline.queue.status(source.next_scrape_scheduled_id).state == "canceled"
    assert not pipeline.sources.delete_source(source.id).success


def test_fix_missing_schedules(pipeline, store, clock):
    never = store.insert_source(EventSource(name="Never", starting_url=LISTING_URL))
    recent = store.insert_source(EventSource(
        name="Recent", starting_url=LISTING_URL, last_scraped_at=clock.now() - timedelta(days=1),
    ))
    overdue = store.insert_source(EventSource(
        name="Overdue", starting_url=LISTING_URL, last_scraped_at=clock.now() - timedelta(days=10),
    ))
    healthy = pipeline.sources.create_source("Healthy", LISTING_URL)
    store.insert_source(EventSource(name="Off", starting_url=LISTING_URL, is_active=False))
    stale = store.insert_source(EventSource(
        name="Stale", starting_url=LISTING_URL, next_scrape_scheduled_id="job_gone",
    ))

    result = pipeline.sources.fix_missing_schedules()

    assert result.data["checked"] == 5
    assert result.data["fixed"] == 4
    assert "Healthy" not in result.data["sources"]
    assert store.get_source(never.id).next_scrape_scheduled_at == clock.now() + timedelta(minutes=5)
    assert store.get_source(recent.id).next_scrape_scheduled_at == clock.now() + timedelta(days=2)
    assert store.get_source(overdue.id).next_scrape_scheduled_at == clock.now()
    assert store.get_source(stale.id).next_scrape_scheduled_id != "job_gone"
    assert store.get_source(healthy.id).next_scrape_scheduled_id == healthy.next_scrape_scheduled_id

    # Running it again finds nothing to fix
    assert pipeline.sources.fix_missing_schedules().data["fixed"] == 0


# =============================================================================
# Test scrapes
# =============================================================================

def test_test_scrape_completes_without_creating_events(pipeline, fetcher, llm):
    fetcher.pages[LISTING_URL] = "# Upcoming events\n" + "x" * 1000
    llm.list_response = listing(
        {"title": "Tech Talk", "url": "https://e.com/t1"},
        {"title": "Jazz Night", "url": "https://e.com/j1"},
    )

    async def scenario():
        test_scrape = pipeline.sources.start_test_scrape(LISTING_URL)
        await pipeline.queue.join()
        return pipeline.store.get_test_scrape(test_scrape.id)

    test_scrape = asyncio.run(scenario())

    assert test_scrape.status == "completed"
    assert test_scrape.progress.stage == "completed"
    assert test_scrape.progress.events_found == 2
    assert test_scrape.result["events_found"] == 2
    assert len(test_scrape.result["content_preview"]) == 500
    assert test_scrape.completed_at is not None
    assert pipeline.store.list_events() == []


def test_test_scrape_failure_is_recorded(pipeline):
    async def scenario():
        test_scrape = pipeline.sources.start_test_scrape(LISTING_URL)
        await pipeline.queue.join()
        return pipeline.store.get_test_scrape(test_scrape.id)

    test_scrape = asyncio.run(scenario())

    assert test_scrape.status == "failed"
    assert test_scrape.progress.stage == "failed"
    assert test_scrape.result["success"] is False
    assert "404" in test_scrape.result["message"]
