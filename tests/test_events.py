import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from conftest import START

from event_digest.errors import InvalidInputError, NotFoundError
from event_digest.models import Event
from event_digest.workpool import MATCHING_POOL

EVENT_URL = "https://e.com/t1"


def create(pipeline, **overrides):
    fields = dict(
        title="Tech Talk",
        description="Short talks",
        event_date=START + timedelta(days=30),
        url=EVENT_URL,
    )
    fields.update(overrides)
    return pipeline.events.create_event(**fields)


def insert(store, title="Music night", description="live music"):
    return store.insert_event(Event(
        title=title, description=description, event_date=START + timedelta(days=30), url=EVENT_URL,
    ))


async def until(condition):
    for _ in range(100):
        if condition():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never held")


# =============================================================================
# CRUD
# =============================================================================

def test_create_event_enqueues_enrichment(pipeline, clock):
    event = create(pipeline)

    stored = pipeline.store.get_event(event.id)
    assert pipeline.queue.status(stored.scrape_work_id).state == "pending"
    assert stored.scrape_enqueued_at == clock.now()


def test_create_event_rejects_duplicate_url(pipeline):
    create(pipeline)

    with pytest.raises(InvalidInputError):
        create(pipeline, url=EVENT_URL + "#details")
    assert len(pipeline.store.list_events()) == 1


def test_create_event_rejects_bad_url(pipeline):
    with pytest.raises(InvalidInputError):
        create(pipeline, url="not a url")


def test_naive_event_date_is_treated_as_utc(pipeline):
    event = create(pipeline, event_date=datetime(2030, 1, 1, 19, 0))
    assert event.event_date == datetime(2030, 1, 1, 19, 0, tzinfo=timezone.utc)


def test_update_rejects_unknown_fields_and_missing_events(pipeline):
    event = create(pipeline)

    with pytest.raises(InvalidInputError):
        pipeline.events.update_event(event.id, source_id="src_other")
    with pytest.raises(NotFoundError):
        pipeline.events.update_event("evt_missing", title="x")


def test_update_text_refreshes_embedding_and_matching(pipeline, store, clock):
    event = create(pipeline)
    store.patch_event(event.id, description_embedding=[1.0, 0.0])

    clock.advance(hours=1)
    updated = pipeline.events.update_event(event.id, description="Now with live music")

    assert updated.description_embedding is None
    stored = store.get_event(event.id)
    assert pipeline.queue.status(stored.embedding_work_id).state == "pending"
    assert stored.subscription_match_scheduled_at == clock.now() + timedelta(hours=8)


def test_update_without_text_change_keeps_embedding(pipeline, store):
    event = create(pipeline)
    store.patch_event(event.id, description_embedding=[1.0, 0.0])

    updated = pipeline.events.update_event(event.id, title="Tech Talk", image_url="https://x/a.jpg")

    assert updated.description_embedding == [1.0, 0.0]
    assert updated.embedding_work_id is None


def test_update_url_must_stay_unique(pipeline):
    create(pipeline)
    other = create(pipeline, url="https://e.com/t2")

    with pytest.raises(InvalidInputError):
        pipeline.events.update_event(other.id, url=EVENT_URL)


def test_delete_event_cancels_jobs_and_queue_items(pipeline, store):
    event = create(pipeline)
    pipeline.events.schedule_matching(event.id)
    pipeline.email_queue.add_to_queue("sub_1", event.id, 0.9, "semantic", now=START)
    stored = store.get_event(event.id)

    result = pipeline.events.delete_event(event.id)

    assert result.success
    assert result.data == {"queue_items_removed": 1}
    assert store.get_event(event.id) is None
    assert pipeline.queue.status(stored.scrape_work_id).state == "canceled"
    assert pipeline.queue.status(stored.subscription_match_work_id).state == "canceled"
    assert store.list_queue_items() == []
    assert not pipeline.events.delete_event(event.id).success


# =============================================================================
# Enrichment chain
# =============================================================================

def test_enrichment_merges_details_and_picks_best_image(pipeline, fetcher, llm, store):
    fetcher.pages[EVENT_URL] = "# Tech Talk"
    llm.detail_response = json.dumps({
        "description": "Five speakers, ten minutes each",
        "location": "Hall A",
        "tags": ["ai", "talks"],
        "imageUrls": ["https://cdn.x/tr=w-400/a.jpg", "https://cdn.x/tr=w-1200/b.jpg"],
    })

    async def scenario():
        event = create(pipeline)
        await pipeline.queue.join()
        return store.get_event(event.id)

    event = asyncio.run(scenario())

    assert event.description == "Five speakers, ten minutes each"
    assert event.image_url == "https://cdn.x/tr=w-1200/b.jpg"
    assert event.scraped_data.tags == ["ai", "talks"]
    assert event.scraped_data.registration_url == EVENT_URL
    assert event.last_scraped_at == START
    assert event.scrape_work_id is None
    assert event.description_embedding is not None


def test_enrichment_with_no_details_only_stamps_time(pipeline, fetcher, store):
    fetcher.pages[EVENT_URL] = "# Tech Talk"

    result = asyncio.run(pipeline.events.perform_enrichment(create(pipeline).id))

    [event] = store.list_events()
    assert result.success
    assert event.description == "Short talks"
    assert event.scraped_data is None
    assert event.last_scraped_at == START


def test_failed_enrichment_still_embeds_and_schedules_matching(pipeline, store, clock):
    async def scenario():
        event = create(pipeline)
        await pipeline.queue.join()
        return store.get_event(event.id)

    event = asyncio.run(scenario())

    assert event.last_scraped_at is None
    assert event.scrape_work_id is None
    assert event.description_embedding is not None
    assert event.subscription_match_scheduled_at == clock.now() + timedelta(hours=8)


def test_matching_runs_after_delay(pipeline, store, clock, user):
    subscription = pipeline.subscriptions.create_all_events_subscription(user.id)

    async def scenario():
        event = create(pipeline)
        await pipeline.queue.join()
        assert store.list_queue_items() == []

        clock.advance(hours=7, minutes=59)
        pipeline.queue.pump()
        await pipeline.queue.join()
        assert store.list_queue_items() == []

        clock.advance(minutes=1)
        pipeline.queue.pump()
        await pipeline.queue.join()
        return store.get_event(event.id)

    event = asyncio.run(scenario())

    [item] = store.list_queue_items(subscription_id=subscription.id)
    assert item.event_id == event.id
    assert item.match_type == "all_events"
    assert event.subscription_match_work_id is None
    assert event.subscription_match_scheduled_at is None


def test_rescheduling_matching_keeps_one_pending_job(pipeline, store):
    event = create(pipeline)
    first = pipeline.events.schedule_matching(event.id)
    second = pipeline.events.schedule_matching(event.id, delay=timedelta(hours=1))

    assert pipeline.queue.status(first).state == "canceled"
    assert store.get_event(event.id).subscription_match_work_id == second


def test_job_statuses(pipeline):
    event = create(pipeline)

    statuses = pipeline.events.job_statuses(event.id)

    assert statuses["enrichment"].state == "pending"
    assert statuses["embedding"] is None
    assert statuses["matching"] is None


# =============================================================================
# Rescheduling while a job is running
# =============================================================================

NEW_TEXT_VECTOR = [2.0, 0.0, 2.0, 0.0, 0.01]


def test_edit_while_embedding_runs_discards_old_vector_finishing_last(pipeline, store, embedder):
    async def scenario():
        event = insert(store)
        old_gate = asyncio.Event()
        embedder.gates.append(old_gate)
        old = pipeline.events.enqueue_embedding(event.id)
        await until(lambda: embedder.calls)

        pipeline.events.update_event(event.id, title="AI food festival", description="ai and food")
        await until(lambda: store.get_event(event.id).description_embedding is not None)

        old_gate.set()
        await pipeline.queue.join()
        return old, store.get_event(event.id)

    old, event = asyncio.run(scenario())

    assert event.description_embedding == NEW_TEXT_VECTOR
    assert event.embedding_work_id is None
    assert pipeline.queue.status(old).state == "finished"


def test_edit_while_embedding_runs_discards_old_vector_finishing_first(pipeline, store, embedder):
    async def scenario():
        event = insert(store)
        old_gate, new_gate = asyncio.Event(), asyncio.Event()
        embedder.gates.extend([old_gate, new_gate])
        old = pipeline.events.enqueue_embedding(event.id)
        await until(lambda: embedder.calls)

        pipeline.events.update_event(event.id, title="AI food festival", description="ai and food")
        new = store.get_event(event.id).embedding_work_id
        await until(lambda: len(embedder.calls) == 2)

        old_gate.set()
        await until(lambda: pipeline.queue.status(old).state == "finished")
        assert store.get_event(event.id).description_embedding is None
        assert store.get_event(event.id).embedding_work_id == new

        new_gate.set()
        await pipeline.queue.join()
        return store.get_event(event.id)

    event = asyncio.run(scenario())

    assert event.description_embedding == NEW_TEXT_VECTOR
    assert event.embedding_work_id is None


def test_reschedule_while_matching_runs_keeps_new_handle(pipeline, store, monkeypatch):
    matcher = pipeline.events.matcher
    original = matcher.process_event_for_subscriptions
    gate_holder = {}
    started = []

    async def held(event_id):
        started.append(event_id)
        await gate_holder["gate"].wait()
        return await original(event_id)

    monkeypatch.setattr(matcher, "process_event_for_subscriptions", held)

    async def scenario():
        gate_holder["gate"] = asyncio.Event()
        event = insert(store, title="Tech Talk", description="Short talks")
        old = pipeline.events.schedule_matching(event.id, delay=timedelta(0))
        await until(lambda: started)

        pipeline.events.update_event(event.id, title="Tech Talk: AI edition")
        new = store.get_event(event.id).subscription_match_work_id
        assert new != old

        gate_holder["gate"].set()
        await pipeline.queue.join()

        assert pipeline.queue.status(old).state == "finished"
        assert store.get_event(event.id).subscription_match_work_id == new
        assert pipeline.queue.status(new).state == "pending"

        latest = pipeline.events.schedule_matching(event.id)
        assert pipeline.queue.status(new).state == "canceled"
        assert pipeline.queue.pending_count(MATCHING_POOL) == 1

        pipeline.events.delete_event(event.id)
        return latest

    latest = asyncio.run(scenario())

    assert pipeline.queue.status(latest).state == "canceled"
    assert pipeline.queue.pending_count() == 0
