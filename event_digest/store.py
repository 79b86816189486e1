"""
Entity store contract and an in-process reference implementation.

All coordination state (job handles, timestamps, embeddings) lives here and is
read-modify-written one entity at a time; nothing assumes cross-entity transactions.
"""
import re
from typing import Optional, Protocol, TypeVar, Union

from pydantic import BaseModel

from event_digest.errors import InvalidInputError, NotFoundError
from event_digest.matching.similarity import cosine_similarity
from event_digest.models import (
    AllEventsSubscription,
    EmailQueueItem,
    Event,
    EventSource,
    PromptSubscription,
    TestScrape,
    User,
)


AnySubscription = Union[PromptSubscription, AllEventsSubscription]
M = TypeVar("M", bound=BaseModel)

WORD_PATTERN = re.compile(r"[a-z0-9]+")


class Store(Protocol):
    """What the pipeline needs from durable storage."""

    def get_source(self, source_id: str) -> Optional[EventSource]: ...
    def list_sources(self) -> list[EventSource]: ...
    def insert_source(self, source: EventSource) -> EventSource: ...
    def patch_source(self, source_id: str, **fields) -> EventSource: ...
    def delete_source(self, source_id: str) -> None: ...

    def get_event(self, event_id: str) -> Optional[Event]: ...
    def get_event_by_url(self, url: str) -> Optional[Event]: ...
    def list_events(self) -> list[Event]: ...
    def insert_event(self, event: Event) -> Event: ...
    def patch_event(self, event_id: str, **fields) -> Event: ...
    def delete_event(self, event_id: str) -> None: ...
    def search_events(self, text: str, limit: int = 20) -> list[tuple[Event, float]]: ...
    def vector_search_events(self, vector: list[float], limit: int = 20) -> list[tuple[Event, float]]: ...

    def get_subscription(self, subscription_id: str) -> Optional[AnySubscription]: ...
    def list_subscriptions(self) -> list[AnySubscription]: ...
    def insert_subscription(self, subscription: AnySubscription) -> AnySubscription: ...
    def patch_subscription(self, subscription_id: str, **fields) -> AnySubscription: ...
    def delete_subscription(self, subscription_id: str) -> None: ...
    def vector_search_subscriptions(
        self, vector: list[float], limit: int = 20
    ) -> list[tuple[PromptSubscription, float]]: ...

    def get_unsent_queue_item(self, subscription_id: str, event_id: str) -> Optional[EmailQueueItem]: ...
    def list_queue_items(
        self, subscription_id: Optional[str] = None, sent: Optional[bool] = None
    ) -> list[EmailQueueItem]: ...
    def insert_queue_item(self, item: EmailQueueItem) -> EmailQueueItem: ...
    def patch_queue_item(self, item_id: str, **fields) -> EmailQueueItem: ...
    def delete_queue_item(self, item_id: str) -> None: ...

    def get_user(self, user_id: str) -> Optional[User]: ...
    def insert_user(self, user: User) -> User: ...

    def get_test_scrape(self, test_scrape_id: str) -> Optional[TestScrape]: ...
    def list_test_scrapes(self) -> list[TestScrape]: ...
    def insert_test_scrape(self, test_scrape: TestScrape) -> TestScrape: ...
    def patch_test_scrape(self, test_scrape_id: str, **fields) -> TestScrape: ...


def text_relevance(query: str, text: str) -> float:
    """Share of query terms (3+ chars) that appear in text, case-insensitive."""
    terms = {t for t in WORD_PATTERN.findall(query.lower()) if len(t) > 2}
    if not terms:
        return 0.0
    haystack = text.lower()
    return sum(1 for t in terms if t in haystack) / len(terms)


class MemoryStore:
    """Dict-backed store. Patches replace the stored model so readers never see partial writes."""

    def __init__(self):
        self.sources: dict[str, EventSource] = {}
        self.events: dict[str, Event] = {}
        self.subscriptions: dict[str, AnySubscription] = {}
        self.queue: dict[str, EmailQueueItem] = {}
        self.users: dict[str, User] = {}
        self.test_scrapes: dict[str, TestScrape] = {}

    @staticmethod
    def _patch(table: dict[str, M], entity_id: str, fields: dict) -> M:
        current = table.get(entity_id)
        if current is None:
            raise NotFoundError(f"{entity_id} not found")
        updated = current.model_copy(update=fields)
        table[entity_id] = updated
        return updated

    # Sources

    def get_source(self, source_id: str) -> Optional[EventSource]:
        return self.sources.get(source_id)

    def list_sources(self) -> list[EventSource]:
        return list(self.sources.values())

    def insert_source(self, source: EventSource) -> EventSource:
        self.sources[source.id] = source
        return source

    def patch_source(self, source_id: str, **fields) -> EventSource:
        return self._patch(self.sources, source_id, fields)

    def delete_source(self, source_id: str) -> None:
        self.sources.pop(source_id, None)

    # Events

    def get_event(self, event_id: str) -> Optional[Event]:
        return self.events.get(event_id)

    def get_event_by_url(self, url: str) -> Optional[Event]:
        for event in self.events.values():
            if event.url == url:
                return event
        return None

    def list_events(self) -> list[Event]:
        return list(self.events.values())

    def insert_event(self, event: Event) -> Event:
        if self.get_event_by_url(event.url) is not None:
            raise InvalidInputError(f"Event with url {event.url} already exists")
        self.events[event.id] = event
        return event

    def patch_event(self, event_id: str, **fields) -> Event:
        return self._patch(self.events, event_id, fields)

    def delete_event(self, event_id: str) -> None:
        self.events.pop(event_id, None)

    def search_events(self, text: str, limit: int = 20) -> list[tuple[Event, float]]:
        hits = []
        for event in self.events.values():
            score = text_relevance(text, f"{event.title} {event.description}")
            if score > 0:
                hits.append((event, score))
        hits.sort(key=lambda hit: hit[1], reverse=True)
        return hits[:limit]

    def vector_search_events(self, vector: list[float], limit: int = 20) -> list[tuple[Event, float]]:
        hits = [
            (event, cosine_similarity(vector, event.description_embedding))
            for event in self.events.values()
            if event.description_embedding
        ]
        hits.sort(key=lambda hit: hit[1], reverse=True)
        return hits[:limit]

    # Subscriptions

    def get_subscription(self, subscription_id: str) -> Optional[AnySubscription]:
        return self.subscriptions.get(subscription_id)

    def list_subscriptions(self) -> list[AnySubscription]:
        return list(self.subscriptions.values())

    def insert_subscription(self, subscription: AnySubscription) -> AnySubscription:
        self.subscriptions[subscription.id] = subscription
        return subscription

    def patch_subscription(self, subscription_id: str, **fields) -> AnySubscription:
        return self._patch(self.subscriptions, subscription_id, fields)

    def delete_subscription(self, subscription_id: str) -> None:
        self.subscriptions.pop(subscription_id, None)

    def vector_search_subscriptions(
        self, vector: list[float], limit: int = 20
    ) -> list[tuple[PromptSubscription, float]]:
        hits = [
            (sub, cosine_similarity(vector, sub.prompt_embedding))
            for sub in self.subscriptions.values()
            if isinstance(sub, PromptSubscription) and sub.prompt_embedding
        ]
        hits.sort(key=lambda hit: hit[1], reverse=True)
        return hits[:limit]

    # Email queue

    def get_unsent_queue_item(self, subscription_id: str, event_id: str) -> Optional[EmailQueueItem]:
        for item in self.queue.values():
            if item.subscription_id == subscription_id and item.event_id == event_id and not item.email_sent:
                return item
        return None

    def list_queue_items(
        self, subscription_id: Optional[str] = None, sent: Optional[bool] = None
    ) -> list[EmailQueueItem]:
        return [
            item for item in self.queue.values()
            if (subscription_id is None or item.subscription_id == subscription_id)
            and (sent is None or item.email_sent == sent)
        ]

    def insert_queue_item(self, item: EmailQueueItem) -> EmailQueueItem:
        self.queue[item.id] = item
        return item

    def patch_queue_item(self, item_id: str, **fields) -> EmailQueueItem:
        return self._patch(self.queue, item_id, fields)

    def delete_queue_item(self, item_id: str) -> None:
        self.queue.pop(item_id, None)

    # Users

    def get_user(self, user_id: str) -> Optional[User]:
        return self.users.get(user_id)

    def insert_user(self, user: User) -> User:
        self.users[user.id] = user
        return user

    # Test scrapes

    def get_test_scrape(self, test_scrape_id: str) -> Optional[TestScrape]:
        return self.test_scrapes.get(test_scrape_id)

    def list_test_scrapes(self) -> list[TestScrape]:
        return sorted(self.test_scrapes.values(), key=lambda t: t.started_at, reverse=True)

    def insert_test_scrape(self, test_scrape: TestScrape) -> TestScrape:
        self.test_scrapes[test_scrape.id] = test_scrape
        return test_scrape

    def patch_test_scrape(self, test_scrape_id: str, **fields) -> TestScrape:
        return self._patch(self.test_scrapes, test_scrape_id, fields)
