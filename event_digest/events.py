"""
Event lifecycle and the enrichment -> embedding -> matching job chain.

Creating an event enqueues enrichment on the scrape pool. Whatever the
enrichment outcome, its completion callback enqueues embedding generation and
(re)schedules subscription matching `match_delay` out. Job handle fields on the
event are cleared in `finally` blocks, and only while they still name the job
that is finishing; a job rescheduled mid-run keeps the new handle.
"""
import logging
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Callable, Optional

from event_digest.deduplication import normalize_url
from event_digest.email_queue import EmailQueue
from event_digest.embeddings import EmbeddingGenerator
from event_digest.errors import InvalidInputError, NotFoundError, PipelineError
from event_digest.matching.matcher import Matcher
from event_digest.models import Event, JobStatus, OperationResult, ensure_utc, utc_now
from event_digest.scrapers.content_fetcher import ContentFetcher, validate_url
from event_digest.scrapers.event_detail_extractor import EventDetailExtractor, to_scraped_data
from event_digest.scrapers.images import select_best_image_url
from event_digest.store import Store
from event_digest.workpool import (
    EMBEDDING_POOL,
    MATCHING_POOL,
    SCRAPE_POOL,
    JobNotFoundError,
    JobQueue,
    cancel_quietly,
    current_job_handle,
)

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = {"title", "description", "event_date", "image_url", "url"}


class EventService:
    def __init__(
        self,
        store: Store,
        queue: JobQueue,
        fetcher: ContentFetcher,
        detail_extractor: EventDetailExtractor,
        embeddings: EmbeddingGenerator,
        matcher: Matcher,
        email_queue: EmailQueue,
        match_delay: timedelta = timedelta(hours=8),
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.queue = queue
        self.fetcher = fetcher
        self.detail_extractor = detail_extractor
        self.embeddings = embeddings
        self.matcher = matcher
        self.email_queue = email_queue
        self.match_delay = match_delay
        self.clock = clock

    # CRUD

    def create_event(
        self,
        title: str,
        description: str,
        event_date: datetime,
        url: str,
        image_url: str = "",
        source_id: Optional[str] = None,
    ) -> Event:
        """Insert an event and enqueue its enrichment. Raises InvalidInputError on a bad or duplicate URL."""
        url = normalize_url(validate_url(url))
        title = title.strip()
        if not title:
            raise InvalidInputError("Event title must not be empty")
        if self.store.get_event_by_url(url) is not None:
            raise InvalidInputError(f"Event with URL {url} already exists")

        event = self.store.insert_event(Event(
            title=title,
            description=description,
            event_date=event_date,
            url=url,
            image_url=image_url or "",
            source_id=source_id,
        ))
        logger.info(f"Created event {event.id}: {title}")
        self.enqueue_enrichment(event.id)
        return event

    def update_event(self, event_id: str, **changes: Any) -> Event:
        """Patch editable fields. A title or description change refreshes the embedding and reschedules matching."""
        event = self.store.get_event(event_id)
        if event is None:
            raise NotFoundError(f"Event {event_id} not found")
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise InvalidInputError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        if changes.get("event_date") is not None:
            changes["event_date"] = ensure_utc(changes["event_date"])
        if "url" in changes:
            changes["url"] = normalize_url(validate_url(changes["url"]))
            other = self.store.get_event_by_url(changes["url"])
            if other is not None and other.id != event_id:
                raise InvalidInputError(f"Event with URL {changes['url']} already exists")

        text_changed = any(
            field in changes and changes[field] != getattr(event, field)
            for field in ("title", "description")
        )
        if text_changed:
            changes["description_embedding"] = None
        updated = self.store.patch_event(event_id, **changes)

        if text_changed:
            logger.info(f"Event {event_id} text changed, refreshing embedding and matching")
            self.enqueue_embedding(event_id)
            self.schedule_matching(event_id)
        return updated

    def delete_event(self, event_id: str) -> OperationResult:
        """Cancel every job the event owns, drop its queued emails, then delete it."""
        event = self.store.get_event(event_id)
        if event is None:
            return OperationResult(success=False, message=f"Event {event_id} not found")

        for handle in (event.scrape_work_id, event.embedding_work_id, event.subscription_match_work_id):
            cancel_quietly(self.queue, handle)
        removed = self.email_queue.delete_for_event(event_id)
        self.store.delete_event(event_id)
        logger.info(f"Deleted event {event_id} and {removed} queued emails")
        return OperationResult(success=True, message="Event deleted", data={"queue_items_removed": removed})

    # Enrichment

    def enqueue_enrichment(self, event_id: str) -> str:
        event = self.store.get_event(event_id)
        if event is None:
            raise NotFoundError(f"Event {event_id} not found")
        cancel_quietly(self.queue, event.scrape_work_id)
        handle = self.queue.enqueue(
            SCRAPE_POOL,
            partial(self._run_enrichment, event_id),
            on_complete=self.on_enrichment_complete,
            context={"event_id": event_id},
        )
        self.store.patch_event(event_id, scrape_work_id=handle, scrape_enqueued_at=self.clock())
        return handle

    async def _run_enrichment(self, event_id: str) -> None:
        result = await self.perform_enrichment(event_id)
        if not result.success:
            # Mark the job failed; the completion callback still runs
            raise PipelineError(result.message)

    async def perform_enrichment(self, event_id: str) -> OperationResult:
        """Fetch the event page, extract details and merge them onto the event."""
        event = self.store.get_event(event_id)
        if event is None:
            return OperationResult(success=False, message=f"Event {event_id} not found")

        try:
            content = await self.fetcher.fetch(event.url)
            details = await self.detail_extractor.extract(content)
            now = self.clock()
            if not details:
                self.store.patch_event(event_id, last_scraped_at=now)
                return OperationResult(success=True, message="No details extracted, event left unchanged")

            scraped = to_scraped_data(details, event.url)
            updates: dict[str, Any] = {"scraped_data": scraped, "last_scraped_at": now}
            if scraped.description:
                updates["description"] = scraped.description
            best_image = select_best_image_url(scraped.image_urls)
            if best_image:
                updates["image_url"] = best_image
            self.store.patch_event(event_id, **updates)
            logger.info(f"Enriched event {event_id} with {len(details)} fields")
            return OperationResult(
                success=True,
                message="Event enriched",
                data={"fields": sorted(details), "image_url": best_image},
            )
        except PipelineError as e:
            logger.error(f"Enrichment of event {event_id} failed: {e}")
            return OperationResult(success=False, message=f"Failed to scrape event: {e}")
        finally:
            self._release_handle(event_id, "scrape_work_id", scrape_enqueued_at=None)

    async def on_enrichment_complete(self, handle: str, outcome: str, context: dict) -> None:
        event_id = context["event_id"]
        if self.store.get_event(event_id) is None:
            logger.info(f"Enrichment job {handle} finished ({outcome}) for deleted event {event_id}")
            return
        if outcome != "success":
            logger.warning(f"Enrichment of {event_id} ended with {outcome}, embedding from list-level data")
        self.enqueue_embedding(event_id)
        self.schedule_matching(event_id)

    # Embedding

    def enqueue_embedding(self, event_id: str) -> str:
        event = self.store.get_event(event_id)
        if event is None:
            raise NotFoundError(f"Event {event_id} not found")
        cancel_quietly(self.queue, event.embedding_work_id)
        handle = self.queue.enqueue(EMBEDDING_POOL, partial(self._run_embedding, event_id))
        self.store.patch_event(event_id, embedding_work_id=handle, embedding_enqueued_at=self.clock())
        return handle

    async def _run_embedding(self, event_id: str) -> None:
        result = await self.perform_embedding(event_id)
        if not result.success:
            raise PipelineError(result.message)

    async def perform_embedding(self, event_id: str) -> OperationResult:
        event = self.store.get_event(event_id)
        if event is None:
            return OperationResult(success=False, message=f"Event {event_id} not found")
        try:
            if event.description_embedding:
                return OperationResult(success=True, message="Event already has an embedding")
            return await self.embeddings.generate_for_event(event_id)
        finally:
            self._release_handle(event_id, "embedding_work_id", embedding_enqueued_at=None)

    # Matching

    def schedule_matching(self, event_id: str, delay: Optional[timedelta] = None) -> str:
        """Replace any pending match job for the event with one `delay` (default match_delay) out."""
        event = self.store.get_event(event_id)
        if event is None:
            raise NotFoundError(f"Event {event_id} not found")
        delay = self.match_delay if delay is None else delay
        cancel_quietly(self.queue, event.subscription_match_work_id)
        handle = self.queue.enqueue(
            MATCHING_POOL,
            partial(self._run_matching, event_id),
            delay=delay.total_seconds(),
        )
        self.store.patch_event(
            event_id,
            subscription_match_work_id=handle,
            subscription_match_scheduled_at=self.clock() + delay,
        )
        return handle

    async def _run_matching(self, event_id: str) -> None:
        try:
            result = await self.matcher.process_event_for_subscriptions(event_id)
            if not result.success:
                raise PipelineError(result.message)
        finally:
            self._release_handle(
                event_id, "subscription_match_work_id", subscription_match_scheduled_at=None
            )

    def _release_handle(self, event_id: str, handle_field: str, **also: Any) -> None:
        """Clear a handle field if it still belongs to the running job."""
        event = self.store.get_event(event_id)
        if event is None:
            return
        handle = getattr(event, handle_field)
        if handle is None or handle != current_job_handle():
            return
        self.store.patch_event(event_id, **{handle_field: None}, **also)

    def job_statuses(self, event_id: str) -> dict[str, Optional[JobStatus]]:
        event = self.store.get_event(event_id)
        if event is None:
            raise NotFoundError(f"Event {event_id} not found")
        handles = {
            "enrichment": event.scrape_work_id,
            "embedding": event.embedding_work_id,
            "matching": event.subscription_match_work_id,
        }
        statuses: dict[str, Optional[JobStatus]] = {}
        for name, handle in handles.items():
            statuses[name] = None
            if handle:
                try:
                    statuses[name] = self.queue.status(handle)
                except JobNotFoundError:
                    logger.debug(f"{name} job {handle} for {event_id} no longer tracked")
        return statuses
