"""
Route events to subscriptions.

Two entry points share one scorer: fan-out of a single event to every active
subscription, and a pull for one subscription over text + vector search
candidates. A read-only preview runs the pull retrieval for an unsaved prompt.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from pydantic import BaseModel

from event_digest.deduplication import merge_scored_results
from event_digest.email_queue import EmailQueue
from event_digest.embeddings import EmbeddingGenerator
from event_digest.errors import PipelineError
from event_digest.matching.similarity import SIMILARITY_THRESHOLD, meets_threshold, score_match
from event_digest.models import AllEventsSubscription, Event, OperationResult, PromptSubscription, utc_now
from event_digest.store import Store

logger = logging.getLogger(__name__)

CANDIDATE_LIMIT = 50
PREVIEW_LIMIT = 15


class PreviewMatch(BaseModel):
    event: Event
    score: float
    match_type: str
    meets_threshold: bool
    threshold_value: float


class Matcher:
    def __init__(
        self,
        store: Store,
        queue: EmailQueue,
        embeddings: EmbeddingGenerator,
        threshold: float = SIMILARITY_THRESHOLD,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.queue = queue
        self.embeddings = embeddings
        self.threshold = threshold
        self.clock = clock

    async def process_event_for_subscriptions(self, event_id: str) -> OperationResult:
        """Score one event against every active subscription and queue the accepted matches."""
        now = self.clock()
        event = self.store.get_event(event_id)
        if event is None:
            logger.warning(f"Matching skipped, event {event_id} no longer exists")
            return OperationResult(success=False, message=f"Event {event_id} not found")
        if event.event_date <= now:
            logger.info(f"Matching skipped, event {event_id} is in the past")
            return OperationResult(success=True, message="Event is in the past", data={"checked": 0, "matched": 0})

        subscriptions = [sub for sub in self.store.list_subscriptions() if sub.is_active]
        matched = 0
        for subscription in subscriptions:
            try:
                result = score_match(subscription, event, now, self.threshold)
                if not result.accepted:
                    logger.debug(f"Event {event_id} rejected for {subscription.id}: {result.reason}")
                    continue
                self.queue.add_to_queue(subscription.id, event.id, result.score, result.match_type, now=now)
                matched += 1
            except PipelineError as e:
                logger.error(f"Matching event {event_id} against {subscription.id} failed: {e}")

        logger.info(f"Event {event_id}: {matched}/{len(subscriptions)} subscriptions matched")
        return OperationResult(
            success=True,
            message=f"Matched {matched} of {len(subscriptions)} subscriptions",
            data={"checked": len(subscriptions), "matched": matched},
        )

    def candidate_events(self, prompt: str, prompt_embedding: Optional[list[float]]) -> list[tuple[Event, float]]:
        text_hits = self.store.search_events(prompt, limit=CANDIDATE_LIMIT)
        vector_hits = []
        if prompt_embedding:
            vector_hits = self.store.vector_search_events(prompt_embedding, limit=CANDIDATE_LIMIT)
        return merge_scored_results(text_hits, vector_hits)

    async def match_subscription(self, subscription_id: str, max_results: int = 10) -> OperationResult:
        """Pull the best future events for one subscription into its email queue."""
        now = self.clock()
        subscription = self.store.get_subscription(subscription_id)
        if subscription is None:
            return OperationResult(success=False, message=f"Subscription {subscription_id} not found")
        if not subscription.is_active:
            return OperationResult(success=False, message="Subscription is not active")

        if isinstance(subscription, AllEventsSubscription):
            candidates = sorted(
                (e for e in self.store.list_events() if e.event_date > now),
                key=lambda e: (e.event_date, e.id),
            )
        else:
            candidates = [event for event, _ in self.candidate_events(subscription.prompt, subscription.prompt_embedding)]

        accepted = []
        for event in candidates:
            result = score_match(subscription, event, now, self.threshold)
            if result.accepted:
                accepted.append((event, result))
        accepted.sort(key=lambda pair: (-pair[1].score, pair[0].event_date, pair[0].id))

        queued = 0
        for event, result in accepted[:max_results]:
            self.queue.add_to_queue(subscription.id, event.id, result.score, result.match_type, now=now)
            queued += 1

        return OperationResult(
            success=True,
            message=f"Queued {queued} events for subscription",
            data={"candidates": len(candidates), "matched": len(accepted), "queued": queued},
        )

    async def preview_matching_events(self, prompt: str, limit: int = PREVIEW_LIMIT) -> list[PreviewMatch]:
        """Score candidate events for an unsaved prompt. Nothing is written."""
        now = self.clock()
        prompt = prompt.strip()
        if not prompt:
            return []

        embedding = None
        try:
            embedding = await self.embeddings.generate(prompt)
        except PipelineError as e:
            logger.warning(f"Preview falling back to text search, prompt embedding failed: {e}")

        candidate = PromptSubscription(user_id="preview", prompt=prompt, prompt_embedding=embedding)
        previews = []
        for event, _ in self.candidate_events(prompt, embedding):
            if event.event_date <= now:
                continue
            result = score_match(candidate, event, now, self.threshold)
            previews.append(PreviewMatch(
                event=event,
                score=result.score,
                match_type=result.match_type,
                meets_threshold=meets_threshold(result.score, self.threshold),
                threshold_value=self.threshold,
            ))
        previews.sort(key=lambda p: (-p.score, p.event.event_date, p.event.id))
        return previews[:limit]
