"""User subscriptions: prompt-based or all-events, plus the legacy row migration."""
import logging
from datetime import datetime
from functools import partial
from typing import Callable, Optional, Union

from event_digest.email_queue import EmailQueue
from event_digest.embeddings import EmbeddingGenerator
from event_digest.errors import InvalidInputError, NotFoundError, PipelineError
from event_digest.models import (
    AllEventsSubscription,
    OperationResult,
    PromptSubscription,
    migrate_subscription_rows,
    subscription_adapter,
    utc_now,
)
from event_digest.store import Store
from event_digest.workpool import EMBEDDING_POOL, JobQueue

logger = logging.getLogger(__name__)

AnySubscription = Union[PromptSubscription, AllEventsSubscription]


def validate_frequency(hours: int) -> int:
    if hours < 1:
        raise InvalidInputError("Email frequency must be at least 1 hour")
    return hours


def validate_prompt(prompt: str) -> str:
    prompt = (prompt or "").strip()
    if not prompt:
        raise InvalidInputError("Prompt must not be empty")
    return prompt


class SubscriptionService:
    def __init__(
        self,
        store: Store,
        queue: JobQueue,
        embeddings: EmbeddingGenerator,
        email_queue: EmailQueue,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.queue = queue
        self.embeddings = embeddings
        self.email_queue = email_queue
        self.clock = clock

    def create_prompt_subscription(
        self, user_id: str, prompt: str, email_frequency_hours: int = 24, is_active: bool = True
    ) -> PromptSubscription:
        subscription = self.store.insert_subscription(PromptSubscription(
            user_id=user_id,
            prompt=validate_prompt(prompt),
            is_active=is_active,
            email_frequency_hours=validate_frequency(email_frequency_hours),
            next_email_scheduled=self.clock(),
        ))
        logger.info(f"Created prompt subscription {subscription.id} for {user_id}")
        self.enqueue_prompt_embedding(subscription.id)
        return subscription

    def create_all_events_subscription(
        self, user_id: str, email_frequency_hours: int = 24, is_active: bool = True
    ) -> AllEventsSubscription:
        subscription = self.store.insert_subscription(AllEventsSubscription(
            user_id=user_id,
            is_active=is_active,
            email_frequency_hours=validate_frequency(email_frequency_hours),
            next_email_scheduled=self.clock(),
        ))
        logger.info(f"Created all-events subscription {subscription.id} for {user_id}")
        return subscription

    def update_subscription(
        self,
        subscription_id: str,
        prompt: Optional[str] = None,
        is_active: Optional[bool] = None,
        email_frequency_hours: Optional[int] = None,
    ) -> AnySubscription:
        """Patch a subscription. Editing the prompt drops the stale embedding and regenerates it."""
        subscription = self.store.get_subscription(subscription_id)
        if subscription is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")

        changes = {}
        prompt_changed = False
        if prompt is not None:
            if not isinstance(subscription, PromptSubscription):
                raise InvalidInputError("all_events subscriptions have no prompt")
            prompt = validate_prompt(prompt)
            if prompt != subscription.prompt:
                changes.update(prompt=prompt, prompt_embedding=None)
                prompt_changed = True
        if is_active is not None:
            changes["is_active"] = is_active
        if email_frequency_hours is not None:
            changes["email_frequency_hours"] = validate_frequency(email_frequency_hours)

        updated = self.store.patch_subscription(subscription_id, **changes)
        if prompt_changed:
            self.enqueue_prompt_embedding(subscription_id)
        return updated

    def delete_subscription(self, subscription_id: str) -> OperationResult:
        if self.store.get_subscription(subscription_id) is None:
            return OperationResult(success=False, message=f"Subscription {subscription_id} not found")
        removed = self.email_queue.delete_for_subscription(subscription_id)
        self.store.delete_subscription(subscription_id)
        return OperationResult(success=True, message="Subscription deleted", data={"queue_items_removed": removed})

    def enqueue_prompt_embedding(self, subscription_id: str) -> str:
        return self.queue.enqueue(EMBEDDING_POOL, partial(self._run_prompt_embedding, subscription_id))

    async def _run_prompt_embedding(self, subscription_id: str) -> None:
        result = await self.embeddings.generate_for_subscription(subscription_id)
        if not result.success:
            raise PipelineError(result.message)

    def migrate_legacy_rows(self, rows: list[dict]) -> OperationResult:
        """Backfill kind/is_active on legacy rows and load them. Safe to run repeatedly."""
        migrated = migrate_subscription_rows(rows)
        loaded = 0
        for row in rows:
            subscription = subscription_adapter.validate_python(row)
            if self.store.get_subscription(subscription.id) is None:
                self.store.insert_subscription(subscription)
                loaded += 1
        logger.info(f"Migrated {migrated} legacy subscription rows, loaded {loaded}")
        return OperationResult(
            success=True,
            message=f"Migrated {migrated} of {len(rows)} rows",
            data={"migrated": migrated, "loaded": loaded, "total": len(rows)},
        )
