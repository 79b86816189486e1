"""
Text embeddings for events and prompt subscriptions.

Inputs are validated and truncated to the model's budget; outputs are checked
before anything is persisted so a malformed vector never reaches the store.
Bulk generation retries transient failures with linear backoff.
"""
import asyncio
import logging
import math
from typing import Awaitable, Callable, Optional

import google.generativeai as genai
from pydantic import BaseModel

from event_digest.errors import (
    ConflictError,
    InvalidInputError,
    NotFoundError,
    PipelineError,
    UpstreamError,
    is_transient_error,
)
from event_digest.models import OperationResult, PromptSubscription
from event_digest.store import Store

logger = logging.getLogger(__name__)

MAX_EMBEDDING_CHARS = 8000
TRUNCATION_MARKER = "..."

EmbedFunc = Callable[[str], Awaitable[list[float]]]


class FailedEmbedding(BaseModel):
    event_id: str
    error: str


class BatchEmbeddingResult(BaseModel):
    success: bool
    processed: int
    failed: int
    total: int
    failed_events: list[FailedEmbedding] = []


def validate_embedding_text(text: Optional[str]) -> str:
    if text is None or not text.strip():
        raise InvalidInputError("Text for embedding must not be empty")
    return text.strip()


def truncate_text_for_embedding(text: str, max_chars: int = MAX_EMBEDDING_CHARS) -> str:
    """Keep the text within max_chars, marking a cut with a trailing ellipsis."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER


def prepare_event_text(title: str, description: str, max_chars: int = MAX_EMBEDDING_CHARS) -> str:
    return truncate_text_for_embedding(f"{title}\n\n{description}", max_chars)


def validate_embedding(vector, dimensions: int = 0) -> list[float]:
    """Raise UpstreamError unless vector is a non-empty list of finite numbers of the expected size."""
    if not isinstance(vector, (list, tuple)) or len(vector) == 0:
        raise UpstreamError("Embedding service returned an empty vector")
    if dimensions and len(vector) != dimensions:
        raise UpstreamError(f"Embedding has {len(vector)} dimensions, expected {dimensions}")
    for value in vector:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise UpstreamError("Embedding contains non-finite or non-numeric values")
    return [float(value) for value in vector]


def gemini_embed_func(api_key: Optional[str], model: str) -> EmbedFunc:
    """Build an embed function backed by genai.embed_content (run off the event loop)."""

    async def embed(text: str) -> list[float]:
        if not api_key:
            raise UpstreamError("GOOGLE_API_KEY is not configured")
        genai.configure(api_key=api_key)
        result = await asyncio.to_thread(
            genai.embed_content, model=model, content=text, task_type="retrieval_document"
        )
        return result["embedding"]

    return embed


class EmbeddingGenerator:
    def __init__(
        self,
        store: Store,
        embed_func: EmbedFunc,
        dimensions: int = 0,
        max_chars: int = MAX_EMBEDDING_CHARS,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        batch_size: int = 10,
        batch_pause: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.embed_func = embed_func
        self.dimensions = dimensions
        self.max_chars = max_chars
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.batch_size = batch_size
        self.batch_pause = batch_pause
        self.sleep = sleep

    async def generate(self, text: str) -> list[float]:
        """
        Embed text.

        Raises:
            InvalidInputError: empty text
            UpstreamError: service failure or malformed vector
        """
        text = truncate_text_for_embedding(validate_embedding_text(text), self.max_chars)
        try:
            vector = await self.embed_func(text)
        except PipelineError:
            raise
        except Exception as e:
            raise UpstreamError(f"Embedding request failed: {type(e).__name__}: {e}") from e
        return validate_embedding(vector, self.dimensions)

    async def embed_event(self, event_id: str) -> list[float]:
        event = self.store.get_event(event_id)
        if event is None:
            raise NotFoundError(f"Event {event_id} not found")
        text = prepare_event_text(event.title, event.description, self.max_chars)
        vector = await self.generate(text)
        current = self.store.get_event(event_id)
        if current is None:
            raise NotFoundError(f"Event {event_id} was deleted while embedding")
        if prepare_event_text(current.title, current.description, self.max_chars) != text:
            raise ConflictError(f"Event {event_id} text changed while embedding, vector discarded")
        self.store.patch_event(event_id, description_embedding=vector)
        return vector

    async def generate_for_event(self, event_id: str) -> OperationResult:
        try:
            vector = await self.embed_event(event_id)
        except ConflictError as e:
            logger.info(str(e))
            return OperationResult(success=True, message=str(e))
        except PipelineError as e:
            logger.error(f"Embedding for event {event_id} failed: {e}")
            return OperationResult(success=False, message=str(e))
        logger.info(f"Stored {len(vector)}-dim embedding for event {event_id}")
        return OperationResult(success=True, message="Embedding generated", data={"dimensions": len(vector)})

    async def generate_for_subscription(self, subscription_id: str) -> OperationResult:
        subscription = self.store.get_subscription(subscription_id)
        if subscription is None:
            return OperationResult(success=False, message=f"Subscription {subscription_id} not found")
        if not isinstance(subscription, PromptSubscription):
            return OperationResult(success=True, message="all_events subscriptions have no prompt embedding")
        try:
            vector = await self.generate(subscription.prompt)
        except PipelineError as e:
            logger.error(f"Prompt embedding for subscription {subscription_id} failed: {e}")
            return OperationResult(success=False, message=str(e))
        current = self.store.get_subscription(subscription_id)
        if not isinstance(current, PromptSubscription) or current.prompt != subscription.prompt:
            logger.info(f"Prompt of subscription {subscription_id} changed while embedding, vector discarded")
            return OperationResult(success=True, message="Prompt changed while embedding, vector discarded")
        self.store.patch_subscription(subscription_id, prompt_embedding=vector)
        return OperationResult(success=True, message="Prompt embedding generated", data={"dimensions": len(vector)})

    async def embed_event_with_retry(self, event_id: str) -> list[float]:
        """Retry transient failures up to retry_attempts, waiting retry_delay * attempt between tries."""
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return await self.embed_event(event_id)
            except PipelineError as e:
                if attempt >= self.retry_attempts or not is_transient_error(e):
                    raise
                logger.warning(f"Embedding attempt {attempt} for {event_id} failed ({e}), retrying")
                await self.sleep(self.retry_delay * attempt)
        raise UpstreamError(f"Embedding for {event_id} not attempted")

    async def batch_generate_event_embeddings(self, event_ids: list[str]) -> BatchEmbeddingResult:
        """Embed events in chunks of batch_size; each chunk runs concurrently. Failures are collected, not raised."""
        processed = 0
        failed: list[FailedEmbedding] = []

        for start in range(0, len(event_ids), self.batch_size):
            if start > 0 and self.batch_pause:
                await self.sleep(self.batch_pause)
            chunk = event_ids[start:start + self.batch_size]
            results = await asyncio.gather(
                *(self.embed_event_with_retry(event_id) for event_id in chunk),
                return_exceptions=True,
            )
            for event_id, result in zip(chunk, results):
                if isinstance(result, PipelineError):
                    failed.append(FailedEmbedding(event_id=event_id, error=str(result)))
                elif isinstance(result, BaseException):
                    raise result
                else:
                    processed += 1

        if failed:
            logger.warning(f"Batch embedding: {processed} processed, {len(failed)} failed")
        return BatchEmbeddingResult(
            success=not failed,
            processed=processed,
            failed=len(failed),
            total=len(event_ids),
            failed_events=failed,
        )

    async def backfill_missing_event_embeddings(self, limit: Optional[int] = None) -> BatchEmbeddingResult:
        missing = [e.id for e in self.store.list_events() if not e.description_embedding]
        if limit is not None:
            missing = missing[:limit]
        logger.info(f"Backfilling embeddings for {len(missing)} events")
        return await self.batch_generate_event_embeddings(missing)

    def embedding_stats(self) -> dict:
        events = self.store.list_events()
        with_embedding = sum(1 for e in events if e.description_embedding)
        return {
            "total_events": len(events),
            "events_with_embeddings": with_embedding,
            "events_without_embeddings": len(events) - with_embedding,
            "coverage": with_embedding / len(events) if events else 0.0,
        }
