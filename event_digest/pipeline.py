"""Wire every pipeline component from settings."""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from event_digest.config import Settings
from event_digest.digest import DigestScheduler
from event_digest.email_queue import EmailQueue
from event_digest.embeddings import EmbedFunc, EmbeddingGenerator, gemini_embed_func
from event_digest.events import EventService
from event_digest.mailer import Mailer, ResendMailer
from event_digest.matching.matcher import Matcher
from event_digest.models import utc_now
from event_digest.scheduler import RecurringScheduler
from event_digest.scrapers.content_fetcher import ContentFetcher
from event_digest.scrapers.event_detail_extractor import EventDetailExtractor
from event_digest.scrapers.event_list_extractor import EventListExtractor
from event_digest.scrapers.llm import GeminiClient, LLMClient
from event_digest.sources import SourceService
from event_digest.store import MemoryStore, Store
from event_digest.subscriptions import SubscriptionService
from event_digest.workpool import EMBEDDING_POOL, MATCHING_POOL, SCRAPE_POOL, JobQueue, WorkPoolQueue

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    settings: Settings
    store: Store
    queue: JobQueue
    fetcher: ContentFetcher
    embeddings: EmbeddingGenerator
    email_queue: EmailQueue
    matcher: Matcher
    events: EventService
    sources: SourceService
    subscriptions: SubscriptionService
    digests: DigestScheduler

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: Optional[Store] = None,
        queue: Optional[JobQueue] = None,
        llm: Optional[LLMClient] = None,
        embed_func: Optional[EmbedFunc] = None,
        mailer: Optional[Mailer] = None,
        fetcher: Optional[ContentFetcher] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> "Pipeline":
        """Build the pipeline. Any collaborator can be swapped in; the rest come from settings."""
        store = store if store is not None else MemoryStore()
        queue = queue if queue is not None else WorkPoolQueue({
            SCRAPE_POOL: settings.scrape_pool_parallelism,
            EMBEDDING_POOL: settings.embedding_pool_parallelism,
            MATCHING_POOL: settings.matching_pool_parallelism,
        })
        llm = llm or GeminiClient(
            settings.google_api_key,
            model_name=settings.llm_model,
            temperature=settings.llm_temperature,
            max_output_tokens=settings.llm_max_output_tokens,
        )
        fetcher = fetcher or ContentFetcher(
            settings.jina_api_key,
            base_url=settings.fetch_base_url,
            timeout=settings.fetch_timeout_seconds,
            max_bytes=settings.max_content_bytes,
        )
        email_config = settings.email_config()
        mailer = mailer or ResendMailer(email_config, settings.resend_api_key, api_url=settings.resend_api_url)

        embeddings = EmbeddingGenerator(
            store,
            embed_func or gemini_embed_func(settings.google_api_key, settings.embedding_model),
            dimensions=settings.embedding_dimensions,
            max_chars=settings.max_embedding_chars,
            retry_attempts=settings.embedding_retry_attempts,
            retry_delay=settings.embedding_retry_delay_seconds,
            batch_size=settings.embedding_batch_size,
            batch_pause=settings.embedding_batch_pause_seconds,
        )
        email_queue = EmailQueue(store, retention_days=settings.queue_retention_days)
        matcher = Matcher(store, email_queue, embeddings, threshold=settings.similarity_threshold, clock=clock)
        events = EventService(
            store, queue, fetcher, EventDetailExtractor(llm), embeddings, matcher, email_queue,
            match_delay=timedelta(hours=settings.match_delay_hours),
            clock=clock,
        )
        sources = SourceService(
            store, queue, fetcher, EventListExtractor(llm), events,
            scrape_interval=timedelta(days=settings.source_scrape_interval_days),
            initial_delay=timedelta(minutes=settings.initial_scrape_delay_minutes),
            clock=clock,
        )
        subscriptions = SubscriptionService(store, queue, embeddings, email_queue, clock=clock)
        digests = DigestScheduler(store, email_queue, mailer, email_config, clock=clock)

        return cls(
            settings=settings,
            store=store,
            queue=queue,
            fetcher=fetcher,
            embeddings=embeddings,
            email_queue=email_queue,
            matcher=matcher,
            events=events,
            sources=sources,
            subscriptions=subscriptions,
            digests=digests,
        )

    def install_recurring_jobs(self, scheduler: RecurringScheduler) -> RecurringScheduler:
        """Digest sweep every N minutes, queue cleanup and source self-heal once a day."""
        scheduler.every_minutes(self.settings.digest_interval_minutes, "send-digests", self.send_digests)
        scheduler.daily_at(self.settings.queue_cleanup_at, "cleanup-email-queue", self.cleanup_email_queue)
        scheduler.daily_at(self.settings.source_heal_at, "fix-source-schedules", self.fix_source_schedules)
        return scheduler

    async def send_digests(self):
        return await self.digests.send_due_digests()

    async def cleanup_email_queue(self) -> int:
        return self.digests.cleanup_email_queue()

    async def fix_source_schedules(self):
        return self.sources.fix_missing_schedules()
