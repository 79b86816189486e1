"""
Event sources: periodic listing-page scrapes that create new events.

Each active source owns at most one pending scrape job. Every scrape, whether
it succeeds or fails, stamps the last-scrape time and replaces the pending job
with one `scrape_interval` out. New sources get a short initial delay instead.
"""
import logging
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Any, Callable, Optional

from event_digest.deduplication import dedupe_candidates_by_url, normalize_url
from event_digest.errors import InvalidInputError, NotFoundError, PipelineError
from event_digest.events import EventService
from event_digest.models import EventSource, OperationResult, TestScrape, TestScrapeProgress, utc_now
from event_digest.scrapers.content_fetcher import ContentFetcher, validate_url
from event_digest.scrapers.event_list_extractor import EventListExtractor
from event_digest.store import Store
from event_digest.workpool import SCRAPE_POOL, JobNotFoundError, JobQueue, cancel_quietly, current_job_handle

logger = logging.getLogger(__name__)

DATE_FORMATS = (
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d %H:%M:%S",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%A, %B %d, %Y",
    "%d %B %Y",
    "%d %b %Y",
)
EPOCH_MILLIS_CUTOFF = 10 ** 11


def parse_event_date(value: Any, now: datetime) -> datetime:
    """
    Parse an extracted event date.

    Accepts ISO strings, a few common written formats and epoch numbers
    (seconds, or milliseconds for large values). Anything else means "tomorrow".
    Naive results are taken as UTC.
    """
    default = now + timedelta(days=1)
    if value is None or isinstance(value, bool):
        return default

    if isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) > EPOCH_MILLIS_CUTOFF else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return default

    if not isinstance(value, str) or not value.strip():
        return default
    text = value.strip()

    parsed: Optional[datetime] = None
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        for fmt in DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        logger.debug(f"Unparseable event date {text!r}, defaulting to tomorrow")
        return default
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SourceService:
    def __init__(
        self,
        store: Store,
        queue: JobQueue,
        fetcher: ContentFetcher,
        list_extractor: EventListExtractor,
        events: EventService,
        scrape_interval: timedelta = timedelta(days=3),
        initial_delay: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.queue = queue
        self.fetcher = fetcher
        self.list_extractor = list_extractor
        self.events = events
        self.scrape_interval = scrape_interval
        self.initial_delay = initial_delay
        self.clock = clock

    # CRUD

    def create_source(self, name: str, starting_url: str, is_active: bool = True) -> EventSource:
        name = name.strip()
        if not name:
            raise InvalidInputError("Source name must not be empty")
        source = self.store.insert_source(EventSource(
            name=name,
            starting_url=validate_url(starting_url),
            is_active=is_active,
        ))
        logger.info(f"Created source {source.id}: {name}")
        if is_active:
            self.schedule_next_scrape(source.id, delay=self.initial_delay)
        return self.store.get_source(source.id)

    def update_source(
        self,
        source_id: str,
        name: Optional[str] = None,
        starting_url: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> EventSource:
        source = self.store.get_source(source_id)
        if source is None:
            raise NotFoundError(f"Source {source_id} not found")

        changes: dict[str, Any] = {}
        if name is not None:
            if not name.strip():
                raise InvalidInputError("Source name must not be empty")
            changes["name"] = name.strip()
        if starting_url is not None:
            changes["starting_url"] = validate_url(starting_url)
        if is_active is not None:
            changes["is_active"] = is_active
        source = self.store.patch_source(source_id, **changes)

        if is_active is False:
            self.clear_schedule(source_id)
        elif is_active is True and not source.next_scrape_scheduled_id:
            self.schedule_next_scrape(source_id, delay=self.initial_delay)
        return self.store.get_source(source_id)

    def delete_source(self, source_id: str) -> OperationResult:
        source = self.store.get_source(source_id)
        if source is None:
            return OperationResult(success=False, message=f"Source {source_id} not found")
        cancel_quietly(self.queue, source.next_scrape_scheduled_id)
        self.store.delete_source(source_id)
        return OperationResult(success=True, message=f"Source {source.name} deleted")

    # Scheduling

    def schedule_next_scrape(self, source_id: str, delay: Optional[timedelta] = None) -> Optional[str]:
        """Replace the source's pending scrape with one `delay` (default scrape_interval) out. Inactive sources get none."""
        source = self.store.get_source(source_id)
        if source is None or not source.is_active:
            return None
        delay = self.scrape_interval if delay is None else delay

        cancel_quietly(self.queue, source.next_scrape_scheduled_id)
        handle = self.queue.enqueue(
            SCRAPE_POOL,
            partial(self.perform_scheduled_scrape, source_id),
            delay=delay.total_seconds(),
        )
        self.store.patch_source(
            source_id,
            next_scrape_scheduled_id=handle,
            next_scrape_scheduled_at=self.clock() + delay,
        )
        logger.info(f"Next scrape of {source.name} in {delay}")
        return handle

    def clear_schedule(self, source_id: str) -> None:
        source = self.store.get_source(source_id)
        if source is None:
            return
        cancel_quietly(self.queue, source.next_scrape_scheduled_id)
        self.store.patch_source(source_id, next_scrape_scheduled_id=None, next_scrape_scheduled_at=None)

    def has_pending_scrape(self, source: EventSource) -> bool:
        if not source.next_scrape_scheduled_id:
            return False
        try:
            return self.queue.status(source.next_scrape_scheduled_id).state in ("pending", "running")
        except JobNotFoundError:
            return False

    def fix_missing_schedules(self) -> OperationResult:
        """Self-healing sweep: give every active source without a live pending scrape a new one."""
        now = self.clock()
        fixed = []
        sources = [s for s in self.store.list_sources() if s.is_active]
        for source in sources:
            if self.has_pending_scrape(source):
                continue
            if source.last_scraped_at is None:
                delay = self.initial_delay
            else:
                delay = max(source.last_scraped_at + self.scrape_interval - now, timedelta(0))
            self.schedule_next_scrape(source.id, delay=delay)
            fixed.append(source.name)

        if fixed:
            logger.info(f"Rescheduled {len(fixed)} sources missing a pending scrape: {', '.join(fixed)}")
        return OperationResult(
            success=True,
            message=f"Fixed {len(fixed)} of {len(sources)} active sources",
            data={"checked": len(sources), "fixed": len(fixed), "sources": fixed},
        )

    # Scraping

    async def perform_scheduled_scrape(self, source_id: str) -> OperationResult:
        source = self.store.get_source(source_id)
        if source is None:
            return OperationResult(success=False, message=f"Source {source_id} not found")
        if source.next_scrape_scheduled_id == current_job_handle():
            self.store.patch_source(source_id, next_scrape_scheduled_id=None, next_scrape_scheduled_at=None)
        if not source.is_active:
            logger.info(f"Skipping scheduled scrape of inactive source {source.name}")
            return OperationResult(success=False, message="Source is not active")
        return await self.perform_source_scrape(source_id)

    async def perform_source_scrape(self, source_id: str) -> OperationResult:
        """Scrape one source's listing page and create events for URLs not seen before."""
        source = self.store.get_source(source_id)
        if source is None:
            return OperationResult(success=False, message=f"Source {source_id} not found")

        now = self.clock()
        logger.info(f"Scraping source {source.name}: {source.starting_url}")
        try:
            content = await self.fetcher.fetch(source.starting_url)
            candidates = dedupe_candidates_by_url(await self.list_extractor.extract(content))
            counts = self._create_events(source, candidates, now)
            logger.info(
                f"Source {source.name}: {len(candidates)} found, {counts['created']} new, "
                f"{counts['existing']} existing, {counts['invalid']} invalid, {counts['failed']} failed"
            )
            return OperationResult(
                success=True,
                message=f"Found {len(candidates)} events, created {counts['created']} new events",
                data={
                    "source_name": source.name,
                    "source_url": source.starting_url,
                    "total_events_found": len(candidates),
                    "new_events_created": counts["created"],
                    "existing_events_skipped": counts["existing"],
                    "invalid_events_skipped": counts["invalid"],
                    "failed_events": counts["failed"],
                },
            )
        except PipelineError as e:
            logger.error(f"Scrape of source {source.name} failed: {e}")
            return OperationResult(success=False, message=f"Failed to scrape source: {e}")
        finally:
            if self.store.get_source(source_id) is not None:
                self.store.patch_source(source_id, last_scraped_at=self.clock())
                self.schedule_next_scrape(source_id)

    def _create_events(self, source: EventSource, candidates: list[dict[str, Any]], now: datetime) -> dict[str, int]:
        counts = {"created": 0, "existing": 0, "invalid": 0, "failed": 0}
        for item in candidates:
            url, title = item.get("url"), item.get("title")
            if not isinstance(url, str) or not url.strip() or not isinstance(title, str) or not title.strip():
                counts["invalid"] += 1
                continue
            try:
                url = normalize_url(url)
                if self.store.get_event_by_url(url) is not None:
                    counts["existing"] += 1
                    continue
                description = item.get("description")
                if not isinstance(description, str) or not description.strip():
                    description = f"Event: {title.strip()}. More details available at {url}"
                image_url = item.get("imageUrl")
                self.events.create_event(
                    title=title,
                    description=description.strip(),
                    event_date=parse_event_date(item.get("eventDate"), now),
                    url=url,
                    image_url=image_url if isinstance(image_url, str) else "",
                    source_id=source.id,
                )
                counts["created"] += 1
            except PipelineError as e:
                counts["failed"] += 1
                logger.error(f"Could not create event {title!r} from {source.name}: {e}")
        return counts

    def sources_status(self) -> list[dict[str, Any]]:
        return [
            {
                "id": source.id,
                "name": source.name,
                "is_active": source.is_active,
                "last_scraped_at": source.last_scraped_at,
                "next_scrape_scheduled_at": source.next_scrape_scheduled_at,
                "has_pending_scrape": self.has_pending_scrape(source),
            }
            for source in self.store.list_sources()
        ]

    # Test scrapes

    def start_test_scrape(self, url: str) -> TestScrape:
        """Record a one-off scrape of url and run it on the scrape pool."""
        test_scrape = self.store.insert_test_scrape(TestScrape(url=validate_url(url), started_at=self.clock()))
        self.queue.enqueue(SCRAPE_POOL, partial(self.perform_test_scrape, test_scrape.id))
        return test_scrape

    def _progress(self, test_scrape_id: str, stage: str, message: str, events_found: Optional[int] = None) -> None:
        self.store.patch_test_scrape(
            test_scrape_id,
            progress=TestScrapeProgress(stage=stage, message=message, events_found=events_found),
        )

    async def perform_test_scrape(self, test_scrape_id: str) -> TestScrape:
        test_scrape = self.store.get_test_scrape(test_scrape_id)
        if test_scrape is None:
            raise NotFoundError(f"Test scrape {test_scrape_id} not found")

        self.store.patch_test_scrape(test_scrape_id, status="running")
        try:
            self._progress(test_scrape_id, "fetching", f"Fetching {test_scrape.url}")
            content = await self.fetcher.fetch(test_scrape.url)

            self._progress(test_scrape_id, "extracting", f"Extracting events from {len(content)} characters")
            candidates = dedupe_candidates_by_url(await self.list_extractor.extract(content))

            self._progress(test_scrape_id, "processing", "Processing extracted events", len(candidates))
            result = {
                "success": True,
                "message": f"Found {len(candidates)} events",
                "events_found": len(candidates),
                "events": candidates,
                "content_preview": content[:500],
            }
            return self.store.patch_test_scrape(
                test_scrape_id, status="completed", result=result, completed_at=self.clock(),
                progress=TestScrapeProgress(stage="completed", message=result["message"], events_found=len(candidates)),
            )
        except PipelineError as e:
            logger.error(f"Test scrape of {test_scrape.url} failed: {e}")
            return self.store.patch_test_scrape(
                test_scrape_id, status="failed", result={"success": False, "message": str(e)},
                completed_at=self.clock(),
                progress=TestScrapeProgress(stage="failed", message=str(e)),
            )
