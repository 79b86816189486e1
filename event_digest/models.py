"""Data models for the event digest pipeline."""
import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class EventSource(BaseModel):
    """A site that is scraped for events on a recurring schedule."""
    id: str = Field(default_factory=lambda: new_id("src"))
    name: str
    starting_url: str
    is_active: bool = True
    last_scraped_at: Optional[datetime] = None
    next_scrape_scheduled_id: Optional[str] = None  # work queue handle
    next_scrape_scheduled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)


class ScrapedEventData(BaseModel):
    """Structured details pulled from an event's own page."""
    description: Optional[str] = None
    original_event_date: Optional[str] = None
    location: Optional[str] = None
    organizer: Optional[str] = None
    price: Optional[str] = None
    category: Optional[str] = None
    tags: list[str] = []
    image_urls: list[str] = []
    registration_url: Optional[str] = None
    contact_info: Optional[str] = None
    additional_details: Optional[str] = None
    scraped_at: datetime = Field(default_factory=utc_now)


class Event(BaseModel):
    """A discovered event. `url` is unique and used for de-duplication."""
    id: str = Field(default_factory=lambda: new_id("evt"))
    title: str
    description: str
    event_date: datetime
    image_url: str = ""
    url: str
    source_id: Optional[str] = None
    last_scraped_at: Optional[datetime] = None
    scraped_data: Optional[ScrapedEventData] = None
    description_embedding: Optional[list[float]] = None

    # Job tracking
    scrape_work_id: Optional[str] = None
    scrape_enqueued_at: Optional[datetime] = None
    embedding_work_id: Optional[str] = None
    embedding_enqueued_at: Optional[datetime] = None
    subscription_match_work_id: Optional[str] = None
    subscription_match_scheduled_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("event_date")
    @classmethod
    def assume_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class SubscriptionBase(BaseModel):
    id: str = Field(default_factory=lambda: new_id("sub"))
    user_id: str
    is_active: bool = True
    last_email_sent: Optional[datetime] = None
    next_email_scheduled: datetime = Field(default_factory=utc_now)
    email_frequency_hours: int = Field(default=24, ge=1)
    created_at: datetime = Field(default_factory=utc_now)


class PromptSubscription(SubscriptionBase):
    """Matches events against a free-text prompt."""
    kind: Literal["prompt"] = "prompt"
    prompt: str
    prompt_embedding: Optional[list[float]] = None


class AllEventsSubscription(SubscriptionBase):
    """Receives every future event, no scoring."""
    kind: Literal["all_events"] = "all_events"


Subscription = Annotated[Union[PromptSubscription, AllEventsSubscription], Field(discriminator="kind")]
subscription_adapter = TypeAdapter(Subscription)

MatchType = Literal["semantic", "title", "all_events"]


class EmailQueueItem(BaseModel):
    """One (subscription, event) match waiting for a digest."""
    id: str = Field(default_factory=lambda: new_id("eq"))
    subscription_id: str
    event_id: str
    match_score: float = Field(ge=0.0, le=1.0)
    match_type: MatchType
    queued_at: datetime = Field(default_factory=utc_now)
    email_sent: bool = False
    email_sent_at: Optional[datetime] = None


class User(BaseModel):
    id: str = Field(default_factory=lambda: new_id("usr"))
    email: str
    name: Optional[str] = None


TestScrapeStatus = Literal["pending", "running", "completed", "failed"]


class TestScrapeProgress(BaseModel):
    stage: str
    message: str
    events_found: Optional[int] = None


class TestScrape(BaseModel):
    """One-off admin scrape run with staged progress."""

    id: str = Field(default_factory=lambda: new_id("ts"))
    url: str
    status: TestScrapeStatus = "pending"
    progress: Optional[TestScrapeProgress] = None
    result: Optional[dict[str, Any]] = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


class OperationResult(BaseModel):
    """Structured outcome returned by admin-facing operations instead of raising."""
    success: bool
    message: str
    data: Optional[dict[str, Any]] = None


class JobStatus(BaseModel):
    state: Literal["pending", "running", "finished", "failed", "canceled"]
    queue_position: Optional[int] = None
    retry_count: int = 0


def migrate_subscription_row(row: dict) -> bool:
    """
    Backfill the `kind` discriminant and `is_active` flag on a legacy subscription row.

    Legacy rows carry a `status` string instead of `is_active` and have no `kind`.
    Returns True if the row was changed; running it again on the same row is a no-op.
    """
    changed = False
    if "kind" not in row:
        row["kind"] = "prompt" if row.get("prompt") else "all_events"
        changed = True
    if "is_active" not in row:
        row["is_active"] = row.get("status", "active") == "active"
        changed = True
    if row["kind"] == "all_events":
        for field in ("prompt", "prompt_embedding"):
            if field in row:
                del row[field]
                changed = True
    return changed


def migrate_subscription_rows(rows: list[dict]) -> int:
    """Migrate rows in place, returns how many were changed."""
    return sum(1 for row in rows if migrate_subscription_row(row))
