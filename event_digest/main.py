"""
Event Digest Service
Scrapes event sources, enriches events with Gemini, matches them to
subscriptions and sends batched email digests.

The HTTP surface is an admin pass-through onto pipeline operations:
1. Sources - CRUD, manual scrape, schedule self-healing, test scrapes
2. Events - CRUD, re-enrichment, matching, job status
3. Subscriptions - CRUD, preview, pull matching, digests
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from cachetools import TTLCache
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from event_digest.config import Settings
from event_digest.errors import InvalidInputError, NotFoundError
from event_digest.models import User, utc_now
from event_digest.pipeline import Pipeline
from event_digest.scheduler import RecurringScheduler

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


class SourceIn(BaseModel):
    name: str
    starting_url: str
    is_active: bool = True


class SourceUpdate(BaseModel):
    name: Optional[str] = None
    starting_url: Optional[str] = None
    is_active: Optional[bool] = None


class TestScrapeIn(BaseModel):
    url: str


class EventIn(BaseModel):
    title: str
    description: str
    event_date: datetime
    url: str
    image_url: str = ""


class EventUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    event_date: Optional[datetime] = None
    url: Optional[str] = None
    image_url: Optional[str] = None


class UserIn(BaseModel):
    email: str
    name: Optional[str] = None


class SubscriptionIn(BaseModel):
    user_id: str
    kind: str = "prompt"
    prompt: Optional[str] = None
    email_frequency_hours: int = Field(default=24, ge=1)
    is_active: bool = True


class SubscriptionUpdate(BaseModel):
    prompt: Optional[str] = None
    is_active: Optional[bool] = None
    email_frequency_hours: Optional[int] = Field(default=None, ge=1)


class PreviewIn(BaseModel):
    prompt: str


def create_app(pipeline: Pipeline, scheduler: Optional[RecurringScheduler] = None) -> FastAPI:
    settings = pipeline.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runner = None
        if scheduler is not None:
            pipeline.install_recurring_jobs(scheduler)
            runner = asyncio.create_task(scheduler.run_forever())
        # Re-arm sources whose pending scrape was lost with the previous process
        pipeline.sources.fix_missing_schedules()
        yield
        if scheduler is not None:
            await scheduler.stop()
            runner.cancel()
        close = getattr(pipeline.queue, "close", None)
        if close is not None:
            await close()

    app = FastAPI(
        title="Event Digest",
        version="1.0.0",
        docs_url="/docs" if settings.enable_docs else None,
        lifespan=lifespan,
    )

    # CORS - restrict to known origins in production
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins.split(","),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Preview responses are read-only, cache briefly
    preview_cache = TTLCache(maxsize=100, ttl=60)

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"success": False, "message": str(exc)})

    @app.exception_handler(InvalidInputError)
    async def invalid_input_handler(request: Request, exc: InvalidInputError):
        return JSONResponse(status_code=400, content={"success": False, "message": str(exc)})

    def verify_api_key(request: Request):
        """Optional API key verification."""
        if not settings.admin_api_key:
            return  # No API key configured, allow all requests

        api_key = request.headers.get("X-API-Key")
        if api_key != settings.admin_api_key:
            raise HTTPException(status_code=401, detail="Invalid or missing API key")

    admin = [Depends(verify_api_key)]

    @app.get("/health")
    async def health():
        """Liveness check reporting which upstream integrations are configured."""
        return {
            "status": "healthy",
            "content_fetch_enabled": bool(settings.jina_api_key),
            "gemini_enabled": bool(settings.google_api_key),
            "email_dev_mode": settings.email_config().dev_mode,
        }

    # Sources

    @app.get("/sources", dependencies=admin)
    async def list_sources():
        return {"sources": pipeline.sources.sources_status()}

    @app.post("/sources", dependencies=admin)
    async def create_source(body: SourceIn):
        return pipeline.sources.create_source(body.name, body.starting_url, body.is_active)

    @app.patch("/sources/{source_id}", dependencies=admin)
    async def update_source(source_id: str, body: SourceUpdate):
        return pipeline.sources.update_source(source_id, **body.model_dump(exclude_none=True))

    @app.delete("/sources/{source_id}", dependencies=admin)
    async def delete_source(source_id: str):
        return pipeline.sources.delete_source(source_id)

    @app.post("/sources/{source_id}/scrape", dependencies=admin)
    async def scrape_source(source_id: str):
        return await pipeline.sources.perform_source_scrape(source_id)

    @app.post("/sources/fix-schedules", dependencies=admin)
    async def fix_source_schedules():
        return pipeline.sources.fix_missing_schedules()

    @app.post("/test-scrapes", dependencies=admin)
    async def start_test_scrape(body: TestScrapeIn):
        return pipeline.sources.start_test_scrape(body.url)

    @app.get("/test-scrapes", dependencies=admin)
    async def list_test_scrapes():
        return {"test_scrapes": pipeline.store.list_test_scrapes()}

    @app.get("/test-scrapes/{test_scrape_id}", dependencies=admin)
    async def get_test_scrape(test_scrape_id: str):
        test_scrape = pipeline.store.get_test_scrape(test_scrape_id)
        if test_scrape is None:
            raise NotFoundError(f"Test scrape {test_scrape_id} not found")
        return test_scrape

    # Events

    @app.get("/events", dependencies=admin)
    async def list_events(
        upcoming: bool = Query(default=True, description="Only events that have not started"),
        limit: int = Query(default=50, ge=1, le=500),
    ):
        events = pipeline.store.list_events()
        if upcoming:
            now = utc_now()
            events = [e for e in events if e.event_date > now]
        events.sort(key=lambda e: e.event_date)
        return {"events": [e.model_dump(exclude={"description_embedding"}) for e in events[:limit]]}

    @app.post("/events", dependencies=admin)
    async def create_event(body: EventIn):
        return pipeline.events.create_event(**body.model_dump())

    @app.get("/events/{event_id}", dependencies=admin)
    async def get_event(event_id: str):
        event = pipeline.store.get_event(event_id)
        if event is None:
            raise NotFoundError(f"Event {event_id} not found")
        return event.model_dump(exclude={"description_embedding"})

    @app.patch("/events/{event_id}", dependencies=admin)
    async def update_event(event_id: str, body: EventUpdate):
        event = pipeline.events.update_event(event_id, **body.model_dump(exclude_none=True))
        return event.model_dump(exclude={"description_embedding"})

    @app.delete("/events/{event_id}", dependencies=admin)
    async def delete_event(event_id: str):
        return pipeline.events.delete_event(event_id)

    @app.post("/events/{event_id}/enrich", dependencies=admin)
    async def enrich_event(event_id: str):
        return {"handle": pipeline.events.enqueue_enrichment(event_id)}

    @app.post("/events/{event_id}/match", dependencies=admin)
    async def match_event(event_id: str):
        return await pipeline.matcher.process_event_for_subscriptions(event_id)

    @app.get("/events/{event_id}/jobs", dependencies=admin)
    async def event_jobs(event_id: str):
        return pipeline.events.job_statuses(event_id)

    # Users & subscriptions

    @app.post("/users", dependencies=admin)
    async def create_user(body: UserIn):
        return pipeline.store.insert_user(User(email=body.email, name=body.name))

    @app.post("/subscriptions", dependencies=admin)
    async def create_subscription(body: SubscriptionIn):
        if body.kind == "all_events":
            return pipeline.subscriptions.create_all_events_subscription(
                body.user_id, body.email_frequency_hours, body.is_active
            )
        if body.kind != "prompt":
            raise InvalidInputError(f"Unknown subscription kind: {body.kind}")
        return pipeline.subscriptions.create_prompt_subscription(
            body.user_id, body.prompt or "", body.email_frequency_hours, body.is_active
        )

    @app.patch("/subscriptions/{subscription_id}", dependencies=admin)
    async def update_subscription(subscription_id: str, body: SubscriptionUpdate):
        return pipeline.subscriptions.update_subscription(subscription_id, **body.model_dump(exclude_none=True))

    @app.delete("/subscriptions/{subscription_id}", dependencies=admin)
    async def delete_subscription(subscription_id: str):
        return pipeline.subscriptions.delete_subscription(subscription_id)

    @app.post("/subscriptions/preview", dependencies=admin)
    async def preview_subscription(body: PreviewIn):
        cache_key = body.prompt.strip().lower()
        if cache_key in preview_cache:
            return {"matches": preview_cache[cache_key], "cached": True}
        previews = await pipeline.matcher.preview_matching_events(body.prompt)
        preview_cache[cache_key] = [
            p.model_dump(exclude={"event": {"description_embedding"}}) for p in previews
        ]
        return {"matches": preview_cache[cache_key], "cached": False}

    @app.post("/subscriptions/{subscription_id}/match", dependencies=admin)
    async def match_subscription(subscription_id: str, max_results: int = Query(default=10, ge=1, le=100)):
        return await pipeline.matcher.match_subscription(subscription_id, max_results=max_results)

    @app.post("/subscriptions/{subscription_id}/send-digest", dependencies=admin)
    async def send_subscription_digest(subscription_id: str):
        return await pipeline.digests.send_subscription_digest(subscription_id)

    # Sweeps

    @app.post("/digests/send", dependencies=admin)
    async def send_due_digests():
        return await pipeline.digests.send_due_digests()

    @app.post("/email-queue/cleanup", dependencies=admin)
    async def cleanup_email_queue():
        return {"removed": pipeline.digests.cleanup_email_queue()}

    @app.get("/email-queue/stats", dependencies=admin)
    async def email_queue_stats(subscription_id: Optional[str] = None):
        return pipeline.email_queue.stats(subscription_id)

    @app.post("/embeddings/backfill", dependencies=admin)
    async def backfill_embeddings(limit: Optional[int] = Query(default=None, ge=1)):
        return await pipeline.embeddings.backfill_missing_event_embeddings(limit)

    @app.get("/embeddings/stats", dependencies=admin)
    async def embedding_stats():
        return pipeline.embeddings.embedding_stats()

    return app


def build_app() -> FastAPI:
    settings = Settings()
    pipeline = Pipeline.from_settings(settings)
    return create_app(pipeline, RecurringScheduler())


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(build_app(), host="0.0.0.0", port=Settings().port)
