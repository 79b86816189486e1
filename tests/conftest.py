"""
Shared pytest fixtures for pipeline tests.

Provides:
- FakeClock driving both wall-clock timestamps and the work queue's monotonic clock
- Fake collaborators for the fetch proxy, Gemini, embeddings and email
- A fully wired Pipeline over a MemoryStore
"""
from datetime import datetime, timedelta, timezone

import pytest

from event_digest.config import Settings
from event_digest.errors import UpstreamError
from event_digest.models import User
from event_digest.pipeline import Pipeline
from event_digest.store import MemoryStore
from event_digest.workpool import EMBEDDING_POOL, MATCHING_POOL, SCRAPE_POOL, WorkPoolQueue

START = datetime(2029, 6, 1, 12, 0, tzinfo=timezone.utc)

KEYWORD_AXES = ("ai", "music", "food", "art")


class FakeClock:
    def __init__(self, start: datetime = START):
        self.start = start
        self.current = start

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return (self.current - self.start).total_seconds()

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class FakeLLM:
    """Answers list prompts and detail prompts with canned text."""

    def __init__(self, list_response: str = "[]", detail_response: str = "{}"):
        self.list_response = list_response
        self.detail_response = detail_response
        self.prompts: list[str] = []
        self.error = None

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        if "extract event listings" in prompt:
            return self.list_response
        return self.detail_response


class FakeFetcher:
    def __init__(self, pages=None):
        self.pages = dict(pages or {})
        self.requests: list[str] = []

    async def fetch(self, url: str) -> str:
        self.requests.append(url)
        if url not in self.pages:
            raise UpstreamError("Content fetch request failed: 404 Not Found", status_code=404)
        return self.pages[url]


class FakeEmbedder:
    """Keyword-axis vectors: similar topics give similar vectors. Each queued gate holds one call until set."""

    def __init__(self):
        self.calls: list[str] = []
        self.failures: list[Exception] = []
        self.gates: list = []

    async def __call__(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.gates:
            await self.gates.pop(0).wait()
        if self.failures:
            raise self.failures.pop(0)
        lowered = text.lower()
        return [float(lowered.count(axis)) for axis in KEYWORD_AXES] + [0.01]


class RecordingMailer:
    def __init__(self):
        self.sent: list[dict] = []
        self.error = None

    async def send(self, to: str, subject: str, html: str):
        if self.error is not None:
            raise self.error
        self.sent.append({"to": to, "subject": subject, "html": html})
        return f"msg_{len(self.sent)}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def settings():
    return Settings(_env_file=None, embedding_dimensions=0, embedding_batch_pause_seconds=0)


@pytest.fixture
def queue(clock, settings):
    return WorkPoolQueue(
        {
            SCRAPE_POOL: settings.scrape_pool_parallelism,
            EMBEDDING_POOL: settings.embedding_pool_parallelism,
            MATCHING_POOL: settings.matching_pool_parallelism,
        },
        clock=clock.monotonic,
    )


@pytest.fixture
def pipeline(settings, store, queue, llm, embedder, mailer, fetcher, clock):
    return Pipeline.from_settings(
        settings,
        store=store,
        queue=queue,
        llm=llm,
        embed_func=embedder,
        mailer=mailer,
        fetcher=fetcher,
        clock=clock.now,
    )


@pytest.fixture
def user(store):
    return store.insert_user(User(email="reader@example.com", name="Reader"))
