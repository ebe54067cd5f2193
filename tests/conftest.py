"""
Shared fixtures for the WP Autopilot test suite.

Provides an in-memory store, an owner with a registered site and feed,
a controllable clock, and mock AI / image / WordPress collaborators so
that all tests run WITHOUT any external services.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from wpautopilot import crypto
from wpautopilot.content_generator import GeneratedArticle, InlineImage
from wpautopilot.crypto import SecretBox
from wpautopilot.jobs import JobPipeline, JobService
from wpautopilot.publisher import PublishResult
from wpautopilot.rss_parser import FeedData, FeedItem
from wpautopilot.runner import ScheduleRunner
from wpautopilot.schedule_engine import ScheduleService
from wpautopilot.scheduler import AutomationScheduler
from wpautopilot.sites import SiteService
from wpautopilot.store import Store, set_store

OWNER = "user-1"


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock returning a settable aware UTC instant."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    """Clock parked at 2026-03-10 08:00 UTC."""
    return FakeClock(datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc))


# ---------------------------------------------------------------------------
# Storage fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def secret_box(monkeypatch):
    """Deterministic encryption key for stored site passwords."""
    box = SecretBox("test-master-key")
    monkeypatch.setattr(crypto, "_box_instance", box)
    return box


@pytest.fixture
def store():
    """Fresh in-memory database, installed as the global store."""
    s = Store("sqlite://")
    s.create_all()
    set_store(s)
    yield s
    set_store(None)
    s.dispose()


@pytest.fixture
def owner():
    return OWNER


@pytest.fixture
def site(store, owner):
    return SiteService(store).add_site(
        owner,
        name="Test Blog",
        url="https://blog.example.com/",
        username="editor",
        app_password="abcd efgh ijkl mnop",
    )


@pytest.fixture
def feed(store, owner):
    return SiteService(store).add_feed(owner, name="Example News", url="https://news.example.com/feed")


@pytest.fixture
def schedules(store, clock):
    return ScheduleService(store, clock=clock)


@pytest.fixture
def make_schedule(schedules, owner, site, feed):
    """Factory creating a feed-driven schedule with overridable fields."""

    def _make(**overrides):
        fields = {
            "site_id": site.id,
            "name": "Morning news",
            "schedule_type": "RECURRING",
            "cron_expression": "0 9 * * *",
            "timezone": "UTC",
            "rss_feed_id": feed.id,
        }
        fields.update(overrides)
        return schedules.create(owner, **fields)

    return _make


# ---------------------------------------------------------------------------
# Source fixtures
# ---------------------------------------------------------------------------


def make_feed_items(count, prefix="https://news.example.com/story-"):
    return [
        FeedItem(
            title=f"Story {i}",
            link=f"{prefix}{i}",
            description=f"Summary of story {i}",
            content=f"<p>Full text of story {i}.</p>",
        )
        for i in range(1, count + 1)
    ]


@pytest.fixture
def fake_rss():
    """RSSParser stand-in returning three items by default."""
    rss = MagicMock()
    rss.parse_feed = AsyncMock(
        return_value=FeedData(
            title="Example News",
            description="",
            link="https://news.example.com",
            items=make_feed_items(3),
        )
    )
    return rss


# ---------------------------------------------------------------------------
# Pipeline fixtures
# ---------------------------------------------------------------------------


def make_article(title="Generated Title", **overrides):
    fields = {
        "title": title,
        "content": "First paragraph.\n\nSecond paragraph.",
        "excerpt": "Short excerpt",
        "categories": ["News"],
        "tags": ["ai", "wordpress"],
        "seo_description": "A generated article",
        "seo_keywords": ["ai"],
        "featured_image_url": "https://images.example.com/featured.jpg",
        "inline_images": [InlineImage(url="https://images.example.com/1.jpg", alt="One", position=0)],
        "tokens_used": 1200,
        "cost": 0.01,
    }
    fields.update(overrides)
    return GeneratedArticle(**fields)


@pytest.fixture
def fake_generator():
    generator = MagicMock()
    generator.generate = AsyncMock(side_effect=lambda job: make_article(title=f"Rewrite of {job.source_title}"))
    return generator


@pytest.fixture
def fake_publisher():
    publisher = MagicMock()
    publisher.publish = AsyncMock(
        return_value=PublishResult(wp_post_id=42, link="https://blog.example.com/?p=42")
    )
    return publisher


@pytest.fixture
def pipeline(store, fake_generator, fake_publisher):
    return JobPipeline(store, generator=fake_generator, publisher=fake_publisher)


@pytest.fixture
def job_service(store, pipeline):
    return JobService(store, pipeline=pipeline)


@pytest.fixture
def runner(store, pipeline, fake_rss, clock):
    return ScheduleRunner(store, pipeline=pipeline, rss=fake_rss, clock=clock)


@pytest.fixture
def scheduler(store, runner, job_service, clock):
    return AutomationScheduler(
        store,
        runner=runner,
        jobs=job_service,
        clock=clock,
        poll_interval=1,
        max_concurrency=2,
        claim_grace_seconds=600,
    )


# ---------------------------------------------------------------------------
# HTTP mock fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_aiohttp_response():
    """Create a mock aiohttp response factory."""

    def _make(status=200, json_data=None, text="", headers=None, body=b""):
        resp = AsyncMock()
        resp.status = status
        resp.json = AsyncMock(return_value=json_data if json_data is not None else {})
        resp.text = AsyncMock(return_value=text)
        resp.read = AsyncMock(return_value=body)
        resp.headers = headers or {"Content-Type": "application/json"}
        resp.__aenter__ = AsyncMock(return_value=resp)
        resp.__aexit__ = AsyncMock(return_value=False)
        return resp

    return _make


def make_mock_session(response_mock):
    """Mock aiohttp session whose .request() and .get() yield *response_mock*."""
    session = MagicMock()
    ctx = MagicMock()
    ctx.__aenter__ = AsyncMock(return_value=response_mock)
    ctx.__aexit__ = AsyncMock(return_value=False)
    session.request = MagicMock(return_value=ctx)
    session.get = MagicMock(return_value=ctx)
    session.close = AsyncMock()
    session.closed = False
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=False)
    return session
