import os

# Keep test runs quiet and fast; must be set before config is imported
os.environ.setdefault("DISABLE_TELEMETRY", "true")
os.environ.setdefault("RETRY_DELAY_BASE", "0")
os.environ.setdefault("SCHEDULER_RESYNC_MINUTES", "0")

import pytest
import pytest_asyncio

from feed_source import FeedItem
from fetcher import FetchResult
from models import DatabaseQueue


class FakeSource:
    """Stands in for FeedSource: returns canned items or raises a canned error."""

    def __init__(self, items=None, error=None):
        self.items = list(items or [])
        self.error = error
        self.calls = []

    async def fetch_raw(self, url, timeout, headers=None, user_agent=None, retry_count=0):
        self.calls.append({
            "url": url,
            "timeout": timeout,
            "headers": headers,
            "user_agent": user_agent,
            "retry_count": retry_count,
        })
        if self.error is not None:
            raise self.error
        return b"<rss version='2.0'><channel></channel></rss>"

    def parse(self, content):
        return list(self.items)


class RecordingFetcher:
    """Fetch orchestrator double for scheduler tests."""

    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def fetch_subscription(self, subscription_id, overrides=None):
        self.calls.append(subscription_id)
        if self.error is not None:
            raise self.error
        return FetchResult(success=True, items_count=1, new_items_count=1)


def make_item(n, **overrides):
    values = {
        "guid": f"guid-{n}",
        "link": f"https://nitter.net/jane/status/{n}",
        "title": f"Post {n}",
        "content": f"<p>Post number {n} #news</p>",
        "creator": "Jane Doe / @jane",
        "iso_date": "2024-01-02T03:04:05+00:00",
    }
    values.update(overrides)
    return FeedItem(**values)


@pytest.fixture
def fake_source():
    return FakeSource


@pytest.fixture
def item_factory():
    return make_item


@pytest_asyncio.fixture
async def db(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "test.db"))
    await queue.start()
    yield queue
    await queue.stop()


@pytest_asyncio.fixture
async def subscription_id(db):
    return await db.execute('create_subscription', name="jane", url="https://nitter.net/jane/rss")


@pytest.fixture
def recording_fetcher():
    return RecordingFetcher
