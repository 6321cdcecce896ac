import pytest

from config import FetchConfig, apply_overrides
from feed_source import FeedItem
from ingest import IngestPipeline, dedup_key, resolve_external_id, resolve_published_at


@pytest.mark.asyncio
async def test_save_item_normalizes_post(db, subscription_id, item_factory):
    pipeline = IngestPipeline(db)
    item = item_factory(
        1,
        content='<p>Great #AI and #MachineLearning news @elonmusk</p><img src="https://nitter.net/pic/media.jpg">',
        raw={"guid": "guid-1", "feedImage": "https://nitter.net/pic/jane.jpg"},
    )
    assert await pipeline.save_item(item, subscription_id, FetchConfig(), source_type="twitter") is True

    post = await db.execute('find_post_by_external_id', subscription_id=subscription_id, external_id="guid-1")
    assert post.title == "Post 1"
    assert post.source_type == "twitter"
    assert post.content_type == "mixed"
    assert post.media_urls == ["https://nitter.net/pic/media.jpg"]
    assert post.hashtags == ["AI", "MachineLearning"]
    assert post.mentions == ["elonmusk"]
    assert (post.author_id, post.author_name, post.author_username) == ("@jane", "Jane Doe", "jane")
    assert post.author_avatar == "https://nitter.net/pic/jane.jpg"
    assert post.link_url == "https://nitter.net/jane/status/1"
    assert post.published_at == 1704164645
    assert post.raw_data == {"guid": "guid-1", "feedImage": "https://nitter.net/pic/jane.jpg"}


@pytest.mark.asyncio
async def test_text_only_item_and_title_fallback_for_tags(db, subscription_id):
    pipeline = IngestPipeline(db)
    item = FeedItem(guid="g", title="Watch #Python", content=None, content_snippet=None)
    assert await pipeline.save_item(item, subscription_id, FetchConfig()) is True
    post = await db.execute('find_post_by_external_id', subscription_id=subscription_id, external_id="g")
    assert post.content_type == "text"
    assert post.hashtags == ["Python"]
    assert post.source_type == "rss"


@pytest.mark.asyncio
async def test_same_item_is_ingested_once(db, subscription_id, item_factory):
    pipeline = IngestPipeline(db)
    item = item_factory(1)
    assert await pipeline.save_item(item, subscription_id, FetchConfig()) is True
    assert await pipeline.save_item(item, subscription_id, FetchConfig()) is False
    assert await db.execute('count_posts', subscription_id=subscription_id) == 1


@pytest.mark.asyncio
async def test_disabled_dedup_still_relies_on_unique_external_id(db, subscription_id, item_factory):
    pipeline = IngestPipeline(db)
    no_dedup = apply_overrides(FetchConfig(), {"deduplication": {"enabled": False}})
    assert await pipeline.save_item(item_factory(1), subscription_id, no_dedup) is True
    assert await pipeline.save_item(item_factory(1), subscription_id, no_dedup) is False
    assert await db.execute('count_posts', subscription_id=subscription_id) == 1


@pytest.mark.asyncio
async def test_dedup_by_link_field(db, subscription_id):
    pipeline = IngestPipeline(db)
    by_link = apply_overrides(FetchConfig(), {"deduplication": {"field": "link"}})
    first = FeedItem(link="https://example.com/a", title="A")
    again = FeedItem(link="https://example.com/a", title="A, edited")
    assert await pipeline.save_item(first, subscription_id, by_link) is True
    assert await pipeline.save_item(again, subscription_id, by_link) is False


def test_dedup_key_empty_field_means_no_key(item_factory):
    by_title = apply_overrides(FetchConfig(), {"deduplication": {"field": "title"}})
    assert dedup_key(item_factory(1, title="  "), by_title) is None
    assert dedup_key(item_factory(1), by_title) == "Post 1"
    assert dedup_key(item_factory(1), FetchConfig()) == "guid-1"


def test_external_id_fallbacks():
    assert resolve_external_id(FeedItem(guid="g", link="l"), 3) == "g"
    assert resolve_external_id(FeedItem(guid=" ", link="https://x/1"), 3) == "https://x/1"
    synthesized = resolve_external_id(FeedItem(title="t"), 3)
    assert synthesized.startswith("3-")
    assert synthesized != resolve_external_id(FeedItem(title="other"), 3)


def test_published_at_prefers_iso_then_pub_date(monkeypatch):
    assert resolve_published_at(FeedItem(iso_date="2024-01-02T03:04:05Z")) == 1704164645
    assert resolve_published_at(FeedItem(pub_date="Tue, 02 Jan 2024 03:04:05 GMT")) == 1704164645
    monkeypatch.setattr("ingest.time", lambda: 1700000000.5)
    assert resolve_published_at(FeedItem(pub_date="not a date")) == 1700000000


@pytest.mark.asyncio
async def test_long_titles_are_truncated(db, subscription_id):
    pipeline = IngestPipeline(db)
    await pipeline.save_item(FeedItem(guid="long", title="x" * 800), subscription_id, FetchConfig())
    post = await db.execute('find_post_by_external_id', subscription_id=subscription_id, external_id="long")
    assert len(post.title) == 500
