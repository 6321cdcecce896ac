import pytest

from errors import PersistenceError
from models import DatabaseQueue, Post, source_type_for


def _post(subscription_id, external_id="guid-1", **overrides):
    values = dict(
        subscription_id=subscription_id,
        external_id=external_id,
        source_type="twitter",
        published_at=1704164645,
        title="hello",
        hashtags=["AI"],
        raw_data={"guid": external_id},
    )
    values.update(overrides)
    return Post(**values)


@pytest.mark.asyncio
async def test_health_counters_follow_fetch_outcomes(db, subscription_id):
    await db.execute('update_subscription_health', subscription_id=subscription_id,
                     success=True, items_count=4, error=None)
    sub = await db.execute('get_subscription', subscription_id=subscription_id)
    assert (sub.status, sub.total_fetches, sub.total_items, sub.last_fetch_count) == ("active", 1, 4, 4)
    assert sub.last_fetch_at is not None
    assert sub.error_count == 0

    await db.execute('update_subscription_health', subscription_id=subscription_id,
                     success=False, items_count=0, error="HTTP 503: Service Unavailable")
    sub = await db.execute('get_subscription', subscription_id=subscription_id)
    assert sub.status == "error"
    assert sub.last_error == "HTTP 503: Service Unavailable"
    assert sub.last_error_at is not None
    assert (sub.total_fetches, sub.total_items, sub.error_count, sub.last_fetch_count) == (2, 4, 1, 4)

    await db.execute('update_subscription_health', subscription_id=subscription_id,
                     success=True, items_count=2, error=None)
    sub = await db.execute('get_subscription', subscription_id=subscription_id)
    assert (sub.status, sub.total_fetches, sub.total_items, sub.error_count) == ("active", 3, 6, 1)


@pytest.mark.asyncio
async def test_insert_post_ignores_duplicate_external_id(db, subscription_id):
    assert await db.execute('insert_post', post=_post(subscription_id)) is True
    assert await db.execute('insert_post', post=_post(subscription_id, title="changed")) is False
    assert await db.execute('count_posts', subscription_id=subscription_id) == 1

    stored = await db.execute('find_post_by_external_id', subscription_id=subscription_id, external_id="guid-1")
    assert stored.title == "hello"
    assert stored.hashtags == ["AI"]
    assert stored.raw_data == {"guid": "guid-1"}
    assert await db.execute('find_post_by_external_id', subscription_id=subscription_id, external_id="nope") is None


@pytest.mark.asyncio
async def test_same_external_id_allowed_across_subscriptions(db, subscription_id):
    other = await db.execute('create_subscription', name="john", url="https://nitter.net/john/rss")
    assert await db.execute('insert_post', post=_post(subscription_id)) is True
    assert await db.execute('insert_post', post=_post(other)) is True
    assert await db.execute('count_posts') == 2


@pytest.mark.asyncio
async def test_config_upsert_and_active_listing(db, subscription_id):
    paused = await db.execute('create_subscription', name="paused", url="https://nitter.net/p/rss", status="paused")
    disabled = await db.execute('create_subscription', name="off", url="https://nitter.net/off/rss")
    await db.execute('set_subscription_enabled', subscription_id=disabled, is_enabled=False)

    await db.execute('upsert_subscription_config', subscription_id=subscription_id,
                     cron_schedule="*/15 * * * *", headers={"X-A": "1"}, deduplication={"field": "link"})
    await db.execute('upsert_subscription_config', subscription_id=subscription_id, max_items=10)

    sub_config = await db.execute('get_subscription_config', subscription_id=subscription_id)
    assert sub_config.cron_schedule == "*/15 * * * *"
    assert sub_config.max_items == 10
    assert sub_config.headers == {"X-A": "1"}
    assert sub_config.wants_schedule

    fetch_config = sub_config.to_fetch_config()
    assert fetch_config.max_items == 10
    assert fetch_config.deduplication.field == "link"

    pairs = await db.execute('list_active_enabled_subscriptions_with_config')
    assert [(s.id, c.subscription_id if c else None) for s, c in pairs] == [(subscription_id, subscription_id)]
    assert paused not in [s.id for s, _ in pairs]


@pytest.mark.asyncio
async def test_subscription_without_config_is_listed_with_none(db, subscription_id):
    pairs = await db.execute('list_active_enabled_subscriptions_with_config')
    assert len(pairs) == 1
    assert pairs[0][1] is None


@pytest.mark.asyncio
async def test_delete_subscription_cascades(db, subscription_id):
    await db.execute('upsert_subscription_config', subscription_id=subscription_id, cron_schedule="0 * * * *")
    await db.execute('insert_post', post=_post(subscription_id))
    assert await db.execute('delete_subscription', subscription_id=subscription_id) is True
    assert await db.execute('get_subscription_config', subscription_id=subscription_id) is None
    assert await db.execute('count_posts') == 0
    assert await db.execute('delete_subscription', subscription_id=subscription_id) is False


@pytest.mark.asyncio
async def test_failures_surface_as_persistence_error(db):
    with pytest.raises(PersistenceError):
        await db.execute('insert_post', post=_post(subscription_id=999))
    with pytest.raises(PersistenceError):
        await db.execute('drop_everything')
    with pytest.raises(PersistenceError):
        await db.execute('stop')


@pytest.mark.asyncio
async def test_execute_requires_running_worker(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "idle.db"))
    with pytest.raises(PersistenceError):
        await queue.execute('list_subscriptions')


@pytest.mark.asyncio
async def test_stats(db, subscription_id):
    await db.execute('insert_post', post=_post(subscription_id))
    await db.execute('update_subscription_health', subscription_id=subscription_id,
                     success=False, items_count=0, error="boom")
    stats = await db.execute('get_stats')
    assert stats == {
        "subscriptions": 1,
        "active_subscriptions": 0,
        "errored_subscriptions": 1,
        "total_fetches": 1,
        "total_errors": 1,
        "posts": 1,
    }


def test_source_type_for_dialects():
    assert source_type_for("nitter_rss") == "twitter"
    assert source_type_for("twitter_rss") == "twitter"
    assert source_type_for("youtube_rss") == "youtube"
    assert source_type_for("reddit_rss") == "reddit"
    assert source_type_for("generic_rss") == "rss"
    assert source_type_for("webhook") == "other"
    assert source_type_for(None) == "other"


@pytest.mark.asyncio
async def test_list_posts_newest_first(db, subscription_id):
    for n, published_at in enumerate([1704164645, 1704300000, 1704000000], start=1):
        await db.execute('insert_post', post=_post(subscription_id, f"guid-{n}", published_at=published_at))

    posts = await db.execute('list_posts', subscription_id=subscription_id, limit=2)

    assert [post.external_id for post in posts] == ["guid-2", "guid-1"]


@pytest.mark.asyncio
async def test_errored_subscription_stays_in_fetchable_listing(db, subscription_id):
    await db.execute('update_subscription_health', subscription_id=subscription_id,
                     success=False, items_count=0, error="Request timed out after 30s")

    pairs = await db.execute('list_active_enabled_subscriptions_with_config')

    assert [(s.id, s.status) for s, _ in pairs] == [(subscription_id, "error")]
    assert pairs[0][0].is_fetchable
