import pytest
import pytest_asyncio

from errors import NotFoundError, ValidationError
from main import FeedIngestor, build_parser, print_fetch_results, print_posts
from fetcher import FetchResult
from models import Post


@pytest_asyncio.fixture
async def app(tmp_path):
    ingestor = FeedIngestor(str(tmp_path / "cli.db"))
    await ingestor.start()
    yield ingestor
    await ingestor.stop()


@pytest.mark.asyncio
async def test_add_subscription_stores_config(app):
    subscription_id = await app.add_subscription(
        name="jane",
        url="https://nitter.net/jane/rss",
        options={"cronSchedule": "*/10 * * * *", "max_items": 15, "deduplication": {"field": "link"}},
    )

    subscription = await app.db.execute('get_subscription', subscription_id=subscription_id)
    assert (subscription.name, subscription.type, subscription.status) == ("jane", "nitter_rss", "active")
    stored = await app.db.execute('get_subscription_config', subscription_id=subscription_id)
    assert stored.cron_schedule == "*/10 * * * *"
    assert stored.max_items == 15
    assert stored.deduplication == {"enabled": True, "field": "link"}


@pytest.mark.asyncio
@pytest.mark.parametrize("kwargs", [
    {"url": "not-a-url"},
    {"url": "https://nitter.net/jane/rss", "type": "carrier_pigeon"},
    {"url": "https://nitter.net/jane/rss", "options": {"cron_schedule": "every day"}},
    {"url": "https://nitter.net/jane/rss", "options": {"max_items": -1}},
    {"url": "https://nitter.net/jane/rss", "options": {"poll_interval": 5}},
])
async def test_add_subscription_rejects_bad_input(app, kwargs):
    with pytest.raises(ValidationError):
        await app.add_subscription(name="jane", **kwargs)
    assert await app.db.execute('list_subscriptions') == []


@pytest.mark.asyncio
async def test_add_subscription_syncs_running_scheduler(app):
    await app.scheduler.initialize()

    subscription_id = await app.add_subscription(
        name="jane", url="https://nitter.net/jane/rss", options={"cron_schedule": "0 * * * *"},
    )

    assert app.scheduler.get_task_status(subscription_id).cron_expression == "0 * * * *"


@pytest.mark.asyncio
async def test_seed_skips_existing_urls(app, tmp_path):
    seed_file = tmp_path / "subscriptions.yaml"
    seed_file.write_text(
        "subscriptions:\n"
        "  jane:\n"
        "    url: https://nitter.net/jane/rss\n"
        "    cron_schedule: '*/15 * * * *'\n"
        "  blog:\n"
        "    url: https://blog.example.com/feed\n"
        "    type: generic_rss\n"
        "    maxItems: 5\n"
        "    enabled: false\n"
        "  broken:\n"
        "    url: https://broken.example.com/feed\n"
        "    cron_schedule: 'whenever'\n"
        "  nourl:\n"
        "    type: generic_rss\n"
    )

    assert await app.seed(str(seed_file)) == 2
    assert await app.seed(str(seed_file)) == 0

    subscriptions = {sub.name: sub for sub in await app.db.execute('list_subscriptions')}
    assert sorted(subscriptions) == ["blog", "jane"]
    assert subscriptions["blog"].is_enabled is False
    assert subscriptions["blog"].status == "disabled"
    blog_config = await app.db.execute('get_subscription_config', subscription_id=subscriptions["blog"].id)
    assert blog_config.max_items == 5


@pytest.mark.asyncio
async def test_enable_disable_and_remove(app):
    subscription_id = await app.add_subscription(
        name="jane", url="https://nitter.net/jane/rss", options={"cron_schedule": "*/5 * * * *"},
    )
    await app.scheduler.initialize()
    assert app.scheduler.get_task_status(subscription_id) is not None

    await app.set_enabled(subscription_id, False)
    subscription = await app.db.execute('get_subscription', subscription_id=subscription_id)
    assert (subscription.is_enabled, subscription.status) == (False, "disabled")
    assert app.scheduler.get_task_status(subscription_id) is None

    await app.set_enabled(subscription_id, True)
    assert app.scheduler.get_task_status(subscription_id) is not None

    await app.remove(subscription_id)
    assert await app.db.execute('get_subscription', subscription_id=subscription_id) is None
    assert app.scheduler.get_tasks() == []

    with pytest.raises(NotFoundError):
        await app.remove(subscription_id)
    with pytest.raises(NotFoundError):
        await app.set_enabled(subscription_id, True)


@pytest.mark.asyncio
async def test_check_status_reports_next_run(app):
    scheduled = await app.add_subscription(
        name="jane", url="https://nitter.net/jane/rss", options={"cron_schedule": "*/5 * * * *"},
    )
    await app.add_subscription(name="bob", url="https://nitter.net/bob/rss")

    status = await app.check_status()

    assert status["stats"]["subscriptions"] == 2
    rows = {row["subscription"].id: row for row in status["subscriptions"]}
    assert rows[scheduled]["next_run"] is not None
    assert [row["next_run"] for sid, row in rows.items() if sid != scheduled] == [None]


def test_parser_commands():
    parser = build_parser()

    args = parser.parse_args(["--database", "x.db", "fetch", "1", "2", "--max-items", "5"])
    assert (args.mode, args.ids, args.max_items, args.database) == ("fetch", [1, 2], 5, "x.db")

    args = parser.parse_args(["add", "--name", "jane", "--url", "https://nitter.net/jane/rss", "--cron", "0 * * * *"])
    assert (args.type, args.cron) == ("nitter_rss", "0 * * * *")

    assert parser.parse_args(["disable", "3"]).id == 3
    assert parser.parse_args(["posts", "3"]).limit == 20

    with pytest.raises(SystemExit):
        parser.parse_args(["add", "--name", "jane", "--url", "u", "--type", "carrier_pigeon"])


def test_print_fetch_results_exit_state(capsys):
    assert print_fetch_results({1: FetchResult(success=True, items_count=3, new_items_count=1)}) is True
    assert print_fetch_results({
        1: FetchResult(success=True),
        2: FetchResult(success=False, error="HTTP 500: Internal Server Error"),
    }) is False
    assert "HTTP 500" in capsys.readouterr().out


def test_print_posts(capsys):
    print_posts([Post(subscription_id=1, external_id="1", source_type="twitter", published_at=1704164645,
                      title="Launch day", author_username="jane", hashtags=["python"],
                      media_urls=["https://nitter.net/pic/1.jpg"])])
    out = capsys.readouterr().out
    assert "[2024-01-02 03:04] jane: Launch day" in out
    assert "tags=#python" in out
