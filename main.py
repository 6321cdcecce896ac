#!/usr/bin/env python3
"""
Feed Ingestor entry point.

Builds the storage, fetch orchestrator and scheduler (the composition root)
and exposes them as a small CLI:

- run:       start the scheduler and fetch subscriptions on their cron schedules
- status:    print subscription health and post counts
- fetch:     fetch one or more subscriptions now
- test-url:  fetch and parse a feed URL without storing anything
- add:       create a subscription with its fetch config
- seed:      create subscriptions from subscriptions.yaml
- posts:     show the newest stored posts of a subscription
- enable/disable/remove: manage an existing subscription

Changes made by the management commands are picked up by a running
scheduler on its next resync.
"""

import asyncio
import argparse
import signal
import sys
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from config import config, get_logger, apply_overrides, FetchConfig
from errors import FeedIngestError, NotFoundError, ValidationError
from fetcher import FeedFetcher, FetchResult
from models import DatabaseQueue, SUBSCRIPTION_TYPES
from scheduler import SubscriptionScheduler, build_cron_trigger
from telemetry import init_telemetry, get_tracer, trace_span
from utils import validate_url, format_timestamp, format_duration, truncate_string

# Module-specific logger
logger = get_logger("main")
init_telemetry("feed-ingestor")
_tracer = get_tracer("main")

# Keys of a seed entry that describe the subscription itself; the rest are fetch options
SUBSCRIPTION_FIELDS = ("name", "url", "type", "description", "enabled")


def config_columns(fetch_config: FetchConfig) -> Dict[str, Any]:
    """Flatten a FetchConfig into subscription_configs columns."""
    return {
        "cron_schedule": fetch_config.cron_schedule,
        "auto_fetch": fetch_config.auto_fetch,
        "max_items": fetch_config.max_items,
        "retry_count": fetch_config.retry_count,
        "timeout": fetch_config.timeout,
        "user_agent": fetch_config.user_agent,
        "headers": fetch_config.headers,
        "deduplication": asdict(fetch_config.deduplication),
    }


class FeedIngestor:
    """Owns the database queue, fetcher and scheduler for one process."""

    def __init__(self, db_path: Optional[str] = None, fetcher: Optional[FeedFetcher] = None) -> None:
        self.db = DatabaseQueue(db_path or config.DATABASE_PATH)
        self.fetcher = fetcher or FeedFetcher(self.db)
        self.scheduler = SubscriptionScheduler(self.db, self.fetcher)

    async def start(self) -> None:
        await self.db.start()

    async def stop(self) -> None:
        self.scheduler.shutdown()
        await self.fetcher.close()
        await self.db.stop()

    async def run_forever(self) -> None:
        """Schedule every subscription and run until SIGINT/SIGTERM."""
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                logger.debug(f"Signal handler for {sig.name} not supported on this platform")

        logger.debug(f"Configuration: {config.get_config_summary()}")
        started = datetime.now(timezone.utc)
        self.scheduler.start()
        await self.scheduler.initialize()
        status = self.scheduler.get_status()
        logger.info(f"🕐 Running with {status['task_count']} scheduled subscriptions "
                    f"(timezone: {status['timezone']})")

        await stop_event.wait()
        uptime = (datetime.now(timezone.utc) - started).total_seconds()
        logger.info(f"👋 Shutting down after {format_duration(uptime)}")

    @trace_span("main.fetch", tracer_name="main")
    async def fetch(self, subscription_ids: List[int], overrides: Optional[Mapping[str, Any]] = None) -> Dict[int, FetchResult]:
        results = {}
        for subscription_id in subscription_ids:
            results[subscription_id] = await self.fetcher.fetch_subscription(subscription_id, overrides)
        return results

    async def fetch_all(self) -> Dict[int, FetchResult]:
        pairs = await self.db.execute('list_active_enabled_subscriptions_with_config')
        return await self.fetch([subscription.id for subscription, _ in pairs])

    async def add_subscription(self, name: str, url: str, type: str = "nitter_rss",
                               description: Optional[str] = None, enabled: bool = True,
                               options: Optional[Mapping[str, Any]] = None) -> int:
        """Create a subscription and its config row.

        Raises:
            ValidationError: On a bad URL, type, cron expression or fetch option.
        """
        if not validate_url(url):
            raise ValidationError(f"Invalid feed URL: {url!r}")
        if type not in SUBSCRIPTION_TYPES:
            raise ValidationError(f"Unknown subscription type '{type}' (expected one of {', '.join(SUBSCRIPTION_TYPES)})")
        fetch_config = apply_overrides(config.default_fetch_config(), options or {})
        if fetch_config.cron_schedule:
            build_cron_trigger(fetch_config.cron_schedule, self.scheduler.timezone)

        subscription_id = await self.db.execute(
            'create_subscription',
            name=name,
            url=url.strip(),
            type=type,
            description=description,
            is_enabled=enabled,
            status="active" if enabled else "disabled",
        )
        await self.db.execute('upsert_subscription_config', subscription_id=subscription_id,
                              **config_columns(fetch_config))
        logger.info(f"➕ Added subscription {subscription_id} '{name}' ({url})")
        if self.scheduler.is_initialized:
            await self.scheduler.sync_subscription(subscription_id)
        return subscription_id

    async def seed(self, file_path: Optional[str] = None) -> int:
        """Create subscriptions from a YAML file, skipping URLs that already exist."""
        created = 0
        for entry in config.load_subscription_sources(file_path):
            existing = await self.db.execute('get_subscription_by_url', url=entry['url'])
            if existing is not None:
                logger.info(f"Skipping '{entry['name']}': {entry['url']} already subscribed (id {existing.id})")
                continue
            options = {k: v for k, v in entry.items() if k not in SUBSCRIPTION_FIELDS}
            try:
                await self.add_subscription(
                    name=entry['name'],
                    url=entry['url'],
                    type=entry.get('type', 'nitter_rss'),
                    description=entry.get('description'),
                    enabled=bool(entry.get('enabled', True)),
                    options=options,
                )
                created += 1
            except ValidationError as e:
                logger.error(f"Skipping '{entry['name']}': {e}")
        logger.info(f"🌱 Seeded {created} subscriptions")
        return created

    async def set_enabled(self, subscription_id: int, enabled: bool) -> None:
        updated = await self.db.execute(
            'set_subscription_enabled',
            subscription_id=subscription_id,
            is_enabled=enabled,
            status="active" if enabled else "disabled",
        )
        if not updated:
            raise NotFoundError(subscription_id)
        if self.scheduler.is_initialized:
            await self.scheduler.sync_subscription(subscription_id)

    async def remove(self, subscription_id: int) -> None:
        if not await self.db.execute('delete_subscription', subscription_id=subscription_id):
            raise NotFoundError(subscription_id)
        self.scheduler.update_task_schedule(subscription_id, None)
        logger.info(f"🗑️ Removed subscription {subscription_id}")

    async def check_status(self) -> Dict[str, Any]:
        """Collect storage statistics and per-subscription health."""
        status: Dict[str, Any] = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'stats': await self.db.execute('get_stats'),
            'subscriptions': [],
        }
        for subscription in await self.db.execute('list_subscriptions'):
            sub_config = await self.db.execute('get_subscription_config', subscription_id=subscription.id)
            next_run = None
            if subscription.is_fetchable and sub_config and sub_config.wants_schedule:
                try:
                    trigger = build_cron_trigger(sub_config.cron_schedule, self.scheduler.timezone)
                    fire_time = trigger.get_next_fire_time(None, datetime.now(self.scheduler.timezone))
                    next_run = fire_time.isoformat() if fire_time else None
                except ValidationError as e:
                    next_run = f"invalid cron: {e}"
            status['subscriptions'].append({
                'subscription': subscription,
                'cron_schedule': sub_config.cron_schedule if sub_config else None,
                'next_run': next_run,
            })
        return status

    def print_status(self, status: Dict[str, Any]) -> None:
        stats = status['stats'] or {}
        print(f"\n📊 Feed Ingestor Status")
        print(f"⏰ {status['timestamp']}")
        print(f"\n💾 Database: {self.db.db_path}")
        print(f"   📡 Subscriptions: {stats.get('subscriptions', 0)} "
              f"({stats.get('active_subscriptions', 0)} active, {stats.get('errored_subscriptions', 0)} in error)")
        print(f"   📰 Posts: {stats.get('posts', 0)}")
        print(f"   🔁 Fetches: {stats.get('total_fetches', 0)} ({stats.get('total_errors', 0)} failed)")

        if status['subscriptions']:
            print(f"\n📋 Subscriptions:")
        for row in status['subscriptions']:
            sub = row['subscription']
            icon = {"active": "✅", "error": "❌", "paused": "⏸️", "disabled": "🚫"}.get(sub.status, "❔")
            print(f"   {icon} [{sub.id}] {sub.name} ({sub.type}) {sub.url}")
            print(f"      status={sub.status} enabled={sub.is_enabled} cron={row['cron_schedule'] or '-'} "
                  f"next={row['next_run'] or '-'}")
            print(f"      last fetch {format_timestamp(sub.last_fetch_at)} ({sub.last_fetch_count} items), "
                  f"fetches={sub.total_fetches} items={sub.total_items} errors={sub.error_count}")
            if sub.last_error:
                print(f"      last error {format_timestamp(sub.last_error_at)}: {truncate_string(sub.last_error, 160, '...')}")


def print_fetch_results(results: Dict[int, FetchResult]) -> bool:
    ok = True
    for subscription_id, result in results.items():
        if result.success:
            print(f"✅ [{subscription_id}] {result.new_items_count} new of {result.items_count} items")
        else:
            ok = False
            print(f"❌ [{subscription_id}] {result.error}")
    return ok


def print_posts(posts) -> None:
    if not posts:
        print("No posts stored for this subscription")
    for post in posts:
        published = datetime.fromtimestamp(post.published_at, timezone.utc).strftime("%Y-%m-%d %H:%M")
        author = post.author_username or post.author_name or "-"
        print(f"   [{published}] {author}: {truncate_string(post.title or post.content, 100, '...')}")
        if post.media_urls or post.hashtags:
            print(f"      media={len(post.media_urls)} tags={' '.join('#' + tag for tag in post.hashtags) or '-'}")


def print_test_result(url: str, result: FetchResult) -> None:
    if not result.success:
        print(f"❌ {url}: {result.error}")
        return
    print(f"✅ {url}: {result.items_count} items")
    for item in result.items or []:
        title = truncate_string((item.title or item.content_snippet or "").replace("\n", " "), 100, "...")
        print(f"   • {title}")
        print(f"     {item.link or item.guid or '-'} | {item.creator or '-'} | {item.iso_date or item.pub_date or '-'}")


async def run_command(args: argparse.Namespace) -> int:
    """Run one CLI command against a started FeedIngestor; returns the exit code."""
    app = FeedIngestor(args.database)
    await app.start()
    try:
        if args.mode == 'run':
            await app.run_forever()
            return 0

        if args.mode == 'status':
            app.print_status(await app.check_status())
            return 0

        if args.mode == 'fetch':
            overrides = {'max_items': args.max_items} if args.max_items else None
            if args.all:
                results = await app.fetch_all()
            else:
                results = await app.fetch(args.ids, overrides)
            return 0 if print_fetch_results(results) else 1

        if args.mode == 'test-url':
            overrides = {'max_items': args.max_items} if args.max_items else None
            result = await app.fetcher.fetch_feed(args.url, fetch_config=overrides)
            print_test_result(args.url, result)
            return 0 if result.success else 1

        if args.mode == 'add':
            options = {
                'cron_schedule': args.cron,
                'max_items': args.max_items,
                'timeout': args.timeout,
                'retry_count': args.retry_count,
            }
            subscription_id = await app.add_subscription(
                name=args.name, url=args.url, type=args.type, description=args.description,
                options={k: v for k, v in options.items() if v is not None},
            )
            print(f"➕ Created subscription {subscription_id}")
            return 0

        if args.mode == 'posts':
            if await app.db.execute('get_subscription', subscription_id=args.id) is None:
                raise NotFoundError(args.id)
            print_posts(await app.db.execute('list_posts', subscription_id=args.id, limit=args.limit))
            return 0

        if args.mode == 'seed':
            await app.seed(args.file)
            return 0

        if args.mode in ('enable', 'disable'):
            await app.set_enabled(args.id, args.mode == 'enable')
            print(f"Subscription {args.id} {args.mode}d")
            return 0

        if args.mode == 'remove':
            await app.remove(args.id)
            print(f"Subscription {args.id} removed")
            return 0

        return 2
    except FeedIngestError as e:
        logger.error(f"❌ {e}")
        return 1
    finally:
        await app.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='RSS/Atom subscription ingestor')
    parser.add_argument('--database', type=str, help='SQLite database path (default: DATABASE_PATH)')
    sub = parser.add_subparsers(dest='mode', required=True)

    sub.add_parser('run', help='Run the scheduler until interrupted')
    sub.add_parser('status', help='Show subscription health')

    fetch = sub.add_parser('fetch', help='Fetch subscriptions now')
    fetch.add_argument('ids', type=int, nargs='*', help='Subscription ids')
    fetch.add_argument('--all', action='store_true', help='Fetch every active subscription')
    fetch.add_argument('--max-items', type=int)

    test_url = sub.add_parser('test-url', help='Fetch and parse a feed without storing it')
    test_url.add_argument('url')
    test_url.add_argument('--max-items', type=int)

    add = sub.add_parser('add', help='Add a subscription')
    add.add_argument('--name', required=True)
    add.add_argument('--url', required=True)
    add.add_argument('--type', default='nitter_rss', choices=SUBSCRIPTION_TYPES)
    add.add_argument('--description')
    add.add_argument('--cron', help='Cron expression, e.g. "*/15 * * * *"')
    add.add_argument('--max-items', type=int)
    add.add_argument('--timeout', type=float)
    add.add_argument('--retry-count', type=int)

    posts = sub.add_parser('posts', help='Show the newest stored posts of a subscription')
    posts.add_argument('id', type=int)
    posts.add_argument('--limit', type=int, default=20)

    seed = sub.add_parser('seed', help='Create subscriptions from a YAML file')
    seed.add_argument('--file', help='Path to subscriptions.yaml (default: SUBSCRIPTIONS_CONFIG_PATH)')

    for name, help_text in (('enable', 'Enable a subscription'),
                            ('disable', 'Disable a subscription'),
                            ('remove', 'Delete a subscription and its posts')):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument('id', type=int)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.mode == 'fetch' and not args.all and not args.ids:
        parser.error("fetch needs subscription ids or --all")

    try:
        sys.exit(asyncio.run(run_command(args)))
    except KeyboardInterrupt:
        logger.info("👋 Feed ingestor shutting down")
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
