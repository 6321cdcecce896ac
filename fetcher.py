#!/usr/bin/env python3
"""
Fetch orchestrator.

``FeedFetcher`` is the single "fetch this subscription now" entry point used
by both the scheduler and manual triggers. It loads the subscription and its
live config, enforces activation state, retrieves and parses the feed, hands
each item to the ingest pipeline and records the outcome in the
subscription's health fields. It never raises to its caller; every outcome is
reported as a ``FetchResult``.
"""

from asyncio import get_running_loop, wait_for, TimeoutError
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Dict, List, Mapping, Optional, Union

from config import config, get_logger, FetchConfig, apply_overrides
from errors import FeedIngestError, NotFoundError
from feed_source import FeedItem, FeedSource
from ingest import IngestPipeline
from models import DatabaseQueue, source_type_for
from telemetry import get_tracer, init_telemetry, trace_span

# Module-specific logger
logger = get_logger("fetcher")
init_telemetry("feed-ingestor-fetcher")
_tracer = get_tracer("fetcher")

FetchOverrides = Union[FetchConfig, Mapping[str, Any], None]


@dataclass
class FetchResult:
    """Uniform outcome of a fetch, whether scheduled, manual or diagnostic."""

    success: bool
    items_count: int = 0
    new_items_count: int = 0
    error: Optional[str] = None
    items: Optional[List[FeedItem]] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "success": self.success,
            "items_count": self.items_count,
            "new_items_count": self.new_items_count,
        }
        if self.error is not None:
            result["error"] = self.error
        if self.items is not None:
            result["items"] = [item.to_dict() for item in self.items]
        return result


class FeedFetcher:
    def __init__(self, db: DatabaseQueue, source: Optional[FeedSource] = None) -> None:
        self.db = db
        self.source = source or FeedSource()
        self.pipeline = IngestPipeline(db)
        self.executor = ThreadPoolExecutor(max_workers=2)

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in a thread pool executor."""
        return await get_running_loop().run_in_executor(self.executor, partial(func, *args))

    async def effective_config(self, subscription_id: int, overrides: FetchOverrides = None) -> FetchConfig:
        """Persisted config (or defaults) with ``overrides`` applied on top.

        A complete ``FetchConfig`` override is used as given.
        """
        if isinstance(overrides, FetchConfig):
            return apply_overrides(overrides, None)
        stored = await self.db.execute('get_subscription_config', subscription_id=subscription_id)
        base = stored.to_fetch_config() if stored else config.default_fetch_config()
        return apply_overrides(base, overrides)

    @trace_span(
        "fetch_subscription",
        tracer_name="fetcher",
        attr_from_args=lambda self, subscription_id, overrides=None: {
            "subscription.id": int(subscription_id),
            "fetch.has_overrides": overrides is not None,
        },
    )
    async def fetch_subscription(self, subscription_id: int, overrides: FetchOverrides = None) -> FetchResult:
        """Fetch one subscription now.

        Args:
            subscription_id: Subscription to fetch
            overrides: Optional config layered over the persisted one

        Returns:
            FetchResult; disabled or inactive subscriptions yield a non-success
            result without any network or storage activity.
        """
        try:
            subscription = await self.db.execute('get_subscription', subscription_id=subscription_id)
            if subscription is None:
                raise NotFoundError(subscription_id)

            if not subscription.is_enabled:
                logger.info(f"Subscription {subscription_id} is disabled, not fetching")
                return FetchResult(success=False, error=f"Subscription {subscription_id} is disabled")
            if not subscription.is_fetchable:
                logger.info(f"Subscription {subscription_id} is {subscription.status}, not fetching")
                return FetchResult(
                    success=False,
                    error=f"Subscription {subscription_id} is not active (status: {subscription.status})",
                )
            if subscription.status == "error":
                logger.info(f"Retrying subscription {subscription_id} after error: {subscription.last_error}")

            fetch_config = await self.effective_config(subscription_id, overrides)
            return await self.fetch_feed(
                subscription.url,
                subscription_id=subscription_id,
                fetch_config=fetch_config,
                source_type=source_type_for(subscription.type),
            )
        except FeedIngestError as e:
            logger.error(f"Fetch of subscription {subscription_id} failed: {e}")
            return FetchResult(success=False, error=str(e))
        except Exception as e:
            logger.exception(f"Unexpected error fetching subscription {subscription_id}: {e}")
            return FetchResult(success=False, error=str(e))

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, subscription_id=None, fetch_config=None, source_type=None: {
            "feed.url": url,
            "subscription.id": int(subscription_id) if subscription_id else 0,
        },
    )
    async def fetch_feed(self, url: str, subscription_id: Optional[int] = None,
                         fetch_config: FetchOverrides = None,
                         source_type: Optional[str] = None) -> FetchResult:
        """Retrieve, parse and (with a subscription) ingest a feed.

        Without ``subscription_id`` nothing is persisted and the parsed items
        are returned in the result.
        """
        try:
            effective = apply_overrides(config.default_fetch_config(), fetch_config)
        except FeedIngestError as e:
            return FetchResult(success=False, error=str(e))

        try:
            content = await self.source.fetch_raw(
                url,
                timeout=effective.timeout,
                headers=effective.headers,
                user_agent=effective.user_agent,
                retry_count=effective.retry_count,
            )
            items = await self.run_in_executor(self.source.parse, content)
        except Exception as e:
            error = str(e) or e.__class__.__name__
            logger.error(f"Error fetching {url}: {error}")
            if subscription_id is not None:
                await self.update_subscription_status(subscription_id, False, 0, error)
            return FetchResult(success=False, error=error)

        items = items[:effective.max_items]

        if subscription_id is None:
            logger.info(f"Parsed {len(items)} items from {url}")
            return FetchResult(success=True, items_count=len(items), new_items_count=len(items), items=items)

        new_items = 0
        for index, item in enumerate(items):
            try:
                if await self.pipeline.save_item(
                    item, subscription_id, effective,
                    source_type=source_type or "rss", rss_source=url,
                ):
                    new_items += 1
            except Exception as e:
                logger.error(f"Failed to save item {index} ({item.guid or item.link}) "
                             f"for subscription {subscription_id}: {e}")

        logger.info(f"Subscription {subscription_id}: {new_items} new of {len(items)} items from {url}")
        await self.update_subscription_status(subscription_id, True, len(items), None)
        return FetchResult(success=True, items_count=len(items), new_items_count=new_items)

    async def update_subscription_status(self, subscription_id: int, success: bool,
                                         items_count: int, error: Optional[str]) -> None:
        """Record a fetch outcome; failures here are logged, never raised."""
        try:
            await self.db.execute(
                'update_subscription_health',
                subscription_id=subscription_id,
                success=success,
                items_count=items_count,
                error=error,
            )
        except Exception as e:
            logger.error(f"Failed to update health of subscription {subscription_id}: {e}")

    async def close(self) -> None:
        """Shut down the parser thread pool."""
        if self.executor:
            try:
                await wait_for(
                    get_running_loop().run_in_executor(None, partial(self.executor.shutdown, wait=True)),
                    timeout=30.0,
                )
            except TimeoutError:
                logger.warning("Parser thread pool shutdown timed out after 30 seconds")
                self.executor.shutdown(wait=False)
        logger.info("FeedFetcher closed")
