#!/usr/bin/env python3
"""
Ingest pipeline: turns one parsed feed item into a stored post.

Handles deduplication against existing posts, external id and publish time
resolution, metadata extraction and the insert itself. Persistence errors
propagate to the caller, which isolates them per item.
"""

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from hashlib import md5
from time import time
from typing import Optional

from config import FetchConfig, get_logger
from extractors import extract_author, extract_hashtags_and_mentions, extract_media_urls
from feed_source import FeedItem, html_to_text
from models import DatabaseQueue, Post
from telemetry import trace_span
from utils import truncate_string

logger = get_logger("ingest")

MAX_TITLE_LENGTH = 500


def _parse_timestamp(value: Optional[str]) -> Optional[int]:
    """ISO 8601 or RFC 822 date string to a Unix timestamp."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        try:
            dt = parsedate_to_datetime(value)
        except (TypeError, ValueError, IndexError):
            return None
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def resolve_external_id(item: FeedItem, subscription_id: int) -> str:
    """guid, else link, else a synthesized id unique enough for malformed feeds."""
    if item.guid and item.guid.strip():
        return item.guid.strip()
    if item.link and item.link.strip():
        return item.link.strip()
    now_ms = int(time() * 1000)
    digest = md5(f"{item.title or ''}{item.content or ''}".encode()).hexdigest()[:8]
    return f"{subscription_id}-{now_ms}-{digest}"


def resolve_published_at(item: FeedItem) -> int:
    return _parse_timestamp(item.iso_date) or _parse_timestamp(item.pub_date) or int(time())


def dedup_key(item: FeedItem, config: FetchConfig) -> Optional[str]:
    """Value of the configured dedup field, or None when dedup is off or the field is empty."""
    if not config.deduplication.enabled:
        return None
    value = getattr(item, config.deduplication.field, None)
    if isinstance(value, str):
        value = value.strip()
    return value or None


class IngestPipeline:
    def __init__(self, db: DatabaseQueue):
        self.db = db

    def build_post(self, item: FeedItem, subscription_id: int, source_type: str,
                   rss_source: Optional[str] = None) -> Post:
        """Normalize a feed item into a Post (no I/O)."""
        media_urls = extract_media_urls(item)
        author = extract_author(item)
        hashtags, mentions = extract_hashtags_and_mentions(html_to_text(item.content) or item.title)

        return Post(
            subscription_id=subscription_id,
            external_id=resolve_external_id(item, subscription_id),
            title=truncate_string(item.title or "", MAX_TITLE_LENGTH) or "",
            content=item.content or item.content_snippet or "",
            content_type="mixed" if media_urls else "text",
            source_type=source_type,
            rss_source=rss_source,
            link_url=item.link,
            author_id=author.author_id,
            author_name=author.name,
            author_username=author.handle,
            author_avatar=author.avatar,
            media_urls=media_urls,
            hashtags=hashtags,
            mentions=mentions,
            raw_data=item.raw or item.to_dict(),
            published_at=resolve_published_at(item),
        )

    @trace_span(
        "ingest.save_item",
        tracer_name="ingest",
        attr_from_args=lambda self, item, subscription_id, config, source_type="rss", rss_source=None: {
            "subscription.id": int(subscription_id),
            "item.has_guid": bool(item.guid),
        },
    )
    async def save_item(self, item: FeedItem, subscription_id: int, config: FetchConfig,
                        source_type: str = "rss", rss_source: Optional[str] = None) -> bool:
        """Persist one feed item unless it was already ingested.

        Returns:
            True if a new post was written, False if it was a duplicate.

        Raises:
            PersistenceError: If the lookup or insert fails.
        """
        key = dedup_key(item, config)
        if key is not None:
            existing = await self.db.execute(
                'find_post_by_external_id', subscription_id=subscription_id, external_id=key
            )
            if existing is not None:
                logger.debug(f"Skipping duplicate item {key!r} for subscription {subscription_id}")
                return False

        post = self.build_post(item, subscription_id, source_type, rss_source)
        inserted = await self.db.execute('insert_post', post=post)
        if not inserted:
            # Lost a race with a concurrent fetch, or the dedup field differs from the external id
            logger.debug(f"Post {post.external_id!r} already stored for subscription {subscription_id}")
        return inserted
