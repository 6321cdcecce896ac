#!/usr/bin/env python3
"""
Feed retrieval and parsing.

``FeedSource`` downloads raw feed bytes over aiohttp under a bounded timeout
(with retries for transient failures) and turns them into ``FeedItem``
records via feedparser. It has no knowledge of subscriptions or storage.
"""

from asyncio import TimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import feedparser
from aiohttp import ClientError, ClientSession, ClientTimeout
from bs4 import BeautifulSoup

from config import config, get_logger
from errors import ParseError, TransportError
from telemetry import trace_span
from utils import RetryHelper

logger = get_logger("feed_source")

MAX_REDIRECTS = 5

# Safer parsing options for feedparser
FEEDPARSER_OPTIONS = {
    'sanitize_html': True,
    'resolve_relative_uris': True,
}


@dataclass
class FeedItem:
    """One entry of a parsed feed, in the shape the ingest pipeline consumes.

    ``raw`` is the full provider record (JSON-safe), kept verbatim on the post.
    """

    guid: Optional[str] = None
    link: Optional[str] = None
    title: Optional[str] = None
    content: Optional[str] = None
    content_snippet: Optional[str] = None
    creator: Optional[str] = None
    iso_date: Optional[str] = None
    pub_date: Optional[str] = None
    enclosure: Optional[Dict[str, Any]] = None
    media_content: Any = None
    image: Any = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "guid": self.guid,
            "link": self.link,
            "title": self.title,
            "content": self.content,
            "contentSnippet": self.content_snippet,
            "creator": self.creator,
            "isoDate": self.iso_date,
            "pubDate": self.pub_date,
            "enclosure": self.enclosure,
        }


def _json_safe(value: Any) -> Any:
    """Convert feedparser structures (FeedParserDict, struct_time) to plain JSON types."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return str(value)


def _format_client_error(error: ClientError) -> str:
    """Describe aiohttp client errors with any available status/errno."""
    parts: List[str] = [error.__class__.__name__]
    status = getattr(error, 'status', None)
    if status is not None:
        parts.append(f"status={status}")
    os_error = getattr(error, 'os_error', None)
    if os_error is not None:
        errno = getattr(os_error, 'errno', None)
        if errno is not None:
            parts.append(f"errno={errno}")
    message = str(error)
    if message:
        parts.append(message)
    return " ".join(parts)


def _iso_date(entry) -> Optional[str]:
    for key in ('published_parsed', 'updated_parsed'):
        value = entry.get(key)
        if value:
            try:
                return datetime(*value[:6], tzinfo=timezone.utc).isoformat()
            except (TypeError, ValueError):
                continue
    return None


def html_to_text(html: Optional[str]) -> Optional[str]:
    if not html:
        return None
    text = BeautifulSoup(html, 'html.parser').get_text(" ", strip=True)
    return text or None


def entry_to_item(entry, feed_image: Optional[str] = None) -> FeedItem:
    """Build a FeedItem from one feedparser entry."""
    content = None
    for content_item in entry.get('content') or []:
        if content_item.get('value'):
            content = content_item['value']
            break
    summary = entry.get('summary') or entry.get('description')
    if not content:
        content = summary

    enclosure = None
    enclosures = entry.get('enclosures') or []
    if enclosures:
        first = enclosures[0]
        url = first.get('href') or first.get('url')
        if url:
            enclosure = {"url": url, "type": first.get('type'), "length": first.get('length')}

    raw = _json_safe(dict(entry))
    if feed_image and 'feedImage' not in raw:
        raw['feedImage'] = feed_image

    return FeedItem(
        guid=entry.get('id') or entry.get('guid'),
        link=entry.get('link'),
        title=entry.get('title'),
        content=content,
        content_snippet=html_to_text(summary or content),
        creator=entry.get('author') or entry.get('dc_creator'),
        iso_date=_iso_date(entry),
        pub_date=entry.get('published') or entry.get('updated'),
        enclosure=enclosure,
        media_content=_json_safe(entry.get('media_content')),
        image=_json_safe(entry.get('image')),
        raw=raw,
    )


class FeedSource:
    """Retrieves and parses RSS/Atom documents."""

    def __init__(self, retry_helper: Optional[RetryHelper] = None):
        self.retry_helper = retry_helper or RetryHelper(
            max_retries=config.MAX_RETRIES, base_delay=config.RETRY_DELAY_BASE
        )

    @trace_span(
        "feed_source.fetch_raw",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, timeout, headers=None, user_agent=None, retry_count=0: {
            "http.url": url,
            "http.timeout": float(timeout),
            "fetch.retry_count": int(retry_count),
        },
    )
    async def fetch_raw(self, url: str, timeout: float, headers: Optional[Dict[str, str]] = None,
                        user_agent: Optional[str] = None, retry_count: int = 0) -> bytes:
        """Download a feed document.

        Args:
            url: Feed URL
            timeout: Total per-request timeout in seconds; expiry aborts the request
            headers: Extra request headers (applied after the User-Agent)
            user_agent: User-Agent header value
            retry_count: Retries after the first attempt for timeouts, connection
                errors and 5xx/429 responses

        Returns:
            The response body

        Raises:
            TransportError: When the last attempt fails or the error is not retryable.
        """
        request_headers = {'User-Agent': user_agent or config.USER_AGENT}
        request_headers.update(headers or {})
        attempts = max(int(retry_count), 0) + 1

        async with ClientSession(timeout=ClientTimeout(total=timeout)) as session:
            for attempt in range(attempts):
                try:
                    async with session.get(url, headers=request_headers, max_redirects=MAX_REDIRECTS) as response:
                        if not 200 <= response.status < 300:
                            raise TransportError(
                                f"HTTP {response.status}: {response.reason}",
                                status=response.status,
                                retryable=response.status >= 500 or response.status == 429,
                            )
                        return await response.read()
                except TimeoutError:
                    error = TransportError(f"Request timed out after {timeout:g}s")
                except ClientError as e:
                    error = TransportError(f"Network error: {_format_client_error(e)}")
                except TransportError as e:
                    error = e

                if not error.retryable or attempt >= attempts - 1:
                    raise error
                logger.warning("Retry %d/%d for %s due to error: %s", attempt + 1, attempts - 1, url, error)
                await self.retry_helper.sleep_for_attempt(attempt)

        raise TransportError(f"No attempt made for {url}")

    def parse(self, content: bytes) -> List[FeedItem]:
        """Parse a feed document into items, in document order.

        Raises:
            ParseError: If the payload is not an RSS/Atom document.
        """
        feed = feedparser.parse(content, **FEEDPARSER_OPTIONS)
        entries = feed.get('entries') or []
        if feed.get('bozo') and not entries and not feed.get('version'):
            raise ParseError(f"Malformed feed: {feed.get('bozo_exception')}")
        if feed.get('bozo'):
            logger.debug(f"Feed parsed with warnings ({feed.get('version')}): {feed.get('bozo_exception')}")

        feed_image = None
        image = (feed.get('feed') or {}).get('image')
        if isinstance(image, dict):
            feed_image = image.get('href') or image.get('url')

        return [entry_to_item(entry, feed_image) for entry in entries]
