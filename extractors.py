#!/usr/bin/env python3
"""
Best-effort metadata extraction from feed items.

Each extractor is an ordered list of small named strategies. Media strategies
return every URL they find; avatar strategies return the first hit or None.
New provider quirks are handled by adding a strategy to the relevant list.
"""

import re
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple

from config import get_logger

logger = get_logger("extractors")

IMG_SRC_PATTERN = re.compile(r'<img[^>]+src="([^"]+)"')
HASHTAG_PATTERN = re.compile(r'#(\w+)')
MENTION_PATTERN = re.compile(r'@(\w+)')

# Author formats, tried in order
AUTHOR_SLASH_PATTERN = re.compile(r'^(.+?)\s*/\s*@(\w+)$')
AUTHOR_PAREN_PATTERN = re.compile(r'^(.+?)\s*\(\s*@(\w+)\s*\)$')
AUTHOR_HANDLE_PATTERN = re.compile(r'^@(\w+)$')
AUTHOR_TOKEN_PATTERN = re.compile(r'^\w+$')

# Raw item fields that may carry an avatar, after the item-level image
AVATAR_FIELDS = (
    "feedImage",
    "feed:image",
    "channel:image",
    "authorImage",
    "author:image",
    "creatorImage",
)

AVATAR_CONTENT_PATTERNS = (
    re.compile(r'https?://[^"\'\s]*profile_images[^"\'\s]*'),
    re.compile(r'https?://[^"\'\s]*avatar[^"\'\s]*'),
    re.compile(r'https?://pbs\.twimg\.com/profile_images[^"\'\s]*'),
)


@dataclass
class Author:
    name: Optional[str] = None
    handle: Optional[str] = None
    # "@handle" when the creator names a handle explicitly, else the creator text as given
    author_id: Optional[str] = None
    avatar: Optional[str] = None


def _url_of(value: Any) -> Optional[str]:
    """A URL given either as a string or as an object with a url/href key."""
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, dict):
        for key in ("url", "href"):
            if isinstance(value.get(key), str) and value[key]:
                return value[key]
    return None


# Media strategies: item -> list of URLs

def _enclosure_urls(item) -> List[str]:
    url = _url_of(item.enclosure)
    return [url] if url else []


def _media_content_urls(item) -> List[str]:
    media = item.media_content
    if not media:
        return []
    entries = media if isinstance(media, list) else [media]
    urls = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        url = entry.get("url") or (entry.get("$") or {}).get("url")
        if url:
            urls.append(url)
    return urls


def _inline_image_urls(item) -> List[str]:
    return IMG_SRC_PATTERN.findall(item.content or "")


MEDIA_STRATEGIES: Sequence[Tuple[str, Callable[[Any], List[str]]]] = (
    ("enclosure", _enclosure_urls),
    ("media_content", _media_content_urls),
    ("inline_images", _inline_image_urls),
)


def extract_media_urls(item) -> List[str]:
    """Collect media URLs from every strategy, dropping exact duplicates."""
    urls: List[str] = []
    for name, strategy in MEDIA_STRATEGIES:
        for url in strategy(item):
            if url not in urls:
                urls.append(url)
    return urls


# Avatar strategies: item -> URL or None

def _item_image(item) -> Optional[str]:
    return _url_of(item.image) or _url_of((item.raw or {}).get("image"))


def _raw_image_fields(item) -> Optional[str]:
    raw = item.raw or {}
    for field_name in AVATAR_FIELDS:
        url = _url_of(raw.get(field_name))
        if url:
            return url
    return None


def _content_avatar(item) -> Optional[str]:
    content = item.content or ""
    for pattern in AVATAR_CONTENT_PATTERNS:
        match = pattern.search(content)
        if match:
            return match.group(0)
    return None


AVATAR_STRATEGIES: Sequence[Tuple[str, Callable[[Any], Optional[str]]]] = (
    ("item_image", _item_image),
    ("raw_image_fields", _raw_image_fields),
    ("content_pattern", _content_avatar),
)


def extract_avatar(item) -> Optional[str]:
    """Return the first avatar URL any strategy finds, else None."""
    for name, strategy in AVATAR_STRATEGIES:
        try:
            url = strategy(item)
        except (AttributeError, TypeError) as e:
            logger.debug(f"Avatar strategy {name} failed: {e}")
            continue
        if url:
            return url
    return None


def parse_author(creator: Optional[str]) -> Author:
    """Split a free-text creator field into display name and handle.

    >>> parse_author("Jane Doe / @jane")
    Author(name='Jane Doe', handle='jane', author_id='@jane', avatar=None)
    """
    if not creator or not creator.strip():
        return Author()
    creator = creator.strip()

    for pattern in (AUTHOR_SLASH_PATTERN, AUTHOR_PAREN_PATTERN):
        match = pattern.match(creator)
        if match:
            return Author(name=match.group(1).strip(), handle=match.group(2), author_id=f"@{match.group(2)}")

    match = AUTHOR_HANDLE_PATTERN.match(creator)
    if match:
        return Author(name=match.group(1), handle=match.group(1), author_id=creator)

    if AUTHOR_TOKEN_PATTERN.match(creator):
        return Author(name=creator, handle=creator, author_id=creator)

    match = MENTION_PATTERN.search(creator)
    return Author(name=creator, handle=match.group(1) if match else None, author_id=creator)


def extract_author(item) -> Author:
    """Author identity plus avatar for one feed item."""
    author = parse_author(item.creator)
    author.avatar = extract_avatar(item)
    return author


def extract_hashtags_and_mentions(text: Optional[str]) -> Tuple[List[str], List[str]]:
    """Return (hashtags, mentions) without markers, in order of appearance, duplicates kept."""
    if not text:
        return [], []
    return HASHTAG_PATTERN.findall(text), MENTION_PATTERN.findall(text)
