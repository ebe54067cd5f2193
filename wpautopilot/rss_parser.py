"""
RSS / Atom feed reader used by RSS-sourced schedules.

Fetches the feed over aiohttp with a hard timeout and hands the bytes to
feedparser, which normalises RSS 2.0 and Atom into one shape.
"""

from __future__ import annotations

import asyncio
import html
import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import aiohttp
import feedparser

from wpautopilot.config import RSS_TIMEOUT_SECONDS, USER_AGENT
from wpautopilot.errors import UpstreamError

logger = logging.getLogger("rss_parser")

if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_handler)

MAX_DESCRIPTION_CHARS = 500

_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")

FEED_ACCEPT = "application/rss+xml, application/atom+xml, application/xml, text/xml"


def strip_html(text: str) -> str:
    """Remove HTML tags, decode entities and collapse whitespace."""
    text = _TAG_RE.sub(" ", text or "")
    text = html.unescape(text)
    return _WHITESPACE_RE.sub(" ", text).strip()


@dataclass
class FeedItem:
    title: str
    link: str
    description: str = ""
    content: str = ""
    published_at: Optional[str] = None
    author: str = ""
    categories: list[str] = field(default_factory=list)
    guid: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FeedData:
    title: str
    description: str
    link: str
    items: list[FeedItem] = field(default_factory=list)


def _entry_published(entry: Any) -> Optional[str]:
    parsed = entry.get("published_parsed") or entry.get("updated_parsed")
    if not parsed:
        return None
    return datetime(*parsed[:6], tzinfo=timezone.utc).isoformat()


def _entry_content(entry: Any) -> str:
    contents = entry.get("content") or []
    for part in contents:
        value = part.get("value") if isinstance(part, dict) else getattr(part, "value", "")
        if value:
            return value
    return entry.get("summary", "") or ""


def parse_feed_bytes(raw: bytes | str) -> FeedData:
    """Parse an RSS 2.0 or Atom document. Raises UpstreamError if it is neither."""
    parsed = feedparser.parse(raw)
    if parsed.get("bozo") and not parsed.entries and not parsed.feed:
        reason = parsed.get("bozo_exception")
        raise UpstreamError(f"Failed to parse feed: {reason}")
    if not parsed.get("version") and not parsed.entries:
        raise UpstreamError("Unsupported feed format")

    feed_meta = parsed.feed
    items: list[FeedItem] = []
    for entry in parsed.entries:
        link = (entry.get("link") or "").strip()
        title = strip_html(entry.get("title", ""))
        if not link or not title:
            continue
        items.append(
            FeedItem(
                title=title,
                link=link,
                description=strip_html(entry.get("summary", ""))[:MAX_DESCRIPTION_CHARS],
                content=_entry_content(entry),
                published_at=_entry_published(entry),
                author=entry.get("author", "") or "",
                categories=[t.get("term", "") for t in entry.get("tags", []) if t.get("term")],
                guid=entry.get("id", "") or "",
            )
        )

    return FeedData(
        title=strip_html(feed_meta.get("title", "")),
        description=strip_html(feed_meta.get("subtitle", "") or feed_meta.get("description", "")),
        link=feed_meta.get("link", "") or "",
        items=items,
    )


class RSSParser:
    """Async feed fetcher. No retries; a failed fetch fails the run."""

    def __init__(self, timeout: int = RSS_TIMEOUT_SECONDS) -> None:
        self.timeout = timeout

    async def fetch(self, url: str) -> bytes:
        headers = {"User-Agent": f"{USER_AGENT} RSS Reader", "Accept": FEED_ACCEPT}
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout, headers=headers) as session:
                async with session.get(url) as resp:
                    if resp.status >= 400:
                        raise UpstreamError(
                            f"Failed to fetch feed {url}: HTTP {resp.status}",
                            status_code=resp.status,
                            provider="rss",
                        )
                    return await resp.read()
        except UpstreamError:
            raise
        except asyncio.TimeoutError as exc:
            raise UpstreamError(
                f"Feed request timed out after {self.timeout}s: {url}", provider="rss"
            ) from exc
        except aiohttp.ClientError as exc:
            raise UpstreamError(f"Failed to fetch feed {url}: {exc}", provider="rss") from exc

    async def parse_feed(self, url: str) -> FeedData:
        raw = await self.fetch(url)
        data = parse_feed_bytes(raw)
        logger.info("Parsed %d item(s) from feed %s", len(data.items), url)
        return data

