#!/usr/bin/env python3
"""
RSS feed fetcher and validator.

This module retrieves a single feed over HTTP, parses it with feedparser and
validates the channel metadata and each item. A feed that cannot be retrieved
or lacks its channel title, link or description fails as a whole with
FetchError; an item missing one of its required fields is dropped on its own.
"""

from asyncio import get_event_loop, TimeoutError
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import partial
from typing import Any, List, Optional

import feedparser
from aiohttp import ClientSession, ClientError, ClientTimeout

from config import config, get_logger
from errors import FetchError
from telemetry import init_telemetry, trace_span

# Module-specific logger
logger = get_logger("fetcher")
init_telemetry("gator-fetcher")

REQUIRED_CHANNEL_FIELDS = ('title', 'link', 'description')
REQUIRED_ITEM_FIELDS = ('title', 'link', 'description', 'published')


@dataclass
class RawFeedItem:
    """One validated feed item, before persistence."""

    title: str
    link: str
    description: str
    pub_date: str


@dataclass
class ParsedFeed:
    """Channel metadata plus validated items in document order."""

    title: str
    link: str
    description: str
    items: List[RawFeedItem] = field(default_factory=list)


class FeedFetcher:
    """Retrieves and validates one feed per call. Holds no per-feed state."""

    def __init__(
        self,
        user_agent: Optional[str] = None,
        timeout: Optional[int] = None,
        max_redirects: Optional[int] = None,
    ) -> None:
        self.user_agent = user_agent or config.USER_AGENT
        self.timeout = timeout or config.HTTP_TIMEOUT
        self.max_redirects = config.MAX_REDIRECTS if max_redirects is None else max_redirects
        self.executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="feedparser")

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, session: {"feed.url": url},
    )
    async def fetch_feed(self, url: str, session: ClientSession) -> ParsedFeed:
        """Fetch, parse and validate the feed at url.

        Raises:
            FetchError: network failure, non-success status, unparseable
                document or missing channel fields.
        """
        content = await self._fetch_feed_content(url, session)
        parsed = await self.run_in_executor(self.parse_feed, content, url)
        logger.debug(f"Feed {url} yielded {len(parsed.items)} valid items")
        return parsed

    async def _fetch_feed_content(self, url: str, session: ClientSession) -> bytes:
        """GET the feed body; every failure is converted into FetchError."""
        headers = {'User-Agent': self.user_agent}
        try:
            async with session.get(
                url,
                headers=headers,
                timeout=ClientTimeout(total=self.timeout),
                max_redirects=self.max_redirects,
            ) as response:
                if not 200 <= response.status < 300:
                    reason = getattr(response, 'reason', None) or ''
                    raise FetchError(
                        f"Failed to fetch feed: HTTP {response.status} {reason}".strip(),
                        url=url,
                        status=response.status,
                    )
                return await response.read()
        except TimeoutError as e:
            raise FetchError(f"Timed out after {self.timeout}s fetching feed", url=url) from e
        except ClientError as e:
            raise FetchError(f"Network error: {self._format_client_error(e)}", url=url) from e

    def parse_feed(self, content: bytes | str, url: Optional[str] = None) -> ParsedFeed:
        """Parse a feed document and validate channel and items.

        Items missing (or carrying non-text values for) title, link,
        description or pubDate are dropped; the remaining items keep their
        document order.
        """
        if isinstance(content, str):
            # feedparser treats a str as a URL or path; always hand it the document itself
            content = content.encode('utf-8')
        feed = feedparser.parse(content, sanitize_html=True, resolve_relative_uris=True)
        label = url or "<document>"

        if not feed.get('version'):
            detail = f": {feed.bozo_exception}" if feed.get('bozo') and 'bozo_exception' in feed else ""
            raise FetchError(f"Invalid RSS feed: missing channel{detail}", url=url)
        if feed.get('bozo') and 'bozo_exception' in feed:
            logger.warning(f"Feed parsing warning for {label}: {feed.bozo_exception}")

        channel = feed.get('feed', {})
        missing = [name for name in REQUIRED_CHANNEL_FIELDS if not _text(channel.get(name))]
        if missing:
            raise FetchError(
                f"Invalid RSS feed: missing required channel fields ({', '.join(missing)})",
                url=url,
            )

        items: List[RawFeedItem] = []
        for index, entry in enumerate(feed.get('entries', [])):
            item = self._validate_item(entry)
            if item is None:
                logger.debug(f"Dropping item #{index} from {label}: missing required fields")
                continue
            items.append(item)

        return ParsedFeed(
            title=channel.get('title'),
            link=channel.get('link'),
            description=channel.get('description'),
            items=items,
        )

    def _validate_item(self, entry) -> Optional[RawFeedItem]:
        """Return a RawFeedItem when every required field is non-empty text.

        feedparser fills `link` from a permalink <guid> and `summary` from
        <content:encoded>; neither counts as the item's own <link> or
        <description>.
        """
        values = [entry.get(name) for name in REQUIRED_ITEM_FIELDS]
        if not all(_text(value) for value in values):
            return None
        if not _has_link_element(entry) or not _has_description_element(entry):
            return None
        title, link, description, published = values
        return RawFeedItem(title=title, link=link, description=description, pub_date=published)

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in a thread pool executor."""
        loop = get_event_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    async def close(self) -> None:
        """Shut down the parser thread pool."""
        self.executor.shutdown(wait=True)
        logger.debug("FeedFetcher closed")

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            strerror = getattr(os_error, 'strerror', None)
            if errno is not None:
                parts.append(f"errno={errno}")
            if strerror:
                parts.append(str(strerror))
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)


def _text(value) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _has_link_element(entry) -> bool:
    # Only a real <link> lands in `links`; the guid fallback sets `link` alone
    return any(
        link.get('rel') == 'alternate' and _text(link.get('href'))
        for link in entry.get('links') or []
    )


def _has_description_element(entry) -> bool:
    # Content copied into `summary` carries no `summary_detail`
    return entry.get('summary_detail') is not None
