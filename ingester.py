#!/usr/bin/env python3
"""
Post ingestion.

Turns validated feed items into stored posts. Each item gets an explicit
outcome: SAVED, DUPLICATE (its URL is already stored for some feed) or
FAILED (any other persistence error). Duplicates are expected on every
refetch and are not errors; failures are logged and never stop the batch.
"""

from calendar import timegm
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Iterable, List, Optional

import feedparser

from config import get_logger
from errors import DuplicateKeyError
from fetcher import RawFeedItem
from models import DatabaseQueue
from telemetry import trace_span

# Module-specific logger
logger = get_logger("ingester")

# Calendar layouts seen in the wild that neither RFC 2822 nor ISO-8601 parsing accepts
CUSTOM_DATE_FORMATS = (
    "%d %b %Y %H:%M:%S %z",
    "%d %b %Y %H:%M:%S %Z",
    "%d %b %Y %H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y/%m/%d %H:%M:%S",
    "%B %d, %Y",
    "%b %d, %Y",
)


class OutcomeStatus(Enum):
    SAVED = "saved"
    DUPLICATE = "duplicate"
    FAILED = "failed"


@dataclass
class ItemOutcome:
    """What happened to a single item."""

    url: str
    status: OutcomeStatus
    reason: Optional[str] = None
    post_id: Optional[int] = None


@dataclass
class IngestReport:
    """Per-item outcomes for one batch, in the order the items were attempted."""

    feed_id: int
    outcomes: List[ItemOutcome] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.outcomes)

    @property
    def saved(self) -> int:
        return self._count(OutcomeStatus.SAVED)

    @property
    def duplicates(self) -> int:
        return self._count(OutcomeStatus.DUPLICATE)

    @property
    def failed(self) -> int:
        return self._count(OutcomeStatus.FAILED)

    def _count(self, status: OutcomeStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status is status)


def parse_published_date(date_str: Optional[str]) -> Optional[int]:
    """Parse a raw publication date into a Unix timestamp.

    Formats are tried in order: RFC 2822, ISO-8601, a handful of common
    calendar layouts and finally feedparser's date handlers. Naive values are
    taken as UTC. Returns None when nothing matches.
    """
    if not date_str or not isinstance(date_str, str):
        return None
    date_str = date_str.strip()
    if not date_str:
        return None

    parsers = (
        _parse_rfc2822,
        _parse_iso8601,
        _parse_custom_formats,
        _parse_with_feedparser,
    )
    for parser in parsers:
        timestamp = parser(date_str)
        if timestamp is not None:
            return timestamp
    logger.debug(f"Unparseable publication date: {date_str!r}")
    return None


def _to_timestamp(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def _parse_rfc2822(date_str: str) -> Optional[int]:
    try:
        return _to_timestamp(parsedate_to_datetime(date_str))
    except (TypeError, ValueError, IndexError, OverflowError):
        return None


def _parse_iso8601(date_str: str) -> Optional[int]:
    value = date_str[:-1] + "+00:00" if date_str.endswith(("Z", "z")) else date_str
    try:
        return _to_timestamp(datetime.fromisoformat(value))
    except (TypeError, ValueError, OverflowError):
        return None


def _parse_custom_formats(date_str: str) -> Optional[int]:
    for fmt in CUSTOM_DATE_FORMATS:
        try:
            return _to_timestamp(datetime.strptime(date_str, fmt))
        except (ValueError, TypeError, OverflowError):
            continue
    return None


def _parse_with_feedparser(date_str: str) -> Optional[int]:
    # feedparser returns a UTC struct_time
    try:
        time_struct = feedparser._parse_date(date_str)
        if time_struct:
            return timegm(time_struct)
    except (ValueError, TypeError, AttributeError, OverflowError):
        return None
    return None


class PostIngester:
    """Stores feed items as posts through the shared DatabaseQueue."""

    def __init__(self, db: DatabaseQueue) -> None:
        self.db = db

    @trace_span(
        "ingest_items",
        tracer_name="ingester",
        attr_from_args=lambda self, feed_id, items: {"feed.id": int(feed_id)},
    )
    async def ingest(self, feed_id: int, items: Iterable[RawFeedItem]) -> IngestReport:
        """Insert every item in order and report per-item outcomes."""
        report = IngestReport(feed_id=feed_id)
        for item in items:
            report.outcomes.append(await self.ingest_item(feed_id, item))
        if report.failed:
            logger.warning(
                f"Feed ID {feed_id}: {report.failed} of {report.attempted} items failed to save"
            )
        return report

    async def ingest_item(self, feed_id: int, item: RawFeedItem) -> ItemOutcome:
        """Insert a single item, classifying the result."""
        published_at = parse_published_date(item.pub_date)
        try:
            post = await self.db.execute(
                'insert_post',
                title=item.title,
                url=item.link,
                description=item.description,
                published_at=published_at,
                feed_id=feed_id,
            )
        except DuplicateKeyError:
            logger.debug(f"Skipping already stored post {item.link}")
            return ItemOutcome(url=item.link, status=OutcomeStatus.DUPLICATE)
        except Exception as e:
            logger.error(f"Failed to save post {item.link} for feed ID {feed_id}: {e}")
            return ItemOutcome(url=item.link, status=OutcomeStatus.FAILED, reason=str(e))
        return ItemOutcome(url=item.link, status=OutcomeStatus.SAVED, post_id=post['id'])
