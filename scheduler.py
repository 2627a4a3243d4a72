#!/usr/bin/env python3
"""
Feed aggregation scheduler.

FeedAggregator performs one tick of work: pick the stalest feed, stamp it as
fetched, fetch it and ingest its items. FeedScheduler fires ticks at a fixed
cadence until asked to stop:

- One tick runs immediately, then one every interval.
- The interval timer runs independently of how long a tick takes.
- With the default "skip" overlap policy a tick that fires while the
  previous one is still running is skipped; "allow" lets ticks overlap.
- Stopping clears the timer but never cancels a tick already in progress.
"""

from asyncio import Event, TimeoutError, create_task, gather, wait_for
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Set

from aiohttp import ClientSession

from config import OVERLAP_POLICIES, config, get_logger
from errors import ConfigurationError, FetchError
from fetcher import FeedFetcher
from ingester import PostIngester
from models import DatabaseQueue
from telemetry import init_telemetry, trace_span
from utils import format_duration

# Module-specific logger
logger = get_logger("scheduler")
init_telemetry("gator-scheduler")


class SchedulerState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


@dataclass
class TickReport:
    """Result of one tick for the selected feed."""

    feed_id: int
    feed_name: str
    feed_url: str
    found: int = 0
    saved: int = 0
    duplicates: int = 0
    failed: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class FeedAggregator:
    """Runs the select → mark → fetch → ingest sequence for one feed per call."""

    def __init__(
        self,
        db: DatabaseQueue,
        fetcher: Optional[FeedFetcher] = None,
        ingester: Optional[PostIngester] = None,
        session: Optional[ClientSession] = None,
    ) -> None:
        self.db = db
        self.fetcher = fetcher or FeedFetcher()
        self.ingester = ingester or PostIngester(db)
        self.session = session
        self._owns_session = session is None

    async def open(self) -> None:
        """Create the shared HTTP session if one was not supplied."""
        if self.session is None:
            self.session = ClientSession()
            self._owns_session = True

    async def close(self) -> None:
        """Release the HTTP session (when owned) and the fetcher's executor."""
        if self.session is not None and self._owns_session:
            await self.session.close()
            self.session = None
        await self.fetcher.close()

    @trace_span("aggregator.tick", tracer_name="scheduler")
    async def scrape_next_feed(self) -> Optional[TickReport]:
        """Process the feed fetched longest ago.

        Returns None when there are no feeds. Fetch failures are logged and
        reported in the TickReport; they never propagate.
        """
        feed = await self.db.execute('select_next_feed')
        if not feed:
            logger.info("No feeds to fetch")
            return None

        name, url = feed['name'], feed['url']
        logger.info(f"Fetching feed: {name} ({url})")

        # Stamp before the network call so a failing feed waits its turn like the rest
        await self.db.execute('mark_feed_fetched', feed_id=feed['id'])
        report = TickReport(feed_id=feed['id'], feed_name=name, feed_url=url)

        await self.open()
        try:
            parsed = await self.fetcher.fetch_feed(url, self.session)
        except FetchError as e:
            logger.error(f"Error fetching feed {name}: {e}")
            report.error = str(e)
            return report

        report.found = len(parsed.items)
        logger.info(f"Found {report.found} posts in {name}")

        ingest = await self.ingester.ingest(feed['id'], parsed.items)
        report.saved = ingest.saved
        report.duplicates = ingest.duplicates
        report.failed = ingest.failed
        logger.info(f"Saved {report.saved} new posts from {name}")
        return report


class FeedScheduler:
    """Fires a tick coroutine at a fixed cadence until stopped."""

    def __init__(
        self,
        tick: Callable[[], Awaitable[object]],
        overlap_policy: Optional[str] = None,
    ) -> None:
        policy = (overlap_policy or config.SCHEDULER_OVERLAP_POLICY).lower()
        if policy not in OVERLAP_POLICIES:
            raise ConfigurationError(
                f"Invalid overlap policy: {overlap_policy}. Expected one of: {', '.join(OVERLAP_POLICIES)}"
            )
        self.tick = tick
        self.overlap_policy = policy
        self.state = SchedulerState.IDLE
        self.ticks_started = 0
        self.ticks_skipped = 0
        self._in_flight: Set = set()
        self._stop_requested = Event()
        self._stopped = Event()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def start(self, interval_ms: int) -> None:
        """Tick now and then every interval_ms until stopped.

        Returns once the stop has been acknowledged and every in-flight tick
        has run to completion.
        """
        if self.state is not SchedulerState.IDLE:
            raise RuntimeError(f"Scheduler cannot start from state {self.state.value}")
        if interval_ms <= 0:
            raise ConfigurationError("Interval must be greater than zero")

        self.state = SchedulerState.RUNNING
        interval = interval_ms / 1000.0
        logger.info(f"Collecting feeds every {format_duration(interval_ms)} (overlap policy: {self.overlap_policy})")

        try:
            while True:
                self._launch_tick()
                try:
                    await wait_for(self._stop_requested.wait(), timeout=interval)
                    break
                except TimeoutError:
                    continue
        finally:
            self.state = SchedulerState.STOPPED
            self._stopped.set()
            if self._in_flight:
                logger.info(f"Waiting for {len(self._in_flight)} in-flight tick(s) to finish")
                await gather(*self._in_flight, return_exceptions=True)
            logger.info(
                f"Scheduler stopped after {self.ticks_started} tick(s), {self.ticks_skipped} skipped"
            )

    def request_stop(self) -> None:
        """Ask the loop to stop; safe to call from a signal handler."""
        if self.state is SchedulerState.RUNNING:
            logger.info("Shutting down feed aggregator...")
            self.state = SchedulerState.SHUTTING_DOWN
            self._stop_requested.set()
        elif self.state is SchedulerState.IDLE:
            self.state = SchedulerState.STOPPED
            self._stopped.set()

    async def stop(self) -> None:
        """Request a stop and wait until it has been acknowledged."""
        self.request_stop()
        await self._stopped.wait()

    def _launch_tick(self) -> None:
        if self._in_flight and self.overlap_policy == "skip":
            self.ticks_skipped += 1
            logger.warning("Previous tick still running; skipping this tick")
            return
        self.ticks_started += 1
        task = create_task(self._run_tick(self.ticks_started))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _run_tick(self, number: int) -> None:
        try:
            await self.tick()
        except Exception as e:
            # A broken tick must never take the loop down
            logger.error(f"Error in tick #{number}: {e}")
