"""Refresh orchestration: snapshot -> merge -> summarize -> publish."""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import structlog

from resmon.apps import Aggregator, Application, DisplaySummary
from resmon.channel import CollectorError, SnapshotChannel
from resmon.process import ProcessStore

log = structlog.get_logger()

PublishCallback = Callable[[list[DisplaySummary]], None]
FailureCallback = Callable[[CollectorError], None]


@dataclass
class RefreshState:
    """Runtime counters of the refresh loop."""

    refresh_count: int = 0
    failure_count: int = 0
    skipped_ticks: int = 0
    last_refresh_time: datetime | None = None
    last_error: str | None = None


class Refresher:
    """Drives periodic refreshes and keeps the last good summaries.

    The store is only mutated here. A failed refresh leaves both the store
    and the published summaries as they were.
    """

    def __init__(
        self,
        channel: SnapshotChannel,
        store: ProcessStore,
        aggregator: Aggregator,
        *,
        interval: float = 2.0,
        on_publish: PublishCallback | None = None,
        on_failure: FailureCallback | None = None,
    ):
        self.channel = channel
        self.store = store
        self.aggregator = aggregator
        self.interval = interval  # validated by the setter
        self.on_publish = on_publish
        self.on_failure = on_failure
        self.state = RefreshState()
        self._summaries: list[DisplaySummary] = []
        self._running = False
        self._shutdown_event = asyncio.Event()

    @property
    def interval(self) -> float:
        """Seconds between refresh ticks."""
        return self._interval

    @interval.setter
    def interval(self, value: float) -> None:
        if value <= 0:
            raise ValueError(f"interval must be > 0, got {value}")
        self._interval = float(value)

    @property
    def summaries(self) -> list[DisplaySummary]:
        """Last successfully published summaries (returns a copy)."""
        return list(self._summaries)

    @property
    def busy(self) -> bool:
        """Whether a refresh is in flight."""
        return self._running

    def resolve(self, app_id: str | None) -> Application | None:
        """Resolve an identity against the current cycle's records."""
        return self.aggregator.resolve(self.store.records, app_id)

    async def refresh(self) -> bool:
        """Run one refresh cycle. Returns True if new summaries were published."""
        try:
            samples = await self.channel.fetch()
        except CollectorError as e:
            self.state.failure_count += 1
            self.state.last_error = str(e)
            log.error("refresh_failed", error=str(e), kind=type(e).__name__)
            if self.on_failure is not None:
                self.on_failure(e)
            return False

        records = self.store.merge(samples)
        self._summaries = self.aggregator.summarize(records)
        self.state.refresh_count += 1
        self.state.last_refresh_time = datetime.now()
        self.state.last_error = None

        if self.on_publish is not None:
            self.on_publish(self.summaries)
        return True

    async def tick(self) -> bool:
        """Refresh unless one is already running. Returns False if skipped."""
        if self._running:
            self.state.skipped_ticks += 1
            log.debug("refresh_tick_skipped", skipped=self.state.skipped_ticks)
            return False
        self._running = True
        try:
            await self.refresh()
        finally:
            self._running = False
        return True

    def stop(self) -> None:
        """Ask run() to return after the current cycle."""
        self._shutdown_event.set()

    async def run(self) -> None:
        """Refresh every interval until stop() is called.

        Ticks are aligned to the interval. A refresh that overruns drops the
        ticks it covered rather than queueing them.
        """
        loop = asyncio.get_running_loop()
        log.info("refresher_started", interval=self.interval)
        next_tick = loop.time()

        while not self._shutdown_event.is_set():
            await self.tick()

            next_tick += self.interval
            now = loop.time()
            if now > next_tick:
                missed = int((now - next_tick) // self.interval) + 1
                self.state.skipped_ticks += missed
                next_tick += missed * self.interval
                log.debug("refresh_ticks_dropped", missed=missed)

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=next_tick - now)
                break  # Shutdown requested during sleep
            except asyncio.TimeoutError:
                pass  # Normal timeout, continue to next tick

        log.info(
            "refresher_stopped",
            refreshes=self.state.refresh_count,
            failures=self.state.failure_count,
            skipped=self.state.skipped_ticks,
        )


class Selection:
    """Presentation-side selection that survives refreshes.

    Stores the selected identity, never a position or an object from an old
    cycle. ``reselect`` finds the identity again in the new summaries.
    """

    def __init__(self) -> None:
        self._selected: DisplaySummary | None = None

    @property
    def selected(self) -> DisplaySummary | None:
        return self._selected

    @property
    def app_id(self) -> str | None:
        return self._selected.id if self._selected else None

    def select(self, summary: DisplaySummary | None) -> None:
        self._selected = summary

    def reselect(self, summaries: list[DisplaySummary]) -> int | None:
        """Re-resolve the selection in new summaries and return its index.

        Clears the selection if its application is gone.
        """
        if self._selected is None:
            return None
        wanted = self._selected.id
        for index, summary in enumerate(summaries):
            if summary.id == wanted:
                self._selected = summary
                return index
        self._selected = None
        return None
