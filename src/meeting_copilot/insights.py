"""
Periodic insight analysis.

Every few seconds the scheduler takes the final transcript segments that have
not been analyzed yet, joins them into one batch and asks the provider gateway
for insights. Each segment is sent at most once: the cursor moves before the
request goes out, so a failed batch is dropped rather than retried.
"""

import asyncio
import time
from typing import Callable, Iterable, List, Optional, Set, Tuple

from .logger import console_print, log_debug, log_error, log_exception
from .providers import Insight, ProviderError, ProviderGateway, resolve_mode
from .transcript import TranscriptAggregator

FEED_LIMIT = 20


class InsightFeed:
    """Most-recent-first list of insights, capped at `limit` entries."""

    def __init__(self, limit: int = FEED_LIMIT):
        if limit < 1:
            raise ValueError("Feed limit must be at least 1")
        self.limit = limit
        self._items: List[Insight] = []

    def prepend(self, insights: Iterable[Insight]):
        """Put a new batch in front (batch order kept) and drop the overflow."""
        self._items = (list(insights) + self._items)[:self.limit]

    def items(self) -> Tuple[Insight, ...]:
        return tuple(self._items)

    def clear(self):
        self._items = []

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(tuple(self._items))


class InsightScheduler:
    """Runs tick() on a fixed period while started."""

    def __init__(
        self,
        aggregator: TranscriptAggregator,
        gateway: ProviderGateway,
        mode="general",
        period: float = 5.0,
        feed: Optional[InsightFeed] = None,
        on_insights: Optional[Callable[[List[Insight]], None]] = None,
    ):
        """
        Args:
            aggregator: Transcript to read final segments from
            gateway: Provider gateway used for analysis
            mode: Persona name (general, sales, pitch, interview)
            period: Seconds between ticks
            feed: Feed to prepend results to (a new one if omitted)
            on_insights: Called with each non-empty batch of new insights

        Raises:
            ValueError: If mode is unknown
        """
        self.aggregator = aggregator
        self.gateway = gateway
        self.mode = resolve_mode(mode)
        self.period = period
        self.feed = feed if feed is not None else InsightFeed()
        self.on_insights = on_insights

        self.last_tick: Optional[float] = None
        self._cursor = 0
        self._running = False
        # Bumped on every start/stop so late results from an old run are dropped
        self._generation = 0
        self._timer: Optional[asyncio.Task] = None
        self._dispatches: Set[asyncio.Task] = set()

    @property
    def cursor(self) -> int:
        """Number of leading segments already sent for analysis."""
        return self._cursor

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self):
        """Start the periodic timer. Must be called from the event loop."""
        if self._running:
            return
        self._running = True
        self._generation += 1
        self._timer = asyncio.get_running_loop().create_task(self._run_timer())
        log_debug(f"Insight scheduler started (period={self.period}s, mode={self.mode.value})")

    def stop(self):
        """Stop ticking and cancel in-flight requests. Safe to call repeatedly."""
        if not self._running and self._timer is None and not self._dispatches:
            return
        self._running = False
        self._generation += 1
        timer, self._timer = self._timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()
        for task in list(self._dispatches):
            task.cancel()
        self._dispatches.clear()

    async def _run_timer(self):
        while self._running:
            await asyncio.sleep(self.period)
            if not self._running:
                return
            self.tick()

    def _boundary(self, segments) -> int:
        # Everything before a pending (non-final) tail is final
        boundary = len(segments)
        if boundary and not segments[-1].is_final:
            boundary -= 1
        return boundary

    def tick(self, now: Optional[float] = None) -> Optional[asyncio.Task]:
        """
        Send newly finalized segments for analysis.

        Args:
            now: Tick time (epoch seconds); defaults to the current time

        Returns:
            The dispatch task, or None if nothing was sent
        """
        if not self._running:
            return None
        self.last_tick = now if now is not None else time.time()

        segments = self.aggregator.segments()
        boundary = self._boundary(segments)
        batch = [s for s in segments[self._cursor:boundary] if s.is_final]
        if not batch:
            return None

        # Advance before dispatch: a segment is never sent twice
        self._cursor = max(self._cursor, boundary)
        text = " ".join(s.text for s in batch)

        task = asyncio.get_running_loop().create_task(self._dispatch(text, self._generation))
        self._dispatches.add(task)
        task.add_done_callback(self._dispatches.discard)
        return task

    async def _dispatch(self, text: str, generation: int):
        try:
            insights = await self.gateway.analyze(text, self.mode)
        except ProviderError as e:
            log_error(f"Insight analysis failed ({self.gateway.provider_id})", e)
            return
        except Exception as e:
            log_exception(e, "in insight dispatch")
            return

        if generation != self._generation or not self._running:
            log_debug("Discarding insights that arrived after the scheduler stopped")
            return
        if not insights:
            return

        self.feed.prepend(insights)
        console_print(f"[Insights] {len(insights)} new insight(s)")
        if self.on_insights is not None:
            self.on_insights(list(insights))
