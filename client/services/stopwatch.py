"""
Stopwatch Registry

Named, independent stopwatches with live state streaming. Each running
stopwatch owns one background asyncio task that publishes its elapsed time at
a fixed cadence until the stopwatch is stopped or reset.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from config import get_settings
from models import TimerState

logger = logging.getLogger(__name__)
settings = get_settings()

_CLOSED = object()


class TimerSubscription:
    """
    Live stream of one stopwatch's state.

    The stopwatch's current state is queued as soon as the subscription is
    created; every later update follows in order. When the buffer is full the
    oldest update is dropped so the newest one is always delivered.

    Usage:
        async for state in registry.subscribe("generate"):
            print(state.display_text)
    """

    def __init__(self, name: str, registry: "StopwatchRegistry", maxsize: int):
        self.name = name
        self._registry = registry
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, maxsize))
        self._closed = False
        self.latest: Optional[TimerState] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def _push(self, item) -> None:
        if self._queue.full():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
        self._queue.put_nowait(item)

    def _deliver(self, state: TimerState) -> None:
        if self._closed:
            return
        self.latest = state
        self._push(state)

    async def get(self) -> TimerState:
        """Wait for the next state; raises StopAsyncIteration once closed."""
        item = await self._queue.get()
        if item is _CLOSED:
            # Keep the marker for any other waiter
            self._push(_CLOSED)
            raise StopAsyncIteration
        return item

    def drain(self) -> List[TimerState]:
        """Return every buffered state without waiting."""
        states = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is _CLOSED:
                self._push(_CLOSED)
                break
            states.append(item)
        return states

    def close(self) -> None:
        """Stop receiving updates and wake any pending reader."""
        if self._closed:
            return
        self._closed = True
        self._registry._unsubscribe(self)
        self._push(_CLOSED)

    def __aiter__(self) -> "TimerSubscription":
        return self

    async def __anext__(self) -> TimerState:
        return await self.get()


@dataclass
class _Stopwatch:
    """Registry entry for one named stopwatch"""
    name: str
    start_instant: Optional[float] = None
    running: bool = False
    state: TimerState = field(default_factory=TimerState.zero)
    producer: Optional[asyncio.Task] = None
    live_producers: Set[asyncio.Task] = field(default_factory=set)
    subscribers: List[TimerSubscription] = field(default_factory=list)


class StopwatchRegistry:
    """
    Process-wide set of named stopwatches.

    Stopwatches are created lazily on first reference and are independent:
    starting one never touches another. Starting a running stopwatch cancels
    its producer before a new one is installed, so a name never has two
    producers emitting at once.

    ``start`` must be called from within a running event loop.
    """

    def __init__(
        self,
        tick_ms: Optional[int] = None,
        clock: Optional[Callable[[], float]] = None,
        queue_size: Optional[int] = None,
    ):
        """
        Initialize registry

        Args:
            tick_ms: Live-update cadence in milliseconds
            clock: Monotonic clock returning seconds (defaults to time.perf_counter)
            queue_size: Buffered updates per subscriber
        """
        self.tick_ms = tick_ms if tick_ms is not None else settings.stopwatch_tick_ms
        self.queue_size = queue_size if queue_size is not None else settings.subscriber_queue_size
        self._clock = clock or time.perf_counter
        self._stopwatches: Dict[str, _Stopwatch] = {}

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def _get_or_create(self, name: str) -> _Stopwatch:
        stopwatch = self._stopwatches.get(name)
        if stopwatch is None:
            stopwatch = _Stopwatch(name=name)
            self._stopwatches[name] = stopwatch
            logger.debug(f"Registered stopwatch '{name}'")
        return stopwatch

    def create(self, name: str) -> TimerState:
        """Register ``name`` if needed and return its current state."""
        return self._get_or_create(name).state

    def names(self) -> List[str]:
        return list(self._stopwatches)

    def state(self, name: str) -> TimerState:
        stopwatch = self._stopwatches.get(name)
        return stopwatch.state if stopwatch else TimerState.zero()

    def is_running(self, name: str) -> bool:
        stopwatch = self._stopwatches.get(name)
        return bool(stopwatch and stopwatch.running)

    def producer_count(self, name: str) -> int:
        """Number of live-update loops currently alive for ``name``."""
        stopwatch = self._stopwatches.get(name)
        return len(stopwatch.live_producers) if stopwatch else 0

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    def start(self, name: str) -> None:
        """Start (or restart) the stopwatch and begin live updates."""
        loop = asyncio.get_running_loop()
        stopwatch = self._get_or_create(name)
        self._cancel_producer(stopwatch)

        stopwatch.start_instant = self._clock()
        stopwatch.running = True
        self._publish(stopwatch, TimerState.at(0.0, running=True))

        stopwatch.producer = loop.create_task(
            self._produce(stopwatch), name=f"stopwatch:{name}"
        )
        logger.debug(f"Stopwatch '{name}' started")

    def stop(self, name: str) -> TimerState:
        """
        Stop the stopwatch and return its final state.

        Stopping a stopwatch that is not running returns its current state
        (the zero state if it was never started).
        """
        stopwatch = self._stopwatches.get(name)
        if stopwatch is None:
            return TimerState.zero()
        if not stopwatch.running:
            return stopwatch.state

        self._cancel_producer(stopwatch)
        final_state = TimerState.at(self._elapsed_ms(stopwatch), running=False)
        stopwatch.running = False
        self._publish(stopwatch, final_state)

        logger.debug(f"Stopwatch '{name}' stopped at {final_state.display_text}")
        return final_state

    def reset(self, name: str) -> None:
        """Cancel live updates and return the stopwatch to its initial state."""
        stopwatch = self._stopwatches.get(name)
        if stopwatch is None:
            return

        self._cancel_producer(stopwatch)
        stopwatch.start_instant = None
        stopwatch.running = False
        self._publish(stopwatch, TimerState.zero())
        logger.debug(f"Stopwatch '{name}' reset")

    def subscribe(self, name: str) -> TimerSubscription:
        """Open a live stream; the current state is delivered first."""
        stopwatch = self._get_or_create(name)
        subscription = TimerSubscription(name, self, self.queue_size)
        stopwatch.subscribers.append(subscription)
        subscription._deliver(stopwatch.state)
        return subscription

    async def close(self) -> None:
        """Cancel every producer, close every subscription and forget all names."""
        tasks = []
        for stopwatch in self._stopwatches.values():
            tasks.extend(stopwatch.live_producers)
            self._cancel_producer(stopwatch)
            stopwatch.running = False
            for subscription in list(stopwatch.subscribers):
                subscription.close()

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._stopwatches.clear()
        logger.debug("Stopwatch registry closed")

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _elapsed_ms(self, stopwatch: _Stopwatch) -> float:
        if stopwatch.start_instant is None:
            return 0.0
        return (self._clock() - stopwatch.start_instant) * 1000

    def _cancel_producer(self, stopwatch: _Stopwatch) -> None:
        if stopwatch.producer is not None:
            stopwatch.producer.cancel()
            stopwatch.producer = None

    def _publish(self, stopwatch: _Stopwatch, state: TimerState) -> None:
        stopwatch.state = state
        for subscription in list(stopwatch.subscribers):
            subscription._deliver(state)

    def _unsubscribe(self, subscription: TimerSubscription) -> None:
        stopwatch = self._stopwatches.get(subscription.name)
        if stopwatch and subscription in stopwatch.subscribers:
            stopwatch.subscribers.remove(subscription)

    async def _produce(self, stopwatch: _Stopwatch) -> None:
        me = asyncio.current_task()
        stopwatch.live_producers.add(me)
        interval = self.tick_ms / 1000
        try:
            while True:
                await asyncio.sleep(interval)
                # A superseded loop must never publish
                if stopwatch.producer is not me:
                    break
                self._publish(
                    stopwatch,
                    TimerState.at(self._elapsed_ms(stopwatch), running=True),
                )
        finally:
            stopwatch.live_producers.discard(me)


class NullStopwatchRegistry(StopwatchRegistry):
    """
    Registry for the timer-less client variant.

    Names are still registered and subscribable, but no producer ever runs and
    every stopwatch reports the zero state.
    """

    def start(self, name: str) -> None:
        self._get_or_create(name)

    def stop(self, name: str) -> TimerState:
        return TimerState.zero()

