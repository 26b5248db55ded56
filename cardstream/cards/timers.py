"""
CardStream Deferred Timers

Deferred callbacks used for after_delay reveals and the recalculation
debounce. ManualTimer keeps a virtual clock the host advances; AsyncioTimer
hands callbacks to a running event loop.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from heapq import heappush, heappop
from typing import Any, Callable, Dict, List, Optional, Protocol
import asyncio
import itertools
import logging

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class DeferredTimer(Protocol):
    """Anything that can run a callback after a delay."""

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle: ...


# =============================================================================
# MANUAL TIMER
# =============================================================================

_sequence = itertools.count()


@dataclass
class ManualTimerTask:
    """A callback waiting on the virtual clock."""
    due_at: float
    callback: Callable[[], None]
    sequence: int = field(default_factory=lambda: next(_sequence))
    cancelled: bool = False

    def __lt__(self, other: "ManualTimerTask") -> bool:
        """For heap ordering."""
        if self.due_at != other.due_at:
            return self.due_at < other.due_at
        return self.sequence < other.sequence

    def cancel(self) -> None:
        self.cancelled = True


class ManualTimer:
    """
    Virtual clock timer.

    Nothing fires until advance() or run_all() is called, which makes
    delayed reveals deterministic in tests and embedded hosts.
    """

    def __init__(self):
        self._queue: List[ManualTimerTask] = []  # Heap queue
        self._now = 0.0
        self._fired_count = 0

    @property
    def now(self) -> float:
        return self._now

    @property
    def fired_count(self) -> int:
        return self._fired_count

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> ManualTimerTask:
        task = ManualTimerTask(due_at=self._now + max(0.0, delay_seconds), callback=callback)
        heappush(self._queue, task)
        logger.debug(f"Scheduled callback at t={task.due_at:.3f}")
        return task

    def pending(self) -> int:
        return sum(1 for t in self._queue if not t.cancelled)

    def advance(self, seconds: float) -> int:
        """Move the clock forward, firing everything that falls due. Returns the number fired."""
        target = self._now + max(0.0, seconds)
        fired = 0
        while self._queue and self._queue[0].due_at <= target:
            task = heappop(self._queue)
            self._now = task.due_at
            if task.cancelled:
                continue
            task.callback()
            fired += 1
        self._now = target
        self._fired_count += fired
        return fired

    def run_all(self, max_rounds: int = 1000) -> int:
        """Fire every pending callback, including ones scheduled while firing."""
        fired = 0
        for _ in range(max_rounds):
            live = [t for t in self._queue if not t.cancelled]
            if not live:
                break
            fired += self.advance(max(t.due_at for t in live) - self._now)
        return fired

    def clear(self) -> int:
        count = self.pending()
        self._queue.clear()
        return count

    def get_stats(self) -> Dict[str, Any]:
        return {"now": self._now, "pending": self.pending(), "fired": self._fired_count}


# =============================================================================
# ASYNCIO TIMER
# =============================================================================

class AsyncioTimer:
    """Schedules callbacks on an asyncio event loop with call_later."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is not None:
            return self._loop
        return asyncio.get_running_loop()

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return self._get_loop().call_later(max(0.0, delay_seconds), callback)
