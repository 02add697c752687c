"""
Countdown for an active hold.

Remaining time is always derived from the hold's absolute expiry, so a page
reload (a fresh ``recover()`` followed by a new countdown) shows the same
remaining time as before the reload. ``remaining()`` is the pure part; the
``Countdown`` class adds the one-second tick and the once-only expiry.
"""

import asyncio
import logging
import math
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Callable, Optional

logger = logging.getLogger(__name__)

TICK_SECONDS = 1.0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def remaining(now: datetime, expiry: datetime) -> int:
    """Whole seconds left until `expiry`, clamped at zero. A started second still counts."""
    seconds = (expiry - now).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds)


class CountdownState(str, Enum):
    RUNNING = "running"
    EXPIRED = "expired"
    STOPPED = "stopped"


class Countdown:
    def __init__(
        self,
        expiry: datetime,
        on_tick: Optional[Callable[[int], None]] = None,
        on_expire: Optional[Callable[[], None]] = None,
        clock: Callable[[], datetime] = utcnow,
        interval: float = TICK_SECONDS,
    ):
        self.expiry = expiry
        self.on_tick = on_tick
        self.on_expire = on_expire
        self.clock = clock
        self.interval = interval
        self.state = CountdownState.RUNNING
        self.last_remaining: Optional[int] = None
        self._lock = threading.Lock()
        self._task: Optional[asyncio.Task] = None

    def tick(self, now: datetime | None = None) -> int:
        # State is checked and moved under the lock so concurrent ticks at zero expire once
        with self._lock:
            if self.state is not CountdownState.RUNNING:
                return 0 if self.state is CountdownState.EXPIRED else (self.last_remaining or 0)
            value = remaining(now or self.clock(), self.expiry)
            self.last_remaining = value
            expired = value == 0
            if expired:
                self.state = CountdownState.EXPIRED
        if self.on_tick:
            self.on_tick(value)
        if expired:
            logger.info("Countdown reached zero (expiry %s)", self.expiry.isoformat())
            if self.on_expire:
                self.on_expire()
        return value

    async def ticks(self) -> AsyncIterator[int]:
        while self.state is CountdownState.RUNNING:
            # Expiry side effects do blocking DB and backend I/O
            value = await asyncio.to_thread(self.tick)
            yield value
            if self.state is not CountdownState.RUNNING:
                return
            await asyncio.sleep(self.interval)

    async def run(self) -> None:
        async for _ in self.ticks():
            pass

    def start(self) -> asyncio.Task:
        """Schedule `run()` on the running loop. Pair with `stop()` when the owner goes away."""
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    def stop(self) -> None:
        with self._lock:
            if self.state is CountdownState.RUNNING:
                self.state = CountdownState.STOPPED
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None


class CountdownRegistry:
    """At most one live countdown per flow session."""

    def __init__(self):
        self._lock = threading.Lock()
        self._countdowns: dict[str, Countdown] = {}

    def start(self, session_id: str, countdown: Countdown) -> Countdown:
        with self._lock:
            previous = self._countdowns.get(session_id)
            self._countdowns[session_id] = countdown
        if previous is not None and previous is not countdown:
            previous.stop()
        return countdown

    def get(self, session_id: str) -> Optional[Countdown]:
        with self._lock:
            return self._countdowns.get(session_id)

    def stop(self, session_id: str) -> None:
        with self._lock:
            countdown = self._countdowns.pop(session_id, None)
        if countdown is not None:
            countdown.stop()

    def active_count(self) -> int:
        with self._lock:
            return sum(1 for c in self._countdowns.values() if c.state is CountdownState.RUNNING)

    def stop_all(self) -> None:
        with self._lock:
            countdowns = list(self._countdowns.values())
            self._countdowns.clear()
        for countdown in countdowns:
            countdown.stop()
