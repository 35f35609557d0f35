"""
Connection state tracking and liveness watchdog
"""

import asyncio
import logging
from typing import Callable, Optional

from .sink import Sink

logger = logging.getLogger(__name__)

CONNECTION_PATH = "info.connection"


class ConnectionState:
    """
    Connection flag for one transport

    The sink value and the log line only change on a transition, so a
    down device produces one message rather than one per cycle.
    """

    def __init__(self, sink: Sink, source: str, path: str = CONNECTION_PATH):
        self.sink = sink
        self.source = source
        self.path = path
        self.connected: Optional[bool] = None
        self.transitions = 0

    async def set(self, connected: bool, reason: str = "") -> bool:
        """Update the flag; returns True if this was a transition"""
        if connected == self.connected:
            return False

        previous = self.connected
        self.connected = connected
        self.transitions += 1

        if connected:
            logger.info(f"{self.source}: connection established")
        elif previous is None:
            logger.warning(f"{self.source}: not connected{f' ({reason})' if reason else ''}")
        else:
            logger.warning(f"{self.source}: connection lost{f' ({reason})' if reason else ''}")

        await self.sink.write_value(self.path, connected)
        return True


class Watchdog:
    """
    One-shot timer re-armed on activity; fires when activity stops

    The callback may be a coroutine function; it is scheduled as a task.
    """

    def __init__(self, timeout: float, on_expire: Callable):
        self.timeout = timeout
        self.on_expire = on_expire
        self._handle: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self.expirations = 0

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def feed(self) -> None:
        """(Re)arm the timer"""
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.timeout, self._fire)

    def cancel(self) -> None:
        if self._handle:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self.expirations += 1
        result = self.on_expire()
        if asyncio.iscoroutine(result):
            self._task = asyncio.ensure_future(result)

    async def stop(self) -> None:
        """Cancel the timer and any expiry callback still running"""
        self.cancel()
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
