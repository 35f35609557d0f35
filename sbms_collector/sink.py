"""Output sinks for decoded values.

A sink stores values under dotted logical paths such as ``cells.3`` or
``flags.errors.COC``. Registration and persistence belong to the backend.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from .mqtt_client import MQTTClient

logger = logging.getLogger(__name__)


class Sink(ABC):
    """Interface the writer and acquirers publish through."""

    @abstractmethod
    async def write_value(self, path: str, value: Any, ack: bool = True) -> None:
        """Store ``value`` at ``path``; ``ack`` marks it authoritative."""

    @abstractmethod
    async def increment_counter(self, path: str, step: int = 1) -> None:
        """Increment the counter at ``path``."""

    @abstractmethod
    def read_last_value(self, path: str) -> Optional[Any]:
        """Return the last value written to ``path``, or None."""


class MemorySink(Sink):
    """Keeps values in memory; used for one-shot runs and tests."""

    def __init__(self):
        self.values: Dict[str, Any] = {}
        self.writes: List[Tuple[str, Any, bool]] = []

    async def write_value(self, path: str, value: Any, ack: bool = True) -> None:
        self.values[path] = value
        self.writes.append((path, value, ack))

    async def increment_counter(self, path: str, step: int = 1) -> None:
        await self.write_value(path, (self.values.get(path) or 0) + step)

    def read_last_value(self, path: str) -> Optional[Any]:
        return self.values.get(path)

    def paths(self) -> List[str]:
        """Paths in the order they were first written."""
        return list(dict.fromkeys(path for path, _, _ in self.writes))


class MQTTSink(Sink):
    """Publishes each path as a topic below the client's base topic."""

    def __init__(self, client: MQTTClient):
        self.client = client
        self._values: Dict[str, Any] = {}

    @staticmethod
    def topic_for(path: str) -> str:
        return path.replace(".", "/")

    async def write_value(self, path: str, value: Any, ack: bool = True) -> None:
        self._values[path] = value
        # Non-authoritative values are not retained on the broker
        await self.client.publish(self.topic_for(path), value, retain=None if ack else False)

    async def increment_counter(self, path: str, step: int = 1) -> None:
        await self.write_value(path, (self._values.get(path) or 0) + step)

    def read_last_value(self, path: str) -> Optional[Any]:
        return self._values.get(path)
