"""MQTT connection shared by the MQTT sink and the snapshot subscription."""

import asyncio
import json
import logging
import uuid
from typing import Any, AsyncIterator, Dict, Optional, Set, Tuple

import aiomqtt

from .backoff import Backoff
from .config import MQTTConfig

logger = logging.getLogger(__name__)

RECONNECT_MAX_DELAY = 60.0


def encode_payload(value: Any) -> str:
    """Render a sink value as an MQTT payload string.

    Booleans become ``true``/``false``, None an empty payload, containers
    JSON. Everything else uses ``str()``.
    """
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value)
    return str(value)


class MQTTClient:
    """aiomqtt client that keeps one broker session alive.

    Publishes below ``base_topic`` (optionally only when the payload
    changed) and re-subscribes its topics whenever the session is rebuilt.
    """

    def __init__(self, config: MQTTConfig):
        """Initialize the client.

        Args:
            config: MQTT broker configuration.
        """
        self.config = config
        self.backoff = Backoff(
            initial=float(config.reconnect_delay or 1),
            maximum=max(float(config.reconnect_delay or 1), RECONNECT_MAX_DELAY),
        )
        self._client: Optional[aiomqtt.Client] = None
        self._connected = False
        self._running = False
        self._payloads: Dict[str, str] = {}
        self._topics: Set[str] = set()
        self._reconnect_task: Optional[asyncio.Task] = None
        self._publish_lock = asyncio.Lock()
        self._identifier = config.client_id or f"sbms-collector-{uuid.uuid4().hex[:8]}"

        # Stats
        self.messages_published = 0
        self.messages_skipped = 0

    @property
    def connected(self) -> bool:
        return self._connected

    async def start(self) -> None:
        """Open the broker session; failures are retried in the background."""
        self._running = True
        await self._open()

    async def stop(self) -> None:
        self._running = False

        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        self._reconnect_task = None

        await self._close()
        logger.info("MQTT client stopped")

    async def _open(self) -> bool:
        if not self._running:
            return False

        client = aiomqtt.Client(
            hostname=self.config.host,
            port=self.config.port,
            username=self.config.username or None,
            password=self.config.password or None,
            identifier=self._identifier,
        )
        try:
            await client.__aenter__()
            for topic in self._topics:
                await client.subscribe(topic)
        except aiomqtt.MqttError as e:
            logger.error(f"MQTT connection to {self.config.host}:{self.config.port} failed: {e}")
            self._connected = False
            self._start_reconnect()
            return False

        self._client = client
        self._connected = True
        self.backoff.reset()
        logger.info(
            f"Connected to MQTT broker at {self.config.host}:{self.config.port}"
            f"{f' ({len(self._topics)} subscriptions)' if self._topics else ''}"
        )
        return True

    async def _close(self) -> None:
        client, self._client = self._client, None
        self._connected = False
        if client is None:
            return
        try:
            await client.__aexit__(None, None, None)
        except aiomqtt.MqttError as e:
            logger.debug(f"Error while closing MQTT session: {e}")

    def _start_reconnect(self) -> None:
        if not self._running:
            return
        if self._reconnect_task and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        while self._running and not self._connected:
            delay = self.backoff.next_delay()
            logger.info(f"Reconnecting to MQTT broker in {delay:g}s...")
            await asyncio.sleep(delay)
            await self._close()
            await self._open()

    def _lost(self, error: Exception) -> None:
        logger.warning(f"MQTT session lost: {error}")
        self._connected = False
        self._start_reconnect()

    async def publish(
        self,
        topic: str,
        value: Any,
        force: bool = False,
        retain: Optional[bool] = None,
    ) -> bool:
        """Publish ``value`` to ``<base_topic>/<topic>``.

        Args:
            topic: Topic below the base topic.
            value: Sink value; encoded with ``encode_payload``.
            force: Publish even if the payload is unchanged in on_change mode.
            retain: Override the configured retain flag.

        Returns:
            True if the value was published or skipped as unchanged.
        """
        client = self._client
        if not self._connected or client is None:
            logger.debug(f"Not connected, dropping {topic}")
            self._start_reconnect()
            return False

        full_topic = f"{self.config.base_topic}/{topic}"
        payload = encode_payload(value)

        if (
            not force
            and self.config.publish_mode == "on_change"
            and self._payloads.get(full_topic) == payload
        ):
            self.messages_skipped += 1
            return True

        try:
            async with self._publish_lock:
                await client.publish(
                    full_topic,
                    payload,
                    qos=self.config.qos,
                    retain=self.config.retain if retain is None else retain,
                )
        except aiomqtt.MqttError as e:
            self._lost(e)
            return False

        self._payloads[full_topic] = payload
        self.messages_published += 1
        logger.debug(f"{full_topic} = {payload[:100]}")
        return True

    async def subscribe(self, topic: str) -> None:
        """Subscribe to an absolute topic, now and after every reconnect."""
        self._topics.add(topic)
        if self._connected and self._client:
            await self._client.subscribe(topic)
            logger.info(f"Subscribed to {topic}")

    async def messages(self, topic: str) -> AsyncIterator[Tuple[bytes, bool]]:
        """Yield ``(payload, retained)`` for messages on ``topic``.

        Keeps iterating across reconnects until the client is stopped.
        """
        await self.subscribe(topic)
        while self._running:
            client = self._client
            if not self._connected or client is None:
                await asyncio.sleep(self.backoff.initial)
                continue
            try:
                async for message in client.messages:
                    if not message.topic.matches(topic):
                        continue
                    payload = message.payload
                    if isinstance(payload, str):
                        payload = payload.encode()
                    yield payload or b"", bool(message.retain)
            except aiomqtt.MqttError as e:
                self._lost(e)
