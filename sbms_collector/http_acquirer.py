"""SBMS acquisition by scraping the device's ``/rawData`` page."""

import asyncio
import logging
from typing import Optional

import aiohttp

from .backoff import Backoff
from .codec import decode_frame, extract_variables, verify_integrity
from .config import DeviceConfig, HttpConfig, is_valid_ip
from .connection import CONNECTION_PATH, ConnectionState
from .errors import AcquisitionError, ConfigurationError, TransportFailure
from .models import Frame
from .writer import FrameWriter

logger = logging.getLogger(__name__)

MIN_INTERVAL = 1.0
MAX_INTERVAL = 3600.0


def clamp_interval(seconds: float) -> float:
    """Poll interval in seconds, limited to [1 s, 1 h]."""
    return max(MIN_INTERVAL, min(MAX_INTERVAL, float(seconds or 0)))


class HttpAcquirer:
    """Polls the SBMS web page and writes new frames.

    States: idle -> first scrape -> polling, with a self-scheduled retry
    running beside the poll timer after transport failures.
    """

    def __init__(
        self,
        device: DeviceConfig,
        config: HttpConfig,
        writer: FrameWriter,
        session: Optional[aiohttp.ClientSession] = None,
        backoff: Optional[Backoff] = None,
        connection_path: str = CONNECTION_PATH,
    ):
        """Initialize the acquirer.

        Args:
            device: Device address configuration.
            config: HTTP polling configuration.
            writer: Frame writer for this session.
            session: Optional aiohttp session; one is created if omitted.
            backoff: Retry delay policy (default 1 s doubling to 10 min).
            connection_path: Sink path for the connection flag.
        """
        self.device = device
        self.config = config
        self.writer = writer
        self.backoff = backoff or Backoff(initial=1.0, maximum=600.0)
        self.connection = ConnectionState(writer.sink, "html", connection_path)
        self.interval = clamp_interval(config.interval)

        self._session = session
        self._owns_session = session is None
        self._running = False
        self._busy = False
        self._last_timestamp: Optional[str] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._retry_task: Optional[asyncio.Task] = None

        # Stats
        self.frames_processed = 0
        self.frames_unchanged = 0
        self.ticks_skipped = 0

    @property
    def url(self) -> str:
        return f"http://{self.device.ip}/rawData"

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Validate the address, require one good scrape, then start polling.

        Raises:
            ConfigurationError: If the device IP is not a dotted quad.
            AcquisitionError: If the first scrape fails.
        """
        logger.info("Initializing SBMS HTML scraping")
        if not is_valid_ip(self.device.ip):
            raise ConfigurationError(
                f"Invalid IP address: {self.device.ip!r}. Please check your configuration."
            )

        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)

        try:
            frame = await self.fetch_frame()
        except TransportFailure as e:
            await self._close_session()
            raise AcquisitionError(f"First scrape failed: {e}") from e

        if frame is None:
            await self._close_session()
            raise AcquisitionError("First scrape returned no data")

        await self._handle_frame(frame)
        logger.info("First scrape successful. Starting polling loop...")

        self._running = True
        self._tick_task = asyncio.create_task(self._tick_loop())
        logger.info(f"Using HTML polling interval: {self.interval:g} s")

    async def stop(self) -> None:
        """Cancel timers; an in-flight request may finish or time out."""
        self._running = False

        for task in (self._tick_task, self._retry_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._tick_task = None
        self._retry_task = None

        if self._poll_task and not self._poll_task.done():
            await asyncio.wait({self._poll_task}, timeout=self.config.timeout)

        await self._close_session()
        logger.info("HTML acquisition stopped")

    async def _close_session(self) -> None:
        if self._session and self._owns_session:
            await self._session.close()
            self._session = None

    async def _tick_loop(self) -> None:
        """Fixed-rate timer; a poll still running swallows the tick."""
        while self._running:
            await asyncio.sleep(self.interval)
            if self._busy:
                self.ticks_skipped += 1
                logger.debug("Previous scrape still running, skipping tick")
                continue
            self._poll_task = asyncio.create_task(self.poll_once())

    async def fetch_frame(self) -> Optional[Frame]:
        """Request the page once and decode it.

        Returns:
            The decoded frame, or None if the page lacks a valid ``sbms``.

        Raises:
            TransportFailure: On network errors, timeouts or HTTP errors.
        """
        try:
            async with self._session.get(self.url) as response:
                if response.status != 200:
                    raise TransportFailure(
                        f"HTTP {response.status} from {self.url}"
                    )
                body = await response.text()
        except asyncio.TimeoutError as e:
            raise TransportFailure(f"Request to {self.url} timed out") from e
        except aiohttp.ClientError as e:
            raise TransportFailure(f"Request to {self.url} failed: {e}") from e

        self.backoff.reset()

        raw = extract_variables(body)
        if not raw["sbms"]:
            logger.debug("No sbms variable found in rawData")
            return None

        ok = verify_integrity(raw["sbms"])
        await self.writer.record_integrity(ok)
        if not ok:
            logger.warning("CRC check failed for HTML data")
            return None

        return decode_frame(raw)

    async def poll_once(self) -> bool:
        """Run one scrape cycle.

        Returns:
            True if a new frame was written.
        """
        if self._busy:
            self.ticks_skipped += 1
            return False

        self._busy = True
        try:
            try:
                frame = await self.fetch_frame()
            except TransportFailure as e:
                logger.warning(f"Error fetching SBMS rawData: {e}")
                await self.connection.set(False, str(e))
                self._schedule_retry()
                return False

            if frame is None:
                return False
            return await self._handle_frame(frame)
        finally:
            self._busy = False

    async def _handle_frame(self, frame: Frame) -> bool:
        await self.connection.set(True)

        timestamp = frame.telemetry.time_str
        if timestamp == self._last_timestamp:
            self.frames_unchanged += 1
            logger.debug(f"Scraping skipped with reported timestamp: {timestamp}")
            return False
        self._last_timestamp = timestamp

        logger.debug(f"New HTML scrape with reported timestamp: {timestamp}")
        await self.writer.write_frame(frame)
        self.frames_processed += 1
        return True

    def _schedule_retry(self) -> None:
        """Start a retry unless one is already pending."""
        if not self._running:
            return
        if self._retry_task and not self._retry_task.done():
            return
        self._retry_task = asyncio.create_task(self._retry())

    async def _retry(self) -> None:
        delay = self.backoff.next_delay()
        logger.info(f"Retrying scrape in {delay:g}s...")
        await asyncio.sleep(delay)

        # A poll tick may have succeeded meanwhile
        if self.backoff.failures == 0:
            return

        # Release the slot so a failure here can schedule the next retry
        self._retry_task = None
        await self.poll_once()
