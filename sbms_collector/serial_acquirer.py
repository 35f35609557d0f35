"""
Serial acquisition - reads SBMS lines from a serial port

The device talks in one of two framings:

- USART (single-variable): every line is a bare ``sbms`` string.
- WiFi (multi-variable): the five ``var <name>=...`` lines arrive one by
  one within a short window and have to be reassembled.

The framing is detected once per session and then locked.
"""

import asyncio
import enum
import logging
import time
from typing import Dict, Optional, Tuple

import serial
import serial_asyncio_fast

from .backoff import Backoff
from .codec import VARIABLE_NAMES, decode_frame, extract_variable, parse_telemetry, verify_integrity
from .config import SerialConfig
from .connection import ConnectionState, Watchdog
from .errors import MalformedEncoding
from .models import Frame
from .writer import FrameWriter

logger = logging.getLogger(__name__)

DETECTION_TIMEOUT = 5.0
COMPLETION_TIMEOUT = 0.5
WATCHDOG_FACTOR = 5
RAW_SBMS = "raw"


class FramingMode(enum.Enum):
    DETECTING = "detecting"
    SINGLE = "usart"
    MULTI = "wifi"


def classify_line(line: str) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(variable, value)`` for a line.

    ``var <name>=...`` lines give the variable name; any other non-empty
    line is treated as a bare sbms string (``RAW_SBMS``). Unknown ``var``
    lines give ``(None, None)``.
    """
    if line.startswith("var "):
        for name in VARIABLE_NAMES:
            if line.startswith(f"var {name}="):
                return name, extract_variable(name, line)
        return None, None
    return RAW_SBMS, line


class SerialAcquirer:
    """
    Serial acquirer - turns a line stream into frames

    Features:
    - Framing detection (USART vs WiFi) locked for the session
    - Five-slot frame reassembly with a completion timeout
    - Rate limiting and timestamp change detection
    - Liveness watchdog with a single log line per transition
    """

    def __init__(
        self,
        config: SerialConfig,
        writer: FrameWriter,
        detection_timeout: float = DETECTION_TIMEOUT,
        completion_timeout: float = COMPLETION_TIMEOUT,
    ):
        self.config = config
        self.writer = writer
        self.detection_timeout = detection_timeout
        self.completion_timeout = completion_timeout

        # <= 1 s means process every frame
        self.min_interval = config.interval if config.interval > 1 else 0
        self.poll_interval = max(float(config.interval), 1.0)

        self.connection = ConnectionState(writer.sink, "serial")
        self.watchdog = Watchdog(WATCHDOG_FACTOR * self.poll_interval, self._on_watchdog)
        self.backoff = Backoff(initial=1.0, maximum=60.0)

        self._mode = FramingMode.DETECTING
        self._slots: Dict[str, Optional[str]] = dict.fromkeys(VARIABLE_NAMES)
        self._detection_handle: Optional[asyncio.TimerHandle] = None
        self._completion_handle: Optional[asyncio.TimerHandle] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._running = False

        self._last_processed: Optional[float] = None
        self._last_timestamp: Optional[str] = None

        # Stats
        self.frames_processed = 0
        self.frames_rate_limited = 0
        self.frames_unchanged = 0
        self.frames_incomplete = 0
        self.crc_errors = 0
        self.lines_ignored = 0

    @property
    def mode(self) -> FramingMode:
        return self._mode

    @property
    def pending_slots(self) -> Dict[str, bool]:
        """Which variables the partial frame holds."""
        return {name: value is not None for name, value in self._slots.items()}

    def start_detection(self) -> None:
        """Begin optimistic USART parsing; fall back to WiFi on timeout."""
        if self._mode is not FramingMode.DETECTING:
            return
        loop = asyncio.get_running_loop()
        self._detection_handle = loop.call_later(
            self.detection_timeout, self._on_detection_timeout
        )
        logger.info(f"Detecting serial framing (timeout {self.detection_timeout:g}s)")

    async def start(self) -> None:
        """Start framing detection and the port reader."""
        self._running = True
        self.start_detection()
        self._reader_task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        """Cancel all timers and close the port."""
        self._running = False
        self._cancel_detection()
        self._cancel_completion()
        await self.watchdog.stop()

        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._reader_task = None
        logger.info("Serial acquisition stopped")

    async def run(self) -> None:
        """Read lines until stopped, reopening the port after errors."""
        while self._running:
            try:
                reader, writer = await serial_asyncio_fast.open_serial_connection(
                    url=self.config.port, baudrate=self.config.baudrate
                )
            except (serial.SerialException, OSError) as e:
                logger.error(f"Error opening serial port {self.config.port}: {e}")
                await self.connection.set(False, str(e))
            else:
                logger.info(f"Serial port opened at {self.config.port} ({self.config.baudrate} baud)")
                self.backoff.reset()
                try:
                    await self._read_lines(reader)
                except (serial.SerialException, OSError) as e:
                    logger.error(f"Serial port error: {e}")
                    await self.connection.set(False, str(e))
                except (ValueError, asyncio.LimitOverrunError) as e:
                    # Line longer than the stream buffer; resync by reopening.
                    logger.error(f"Unreadable serial stream: {e}")
                    await self.connection.set(False, "line too long")
                finally:
                    await self._close_port(writer)

            if self._running:
                delay = self.backoff.next_delay()
                logger.info(f"Reopening serial port in {delay:g}s...")
                await asyncio.sleep(delay)

    async def _close_port(self, writer: asyncio.StreamWriter) -> None:
        writer.close()
        try:
            await writer.wait_closed()
        except (serial.SerialException, OSError) as e:
            logger.debug(f"Error closing serial port: {e}")

    async def _read_lines(self, reader: asyncio.StreamReader) -> None:
        while self._running:
            data = await reader.readline()
            if not data:
                logger.warning("Serial port closed by device")
                return
            await self.feed_line(data.decode("utf-8", errors="replace"))

    async def feed_line(self, line: str) -> None:
        """Process one newline-delimited line. Never raises."""
        line = line.strip()
        if not line:
            return

        try:
            name, value = classify_line(line)
            if name is None:
                self.lines_ignored += 1
                return

            if name == RAW_SBMS:
                await self._handle_bare_line(value)
            else:
                await self._handle_variable_line(name, value)
        except Exception as e:
            logger.error(f"Error parsing serial line: {e}")

    async def _handle_bare_line(self, value: str) -> None:
        if self._mode is FramingMode.MULTI:
            self.lines_ignored += 1
            return

        ok = verify_integrity(value)
        await self.writer.record_integrity(ok)
        if not ok:
            self.crc_errors += 1
            logger.debug("CRC check failed for serial sbms line")
            return

        if self._mode is FramingMode.DETECTING:
            self._cancel_detection()
            self._lock_mode(FramingMode.SINGLE)

        frame = Frame(telemetry=parse_telemetry(value))
        await self._accept_frame(frame, check_timestamp=False)

    async def _handle_variable_line(self, name: str, value: Optional[str]) -> None:
        if self._mode is not FramingMode.MULTI:
            self.lines_ignored += 1
            return

        self._slots[name] = value
        self._restart_completion()

        if all(self._slots.values()):
            self._cancel_completion()
            raw = self._slots
            self._reset_slots()
            await self._handle_complete(raw)

    async def _handle_complete(self, raw: Dict[str, Optional[str]]) -> None:
        ok = verify_integrity(raw["sbms"])
        await self.writer.record_integrity(ok)
        if not ok:
            self.crc_errors += 1
            logger.debug("CRC check failed for serial sbms")
            return

        frame = decode_frame(raw)
        if frame is None:
            raise MalformedEncoding("Complete serial frame could not be decoded")
        await self._accept_frame(frame, check_timestamp=True)

    async def _accept_frame(self, frame: Frame, check_timestamp: bool) -> bool:
        """Apply liveness, rate limiting and change detection, then write."""
        reconnected = self.connection.connected is not True
        await self.connection.set(True)
        self.watchdog.feed()

        now = time.monotonic()
        # First frame, and first frame after a gap, always go through
        if (
            not reconnected
            and self._last_processed is not None
            and now - self._last_processed < self.min_interval
        ):
            self.frames_rate_limited += 1
            return False

        timestamp = frame.telemetry.time_str
        if check_timestamp and timestamp == self._last_timestamp:
            self.frames_unchanged += 1
            logger.debug(f"Serial frame skipped with unchanged timestamp: {timestamp}")
            return False

        self._last_processed = now
        self._last_timestamp = timestamp
        logger.debug(f"Decoded serial frame ({self._mode.value}), timestamp {timestamp}")
        await self.writer.write_frame(frame)
        self.frames_processed += 1
        return True

    def _lock_mode(self, mode: FramingMode) -> None:
        self._mode = mode
        logger.info(f"Serial framing locked to {mode.value} mode")

    def _on_detection_timeout(self) -> None:
        self._detection_handle = None
        if self._mode is FramingMode.DETECTING:
            logger.info(
                f"No valid USART line within {self.detection_timeout:g}s, assuming WiFi framing"
            )
            self._lock_mode(FramingMode.MULTI)

    def _cancel_detection(self) -> None:
        if self._detection_handle:
            self._detection_handle.cancel()
            self._detection_handle = None

    def _restart_completion(self) -> None:
        self._cancel_completion()
        loop = asyncio.get_running_loop()
        self._completion_handle = loop.call_later(
            self.completion_timeout, self._on_completion_timeout
        )

    def _cancel_completion(self) -> None:
        if self._completion_handle:
            self._completion_handle.cancel()
            self._completion_handle = None

    def _on_completion_timeout(self) -> None:
        self._completion_handle = None
        present = [name for name, value in self._slots.items() if value]
        missing = [name for name, value in self._slots.items() if not value]
        self.frames_incomplete += 1
        logger.debug(
            f"Discarding incomplete serial frame (present: {', '.join(present) or 'none'}; "
            f"missing: {', '.join(missing)})"
        )
        self._reset_slots()

    def _reset_slots(self) -> None:
        self._slots = dict.fromkeys(VARIABLE_NAMES)

    async def _on_watchdog(self) -> None:
        await self.connection.set(
            False, f"no valid frame for {self.watchdog.timeout:g}s"
        )
