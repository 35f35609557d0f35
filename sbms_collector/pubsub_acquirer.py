"""SBMS acquisition from pre-decoded JSON snapshots published on MQTT."""

import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional, Union

from .codec import parse_flags
from .config import PubSubConfig
from .connection import ConnectionState
from .errors import MalformedEncoding
from .models import CELL_COUNT, FLAG_NAMES, BalancingStatus, DeviceTime, Frame, Telemetry
from .mqtt_client import MQTTClient
from .writer import FrameWriter

logger = logging.getLogger(__name__)


def telemetry_from_snapshot(data: Dict[str, Any]) -> Telemetry:
    """Build Telemetry from a JSON snapshot.

    Expected shape (as published by the SBMS firmware)::

        {"time": {"year": 24, "month": 5, ...}, "soc": 80,
         "cellsMV": [3700, ...], "tempInt": 21.5, "tempExt": 20.0,
         "currentMA": {"battery": 1500, "pv1": 0, "pv2": 0, "extLoad": 0},
         "ad3": 0, "ad4": 0, "heat1": 0, "flags": {"OV": false, ...}}

    Raises:
        MalformedEncoding: If required keys are missing or mistyped.
    """
    try:
        clock = data["time"]
        current = data["currentMA"]
        cells = [int(v) for v in data["cellsMV"]]
        if len(cells) != CELL_COUNT:
            raise MalformedEncoding(f"Expected {CELL_COUNT} cells, got {len(cells)}")

        flags = data.get("flags", {})
        if isinstance(flags, int):
            flags = parse_flags(flags)

        return Telemetry(
            time=DeviceTime(
                year=2000 + int(clock["year"]),
                month=int(clock["month"]),
                day=int(clock["day"]),
                hour=int(clock["hour"]),
                minute=int(clock["minute"]),
                second=int(clock["second"]),
            ),
            state_of_charge=int(data["soc"]),
            cells_millivolt=cells,
            temp_internal=float(data["tempInt"]),
            temp_external=float(data.get("tempExt", 0)),
            current_battery=int(current["battery"]),
            current_pv1=int(current.get("pv1", 0)),
            current_pv2=int(current.get("pv2", 0)),
            current_ext_load=int(current.get("extLoad", 0)),
            ad3=int(data.get("ad3", 0)),
            ad4=int(data.get("ad4", 0)),
            heat1=int(data.get("heat1", 0)),
            dual_pv_level=int(data.get("dualPVLevel", 0)),
            flags={name: bool(flags.get(name, False)) for name in FLAG_NAMES},
        )
    except MalformedEncoding:
        raise
    except (KeyError, TypeError, ValueError, OverflowError, AttributeError) as e:
        raise MalformedEncoding(f"Invalid SBMS snapshot: {e!r}") from e


def balancing_from_snapshot(data: Dict[str, Any]) -> Optional[BalancingStatus]:
    """Optional balancing block; None when the snapshot carries none."""
    if "cellsBalancing" not in data:
        return None
    try:
        raw = data["cellsBalancing"]
        if isinstance(raw, dict):
            cells = {int(k): bool(v) for k, v in raw.items()}
        else:
            cells = {i + 1: bool(v) for i, v in enumerate(raw)}
        return BalancingStatus(
            cells_balancing={i: cells.get(i, False) for i in range(1, CELL_COUNT + 1)},
            cells_min_index=int(data.get("cellsMin", 0)),
            cells_max_index=int(data.get("cellsMax", 0)),
            pv_on=bool(data.get("pvOn", False)),
            load_on=bool(data.get("loadOn", False)),
        )
    except (TypeError, ValueError, OverflowError, AttributeError) as e:
        raise MalformedEncoding(f"Invalid balancing block: {e!r}") from e


class PubSubAcquirer:
    """Consumes JSON snapshots from one MQTT topic."""

    def __init__(
        self,
        config: PubSubConfig,
        writer: FrameWriter,
        mqtt_client: Optional[MQTTClient] = None,
    ):
        """Initialize the acquirer.

        Args:
            config: Topic and rate-limit configuration.
            writer: Frame writer for this session.
            mqtt_client: Client used for the subscription (not needed when
                         updates are pushed through handle_update).
        """
        self.config = config
        self.writer = writer
        self.mqtt = mqtt_client
        self.connection = ConnectionState(writer.sink, "mqtt")
        # <= 1 s disables rate limiting
        self.min_interval = config.interval if config.interval > 1 else 0

        self._last_write: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

        # Stats
        self.updates_processed = 0
        self.updates_dropped = 0
        self.updates_unacknowledged = 0
        self.updates_invalid = 0

    async def start(self) -> None:
        if self.mqtt is None:
            raise RuntimeError("PubSubAcquirer.start() needs an MQTT client")
        logger.info(f"Initializing MQTT handler for topic {self.config.topic}")
        if self.min_interval:
            logger.info(f"Using MQTT update interval: {self.min_interval:g} s")
        else:
            logger.info("No rate limit for MQTT messages configured.")
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("MQTT acquisition stopped")

    async def run(self) -> None:
        async for payload, retained in self.mqtt.messages(self.config.topic):
            # Retained messages are replays of an old snapshot
            await self.handle_update(payload, ack=not retained)

    async def handle_update(self, payload: Union[str, bytes, None], ack: bool = True) -> bool:
        """Process one update.

        Returns:
            True if the snapshot was written.
        """
        if not payload:
            return False
        if not ack:
            self.updates_unacknowledged += 1
            return False

        try:
            if isinstance(payload, bytes):
                payload = payload.decode("utf-8")
            data = json.loads(payload)
            if not isinstance(data, dict):
                raise MalformedEncoding("Snapshot is not a JSON object")
            frame = Frame(
                telemetry=telemetry_from_snapshot(data),
                balancing=balancing_from_snapshot(data),
            )
        except (ValueError, MalformedEncoding) as e:
            # json.JSONDecodeError and UnicodeDecodeError are ValueErrors
            self.updates_invalid += 1
            logger.error(f"Invalid JSON from MQTT: {e}")
            await self.connection.set(False, "invalid payload")
            return False

        now = time.monotonic()
        if self._last_write is not None and now - self._last_write < self.min_interval:
            self.updates_dropped += 1
            return False
        self._last_write = now

        await self.connection.set(True)
        await self.writer.write_frame(frame)
        self.updates_processed += 1
        logger.debug(f"New SBMS MQTT message processed: {frame.telemetry.time_str}")
        return True
