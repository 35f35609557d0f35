"""Main entry point for the SBMS collector."""

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import replace
from typing import List, Optional

from .config import Config, load_config
from .errors import AcquisitionError, ConfigurationError
from .http_acquirer import HttpAcquirer
from .logging_setup import setup_logging
from .metrics import MetricsPlan
from .mqtt_client import MQTTClient
from .pubsub_acquirer import PubSubAcquirer
from .serial_acquirer import SerialAcquirer
from .sink import MemorySink, MQTTSink, Sink
from .writer import FrameWriter

logger = logging.getLogger(__name__)

HTTP_SUPPLEMENT_CONNECTION_PATH = "html.connection"


def build_acquirers(config: Config, sink: Sink, mqtt: Optional[MQTTClient]) -> list:
    """Create the acquirers the configuration enables.

    Serial takes priority and runs alone; otherwise MQTT and HTTP may
    run side by side. Next to MQTT, HTTP only supplements counters,
    parameters and detail, and reports its link under ``html.connection``.
    """
    plan = MetricsPlan.from_features(config.features)

    if config.serial.enabled:
        if config.http.enabled or config.pubsub.enabled:
            logger.info("Serial enabled, ignoring HTTP and MQTT sources")
        return [SerialAcquirer(config.serial, FrameWriter(sink, plan, "serial"))]

    acquirers: List = []
    if config.pubsub.enabled:
        acquirers.append(
            PubSubAcquirer(config.pubsub, FrameWriter(sink, plan, "mqtt"), mqtt)
        )
    if config.http.enabled:
        if config.pubsub.enabled:
            writer = FrameWriter(sink, replace(plan, supplement_only=True), "html")
            acquirers.append(
                HttpAcquirer(config.device, config.http, writer,
                             connection_path=HTTP_SUPPLEMENT_CONNECTION_PATH)
            )
        else:
            acquirers.append(
                HttpAcquirer(config.device, config.http, FrameWriter(sink, plan, "html"))
            )
    return acquirers


class Application:
    """Main application class with graceful shutdown handling."""

    def __init__(self, config_path: Optional[str] = None, verbose: bool = False):
        """Initialize the application.

        Args:
            config_path: Path to configuration file.
            verbose: Force DEBUG logging.
        """
        self.config_path = config_path
        self.verbose = verbose
        self.config: Optional[Config] = None
        self.mqtt: Optional[MQTTClient] = None
        self.acquirers: list = []
        self._shutdown_event: Optional[asyncio.Event] = None

    async def start(self) -> None:
        """Start all components.

        Raises:
            ConfigurationError: On invalid configuration.
            AcquisitionError: If an acquirer cannot start.
        """
        self.config = load_config(self.config_path)
        if self.verbose:
            self.config.logging.level = "DEBUG"

        setup_logging(self.config.logging)
        logger.info("SBMS collector starting...")

        self.mqtt = MQTTClient(self.config.mqtt)
        await self.mqtt.start()
        sink = MQTTSink(self.mqtt)

        for acquirer in build_acquirers(self.config, sink, self.mqtt):
            await acquirer.start()
            self.acquirers.append(acquirer)

        logger.info("SBMS collector started successfully")

    async def stop(self) -> None:
        """Stop all components gracefully."""
        logger.info("Shutting down SBMS collector...")

        for acquirer in self.acquirers:
            await acquirer.stop()
        self.acquirers = []

        if self.mqtt:
            await self.mqtt.stop()

        logger.info("SBMS collector stopped")

    async def run(self) -> int:
        """Run the application until shutdown signal."""
        self._shutdown_event = asyncio.Event()

        try:
            await self.start()
        except (ConfigurationError, AcquisitionError) as e:
            logger.error(f"Startup failed: {e}")
            await self.stop()
            return 1

        await self._shutdown_event.wait()
        await self.stop()
        return 0

    def shutdown(self) -> None:
        """Signal the application to shutdown."""
        logger.info("Shutdown signal received")
        if self._shutdown_event:
            self._shutdown_event.set()


def setup_signal_handlers(app: Application, loop: asyncio.AbstractEventLoop) -> None:
    """Setup signal handlers for graceful shutdown.

    Args:
        app: Application instance.
        loop: Event loop.
    """
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app.shutdown)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments.

    Returns:
        Parsed arguments.
    """
    parser = argparse.ArgumentParser(
        description="SBMS collector - decode SBMS telemetry and publish it to MQTT"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=str,
        default=None,
        help="Path to configuration file (default: config.yaml or SBMS_CONFIG env)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Scrape the device once over HTTP, print the result and exit",
    )
    return parser.parse_args(argv)


async def run_once(config_path: Optional[str]) -> int:
    """Run a single HTTP scrape and print results.

    Args:
        config_path: Path to configuration file.
    """
    config = load_config(config_path)
    setup_logging(config.logging)

    sink = MemorySink()
    plan = MetricsPlan.from_features(config.features)
    acquirer = HttpAcquirer(config.device, config.http, FrameWriter(sink, plan, "html"))

    try:
        await acquirer.start()
    except (ConfigurationError, AcquisitionError) as e:
        logger.error(f"Scrape failed: {e}")
        return 1

    try:
        print("\n=== SBMS values ===")
        for path in sink.paths():
            print(f"  {path}: {sink.values[path]}")
    finally:
        await acquirer.stop()
    return 0


def main() -> None:
    """Main entry point."""
    args = parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG)

    try:
        if args.once:
            sys.exit(asyncio.run(run_once(args.config)))
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    app = Application(config_path=args.config, verbose=args.verbose)
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    # Setup signal handlers (Unix only)
    if sys.platform != "win32":
        setup_signal_handlers(app, loop)

    exit_code = 0
    try:
        exit_code = loop.run_until_complete(app.run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        loop.run_until_complete(app.stop())
    finally:
        loop.close()
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
