"""SBMS Collector - Decode Electrodacus SBMS telemetry and publish to MQTT."""

from .codec import decode_frame, extract_variables, verify_integrity
from .config import Config, load_config
from .http_acquirer import HttpAcquirer
from .logging_setup import setup_logging
from .mqtt_client import MQTTClient
from .pubsub_acquirer import PubSubAcquirer
from .serial_acquirer import SerialAcquirer
from .sink import MemorySink, MQTTSink, Sink
from .writer import FrameWriter

__version__ = "1.0.0"

__all__ = [
    "decode_frame",
    "extract_variables",
    "verify_integrity",
    "Config",
    "load_config",
    "setup_logging",
    "MQTTClient",
    "HttpAcquirer",
    "SerialAcquirer",
    "PubSubAcquirer",
    "Sink",
    "MemorySink",
    "MQTTSink",
    "FrameWriter",
]
