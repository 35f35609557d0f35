"""Configuration loader for the SBMS collector."""

import ipaddress
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


def is_valid_ip(value: str) -> bool:
    """Return True for a dotted-quad IPv4 address."""
    try:
        ipaddress.IPv4Address(value)
    except (ipaddress.AddressValueError, ValueError):
        return False
    return value.count(".") == 3


@dataclass
class DeviceConfig:
    """SBMS device address."""

    ip: str = ""


@dataclass
class HttpConfig:
    """HTTP ``/rawData`` scraping."""

    enabled: bool = False
    interval: float = 10
    timeout: float = 5


@dataclass
class SerialConfig:
    """Serial line reader."""

    enabled: bool = False
    port: str = "/dev/serial/by-id/usb-1a86_USB_Serial-if00-port0"
    baudrate: int = 921600
    # Minimum seconds between processed frames (0 or <= 1 = every frame)
    interval: float = 1


@dataclass
class PubSubConfig:
    """JSON snapshots received on an MQTT topic."""

    enabled: bool = False
    topic: str = ""
    # Minimum seconds between processed updates (<= 1 disables rate limiting)
    interval: float = 10


@dataclass
class MQTTConfig:
    """MQTT broker configuration."""

    host: str = "localhost"
    port: int = 1883
    username: str = ""
    password: str = ""
    base_topic: str = "sbms"
    retain: bool = True
    qos: int = 0
    publish_mode: str = "on_change"  # "always" or "on_change"
    client_id: str = ""
    reconnect_delay: int = 5


@dataclass
class FeatureConfig:
    """Optional metric groups."""

    use_pv1: bool = True
    use_pv2: bool = False
    use_adcx: bool = False
    use_heat1: bool = False
    use_temp_ext: bool = False
    # Also publish every decoded variable field under <source>.*
    full_message: bool = False


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"
    file: str = ""


@dataclass
class Config:
    """Main configuration container."""

    device: DeviceConfig = field(default_factory=DeviceConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    serial: SerialConfig = field(default_factory=SerialConfig)
    pubsub: PubSubConfig = field(default_factory=PubSubConfig)
    mqtt: MQTTConfig = field(default_factory=MQTTConfig)
    features: FeatureConfig = field(default_factory=FeatureConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _section(data: dict, name: str) -> dict:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"Section '{name}' must be a mapping")
    return section


def _build(cls, data: dict, name: str):
    """Instantiate a section dataclass, rejecting unknown keys."""
    section = _section(data, name)
    known = set(cls.__dataclass_fields__)
    unknown = set(section) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown key(s) in '{name}': {', '.join(sorted(unknown))}"
        )
    return cls(**section)


def parse_config(data: dict) -> Config:
    """Build and validate a Config from a parsed YAML mapping.

    Raises:
        ConfigurationError: If the configuration is invalid.
    """
    if not data:
        raise ConfigurationError("Config file is empty")
    if not isinstance(data, dict):
        raise ConfigurationError("Config file must contain a mapping")

    config = Config(
        device=_build(DeviceConfig, data, "device"),
        http=_build(HttpConfig, data, "http"),
        serial=_build(SerialConfig, data, "serial"),
        pubsub=_build(PubSubConfig, data, "pubsub"),
        mqtt=_build(MQTTConfig, data, "mqtt"),
        features=_build(FeatureConfig, data, "features"),
        logging=_build(LoggingConfig, data, "logging"),
    )
    validate_config(config)
    return config


def validate_config(config: Config) -> None:
    """Check cross-section constraints."""
    if not (config.http.enabled or config.serial.enabled or config.pubsub.enabled):
        raise ConfigurationError("No transport enabled (http, serial or pubsub)")

    if config.http.enabled and not is_valid_ip(config.device.ip):
        raise ConfigurationError(
            f"Invalid IP address: {config.device.ip!r}. Please check device.ip"
        )

    if config.serial.enabled and not config.serial.port:
        raise ConfigurationError("serial.port is required when serial is enabled")

    if config.pubsub.enabled and not config.pubsub.topic:
        raise ConfigurationError("pubsub.topic is required when pubsub is enabled")

    if config.mqtt.publish_mode not in ("always", "on_change"):
        raise ConfigurationError(
            f"mqtt.publish_mode must be 'always' or 'on_change', got {config.mqtt.publish_mode!r}"
        )


def load_config(config_path: Optional[str] = None) -> Config:
    """Load configuration from YAML file.

    Args:
        config_path: Path to config file. If None, uses the SBMS_CONFIG
                     env var or config.yaml in the current directory.

    Returns:
        Config object with all settings.

    Raises:
        ConfigurationError: If the file is missing or invalid.
    """
    if config_path is None:
        config_path = os.environ.get("SBMS_CONFIG", "config.yaml")

    path = Path(config_path)
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {config_path}")

    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Config file is not valid YAML: {e}") from e

    return parse_config(data)
