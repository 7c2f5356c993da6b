"""Configuration management for plugwatch."""

import json
import logging
import os
import re
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Tuya broadcast ports: 6666 carries protocol 3.1 (plaintext), 6667 protocol 3.3+ (encrypted)
DISCOVERY_PORTS = (6666, 6667)


@dataclass
class DiscoveryConfig:
    """LAN discovery configuration."""

    ports: tuple[int, ...] = DISCOVERY_PORTS
    window: float = 5.0  # seconds per port
    retry_attempts: int = 3
    retry_delay: float = 5.0


@dataclass
class PollingConfig:
    """Power polling configuration."""

    fast_interval: float = 1.0  # while a cycle is running
    slow_interval: float = 5.0  # while idle
    status_timeout: float = 10.0


@dataclass
class CloudConfig:
    """Tuya cloud API credentials."""

    region: str = "eu"
    api_key: str | None = None
    api_secret: str | None = None
    api_device_id: str | None = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.api_secret)


@dataclass
class DeviceConfig:
    """Per-device tracking configuration."""

    device_id: str
    local_key: str | None = None
    ip_address: str | None = None
    name: str | None = None
    power_value_id: str = "19"
    start_value: float = 10.0
    start_duration: float = 10.0
    end_value: float = 5.0
    end_duration: float = 60.0
    start_inclusive: bool = True
    end_inclusive: bool = True
    protocol_version: str = "3.3"
    voltage_value_id: str | None = "20"
    current_value_id: str | None = "18"
    source: str = "local"
    start_message: str | None = None
    end_message: str | None = None
    expose_state_switch: bool = False
    export_enabled: bool = False

    @property
    def display_name(self) -> str:
        return self.name or self.device_id or "the device"

    def validate(self) -> None:
        """Check the invariants a tracker relies on.

        Raises:
            ConfigurationError: If thresholds are inverted or addressing fields are missing.
        """
        if self.start_value < self.end_value:
            raise ConfigurationError(
                self.display_name,
                "startValue cannot be smaller than endValue",
                f"start={self.start_value}, end={self.end_value}",
            )
        if self.start_duration < 0 or self.end_duration < 0:
            raise ConfigurationError(self.display_name, "durations must not be negative")
        if self.source not in ("local", "cloud"):
            raise ConfigurationError(self.display_name, f"unknown source '{self.source}'")

        missing = [name for name in ("device_id", "local_key", "ip_address") if not getattr(self, name)]
        if self.source == "cloud":
            missing = [name for name in missing if name == "device_id"]
        if missing:
            raise ConfigurationError(
                self.display_name,
                "missing required configuration",
                ", ".join(missing),
            )

    @classmethod
    def from_dict(cls, data: dict) -> "DeviceConfig":
        """Build from a dict with snake_case or camelCase keys.

        ``id``/``key`` aliases are accepted for ``device_id``/``local_key``.
        """
        aliases = {"id": "device_id", "key": "local_key", "deviceId": "device_id", "localKey": "local_key"}
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            name = aliases.get(key, _snake_case(key))
            if name in known:
                kwargs[name] = value
        if "device_id" not in kwargs:
            raise ConfigurationError(data.get("name", "device"), "missing required configuration", "device_id")
        for name in ("device_id", "power_value_id", "protocol_version"):
            if kwargs.get(name) is not None:
                kwargs[name] = str(kwargs[name])
        return cls(**kwargs)

    def to_dict(self) -> dict:
        """Convert to dictionary representation."""
        return asdict(self)


@dataclass
class Config:
    """Main configuration for plugwatch."""

    export_dir: Path = field(default_factory=lambda: Path("./cycles"))
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    cloud: CloudConfig = field(default_factory=CloudConfig)
    devices: list[DeviceConfig] = field(default_factory=list)
    verbose: bool = False

    def __post_init__(self) -> None:
        if isinstance(self.export_dir, str):
            self.export_dir = Path(self.export_dir)

    @classmethod
    def from_file(cls, path: Path) -> "Config":
        """Load configuration from JSON file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        config = cls()
        if "export_dir" in data:
            config.export_dir = Path(data["export_dir"])
        if "verbose" in data:
            config.verbose = data["verbose"]

        for section in ("discovery", "polling", "cloud"):
            if section in data:
                target = getattr(config, section)
                for key, value in data[section].items():
                    key = _snake_case(key)
                    if hasattr(target, key):
                        setattr(target, key, value)
        config.discovery.ports = tuple(config.discovery.ports)

        # Device entries are parsed leniently; validation happens when a tracker is built
        for entry in data.get("devices", []):
            try:
                config.devices.append(DeviceConfig.from_dict(entry))
            except (ConfigurationError, TypeError) as e:
                logger.error("Skipping device entry: %s", e)

        return config

    def save(self, path: Path) -> None:
        """Save configuration to JSON file."""
        data = {
            "export_dir": str(self.export_dir),
            "verbose": self.verbose,
            "discovery": {
                "ports": list(self.discovery.ports),
                "window": self.discovery.window,
                "retry_attempts": self.discovery.retry_attempts,
                "retry_delay": self.discovery.retry_delay,
            },
            "polling": asdict(self.polling),
            "cloud": asdict(self.cloud),
            "devices": [device.to_dict() for device in self.devices],
        }
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(data, f, indent=2)

    def get_device(self, device_id: str) -> DeviceConfig | None:
        for device in self.devices:
            if device.device_id == device_id:
                return device
        return None


def _snake_case(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        config_path = Path(os.environ.get("PLUGWATCH_CONFIG", ".plugwatch.json"))
        _config = Config.from_file(config_path)
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
