"""Core module - configuration, exceptions, and utilities."""

from .config import CloudConfig, Config, DeviceConfig, DiscoveryConfig, PollingConfig, get_config
from .exceptions import (
    CloudRegistryError,
    ConfigurationError,
    DecryptionError,
    DeviceConnectionError,
    DeviceNotFoundError,
    DeviceProtocolError,
    DeviceTimeoutError,
    PlugWatchError,
    ValidationError,
)
from .utils import format_duration, mask_key, validate_ip, validate_local_key

__all__ = [
    "Config",
    "CloudConfig",
    "DeviceConfig",
    "DiscoveryConfig",
    "PollingConfig",
    "get_config",
    "PlugWatchError",
    "ValidationError",
    "ConfigurationError",
    "DecryptionError",
    "CloudRegistryError",
    "DeviceConnectionError",
    "DeviceTimeoutError",
    "DeviceProtocolError",
    "DeviceNotFoundError",
    "validate_ip",
    "validate_local_key",
    "mask_key",
    "format_duration",
]
