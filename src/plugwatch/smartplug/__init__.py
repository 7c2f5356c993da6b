"""Tuya smart plug discovery, cloud reconciliation and status reads.

Example usage:
    >>> from plugwatch.smartplug import TuyaCloudRegistry, discover_local_devices, reconcile
    >>>
    >>> local = discover_local_devices(timeout=5.0)
    >>> registry = TuyaCloudRegistry(api_key, api_secret, region="eu")
    >>> devices = reconcile(local, registry.list_devices())
    >>> print(f"{len(devices)} addressable plugs")
"""

from .cloud import CloudRegistry, TuyaCloudRegistry, fetch_cloud_devices, list_cloud_regions
from .crypto import decode_broadcast
from .devices import (
    PLUG_CATEGORY,
    CloudDeviceRecord,
    LocalDeviceRecord,
    PowerSample,
    ReconciledDevice,
)
from .discovery import DiscoveryListener, discover_local_devices
from .manager import DeviceManager
from .reconcile import reconcile, unmatched
from .status import CloudStatusClient, LocalStatusClient, PowerReader, StatusSource

__all__ = [
    # Records
    "PLUG_CATEGORY",
    "LocalDeviceRecord",
    "CloudDeviceRecord",
    "ReconciledDevice",
    "PowerSample",
    # Discovery
    "decode_broadcast",
    "DiscoveryListener",
    "discover_local_devices",
    "DeviceManager",
    # Cloud
    "CloudRegistry",
    "TuyaCloudRegistry",
    "fetch_cloud_devices",
    "list_cloud_regions",
    "reconcile",
    "unmatched",
    # Status
    "StatusSource",
    "LocalStatusClient",
    "CloudStatusClient",
    "PowerReader",
]
