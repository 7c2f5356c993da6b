"""Smart plug device data models."""

from dataclasses import dataclass
from typing import Any

# Tuya cloud category code for power plugs ("chazuo")
PLUG_CATEGORY = "cz"


@dataclass
class LocalDeviceRecord:
    """Device seen in a LAN broadcast."""

    device_id: str
    ip_address: str
    protocol_version: str

    def to_dict(self) -> dict:
        """Convert to dictionary representation."""
        return {
            "device_id": self.device_id,
            "ip_address": self.ip_address,
            "protocol_version": self.protocol_version,
        }


@dataclass
class CloudDeviceRecord:
    """Device registered in the user's cloud account."""

    device_id: str
    display_name: str
    local_key: str | None
    category: str

    def to_dict(self) -> dict:
        """Convert to dictionary representation."""
        return {
            "device_id": self.device_id,
            "display_name": self.display_name,
            "local_key": self.local_key,
            "category": self.category,
        }


@dataclass
class ReconciledDevice:
    """Fully addressable device: network address from the LAN, key from the cloud."""

    device_id: str
    ip_address: str
    protocol_version: str
    display_name: str
    local_key: str | None
    category: str

    @classmethod
    def merge(cls, local: LocalDeviceRecord, cloud: CloudDeviceRecord) -> "ReconciledDevice":
        return cls(
            device_id=local.device_id,
            ip_address=local.ip_address,
            protocol_version=local.protocol_version,
            display_name=cloud.display_name,
            local_key=cloud.local_key,
            category=cloud.category,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary representation."""
        return {
            "device_id": self.device_id,
            "ip_address": self.ip_address,
            "protocol_version": self.protocol_version,
            "display_name": self.display_name,
            "local_key": self.local_key,
            "category": self.category,
        }

    def to_device_config(self, power_value_id: str = "19") -> dict:
        """Produce a device configuration skeleton for this plug.

        Thresholds are placeholders meant to be tuned, e.g. with ``plugwatch track``.
        """
        return {
            "name": self.display_name,
            "deviceId": self.device_id,
            "localKey": self.local_key,
            "ipAddress": self.ip_address,
            "protocolVersion": self.protocol_version,
            "powerValueId": power_value_id,
            "startValue": 10,
            "startDuration": 10,
            "endValue": 5,
            "endDuration": 60,
            "exposeStateSwitch": False,
        }


@dataclass
class PowerSample:
    """One power reading.

    ``watt`` is None when the power property was absent from the read,
    which is distinct from an instrumented idle reading of 0.
    """

    watt: float | None
    timestamp: float
    raw: Any = None
    voltage: float | None = None
    current: float | None = None

    @property
    def is_missing(self) -> bool:
        return self.watt is None

    def to_dict(self) -> dict:
        """Convert to dictionary representation."""
        return {
            "watt": self.watt,
            "timestamp": self.timestamp,
            "voltage": self.voltage,
            "current": self.current,
        }
