"""Power status retrieval.

Two sources provide a device's data-point set (DPS): a local encrypted
session over the LAN and the cloud status feed. ``PowerReader`` turns either
into ``PowerSample``s.
"""

import json
import logging
import time
from collections.abc import Callable
from typing import Any, Protocol

from ..core.exceptions import (
    CloudRegistryError,
    DeviceConnectionError,
    DeviceProtocolError,
    DeviceTimeoutError,
)
from .cloud import TuyaCloudRegistry, _get_tinytuya
from .devices import PowerSample

logger = logging.getLogger(__name__)

DEFAULT_STATUS_TIMEOUT = 10.0

# Plug firmware reports power in deciwatts and voltage in decivolts
POWER_SCALE = 10.0
VOLTAGE_SCALE = 10.0

# tinytuya error codes
_TIMEOUT_CODES = {"902"}
_CONNECTION_CODES = {"901", "905"}


class StatusSource(Protocol):
    """Anything that can fetch a device's data-point set."""

    def get_status(self, device: Any) -> dict: ...


def _raise_for_error(response: Any, device_id: str, timeout: float) -> None:
    """Convert a tinytuya error payload into a typed exception."""
    if response is None:
        raise DeviceTimeoutError(device_id, timeout)
    if not isinstance(response, dict):
        raise DeviceProtocolError(f"Unexpected response from {device_id}", repr(response)[:80])
    if "Error" not in response:
        return

    code = str(response.get("Err", ""))
    message = f"{response['Error']} (code {code})"
    if code in _TIMEOUT_CODES:
        raise DeviceTimeoutError(device_id, timeout)
    if code in _CONNECTION_CODES:
        raise DeviceConnectionError(f"Cannot connect to {device_id}", message)
    raise DeviceProtocolError(f"Protocol error from {device_id}", message)


class LocalStatusClient:
    """Reads status over the LAN with tinytuya's ``OutletDevice``.

    One client serves one tracker; sessions are kept per device id.
    """

    def __init__(self, timeout: float = DEFAULT_STATUS_TIMEOUT):
        self.timeout = timeout
        self._sessions: dict[str, Any] = {}

    def _session(self, device: Any) -> Any:
        session = self._sessions.get(device.device_id)
        if session is None:
            tinytuya = _get_tinytuya()
            session = tinytuya.OutletDevice(
                dev_id=device.device_id,
                address=device.ip_address,
                local_key=device.local_key,
                version=float(device.protocol_version or 3.3),
            )
            session.set_socketTimeout(self.timeout)
            self._sessions[device.device_id] = session
        return session

    def get_status(self, device: Any) -> dict:
        """Fetch the DPS of a device.

        Args:
            device: Object with ``device_id``, ``ip_address``, ``local_key``, ``protocol_version``.

        Returns:
            Status payload with a ``dps`` mapping.

        Raises:
            DeviceTimeoutError: If the device does not answer within the timeout.
            DeviceConnectionError: If the device is unreachable.
            DeviceProtocolError: If the answer cannot be decoded (wrong key or version).
        """
        logger.debug("Fetching local status of %s at %s", device.device_id, device.ip_address)
        try:
            response = self._session(device).status()
        except TimeoutError as e:
            raise DeviceTimeoutError(device.device_id, self.timeout) from e
        except OSError as e:
            self._sessions.pop(device.device_id, None)
            raise DeviceConnectionError(f"Network error connecting to {device.ip_address}", str(e)) from e

        try:
            _raise_for_error(response, device.device_id, self.timeout)
        except (DeviceConnectionError, DeviceTimeoutError):
            # Reconnect on the next fetch
            self._sessions.pop(device.device_id, None)
            raise

        if "dps" not in response:
            raise DeviceProtocolError(f"No DPS in response from {device.device_id}", repr(response)[:80])
        return response


class CloudStatusClient:
    """Reads status from the Tuya cloud, keyed by status code (e.g. ``cur_power``)."""

    def __init__(self, registry: TuyaCloudRegistry):
        self.registry = registry

    def get_status(self, device: Any) -> dict:
        try:
            status = self.registry.get_status(device.device_id)
        except CloudRegistryError as e:
            raise DeviceConnectionError(f"Cloud status for {device.device_id} unavailable", str(e)) from e
        return {"devId": device.device_id, "dps": status}


class PowerReader:
    """Turns status payloads of one device into power samples."""

    def __init__(
        self,
        source: StatusSource,
        device: Any,
        power_value_id: str = "19",
        voltage_value_id: str | None = None,
        current_value_id: str | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize reader.

        Args:
            source: Status source for the device.
            device: Device passed through to ``source.get_status``.
            power_value_id: DPS key of the power reading.
            voltage_value_id: DPS key of the voltage reading, if any.
            current_value_id: DPS key of the current reading, if any.
            clock: Time source for sample timestamps.
        """
        self.source = source
        self.device = device
        self.power_value_id = str(power_value_id)
        self.voltage_value_id = voltage_value_id
        self.current_value_id = current_value_id
        self.clock = clock
        self._last_raw: bytes | None = None
        self._last_values: tuple[float | None, float | None, float | None] = (None, None, None)

    def read(self) -> PowerSample:
        """Fetch one sample.

        A payload byte-identical to the previous one reuses the previously
        parsed values.

        Raises:
            DeviceTimeoutError, DeviceConnectionError, DeviceProtocolError: From the source.
        """
        status = self.source.get_status(self.device)
        timestamp = self.clock()
        dps = status.get("dps") or {}

        raw = json.dumps(dps, sort_keys=True, default=str).encode()
        if raw == self._last_raw:
            watt, voltage, current = self._last_values
        else:
            watt, voltage, current = self._parse(dps)
            self._last_raw = raw
            self._last_values = (watt, voltage, current)

        if watt is None:
            logger.warning(
                "Power value %s not found in DPS of %s", self.power_value_id, self.device.device_id
            )
        else:
            logger.debug(
                "%s: %.1f W (%s V, %s mA)", self.device.device_id, watt, voltage, current
            )
        return PowerSample(watt=watt, timestamp=timestamp, raw=dps, voltage=voltage, current=current)

    def _parse(self, dps: dict) -> tuple[float | None, float | None, float | None]:
        watt = _scaled(dps.get(self.power_value_id), POWER_SCALE)
        voltage = _scaled(dps.get(self.voltage_value_id), VOLTAGE_SCALE) if self.voltage_value_id else None
        current = _scaled(dps.get(self.current_value_id), 1.0) if self.current_value_id else None
        return watt, voltage, current


def _scaled(value: Any, scale: float) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value) / scale
    except (TypeError, ValueError):
        logger.debug("Ignoring non-numeric DPS value %r", value)
        return None
