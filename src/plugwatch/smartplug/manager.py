"""Discovery and reconciliation with last-known-good caching."""

import logging
import threading
import time
from collections.abc import Callable

from ..core.config import DiscoveryConfig
from ..core.exceptions import DeviceNotFoundError
from .cloud import CloudRegistry, fetch_cloud_devices
from .devices import LocalDeviceRecord, ReconciledDevice
from .discovery import DiscoveryListener
from .reconcile import reconcile

logger = logging.getLogger(__name__)


class DeviceManager:
    """Owns the I/O around discovery and reconciliation.

    The cached lists are written only by the discovery and matching passes
    and may be read concurrently.
    """

    def __init__(
        self,
        registry: CloudRegistry | None = None,
        listener: DiscoveryListener | None = None,
        config: DiscoveryConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize manager.

        Args:
            registry: Cloud registry; None means local discovery only.
            listener: Discovery listener (built from ``config`` when omitted).
            config: Discovery settings.
            sleep: Delay function used between retries.
        """
        self.config = config or DiscoveryConfig()
        self.registry = registry
        self.listener = listener or DiscoveryListener(ports=self.config.ports, window=self.config.window)
        self._sleep = sleep
        self._lock = threading.Lock()
        self._cached_local: list[LocalDeviceRecord] = []
        self._cached_matched: list[ReconciledDevice] = []
        self._last_discovered: list[LocalDeviceRecord] = []

    @property
    def cached_devices(self) -> list[LocalDeviceRecord]:
        with self._lock:
            return list(self._cached_local)

    @property
    def last_discovered(self) -> list[LocalDeviceRecord]:
        """Devices seen by the most recent discovery pass, never the cache."""
        with self._lock:
            return list(self._last_discovered)

    def discover_local_devices(self) -> list[LocalDeviceRecord]:
        """Run one discovery pass.

        Falls back to the last non-empty result when the pass finds nothing
        or fails; the cache may be stale.

        Returns:
            Devices found now, the cached devices, or an empty list.
        """
        try:
            devices = self.listener.discover()
        except Exception as e:
            with self._lock:
                self._last_discovered = []
            logger.error("Error discovering local devices: %s", e)
            return self._cached_or_empty("after error")

        with self._lock:
            self._last_discovered = list(devices)
        if not devices:
            logger.warning("No devices found in the local network")
            return self._cached_or_empty("")

        with self._lock:
            self._cached_local = list(devices)
        return devices

    def _cached_or_empty(self, reason: str) -> list[LocalDeviceRecord]:
        cached = self.cached_devices
        if cached:
            logger.info("Returning %d cached devices %s", len(cached), reason)
        return cached

    def match_with_cloud(self, local: list[LocalDeviceRecord]) -> list[ReconciledDevice]:
        """Reconcile local devices with a fresh cloud device list.

        Args:
            local: Devices from discovery.

        Returns:
            Addressable devices. When the cloud returns nothing, the last
            successful reconciliation (or an empty list).
        """
        logger.info("Fetching devices from Tuya cloud for comparison")
        cloud = fetch_cloud_devices(self.registry)
        if not cloud:
            logger.warning("No devices found in Tuya cloud")
            with self._lock:
                cached = list(self._cached_matched)
            if cached:
                logger.info("Returning %d previously matched devices", len(cached))
            return cached

        matched = reconcile(local, cloud)
        if matched:
            logger.info("Matched %d of %d local devices with the cloud", len(matched), len(local))
            with self._lock:
                self._cached_matched = list(matched)
        else:
            logger.info("No matching devices found")
        return matched

    def discover_and_match(self) -> list[ReconciledDevice]:
        """Discovery followed by reconciliation."""
        local = self.discover_local_devices()
        if not local:
            return []
        return self.match_with_cloud(local)

    def find_device(
        self,
        device_id: str,
        attempts: int | None = None,
        delay: float | None = None,
        known: list[LocalDeviceRecord] | None = None,
    ) -> LocalDeviceRecord:
        """Locate one device on the LAN, retrying discovery.

        Args:
            device_id: Device to look for.
            attempts: Discovery attempts (default from config).
            delay: Seconds between attempts (default from config).
            known: Already-discovered devices to check before running discovery.

        Returns:
            The device's local record.

        Raises:
            DeviceNotFoundError: If the device is not seen after all attempts.
        """
        attempts = attempts if attempts is not None else self.config.retry_attempts
        delay = delay if delay is not None else self.config.retry_delay

        if known:
            for record in known:
                if record.device_id == device_id:
                    return record

        for attempt in range(1, attempts + 1):
            for record in self.discover_local_devices():
                if record.device_id == device_id:
                    logger.info("Device %s found on the network at %s", device_id, record.ip_address)
                    return record

            logger.warning("Device %s not found, retrying... (%d/%d)", device_id, attempt, attempts)
            if attempt < attempts:
                self._sleep(delay)

        raise DeviceNotFoundError(device_id, attempts)
