"""Tuya LAN broadcast discovery.

Tuya devices announce themselves every few seconds with a UDP broadcast.
Protocol 3.1 devices use port 6666, protocol 3.3+ devices port 6667. The
listener binds one socket per port, collects frames for a fixed window, and
turns each unique frame into a ``LocalDeviceRecord``.
"""

import hashlib
import logging
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor

from ..core.config import DISCOVERY_PORTS
from ..core.exceptions import DecryptionError
from .crypto import decode_broadcast
from .devices import LocalDeviceRecord

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 5.0
MAX_DATAGRAM = 4096


class DiscoveryListener:
    """Listens for Tuya broadcasts on a set of UDP ports.

    The fingerprint set used for deduplication is scoped to a single
    ``discover()`` run. It is cleared at the start of every run; keeping it
    across runs would make every later run return nothing, since devices
    repeat byte-identical broadcasts.
    """

    def __init__(
        self,
        ports: tuple[int, ...] = DISCOVERY_PORTS,
        window: float = DEFAULT_WINDOW,
    ):
        """Initialize listener.

        Args:
            ports: UDP ports to listen on.
            window: Seconds to listen on each port.
        """
        self.ports = tuple(ports)
        self.window = window
        self._seen: set[str] = set()
        self._seen_lock = threading.Lock()

    def discover(self) -> list[LocalDeviceRecord]:
        """Listen on all ports and return the devices seen.

        Ports are listened to concurrently; results are concatenated in port
        order. Sockets are closed when the window ends, whatever is in flight.

        Returns:
            Devices decoded during this run.
        """
        with self._seen_lock:
            self._seen.clear()

        logger.info("Starting LAN discovery on ports %s for %.1fs", self.ports, self.window)
        with ThreadPoolExecutor(max_workers=max(len(self.ports), 1)) as executor:
            per_port = list(executor.map(self._listen, self.ports))

        devices = [device for port_devices in per_port for device in port_devices]
        logger.info("Discovered %d local devices", len(devices))
        return devices

    def _listen(self, port: int) -> list[LocalDeviceRecord]:
        """Collect broadcasts on one port until the window closes."""
        devices: list[LocalDeviceRecord] = []

        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.bind(("", port))
            logger.debug("Listening on UDP port %d for Tuya broadcasts", port)

            deadline = time.monotonic() + self.window
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                sock.settimeout(remaining)
                try:
                    data, addr = sock.recvfrom(MAX_DATAGRAM)
                except TimeoutError:
                    break

                device = self.handle_datagram(data, addr[0])
                if device:
                    devices.append(device)
        except OSError as e:
            logger.warning("Discovery on port %d failed: %s", port, e)
        finally:
            sock.close()

        return devices

    def handle_datagram(self, data: bytes, ip: str) -> LocalDeviceRecord | None:
        """Deduplicate, decode and convert one datagram.

        Args:
            data: Raw datagram bytes.
            ip: Sender address.

        Returns:
            The device record, or None for duplicates and undecodable frames.
        """
        fingerprint = hashlib.sha256(data).hexdigest()
        with self._seen_lock:
            if fingerprint in self._seen:
                return None
            self._seen.add(fingerprint)

        try:
            descriptor = decode_broadcast(data)
        except DecryptionError as e:
            logger.warning("Discarding broadcast from %s: %s", ip, e)
            return None

        return LocalDeviceRecord(
            device_id=str(descriptor["gwId"]),
            ip_address=ip,
            protocol_version=str(descriptor.get("version", "3.3")),
        )


def discover_local_devices(
    timeout: float = DEFAULT_WINDOW,
    ports: tuple[int, ...] = DISCOVERY_PORTS,
) -> list[LocalDeviceRecord]:
    """Convenience function for a single discovery run.

    Args:
        timeout: Seconds to listen on each port.
        ports: UDP ports to listen on.

    Returns:
        Devices seen during the run.
    """
    return DiscoveryListener(ports=ports, window=timeout).discover()
