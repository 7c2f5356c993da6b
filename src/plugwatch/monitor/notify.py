"""Notification gateway.

Trackers hand plain-text lifecycle messages to a gateway. Delivery is
fire-and-forget: failures are logged and never reach the tracker.
"""

import logging
import threading
from typing import Protocol

logger = logging.getLogger(__name__)


class NotificationGateway(Protocol):
    """Receiver of lifecycle messages. Must be safe to call from several trackers."""

    def send(self, message: str) -> None: ...


class LoggingChannel:
    """Channel that writes messages to a logger."""

    def __init__(self, name: str = "plugwatch.notifications", level: int = logging.INFO):
        self._logger = logging.getLogger(name)
        self.level = level

    def send(self, message: str) -> None:
        self._logger.log(self.level, message)


class MessageGateway:
    """Fans a message out to every registered channel.

    Sends are serialised so channels need not be thread-safe themselves.
    """

    def __init__(self, channels: list[NotificationGateway] | None = None):
        self._channels: list[NotificationGateway] = list(channels or [])
        self._lock = threading.Lock()

    def add_channel(self, channel: NotificationGateway) -> None:
        with self._lock:
            self._channels.append(channel)

    def send(self, message: str) -> bool:
        """Deliver a message to all channels.

        Returns:
            True if at least one channel accepted the message.
        """
        with self._lock:
            if not self._channels:
                logger.warning("No notification channels configured. Message could not be sent: %s", message)
                return False

            delivered = False
            for channel in self._channels:
                try:
                    channel.send(message)
                    delivered = True
                except Exception as e:
                    logger.error("Notification via %s failed: %s", type(channel).__name__, e)
            return delivered


def safe_send(gateway: NotificationGateway | None, message: str | None) -> None:
    """Send without letting a gateway failure escape."""
    if gateway is None or not message:
        return
    try:
        gateway.send(message)
    except Exception as e:
        logger.error("Notification failed: %s", e)
