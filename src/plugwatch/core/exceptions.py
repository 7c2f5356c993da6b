"""Custom exceptions for plugwatch."""


class PlugWatchError(Exception):
    """Base exception for all plugwatch errors."""

    def __init__(self, message: str, details: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class ValidationError(PlugWatchError):
    """Input validation error."""

    pass


class ConfigurationError(PlugWatchError):
    """Invalid device configuration. Fatal for that device only."""

    def __init__(self, device: str, message: str, details: str | None = None):
        super().__init__(f"Invalid configuration for {device}: {message}", details)
        self.device = device
        self.reason = message


class DecryptionError(PlugWatchError):
    """A broadcast datagram could not be decrypted or parsed."""

    pass


class CloudRegistryError(PlugWatchError):
    """The cloud device registry could not be queried."""

    pass


class DeviceConnectionError(PlugWatchError):
    """Device is unreachable or the connection failed."""

    pass


class DeviceTimeoutError(PlugWatchError):
    """Device did not respond within the timeout."""

    def __init__(self, device_id: str, timeout: float):
        super().__init__(f"No status received from {device_id} within {timeout}s")
        self.device_id = device_id
        self.timeout = timeout


class DeviceProtocolError(PlugWatchError):
    """Device sent an invalid or undecodable response (often a wrong key or version)."""

    pass


class DeviceNotFoundError(PlugWatchError):
    """Device was not seen on the network after all discovery attempts."""

    def __init__(self, device_id: str, attempts: int):
        message = f"Device {device_id} not found after {attempts} attempts"
        super().__init__(message)
        self.device_id = device_id
        self.attempts = attempts
