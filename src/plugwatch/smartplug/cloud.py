"""Tuya cloud device registry.

Fetches the devices registered in the user's Tuya IoT account using
tinytuya's ``Cloud`` client. The registry is the only source of the local
keys needed to talk to a plug over the LAN.
"""

import logging
from typing import Any, Protocol

from ..core.config import CloudConfig
from ..core.exceptions import CloudRegistryError
from .devices import PLUG_CATEGORY, CloudDeviceRecord

logger = logging.getLogger(__name__)

# Tuya data center regions accepted by tinytuya
CLOUD_REGIONS = {
    "cn": "China",
    "us": "Western America",
    "us-e": "Eastern America",
    "eu": "Central Europe",
    "eu-w": "Western Europe",
    "in": "India",
}


class CloudRegistry(Protocol):
    """Source of cloud-registered power plugs."""

    def list_devices(self) -> list[CloudDeviceRecord]: ...


def _get_tinytuya() -> Any:
    """Import tinytuya with proper error handling.

    Raises:
        ImportError: If tinytuya is not installed.
    """
    try:
        import tinytuya

        return tinytuya
    except ImportError as e:
        raise ImportError(
            "tinytuya is required for Tuya cloud access. Install with: pip install tinytuya"
        ) from e


def _check_response(response: Any, operation: str) -> None:
    """Raise CloudRegistryError for tinytuya error payloads."""
    if isinstance(response, dict) and ("Error" in response or response.get("success") is False):
        message = response.get("Error") or response.get("msg") or "unknown error"
        code = response.get("Err") or response.get("code")
        raise CloudRegistryError(f"{operation} failed", f"code={code}, msg={message}")


class TuyaCloudRegistry:
    """Tuya cloud interface for retrieving power plugs and their local keys.

    One instance is constructed by the caller and passed to whoever needs it;
    the underlying tinytuya client is created lazily on first use.
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        region: str = "eu",
        api_device_id: str | None = None,
        category: str = PLUG_CATEGORY,
    ):
        """Initialize cloud interface.

        Args:
            api_key: Tuya IoT project access id.
            api_secret: Tuya IoT project access secret.
            region: Data center region (see ``CLOUD_REGIONS``).
            api_device_id: Any device id of the account, used by tinytuya to resolve the user.
            category: Device category to keep.

        Raises:
            ValueError: If region is not a known data center.
        """
        if region not in CLOUD_REGIONS:
            raise ValueError(
                f"Invalid region '{region}'. Valid options: {', '.join(CLOUD_REGIONS.keys())}"
            )

        self.api_key = api_key
        self.api_secret = api_secret
        self.region = region
        self.api_device_id = api_device_id
        self.category = category
        self._cloud = None

    @classmethod
    def from_config(cls, config: CloudConfig) -> "TuyaCloudRegistry":
        if not config.is_configured:
            raise CloudRegistryError("Cloud credentials are not configured")
        return cls(
            api_key=config.api_key,
            api_secret=config.api_secret,
            region=config.region,
            api_device_id=config.api_device_id,
        )

    @property
    def client(self) -> Any:
        """The underlying ``tinytuya.Cloud`` client."""
        if self._cloud is None:
            tinytuya = _get_tinytuya()
            try:
                cloud = tinytuya.Cloud(
                    apiRegion=self.region,
                    apiKey=self.api_key,
                    apiSecret=self.api_secret,
                    apiDeviceID=self.api_device_id,
                )
            except Exception as e:
                raise CloudRegistryError("Could not connect to Tuya cloud", str(e)) from e
            if getattr(cloud, "error", None):
                _check_response(cloud.error, "Cloud authentication")
            self._cloud = cloud
            logger.info("Connected to Tuya cloud (%s)", CLOUD_REGIONS[self.region])
        return self._cloud

    def list_devices(self) -> list[CloudDeviceRecord]:
        """Get the power plugs registered in the account.

        Returns:
            Devices of the configured category.

        Raises:
            CloudRegistryError: If the cloud request fails.
        """
        logger.debug("Fetching devices from Tuya cloud")
        try:
            response = self.client.getdevices(verbose=False)
        except CloudRegistryError:
            raise
        except Exception as e:
            raise CloudRegistryError("Fetching cloud devices failed", str(e)) from e

        _check_response(response, "Fetching cloud devices")
        if not isinstance(response, list):
            raise CloudRegistryError("Unexpected cloud response", type(response).__name__)

        logger.debug("Total devices received from cloud: %d", len(response))
        devices = []
        for entry in response:
            category = entry.get("category", "")
            if category != self.category:
                logger.debug("Skipping %s (category=%s)", entry.get("id"), category)
                continue
            devices.append(
                CloudDeviceRecord(
                    device_id=str(entry.get("id", "")),
                    display_name=entry.get("name") or str(entry.get("id", "")),
                    local_key=entry.get("key") or entry.get("local_key") or None,
                    category=category,
                )
            )

        logger.info("Found %d power plugs in Tuya cloud", len(devices))
        return devices

    def get_status(self, device_id: str) -> dict:
        """Get the cloud-reported status of one device.

        Returns:
            Mapping of status code to value, e.g. ``{"cur_power": 1234}``.

        Raises:
            CloudRegistryError: If the cloud request fails.
        """
        try:
            response = self.client.getstatus(device_id)
        except CloudRegistryError:
            raise
        except Exception as e:
            raise CloudRegistryError(f"Fetching status of {device_id} failed", str(e)) from e

        _check_response(response, f"Fetching status of {device_id}")
        result = response.get("result") if isinstance(response, dict) else None
        if not isinstance(result, list):
            raise CloudRegistryError(f"Unexpected status response for {device_id}")
        return {item["code"]: item.get("value") for item in result if "code" in item}


def fetch_cloud_devices(registry: CloudRegistry | None) -> list[CloudDeviceRecord]:
    """Fetch cloud devices, treating any failure as an empty registry.

    Args:
        registry: Registry to query, or None when the cloud is not configured.

    Returns:
        Registered plugs, or an empty list on failure.
    """
    if registry is None:
        logger.warning("No cloud registry configured")
        return []
    try:
        return registry.list_devices()
    except CloudRegistryError as e:
        logger.error("Error fetching cloud devices: %s", e)
        return []


def list_cloud_regions() -> dict[str, str]:
    """Get available cloud regions."""
    return CLOUD_REGIONS.copy()
