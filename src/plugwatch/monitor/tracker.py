"""Per-device power tracking loop.

A ``DeviceTracker`` polls one plug, feeds the samples to its
``CycleDetector`` and acts on the confirmed events: lifecycle callbacks,
notifications, the optional state indicator and the optional cycle log.
Trackers share nothing but the notification gateway.
"""

import logging
import threading
import time
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

from ..core.config import Config, DeviceConfig, PollingConfig
from ..core.exceptions import (
    CloudRegistryError,
    ConfigurationError,
    DeviceConnectionError,
    DeviceNotFoundError,
    DeviceProtocolError,
    DeviceTimeoutError,
)
from ..core.utils import format_duration
from ..smartplug.cloud import TuyaCloudRegistry
from ..smartplug.devices import LocalDeviceRecord, PowerSample
from ..smartplug.manager import DeviceManager
from ..smartplug.status import CloudStatusClient, LocalStatusClient, PowerReader, StatusSource
from .cycle import CycleDetector, CycleEvent, CycleStats, EventKind, Phase
from .export import CycleRecorder
from .notify import NotificationGateway, safe_send

logger = logging.getLogger(__name__)

CycleCallback = Callable[[CycleStats], None]

_FETCH_ERRORS = (DeviceTimeoutError, DeviceConnectionError, DeviceProtocolError)


class DeviceTracker:
    """Polls one device and detects appliance cycles."""

    def __init__(
        self,
        config: DeviceConfig,
        reader: PowerReader,
        gateway: NotificationGateway | None = None,
        on_started: CycleCallback | None = None,
        on_finished: CycleCallback | None = None,
        indicator: Callable[[bool], None] | None = None,
        recorder: CycleRecorder | None = None,
        polling: PollingConfig | None = None,
    ):
        """Initialize tracker.

        Args:
            config: Device configuration; validated here.
            reader: Power reader bound to the device.
            gateway: Receiver of start/end messages.
            on_started: Called with the running stats when a cycle is confirmed.
            on_finished: Called with the final stats when a cycle ends.
            indicator: Switch exposed to home automation; set on at start, off at end.
            recorder: Cycle log writer, when export is enabled.
            polling: Fast/slow poll intervals.

        Raises:
            ConfigurationError: If the configuration is invalid.
        """
        config.validate()
        self.config = config
        self.reader = reader
        self.gateway = gateway
        self.on_started = on_started
        self.on_finished = on_finished
        self.indicator = indicator
        self.recorder = recorder
        self.detector = CycleDetector(config, polling=polling)
        self.failures = 0
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    @property
    def name(self) -> str:
        return self.config.display_name

    @property
    def phase(self) -> Phase:
        return self.detector.phase

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def poll_once(self) -> list[CycleEvent]:
        """Take one sample and process it.

        Fetch failures are logged and count as a missed sample.

        Returns:
            Events confirmed by this sample.
        """
        try:
            sample = self.reader.read()
        except _FETCH_ERRORS as e:
            self.failures += 1
            logger.warning("Error refreshing %s: %s", self.name, e)
            return []

        return self.process(sample)

    def process(self, sample: PowerSample) -> list[CycleEvent]:
        """Feed one sample and handle the resulting events."""
        phase_before = self.detector.phase
        events = self.detector.feed(sample)

        if self.recorder:
            if phase_before is Phase.IDLE and self.detector.phase is Phase.START_PENDING:
                self.recorder.begin()
            self.recorder.add(sample)

        for event in events:
            if event.kind is EventKind.STARTED:
                self._handle_started(event)
            else:
                self._handle_finished(event)

        if self.recorder and self.detector.phase is Phase.IDLE and self.recorder.recording:
            # Candidate start turned out to be noise
            self.recorder.discard()

        return events

    def _handle_started(self, event: CycleEvent) -> None:
        logger.info("%s started the job!", self.name)
        safe_send(self.gateway, self.config.start_message)
        self._set_indicator(True)
        self._callback(self.on_started, event.stats)

    def _handle_finished(self, event: CycleEvent) -> None:
        stats = event.stats
        logger.info(
            "%s finished the job! %s, %.3f kWh, avg %.1f W (min %.1f W, max %.1f W)",
            self.name,
            format_duration(stats.duration_sec),
            stats.total_kwh,
            stats.avg_power or 0.0,
            stats.min_power or 0.0,
            stats.max_power or 0.0,
        )
        if self.config.end_message:
            safe_send(self.gateway, _render(self.config.end_message, self.name, stats))
        self._set_indicator(False)
        if self.recorder and self.recorder.recording:
            try:
                self.recorder.finish(stats)
            except OSError as e:
                logger.error("Could not write cycle log for %s: %s", self.name, e)
                self.recorder.discard()
        self._callback(self.on_finished, stats)

    def _set_indicator(self, on: bool) -> None:
        if not (self.config.expose_state_switch and self.indicator):
            return
        try:
            self.indicator(on)
        except Exception as e:
            logger.error("Could not update state switch of %s: %s", self.name, e)

    def _callback(self, callback: CycleCallback | None, stats: CycleStats) -> None:
        if callback is None:
            return
        try:
            callback(stats)
        except Exception as e:
            logger.error("Lifecycle callback for %s failed: %s", self.name, e)

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Poll until ``stop_event`` is set.

        The wait between polls follows the detector's adaptive interval.
        """
        stop_event = stop_event or self._stop_event
        logger.info("Tracking %s (power DPS %s)", self.name, self.config.power_value_id)
        while not stop_event.is_set():
            try:
                self.poll_once()
            except Exception:
                self.failures += 1
                logger.exception("Unexpected error polling %s", self.name)
            stop_event.wait(self.detector.polling_interval)
        logger.info("Stopped tracking %s", self.name)

    def start(self) -> "DeviceTracker":
        """Run the polling loop in a daemon thread."""
        if self.is_running:
            return self
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self.run,
            args=(self._stop_event,),
            name=f"tracker-{self.config.device_id}",
            daemon=True,
        )
        self._thread.start()
        return self

    def stop(self, timeout: float | None = 5.0) -> None:
        """Cancel the polling loop and wait for it to exit."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Tracker for %s still busy after %ss", self.name, timeout)
            else:
                self._thread = None


def _render(message: str, name: str, stats: CycleStats) -> str:
    """Fill {name}, {duration}, {kwh}, {avg_power}, {min_power}, {max_power} placeholders."""
    fields = {
        "name": name,
        "duration": format_duration(stats.duration_sec),
        "kwh": round(stats.total_kwh, 3),
        "avg_power": round(stats.avg_power or 0.0, 1),
        "min_power": stats.min_power,
        "max_power": stats.max_power,
    }
    try:
        return message.format(**fields)
    except (KeyError, IndexError, ValueError):
        return message


def build_reader(
    config: DeviceConfig,
    device: Any = None,
    source: StatusSource | None = None,
    polling: PollingConfig | None = None,
    clock: Callable[[], float] = time.time,
) -> PowerReader:
    """Build the power reader for a configured device.

    Args:
        config: Device configuration.
        device: Addressable device (defaults to ``config`` itself).
        source: Status source (defaults to a local LAN client).
        polling: Supplies the status timeout.
        clock: Time source for sample timestamps.
    """
    polling = polling or PollingConfig()
    return PowerReader(
        source=source or LocalStatusClient(timeout=polling.status_timeout),
        device=device or config,
        power_value_id=config.power_value_id,
        voltage_value_id=config.voltage_value_id,
        current_value_id=config.current_value_id,
        clock=clock,
    )


def start_tracking(
    device: Any,
    config: DeviceConfig,
    source: StatusSource | None = None,
    gateway: NotificationGateway | None = None,
    on_started: CycleCallback | None = None,
    on_finished: CycleCallback | None = None,
    indicator: Callable[[bool], None] | None = None,
    export_dir: str | Path | None = None,
    polling: PollingConfig | None = None,
) -> DeviceTracker:
    """Start tracking a device in the background.

    Args:
        device: Addressable device (``ReconciledDevice``, ``DeviceConfig`` or similar).
        config: Thresholds and behaviour for this device.
        source: Status source (defaults to a local LAN client).
        gateway: Receiver of start/end messages.
        on_started: Lifecycle callback for confirmed starts.
        on_finished: Lifecycle callback for finished cycles.
        indicator: State switch for home automation.
        export_dir: Directory for cycle logs when ``config.export_enabled``.
        polling: Poll intervals and status timeout.

    Returns:
        The running tracker; call ``stop()`` to cancel it.

    Raises:
        ConfigurationError: If the configuration is invalid.
    """
    recorder = None
    if config.export_enabled:
        recorder = CycleRecorder(export_dir or Path("./cycles"))

    tracker = DeviceTracker(
        config,
        build_reader(config, device=device, source=source, polling=polling),
        gateway=gateway,
        on_started=on_started,
        on_finished=on_finished,
        indicator=indicator,
        recorder=recorder,
        polling=polling,
    )
    return tracker.start()


class Monitor:
    """Runs one tracker per configured device.

    A device with an invalid configuration, or one that cannot be found on
    the LAN, is reported and skipped; the others keep running.
    """

    def __init__(
        self,
        config: Config,
        manager: DeviceManager | None = None,
        gateway: NotificationGateway | None = None,
        source_factory: Callable[[DeviceConfig], StatusSource] | None = None,
    ):
        self.config = config
        self.manager = manager
        self.gateway = gateway
        self.source_factory = source_factory
        self.trackers: dict[str, DeviceTracker] = {}
        self.errors: dict[str, Exception] = {}
        self._cloud_source: CloudStatusClient | None = None

    def start(self, devices: Iterable[DeviceConfig] | None = None) -> dict[str, DeviceTracker]:
        """Start trackers for the given (default: all configured) devices."""
        known: list[LocalDeviceRecord] = []
        for device_config in devices if devices is not None else self.config.devices:
            try:
                device_config.validate()
                if device_config.source == "local" and self.manager is not None:
                    known = known or self.manager.discover_local_devices()
                    record = self.manager.find_device(device_config.device_id, known=known)
                    if record.ip_address != device_config.ip_address:
                        logger.info(
                            "%s moved to %s", device_config.display_name, record.ip_address
                        )
                        device_config.ip_address = record.ip_address
                    device_config.protocol_version = record.protocol_version or device_config.protocol_version

                source = self._source_for(device_config)
                self.trackers[device_config.device_id] = start_tracking(
                    device_config,
                    device_config,
                    source=source,
                    gateway=self.gateway,
                    export_dir=self.config.export_dir,
                    polling=self.config.polling,
                )
            except (ConfigurationError, DeviceNotFoundError) as e:
                logger.error("Not tracking %s: %s", device_config.display_name, e)
                self.errors[device_config.device_id] = e

        return self.trackers

    def _source_for(self, device_config: DeviceConfig) -> StatusSource | None:
        if self.source_factory:
            return self.source_factory(device_config)
        if device_config.source != "cloud":
            return None
        if self._cloud_source is None:
            try:
                registry = TuyaCloudRegistry.from_config(self.config.cloud)
            except (CloudRegistryError, ValueError) as e:
                raise ConfigurationError(device_config.device_id, "cloud source unavailable", str(e)) from e
            self._cloud_source = CloudStatusClient(registry)
        return self._cloud_source

    def stop(self) -> None:
        for tracker in self.trackers.values():
            tracker.stop()
        self.trackers.clear()
