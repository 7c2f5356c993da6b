"""Tests for tracking loops, notifications, cycle logs and calibration."""

import json
import logging
import threading
from itertools import count
from unittest.mock import MagicMock, call

import pytest

from plugwatch.core.config import Config, DeviceConfig, PollingConfig
from plugwatch.core.exceptions import ConfigurationError, DeviceNotFoundError, DeviceTimeoutError
from plugwatch.monitor.calibration import ThresholdCalibrator, calculate_interval, track_power
from plugwatch.monitor.cycle import EventKind, Phase
from plugwatch.monitor.export import CycleRecorder, export_json
from plugwatch.monitor.notify import LoggingChannel, MessageGateway, safe_send
from plugwatch.monitor.tracker import DeviceTracker, Monitor, _render, start_tracking
from plugwatch.smartplug.devices import LocalDeviceRecord, PowerSample

FAST = PollingConfig(fast_interval=0.01, slow_interval=0.01)


def make_config(**overrides) -> DeviceConfig:
    values = {
        "device_id": "washer01",
        "local_key": "0123456789abcdef",
        "ip_address": "192.168.1.50",
        "name": "Washer",
        "start_value": 50.0,
        "start_duration": 0.0,
        "end_value": 5.0,
        "end_duration": 0.0,
    }
    values.update(overrides)
    return DeviceConfig(**values)


def run_cycle(tracker):
    """Drive one short cycle through a tracker."""
    events = []
    for timestamp, watt in [(0, 100.0), (1, 100.0), (2, 0.0), (3, 0.0)]:
        events.extend(tracker.process(PowerSample(watt=watt, timestamp=float(timestamp))))
    return events


def static_source(watt_raw=0):
    source = MagicMock()
    source.get_status.return_value = {"dps": {"19": watt_raw}}
    return source


class TestDeviceTracker:
    """Tests for the per-device tracker."""

    def test_lifecycle_callbacks(self):
        """Test start and finish callbacks receive the cycle stats."""
        on_started, on_finished = MagicMock(), MagicMock()
        tracker = DeviceTracker(make_config(), MagicMock(), on_started=on_started, on_finished=on_finished)

        events = run_cycle(tracker)

        assert [e.kind for e in events] == [EventKind.STARTED, EventKind.FINISHED]
        on_started.assert_called_once()
        stats = on_finished.call_args[0][0]
        assert stats.energy_ws == pytest.approx(100.0)
        assert stats.duration_sec == 3.0
        assert tracker.phase is Phase.IDLE

    def test_messages(self):
        """Test start and end messages go to the gateway."""
        gateway = MagicMock()
        config = make_config(start_message="Washer started", end_message="{name} done in {duration}, {kwh} kWh")
        tracker = DeviceTracker(config, MagicMock(), gateway=gateway)

        run_cycle(tracker)

        assert gateway.send.call_args_list == [call("Washer started"), call("Washer done in 3s, 0.0 kWh")]

    def test_no_messages_configured(self):
        """Test nothing is sent without messages."""
        gateway = MagicMock()
        tracker = DeviceTracker(make_config(), MagicMock(), gateway=gateway)

        run_cycle(tracker)

        gateway.send.assert_not_called()

    def test_gateway_failure_does_not_stop_tracking(self):
        """Test a failing gateway is contained."""
        gateway = MagicMock()
        gateway.send.side_effect = RuntimeError("offline")
        on_finished = MagicMock()
        config = make_config(start_message="started", end_message="finished")
        tracker = DeviceTracker(config, MagicMock(), gateway=gateway, on_finished=on_finished)

        run_cycle(tracker)

        on_finished.assert_called_once()

    def test_callback_failure_is_contained(self):
        """Test a raising callback does not break the detector."""
        on_started = MagicMock(side_effect=ValueError("boom"))
        tracker = DeviceTracker(make_config(), MagicMock(), on_started=on_started)

        events = run_cycle(tracker)

        assert events[-1].kind is EventKind.FINISHED

    def test_indicator(self):
        """Test the state switch follows the cycle."""
        indicator = MagicMock()
        tracker = DeviceTracker(make_config(expose_state_switch=True), MagicMock(), indicator=indicator)

        run_cycle(tracker)

        assert indicator.call_args_list == [call(True), call(False)]

    def test_indicator_disabled(self):
        """Test the state switch is left alone unless exposed."""
        indicator = MagicMock()
        tracker = DeviceTracker(make_config(), MagicMock(), indicator=indicator)

        run_cycle(tracker)

        indicator.assert_not_called()

    def test_cycle_log(self, tmp_path):
        """Test a finished cycle is written to the export directory."""
        tracker = DeviceTracker(make_config(), MagicMock(), recorder=CycleRecorder(tmp_path))

        run_cycle(tracker)

        files = list(tmp_path.glob("washer01_*.json"))
        assert len(files) == 1
        record = json.loads(files[0].read_text())
        assert record["deviceId"] == "washer01"
        assert record["durationSec"] == 3.0
        assert record["maxPower"] == 100.0
        assert record["totalKWh"] == pytest.approx(100 / 3_600_000)
        assert [s["watt"] for s in record["samples"]] == [100.0, 100.0, 0.0, 0.0]
        assert tracker.recorder.recording is False

    def test_noise_is_not_logged(self, tmp_path):
        """Test a start that never confirms leaves no cycle log."""
        recorder = CycleRecorder(tmp_path)
        tracker = DeviceTracker(make_config(start_duration=10.0), MagicMock(), recorder=recorder)

        tracker.process(PowerSample(watt=100.0, timestamp=0.0))
        assert recorder.recording is True
        tracker.process(PowerSample(watt=10.0, timestamp=1.0))

        assert recorder.recording is False
        assert list(tmp_path.iterdir()) == []

    def test_poll_once_fetch_failure(self):
        """Test a failing fetch counts as a missed sample."""
        reader = MagicMock()
        reader.read.side_effect = DeviceTimeoutError("washer01", 10.0)
        tracker = DeviceTracker(make_config(), reader)

        assert tracker.poll_once() == []
        assert tracker.failures == 1
        assert tracker.phase is Phase.IDLE

    def test_poll_once(self):
        """Test a successful fetch is fed to the detector."""
        reader = MagicMock()
        reader.read.return_value = PowerSample(watt=100.0, timestamp=0.0)
        tracker = DeviceTracker(make_config(), reader)

        tracker.poll_once()

        assert tracker.phase is Phase.START_PENDING

    def test_run_until_stopped(self):
        """Test the loop exits once the stop event is set."""
        stop_event = threading.Event()
        timestamps = count()
        reader = MagicMock()

        def read():
            if reader.read.call_count >= 3:
                stop_event.set()
            return PowerSample(watt=0.0, timestamp=float(next(timestamps)))

        reader.read.side_effect = read
        tracker = DeviceTracker(make_config(), reader, polling=FAST)

        tracker.run(stop_event)

        assert reader.read.call_count == 3

    def test_start_and_stop(self):
        """Test the background thread lifecycle."""
        reader = MagicMock()
        reader.read.return_value = PowerSample(watt=0.0, timestamp=0.0)
        tracker = DeviceTracker(make_config(), reader, polling=FAST)

        tracker.start()
        assert tracker.is_running is True
        tracker.stop()

        assert tracker.is_running is False

    def test_run_survives_unexpected_error(self, caplog):
        """Test an unexpected read error is logged and polling continues."""
        stop_event = threading.Event()
        timestamps = count()
        reader = MagicMock()

        def read():
            if reader.read.call_count == 1:
                raise AttributeError("'list' object has no attribute 'get'")
            if reader.read.call_count >= 3:
                stop_event.set()
            return PowerSample(watt=0.0, timestamp=float(next(timestamps)))

        reader.read.side_effect = read
        tracker = DeviceTracker(make_config(), reader, polling=FAST)

        with caplog.at_level(logging.ERROR, logger="plugwatch.monitor.tracker"):
            tracker.run(stop_event)

        assert reader.read.call_count == 3
        assert tracker.failures == 1
        assert "Unexpected error polling Washer" in caplog.text

    def test_stop_keeps_busy_thread(self):
        """Test a thread still inside a fetch is not forgotten by stop."""
        release = threading.Event()
        reader = MagicMock()

        def read():
            release.wait(5.0)
            return PowerSample(watt=0.0, timestamp=0.0)

        reader.read.side_effect = read
        tracker = DeviceTracker(make_config(), reader, polling=FAST)
        tracker.start()
        thread = tracker._thread

        tracker.stop(timeout=0.05)
        assert tracker.is_running is True
        assert tracker.start()._thread is thread

        release.set()
        tracker.stop()
        assert tracker.is_running is False

    def test_render_placeholders(self):
        """Test unknown placeholders leave the message untouched."""
        tracker = DeviceTracker(make_config(), MagicMock())
        stats = run_cycle(tracker)[-1].stats

        assert _render("{name}: {avg_power} W", "Washer", stats) == "Washer: 50.0 W"
        assert _render("{unknown}", "Washer", stats) == "{unknown}"


class TestStartTracking:
    """Tests for the start_tracking entry point."""

    def test_returns_running_tracker(self, tmp_path):
        """Test tracking runs in the background until stopped."""
        config = make_config(export_enabled=True)
        tracker = start_tracking(config, config, source=static_source(), export_dir=tmp_path, polling=FAST)
        try:
            assert tracker.is_running is True
            assert tracker.recorder.export_dir == tmp_path
        finally:
            tracker.stop()

    def test_invalid_config(self):
        """Test invalid configurations are rejected before starting."""
        config = make_config(local_key=None)
        with pytest.raises(ConfigurationError, match="missing required configuration"):
            start_tracking(config, config, source=static_source())


class TestMonitor:
    """Tests for the multi-device monitor."""

    def test_skips_invalid_device(self):
        """Test one bad configuration does not stop the others."""
        good = make_config()
        bad = make_config(device_id="dryer01", name="Dryer", start_value=1.0, end_value=5.0)
        monitor = Monitor(Config(devices=[good, bad], polling=FAST), source_factory=lambda d: static_source())

        trackers = monitor.start()
        try:
            assert list(trackers) == ["washer01"]
            assert "dryer01" in monitor.errors
        finally:
            monitor.stop()

        assert monitor.trackers == {}

    def test_updates_address_from_discovery(self):
        """Test the configured address follows the device."""
        device = make_config()
        record = LocalDeviceRecord("washer01", "192.168.1.77", "3.4")
        manager = MagicMock()
        manager.discover_local_devices.return_value = [record]
        manager.find_device.return_value = record
        monitor = Monitor(
            Config(devices=[device], polling=FAST),
            manager=manager,
            source_factory=lambda d: static_source(),
        )

        monitor.start()
        monitor.stop()

        assert device.ip_address == "192.168.1.77"
        assert device.protocol_version == "3.4"
        manager.find_device.assert_called_once_with("washer01", known=[record])

    def test_device_not_found(self):
        """Test devices missing from the network are reported."""
        manager = MagicMock()
        manager.discover_local_devices.return_value = []
        manager.find_device.side_effect = DeviceNotFoundError("washer01", 3)
        monitor = Monitor(Config(devices=[make_config()], polling=FAST), manager=manager)

        assert monitor.start() == {}
        assert isinstance(monitor.errors["washer01"], DeviceNotFoundError)

    def test_cloud_source_without_credentials(self):
        """Test cloud devices need cloud credentials."""
        device = make_config(source="cloud", local_key=None, ip_address=None)
        monitor = Monitor(Config(devices=[device], polling=FAST))

        assert monitor.start() == {}
        assert "washer01" in monitor.errors


class TestNotifications:
    """Tests for the notification gateway."""

    def test_no_channels(self):
        """Test sending without channels reports failure."""
        assert MessageGateway().send("hello") is False

    def test_fan_out(self):
        """Test every channel receives the message and failures are contained."""
        broken, working = MagicMock(), MagicMock()
        broken.send.side_effect = RuntimeError("down")
        gateway = MessageGateway([broken])
        gateway.add_channel(working)

        assert gateway.send("Washer finished") is True
        working.send.assert_called_once_with("Washer finished")

    def test_logging_channel(self, caplog):
        """Test the logging channel writes to its logger."""
        with caplog.at_level(logging.INFO, logger="plugwatch.notifications"):
            MessageGateway([LoggingChannel()]).send("Washer finished")
        assert "Washer finished" in caplog.text

    def test_safe_send(self):
        """Test safe_send tolerates missing gateways and failures."""
        gateway = MagicMock()
        gateway.send.side_effect = RuntimeError("down")
        safe_send(gateway, "hello")
        safe_send(None, "hello")
        safe_send(gateway, None)
        gateway.send.assert_called_once_with("hello")


class TestExport:
    """Tests for JSON export."""

    def test_export_json(self, tmp_path):
        """Test dataclasses are serialised through to_dict."""
        path = export_json(
            {"sample": PowerSample(watt=1.5, timestamp=0.0), "dir": tmp_path},
            tmp_path / "out" / "data.json",
        )
        data = json.loads(open(path).read())
        assert data["sample"]["watt"] == 1.5
        assert data["dir"] == str(tmp_path)


class TestCalibration:
    """Tests for threshold calibration and ad-hoc tracking."""

    def test_suggestion(self):
        """Test start is mean + 2 stddev, end is mean + stddev."""
        calibrator = ThresholdCalibrator()
        calibrator.add(0.0)
        suggestion = calibrator.add(10.0)

        assert suggestion.mean == 5.0
        assert suggestion.stddev == 5.0
        assert suggestion.start_value == 15.0
        assert suggestion.end_value == 10.0

    def test_rolling_window(self):
        """Test only the last readings count."""
        calibrator = ThresholdCalibrator(window=2)
        for watt in (100.0, 0.0, 10.0):
            calibrator.add(watt)
        assert calibrator.suggestion.mean == 5.0
        assert calibrator.suggestion.sample_count == 2

    def test_missing_reading_ignored(self):
        """Test missing readings keep the previous suggestion."""
        calibrator = ThresholdCalibrator()
        assert calibrator.add(None) is None
        calibrator.add(10.0)
        assert calibrator.add(None).mean == 10.0

    def test_invalid_window(self):
        """Test the window must hold at least one reading."""
        with pytest.raises(ValueError):
            ThresholdCalibrator(window=0)

    @pytest.mark.parametrize(
        "duration,interval",
        [(None, 1.0), (30, 1.0), (60, 1.0), (61, 5.0), (300, 5.0), (1800, 10.0), (3600, 30.0)],
    )
    def test_calculate_interval(self, duration, interval):
        """Test sampling interval grows with the session length."""
        assert calculate_interval(duration) == interval

    def test_track_power_until_deadline(self):
        """Test tracking stops once the session duration has passed."""
        reader = MagicMock()
        reader.read.return_value = PowerSample(watt=12.0, timestamp=0.0)
        stop_event = MagicMock()
        stop_event.is_set.return_value = False
        ticks = count(0, 4)

        samples = track_power(reader, duration=10, stop_event=stop_event, clock=lambda: next(ticks))

        assert len(samples) == 1
        stop_event.wait.assert_called_once_with(1.0)

    def test_track_power_skips_failures(self):
        """Test fetch failures are logged and tracking continues."""
        first, second = PowerSample(watt=1.0, timestamp=0.0), PowerSample(watt=2.0, timestamp=1.0)
        reader = MagicMock()
        reader.read.side_effect = [first, DeviceTimeoutError("washer01", 10.0), second]
        stop_event = MagicMock()
        stop_event.is_set.side_effect = [False, False, False, True]
        seen = []

        samples = track_power(reader, stop_event=stop_event, on_sample=seen.append)

        assert samples == [first, second]
        assert seen == [first, second]
