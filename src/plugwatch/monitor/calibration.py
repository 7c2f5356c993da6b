"""Threshold calibration and ad-hoc power tracking.

Used to pick ``start_value``/``end_value`` for a new appliance: sample the
plug for a while and look at the readings and the suggested thresholds.
"""

import logging
import math
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from ..core.exceptions import DeviceConnectionError, DeviceProtocolError, DeviceTimeoutError
from ..smartplug.devices import PowerSample
from ..smartplug.status import PowerReader

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 20


@dataclass
class ThresholdSuggestion:
    start_value: float
    end_value: float
    mean: float
    stddev: float
    sample_count: int

    def to_dict(self) -> dict:
        """Convert to dictionary representation."""
        return {
            "start_value": round(self.start_value, 1),
            "end_value": round(self.end_value, 1),
            "mean": round(self.mean, 2),
            "stddev": round(self.stddev, 2),
            "sample_count": self.sample_count,
        }


class ThresholdCalibrator:
    """Rolling-window threshold estimate.

    start = mean + 2 * stddev, end = mean + stddev (population stddev over the
    last ``window`` readings).
    """

    def __init__(self, window: int = DEFAULT_WINDOW):
        if window < 1:
            raise ValueError("window must be at least 1")
        self._values: deque[float] = deque(maxlen=window)
        self.suggestion: ThresholdSuggestion | None = None

    def add(self, watt: float | None) -> ThresholdSuggestion | None:
        """Add a reading and recompute the suggestion."""
        if watt is None:
            return self.suggestion

        self._values.append(watt)
        count = len(self._values)
        mean = sum(self._values) / count
        stddev = math.sqrt(sum((v - mean) ** 2 for v in self._values) / count)
        self.suggestion = ThresholdSuggestion(
            start_value=mean + 2 * stddev,
            end_value=mean + stddev,
            mean=mean,
            stddev=stddev,
            sample_count=count,
        )
        logger.debug(
            "New thresholds: start %.1f, stop %.1f",
            self.suggestion.start_value,
            self.suggestion.end_value,
        )
        return self.suggestion


def calculate_interval(duration: float | None) -> float:
    """Sampling interval in seconds for a tracking session of ``duration`` seconds."""
    if duration is None or duration <= 60:
        return 1.0
    if duration <= 300:
        return 5.0
    if duration <= 1800:
        return 10.0
    return 30.0


def track_power(
    reader: PowerReader,
    duration: float | None = None,
    stop_event: threading.Event | None = None,
    on_sample: Callable[[PowerSample], None] | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> list[PowerSample]:
    """Sample a device for ``duration`` seconds, or until cancelled.

    Args:
        reader: Power reader of the device.
        duration: Session length in seconds; None runs until ``stop_event`` is set.
        stop_event: Cancellation token.
        on_sample: Called with every successful sample.
        clock: Monotonic time source for the session deadline.

    Returns:
        Samples collected, in order.
    """
    stop_event = stop_event or threading.Event()
    interval = calculate_interval(duration)
    deadline = clock() + duration if duration is not None else None
    samples: list[PowerSample] = []

    logger.info("Tracking power of %s every %.0fs", reader.device.device_id, interval)
    while not stop_event.is_set():
        try:
            sample = reader.read()
        except (DeviceTimeoutError, DeviceConnectionError, DeviceProtocolError) as e:
            logger.warning("Error tracking power of %s: %s", reader.device.device_id, e)
        else:
            samples.append(sample)
            if on_sample:
                on_sample(sample)

        if deadline is not None and clock() >= deadline:
            break
        wait = interval if deadline is None else min(interval, max(deadline - clock(), 0.0))
        stop_event.wait(wait)
        if deadline is not None and clock() >= deadline:
            break

    logger.info("Stopped tracking power of %s after %d samples", reader.device.device_id, len(samples))
    return samples
