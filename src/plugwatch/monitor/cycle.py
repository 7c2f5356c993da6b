"""Appliance cycle detection from a power-sample stream.

Each tracked device owns one ``CycleDetector``. It walks the phases::

    IDLE -> START_PENDING -> ACTIVE -> END_PENDING -> IDLE

A rise to the start threshold has to persist for ``start_duration`` seconds
before the cycle counts as started, and a drop to the end threshold has to
persist for ``end_duration`` seconds before it counts as finished. Within a
pending phase a contrary sample reverts the candidate transition
(START_PENDING -> IDLE, END_PENDING -> ACTIVE). Energy is integrated as
``power * dt`` over wall-clock deltas between samples, so a changing poll
interval does not skew it.

The detector does no I/O and reads no clock; timestamps come with the samples.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from ..core.config import DeviceConfig, PollingConfig
from ..smartplug.devices import PowerSample

logger = logging.getLogger(__name__)

WS_PER_KWH = 3_600_000.0


class Phase(Enum):
    """Cycle phases."""

    IDLE = "idle"
    START_PENDING = "start_pending"
    ACTIVE = "active"
    END_PENDING = "end_pending"


class EventKind(Enum):
    """Lifecycle events."""

    STARTED = "started"
    FINISHED = "finished"


@dataclass
class CycleStats:
    """Running or final statistics of a cycle."""

    device_id: str
    started_at: float
    confirmed_at: float
    ended_at: float | None
    energy_ws: float
    min_power: float | None
    max_power: float | None
    avg_power: float | None
    sample_count: int

    @property
    def total_kwh(self) -> float:
        return self.energy_ws / WS_PER_KWH

    @property
    def duration_sec(self) -> float:
        end = self.ended_at if self.ended_at is not None else self.confirmed_at
        return end - self.started_at

    def to_dict(self) -> dict:
        """Convert to dictionary representation."""
        return {
            "device_id": self.device_id,
            "started_at": self.started_at,
            "confirmed_at": self.confirmed_at,
            "ended_at": self.ended_at,
            "duration_sec": self.duration_sec,
            "energy_ws": self.energy_ws,
            "total_kwh": self.total_kwh,
            "min_power": self.min_power,
            "max_power": self.max_power,
            "avg_power": self.avg_power,
            "sample_count": self.sample_count,
        }


@dataclass
class CycleEvent:
    """A confirmed start or end of a cycle."""

    kind: EventKind
    device_id: str
    timestamp: float
    stats: CycleStats


@dataclass
class Transition:
    """A phase change, reported to observers."""

    from_phase: Phase
    to_phase: Phase
    timestamp: float


@dataclass
class CycleState:
    """Mutable per-device state, owned by one detector."""

    phase: Phase = Phase.IDLE
    phase_entered_at: float | None = None
    cumulative_energy_ws: float = 0.0
    min_power_w: float | None = None
    max_power_w: float | None = None
    sample_count: int = 0
    polling_interval_ms: int = 5000
    cycle_started_at: float | None = None
    confirmed_at: float | None = None
    last_sample_at: float | None = None
    power_sum: float = field(default=0.0, repr=False)

    @property
    def avg_power_w(self) -> float | None:
        if not self.sample_count:
            return None
        return self.power_sum / self.sample_count

    def reset_accumulators(self) -> None:
        self.cumulative_energy_ws = 0.0
        self.min_power_w = None
        self.max_power_w = None
        self.sample_count = 0
        self.power_sum = 0.0
        self.cycle_started_at = None
        self.confirmed_at = None

    def record(self, watt: float, dt: float) -> None:
        """Add one sample to the accumulators."""
        self.cumulative_energy_ws += watt * dt
        self.min_power_w = watt if self.min_power_w is None else min(self.min_power_w, watt)
        self.max_power_w = watt if self.max_power_w is None else max(self.max_power_w, watt)
        self.power_sum += watt
        self.sample_count += 1

    def to_dict(self) -> dict:
        """Convert to dictionary representation."""
        return {
            "phase": self.phase.value,
            "phase_entered_at": self.phase_entered_at,
            "cumulative_energy_ws": self.cumulative_energy_ws,
            "min_power_w": self.min_power_w,
            "max_power_w": self.max_power_w,
            "avg_power_w": self.avg_power_w,
            "sample_count": self.sample_count,
            "polling_interval_ms": self.polling_interval_ms,
        }


class CycleDetector:
    """Hysteresis state machine for one device."""

    def __init__(
        self,
        config: DeviceConfig,
        polling: PollingConfig | None = None,
        on_transition: Callable[[Transition], None] | None = None,
    ):
        """Initialize detector.

        Args:
            config: Device thresholds and dwell times.
            polling: Fast/slow poll intervals.
            on_transition: Called for every phase change, including reverts.

        Raises:
            ConfigurationError: If the thresholds are inconsistent.
        """
        config.validate()
        self.config = config
        self.polling = polling or PollingConfig()
        self.on_transition = on_transition
        self.state = CycleState(polling_interval_ms=self._interval_ms(Phase.IDLE))
        self.missed_samples = 0

    @property
    def phase(self) -> Phase:
        return self.state.phase

    @property
    def polling_interval(self) -> float:
        """Seconds until the next sample should be taken."""
        return self.state.polling_interval_ms / 1000.0

    def meets_start(self, watt: float) -> bool:
        if self.config.start_inclusive:
            return watt >= self.config.start_value
        return watt > self.config.start_value

    def meets_end(self, watt: float) -> bool:
        if self.config.end_inclusive:
            return watt <= self.config.end_value
        return watt < self.config.end_value

    def feed(self, sample: PowerSample) -> list[CycleEvent]:
        """Advance the state machine with one sample.

        At most one phase transition happens per sample. A sample without a
        power value leaves phase, dwell timers and accumulators untouched.

        Args:
            sample: The new reading.

        Returns:
            Events confirmed by this sample (empty most of the time).
        """
        if sample.is_missing:
            self.missed_samples += 1
            logger.debug(
                "%s: missed sample at %.1f, staying %s",
                self.config.display_name,
                sample.timestamp,
                self.state.phase.value,
            )
            return []

        state = self.state
        watt, now = sample.watt, sample.timestamp

        dt = 0.0
        if state.last_sample_at is not None:
            dt = now - state.last_sample_at
            if dt < 0:
                logger.warning("%s: sample out of order (%.1fs back)", self.config.display_name, -dt)
                dt = 0.0
        if state.last_sample_at is None or now > state.last_sample_at:
            state.last_sample_at = now

        events: list[CycleEvent] = []

        if state.phase is Phase.IDLE:
            if self.meets_start(watt):
                state.reset_accumulators()
                state.cycle_started_at = now
                state.record(watt, 0.0)
                self._enter(Phase.START_PENDING, now)
                logger.debug(
                    "%s: detected start value, waiting for %ss",
                    self.config.display_name,
                    self.config.start_duration,
                )

        elif state.phase is Phase.START_PENDING:
            if not self.meets_start(watt):
                state.reset_accumulators()
                self._enter(Phase.IDLE, now)
            else:
                state.record(watt, dt)
                if now - state.phase_entered_at >= self.config.start_duration:
                    # The dwell window belongs to the cycle; its energy is kept
                    state.confirmed_at = now
                    self._enter(Phase.ACTIVE, now)
                    events.append(CycleEvent(EventKind.STARTED, self.config.device_id, now, self.stats()))

        elif state.phase is Phase.ACTIVE:
            state.record(watt, dt)
            if self.meets_end(watt):
                self._enter(Phase.END_PENDING, now)
                logger.debug(
                    "%s: detected end value, waiting for %ss",
                    self.config.display_name,
                    self.config.end_duration,
                )

        elif state.phase is Phase.END_PENDING:
            state.record(watt, dt)
            if not self.meets_end(watt):
                self._enter(Phase.ACTIVE, now)
            elif now - state.phase_entered_at >= self.config.end_duration:
                stats = self.stats(ended_at=now)
                self._enter(Phase.IDLE, now)
                state.reset_accumulators()
                events.append(CycleEvent(EventKind.FINISHED, self.config.device_id, now, stats))

        return events

    def stats(self, ended_at: float | None = None) -> CycleStats:
        """Snapshot of the current cycle's statistics."""
        state = self.state
        started = state.cycle_started_at if state.cycle_started_at is not None else 0.0
        return CycleStats(
            device_id=self.config.device_id,
            started_at=started,
            confirmed_at=state.confirmed_at if state.confirmed_at is not None else started,
            ended_at=ended_at,
            energy_ws=state.cumulative_energy_ws,
            min_power=state.min_power_w,
            max_power=state.max_power_w,
            avg_power=state.avg_power_w,
            sample_count=state.sample_count,
        )

    def reset(self) -> None:
        """Drop any cycle in progress and return to IDLE."""
        self.state = CycleState(polling_interval_ms=self._interval_ms(Phase.IDLE))

    def _enter(self, phase: Phase, now: float) -> None:
        previous = self.state.phase
        self.state.phase = phase
        self.state.phase_entered_at = now
        self.state.polling_interval_ms = self._interval_ms(phase)
        logger.debug("%s: %s -> %s", self.config.display_name, previous.value, phase.value)
        if self.on_transition:
            self.on_transition(Transition(previous, phase, now))

    def _interval_ms(self, phase: Phase) -> int:
        interval = self.polling.slow_interval if phase is Phase.IDLE else self.polling.fast_interval
        return int(round(interval * 1000))
