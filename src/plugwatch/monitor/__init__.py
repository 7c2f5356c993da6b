"""Power monitoring - cycle detection, tracking loops, notifications and cycle logs."""

from .calibration import ThresholdCalibrator, ThresholdSuggestion, calculate_interval, track_power
from .cycle import CycleDetector, CycleEvent, CycleState, CycleStats, EventKind, Phase, Transition
from .export import CycleRecorder, export_json
from .notify import LoggingChannel, MessageGateway, NotificationGateway
from .tracker import DeviceTracker, Monitor, build_reader, start_tracking

__all__ = [
    "Phase",
    "EventKind",
    "CycleState",
    "CycleStats",
    "CycleEvent",
    "Transition",
    "CycleDetector",
    "DeviceTracker",
    "Monitor",
    "build_reader",
    "start_tracking",
    "NotificationGateway",
    "MessageGateway",
    "LoggingChannel",
    "CycleRecorder",
    "export_json",
    "ThresholdCalibrator",
    "ThresholdSuggestion",
    "calculate_interval",
    "track_power",
]
