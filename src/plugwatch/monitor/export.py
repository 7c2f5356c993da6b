"""Per-cycle JSON export."""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from ..smartplug.devices import PowerSample
from .cycle import CycleStats

logger = logging.getLogger(__name__)


def export_json(
    data: dict | list,
    output_file: str | Path,
    pretty: bool = True,
) -> str:
    """
    Export data to JSON file.

    Args:
        data: Data to export
        output_file: Output file path
        pretty: Pretty print JSON

    Returns:
        Path to output file
    """
    output_path = Path(output_file)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with open(output_path, "w") as f:
        json.dump(data, f, indent=2 if pretty else None, default=_json_serializer)

    return str(output_path)


def _json_serializer(obj: Any) -> Any:
    """Custom JSON serializer for special types."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Path):
        return str(obj)
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    raise TypeError(f"Object of type {type(obj)} is not JSON serializable")


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp).isoformat(timespec="seconds")


def cycle_record(stats: CycleStats, samples: list[PowerSample]) -> dict:
    """Build the persisted representation of a finished cycle."""
    ended_at = stats.ended_at if stats.ended_at is not None else stats.confirmed_at
    return {
        "deviceId": stats.device_id,
        "startTime": _iso(stats.started_at),
        "endTime": _iso(ended_at),
        "durationSec": round(stats.duration_sec, 1),
        "minPower": stats.min_power,
        "maxPower": stats.max_power,
        "avgPower": round(stats.avg_power, 2) if stats.avg_power is not None else None,
        "totalKWh": stats.total_kwh,
        "samples": [
            {"time": _iso(sample.timestamp), "watt": sample.watt}
            for sample in samples
            if sample.watt is not None
        ],
    }


class CycleRecorder:
    """Collects the samples of the running cycle and writes them when it ends."""

    def __init__(self, export_dir: str | Path):
        self.export_dir = Path(export_dir)
        self._samples: list[PowerSample] = []
        self.recording = False

    def begin(self, samples: list[PowerSample] | None = None) -> None:
        self._samples = list(samples or [])
        self.recording = True

    def add(self, sample: PowerSample) -> None:
        if self.recording:
            self._samples.append(sample)

    def discard(self) -> None:
        self._samples = []
        self.recording = False

    def finish(self, stats: CycleStats) -> str:
        """Write the cycle log and stop recording.

        Returns:
            Path of the written file.
        """
        record = cycle_record(stats, self._samples)
        stamp = datetime.fromtimestamp(stats.started_at).strftime("%Y%m%d-%H%M%S")
        path = export_json(record, self.export_dir / f"{stats.device_id}_{stamp}.json")
        logger.info("Cycle log written to %s", path)
        self.discard()
        return path
