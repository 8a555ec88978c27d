"""
Telemetry containers for IMU-camera calibration.

Accelerometer and gyroscope samples arrive as two independent streams with
millisecond timestamps, as exported by action-camera telemetry extractors.
"""

import json
import logging
import numpy as np
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, Tuple, Union

logger = logging.getLogger(__name__)


@dataclass
class ImuStream:
    """Raw samples of a single inertial sensor."""
    timestamp_ms: np.ndarray = field(default_factory=lambda: np.zeros(0))  # (N,)
    measurement: np.ndarray = field(default_factory=lambda: np.zeros((0, 3)))  # (N, 3)

    def __post_init__(self):
        self.timestamp_ms = np.array(self.timestamp_ms, dtype=np.float64).reshape(-1)
        self.measurement = np.array(self.measurement, dtype=np.float64).reshape(-1, 3)
        if len(self.timestamp_ms) != len(self.measurement):
            raise ValueError(
                f"Timestamp/measurement length mismatch: "
                f"{len(self.timestamp_ms)} vs {len(self.measurement)}"
            )
        # Raw samples are immutable
        self.timestamp_ms.setflags(write=False)
        self.measurement.setflags(write=False)

    def __len__(self) -> int:
        return len(self.timestamp_ms)

    def __iter__(self) -> Iterator[Tuple[float, np.ndarray]]:
        """Yield (timestamp in seconds, measurement) pairs in stream order."""
        for t_ms, value in zip(self.timestamp_ms, self.measurement):
            yield float(t_ms) * 1e-3, value

    @property
    def is_monotonic(self) -> bool:
        return bool(np.all(np.diff(self.timestamp_ms) >= 0))

    def to_dict(self) -> Dict:
        return {
            'timestamp_ms': self.timestamp_ms.tolist(),
            'measurement': self.measurement.tolist(),
        }

    @classmethod
    def from_dict(cls, d: Dict) -> 'ImuStream':
        return cls(timestamp_ms=d.get('timestamp_ms', []),
                   measurement=d.get('measurement', np.zeros((0, 3))))


@dataclass
class CameraTelemetryData:
    """Accelerometer and gyroscope streams recorded alongside a video."""
    accelerometer: ImuStream = field(default_factory=ImuStream)
    gyroscope: ImuStream = field(default_factory=ImuStream)

    def to_dict(self) -> Dict:
        return {
            'accelerometer': self.accelerometer.to_dict(),
            'gyroscope': self.gyroscope.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: Dict) -> 'CameraTelemetryData':
        return cls(
            accelerometer=ImuStream.from_dict(d.get('accelerometer', {})),
            gyroscope=ImuStream.from_dict(d.get('gyroscope', {}))
        )

    @classmethod
    def load_json(cls, path: Union[str, Path]) -> 'CameraTelemetryData':
        with open(path, 'r') as f:
            telemetry = cls.from_dict(json.load(f))

        for name, stream in (('accelerometer', telemetry.accelerometer),
                             ('gyroscope', telemetry.gyroscope)):
            if not stream.is_monotonic:
                logger.warning(f"{name} timestamps in {path} are not monotonic")
        logger.info(f"Loaded telemetry from {path}: {len(telemetry.accelerometer)} accelerometer, "
                    f"{len(telemetry.gyroscope)} gyroscope samples")
        return telemetry

    def save_json(self, path: Union[str, Path]):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f)
