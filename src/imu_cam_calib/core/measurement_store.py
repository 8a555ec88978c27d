"""
Time-indexed measurement store for IMU-camera calibration.

Holds the windowed corner observations and initial poses of every accepted
camera frame, keyed by TimeCamId, together with the bias and time-offset
corrected inertial samples keyed by their corrected timestamp.
"""

import logging
import numpy as np
from typing import Dict, List, Tuple

from ..models.data_models import CornerObservation, TimeCamId
from ..models.reconstruction import Reconstruction
from ..models.telemetry import ImuStream
from ..utils.geometry_utils import Pose

logger = logging.getLogger(__name__)

INERTIAL_SENSORS = ("accelerometer", "gyroscope")


def in_window(timestamp_s: float, t0_s: float, t_end_s: float) -> bool:
    """
    Half-open window test: t0 is accepted, t_end is not.

    Compared on the nanosecond timestamps the spline uses, so a sample the
    store accepts always gets a residual block.
    """
    timestamp_ns = TimeCamId.from_seconds(timestamp_s).timestamp_ns
    return TimeCamId.from_seconds(t0_s).timestamp_ns <= timestamp_ns < TimeCamId.from_seconds(t_end_s).timestamp_ns


class MeasurementStore:
    """Per-run storage of windowed camera and inertial measurements."""

    def __init__(self):
        self.corners: Dict[TimeCamId, CornerObservation] = {}
        self.camera_poses: Dict[TimeCamId, Pose] = {}  # T_w_c
        self.imu_poses: Dict[TimeCamId, Pose] = {}  # T_w_i
        self.accelerometer: Dict[float, np.ndarray] = {}
        self.gyroscope: Dict[float, np.ndarray] = {}

    def ingest(self,
               reconstruction: Reconstruction,
               t0_s: float,
               t_end_s: float,
               T_i_c: Pose,
               cam_id: int = 0) -> int:
        """
        Store corners and initial poses of every view inside [t0, t_end).

        Args:
            reconstruction: Views with timestamps, poses and track observations
            t0_s: Window start [s], inclusive
            t_end_s: Window end [s], exclusive
            T_i_c: Current camera-to-IMU estimate
            cam_id: Camera index used in the TimeCamId keys

        Returns:
            Number of accepted views
        """
        accepted = 0
        for view_id in reconstruction.view_ids():
            view = reconstruction.view(view_id)
            if not in_window(view.timestamp, t0_s, t_end_s):
                continue

            key = TimeCamId.from_seconds(view.timestamp, cam_id)
            track_ids = view.track_ids()
            corners = [view.get_feature(track_id) for track_id in track_ids]
            self.corners[key] = CornerObservation(
                corners=np.asarray(corners, dtype=np.float64).reshape(-1, 2),
                track_ids=np.asarray(track_ids, dtype=np.int64)
            )
            self.camera_poses[key] = view.camera.camera_to_world()
            accepted += 1

        self.update_extrinsic(T_i_c)
        logger.info(f"Accepted {accepted}/{reconstruction.num_views} views in "
                    f"[{t0_s:.6f}, {t_end_s:.6f})")
        return accepted

    def update_extrinsic(self, T_i_c: Pose):
        """Rebuild the IMU-frame poses T_w_i = T_w_c * T_i_c^-1."""
        T_c_i = T_i_c.inverse()
        self.imu_poses = {key: T_w_c * T_c_i for key, T_w_c in self.camera_poses.items()}

    def ingest_inertial(self,
                        stream: ImuStream,
                        bias: np.ndarray,
                        time_offset_s: float,
                        t0_s: float,
                        t_end_s: float,
                        sensor: str) -> int:
        """
        Correct and store the samples of one inertial stream.

        The corrected timestamp is the raw timestamp plus `time_offset_s`, the
        corrected value the raw value plus `bias`. Samples outside the window
        are dropped; a repeated corrected timestamp keeps the last sample.

        Returns:
            Number of accepted samples
        """
        if sensor not in INERTIAL_SENSORS:
            raise ValueError(f"Unknown inertial sensor: {sensor}. Must be one of {INERTIAL_SENSORS}")
        target = getattr(self, sensor)
        bias = np.asarray(bias, dtype=np.float64).reshape(3)

        accepted = 0
        for raw_t, value in stream:
            t = raw_t + time_offset_s
            if not in_window(t, t0_s, t_end_s):
                continue
            target[t] = value + bias
            accepted += 1

        logger.info(f"Accepted {accepted}/{len(stream)} {sensor} samples")
        return accepted

    def sorted_frames(self) -> List[TimeCamId]:
        return sorted(self.corners)

    def sorted_inertial(self, sensor: str) -> List[Tuple[float, np.ndarray]]:
        samples = getattr(self, sensor)
        return [(t, samples[t]) for t in sorted(samples)]

    @property
    def is_empty(self) -> bool:
        return not (self.corners or self.accelerometer or self.gyroscope)

    def clear(self):
        """Drop every stored measurement."""
        self.corners = {}
        self.camera_poses = {}
        self.imu_poses = {}
        self.accelerometer = {}
        self.gyroscope = {}

    def __repr__(self) -> str:
        return (f"MeasurementStore(frames={len(self.corners)}, "
                f"accelerometer={len(self.accelerometer)}, gyroscope={len(self.gyroscope)})")
