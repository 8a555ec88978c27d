"""
Gravity initialization from a single accelerometer sample.

At a camera frame the IMU orientation in the world frame is known from the
initial pose, so rotating a nearby (assumed quasi-static) accelerometer
reading into the world frame gives a first estimate of gravity.
"""

import logging
import numpy as np
from typing import Dict, Optional, Sequence

from ..models.data_models import TimeCamId
from ..models.telemetry import ImuStream
from ..utils.geometry_utils import Pose

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_S = 1.0 / 30.0


class GravityInitializer:
    """
    Seeds the gravity vector of the trajectory world frame.

    The first accelerometer sample (in stream order) whose raw timestamp lies
    within `tolerance_s` of a camera timestamp with a registered IMU-frame pose
    wins; camera timestamps are visited in the given order. Later candidates,
    even closer ones, are ignored.
    """

    def __init__(self, tolerance_s: float = DEFAULT_TOLERANCE_S):
        if tolerance_s <= 0:
            raise ValueError("tolerance_s must be positive")
        self.tolerance_s = tolerance_s
        self.matched_camera_timestamp: Optional[float] = None
        self.matched_accel_timestamp: Optional[float] = None

    def initialize(self,
                   cam_timestamps_s: Sequence[float],
                   imu_poses: Dict[TimeCamId, Pose],
                   accelerometer: ImuStream,
                   accl_bias: np.ndarray,
                   cam_id: int = 0) -> Optional[np.ndarray]:
        """
        Estimate gravity in the world frame.

        Args:
            cam_timestamps_s: Camera timestamps [s], ascending
            imu_poses: IMU-to-world poses keyed by TimeCamId
            accelerometer: Raw accelerometer stream
            accl_bias: Additive accelerometer bias correction
            cam_id: Camera index of the pose keys

        Returns:
            Gravity vector, or None if no sample matched any camera timestamp
        """
        accl_bias = np.asarray(accl_bias, dtype=np.float64).reshape(3)

        for cam_t in cam_timestamps_s:
            T_w_i = imu_poses.get(TimeCamId.from_seconds(cam_t, cam_id))
            if T_w_i is None:
                continue

            # Raw timestamps, without the IMU-to-camera time offset
            for accl_t, measurement in accelerometer:
                if abs(accl_t - cam_t) < self.tolerance_s:
                    gravity = T_w_i.rotation @ (measurement + accl_bias)
                    self.matched_camera_timestamp = cam_t
                    self.matched_accel_timestamp = accl_t
                    logger.info(f"Gravity initialized with {np.round(gravity, 4)} "
                                f"at accelerometer timestamp {accl_t:.4f}s "
                                f"(camera timestamp {cam_t:.4f}s)")
                    return gravity

        logger.warning(f"No accelerometer sample within {self.tolerance_s:.4f}s "
                       f"of {len(cam_timestamps_s)} camera timestamps")
        return None
