"""
Continuous-time IMU-camera calibration.

This module implements:
- Windowed storage of corner observations and inertial samples
- Cumulative B-spline trajectories on SO(3) x R^3
- Gravity initialization from a quasi-static accelerometer sample
- Joint estimation of extrinsics, rolling-shutter line delay, gravity and biases
"""

from .core.imu_camera_calibrator import CalibrationState, ImuCameraCalibrator
from .core.trajectory import SplineTrajectory
from .exceptions import CalibrationError, GravityNotInitializedError, PreconditionError
from .pipeline import CalibrationPipeline

__all__ = [
    'CalibrationState',
    'ImuCameraCalibrator',
    'SplineTrajectory',
    'CalibrationError',
    'GravityNotInitializedError',
    'PreconditionError',
    'CalibrationPipeline',
]
