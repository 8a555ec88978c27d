"""Core algorithm implementations for continuous-time IMU-camera calibration."""

from .gravity_initializer import GravityInitializer
from .imu_camera_calibrator import CalibrationState, ImuCameraCalibrator
from .measurement_store import MeasurementStore
from .trajectory import SplineTrajectory

__all__ = [
    "CalibrationState",
    "GravityInitializer",
    "ImuCameraCalibrator",
    "MeasurementStore",
    "SplineTrajectory",
]
