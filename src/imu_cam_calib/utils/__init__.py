"""Utility modules for IMU-camera calibration."""

from .config_manager import (
    ConfigManager,
    CalibratorConfig,
    SplineWeightingConfig,
    CalibrationConfig,
    OptimizationConfig,
    OutputConfig,
)
from .geometry_utils import (
    Pose,
    apply_robust_loss,
    interpolate_pose,
    skew,
    so3_exp,
    so3_log,
)

__all__ = [
    "ConfigManager",
    "CalibratorConfig",
    "SplineWeightingConfig",
    "CalibrationConfig",
    "OptimizationConfig",
    "OutputConfig",
    "Pose",
    "apply_robust_loss",
    "interpolate_pose",
    "skew",
    "so3_exp",
    "so3_log",
]
