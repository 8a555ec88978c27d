"""Data models and containers for IMU-camera calibration."""

from .camera_model import PinholeCamera
from .data_models import (
    CalibrationResult,
    CornerObservation,
    PipelineState,
    ReprojectionError,
    SolverSummary,
    TimeCamId,
)
from .reconstruction import Reconstruction, View, ViewCamera
from .telemetry import CameraTelemetryData, ImuStream

__all__ = [
    # Camera model
    "PinholeCamera",
    # Data models
    "CalibrationResult",
    "CornerObservation",
    "PipelineState",
    "ReprojectionError",
    "SolverSummary",
    "TimeCamId",
    # Containers
    "Reconstruction",
    "View",
    "ViewCamera",
    "CameraTelemetryData",
    "ImuStream",
]
