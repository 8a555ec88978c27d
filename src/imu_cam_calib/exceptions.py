"""
Exception hierarchy for IMU-camera calibration.

Precondition failures are raised eagerly, before the calibrator mutates any
state, so callers can catch them and retry with corrected inputs.

Usage:
    try:
        calibrator.optimize(iterations=50)
    except PreconditionError as e:
        logger.error(f"Calibration step refused: {e}")
"""

from typing import Optional


class CalibrationError(Exception):
    """Base class for all calibration errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class PreconditionError(CalibrationError):
    """
    Raised when an operation is invoked on state that cannot support it.

    Common causes:
    - No camera timestamps in the reconstruction
    - Calling a pipeline step out of order
    - Optimizing before gravity has been initialized
    """


class GravityNotInitializedError(PreconditionError):
    """Raised when no accelerometer sample matches any camera timestamp."""

    def __init__(self, tolerance_s: float, num_camera_timestamps: int):
        super().__init__(
            f"Gravity could not be initialized: no accelerometer sample within "
            f"{tolerance_s:.4f}s of any of {num_camera_timestamps} camera timestamps",
            details={
                'tolerance_s': tolerance_s,
                'num_camera_timestamps': num_camera_timestamps,
            }
        )
