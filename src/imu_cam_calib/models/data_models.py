"""
Data models for continuous-time IMU-camera calibration.

This module provides structured data models to replace dictionaries
and ensure type safety throughout the pipeline.
"""

from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Optional
import numpy as np


class TimeCamId(NamedTuple):
    """Key of a single camera frame: nanosecond timestamp and camera index."""
    timestamp_ns: int
    cam_id: int = 0

    @classmethod
    def from_seconds(cls, timestamp_s: float, cam_id: int = 0) -> 'TimeCamId':
        return cls(int(round(timestamp_s * 1e9)), cam_id)

    @property
    def timestamp_s(self) -> float:
        return self.timestamp_ns * 1e-9


@dataclass(frozen=True)
class CornerObservation:
    """Detected pattern corners of one frame, paired 1:1 with track ids."""
    corners: np.ndarray  # (N, 2) pixel coordinates
    track_ids: np.ndarray  # (N,) ids into the reconstruction's tracks

    def __post_init__(self):
        corners = np.array(self.corners, dtype=np.float64).reshape(-1, 2)
        track_ids = np.array(self.track_ids, dtype=np.int64).reshape(-1)
        assert len(corners) == len(track_ids), \
            f"Corner/track length mismatch: {len(corners)} vs {len(track_ids)}"
        corners.setflags(write=False)
        track_ids.setflags(write=False)
        object.__setattr__(self, 'corners', corners)
        object.__setattr__(self, 'track_ids', track_ids)

    def __len__(self) -> int:
        return len(self.track_ids)


@dataclass
class SolverSummary:
    """Result of one solve of the trajectory."""
    solver: str
    initial_cost: float
    final_cost: float
    iterations: int
    converged: bool
    num_residual_blocks: Dict[str, int] = field(default_factory=dict)
    history: Dict[str, List[float]] = field(default_factory=dict)
    elapsed_s: float = 0.0

    def to_dict(self) -> Dict:
        return {
            'solver': self.solver,
            'initial_cost': self.initial_cost,
            'final_cost': self.final_cost,
            'iterations': self.iterations,
            'converged': self.converged,
            'num_residual_blocks': dict(self.num_residual_blocks),
            'history': self.history,
            'elapsed_s': self.elapsed_s,
        }

    def summary_string(self) -> str:
        return (f"{self.solver}: cost {self.initial_cost:.6e} -> {self.final_cost:.6e} "
                f"in {self.iterations} iterations (converged={self.converged})")


@dataclass
class ReprojectionError:
    """Mean reprojection errors with and without rolling-shutter time adjustment."""
    global_shutter: float
    rolling_shutter: float

    def as_list(self) -> List[float]:
        return [self.global_shutter, self.rolling_shutter]

    def summary_string(self) -> str:
        return (f"Mean reprojection error - global shutter: {self.global_shutter:.4f}px, "
                f"rolling shutter: {self.rolling_shutter:.4f}px")


@dataclass
class CalibrationResult:
    """Final calibration parameters of a run."""
    R_i_c: np.ndarray  # 3x3 camera-to-IMU rotation
    t_i_c: np.ndarray  # camera origin in the IMU frame [m]
    line_delay_s: float
    gravity: np.ndarray  # trajectory world frame [m/s^2]
    accl_bias: np.ndarray
    gyro_bias: np.ndarray
    t0_s: float
    t_end_s: float
    num_knots_so3: int
    num_knots_r3: int
    reprojection_errors: List[ReprojectionError] = field(default_factory=list)
    solver_summaries: List[SolverSummary] = field(default_factory=list)

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization."""
        return {
            'R_i_c': self.R_i_c.tolist(),
            't_i_c': self.t_i_c.tolist(),
            'line_delay_s': float(self.line_delay_s),
            'gravity': self.gravity.tolist(),
            'accl_bias': self.accl_bias.tolist(),
            'gyro_bias': self.gyro_bias.tolist(),
            't0_s': float(self.t0_s),
            't_end_s': float(self.t_end_s),
            'num_knots_so3': self.num_knots_so3,
            'num_knots_r3': self.num_knots_r3,
            'reprojection_errors': [e.as_list() for e in self.reprojection_errors],
            'solver_summaries': [s.to_dict() for s in self.solver_summaries],
        }


@dataclass
class PipelineState:
    """State of the pipeline execution."""
    current_step: int = 0
    completed_steps: List[str] = field(default_factory=list)
    result: Optional[CalibrationResult] = None

    def is_step_completed(self, step_name: str) -> bool:
        """Check if a step has been completed."""
        return step_name in self.completed_steps

    def mark_step_completed(self, step_name: str):
        """Mark a step as completed."""
        if step_name not in self.completed_steps:
            self.completed_steps.append(step_name)
            self.current_step += 1
