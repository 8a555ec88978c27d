"""
Continuous-time spline trajectory of the IMU frame.

The trajectory models T_w_i(t) with a cumulative B-spline on SO(3) for the
orientation and a uniform B-spline on R^3 for the position. Reprojection,
accelerometer and gyroscope residual blocks are collected against it and
jointly minimized together with gravity, the camera-to-IMU extrinsic, the
rolling-shutter line delay and optionally the inertial biases.

Rotation knots live on the manifold: every solve optimizes a fresh tangent
increment per knot and folds it back in afterwards (R <- R * Exp(delta)).
The line delay is solved the same way, as an increment in units of the
nominal row readout time.
"""

import logging
import time
import numpy as np
import torch
import torch.nn as nn
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
from tqdm import tqdm

from ..models.camera_model import PinholeCamera
from ..models.data_models import CornerObservation, SolverSummary, TimeCamId
from ..models.reconstruction import Reconstruction
from ..utils.config_manager import OptimizationConfig, SplineWeightingConfig
from ..utils.geometry_utils import Pose, apply_robust_loss, interpolate_pose, so3_exp
from .spline import evaluate_r3, evaluate_so3, greville_offset

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReprojectionBlock:
    """Corners of one frame against the pattern points they observe."""
    timestamp_ns: int
    corners: np.ndarray  # (N, 2) observed pixels
    points_3d: np.ndarray  # (N, 3) world points


@dataclass(frozen=True)
class InertialBlock:
    """One bias-corrected accelerometer or gyroscope sample."""
    timestamp_ns: int
    measurement: np.ndarray  # (3,)
    weight: float


def num_knots(t0_ns: int, t_end_ns: int, dt_ns: int, order: int) -> int:
    """Knots needed to cover [t0, t_end] with spacing dt_ns."""
    duration = max(t_end_ns - t0_ns, 0)
    return -(-duration // dt_ns) + order


class SplineTrajectory(nn.Module):
    """
    Spline trajectory with its calibration parameters and residual blocks.

    Parameters:
        r3_knots: (K_r3, 3) position control points
        gravity: gravity in the world frame
        t_i_c: camera origin in the IMU frame
        line_delay: rolling-shutter time between consecutive image rows [s]
        accl_bias, gyro_bias: additive inertial bias corrections

    Buffers:
        so3_knots: (K_so3, 3, 3) rotation control points
        R_i_c: camera-to-IMU rotation
    """

    def __init__(self, spline_config: SplineWeightingConfig, device: str = 'cpu'):
        super().__init__()
        self.spline_config = spline_config
        self.order = spline_config.spline_order
        self.device = torch.device(device)
        self.dtype = torch.float64
        self.dt_so3_ns = int(round(spline_config.dt_so3 * 1e9))
        self.dt_r3_ns = int(round(spline_config.dt_r3 * 1e9))
        self.reset()

    def reset(self):
        """Drop knots, parameters and residual blocks."""
        self.t0_ns = 0
        self.t_end_ns = 0
        self.num_knots_so3 = 0
        self.num_knots_r3 = 0

        self.register_buffer('so3_knots', self._tensor(np.zeros((0, 3, 3))))
        self.register_buffer('R_i_c', self._tensor(np.eye(3)))
        self.r3_knots = nn.Parameter(self._tensor(np.zeros((0, 3))))
        self.gravity = nn.Parameter(self._tensor(np.zeros(3)))
        self.t_i_c = nn.Parameter(self._tensor(np.zeros(3)))
        self.line_delay = nn.Parameter(self._tensor(0.0))
        self.accl_bias = nn.Parameter(self._tensor(np.zeros(3)))
        self.gyro_bias = nn.Parameter(self._tensor(np.zeros(3)))

        self.calibrate_line_delay = False
        self.calibrate_extrinsics = True
        self.camera: Optional[PinholeCamera] = None

        self.reprojection_blocks: List[ReprojectionBlock] = []
        self.accel_blocks: List[InertialBlock] = []
        self.gyro_blocks: List[InertialBlock] = []
        self._batches: Optional[Dict[str, Dict[str, torch.Tensor]]] = None

    def _tensor(self, value) -> torch.Tensor:
        return torch.as_tensor(np.asarray(value, dtype=np.float64), dtype=self.dtype, device=self.device).clone()

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def init_times(self, t0_ns: int, t_end_ns: int):
        """
        Allocate identity rotation knots and zero position knots for [t0, t_end].

        The knot count grows monotonically with the duration and always
        exceeds the spline order, so a single-timestamp window is valid.
        """
        if t_end_ns < t0_ns:
            raise ValueError(f"t_end ({t_end_ns}ns) precedes t0 ({t0_ns}ns)")

        self.t0_ns = int(t0_ns)
        self.t_end_ns = int(t_end_ns)
        self.num_knots_so3 = num_knots(self.t0_ns, self.t_end_ns, self.dt_so3_ns, self.order)
        self.num_knots_r3 = num_knots(self.t0_ns, self.t_end_ns, self.dt_r3_ns, self.order)

        self.so3_knots = self._tensor(np.tile(np.eye(3), (self.num_knots_so3, 1, 1)))
        self.r3_knots = nn.Parameter(self._tensor(np.zeros((self.num_knots_r3, 3))))
        self._batches = None

        logger.info(f"Spline over [{self.t0_s:.6f}, {self.t_end_s:.6f}]s with "
                    f"{self.num_knots_so3} rotation and {self.num_knots_r3} position knots")

    def init_knots(self, imu_poses: Dict[TimeCamId, Pose]):
        """
        Seed the knots from the initial IMU poses.

        Knot j is placed on the pose interpolated at its Greville abscissa
        t0 + (j - offset) * dt, which makes a constant-velocity trajectory
        reproduce the samples exactly.
        """
        if not imu_poses:
            logger.warning("No initial poses - keeping identity knots")
            return

        keys = sorted(imu_poses)
        times = np.array([(key.timestamp_ns - self.t0_ns) * 1e-9 for key in keys])
        poses = [imu_poses[key] for key in keys]
        offset = greville_offset(self.order)

        rotations = np.stack([
            interpolate_pose(times, poses, (j - offset) * self.dt_so3).rotation
            for j in range(self.num_knots_so3)
        ])
        positions = np.stack([
            interpolate_pose(times, poses, (j - offset) * self.dt_r3).translation
            for j in range(self.num_knots_r3)
        ])

        self.so3_knots = self._tensor(rotations)
        with torch.no_grad():
            self.r3_knots.copy_(self._tensor(positions))
        logger.info(f"Initialized knots from {len(poses)} poses")

    def load_knots(self, so3_knots: np.ndarray, r3_knots: np.ndarray):
        """Replace the knots with copies of existing ones of matching size."""
        so3_knots = np.asarray(so3_knots, dtype=np.float64)
        r3_knots = np.asarray(r3_knots, dtype=np.float64)
        if so3_knots.shape != (self.num_knots_so3, 3, 3):
            raise ValueError(f"Expected {self.num_knots_so3} rotation knots, got shape {so3_knots.shape}")
        if r3_knots.shape != (self.num_knots_r3, 3):
            raise ValueError(f"Expected {self.num_knots_r3} position knots, got shape {r3_knots.shape}")

        self.so3_knots = self._tensor(so3_knots)
        with torch.no_grad():
            self.r3_knots.copy_(self._tensor(r3_knots))

    def get_knots(self) -> Tuple[np.ndarray, np.ndarray]:
        """Copies of the rotation (K, 3, 3) and position (K, 3) knots."""
        return (self.so3_knots.detach().cpu().numpy().copy(),
                self.r3_knots.detach().cpu().numpy().copy())

    def set_camera(self, camera: PinholeCamera):
        self.camera = camera
        self._batches = None

    def set_T_i_c(self, T_i_c: Pose):
        self.R_i_c = self._tensor(T_i_c.rotation)
        with torch.no_grad():
            self.t_i_c.copy_(self._tensor(T_i_c.translation))

    def set_gravity(self, gravity: np.ndarray):
        with torch.no_grad():
            self.gravity.copy_(self._tensor(np.asarray(gravity).reshape(3)))

    def set_biases(self, accl_bias: np.ndarray, gyro_bias: np.ndarray):
        with torch.no_grad():
            self.accl_bias.copy_(self._tensor(np.asarray(accl_bias).reshape(3)))
            self.gyro_bias.copy_(self._tensor(np.asarray(gyro_bias).reshape(3)))

    def set_line_delay(self, line_delay_s: float):
        """Set the line delay, clamped to be non-negative."""
        with torch.no_grad():
            self.line_delay.fill_(max(float(line_delay_s), 0.0))

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return self.num_knots_so3 > 0

    @property
    def t0_s(self) -> float:
        return self.t0_ns * 1e-9

    @property
    def t_end_s(self) -> float:
        return self.t_end_ns * 1e-9

    @property
    def dt_so3(self) -> float:
        return self.dt_so3_ns * 1e-9

    @property
    def dt_r3(self) -> float:
        return self.dt_r3_ns * 1e-9

    @property
    def T_i_c(self) -> Pose:
        return Pose(rotation=self.R_i_c.detach().cpu().numpy(),
                    translation=self.t_i_c.detach().cpu().numpy())

    @property
    def gravity_vector(self) -> np.ndarray:
        return self.gravity.detach().cpu().numpy().copy()

    @property
    def line_delay_s(self) -> float:
        return float(self.line_delay.detach().clamp(min=0.0).item())

    @property
    def line_delay_scale(self) -> float:
        """Nominal line delay, one frame period spread over the image rows [s]."""
        if self.camera is None:
            return 1.0
        return 1.0 / (self.spline_config.cam_fps * self.camera.height)

    @property
    def biases(self) -> Tuple[np.ndarray, np.ndarray]:
        """(accelerometer bias, gyroscope bias)"""
        return (self.accl_bias.detach().cpu().numpy().copy(),
                self.gyro_bias.detach().cpu().numpy().copy())

    def num_residual_blocks(self) -> Dict[str, int]:
        return {
            'reprojection': len(self.reprojection_blocks),
            'accelerometer': len(self.accel_blocks),
            'gyroscope': len(self.gyro_blocks),
        }

    def contains_ns(self, timestamp_ns: int, inclusive_end: bool = False) -> bool:
        if not self.is_initialized or timestamp_ns < self.t0_ns:
            return False
        return timestamp_ns < self.t_end_ns or (inclusive_end and timestamp_ns == self.t_end_ns)

    # ------------------------------------------------------------------
    # Residual blocks
    # ------------------------------------------------------------------

    def add_rs_corners_measurement(self,
                                   observation: CornerObservation,
                                   reconstruction: Reconstruction,
                                   timestamp_ns: int) -> bool:
        """
        Add a rolling-shutter reprojection block for one frame.

        Each corner is compared against the projection of its track's 3D
        point at the frame time shifted by row * line_delay.

        Returns:
            False if the frame lies outside the spline window or has no corners
        """
        if not self.contains_ns(timestamp_ns) or len(observation) == 0:
            return False

        points = np.stack([reconstruction.track(int(track_id)) for track_id in observation.track_ids])
        self.reprojection_blocks.append(ReprojectionBlock(
            timestamp_ns=int(timestamp_ns),
            corners=observation.corners,
            points_3d=points.astype(np.float64)
        ))
        self._batches = None
        return True

    def add_accel_measurement(self, measurement: np.ndarray, timestamp_ns: int, weight: float) -> bool:
        return self._add_inertial(self.accel_blocks, measurement, timestamp_ns, weight)

    def add_gyro_measurement(self, measurement: np.ndarray, timestamp_ns: int, weight: float) -> bool:
        return self._add_inertial(self.gyro_blocks, measurement, timestamp_ns, weight)

    def _add_inertial(self, blocks: List[InertialBlock], measurement, timestamp_ns: int, weight: float) -> bool:
        if not self.contains_ns(timestamp_ns):
            return False
        blocks.append(InertialBlock(
            timestamp_ns=int(timestamp_ns),
            measurement=np.asarray(measurement, dtype=np.float64).reshape(3),
            weight=float(weight)
        ))
        self._batches = None
        return True

    def clear_measurements(self):
        self.reprojection_blocks = []
        self.accel_blocks = []
        self.gyro_blocks = []
        self._batches = None

    @property
    def batches(self) -> Dict[str, Dict[str, torch.Tensor]]:
        """Residual blocks stacked into tensors, rebuilt after every change."""
        if self._batches is None:
            self._batches = {
                'reprojection': self._batch_reprojection(),
                'accelerometer': self._batch_inertial(self.accel_blocks),
                'gyroscope': self._batch_inertial(self.gyro_blocks),
            }
        return self._batches

    def _batch_reprojection(self) -> Dict[str, torch.Tensor]:
        blocks = self.reprojection_blocks
        if not blocks:
            return {
                'times': self._tensor(np.zeros(0)),
                'rows': self._tensor(np.zeros(0)),
                'observed': self._tensor(np.zeros((0, 2))),
                'points': self._tensor(np.zeros((0, 3))),
            }
        times = np.concatenate([
            np.full(len(b.corners), (b.timestamp_ns - self.t0_ns) * 1e-9) for b in blocks
        ])
        observed = np.concatenate([b.corners for b in blocks])
        return {
            'times': self._tensor(times),
            'rows': self._tensor(observed[:, 1]),
            'observed': self._tensor(observed),
            'points': self._tensor(np.concatenate([b.points_3d for b in blocks])),
        }

    def _batch_inertial(self, blocks: List[InertialBlock]) -> Dict[str, torch.Tensor]:
        if not blocks:
            return {
                'times': self._tensor(np.zeros(0)),
                'values': self._tensor(np.zeros((0, 3))),
                'sqrt_weights': self._tensor(np.zeros((0, 1))),
            }
        return {
            'times': self._tensor([(b.timestamp_ns - self.t0_ns) * 1e-9 for b in blocks]),
            'values': self._tensor(np.stack([b.measurement for b in blocks])),
            'sqrt_weights': self._tensor(np.sqrt([[b.weight] for b in blocks])),
        }

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _rotation_knots(self, so3_delta: Optional[torch.Tensor]) -> torch.Tensor:
        if so3_delta is None:
            return self.so3_knots
        return self.so3_knots @ so3_exp(so3_delta)

    def _extrinsic_rotation(self, ric_delta: Optional[torch.Tensor]) -> torch.Tensor:
        if ric_delta is None:
            return self.R_i_c
        return self.R_i_c @ so3_exp(ric_delta)

    def _line_delay(self, ld_delta: Optional[torch.Tensor]) -> torch.Tensor:
        if ld_delta is None:
            return self.line_delay.clamp(min=0.0)
        return (self.line_delay + self.line_delay_scale * ld_delta).clamp(min=0.0)

    def _imu_pose(self, s: torch.Tensor,
                  so3_delta: Optional[torch.Tensor] = None) -> Tuple[torch.Tensor, torch.Tensor]:
        R, _ = evaluate_so3(self._rotation_knots(so3_delta), s, self.dt_so3, self.order)
        p = evaluate_r3(self.r3_knots, s, self.dt_r3, self.order)
        return R, p

    def _reprojection_residuals(self,
                                rolling_shutter: bool,
                                so3_delta: Optional[torch.Tensor] = None,
                                ric_delta: Optional[torch.Tensor] = None,
                                ld_delta: Optional[torch.Tensor] = None) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Pixel residuals (P, 2) and the mask of points in front of the camera.
        """
        batch = self.batches['reprojection']
        s = batch['times']
        if rolling_shutter:
            s = s + batch['rows'] * self._line_delay(ld_delta)

        R_w_i, p_w_i = self._imu_pose(s, so3_delta)
        R_w_c = R_w_i @ self._extrinsic_rotation(ric_delta)
        p_w_c = p_w_i + torch.einsum('pij,j->pi', R_w_i, self.t_i_c)
        points_cam = torch.einsum('pji,pj->pi', R_w_c, batch['points'] - p_w_c)

        pixels, valid = self.camera.project(points_cam)
        return pixels - batch['observed'], valid

    def _accel_residuals(self, so3_delta: Optional[torch.Tensor] = None) -> torch.Tensor:
        batch = self.batches['accelerometer']
        R_w_i, _ = evaluate_so3(self._rotation_knots(so3_delta), batch['times'], self.dt_so3, self.order)
        accel_w = evaluate_r3(self.r3_knots, batch['times'], self.dt_r3, self.order, derivative=2)
        predicted = torch.einsum('pji,pj->pi', R_w_i, accel_w + self.gravity)
        return batch['sqrt_weights'] * (predicted - (batch['values'] + self.accl_bias))

    def _gyro_residuals(self, so3_delta: Optional[torch.Tensor] = None) -> torch.Tensor:
        batch = self.batches['gyroscope']
        _, omega = evaluate_so3(self._rotation_knots(so3_delta), batch['times'], self.dt_so3, self.order)
        return batch['sqrt_weights'] * (omega - (batch['values'] + self.gyro_bias))

    def _compute_loss(self,
                      config: OptimizationConfig,
                      so3_delta: Optional[torch.Tensor] = None,
                      ric_delta: Optional[torch.Tensor] = None,
                      ld_delta: Optional[torch.Tensor] = None) -> Tuple[torch.Tensor, Dict[str, float]]:
        """
        Total cost 0.5 * sum(r^2) over all residual blocks.

        Returns:
            loss: Scalar tensor
            loss_info: Per-type cost contributions
        """
        loss = self._tensor(0.0)
        loss_info = {'reprojection': 0.0, 'accelerometer': 0.0, 'gyroscope': 0.0}

        if self.reprojection_blocks:
            residuals, valid = self._reprojection_residuals(True, so3_delta, ric_delta, ld_delta)
            residuals = residuals[valid]
            if config.use_robust_loss:
                cost = apply_robust_loss(residuals.norm(dim=-1), config.robust_loss_sigma, 'huber').sum()
            else:
                cost = 0.5 * (residuals ** 2).sum()
            loss = loss + cost
            loss_info['reprojection'] = cost.item()

        if self.accel_blocks:
            cost = 0.5 * (self._accel_residuals(so3_delta) ** 2).sum()
            loss = loss + cost
            loss_info['accelerometer'] = cost.item()

        if self.gyro_blocks:
            cost = 0.5 * (self._gyro_residuals(so3_delta) ** 2).sum()
            loss = loss + cost
            loss_info['gyroscope'] = cost.item()

        return loss, loss_info

    def pose_at_ns(self, timestamp_ns: int, inclusive_end: bool = False) -> Pose:
        """
        Evaluate T_w_i at a timestamp inside [t0, t_end).

        Args:
            timestamp_ns: Query time [ns]
            inclusive_end: Also accept t_end itself

        Raises:
            ValueError: If the trajectory is empty or the time is out of range
        """
        if not self.is_initialized:
            raise ValueError("Trajectory has no knots")
        if not self.contains_ns(timestamp_ns, inclusive_end):
            raise ValueError(f"Timestamp {timestamp_ns}ns outside spline range "
                             f"[{self.t0_ns}, {self.t_end_ns})ns")

        s = self._tensor([(timestamp_ns - self.t0_ns) * 1e-9])
        with torch.no_grad():
            R, p = self._imu_pose(s)
        return Pose(rotation=R[0].cpu().numpy(), translation=p[0].cpu().numpy())

    def pose_at(self, timestamp_s: float, inclusive_end: bool = False) -> Pose:
        return self.pose_at_ns(TimeCamId.from_seconds(timestamp_s).timestamp_ns, inclusive_end)

    def mean_reprojection(self) -> float:
        """Mean corner reprojection error [px] at the frame timestamps."""
        return self._mean_reprojection(rolling_shutter=False)

    def mean_rs_reprojection(self) -> float:
        """Mean corner reprojection error [px] with row-dependent capture times."""
        return self._mean_reprojection(rolling_shutter=True)

    def _mean_reprojection(self, rolling_shutter: bool) -> float:
        if not self.reprojection_blocks:
            return 0.0
        with torch.no_grad():
            residuals, valid = self._reprojection_residuals(rolling_shutter)
            errors = residuals.norm(dim=-1)[valid]
        if errors.numel() == 0:
            return 0.0
        return errors.mean().item()

    # ------------------------------------------------------------------
    # Optimization
    # ------------------------------------------------------------------

    def solve(self,
              iterations: int,
              config: OptimizationConfig,
              estimate_biases: bool = False) -> SolverSummary:
        """
        Jointly optimize the knots and calibration parameters.

        Position knots and gravity are always free. Extrinsics, line delay
        and biases are free according to the calibration flags and
        `estimate_biases`.

        Args:
            iterations: Maximum number of solver iterations
            config: Solver configuration
            estimate_biases: Free the accelerometer and gyroscope biases

        Returns:
            Summary with initial and final cost
        """
        if not self.is_initialized:
            raise ValueError("Trajectory has no knots")
        if self.reprojection_blocks and self.camera is None:
            raise ValueError("A camera is required for reprojection residuals")

        blocks = self.num_residual_blocks()
        start_time = time.time()

        if sum(blocks.values()) == 0:
            logger.warning("No residual blocks - skipping optimization")
            return SolverSummary(solver=config.solver, initial_cost=0.0, final_cost=0.0,
                                 iterations=0, converged=True, num_residual_blocks=blocks)

        so3_delta = nn.Parameter(self._tensor(np.zeros((self.num_knots_so3, 3))))
        ric_delta = nn.Parameter(self._tensor(np.zeros(3))) if self.calibrate_extrinsics else None
        ld_delta = nn.Parameter(self._tensor(0.0)) if self.calibrate_line_delay else None
        params = self._free_parameters(so3_delta, ric_delta, ld_delta, estimate_biases)

        with torch.no_grad():
            initial_cost, _ = self._compute_loss(config, so3_delta, ric_delta, ld_delta)
        initial_cost = initial_cost.item()
        logger.info(f"Optimizing {sum(p.numel() for p in params)} parameters over "
                    f"{blocks['reprojection']} frames, {blocks['accelerometer']} accelerometer and "
                    f"{blocks['gyroscope']} gyroscope samples (initial cost {initial_cost:.6e})")

        if config.solver == 'lbfgs':
            num_iterations, converged, history = self._run_lbfgs(params, iterations, config, so3_delta, ric_delta, ld_delta)
        else:
            num_iterations, converged, history = self._run_adam(params, iterations, config, so3_delta, ric_delta, ld_delta)

        # Fold the increments back into the manifold and line delay values
        with torch.no_grad():
            self.so3_knots = self.so3_knots @ so3_exp(so3_delta)
            if ric_delta is not None:
                self.R_i_c = self.R_i_c @ so3_exp(ric_delta)
            if ld_delta is not None:
                self.line_delay.add_(self.line_delay_scale * ld_delta)
            self.line_delay.clamp_(min=0.0)
            final_cost, _ = self._compute_loss(config)

        for param in self.parameters():
            param.requires_grad_(True)

        summary = SolverSummary(
            solver=config.solver,
            initial_cost=initial_cost,
            final_cost=final_cost.item(),
            iterations=num_iterations,
            converged=converged,
            num_residual_blocks=blocks,
            history=history,
            elapsed_s=time.time() - start_time
        )
        logger.info(f"Optimization completed in {summary.elapsed_s:.1f} seconds: {summary.summary_string()}")
        return summary

    def _free_parameters(self,
                         so3_delta: nn.Parameter,
                         ric_delta: Optional[nn.Parameter],
                         ld_delta: Optional[nn.Parameter],
                         estimate_biases: bool) -> List[nn.Parameter]:
        """Set requires_grad per flag and return the free parameters."""
        self.t_i_c.requires_grad_(self.calibrate_extrinsics)
        self.line_delay.requires_grad_(False)
        self.accl_bias.requires_grad_(estimate_biases)
        self.gyro_bias.requires_grad_(estimate_biases)

        params = [so3_delta, self.r3_knots, self.gravity]
        if ric_delta is not None:
            params += [ric_delta, self.t_i_c]
        if ld_delta is not None:
            params.append(ld_delta)
        if estimate_biases:
            params += [self.accl_bias, self.gyro_bias]
        return params

    def _run_lbfgs(self, params, iterations, config, so3_delta, ric_delta, ld_delta):
        optimizer = torch.optim.LBFGS(
            params,
            lr=1.0,
            max_iter=iterations,
            history_size=config.history_size,
            tolerance_grad=config.gradient_tolerance,
            tolerance_change=config.convergence_threshold,
            line_search_fn='strong_wolfe'
        )
        history = {'losses': []}

        def closure():
            optimizer.zero_grad()
            loss, _ = self._compute_loss(config, so3_delta, ric_delta, ld_delta)
            loss.backward()
            history['losses'].append(loss.item())
            return loss

        optimizer.step(closure)
        num_iterations = int(optimizer.state[params[0]].get('n_iter', 0))
        return num_iterations, num_iterations < iterations, history

    def _run_adam(self, params, iterations, config, so3_delta, ric_delta, ld_delta):
        optimizer = torch.optim.Adam(params, lr=config.learning_rate)
        history = {'losses': [], 'iterations': []}
        prev_loss = float('inf')
        iteration = 0
        converged = False

        pbar = tqdm(range(iterations), desc="Trajectory optimization", disable=None)
        for iteration in pbar:
            loss, loss_info = self._compute_loss(config, so3_delta, ric_delta, ld_delta)

            optimizer.zero_grad()
            loss.backward()
            torch.nn.utils.clip_grad_norm_(params, config.gradient_clip)
            optimizer.step()

            pbar.set_postfix({'loss': f"{loss.item():.6e}"})

            if iteration % config.log_interval == 0:
                logger.info(
                    f"Iteration {iteration}: loss={loss.item():.6e}, "
                    f"reprojection={loss_info['reprojection']:.6e}, "
                    f"accelerometer={loss_info['accelerometer']:.6e}, "
                    f"gyroscope={loss_info['gyroscope']:.6e}"
                )
                history['losses'].append(loss.item())
                history['iterations'].append(iteration)

            if abs(prev_loss - loss.item()) < config.convergence_threshold:
                logger.info(f"Converged at iteration {iteration}")
                converged = True
                break

            prev_loss = loss.item()

        pbar.close()
        return iteration + 1, converged, history

    def __repr__(self) -> str:
        return (f"SplineTrajectory(order={self.order}, knots_so3={self.num_knots_so3}, "
                f"knots_r3={self.num_knots_r3}, t0={self.t0_s:.6f}s, t_end={self.t_end_s:.6f}s)")
