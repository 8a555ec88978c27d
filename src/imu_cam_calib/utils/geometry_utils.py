"""
Geometric utilities for continuous-time IMU-camera calibration.

This module provides the Lie group operations used by the spline trajectory
(torch, differentiable) and a small SE(3) pose type for bookkeeping on the
numpy side.
"""

import torch
import numpy as np
from dataclasses import dataclass, field
from typing import Sequence
from scipy.spatial.transform import Rotation
import logging

logger = logging.getLogger(__name__)

# Below this squared angle the series expansions are used
_SMALL_ANGLE_SQ = 1e-12


def skew(v: torch.Tensor) -> torch.Tensor:
    """
    Build skew-symmetric matrices from 3-vectors.

    Args:
        v: (..., 3) tensor

    Returns:
        K: (..., 3, 3) tensor with K @ x == cross(v, x)
    """
    zeros = torch.zeros_like(v[..., 0])
    x, y, z = v[..., 0], v[..., 1], v[..., 2]
    return torch.stack([
        torch.stack([zeros, -z, y], dim=-1),
        torch.stack([z, zeros, -x], dim=-1),
        torch.stack([-y, x, zeros], dim=-1),
    ], dim=-2)


def so3_exp(phi: torch.Tensor) -> torch.Tensor:
    """
    Exponential map from rotation vectors to rotation matrices (Rodrigues).

    Args:
        phi: (..., 3) tensor of rotation vectors

    Returns:
        R: (..., 3, 3) tensor of rotation matrices
    """
    theta_sq = (phi * phi).sum(dim=-1, keepdim=True)
    small = theta_sq < _SMALL_ANGLE_SQ

    # Keep both torch.where branches finite so gradients stay defined at zero
    theta_sq_safe = torch.where(small, torch.ones_like(theta_sq), theta_sq)
    theta = torch.sqrt(theta_sq_safe)

    a = torch.where(small, 1.0 - theta_sq / 6.0, torch.sin(theta) / theta)
    b = torch.where(small, 0.5 - theta_sq / 24.0, (1.0 - torch.cos(theta)) / theta_sq_safe)

    K = skew(phi)
    eye = torch.eye(3, dtype=phi.dtype, device=phi.device).expand(K.shape)
    return eye + a.unsqueeze(-1) * K + b.unsqueeze(-1) * (K @ K)


def so3_log(R: torch.Tensor) -> torch.Tensor:
    """
    Logarithm map from rotation matrices to rotation vectors.

    Rotations close to pi are not supported; spline increments and
    extrinsic corrections stay far away from that regime.

    Args:
        R: (..., 3, 3) tensor of rotation matrices

    Returns:
        phi: (..., 3) tensor of rotation vectors
    """
    trace = R[..., 0, 0] + R[..., 1, 1] + R[..., 2, 2]
    cos_theta = ((trace - 1.0) * 0.5).clamp(-1.0, 1.0).unsqueeze(-1)

    # sin(theta) * axis
    w = 0.5 * torch.stack([
        R[..., 2, 1] - R[..., 1, 2],
        R[..., 0, 2] - R[..., 2, 0],
        R[..., 1, 0] - R[..., 0, 1],
    ], dim=-1)

    sin_sq = (w * w).sum(dim=-1, keepdim=True)
    small = (sin_sq < _SMALL_ANGLE_SQ) & (cos_theta > 0)
    sin_theta = torch.sqrt(torch.where(small, torch.ones_like(sin_sq), sin_sq))
    theta = torch.atan2(sin_theta, cos_theta)

    factor = torch.where(small, 1.0 + sin_sq / 6.0, theta / sin_theta)
    return factor * w


def apply_robust_loss(errors: torch.Tensor,
                      sigma: float = 1.0,
                      loss_type: str = 'huber') -> torch.Tensor:
    """
    Apply robust loss function to errors.

    Args:
        errors: (...,) tensor of error values (typically L2 norms)
        sigma: Threshold parameter for robust loss
        loss_type: Type of robust loss ('huber' or 'cauchy')

    Returns:
        robust_errors: Same shape as input with robust loss applied
    """
    if loss_type == 'huber':
        # Quadratic for small errors, linear for large
        robust_errors = torch.where(
            errors < sigma,
            0.5 * errors**2,
            sigma * errors - 0.5 * sigma**2
        )
    elif loss_type == 'cauchy':
        robust_errors = 0.5 * sigma**2 * torch.log(1 + (errors / sigma)**2)
    else:
        raise ValueError(f"Unknown loss type: {loss_type}")

    return robust_errors


@dataclass
class Pose:
    """
    Rigid transform T_a_b mapping points from frame b into frame a.

    `rotation` is a 3x3 rotation matrix, `translation` the origin of b
    expressed in a.
    """
    rotation: np.ndarray = field(default_factory=lambda: np.eye(3))
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self):
        self.rotation = np.asarray(self.rotation, dtype=np.float64).reshape(3, 3)
        self.translation = np.asarray(self.translation, dtype=np.float64).reshape(3)

    @classmethod
    def identity(cls) -> 'Pose':
        return cls()

    @classmethod
    def from_rotvec(cls, rotvec: Sequence[float], translation: Sequence[float]) -> 'Pose':
        """Create from an axis-angle rotation vector and a translation."""
        return cls(
            rotation=Rotation.from_rotvec(np.asarray(rotvec, dtype=np.float64)).as_matrix(),
            translation=translation
        )

    def rotvec(self) -> np.ndarray:
        return Rotation.from_matrix(self.rotation).as_rotvec()

    def inverse(self) -> 'Pose':
        R_inv = self.rotation.T
        return Pose(rotation=R_inv, translation=-R_inv @ self.translation)

    def transform(self, points: np.ndarray) -> np.ndarray:
        """Map (N, 3) points from frame b into frame a."""
        return np.asarray(points) @ self.rotation.T + self.translation

    def __mul__(self, other: 'Pose') -> 'Pose':
        return Pose(
            rotation=self.rotation @ other.rotation,
            translation=self.rotation @ other.translation + self.translation
        )

    def allclose(self, other: 'Pose', atol: float = 1e-9) -> bool:
        return (np.allclose(self.rotation, other.rotation, atol=atol) and
                np.allclose(self.translation, other.translation, atol=atol))


def interpolate_pose(times: np.ndarray, poses: Sequence[Pose], t: float) -> Pose:
    """
    Interpolate (or extrapolate) a pose at time t from time-sorted samples.

    Rotation follows the geodesic between the two bracketing samples,
    translation is linear. Outside the sampled range the first/last pair is
    extended, so constant-velocity motion is reproduced exactly.

    Args:
        times: (N,) ascending sample times in seconds
        poses: N poses matching `times`
        t: Query time in seconds

    Returns:
        Interpolated pose
    """
    if len(poses) == 0:
        raise ValueError("Cannot interpolate without pose samples")
    if len(poses) == 1:
        return Pose(poses[0].rotation.copy(), poses[0].translation.copy())

    times = np.asarray(times, dtype=np.float64)
    idx = int(np.searchsorted(times, t, side='right')) - 1
    idx = min(max(idx, 0), len(times) - 2)

    t_a, t_b = times[idx], times[idx + 1]
    pose_a, pose_b = poses[idx], poses[idx + 1]
    s = (t - t_a) / (t_b - t_a)

    delta = Rotation.from_matrix(pose_a.rotation.T @ pose_b.rotation).as_rotvec()
    rotation = pose_a.rotation @ Rotation.from_rotvec(s * delta).as_matrix()
    translation = (1.0 - s) * pose_a.translation + s * pose_b.translation
    return Pose(rotation=rotation, translation=translation)
