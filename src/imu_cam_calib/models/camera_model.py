"""
Camera model for IMU-camera calibration.

Pinhole projection with optional two-coefficient radial distortion. The
intrinsics are treated as known; only the trajectory and the extrinsic
transform are estimated.
"""

import numpy as np
import torch
from dataclasses import dataclass
from typing import Dict, Tuple
import logging

logger = logging.getLogger(__name__)


@dataclass
class PinholeCamera:
    """Camera intrinsic parameters."""
    fx: float
    fy: float
    cx: float
    cy: float
    width: int
    height: int
    k1: float = 0.0
    k2: float = 0.0

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ValueError("Image dimensions must be positive")
        if self.fx <= 0 or self.fy <= 0:
            raise ValueError("Focal lengths must be positive")

    @classmethod
    def from_matrix(cls, K: np.ndarray, width: int, height: int,
                    k1: float = 0.0, k2: float = 0.0) -> 'PinholeCamera':
        """Create from intrinsic matrix."""
        return cls(
            fx=float(K[0, 0]),
            fy=float(K[1, 1]),
            cx=float(K[0, 2]),
            cy=float(K[1, 2]),
            width=int(width),
            height=int(height),
            k1=k1,
            k2=k2
        )

    def to_matrix(self) -> np.ndarray:
        """Convert to 3x3 intrinsic matrix."""
        return np.array([[self.fx, 0, self.cx],
                         [0, self.fy, self.cy],
                         [0, 0, 1]], dtype=np.float64)

    @property
    def image_height(self) -> int:
        return self.height

    def project(self, points_cam: torch.Tensor,
                min_depth: float = 1e-6) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Project 3D camera-frame points to pixel coordinates.

        Args:
            points_cam: (..., 3) tensor of points in camera coordinates
            min_depth: Points closer than this are flagged invalid

        Returns:
            points_2d: (..., 2) tensor of pixel coordinates
            valid_mask: (...,) boolean tensor indicating points in front of the camera
        """
        z = points_cam[..., 2]
        valid_mask = z > min_depth
        z_safe = torch.where(valid_mask, z, torch.ones_like(z))

        x = points_cam[..., 0] / z_safe
        y = points_cam[..., 1] / z_safe

        if self.k1 != 0.0 or self.k2 != 0.0:
            r2 = x * x + y * y
            radial = 1.0 + self.k1 * r2 + self.k2 * r2 * r2
            x = x * radial
            y = y * radial

        u = self.fx * x + self.cx
        v = self.fy * y + self.cy
        return torch.stack([u, v], dim=-1), valid_mask

    def project_numpy(self, points_cam: np.ndarray) -> np.ndarray:
        """Numpy convenience wrapper around `project` for (N, 3) points."""
        pixels, _ = self.project(torch.from_numpy(np.asarray(points_cam, dtype=np.float64)))
        return pixels.numpy()

    def to_dict(self) -> Dict:
        return {
            'fx': self.fx, 'fy': self.fy,
            'cx': self.cx, 'cy': self.cy,
            'width': self.width, 'height': self.height,
            'k1': self.k1, 'k2': self.k2,
        }

    @classmethod
    def from_dict(cls, d: Dict) -> 'PinholeCamera':
        return cls(
            fx=d['fx'], fy=d['fy'],
            cx=d['cx'], cy=d['cy'],
            width=d['width'], height=d['height'],
            k1=d.get('k1', 0.0), k2=d.get('k2', 0.0)
        )
