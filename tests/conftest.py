"""Shared fixtures: a noiseless synthetic camera-IMU capture."""

from dataclasses import dataclass
from typing import List

import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from imu_cam_calib.models.camera_model import PinholeCamera
from imu_cam_calib.models.reconstruction import Reconstruction
from imu_cam_calib.models.telemetry import CameraTelemetryData, ImuStream
from imu_cam_calib.utils.config_manager import OptimizationConfig, SplineWeightingConfig
from imu_cam_calib.utils.geometry_utils import Pose

CAMERA_FPS = 20.0
IMU_RATE_HZ = 200.0
DURATION_S = 1.0
RS_LINE_DELAY_S = 6e-5


@dataclass
class SyntheticScene:
    """
    Rig rotating about a fixed axis at constant rate while translating at
    constant velocity in front of a planar pattern.

    The camera-to-IMU transform has no translation, so the IMU position is
    linear in time as well and a uniform spline represents the motion exactly.
    """
    camera: PinholeCamera
    T_i_c: Pose
    omega: np.ndarray  # world-frame angular velocity [rad/s]
    position0: np.ndarray
    velocity: np.ndarray
    gravity: np.ndarray
    points: np.ndarray
    cam_timestamps: List[float]
    reconstruction: Reconstruction
    telemetry: CameraTelemetryData
    spline_config: SplineWeightingConfig
    line_delay: float = 0.0  # rolling-shutter row delay the corners were rendered with [s]

    def T_w_c(self, t: float) -> Pose:
        return Pose(rotation=Rotation.from_rotvec(self.omega * t).as_matrix(),
                    translation=self.position0 + self.velocity * t)

    def T_w_i(self, t: float) -> Pose:
        return self.T_w_c(t) * self.T_i_c.inverse()


def project(camera: PinholeCamera, T_w_c: Pose, points: np.ndarray) -> np.ndarray:
    return camera.project_numpy(T_w_c.inverse().transform(points))


def project_rolling_shutter(scene: SyntheticScene, t: float, points: np.ndarray) -> np.ndarray:
    """
    Pixels captured at t + row * line_delay, found by fixed-point iteration
    on the row of each point.
    """
    pixels = project(scene.camera, scene.T_w_c(t), points)
    if scene.line_delay == 0.0:
        return pixels
    for _ in range(10):
        pixels = np.stack([project(scene.camera, scene.T_w_c(t + row * scene.line_delay), point[None])[0]
                           for row, point in zip(pixels[:, 1], points)])
    return pixels


def build_scene(omega=(0.05, -0.03, 0.1),
                velocity=(0.1, -0.05, 0.05),
                R_i_c_rotvec=(0.1, -0.2, 0.05),
                line_delay=0.0) -> SyntheticScene:
    camera = PinholeCamera(fx=500.0, fy=500.0, cx=320.0, cy=240.0, width=640, height=480)
    T_i_c = Pose.from_rotvec(R_i_c_rotvec, [0.0, 0.0, 0.0])
    omega = np.asarray(omega, dtype=np.float64)
    position0 = np.array([-0.05, 0.02, -2.0])
    velocity = np.asarray(velocity, dtype=np.float64)
    gravity = np.array([0.0, 0.0, 9.81])

    xs, ys = np.meshgrid(np.linspace(-0.4, 0.4, 5), np.linspace(-0.3, 0.3, 4))
    points = np.stack([xs.ravel(), ys.ravel(), np.zeros(xs.size)], axis=-1)

    num_frames = int(round(DURATION_S * CAMERA_FPS)) + 1
    cam_timestamps = [k / CAMERA_FPS for k in range(num_frames)]

    scene = SyntheticScene(
        camera=camera, T_i_c=T_i_c, omega=omega, position0=position0,
        velocity=velocity, gravity=gravity, points=points,
        cam_timestamps=cam_timestamps, reconstruction=Reconstruction(),
        telemetry=CameraTelemetryData(),
        spline_config=SplineWeightingConfig(dt_so3=0.1, dt_r3=0.1, cam_fps=CAMERA_FPS),
        line_delay=line_delay
    )

    recon = scene.reconstruction
    track_ids = [recon.add_track(p) for p in points]
    for t in cam_timestamps:
        view_id = recon.add_view(f"frame_{t:.3f}", timestamp=t, intrinsics=camera)
        view = recon.view(view_id)
        T_w_c = scene.T_w_c(t)
        view.camera.set_from_camera_to_world(T_w_c)
        for track_id, pixel in zip(track_ids, project_rolling_shutter(scene, t, points)):
            view.add_feature(track_id, pixel)

    num_samples = int(round(DURATION_S * IMU_RATE_HZ)) + 1
    timestamp_ms = np.array([k * 1000.0 / IMU_RATE_HZ for k in range(num_samples)])
    accel = np.stack([scene.T_w_i(t_ms * 1e-3).rotation.T @ gravity for t_ms in timestamp_ms])
    gyro = np.tile(T_i_c.rotation @ omega, (num_samples, 1))
    scene.telemetry = CameraTelemetryData(
        accelerometer=ImuStream(timestamp_ms=timestamp_ms, measurement=accel),
        gyroscope=ImuStream(timestamp_ms=timestamp_ms, measurement=gyro)
    )
    return scene


@pytest.fixture
def scene() -> SyntheticScene:
    return build_scene()


@pytest.fixture
def rs_scene() -> SyntheticScene:
    return build_scene(line_delay=RS_LINE_DELAY_S)


@pytest.fixture
def optimization_config() -> OptimizationConfig:
    return OptimizationConfig(solver="lbfgs", iterations=20)
