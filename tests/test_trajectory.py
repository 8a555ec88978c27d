"""Tests for the spline trajectory."""

import numpy as np
import pytest

from imu_cam_calib.core.measurement_store import MeasurementStore
from imu_cam_calib.core.trajectory import SplineTrajectory, num_knots
from imu_cam_calib.models.data_models import CornerObservation, TimeCamId
from imu_cam_calib.models.telemetry import ImuStream
from imu_cam_calib.utils.config_manager import SplineWeightingConfig
from imu_cam_calib.utils.geometry_utils import Pose

NS = 1_000_000_000


def make_trajectory(scene, with_corners=False) -> SplineTrajectory:
    store = MeasurementStore()
    store.ingest(scene.reconstruction, 0.0, 1.0, scene.T_i_c)

    trajectory = SplineTrajectory(scene.spline_config)
    trajectory.init_times(0, NS)
    trajectory.set_T_i_c(scene.T_i_c)
    trajectory.set_camera(scene.camera)
    trajectory.init_knots(store.imu_poses)
    if with_corners:
        for key in store.sorted_frames():
            trajectory.add_rs_corners_measurement(store.corners[key], scene.reconstruction, key.timestamp_ns)
    return trajectory


@pytest.fixture
def trajectory(scene):
    return make_trajectory(scene)


def test_knot_count_formula():
    dt = NS // 10
    assert num_knots(0, NS, dt, 4) == 14
    assert num_knots(0, NS + 1, dt, 4) == 15
    assert num_knots(0, 0, dt, 4) == 4


def test_knot_count_is_monotonic_in_duration():
    dt = 33_333_333
    counts = [num_knots(0, duration, dt, 4) for duration in range(0, 2 * NS, 7_777_777)]
    assert counts == sorted(counts)
    assert all(count >= 4 for count in counts)


def test_knot_count_decreases_with_spacing():
    counts = [num_knots(0, NS, dt, 4) for dt in (NS // 40, NS // 20, NS // 10, NS // 5, NS // 2, NS)]
    assert counts == [44, 24, 14, 9, 6, 5]
    assert all(a > b for a, b in zip(counts, counts[1:]))


def test_init_times_allocates_identity_knots():
    trajectory = SplineTrajectory(SplineWeightingConfig(dt_so3=0.1, dt_r3=0.05))
    trajectory.init_times(2 * NS, 3 * NS)

    so3, r3 = trajectory.get_knots()
    assert so3.shape == (14, 3, 3)
    assert r3.shape == (24, 3)
    np.testing.assert_array_equal(so3[5], np.eye(3))
    np.testing.assert_array_equal(r3, 0.0)
    assert trajectory.t0_s == 2.0 and trajectory.t_end_s == 3.0


def test_init_times_rejects_reversed_window():
    trajectory = SplineTrajectory(SplineWeightingConfig())
    with pytest.raises(ValueError):
        trajectory.init_times(NS, 0)


def test_knots_reproduce_initial_poses(scene, trajectory):
    for t in (0.0, 0.2, 0.45, 0.95):
        assert trajectory.pose_at(t).allclose(scene.T_w_i(t), atol=1e-9)


def test_pose_at_is_idempotent(trajectory):
    first = trajectory.pose_at(0.37)
    second = trajectory.pose_at(0.37)
    np.testing.assert_array_equal(first.rotation, second.rotation)
    np.testing.assert_array_equal(first.translation, second.translation)


def test_pose_at_rejects_times_outside_window(trajectory):
    with pytest.raises(ValueError):
        trajectory.pose_at(-0.001)
    with pytest.raises(ValueError):
        trajectory.pose_at(1.0)
    assert isinstance(trajectory.pose_at(1.0, inclusive_end=True), Pose)
    with pytest.raises(ValueError):
        trajectory.pose_at(1.001, inclusive_end=True)


def test_pose_at_requires_knots():
    with pytest.raises(ValueError):
        SplineTrajectory(SplineWeightingConfig()).pose_at(0.0)


def test_measurements_outside_window_are_rejected(scene, trajectory):
    observation = CornerObservation(corners=[[1.0, 2.0]], track_ids=[0])

    assert not trajectory.add_rs_corners_measurement(observation, scene.reconstruction, NS)
    assert not trajectory.add_accel_measurement(np.zeros(3), -1, 1.0)
    assert not trajectory.add_gyro_measurement(np.zeros(3), NS + 5, 1.0)
    assert trajectory.add_gyro_measurement(np.zeros(3), 0, 1.0)
    assert trajectory.num_residual_blocks() == {'reprojection': 0, 'accelerometer': 0, 'gyroscope': 1}


def test_line_delay_is_clamped_non_negative():
    trajectory = SplineTrajectory(SplineWeightingConfig())
    trajectory.set_line_delay(-1e-5)
    assert trajectory.line_delay_s == 0.0
    trajectory.set_line_delay(2e-5)
    assert trajectory.line_delay_s == pytest.approx(2e-5)


def test_reprojection_is_exact_for_true_trajectory(scene):
    trajectory = make_trajectory(scene, with_corners=True)

    assert trajectory.num_residual_blocks()['reprojection'] == 20
    assert trajectory.mean_reprojection() < 1e-6
    assert trajectory.mean_rs_reprojection() < 1e-6


def test_rolling_shutter_reprojection_is_exact_at_true_line_delay(rs_scene):
    trajectory = make_trajectory(rs_scene, with_corners=True)

    trajectory.set_line_delay(rs_scene.line_delay)

    assert trajectory.mean_rs_reprojection() < 1e-6
    # The unshifted frame time misses the row-dependent motion
    assert trajectory.mean_reprojection() > 0.1


def test_line_delay_only_affects_rolling_shutter_error(rs_scene):
    trajectory = make_trajectory(rs_scene, with_corners=True)
    gs_error = trajectory.mean_reprojection()

    trajectory.set_line_delay(rs_scene.line_delay)

    assert trajectory.mean_reprojection() == pytest.approx(gs_error)
    assert trajectory.mean_rs_reprojection() < gs_error


def test_every_stored_sample_gets_a_block(trajectory):
    stream = ImuStream(timestamp_ms=[0.0, 500.0, 1000.0], measurement=np.zeros((3, 3)))
    store = MeasurementStore()
    for offset in (-3e-10, 0.0, 4e-10):
        store.ingest_inertial(stream, np.zeros(3), offset, 0.0, 1.0, "gyroscope")

    samples = store.sorted_inertial("gyroscope")
    assert len(samples) == 6
    for t, value in samples:
        assert trajectory.add_gyro_measurement(value, TimeCamId.from_seconds(t).timestamp_ns, 1.0)


def test_load_knots_checks_shape(trajectory):
    so3, r3 = trajectory.get_knots()
    with pytest.raises(ValueError):
        trajectory.load_knots(so3[:-1], r3)

    r3 = r3 + 1.0
    trajectory.load_knots(so3, r3)
    np.testing.assert_array_equal(trajectory.get_knots()[1], r3)


def test_get_knots_returns_copies(trajectory):
    so3, r3 = trajectory.get_knots()
    r3[:] = 100.0
    assert not np.allclose(trajectory.get_knots()[1], 100.0)


def test_solve_without_blocks_is_a_no_op(trajectory, optimization_config):
    before = trajectory.get_knots()

    summary = trajectory.solve(10, optimization_config)

    assert summary.iterations == 0
    np.testing.assert_array_equal(trajectory.get_knots()[0], before[0])


def test_reset_drops_everything(trajectory):
    trajectory.add_gyro_measurement(np.zeros(3), 0, 1.0)
    trajectory.reset()

    assert not trajectory.is_initialized
    assert trajectory.num_residual_blocks() == {'reprojection': 0, 'accelerometer': 0, 'gyroscope': 0}
    assert trajectory.T_i_c.allclose(Pose.identity())
