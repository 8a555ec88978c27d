"""Tests for the calibration state machine and the end-to-end round trip."""

import numpy as np
import pytest

from imu_cam_calib.core.imu_camera_calibrator import CalibrationState, ImuCameraCalibrator
from imu_cam_calib.exceptions import CalibrationError, GravityNotInitializedError, PreconditionError
from imu_cam_calib.models.data_models import TimeCamId
from imu_cam_calib.models.reconstruction import Reconstruction
from imu_cam_calib.models.telemetry import CameraTelemetryData, ImuStream
from imu_cam_calib.utils.config_manager import OptimizationConfig
from imu_cam_calib.utils.geometry_utils import Pose


def make_calibrator(optimization_config, **kwargs) -> ImuCameraCalibrator:
    return ImuCameraCalibrator(optimization_config=optimization_config, **kwargs)


def init(calibrator, scene, T_i_c=None, accl_bias=np.zeros(3)):
    calibrator.init_spline(scene.reconstruction, T_i_c or scene.T_i_c, scene.spline_config,
                           0.0, np.zeros(3), accl_bias, scene.telemetry)


def run_to_gravity(calibrator, scene):
    init(calibrator, scene)
    calibrator.initialize_gravity(scene.telemetry, np.zeros(3))


def test_starts_empty(optimization_config):
    calibrator = make_calibrator(optimization_config)
    assert calibrator.state == CalibrationState.EMPTY
    assert calibrator.last_summary is None


def test_init_spline_requires_camera_timestamps(scene, optimization_config):
    calibrator = make_calibrator(optimization_config)

    with pytest.raises(PreconditionError):
        calibrator.init_spline(Reconstruction(), scene.T_i_c, scene.spline_config,
                               0.0, np.zeros(3), np.zeros(3), scene.telemetry)

    assert calibrator.state == CalibrationState.EMPTY
    assert calibrator.trajectory is None


def test_init_spline_twice_is_refused(scene, optimization_config):
    calibrator = make_calibrator(optimization_config)
    init(calibrator, scene)

    with pytest.raises(PreconditionError):
        init(calibrator, scene)


def test_init_spline_window_and_measurements(scene, optimization_config):
    calibrator = make_calibrator(optimization_config)
    init(calibrator, scene)

    assert calibrator.state == CalibrationState.INITIALIZED
    assert calibrator.t0_s == 0.0
    assert calibrator.t_end_s == 1.0
    assert calibrator.trajectory.num_knots_so3 == 14
    assert calibrator.trajectory.num_knots_r3 == 14
    # The frame at t_end and the IMU sample at t_end are excluded
    assert calibrator.trajectory.num_residual_blocks() == {
        'reprojection': 20, 'accelerometer': 200, 'gyroscope': 200
    }


def test_window_uses_sorted_timestamps(scene, optimization_config):
    recon = Reconstruction()
    for t in (0.7, 0.2, 0.9, 0.4):
        view_id = recon.add_view(str(t), timestamp=t, intrinsics=scene.camera)
        recon.view(view_id).camera.set_from_camera_to_world(scene.T_w_c(t))

    calibrator = make_calibrator(optimization_config)
    calibrator.init_spline(recon, scene.T_i_c, scene.spline_config, 0.0, np.zeros(3), np.zeros(3),
                           CameraTelemetryData())

    assert calibrator.cam_timestamps == [0.2, 0.4, 0.7, 0.9]
    assert calibrator.t0_s == 0.2
    assert calibrator.t_end_s == 0.9


def test_line_delay_initialization(scene, optimization_config):
    disabled = make_calibrator(optimization_config)
    init(disabled, scene)
    assert disabled.line_delay_s == 0.0

    enabled = make_calibrator(optimization_config, calibrate_cam_line_delay=True)
    init(enabled, scene)
    expected = (1.0 / scene.spline_config.cam_fps) * (1.0 / scene.camera.height)
    assert enabled.line_delay_s == pytest.approx(expected)


def test_optimize_recovers_line_delay(rs_scene, optimization_config):
    calibrator = make_calibrator(optimization_config, calibrate_cam_line_delay=True)
    run_to_gravity(calibrator, rs_scene)
    seed = calibrator.line_delay_s
    initial_rs_error = calibrator.trajectory.mean_rs_reprojection()

    gs_error, rs_error = calibrator.optimize(50)

    assert abs(calibrator.line_delay_s - rs_scene.line_delay) < 0.2 * abs(seed - rs_scene.line_delay)
    assert rs_error < 0.25 * initial_rs_error
    assert gs_error > rs_error


def test_disabled_line_delay_stays_zero_on_rolling_shutter_data(rs_scene, optimization_config):
    calibrator = make_calibrator(optimization_config)
    run_to_gravity(calibrator, rs_scene)

    gs_error, rs_error = calibrator.optimize(5)

    assert calibrator.line_delay_s == 0.0
    assert gs_error == pytest.approx(rs_error)


def test_steps_out_of_order_are_refused(scene, optimization_config):
    calibrator = make_calibrator(optimization_config)

    with pytest.raises(PreconditionError):
        calibrator.initialize_gravity(scene.telemetry, np.zeros(3))
    with pytest.raises(PreconditionError):
        calibrator.optimize(5)

    init(calibrator, scene)
    with pytest.raises(PreconditionError):
        calibrator.optimize(5)
    with pytest.raises(PreconditionError):
        calibrator.to_output_dataset(Reconstruction())
    assert calibrator.state == CalibrationState.INITIALIZED


def test_gravity_failure_keeps_state(scene, optimization_config):
    calibrator = make_calibrator(optimization_config)
    init(calibrator, scene)
    far_away = CameraTelemetryData(
        accelerometer=ImuStream(timestamp_ms=[60000.0], measurement=[[0.0, 0.0, 9.81]])
    )

    with pytest.raises(GravityNotInitializedError) as excinfo:
        calibrator.initialize_gravity(far_away, np.zeros(3))

    assert isinstance(excinfo.value, CalibrationError)
    assert excinfo.value.details['num_camera_timestamps'] == len(scene.cam_timestamps)
    assert calibrator.state == CalibrationState.INITIALIZED
    with pytest.raises(PreconditionError):
        calibrator.optimize(5)


def test_initialize_gravity(scene, optimization_config):
    calibrator = make_calibrator(optimization_config)
    init(calibrator, scene)

    gravity = calibrator.initialize_gravity(scene.telemetry, np.zeros(3))

    np.testing.assert_allclose(gravity, scene.gravity, atol=1e-9)
    np.testing.assert_allclose(calibrator.gravity, scene.gravity, atol=1e-9)
    assert calibrator.state == CalibrationState.GRAVITY_SET


def test_noiseless_round_trip(scene, optimization_config):
    calibrator = make_calibrator(optimization_config)
    run_to_gravity(calibrator, scene)

    gs_error, rs_error = calibrator.optimize(20)

    assert calibrator.state == CalibrationState.OPTIMIZED
    assert gs_error < 1e-6
    assert rs_error < 1e-6
    assert calibrator.line_delay_s == 0.0
    assert calibrator.T_i_c.allclose(scene.T_i_c, atol=1e-6)
    np.testing.assert_allclose(calibrator.gravity, scene.gravity, atol=1e-6)
    assert calibrator.last_summary.final_cost < 1e-10


def test_optimize_can_be_chained(scene, optimization_config):
    calibrator = make_calibrator(optimization_config)
    run_to_gravity(calibrator, scene)

    calibrator.optimize(5)
    calibrator.optimize(5, estimate_biases=True)

    assert calibrator.state == CalibrationState.OPTIMIZED
    assert len(calibrator.solver_summaries) == 2
    assert len(calibrator.reprojection_errors) == 2
    assert calibrator.last_summary is calibrator.solver_summaries[-1]


def test_optimize_reduces_cost_from_perturbed_extrinsic(scene, optimization_config):
    calibrator = make_calibrator(optimization_config)
    perturbed = Pose.from_rotvec(scene.T_i_c.rotvec() + np.array([0.03, -0.02, 0.02]), [0.0, 0.0, 0.0])
    init(calibrator, scene, T_i_c=perturbed)
    calibrator.initialize_gravity(scene.telemetry, np.zeros(3))

    calibrator.optimize(20)

    summary = calibrator.last_summary
    assert summary.initial_cost > 0.0
    assert summary.final_cost < summary.initial_cost


def test_fixed_extrinsics_and_biases_stay_constant(scene, optimization_config):
    calibrator = make_calibrator(optimization_config, calibrate_extrinsics=False)
    perturbed = Pose.from_rotvec(scene.T_i_c.rotvec() + np.array([0.03, 0.0, 0.0]), [0.01, 0.0, 0.0])
    accl_bias = np.array([0.1, -0.2, 0.05])
    init(calibrator, scene, T_i_c=perturbed, accl_bias=accl_bias)
    calibrator.initialize_gravity(scene.telemetry, accl_bias)

    calibrator.optimize(5, estimate_biases=False)

    np.testing.assert_array_equal(calibrator.T_i_c.rotation, perturbed.rotation)
    np.testing.assert_array_equal(calibrator.T_i_c.translation, perturbed.translation)
    np.testing.assert_array_equal(calibrator.biases['accelerometer'], accl_bias)
    np.testing.assert_array_equal(calibrator.biases['gyroscope'], np.zeros(3))


def test_adam_solver_runs(scene):
    config = OptimizationConfig(solver="adam", iterations=3, log_interval=1)
    calibrator = make_calibrator(config)
    run_to_gravity(calibrator, scene)

    errors = calibrator.optimize()

    assert len(errors) == 2
    assert 1 <= calibrator.last_summary.iterations <= 3
    assert np.isfinite(calibrator.last_summary.final_cost)


def test_export_writes_one_view_per_timestamp(scene, optimization_config):
    calibrator = make_calibrator(optimization_config)
    run_to_gravity(calibrator, scene)
    calibrator.optimize(20)

    output = Reconstruction()
    view_ids = calibrator.to_output_dataset(output)

    assert calibrator.state == CalibrationState.EXPORTED
    assert output.num_views == len(scene.cam_timestamps)
    for view_id, t in zip(view_ids, scene.cam_timestamps):
        view = output.view(view_id)
        assert view.name == str(TimeCamId.from_seconds(t).timestamp_ns)
        assert view.timestamp == pytest.approx(t)
        assert view.is_estimated
        assert view.camera.camera_to_world().allclose(scene.T_w_i(t), atol=1e-6)


def test_export_in_camera_frame(scene, optimization_config):
    calibrator = make_calibrator(optimization_config)
    run_to_gravity(calibrator, scene)
    calibrator.optimize(20)

    output = Reconstruction()
    calibrator.to_output_dataset(output, camera_frame=True)

    last = output.view(output.view_ids()[-1])
    assert last.camera.camera_to_world().allclose(scene.T_w_c(1.0), atol=1e-6)
    # Optimizing after export is allowed
    calibrator.optimize(2)
    assert calibrator.state == CalibrationState.OPTIMIZED


def test_clear_then_init_matches_fresh_instance(scene, optimization_config):
    reused = make_calibrator(optimization_config)
    run_to_gravity(reused, scene)
    reused.optimize(5)
    reused.clear()

    assert reused.state == CalibrationState.EMPTY
    assert reused.trajectory is None
    assert reused.store.is_empty

    fresh = make_calibrator(optimization_config)
    init(reused, scene)
    init(fresh, scene)

    assert reused.cam_timestamps == fresh.cam_timestamps
    assert reused.trajectory.num_residual_blocks() == fresh.trajectory.num_residual_blocks()
    for a, b in zip(reused.trajectory.get_knots(), fresh.trajectory.get_knots()):
        np.testing.assert_array_equal(a, b)
    assert reused.solver_summaries == []


def test_init_spline_from_spline(scene, optimization_config):
    source = make_calibrator(optimization_config)
    run_to_gravity(source, scene)
    source.optimize(20)

    calibrator = make_calibrator(optimization_config)
    calibrator.init_spline_from_spline(scene.reconstruction, source, 0.0, np.zeros(3), np.zeros(3),
                                       scene.telemetry)

    assert calibrator.state == CalibrationState.GRAVITY_SET
    for a, b in zip(calibrator.trajectory.get_knots(), source.trajectory.get_knots()):
        np.testing.assert_array_equal(a, b)
    np.testing.assert_allclose(calibrator.gravity, source.gravity)
    gs_error, rs_error = calibrator.optimize(5)
    assert gs_error < 1e-6 and rs_error < 1e-6


def test_init_spline_from_spline_rejects_timestamps_outside_source_window(scene, optimization_config):
    source = make_calibrator(optimization_config)
    run_to_gravity(source, scene)
    source.optimize(5)

    view_id = scene.reconstruction.add_view("late", timestamp=1.5, intrinsics=scene.camera)
    scene.reconstruction.view(view_id).camera.set_from_camera_to_world(scene.T_w_c(1.5))
    calibrator = make_calibrator(optimization_config)

    with pytest.raises(PreconditionError) as excinfo:
        calibrator.init_spline_from_spline(scene.reconstruction, source, 0.0, np.zeros(3), np.zeros(3),
                                           scene.telemetry)

    assert excinfo.value.details['first_outside_s'] == 1.5
    assert calibrator.state == CalibrationState.EMPTY
    assert calibrator.trajectory is None
    assert calibrator.store.is_empty


def test_export_writes_nothing_when_a_pose_is_unavailable(scene, optimization_config):
    calibrator = make_calibrator(optimization_config)
    run_to_gravity(calibrator, scene)
    calibrator.optimize(2)
    calibrator.cam_timestamps.append(1.5)

    output = Reconstruction()
    with pytest.raises(ValueError):
        calibrator.to_output_dataset(output)

    assert output.num_views == 0
    assert calibrator.state == CalibrationState.OPTIMIZED


def test_init_spline_from_uncalibrated_source_is_refused(scene, optimization_config):
    source = make_calibrator(optimization_config)
    init(source, scene)

    with pytest.raises(PreconditionError):
        make_calibrator(optimization_config).init_spline_from_spline(
            scene.reconstruction, source, 0.0, np.zeros(3), np.zeros(3), scene.telemetry)


def test_result_reports_total_biases(scene, optimization_config):
    calibrator = make_calibrator(optimization_config)
    accl_bias = np.array([0.0, 0.0, 0.0])
    init(calibrator, scene, accl_bias=accl_bias)
    calibrator.initialize_gravity(scene.telemetry, accl_bias)
    calibrator.optimize(5)

    result = calibrator.result()

    assert result.num_knots_so3 == 14
    assert result.t0_s == 0.0 and result.t_end_s == 1.0
    assert len(result.reprojection_errors) == 1
    data = result.to_dict()
    assert data['line_delay_s'] == 0.0
    assert len(data['R_i_c']) == 3
