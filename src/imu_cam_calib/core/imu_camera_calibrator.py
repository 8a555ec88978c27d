"""
IMU-camera calibration orchestrator.

Drives a single calibration run through its states:

    EMPTY -> INITIALIZED -> GRAVITY_SET -> OPTIMIZED -> EXPORTED

`optimize` may be called repeatedly (OPTIMIZED -> OPTIMIZED), each call
continuing from the current knots, e.g. a fixed-bias pass followed by a
pass with bias re-estimation. `clear` returns to EMPTY from any state.
"""

import logging
import numpy as np
from enum import Enum
from typing import Dict, List, Optional, Sequence, Union

from ..exceptions import GravityNotInitializedError, PreconditionError
from ..models.data_models import CalibrationResult, ReprojectionError, SolverSummary, TimeCamId
from ..models.reconstruction import Reconstruction
from ..models.telemetry import CameraTelemetryData
from ..utils.config_manager import OptimizationConfig, SplineWeightingConfig
from ..utils.geometry_utils import Pose
from .gravity_initializer import DEFAULT_TOLERANCE_S, GravityInitializer
from .measurement_store import MeasurementStore
from .trajectory import SplineTrajectory

logger = logging.getLogger(__name__)


class CalibrationState(Enum):
    EMPTY = "empty"
    INITIALIZED = "initialized"
    GRAVITY_SET = "gravity_set"
    OPTIMIZED = "optimized"
    EXPORTED = "exported"


class ImuCameraCalibrator:
    """
    Estimates the camera-to-IMU transform, line delay, gravity and biases.

    Usage:
        calibrator = ImuCameraCalibrator(calibrate_cam_line_delay=True)
        calibrator.init_spline(reconstruction, T_i_c_init, spline_config,
                               0.0, gyro_bias, accl_bias, telemetry)
        calibrator.initialize_gravity(telemetry, accl_bias)
        gs_error, rs_error = calibrator.optimize(50)
        calibrator.to_output_dataset(output_reconstruction)
    """

    def __init__(self,
                 optimization_config: Optional[OptimizationConfig] = None,
                 calibrate_cam_line_delay: bool = False,
                 reestimate_biases: bool = False,
                 calibrate_extrinsics: bool = True,
                 gravity_tolerance_s: float = DEFAULT_TOLERANCE_S,
                 device: str = 'cpu'):
        self.optimization_config = optimization_config or OptimizationConfig()
        self.calibrate_cam_line_delay = calibrate_cam_line_delay
        self.reestimate_biases = reestimate_biases
        self.calibrate_extrinsics = calibrate_extrinsics
        self.gravity_tolerance_s = gravity_tolerance_s
        self.device = device
        self.clear()

    def clear(self):
        """Drop every measurement, the trajectory and all results."""
        self.state = CalibrationState.EMPTY
        self.store = MeasurementStore()
        self.trajectory: Optional[SplineTrajectory] = None
        self.cam_timestamps: List[float] = []
        self.t0_s = 0.0
        self.t_end_s = 0.0
        self.initial_line_delay_s = 0.0
        self.T_i_c_init = Pose.identity()
        self.accl_bias_init = np.zeros(3)
        self.gyro_bias_init = np.zeros(3)
        self.gravity_init: Optional[np.ndarray] = None
        self.reprojection_errors: List[ReprojectionError] = []
        self.solver_summaries: List[SolverSummary] = []

    @property
    def last_summary(self) -> Optional[SolverSummary]:
        return self.solver_summaries[-1] if self.solver_summaries else None

    def _require_state(self, operation: str, *allowed: CalibrationState):
        if self.state not in allowed:
            raise PreconditionError(
                f"{operation} requires state {' or '.join(s.value for s in allowed)}, "
                f"current state is {self.state.value}",
                details={'operation': operation, 'state': self.state.value}
            )

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def init_spline(self,
                    reconstruction: Reconstruction,
                    T_i_c_init: Pose,
                    spline_config: SplineWeightingConfig,
                    time_offset_imu_to_cam: float,
                    gyro_bias: Sequence[float],
                    accl_bias: Sequence[float],
                    telemetry: CameraTelemetryData):
        """
        Build the spline over the camera time span and add all measurements.

        The window is [min camera timestamp, max camera timestamp). Corners of
        in-window views become reprojection blocks; bias and time-offset
        corrected inertial samples inside the window become accelerometer and
        gyroscope blocks.

        Args:
            reconstruction: Views with timestamps, initial poses and corners
            T_i_c_init: Initial camera-to-IMU transform
            spline_config: Knot spacing and measurement weighting
            time_offset_imu_to_cam: Added to every IMU timestamp [s]
            gyro_bias: Additive gyroscope correction
            accl_bias: Additive accelerometer correction
            telemetry: Raw accelerometer and gyroscope streams

        Raises:
            PreconditionError: If not EMPTY or the reconstruction has no views
        """
        self._require_state("init_spline", CalibrationState.EMPTY)
        if reconstruction.num_views == 0:
            raise PreconditionError("Cannot initialize the spline without camera timestamps")

        trajectory = self._setup_window(reconstruction, spline_config)
        trajectory.set_T_i_c(T_i_c_init)
        self.T_i_c_init = T_i_c_init

        self._ingest(reconstruction, trajectory, time_offset_imu_to_cam, gyro_bias, accl_bias, telemetry)
        trajectory.init_knots(self.store.imu_poses)
        self._add_residual_blocks(reconstruction, trajectory)

        self.trajectory = trajectory
        self.state = CalibrationState.INITIALIZED

    def init_spline_from_spline(self,
                                reconstruction: Reconstruction,
                                source: Union['ImuCameraCalibrator', SplineTrajectory],
                                time_offset_imu_to_cam: float,
                                gyro_bias: Sequence[float],
                                accl_bias: Sequence[float],
                                telemetry: CameraTelemetryData):
        """
        Start a run from an already calibrated trajectory.

        The knots, gravity, extrinsic and line delay of `source` are copied
        and its time window is reused; gravity counts as set, so the run
        continues directly with `optimize`.

        Raises:
            PreconditionError: If not EMPTY, the reconstruction has no views,
                the source trajectory has no knots or gravity, or a camera
                timestamp lies outside the source window [t0, t_end]
        """
        self._require_state("init_spline_from_spline", CalibrationState.EMPTY)
        if isinstance(source, ImuCameraCalibrator):
            if source.state in (CalibrationState.EMPTY, CalibrationState.INITIALIZED):
                raise PreconditionError(
                    f"Source calibrator has no gravity estimate (state {source.state.value})")
            source = source.trajectory
        if reconstruction.num_views == 0:
            raise PreconditionError("Cannot initialize the spline without camera timestamps")
        if source is None or not source.is_initialized:
            raise PreconditionError("Source trajectory has no knots")

        cam_timestamps = sorted(reconstruction.view(v).timestamp for v in reconstruction.view_ids())
        outside = [t for t in cam_timestamps
                   if not source.contains_ns(TimeCamId.from_seconds(t).timestamp_ns, inclusive_end=True)]
        if outside:
            raise PreconditionError(
                f"{len(outside)} camera timestamps lie outside the source spline window "
                f"[{source.t0_s:.6f}, {source.t_end_s:.6f}]s",
                details={'first_outside_s': outside[0], 't0_s': source.t0_s, 't_end_s': source.t_end_s}
            )

        trajectory = SplineTrajectory(source.spline_config, self.device)
        trajectory.init_times(source.t0_ns, source.t_end_ns)
        trajectory.load_knots(*source.get_knots())
        trajectory.set_T_i_c(source.T_i_c)
        trajectory.set_gravity(source.gravity_vector)
        trajectory.calibrate_line_delay = self.calibrate_cam_line_delay
        trajectory.calibrate_extrinsics = self.calibrate_extrinsics
        trajectory.set_line_delay(source.line_delay_s if self.calibrate_cam_line_delay else 0.0)
        trajectory.set_camera(reconstruction.view(reconstruction.view_ids()[0]).camera.intrinsics)

        self.cam_timestamps = cam_timestamps
        self.t0_s = source.t0_s
        self.t_end_s = source.t_end_s
        self.initial_line_delay_s = trajectory.line_delay_s
        self.T_i_c_init = source.T_i_c
        self.gravity_init = source.gravity_vector

        self._ingest(reconstruction, trajectory, time_offset_imu_to_cam, gyro_bias, accl_bias, telemetry)
        self._add_residual_blocks(reconstruction, trajectory)

        self.trajectory = trajectory
        self.state = CalibrationState.GRAVITY_SET
        logger.info(f"Initialized from existing spline with gravity {np.round(self.gravity_init, 4)}")

    def _setup_window(self, reconstruction: Reconstruction, spline_config: SplineWeightingConfig) -> SplineTrajectory:
        view_ids = reconstruction.view_ids()
        self.cam_timestamps = sorted(reconstruction.view(v).timestamp for v in view_ids)
        self.t0_s = self.cam_timestamps[0]
        self.t_end_s = self.cam_timestamps[-1]

        trajectory = SplineTrajectory(spline_config, self.device)
        trajectory.calibrate_line_delay = self.calibrate_cam_line_delay
        trajectory.calibrate_extrinsics = self.calibrate_extrinsics

        camera = reconstruction.view(view_ids[0]).camera.intrinsics
        if self.calibrate_cam_line_delay:
            self.initial_line_delay_s = (1.0 / spline_config.cam_fps) * (1.0 / camera.image_height)
        else:
            # Held constant at zero during optimization
            self.initial_line_delay_s = 0.0
        trajectory.set_line_delay(self.initial_line_delay_s)
        trajectory.set_camera(camera)
        logger.info(f"Initialized line delay to {self.initial_line_delay_s * 1e6:.3f}us")

        trajectory.init_times(TimeCamId.from_seconds(self.t0_s).timestamp_ns,
                              TimeCamId.from_seconds(self.t_end_s).timestamp_ns)
        logger.info(f"Spline window {self.t0_s:.6f}/{self.t_end_s:.6f}s, knot spacing "
                    f"so3/r3 {spline_config.dt_so3}/{spline_config.dt_r3}s")
        return trajectory

    def _ingest(self,
                reconstruction: Reconstruction,
                trajectory: SplineTrajectory,
                time_offset_imu_to_cam: float,
                gyro_bias: Sequence[float],
                accl_bias: Sequence[float],
                telemetry: CameraTelemetryData):
        self.accl_bias_init = np.asarray(accl_bias, dtype=np.float64).reshape(3)
        self.gyro_bias_init = np.asarray(gyro_bias, dtype=np.float64).reshape(3)

        self.store.ingest(reconstruction, self.t0_s, self.t_end_s, trajectory.T_i_c)
        self.store.ingest_inertial(telemetry.accelerometer, self.accl_bias_init, time_offset_imu_to_cam,
                                   self.t0_s, self.t_end_s, "accelerometer")
        self.store.ingest_inertial(telemetry.gyroscope, self.gyro_bias_init, time_offset_imu_to_cam,
                                   self.t0_s, self.t_end_s, "gyroscope")

    def _add_residual_blocks(self, reconstruction: Reconstruction, trajectory: SplineTrajectory):
        config = trajectory.spline_config
        for key in self.store.sorted_frames():
            trajectory.add_rs_corners_measurement(self.store.corners[key], reconstruction, key.timestamp_ns)
        for t, value in self.store.sorted_inertial("accelerometer"):
            trajectory.add_accel_measurement(value, TimeCamId.from_seconds(t).timestamp_ns, config.weight_r3)
        for t, value in self.store.sorted_inertial("gyroscope"):
            trajectory.add_gyro_measurement(value, TimeCamId.from_seconds(t).timestamp_ns, config.weight_so3)

        blocks = trajectory.num_residual_blocks()
        logger.info(f"Added {blocks['reprojection']} reprojection, {blocks['accelerometer']} "
                    f"accelerometer and {blocks['gyroscope']} gyroscope blocks")

    def initialize_gravity(self, telemetry: CameraTelemetryData, accl_bias: Sequence[float]) -> np.ndarray:
        """
        Seed gravity from the first accelerometer sample close to a camera frame.

        Raises:
            PreconditionError: If not INITIALIZED
            GravityNotInitializedError: If no sample matched; state is unchanged
        """
        self._require_state("initialize_gravity", CalibrationState.INITIALIZED)

        initializer = GravityInitializer(self.gravity_tolerance_s)
        gravity = initializer.initialize(self.cam_timestamps, self.store.imu_poses,
                                         telemetry.accelerometer, np.asarray(accl_bias, dtype=np.float64))
        if gravity is None:
            raise GravityNotInitializedError(self.gravity_tolerance_s, len(self.cam_timestamps))

        self.gravity_init = gravity
        self.trajectory.set_gravity(gravity)
        self.state = CalibrationState.GRAVITY_SET
        return gravity

    # ------------------------------------------------------------------
    # Optimization and export
    # ------------------------------------------------------------------

    def optimize(self, iterations: Optional[int] = None, estimate_biases: Optional[bool] = None) -> List[float]:
        """
        Solve the trajectory from its current state.

        Args:
            iterations: Maximum solver iterations (config default if None)
            estimate_biases: Free the biases for this solve
                (`reestimate_biases` if None)

        Returns:
            [mean global-shutter error, mean rolling-shutter error] in pixels
        """
        self._require_state("optimize", CalibrationState.GRAVITY_SET,
                            CalibrationState.OPTIMIZED, CalibrationState.EXPORTED)
        if iterations is None:
            iterations = self.optimization_config.iterations
        if estimate_biases is None:
            estimate_biases = self.reestimate_biases

        self.trajectory.calibrate_line_delay = self.calibrate_cam_line_delay
        self.trajectory.calibrate_extrinsics = self.calibrate_extrinsics

        summary = self.trajectory.solve(iterations, self.optimization_config, estimate_biases)
        errors = ReprojectionError(
            global_shutter=self.trajectory.mean_reprojection(),
            rolling_shutter=self.trajectory.mean_rs_reprojection()
        )
        self.solver_summaries.append(summary)
        self.reprojection_errors.append(errors)
        self.state = CalibrationState.OPTIMIZED

        logger.info(errors.summary_string())
        if self.calibrate_cam_line_delay:
            logger.info(f"Line delay: {self.trajectory.line_delay_s * 1e6:.3f}us")
        return errors.as_list()

    def to_output_dataset(self, output: Reconstruction, camera_frame: bool = False) -> List[int]:
        """
        Add one estimated view per camera timestamp with the spline pose.

        Views are named by the nanosecond timestamp. The written pose is the
        spline's IMU pose T_w_i, or T_w_c = T_w_i * T_i_c with `camera_frame`.

        Returns:
            Ids of the added views
        """
        self._require_state("to_output_dataset", CalibrationState.OPTIMIZED, CalibrationState.EXPORTED)

        T_i_c = self.trajectory.T_i_c
        # Evaluate every pose before the output is touched
        poses = []
        for timestamp in self.cam_timestamps:
            t_ns = TimeCamId.from_seconds(timestamp).timestamp_ns
            pose = self.trajectory.pose_at_ns(t_ns, inclusive_end=True)
            poses.append((t_ns, pose * T_i_c if camera_frame else pose))

        view_ids = []
        for t_ns, pose in poses:
            view_id = output.add_view(str(t_ns), camera_index=0, timestamp=t_ns * 1e-9,
                                      intrinsics=self.trajectory.camera)
            view = output.view(view_id)
            view.camera.set_from_camera_to_world(pose)
            view.is_estimated = True
            view_ids.append(view_id)

        self.state = CalibrationState.EXPORTED
        logger.info(f"Exported {len(view_ids)} spline poses")
        return view_ids

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def _require_trajectory(self) -> SplineTrajectory:
        if self.trajectory is None:
            raise PreconditionError("Spline is not initialized")
        return self.trajectory

    @property
    def line_delay_s(self) -> float:
        return self._require_trajectory().line_delay_s

    @property
    def T_i_c(self) -> Pose:
        return self._require_trajectory().T_i_c

    @property
    def gravity(self) -> np.ndarray:
        return self._require_trajectory().gravity_vector

    @property
    def biases(self) -> Dict[str, np.ndarray]:
        """Total biases: initial corrections plus the estimated increments."""
        accl_delta, gyro_delta = self._require_trajectory().biases
        return {
            'accelerometer': self.accl_bias_init + accl_delta,
            'gyroscope': self.gyro_bias_init + gyro_delta,
        }

    def result(self) -> CalibrationResult:
        trajectory = self._require_trajectory()
        biases = self.biases
        T_i_c = trajectory.T_i_c
        return CalibrationResult(
            R_i_c=T_i_c.rotation,
            t_i_c=T_i_c.translation,
            line_delay_s=trajectory.line_delay_s,
            gravity=trajectory.gravity_vector,
            accl_bias=biases['accelerometer'],
            gyro_bias=biases['gyroscope'],
            t0_s=self.t0_s,
            t_end_s=self.t_end_s,
            num_knots_so3=trajectory.num_knots_so3,
            num_knots_r3=trajectory.num_knots_r3,
            reprojection_errors=list(self.reprojection_errors),
            solver_summaries=list(self.solver_summaries)
        )

    def __repr__(self) -> str:
        return (f"ImuCameraCalibrator(state={self.state.value}, "
                f"frames={len(self.cam_timestamps)}, trajectory={self.trajectory!r})")
