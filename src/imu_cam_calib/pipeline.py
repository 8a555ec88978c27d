"""
IMU-camera calibration pipeline.

Loads a reconstruction with timestamped views and a telemetry file, runs the
calibrator through its states and writes the results.
"""

import logging
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

import numpy as np

from .core.imu_camera_calibrator import ImuCameraCalibrator
from .models.data_models import PipelineState
from .models.reconstruction import Reconstruction
from .models.telemetry import CameraTelemetryData
from .utils.config_manager import ConfigManager
from .utils.geometry_utils import Pose
from .utils.result_exporter import ResultExporter

logger = logging.getLogger(__name__)


class CalibrationPipeline:
    """
    Complete pipeline for continuous-time IMU-camera calibration.

    This class orchestrates the entire pipeline:
    1. Load the reconstruction and telemetry
    2. Initialize the spline from the camera poses
    3. Initialize gravity
    4. Optimize with fixed biases, then with free biases (optional)
    5. Export spline poses and calibration results
    """

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize pipeline with configuration.

        Args:
            config_path: Path to configuration YAML file
        """
        self.config_manager = ConfigManager(config_path)
        self.calibrator: Optional[ImuCameraCalibrator] = None

        logger.info(f"Initialized calibration pipeline with device: {self.config.device}")

    @property
    def config(self):
        return self.config_manager.config

    def run(self, reconstruction_path: Path, telemetry_path: Path, output_dir: Path) -> Dict:
        """
        Run the complete calibration pipeline.

        Args:
            reconstruction_path: Reconstruction JSON with timestamped views
            telemetry_path: Telemetry JSON with accelerometer and gyroscope streams
            output_dir: Directory to save results

        Returns:
            Dictionary with pipeline results
        """
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        file_handler = self._setup_logging(output_dir)

        logger.info(f"Starting calibration for reconstruction: {reconstruction_path}")
        logger.info(f"Telemetry: {telemetry_path}")
        logger.info(f"Output directory: {output_dir}")

        results = {
            'reconstruction_path': str(reconstruction_path),
            'telemetry_path': str(telemetry_path),
            'output_dir': str(output_dir),
            'start_time': datetime.now().isoformat(),
            'config': asdict(self.config),
            'passes': [],
        }
        exporter = ResultExporter(output_dir)
        pipeline_state = PipelineState()

        try:
            reconstruction = Reconstruction.load_json(reconstruction_path)
            telemetry = CameraTelemetryData.load_json(telemetry_path)
            pipeline_state.mark_step_completed("load_inputs")

            self._step_init_spline(reconstruction, telemetry, pipeline_state)
            self._step_initialize_gravity(telemetry, pipeline_state)
            self._step_optimize(results, exporter, pipeline_state)
            self._step_export(exporter, pipeline_state)

            results['end_time'] = datetime.now().isoformat()
            results['success'] = True
            results['calibration'] = pipeline_state.result.to_dict()

            if self.config.output.save_summary:
                exporter.save_summary(results)
            exporter.save_pipeline_state(pipeline_state)

            logger.info("Calibration pipeline completed successfully")

        except Exception as e:
            logger.error(f"Pipeline failed: {str(e)}", exc_info=True)
            results['error'] = str(e)
            results['success'] = False
            raise
        finally:
            logging.getLogger('imu_cam_calib').removeHandler(file_handler)
            file_handler.close()

        return results

    def _step_init_spline(self,
                          reconstruction: Reconstruction,
                          telemetry: CameraTelemetryData,
                          pipeline_state: PipelineState):
        """Step 1: Build the spline and add all measurements."""
        logger.info("Step 1: Initializing spline")
        calibration = self.config.calibration

        self.calibrator = ImuCameraCalibrator(
            optimization_config=self.config.optimization,
            calibrate_cam_line_delay=calibration.calibrate_cam_line_delay,
            reestimate_biases=calibration.reestimate_biases,
            calibrate_extrinsics=calibration.calibrate_extrinsics,
            gravity_tolerance_s=calibration.gravity_tolerance_s,
            device=self.config.device
        )
        self.calibrator.init_spline(
            reconstruction,
            Pose.from_rotvec(calibration.R_i_c_rotvec, calibration.t_i_c),
            self.config.spline,
            calibration.time_offset_imu_to_cam,
            np.asarray(calibration.gyro_bias),
            np.asarray(calibration.accl_bias),
            telemetry
        )
        pipeline_state.mark_step_completed("init_spline")

    def _step_initialize_gravity(self, telemetry: CameraTelemetryData, pipeline_state: PipelineState):
        """Step 2: Seed gravity from the accelerometer."""
        logger.info("Step 2: Initializing gravity")
        self.calibrator.initialize_gravity(telemetry, np.asarray(self.config.calibration.accl_bias))
        pipeline_state.mark_step_completed("initialize_gravity")

    def _step_optimize(self, results: Dict, exporter: ResultExporter, pipeline_state: PipelineState):
        """Step 3: Fixed-bias pass, then a free-bias pass if re-estimation is enabled."""
        passes = [False]
        if self.config.calibration.reestimate_biases:
            passes.append(True)

        for pass_index, estimate_biases in enumerate(passes, start=1):
            logger.info(f"Step 3.{pass_index}: Optimizing with biases "
                        f"{'free' if estimate_biases else 'fixed'}")
            errors = self.calibrator.optimize(self.config.optimization.iterations, estimate_biases)
            summary = self.calibrator.last_summary

            solve = summary.to_dict()
            solve['estimate_biases'] = estimate_biases
            solve['reprojection_errors'] = errors
            del solve['history']
            results['passes'].append(solve)

            exporter.save_optimization_history(summary.history, pass_index)
            pipeline_state.mark_step_completed(f"optimization_pass{pass_index}")

    def _step_export(self, exporter: ResultExporter, pipeline_state: PipelineState):
        """Step 4: Export spline poses and the calibration result."""
        logger.info("Step 4: Exporting results")

        output_reconstruction = Reconstruction()
        self.calibrator.to_output_dataset(output_reconstruction, camera_frame=self.config.output.export_camera_frame)
        if self.config.output.save_reconstruction:
            exporter.save_reconstruction(output_reconstruction)

        pipeline_state.result = self.calibrator.result()
        exporter.save_result(pipeline_state.result)
        pipeline_state.mark_step_completed("export")

    def _setup_logging(self, output_dir: Path) -> logging.Handler:
        """Setup file logging for the pipeline."""
        log_file = output_dir / 'imu_cam_calib.log'
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.INFO)
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        file_handler.setFormatter(formatter)
        logging.getLogger('imu_cam_calib').addHandler(file_handler)
        return file_handler
