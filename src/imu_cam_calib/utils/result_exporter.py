"""
Result export for IMU-camera calibration.

Writes the calibration parameters, per-pass solver histories, the pipeline
state, the spline-evaluated reconstruction and a human-readable summary
into the output directory.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from ..models.data_models import CalibrationResult, PipelineState
from ..models.reconstruction import Reconstruction

logger = logging.getLogger(__name__)


class ResultExporter:
    """Writer for calibration outputs."""

    RESULT_FILE = "calibration_result.json"
    RECONSTRUCTION_FILE = "reconstruction_spline.json"
    PIPELINE_STATE_FILE = "pipeline_state.json"
    SUMMARY_JSON_FILE = "pipeline_summary.json"
    SUMMARY_TEXT_FILE = "summary.txt"

    def __init__(self, output_dir: Path):
        """
        Initialize result exporter.

        Args:
            output_dir: Directory to write results into
        """
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def save_result(self, result: CalibrationResult) -> Path:
        path = self.output_dir / self.RESULT_FILE
        with open(path, 'w') as f:
            json.dump(result.to_dict(), f, indent=2)
        logger.info(f"Saved calibration result to {path}")
        return path

    def load_result(self) -> Optional[Dict[str, Any]]:
        """Load a previously saved calibration result, or None if missing."""
        path = self.output_dir / self.RESULT_FILE
        if not path.exists():
            logger.warning(f"No calibration result found at {path}")
            return None
        with open(path, 'r') as f:
            return json.load(f)

    def save_optimization_history(self, history: Dict[str, Any], pass_index: int) -> Path:
        """
        Save the solver history of one optimization pass.

        Args:
            history: Loss history from the solver summary
            pass_index: 1-based pass number
        """
        path = self.output_dir / f"pass{pass_index}_history.json"
        with open(path, 'w') as f:
            json.dump(history, f, indent=2)
        logger.info(f"Saved pass {pass_index} optimization history")
        return path

    def save_pipeline_state(self, state: PipelineState) -> Path:
        path = self.output_dir / self.PIPELINE_STATE_FILE
        save_data = {
            'current_step': state.current_step,
            'completed_steps': state.completed_steps,
        }
        with open(path, 'w') as f:
            json.dump(save_data, f, indent=2)
        return path

    def save_reconstruction(self, reconstruction: Reconstruction) -> Path:
        path = self.output_dir / self.RECONSTRUCTION_FILE
        reconstruction.save_json(path)
        logger.info(f"Saved {reconstruction.num_views} spline views to {path}")
        return path

    def save_summary(self, results: Dict[str, Any]) -> Path:
        """Save the JSON summary and its human-readable counterpart."""
        with open(self.output_dir / self.SUMMARY_JSON_FILE, 'w') as f:
            json.dump(results, f, indent=2)

        text_path = self.output_dir / self.SUMMARY_TEXT_FILE
        with open(text_path, 'w') as f:
            f.write("IMU-Camera Calibration Summary\n")
            f.write("=" * 50 + "\n\n")

            f.write(f"Reconstruction: {results.get('reconstruction_path', 'N/A')}\n")
            f.write(f"Telemetry: {results.get('telemetry_path', 'N/A')}\n")
            f.write(f"Output: {results.get('output_dir', 'N/A')}\n")
            f.write(f"Start time: {results.get('start_time', 'N/A')}\n")
            f.write(f"End time: {results.get('end_time', 'N/A')}\n\n")

            for i, solve in enumerate(results.get('passes', []), start=1):
                f.write(f"Pass {i} (biases {'free' if solve['estimate_biases'] else 'fixed'}):\n")
                f.write(f"  - Cost: {solve['initial_cost']:.6e} -> {solve['final_cost']:.6e}\n")
                f.write(f"  - Iterations: {solve['iterations']}\n")
                f.write(f"  - Converged: {solve['converged']}\n")
                f.write(f"  - Reprojection error GS/RS: {solve['reprojection_errors'][0]:.4f}/"
                        f"{solve['reprojection_errors'][1]:.4f} px\n\n")

            calibration = results.get('calibration')
            if calibration:
                f.write("Calibration:\n")
                f.write(f"  - t_i_c: {calibration['t_i_c']}\n")
                f.write(f"  - R_i_c: {calibration['R_i_c']}\n")
                f.write(f"  - Line delay: {calibration['line_delay_s'] * 1e6:.3f} us\n")
                f.write(f"  - Gravity: {calibration['gravity']}\n")
                f.write(f"  - Accelerometer bias: {calibration['accl_bias']}\n")
                f.write(f"  - Gyroscope bias: {calibration['gyro_bias']}\n\n")

            f.write(f"Success: {results.get('success', False)}\n")

        logger.info(f"Saved summary to {text_path}")
        return text_path
