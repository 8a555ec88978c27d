#!/usr/bin/env python3
"""
Main script to run continuous-time IMU-camera calibration.
"""

import argparse
import logging
from pathlib import Path
import sys

from imu_cam_calib.pipeline import CalibrationPipeline


def setup_logging(verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Continuous-time spline calibration of camera-to-IMU extrinsics, "
                    "rolling-shutter line delay, gravity and IMU biases"
    )

    # Required arguments
    parser.add_argument(
        'reconstruction',
        type=Path,
        help='Reconstruction JSON with timestamped views, corner observations and pattern points'
    )
    parser.add_argument(
        'telemetry',
        type=Path,
        help='Telemetry JSON with accelerometer and gyroscope streams'
    )

    # Optional arguments
    parser.add_argument(
        '--output_dir',
        type=Path,
        default=None,
        help='Output directory for results (default: next to the reconstruction, calibration_output)'
    )
    parser.add_argument(
        '--config',
        type=Path,
        default=None,
        help='Path to configuration YAML file'
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    # Configuration overrides
    parser.add_argument(
        '--optimization.iterations',
        type=int,
        default=None,
        dest='iterations',
        help='Maximum solver iterations per pass'
    )
    parser.add_argument(
        '--optimization.solver',
        type=str,
        default=None,
        dest='solver',
        choices=['lbfgs', 'adam'],
        help='Solver used for the trajectory optimization'
    )
    parser.add_argument(
        '--calibration.time_offset_imu_to_cam',
        type=float,
        default=None,
        dest='time_offset_imu_to_cam',
        help='Offset added to IMU timestamps [s]'
    )
    parser.add_argument(
        '--calibrate_line_delay',
        action='store_true',
        default=None,
        help='Estimate the rolling-shutter line delay'
    )
    parser.add_argument(
        '--reestimate_biases',
        action='store_true',
        default=None,
        help='Run a second pass with free accelerometer and gyroscope biases'
    )
    parser.add_argument(
        '--device',
        type=str,
        default=None,
        help='Torch device (cpu, cuda, cuda:N)'
    )
    return parser


def main():
    args = build_parser().parse_args()

    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    # Validate inputs
    for path in (args.reconstruction, args.telemetry):
        if not path.exists():
            logger.error(f"Input file does not exist: {path}")
            sys.exit(1)

    if args.output_dir is None:
        args.output_dir = args.reconstruction.parent / 'calibration_output'

    logger.info("Continuous-time IMU-camera calibration")
    logger.info(f"Reconstruction: {args.reconstruction}")
    logger.info(f"Telemetry: {args.telemetry}")
    logger.info(f"Output directory: {args.output_dir}")
    if args.config:
        logger.info(f"Config file: {args.config}")

    try:
        pipeline = CalibrationPipeline(config_path=args.config)

        # Update configuration with command-line arguments
        pipeline.config_manager.update_from_args(**{
            'optimization.iterations': args.iterations,
            'optimization.solver': args.solver,
            'calibration.time_offset_imu_to_cam': args.time_offset_imu_to_cam,
            'calibration.calibrate_cam_line_delay': args.calibrate_line_delay,
            'calibration.reestimate_biases': args.reestimate_biases,
            'device': args.device,
            'verbose': args.verbose or None,
        })

        results = pipeline.run(
            reconstruction_path=args.reconstruction,
            telemetry_path=args.telemetry,
            output_dir=args.output_dir
        )

        if results['success']:
            logger.info("Pipeline completed successfully!")
            for i, solve in enumerate(results['passes'], start=1):
                logger.info(f"Pass {i}: final cost {solve['final_cost']:.6e}, "
                            f"reprojection error GS/RS {solve['reprojection_errors'][0]:.4f}/"
                            f"{solve['reprojection_errors'][1]:.4f} px")
        else:
            logger.error("Pipeline failed!")
            if 'error' in results:
                logger.error(f"Error: {results['error']}")
            sys.exit(1)

    except Exception as e:
        logger.error(f"Unexpected error: {str(e)}", exc_info=True)
        sys.exit(1)


if __name__ == '__main__':
    main()
