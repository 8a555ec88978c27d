"""
Configuration management for IMU-camera calibration.

This module provides centralized configuration handling with validation,
defaults, and user overrides from YAML files or the command line.
"""

import yaml
import logging
from pathlib import Path
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field, asdict, replace

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SplineWeightingConfig:
    """Knot spacing and inertial measurement weighting of the spline."""
    dt_so3: float = 0.1  # rotation knot spacing [s]
    dt_r3: float = 0.1  # translation knot spacing [s]
    var_so3: float = 1e-3  # gyroscope variance, weight is 1/var
    var_r3: float = 1e-2  # accelerometer variance, weight is 1/var
    cam_fps: float = 30.0
    spline_order: int = 4

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.dt_so3 <= 0 or self.dt_r3 <= 0:
            raise ValueError("Knot spacings must be positive")
        if self.var_so3 <= 0 or self.var_r3 <= 0:
            raise ValueError("Measurement variances must be positive")
        if self.cam_fps <= 0:
            raise ValueError("cam_fps must be positive")
        if self.spline_order < 2:
            raise ValueError("spline_order must be at least 2")

    @property
    def weight_so3(self) -> float:
        return 1.0 / self.var_so3

    @property
    def weight_r3(self) -> float:
        return 1.0 / self.var_r3


@dataclass
class CalibrationConfig:
    """Which quantities are estimated, and the fixed inputs of a run."""
    calibrate_cam_line_delay: bool = False
    reestimate_biases: bool = False
    calibrate_extrinsics: bool = True
    time_offset_imu_to_cam: float = 0.0  # added to IMU timestamps [s]
    gyro_bias: List[float] = field(default_factory=lambda: [0.0, 0.0, 0.0])
    accl_bias: List[float] = field(default_factory=lambda: [0.0, 0.0, 0.0])
    R_i_c_rotvec: List[float] = field(default_factory=lambda: [0.0, 0.0, 0.0])
    t_i_c: List[float] = field(default_factory=lambda: [0.0, 0.0, 0.0])
    gravity_tolerance_s: float = 1.0 / 30.0

    def __post_init__(self) -> None:
        """Validate configuration."""
        for name in ("gyro_bias", "accl_bias", "R_i_c_rotvec", "t_i_c"):
            if len(getattr(self, name)) != 3:
                raise ValueError(f"{name} must have 3 components")
        if self.gravity_tolerance_s <= 0:
            raise ValueError("gravity_tolerance_s must be positive")


@dataclass
class OptimizationConfig:
    """Configuration for the trajectory solve."""
    solver: str = "lbfgs"  # Options: lbfgs, adam
    iterations: int = 50

    # lbfgs
    gradient_tolerance: float = 1e-7
    history_size: int = 20

    # adam
    learning_rate: float = 1e-3
    gradient_clip: float = 1.0

    convergence_threshold: float = 1e-9

    # Loss configuration
    use_robust_loss: bool = False
    robust_loss_sigma: float = 2.0

    # Logging
    log_interval: int = 10

    def __post_init__(self) -> None:
        """Validate configuration."""
        valid_solvers = ["lbfgs", "adam"]
        if self.solver not in valid_solvers:
            raise ValueError(f"Invalid solver: {self.solver}. Must be one of {valid_solvers}")
        if self.iterations <= 0:
            raise ValueError("iterations must be positive")
        if self.convergence_threshold <= 0:
            raise ValueError("convergence_threshold must be positive")
        if self.gradient_clip <= 0:
            raise ValueError("gradient_clip must be positive")
        if self.robust_loss_sigma <= 0:
            raise ValueError("robust_loss_sigma must be positive")


@dataclass
class OutputConfig:
    """Configuration for output options."""
    save_reconstruction: bool = True
    export_camera_frame: bool = False  # export T_w_c instead of the spline's T_w_i
    save_summary: bool = True


@dataclass
class CalibratorConfig:
    """Complete configuration for the calibration pipeline."""
    device: str = "cpu"
    spline: SplineWeightingConfig = field(default_factory=SplineWeightingConfig)
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)
    optimization: OptimizationConfig = field(default_factory=OptimizationConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    # Runtime options
    verbose: bool = False

    def __post_init__(self) -> None:
        """Validate configuration."""
        valid_devices = ["cuda", "cpu"]
        if self.device not in valid_devices:
            # Check if it's a specific CUDA device
            if not self.device.startswith("cuda:"):
                raise ValueError(f"Invalid device: {self.device}. Must be one of {valid_devices} or cuda:N")


class ConfigManager:
    """Manager for loading and merging configuration."""

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize configuration manager.

        Args:
            config_path: Path to user configuration file, or None for defaults
        """
        self.default_config_path = Path(__file__).parents[3] / "config" / "imu_cam_calib.yaml"
        self.config_path = Path(config_path) if config_path is not None else None
        self.config = self._load_config()

    def _load_config(self) -> CalibratorConfig:
        """Load and merge configuration from files."""
        config_dict = asdict(CalibratorConfig())

        if self.default_config_path.exists():
            default_yaml = self._load_yaml(self.default_config_path)
            config_dict = self._merge_configs(config_dict, default_yaml)
            logger.info(f"Loaded default config from {self.default_config_path}")

        if self.config_path is not None:
            if not self.config_path.exists():
                raise FileNotFoundError(f"Config file not found: {self.config_path}")
            user_yaml = self._load_yaml(self.config_path)
            config_dict = self._merge_configs(config_dict, user_yaml)
            logger.info(f"Loaded user config from {self.config_path}")

        return self._dict_to_config(config_dict)

    def _load_yaml(self, path: Path) -> Dict[str, Any]:
        """Load YAML configuration file."""
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        return data

    def _merge_configs(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """
        Recursively merge configuration dictionaries.

        Args:
            base: Base configuration
            override: Configuration to override with

        Returns:
            Merged configuration
        """
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value

        return result

    def _dict_to_config(self, config_dict: Dict[str, Any]) -> CalibratorConfig:
        """Convert dictionary to structured configuration object."""
        return CalibratorConfig(
            device=config_dict.get('device', 'cpu'),
            spline=SplineWeightingConfig(**config_dict.get('spline', {})),
            calibration=CalibrationConfig(**config_dict.get('calibration', {})),
            optimization=OptimizationConfig(**config_dict.get('optimization', {})),
            output=OutputConfig(**config_dict.get('output', {})),
            verbose=config_dict.get('verbose', False)
        )

    def save_config(self, path: Path) -> None:
        """Save current configuration to YAML file."""
        with open(path, 'w') as f:
            yaml.dump(asdict(self.config), f, default_flow_style=False, sort_keys=False)

        logger.info(f"Saved configuration to {path}")

    def update_from_args(self, **kwargs) -> None:
        """
        Update configuration from command-line arguments.

        Keys may be dotted (``optimization.iterations``). Sections are
        rebuilt rather than mutated, so every override is validated and
        frozen sections stay frozen.
        """
        for key, value in kwargs.items():
            if value is None:
                continue
            self.config = self._replace_nested(self.config, key.split('.'), value)

    def _replace_nested(self, obj: Any, parts: List[str], value: Any) -> Any:
        if not hasattr(obj, parts[0]):
            raise ValueError(f"Unknown configuration key: {parts[0]}")
        if len(parts) == 1:
            return replace(obj, **{parts[0]: value})
        child = self._replace_nested(getattr(obj, parts[0]), parts[1:], value)
        return replace(obj, **{parts[0]: child})
