"""
Configuration for a calibration session.

A single ``Config`` value is built once (usually from YAML) and handed to the
stream loader, the alignment engine, the solver and the CLI.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

import yaml

from .errors import ConfigurationError


class Modality(Enum):
    IMU = "imu"
    RADAR = "radar"
    LIDAR = "lidar"
    CAMERA = "camera"


class ScaleSplineType(Enum):
    """Which linear quantity the scale spline carries."""

    LIN_POS_SPLINE = 0
    LIN_VEL_SPLINE = 1
    LIN_ACCE_SPLINE = 2


@dataclass
class TopicConfig:
    """Per-topic sensor configuration."""

    type: str
    weight: float = 1.0
    # camera: {fx, fy, cx, cy, width, height, distortion}; imu: {acce_bias, gyro_bias}
    intrinsics: Optional[dict] = None


@dataclass
class DataStreamConfig:
    imu_topics: Dict[str, TopicConfig] = field(default_factory=dict)
    radar_topics: Dict[str, TopicConfig] = field(default_factory=dict)
    lidar_topics: Dict[str, TopicConfig] = field(default_factory=dict)
    camera_topics: Dict[str, TopicConfig] = field(default_factory=dict)
    reference_imu: Optional[str] = None
    begin_time: float = -1.0
    duration: float = -1.0
    output_path: Path = field(default_factory=lambda: Path("output"))

    def topics(self, modality):
        return {
            Modality.IMU: self.imu_topics,
            Modality.RADAR: self.radar_topics,
            Modality.LIDAR: self.lidar_topics,
            Modality.CAMERA: self.camera_topics,
        }[modality]


@dataclass
class PriorConfig:
    gravity_norm: float = 9.797
    time_offset_padding: float = 0.10
    so3_knot_dt: float = 0.05
    scale_knot_dt: float = 0.05
    reproj_error_thd: float = 1.0
    track_len_thd: int = 5
    max_landmarks: int = 2000
    max_obs_per_landmark: int = 20
    visual_loss_scale: float = 2.0


@dataclass
class PreferenceConfig:
    threads: int = 4
    max_iterations: int = 30
    function_tolerance: float = 1e-6
    gradient_tolerance: float = 1e-10
    parameter_tolerance: float = 1e-8
    output_param_in_each_iter: bool = False
    output_format: str = "yaml"
    align_to_gravity: bool = True
    use_viewer: bool = False
    sfm_match_overlap: int = 10


def _section(cls, values, name):
    """Builds a config section, unknown or missing keys become a ConfigurationError."""
    try:
        return cls(**(values or {}))
    except TypeError as e:
        raise ConfigurationError(f"invalid '{name}' configuration: {e}") from None


@dataclass
class Config:
    """Main configuration container."""

    data_stream: DataStreamConfig = field(default_factory=DataStreamConfig)
    prior: PriorConfig = field(default_factory=PriorConfig)
    preference: PreferenceConfig = field(default_factory=PreferenceConfig)

    @classmethod
    def from_yaml(cls, path) -> "Config":
        """Load configuration from YAML file."""
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> "Config":
        config = cls()

        if "data_stream" in data:
            ds = dict(data["data_stream"])
            for key in ("imu_topics", "radar_topics", "lidar_topics", "camera_topics"):
                topics = ds.get(key) or {}
                ds[key] = {
                    topic: _section(TopicConfig, value, f"{key}.{topic}") if isinstance(value, dict)
                    else TopicConfig(type=value)
                    for topic, value in topics.items()
                }
            if "output_path" in ds:
                ds["output_path"] = Path(ds["output_path"])
            config.data_stream = _section(DataStreamConfig, ds, "data_stream")
        if "prior" in data:
            config.prior = _section(PriorConfig, data["prior"], "prior")
        if "preference" in data:
            config.preference = _section(PreferenceConfig, data["preference"], "preference")

        config.validate()
        return config

    def to_dict(self) -> dict:
        data = asdict(self)
        data["data_stream"]["output_path"] = str(self.data_stream.output_path)
        return data

    def to_yaml(self, path) -> None:
        """Save configuration to YAML file."""
        with open(path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    # -------
    # queries
    # -------

    @property
    def reference_imu(self):
        if self.data_stream.reference_imu is not None:
            return self.data_stream.reference_imu
        return next(iter(self.data_stream.imu_topics), None)

    def is_integrated(self, modality):
        return len(self.data_stream.topics(modality)) > 0

    def active_modalities(self):
        return [m for m in Modality if self.is_integrated(m)]

    def scale_spline_type(self):
        if self.is_integrated(Modality.LIDAR) or self.is_integrated(Modality.CAMERA):
            return ScaleSplineType.LIN_POS_SPLINE
        elif self.is_integrated(Modality.RADAR):
            return ScaleSplineType.LIN_VEL_SPLINE
        else:
            return ScaleSplineType.LIN_ACCE_SPLINE

    def format_extension(self):
        return "." + self.preference.output_format

    def validate(self):
        ds, prior, pref = self.data_stream, self.prior, self.preference
        if not ds.imu_topics:
            raise ConfigurationError("at least one imu topic must be configured.")
        if self.reference_imu not in ds.imu_topics:
            raise ConfigurationError(f"reference imu '{self.reference_imu}' is not a configured imu topic.")
        if prior.so3_knot_dt <= 0 or prior.scale_knot_dt <= 0:
            raise ConfigurationError("knot time distances must be positive.")
        if prior.time_offset_padding < 0:
            raise ConfigurationError("time offset padding must be non-negative.")
        if pref.output_format not in ("yaml", "json"):
            raise ConfigurationError(f"unsupported output format '{pref.output_format}'.")
        for topic, topic_config in ds.camera_topics.items():
            if not topic_config.intrinsics:
                raise ConfigurationError(f"camera topic '{topic}' has no intrinsics.")
        return self
