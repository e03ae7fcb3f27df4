"""
Calibration parameter set: per-topic extrinsics, time offsets, intrinsics and gravity.
"""

import json
import logging
from pathlib import Path

import cv2
import numpy as np
import yaml
from scipy.spatial.transform import Rotation

from .config import Modality
from .errors import MissingParameterError, ConfigurationError
from .geometry import se3_from_rt

logger = logging.getLogger(__name__)


class PinholeIntrinsics:
    def __init__(self, fx, fy, cx, cy, width, height, distortion=None):
        """
        Pinhole camera with radial-tangential distortion (k1, k2, p1, p2[, k3]).

        Projection always happens on the undistorted image, distortion is only
        used to undistort images before they are handed to the reconstruction.
        """
        self.fx = float(fx)
        self.fy = float(fy)
        self.cx = float(cx)
        self.cy = float(cy)
        self.width = int(width)
        self.height = int(height)
        self.distortion = np.zeros(4) if distortion is None else np.asarray(distortion, dtype=float)

    @property
    def camera_matrix(self):
        return np.array([
            [self.fx, 0.0, self.cx],
            [0.0, self.fy, self.cy],
            [0.0, 0.0, 1.0],
        ])

    def undistort_image(self, image):
        if not np.any(self.distortion):
            return image.copy()
        return cv2.undistort(image, self.camera_matrix, self.distortion)

    def project(self, p_cam):
        """(3,) point in the camera frame -> (2,) pixel."""
        x, y, z = p_cam
        return np.array([self.fx * x / z + self.cx, self.fy * y / z + self.cy])

    def to_dict(self):
        return {
            'fx': self.fx, 'fy': self.fy, 'cx': self.cx, 'cy': self.cy,
            'width': self.width, 'height': self.height,
            'distortion': [float(v) for v in self.distortion],
        }

    @classmethod
    def from_dict(cls, data):
        try:
            return cls(**data)
        except TypeError as e:
            raise ConfigurationError(f"invalid pinhole intrinsics {data}: {e}") from None


class ImuIntrinsics:
    def __init__(self, acce_bias=None, gyro_bias=None):
        self.acce_bias = np.zeros(3) if acce_bias is None else np.asarray(acce_bias, dtype=float)
        self.gyro_bias = np.zeros(3) if gyro_bias is None else np.asarray(gyro_bias, dtype=float)

    def to_dict(self):
        return {'acce_bias': self.acce_bias.tolist(), 'gyro_bias': self.gyro_bias.tolist()}

    @classmethod
    def from_dict(cls, data):
        return cls(data.get('acce_bias'), data.get('gyro_bias'))


class CalibParamSet:
    """Everything the solver estimates besides the trajectory."""

    def __init__(self):
        self.so3_sensor_to_body = {}
        self.pos_sensor_to_body = {}
        self.time_offset = {}
        self.gravity = np.array([0.0, 0.0, -9.797])
        self.camera = {}
        self.imu = {}

    @classmethod
    def from_config(cls, config):
        """Identity extrinsics, zero time offsets and the configured intrinsics for every topic."""
        params = cls()
        params.gravity = np.array([0.0, 0.0, -config.prior.gravity_norm])
        for modality in config.active_modalities():
            for topic, topic_config in config.data_stream.topics(modality).items():
                params.so3_sensor_to_body[topic] = np.eye(3)
                params.pos_sensor_to_body[topic] = np.zeros(3)
                params.time_offset[topic] = 0.0
                if modality == Modality.CAMERA:
                    params.camera[topic] = PinholeIntrinsics.from_dict(topic_config.intrinsics)
                elif modality == Modality.IMU:
                    params.imu[topic] = ImuIntrinsics.from_dict(topic_config.intrinsics or {})
        return params

    def topics(self):
        return list(self.so3_sensor_to_body.keys())

    def _lookup(self, table, topic, what):
        try:
            return table[topic]
        except KeyError:
            raise MissingParameterError(f"there is no {what} for topic '{topic}'.") from None

    def rotation(self, topic):
        return self._lookup(self.so3_sensor_to_body, topic, "extrinsic rotation")

    def translation(self, topic):
        return self._lookup(self.pos_sensor_to_body, topic, "extrinsic translation")

    def offset(self, topic):
        return self._lookup(self.time_offset, topic, "time offset")

    def intrinsics(self, topic):
        return self._lookup(self.camera, topic, "camera intrinsics")

    def imu_intrinsics(self, topic):
        return self._lookup(self.imu, topic, "imu intrinsics")

    def se3_sensor_to_body(self, topic):
        return se3_from_rt(self.rotation(topic), self.translation(topic))

    # -----------
    # persistence
    # -----------

    def to_dict(self):
        extrinsics = {}
        for topic in self.topics():
            extrinsics[topic] = {
                'quat_sensor_to_body': Rotation.from_matrix(self.so3_sensor_to_body[topic]).as_quat().tolist(),
                'pos_sensor_to_body': self.pos_sensor_to_body[topic].tolist(),
                'time_offset': float(self.time_offset[topic]),
            }
        return {
            'gravity': self.gravity.tolist(),
            'extrinsics': extrinsics,
            'camera_intrinsics': {topic: cam.to_dict() for topic, cam in self.camera.items()},
            'imu_intrinsics': {topic: imu.to_dict() for topic, imu in self.imu.items()},
        }

    @classmethod
    def from_dict(cls, data):
        params = cls()
        params.gravity = np.asarray(data['gravity'], dtype=float)
        for topic, ext in data.get('extrinsics', {}).items():
            params.so3_sensor_to_body[topic] = Rotation.from_quat(ext['quat_sensor_to_body']).as_matrix()
            params.pos_sensor_to_body[topic] = np.asarray(ext['pos_sensor_to_body'], dtype=float)
            params.time_offset[topic] = float(ext['time_offset'])
        for topic, cam in data.get('camera_intrinsics', {}).items():
            params.camera[topic] = PinholeIntrinsics.from_dict(cam)
        for topic, imu in data.get('imu_intrinsics', {}).items():
            params.imu[topic] = ImuIntrinsics.from_dict(imu)
        return params

    def save(self, path, fmt=None):
        """Writes the parameters as YAML or JSON (format from `fmt` or the file suffix)."""
        path = Path(path)
        fmt = fmt or path.suffix.lstrip('.') or 'yaml'
        if fmt not in ('yaml', 'json'):
            raise ConfigurationError(f"unsupported parameter format '{fmt}'.")
        with open(path, 'w') as f:
            if fmt == 'json':
                json.dump(self.to_dict(), f, indent=2)
            else:
                yaml.safe_dump(self.to_dict(), f, default_flow_style=None, sort_keys=False)

    @classmethod
    def load(cls, path):
        path = Path(path)
        with open(path, 'r') as f:
            if path.suffix == '.json':
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
        return cls.from_dict(data)

    def show(self):
        logger.info(f"gravity: {np.array2string(self.gravity, precision=5)}")
        for topic in self.topics():
            euler = Rotation.from_matrix(self.so3_sensor_to_body[topic]).as_euler('zyx', degrees=True)
            logger.info(
                f"topic '{topic}': euler(zyx, deg) {np.array2string(euler, precision=3)}, "
                f"pos {np.array2string(self.pos_sensor_to_body[topic], precision=4)}, "
                f"time offset {self.time_offset[topic]:+.6f} (s)"
            )
