"""
Decoders turning raw record-log messages into typed frames.

Every decoder handles one sensor model; ``get_decoder`` resolves the model
name configured for a topic to the right implementation.
"""

import base64
from abc import ABC, abstractmethod

import cv2
import numpy as np

from .config import Modality
from .errors import ConfigurationError, DecodeError
from .frames import (
    ImuFrame, RadarTarget, RadarTargetArray, LidarFrame, CameraFrame, LIDAR_POINT_DTYPE
)


def stamp_to_sec(msg):
    """Reads a ROS-like 'header.stamp' ({secs, nsecs} or float) or a plain 'stamp'."""
    stamp = msg.get('header', {}).get('stamp', msg.get('stamp'))
    if stamp is None:
        raise DecodeError("message has no timestamp.")
    if isinstance(stamp, dict):
        return float(stamp.get('secs', 0)) + float(stamp.get('nsecs', 0)) * 1e-9
    return float(stamp)


def _vec3(field):
    if isinstance(field, dict):
        return np.array([field['x'], field['y'], field['z']], dtype=float)
    return np.asarray(field, dtype=float).reshape(3)


class FrameDecoder(ABC):
    modality = None

    def __init__(self, model):
        self.model = model

    @abstractmethod
    def decode(self, msg):
        """Decodes one raw message into a frame, raising DecodeError on mismatch."""

    def _require(self, msg, *keys):
        missing = [k for k in keys if k not in msg]
        if missing:
            raise DecodeError(
                f"Wrong sensor model: '{self.model}' for {self.modality.value}! "
                f"It's incompatible with the message to load in (missing {missing})."
            )


# ---
# IMU
# ---

class SensorImuDecoder(FrameDecoder):
    """sensor_msgs/Imu style: linear_acceleration, angular_velocity."""
    modality = Modality.IMU

    def decode(self, msg):
        self._require(msg, 'linear_acceleration', 'angular_velocity')
        return ImuFrame(stamp_to_sec(msg), _vec3(msg['linear_acceleration']), _vec3(msg['angular_velocity']))


class SbgImuDecoder(FrameDecoder):
    """SBG driver style: time_stamp in microseconds, accel, gyro."""
    modality = Modality.IMU

    def decode(self, msg):
        self._require(msg, 'time_stamp', 'accel', 'gyro')
        return ImuFrame(float(msg['time_stamp']) * 1e-6, _vec3(msg['accel']), _vec3(msg['gyro']))


# -----
# radar
# -----

class SingleTargetRadarDecoder(FrameDecoder):
    """One target per message (x, y, z, velocity); merged into arrays later."""
    modality = Modality.RADAR

    def decode(self, msg):
        self._require(msg, 'x', 'y', 'z', 'velocity')
        t = stamp_to_sec(msg)
        target = RadarTarget(t, [msg['x'], msg['y'], msg['z']], msg['velocity'])
        return RadarTargetArray(t, [target])


class TargetArrayRadarDecoder(FrameDecoder):
    """Polar target arrays: targets[{range, azimuth, elevation, speed}]."""
    modality = Modality.RADAR

    def decode(self, msg):
        self._require(msg, 'targets')
        t = stamp_to_sec(msg)
        targets = []
        for tar in msg['targets']:
            r, az, el = float(tar['range']), float(tar['azimuth']), float(tar['elevation'])
            xyz = [r * np.cos(el) * np.cos(az), r * np.cos(el) * np.sin(az), r * np.sin(el)]
            targets.append(RadarTarget(t, xyz, tar['speed']))
        return RadarTargetArray(t, targets)


# -----
# lidar
# -----

class PointCloudLidarDecoder(FrameDecoder):
    """
    points: rows of [x, y, z, intensity, t] where t is the offset from the scan stamp.
    time_unit scales t to seconds (1.0 for Velodyne, 1e-9 for Ouster).
    """
    modality = Modality.LIDAR

    def __init__(self, model, time_unit=1.0):
        super().__init__(model)
        self.time_unit = time_unit

    def decode(self, msg):
        self._require(msg, 'points')
        t = stamp_to_sec(msg)
        raw = np.asarray(msg['points'], dtype=float).reshape(-1, 5)
        points = np.zeros(len(raw), dtype=LIDAR_POINT_DTYPE)
        points['xyz'] = raw[:, :3]
        points['intensity'] = raw[:, 3]
        points['timestamp'] = t + raw[:, 4] * self.time_unit
        return LidarFrame(t, points)


# ------
# camera
# ------

class SensorImageDecoder(FrameDecoder):
    """Image stored as a file path next to the record log."""
    modality = Modality.CAMERA

    def decode(self, msg):
        self._require(msg, 'path')
        image = cv2.imread(str(msg['path']), cv2.IMREAD_UNCHANGED)
        if image is None:
            raise DecodeError(f"can not read image '{msg['path']}'.")
        return CameraFrame(stamp_to_sec(msg), image)


class SensorImageCompDecoder(FrameDecoder):
    """Compressed image bytes, base64 encoded."""
    modality = Modality.CAMERA

    def decode(self, msg):
        self._require(msg, 'data')
        buffer = np.frombuffer(base64.b64decode(msg['data']), dtype=np.uint8)
        image = cv2.imdecode(buffer, cv2.IMREAD_UNCHANGED)
        if image is None:
            raise DecodeError("can not decode compressed image.")
        return CameraFrame(stamp_to_sec(msg), image)


_DECODERS = {
    Modality.IMU: {
        'SENSOR_IMU': SensorImuDecoder,
        'SBG_IMU': SbgImuDecoder,
    },
    Modality.RADAR: {
        'AWR1843BOOST_RAW': SingleTargetRadarDecoder,
        'AWR1843BOOST_CUSTOM': SingleTargetRadarDecoder,
        'AINSTEIN_ARRAY': TargetArrayRadarDecoder,
    },
    Modality.LIDAR: {
        'VELODYNE_LIDAR': lambda model: PointCloudLidarDecoder(model, time_unit=1.0),
        'OUSTER_LIDAR': lambda model: PointCloudLidarDecoder(model, time_unit=1e-9),
    },
    Modality.CAMERA: {
        'SENSOR_IMAGE': SensorImageDecoder,
        'SENSOR_IMAGE_COMP': SensorImageCompDecoder,
    },
}

# radar models whose messages carry one target each and must be merged into arrays
SINGLE_TARGET_RADAR_MODELS = ('AWR1843BOOST_RAW', 'AWR1843BOOST_CUSTOM')


def get_decoder(modality, model):
    """Resolves a configured model name to a decoder instance."""
    try:
        factory = _DECODERS[modality][model]
    except KeyError:
        supported = ", ".join(sorted(_DECODERS[modality]))
        raise ConfigurationError(
            f"unsupported {modality.value} model '{model}', supported models: {supported}."
        ) from None
    return factory(model)
