import numpy as np
import pytest

from stcalib.config import Config, Modality
from stcalib.frames import ImuFrame, RadarTarget, RadarTargetArray, LidarFrame, CameraFrame, LIDAR_POINT_DTYPE
from stcalib.registry import SensorStreamRegistry

CAMERA_INTRINSICS = {'fx': 400.0, 'fy': 400.0, 'cx': 320.0, 'cy': 240.0, 'width': 640, 'height': 480}


def make_config(imu=('/imu0',), radar=(), lidar=(), camera=(), output_path='output', **prior):
    data = {
        'data_stream': {
            'imu_topics': {t: {'type': 'SENSOR_IMU'} for t in imu},
            'radar_topics': {t: {'type': 'AINSTEIN_ARRAY'} for t in radar},
            'lidar_topics': {t: {'type': 'VELODYNE_LIDAR'} for t in lidar},
            'camera_topics': {t: {'type': 'SENSOR_IMAGE', 'intrinsics': dict(CAMERA_INTRINSICS)} for t in camera},
            'output_path': str(output_path),
        },
    }
    if prior:
        data['prior'] = prior
    return Config.from_dict(data)


def imu_stream(start, end, rate=100.0):
    return [ImuFrame(t, [0.0, 0.0, 9.8], [0.0, 0.0, 0.0]) for t in np.arange(start, end, 1.0 / rate)]


def radar_stream(start, end, rate=10.0):
    stream = []
    for t in np.arange(start, end, 1.0 / rate):
        stream.append(RadarTargetArray(t, [RadarTarget(t, [5.0, 1.0, 0.0], -0.5)]))
    return stream


def lidar_stream(start, end, rate=10.0):
    stream = []
    for t in np.arange(start, end, 1.0 / rate):
        points = np.zeros(3, dtype=LIDAR_POINT_DTYPE)
        points['xyz'] = [[1, 0, 0], [0, 1, 0], [0, 0, 1]]
        points['timestamp'] = t + np.array([0.0, 0.01, 0.02])
        stream.append(LidarFrame(t, points))
    return stream


def camera_stream(start, end, rate=10.0):
    return [CameraFrame(t, np.zeros((4, 4), dtype=np.uint8)) for t in np.arange(start, end, 1.0 / rate)]


@pytest.fixture
def registry_factory():
    """Builds a registry from {(modality, topic): frames}."""
    def factory(streams):
        registry = SensorStreamRegistry()
        for (modality, topic), frames in streams.items():
            registry.set_stream(modality, topic, frames)
        return registry
    return factory


@pytest.fixture
def four_modality_registry(registry_factory):
    return registry_factory({
        (Modality.IMU, '/imu0'): imu_stream(100.0, 110.0),
        (Modality.IMU, '/imu1'): imu_stream(100.3, 110.5),
        (Modality.RADAR, '/radar0'): radar_stream(100.5, 109.0),
        (Modality.LIDAR, '/lidar0'): lidar_stream(100.2, 109.5),
        (Modality.CAMERA, '/cam0'): camera_stream(101.0, 109.8),
    })
