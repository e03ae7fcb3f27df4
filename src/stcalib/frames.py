import numpy as np

from .config import Modality

LIDAR_POINT_DTYPE = [('xyz', '3f8'), ('intensity', 'f8'), ('timestamp', 'f8')]


class ImuFrame:
    def __init__(self, timestamp, acce, gyro):
        """
        A single inertial measurement.

        Args:
            timestamp (float): Measurement time in seconds.
            acce (np.ndarray): (3,) specific force in the IMU frame.
            gyro (np.ndarray): (3,) angular velocity in the IMU frame.
        """
        self.timestamp = float(timestamp)
        self.acce = np.asarray(acce, dtype=float)
        self.gyro = np.asarray(gyro, dtype=float)
        if self.acce.shape != (3,) or self.gyro.shape != (3,):
            raise ValueError("acce and gyro must be (3,) vectors.")

    def shift_time(self, dt):
        self.timestamp += dt


class RadarTarget:
    def __init__(self, timestamp, target_xyz, radial_velocity):
        """
        One radar detection.

        Args:
            timestamp (float): Detection time in seconds.
            target_xyz (np.ndarray): (3,) target position in the radar frame.
            radial_velocity (float): Doppler velocity, positive when the target recedes.
        """
        self.timestamp = float(timestamp)
        self.target_xyz = np.asarray(target_xyz, dtype=float)
        self.radial_velocity = float(radial_velocity)
        if self.target_xyz.shape != (3,):
            raise ValueError("target_xyz must be a (3,) vector.")

    @property
    def direction(self):
        return self.target_xyz / np.linalg.norm(self.target_xyz)

    def shift_time(self, dt):
        self.timestamp += dt


class RadarTargetArray:
    def __init__(self, timestamp, targets):
        self.timestamp = float(timestamp)
        self.targets = list(targets)

    def shift_time(self, dt):
        self.timestamp += dt
        for target in self.targets:
            target.shift_time(dt)


class LidarFrame:
    def __init__(self, timestamp, points):
        """
        A LiDAR scan.

        Args:
            timestamp (float): Scan time in seconds.
            points (np.ndarray): Structured array with LIDAR_POINT_DTYPE fields,
                                 each point carrying its own acquisition time.
        """
        self.timestamp = float(timestamp)
        points = np.asarray(points)
        if points.dtype != np.dtype(LIDAR_POINT_DTYPE):
            raise ValueError("points must be a structured array with LIDAR_POINT_DTYPE.")
        self.points = points

    def shift_time(self, dt):
        self.timestamp += dt
        self.points['timestamp'] += dt


class CameraFrame:
    def __init__(self, timestamp, image, frame_id=None):
        """
        A camera image.

        The id is derived from the raw timestamp (milliseconds) when not given,
        so it stays stable after the timestamp is re-based.
        """
        self.timestamp = float(timestamp)
        self.image = image
        self.id = int(self.timestamp * 1e3) if frame_id is None else int(frame_id)

    def shift_time(self, dt):
        self.timestamp += dt


FRAME_TYPES = {
    Modality.IMU: ImuFrame,
    Modality.RADAR: RadarTargetArray,
    Modality.LIDAR: LidarFrame,
    Modality.CAMERA: CameraFrame,
}
