import json
import logging

import numpy as np

from .geometry import pose_to_tum

logger = logging.getLogger(__name__)


class RecordReader:
    """
    Reads a JSON-lines record log.

    Each line holds one message: {"topic": "/imu0", "msg": {...}}. Blank lines
    and lines starting with '#' are ignored.
    """

    def __init__(self, filepath, topics=None):
        self.filepath = filepath
        self.topics = None if topics is None else set(topics)
        self.file = None

    def __enter__(self):
        self.file = open(self.filepath, 'r')
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.file:
            self.file.close()
            self.file = None

    def records(self):
        """Yields (topic, msg) pairs, optionally restricted to self.topics."""
        if not self.file:
            raise IOError("File not open")
        self.file.seek(0)
        for line_no, line in enumerate(self.file, start=1):
            line = line.strip()
            if not line or line.startswith('#'):
                continue
            try:
                record = json.loads(line)
                topic, msg = record['topic'], record['msg']
            except (json.JSONDecodeError, KeyError, TypeError) as e:
                raise ValueError(f"Invalid record at {self.filepath}:{line_no}: {e}") from None
            if self.topics is not None and topic not in self.topics:
                continue
            yield topic, msg

    def topic_counts(self):
        counts = {}
        for topic, _ in self.records():
            counts[topic] = counts.get(topic, 0) + 1
        return counts


class PLYWriter:
    def __init__(self, filepath):
        self.filepath = filepath

    def write(self, points, colors=None):
        """
        Writes points (N x 3 float) and optional uint8 colors to an ASCII PLY file.
        """
        if not isinstance(points, np.ndarray) or points.ndim != 2 or points.shape[1] != 3:
            raise ValueError("Points must be an N x 3 numpy array.")
        if colors is not None and (not isinstance(colors, np.ndarray) or colors.shape != points.shape):
            raise ValueError("Colors must be an N x 3 numpy array, matching the number of points.")
        if colors is not None and colors.dtype != np.uint8:
            raise ValueError("Colors must be uint8.")

        with open(self.filepath, 'w') as f:
            f.write("ply\nformat ascii 1.0\n")
            f.write(f"element vertex {points.shape[0]}\n")
            f.write("property float x\nproperty float y\nproperty float z\n")
            if colors is not None:
                f.write("property uchar red\nproperty uchar green\nproperty uchar blue\n")
            f.write("end_header\n")

            for i in range(points.shape[0]):
                line = f"{points[i, 0]:.6f} {points[i, 1]:.6f} {points[i, 2]:.6f}"
                if colors is not None:
                    line += f" {colors[i, 0]} {colors[i, 1]} {colors[i, 2]}"
                f.write(line + "\n")

    def write_landmarks(self, structures):
        """Writes the colored landmarks of one or more visual structures."""
        landmarks = [lm for structure in structures for lm in structure.landmarks.values()]
        points = np.array([lm.position for lm in landmarks], dtype=float).reshape(-1, 3)
        colors = np.array([lm.color for lm in landmarks], dtype=np.uint8).reshape(-1, 3)
        self.write(points, colors)
        return len(landmarks)


class TrajWriter:
    def __init__(self, filepath):
        self.filepath = filepath

    def write(self, timestamps, poses):
        """
        Writes timestamps and poses (N x 7 [tx,ty,tz,qx,qy,qz,qw]) to a TXT file.
        Each line: timestamp tx ty tz qx qy qz qw
        """
        if len(timestamps) != len(poses):
            raise ValueError("Timestamps and poses must have the same length.")
        if not isinstance(poses, np.ndarray) or poses.ndim != 2 or poses.shape[1] != 7:
            raise ValueError("Poses must be an N x 7 numpy array.")

        with open(self.filepath, 'w') as f:
            for ts, pose in zip(timestamps, poses):
                f.write(f"{ts:.6f} " + " ".join(f"{v:.9f}" for v in pose) + "\n")

    def write_se3(self, samples):
        """Writes (t, 4x4 pose) pairs, e.g. from CalibSolver.export_trajectory()."""
        timestamps = np.array([t for t, _ in samples], dtype=float)
        poses = np.array([pose_to_tum(T) for _, T in samples], dtype=float).reshape(-1, 7)
        self.write(timestamps, poses)
        return len(samples)
