"""
Temporal alignment of independently clocked sensor streams.

The IMU streams bound the common time window, every other active modality
tightens it. Streams are then trimmed to the window and all timestamps are
re-based so the window starts at zero.

    IMU1: |o o o |o o o o o o o o o o o o o o|o      |
    IMU2: |      |o o o o o o o o o o o o o o|o o o  |
    RAD1: |   o o|o o o o o o o o o o o o o o|       |
    CAM1: | o o o|o o o o o o o o o o o o o o|o      |
                 |--> raw start              |--> raw end

Radar, LiDAR and camera frames are queried through the trajectory, so they
are trimmed with a padding of 2 * pad on both sides of the window.
"""

import logging

from .config import Modality
from .errors import NoIntersectionError
from .frames import RadarTargetArray

logger = logging.getLogger(__name__)

# merge single-target radar reports by 10 Hz
RADAR_ARRAY_MERGE_WINDOW = 0.1


class TimeWindow:
    def __init__(self, raw_start, raw_end, padding=0.0):
        """
        Args:
            raw_start (float): Window start on the sensor clocks.
            raw_end (float): Window end on the sensor clocks.
            padding (float): Margin kept between the calibration window and the window bounds.
        """
        if raw_start > raw_end:
            raise ValueError("raw_start must not be after raw_end.")
        self.raw_start = raw_start
        self.raw_end = raw_end
        self.aligned_start = 0.0
        self.aligned_end = raw_end - raw_start
        self.padding = padding

    @property
    def aligned_range(self):
        return self.aligned_end - self.aligned_start

    @property
    def calib_start(self):
        return self.aligned_start + self.padding

    @property
    def calib_end(self):
        return self.aligned_end - self.padding

    @property
    def calib_range(self):
        return self.calib_end - self.calib_start

    def __repr__(self):
        return (f"TimeWindow(raw=[{self.raw_start:.5f}, {self.raw_end:.5f}], "
                f"aligned=[{self.aligned_start:.5f}, {self.aligned_end:.5f}], padding={self.padding})")


def merge_radar_targets(arrays, window=RADAR_ARRAY_MERGE_WINDOW):
    """
    Groups consecutive single-target reports into target arrays.

    A report joins the current group while it lies within `window` seconds of the
    group's first report; each group is stamped at the mean time of its targets.

    Args:
        arrays (list): RadarTargetArray items holding one target each, sorted by time.
        window (float): Bucket length in seconds.

    Returns:
        list: Merged RadarTargetArray items.
    """
    merged = []
    targets = []

    def flush():
        t = sum(tar.timestamp for tar in targets) / len(targets)
        merged.append(RadarTargetArray(t, targets))

    for item in arrays:
        if not targets or abs(targets[0].timestamp - item.timestamp) < window:
            targets.append(item.targets[0])
        else:
            flush()
            targets = [item.targets[0]]
    if targets:
        flush()
    return merged


def _modality_bracket(registry, modality):
    """[latest first timestamp, earliest last timestamp] over the modality's streams."""
    streams = [frames for _, frames in registry.items(modality)]
    first = max(frames[0].timestamp for frames in streams)
    last = min(frames[-1].timestamp for frames in streams)
    return first, last


def _disjoint_topic(registry, modality, start, end):
    """First topic of the modality lying entirely outside [start, end], None if every stream reaches into it."""
    for topic, frames in registry.items(modality):
        if frames[-1].timestamp < start or frames[0].timestamp > end:
            return topic
    return None


def _no_overlap(registry, modality, start, end):
    topic = _disjoint_topic(registry, modality, start, end)
    if topic is None:
        return None
    frames = registry.get(modality, topic)
    return NoIntersectionError(
        topic,
        f"the data of topic '{topic}' spans [{frames[0].timestamp:.5f}, {frames[-1].timestamp:.5f}] "
        f"and does not overlap the window [{start:.5f}, {end:.5f}] of the other streams.",
    )


def compute_raw_window(registry):
    """
    Intersection of the per-modality brackets, starting from the IMU streams.

    A stream lying entirely outside the window of the streams before it raises
    a NoIntersectionError naming its topic.

    Returns:
        tuple: (raw_start, raw_end)
    """
    if not registry.is_integrated(Modality.IMU):
        raise NoIntersectionError("imu", "at least one imu stream is required to align the data.")

    raw_start, raw_end = _modality_bracket(registry, Modality.IMU)
    if raw_start > raw_end:
        # one imu stream ends before another one starts
        error = _no_overlap(registry, Modality.IMU, raw_start, raw_start)
        if error is not None:
            raise error

    for modality in (Modality.RADAR, Modality.LIDAR, Modality.CAMERA):
        if registry.is_integrated(modality):
            first, last = _modality_bracket(registry, modality)
            if max(raw_start, first) > min(raw_end, last):
                error = _no_overlap(registry, modality, raw_start, raw_end)
                if error is not None:
                    raise error
            raw_start = max(raw_start, first)
            raw_end = min(raw_end, last)

    if raw_start > raw_end:
        raise NoIntersectionError(
            "all", f"the sensor streams do not overlap: start '{raw_start:.5f}' is after end '{raw_end:.5f}'."
        )
    return raw_start, raw_end


def _trim(frames, topic, lower, upper):
    """Drops leading frames at or before `lower` and trailing frames at or after `upper`."""
    head = 0
    while head < len(frames) and frames[head].timestamp <= lower:
        head += 1
    tail = len(frames)
    while tail > head and frames[tail - 1].timestamp >= upper:
        tail -= 1
    if head >= tail:
        raise NoIntersectionError(topic)
    return frames[head:tail]


def adjust_data_sequence(registry, raw_start, raw_end, padding):
    """Trims every stream in place to the raw window."""
    logger.info("adjust calibration data sequence...")
    for modality in Modality:
        if modality == Modality.IMU:
            lower, upper = raw_start, raw_end
        else:
            lower, upper = raw_start + 2 * padding, raw_end - 2 * padding
        for topic, frames in list(registry.items(modality)):
            registry.set_stream(modality, topic, _trim(frames, topic, lower, upper))


def align_timestamps(registry, raw_start):
    """Shifts every frame (and nested point/target stamps) by -raw_start."""
    logger.info("align calibration data timestamp...")
    for modality in Modality:
        for _, frames in registry.items(modality):
            for frame in frames:
                frame.shift_time(-raw_start)


def output_data_status(registry, window=None):
    logger.info("calibration data info:")
    for modality in Modality:
        for topic, frames in registry.items(modality):
            if not frames:
                continue
            logger.info(
                f"{modality.name} topic: '{topic}', data size: '{len(frames):06d}', "
                f"time span: from '{frames[0].timestamp:+010.5f}' to '{frames[-1].timestamp:+010.5f}' (s)"
            )
    if window is not None:
        logger.info(f"raw start time: '{window.raw_start:+010.5f}' (s), raw end time: '{window.raw_end:+010.5f}' (s)")
        logger.info(
            f"aligned start time: '{window.aligned_start:+010.5f}' (s), "
            f"aligned end time: '{window.aligned_end:+010.5f}' (s)"
        )
        logger.info(
            f"calib start time: '{window.calib_start:+010.5f}' (s), calib end time: '{window.calib_end:+010.5f}' (s)"
        )


def align_streams(registry, config):
    """
    Aligns all streams of the registry to a common, zero-origin time window.

    The registry is modified in place (frames are trimmed and re-stamped).

    Args:
        registry (SensorStreamRegistry): Decoded streams.
        config (Config): Provides the time offset padding.

    Returns:
        tuple: (registry, TimeWindow)
    """
    padding = config.prior.time_offset_padding
    output_data_status(registry)

    raw_start, raw_end = compute_raw_window(registry)
    window = TimeWindow(raw_start, raw_end, padding)

    adjust_data_sequence(registry, raw_start, raw_end, padding)
    output_data_status(registry, window)

    align_timestamps(registry, raw_start)
    output_data_status(registry, window)
    return registry, window
