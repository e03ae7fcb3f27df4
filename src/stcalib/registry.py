import logging

from tqdm import tqdm

from .alignment import merge_radar_targets
from .config import Modality
from .decoders import get_decoder, SINGLE_TARGET_RADAR_MODELS
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class SensorStreamRegistry:
    """Ordered frame sequences per modality and topic."""

    def __init__(self):
        self.streams = {modality: {} for modality in Modality}

    def add_frame(self, modality, topic, frame):
        self.streams[modality].setdefault(topic, []).append(frame)

    def set_stream(self, modality, topic, frames):
        self.streams[modality][topic] = list(frames)

    def get(self, modality, topic):
        try:
            return self.streams[modality][topic]
        except KeyError:
            raise ConfigurationError(
                f"there is no data in topic '{topic}', please check the config file and the data!"
            ) from None

    def topics(self, modality):
        return list(self.streams[modality].keys())

    def items(self, modality):
        return self.streams[modality].items()

    def is_integrated(self, modality):
        return len(self.streams[modality]) > 0

    def sort(self):
        for modality in Modality:
            for frames in self.streams[modality].values():
                frames.sort(key=lambda f: f.timestamp)

    def check_topics(self, config):
        """Every configured topic must hold at least one frame."""
        for modality in Modality:
            for topic in config.data_stream.topics(modality):
                if not self.streams[modality].get(topic):
                    raise ConfigurationError(
                        f"there is no data in topic '{topic}', please check the config file and the data!"
                    )

    def frame_count(self):
        return sum(len(frames) for modality in Modality for frames in self.streams[modality].values())


def load_registry(records, config, progress=True):
    """
    Builds a registry from raw (topic, message) records.

    Args:
        records (iterable): (topic, msg) pairs, e.g. from io.RecordReader.records().
        config (Config): Session configuration (topics, models, begin time, duration).
        progress (bool): Show a tqdm progress bar.

    Returns:
        SensorStreamRegistry: Sorted streams, with single-target radar reports merged
                              into arrays.
    """
    logger.info("loading calibration data...")

    decoders = {}
    topic_modality = {}
    for modality in Modality:
        for topic, topic_config in config.data_stream.topics(modality).items():
            decoders[topic] = get_decoder(modality, topic_config.type)
            topic_modality[topic] = modality

    registry = SensorStreamRegistry()
    for topic, msg in tqdm(records, desc="decoding", disable=not progress):
        decoder = decoders.get(topic)
        if decoder is None:
            continue
        frame = decoder.decode(msg)
        if frame is not None:
            registry.add_frame(topic_modality[topic], topic, frame)

    registry.sort()
    _clip_time_range(registry, config)
    registry.check_topics(config)

    for topic, topic_config in config.data_stream.radar_topics.items():
        if topic_config.type in SINGLE_TARGET_RADAR_MODELS:
            registry.set_stream(Modality.RADAR, topic, merge_radar_targets(registry.get(Modality.RADAR, topic)))

    return registry


def _clip_time_range(registry, config):
    """Applies the configured begin time and duration, relative to the first frame."""
    begin_offset = config.data_stream.begin_time
    duration = config.data_stream.duration
    if begin_offset <= 0 and duration <= 0:
        return

    stamps = [
        (frames[0].timestamp, frames[-1].timestamp)
        for modality in Modality for frames in registry.streams[modality].values() if frames
    ]
    if not stamps:
        return
    data_begin = min(s for s, _ in stamps)
    data_end = max(e for _, e in stamps)
    logger.info(f"source data duration: from '{data_begin:.5f}' to '{data_end:.5f}'.")

    begin, end = data_begin, data_end
    if begin_offset > 0:
        begin = data_begin + begin_offset
        if begin > data_end:
            logger.warning(
                f"begin time '{begin:.5f}' is out of the data range, set begin time to '{data_begin:.5f}'."
            )
            begin = data_begin
    if duration > 0:
        end = begin + duration
        if end > data_end:
            logger.warning(f"end time '{end:.5f}' is out of the data range, set end time to '{data_end:.5f}'.")
            end = data_end
    logger.info(f"expect data duration: from '{begin:.5f}' to '{end:.5f}'.")

    for modality in Modality:
        for topic, frames in list(registry.streams[modality].items()):
            registry.streams[modality][topic] = [f for f in frames if begin <= f.timestamp <= end]
