import logging

import pytest

from stcalib.config import Config, Modality
from stcalib.errors import ConfigurationError
from stcalib.registry import SensorStreamRegistry, load_registry


def _config(**data_stream):
    ds = {'imu_topics': {'/imu0': 'SENSOR_IMU'}}
    ds.update(data_stream)
    return Config.from_dict({'data_stream': ds})


def _imu_record(t):
    return '/imu0', {'stamp': t, 'linear_acceleration': [0, 0, 9.8], 'angular_velocity': [0, 0, 0]}


def _radar_record(t):
    return '/radar0', {'stamp': t, 'x': 1.0, 'y': 0.0, 'z': 0.0, 'velocity': 0.0}


def test_load_sorts_and_filters_topics():
    records = [_imu_record(t) for t in (0.3, 0.1, 0.2)] + [('/unknown', {'stamp': 0.0})]
    registry = load_registry(records, _config(), progress=False)
    stamps = [f.timestamp for f in registry.get(Modality.IMU, '/imu0')]
    assert stamps == [0.1, 0.2, 0.3]
    assert registry.topics(Modality.IMU) == ['/imu0']
    assert not registry.is_integrated(Modality.RADAR)
    assert registry.frame_count() == 3


def test_load_merges_single_target_radar():
    records = [_imu_record(t * 0.01) for t in range(30)]
    records += [_radar_record(t) for t in (0.0, 0.02, 0.05, 0.09, 0.15)]
    config = _config(radar_topics={'/radar0': 'AWR1843BOOST_RAW'})
    registry = load_registry(records, config, progress=False)

    arrays = registry.get(Modality.RADAR, '/radar0')
    assert [len(a.targets) for a in arrays] == [4, 1]
    assert arrays[0].timestamp == pytest.approx(0.04)


def test_configured_topic_without_data():
    config = _config(radar_topics={'/radar0': 'AINSTEIN_ARRAY'})
    with pytest.raises(ConfigurationError, match="no data in topic '/radar0'"):
        load_registry([_imu_record(0.0)], config, progress=False)


def test_get_unknown_topic():
    with pytest.raises(ConfigurationError):
        SensorStreamRegistry().get(Modality.CAMERA, '/cam0')


def test_begin_time_and_duration():
    records = [_imu_record(10.0 + 0.1 * i) for i in range(101)]
    registry = load_registry(records, _config(begin_time=2.0, duration=3.0), progress=False)
    stamps = [f.timestamp for f in registry.get(Modality.IMU, '/imu0')]
    assert stamps[0] == pytest.approx(12.0)
    assert stamps[-1] == pytest.approx(15.0)


def test_out_of_range_duration_warns(caplog):
    records = [_imu_record(10.0 + 0.1 * i) for i in range(11)]
    with caplog.at_level(logging.WARNING, logger="stcalib.registry"):
        registry = load_registry(records, _config(begin_time=0.5, duration=100.0), progress=False)
    assert "out of the data range" in caplog.text
    assert registry.get(Modality.IMU, '/imu0')[-1].timestamp == pytest.approx(11.0)
