import pytest
from pathlib import Path

from stcalib.config import Config, Modality, ScaleSplineType, TopicConfig
from stcalib.errors import ConfigurationError

from conftest import make_config

CONFIG_YAML = """
data_stream:
  imu_topics:
    /imu0: SENSOR_IMU
    /imu1:
      type: SBG_IMU
      weight: 0.5
  radar_topics:
    /radar0: {type: AWR1843BOOST_RAW}
  reference_imu: /imu1
  output_path: out/calib
prior:
  time_offset_padding: 0.05
preference:
  max_iterations: 5
  output_format: json
"""


def test_from_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG_YAML)
    config = Config.from_yaml(path)

    assert config.data_stream.imu_topics['/imu0'] == TopicConfig(type='SENSOR_IMU')
    assert config.data_stream.imu_topics['/imu1'].weight == 0.5
    assert config.reference_imu == '/imu1'
    assert config.data_stream.output_path == Path("out/calib")
    assert config.prior.time_offset_padding == 0.05
    # untouched defaults
    assert config.prior.so3_knot_dt == 0.05
    assert config.preference.max_iterations == 5
    assert config.format_extension() == ".json"


def test_yaml_roundtrip(tmp_path):
    config = make_config(imu=('/imu0',), camera=('/cam0',))
    path = tmp_path / "saved.yaml"
    config.to_yaml(path)
    loaded = Config.from_yaml(path)
    assert loaded == config


def test_reference_imu_defaults_to_first():
    config = make_config(imu=('/imu_b', '/imu_a'))
    assert config.reference_imu == '/imu_b'


def test_active_modalities_and_scale_type():
    assert make_config().active_modalities() == [Modality.IMU]
    assert make_config().scale_spline_type() == ScaleSplineType.LIN_ACCE_SPLINE
    assert make_config(radar=('/r',)).scale_spline_type() == ScaleSplineType.LIN_VEL_SPLINE
    assert make_config(radar=('/r',), lidar=('/l',)).scale_spline_type() == ScaleSplineType.LIN_POS_SPLINE
    assert make_config(camera=('/c',)).scale_spline_type() == ScaleSplineType.LIN_POS_SPLINE
    assert make_config(radar=('/r',), camera=('/c',)).is_integrated(Modality.LIDAR) is False


@pytest.mark.parametrize("data, message", [
    ({'data_stream': {}}, "at least one imu"),
    ({'data_stream': {'imu_topics': {'/imu0': 'SENSOR_IMU'}, 'reference_imu': '/imu9'}}, "reference imu"),
    ({'data_stream': {'imu_topics': {'/imu0': 'SENSOR_IMU'}}, 'prior': {'so3_knot_dt': 0.0}}, "positive"),
    ({'data_stream': {'imu_topics': {'/imu0': 'SENSOR_IMU'}}, 'prior': {'time_offset_padding': -1}},
     "non-negative"),
    ({'data_stream': {'imu_topics': {'/imu0': 'SENSOR_IMU'}}, 'preference': {'output_format': 'xml'}},
     "output format"),
    ({'data_stream': {'imu_topics': {'/imu0': 'SENSOR_IMU'}, 'camera_topics': {'/cam0': 'SENSOR_IMAGE'}}},
     "intrinsics"),
])
def test_validation(data, message):
    with pytest.raises(ConfigurationError, match=message):
        Config.from_dict(data)


@pytest.mark.parametrize("data, section", [
    ({'data_stream': {'imu_topics': {'/imu0': 'SENSOR_IMU'}, 'imu_topic': {}}}, "data_stream"),
    ({'data_stream': {'imu_topics': {'/imu0': {'type': 'SENSOR_IMU', 'wieght': 2.0}}}}, "imu_topics./imu0"),
    ({'data_stream': {'imu_topics': {'/imu0': {'weight': 2.0}}}}, "imu_topics./imu0"),
    ({'data_stream': {'imu_topics': {'/imu0': 'SENSOR_IMU'}}, 'prior': {'so3_knot_spacing': 0.1}}, "prior"),
    ({'data_stream': {'imu_topics': {'/imu0': 'SENSOR_IMU'}}, 'preference': {'thread': 2}}, "preference"),
])
def test_unknown_keys(data, section):
    with pytest.raises(ConfigurationError, match=f"invalid '{section}' configuration"):
        Config.from_dict(data)


def test_unknown_key_in_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG_YAML.replace("max_iterations: 5", "max_iteration: 5"))
    with pytest.raises(ConfigurationError, match="max_iteration"):
        Config.from_yaml(path)
