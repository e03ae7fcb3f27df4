import csv

import pytest
import numpy as np

from stcalib.alignment import TimeWindow
from stcalib.config import Modality, ScaleSplineType
from stcalib.errors import ScaleSplineTypeError, MissingParameterError
from stcalib.frames import ImuFrame
from stcalib.geometry import so3_exp, se3_from_rt
from stcalib.registry import SensorStreamRegistry
from stcalib.sfm import VisualStructure, View, Landmark, Observation
from stcalib.solver import CalibSolver, SolverState, Viewer

from conftest import make_config, camera_stream, radar_stream

OMEGA = np.array([0.1, -0.2, 0.6])


class RecordingViewer(Viewer):
    def __init__(self):
        self.calls = []

    def update_spline(self, bundle):
        self.calls.append('spline')

    def update_params(self, params):
        self.calls.append('params')

    def add_visual_structure(self, topic, structure):
        self.calls.append(('structure', topic))

    def quit(self):
        self.calls.append('quit')


def rotating_imu(duration=1.0, rate=40.0, gravity=9.8):
    """Stationary IMU rotating at a constant rate."""
    frames = []
    for t in np.arange(0.0, duration, 1.0 / rate):
        R = so3_exp(OMEGA * t)
        frames.append(ImuFrame(t, R.T @ np.array([0.0, 0.0, gravity]), OMEGA))
    return frames


def imu_only_solver(tmp_path, viewer=None, **preference):
    config = make_config(output_path=tmp_path, so3_knot_dt=0.1, scale_knot_dt=0.1)
    config.preference.max_iterations = 6
    config.preference.threads = 2
    for key, value in preference.items():
        setattr(config.preference, key, value)
    registry = SensorStreamRegistry()
    registry.set_stream(Modality.IMU, '/imu0', rotating_imu())
    window = TimeWindow(0.0, 1.0, config.prior.time_offset_padding)
    return CalibSolver(registry, window, config, viewer=viewer)


@pytest.fixture
def position_solver(tmp_path):
    config = make_config(lidar=('/lidar0',), camera=('/cam0',), output_path=tmp_path,
                         so3_knot_dt=0.1, scale_knot_dt=0.1)
    registry = SensorStreamRegistry()
    registry.set_stream(Modality.CAMERA, '/cam0', camera_stream(0.2, 1.8))
    return CalibSolver(registry, TimeWindow(0.0, 2.0, 0.1), config)


# --- Query Tests ---

def test_spline_covers_calibration_window(position_solver):
    bundle = position_solver.bundle
    assert bundle.min_time == pytest.approx(0.1)
    assert bundle.max_time >= 1.9 - 1e-9
    assert bundle.scale_type == ScaleSplineType.LIN_POS_SPLINE
    assert position_solver.state == SolverState.CONSTRUCTED


def test_body_pose_requires_position_spline(tmp_path):
    solver = imu_only_solver(tmp_path)
    with pytest.raises(ScaleSplineTypeError):
        solver.evaluate_body_pose(0.5)


def test_body_pose_range(position_solver):
    assert np.allclose(position_solver.evaluate_body_pose(0.5), np.eye(4))
    assert position_solver.evaluate_body_pose(0.0) is None
    assert position_solver.evaluate_body_pose(5.0) is None


def test_sensor_pose(position_solver):
    solver = position_solver
    solver.bundle.scale_spline.knots[:] = [1.0, 2.0, 3.0]
    R_ext = so3_exp(np.array([0.0, 0.0, 0.3]))
    solver.params.so3_sensor_to_body['/lidar0'] = R_ext
    solver.params.pos_sensor_to_body['/lidar0'] = np.array([0.1, 0.0, 0.0])
    solver.params.time_offset['/lidar0'] = 0.05

    T = solver.evaluate_sensor_pose(0.5, '/lidar0')
    assert np.allclose(T[:3, :3], R_ext)
    assert np.allclose(T[:3, 3], [1.1, 2.0, 3.0])
    # the offset moves the query out of the trajectory
    assert solver.evaluate_sensor_pose(solver.bundle.max_time, '/lidar0') is None

    with pytest.raises(MissingParameterError):
        solver.evaluate_sensor_pose(0.5, '/radar9')


def test_export_trajectory(position_solver):
    samples = position_solver.export_trajectory(dt=0.1)
    assert len(samples) >= 17
    assert all(np.allclose(T, np.eye(4)) for _, T in samples)
    # samples outside the trajectory are dropped
    assert [t for t, _ in position_solver.export_trajectory(times=[0.0, 0.5])] == [0.5]


# --- Problem assembly Tests ---

def test_rotation_stage_blocks(tmp_path):
    config = make_config(imu=('/imu0', '/imu1'), output_path=tmp_path, so3_knot_dt=0.1, scale_knot_dt=0.1)
    registry = SensorStreamRegistry()
    registry.set_stream(Modality.IMU, '/imu0', rotating_imu())
    registry.set_stream(Modality.IMU, '/imu1', rotating_imu())
    solver = CalibSolver(registry, TimeWindow(0.0, 1.0, 0.1), config)

    problem = solver.build_problem('rotation')
    assert {key[0] for key in problem.blocks} == {'so3_knot', 'so3_ext', 'time_offset', 'gyro_bias'}
    # the reference imu is fixed, the other one is estimated
    assert problem.blocks[('so3_ext', '/imu0')].constant
    assert problem.blocks[('time_offset', '/imu0')].constant
    assert not problem.blocks[('so3_ext', '/imu1')].constant
    assert not problem.blocks[('gyro_bias', '/imu0')].constant
    # non-reference frames keep a padded margin to the trajectory bounds
    n_imu0 = sum(1 for rb in problem.residual_blocks if ('gyro_bias', '/imu0') in rb.keys)
    n_imu1 = sum(1 for rb in problem.residual_blocks if ('gyro_bias', '/imu1') in rb.keys)
    assert n_imu1 < n_imu0

    full = solver.build_problem('full')
    assert ('gravity',) in full.blocks
    assert any(key[0] == 'scale_knot' for key in full.blocks)


def test_radar_needs_velocity(tmp_path):
    solver = imu_only_solver(tmp_path)
    solver.registry.set_stream(Modality.RADAR, '/radar0', radar_stream(0.2, 0.8))
    with pytest.raises(ScaleSplineTypeError, match="radar"):
        solver.build_problem('full')


# --- Solve Tests ---

def test_solve_imu_only(tmp_path):
    viewer = RecordingViewer()
    solver = imu_only_solver(tmp_path, viewer=viewer, output_param_in_each_iter=True)
    with solver:
        summary = solver.solve()

    rotation = solver.summaries['rotation']
    assert rotation.final_cost < rotation.initial_cost
    assert summary.final_cost <= summary.initial_cost
    assert solver.state == SolverState.FINISHED
    assert solver.solve_finished
    # a constant rate can not tell the bias from the motion, their sum is observed
    omega = solver.bundle.so3_spline.angular_velocity(0.5) + solver.params.imu_intrinsics('/imu0').gyro_bias
    assert np.allclose(omega, OMEGA, atol=1e-2)

    # gravity aligned world frame
    assert np.allclose(solver.params.gravity, [0.0, 0.0, -9.797], atol=1e-6)

    # stage snapshots
    assert (tmp_path / 'iteration' / 'stage' / 'rotation.yaml').exists()
    assert (tmp_path / 'iteration' / 'stage' / 'full.yaml').exists()

    # per-iteration snapshots and statistics
    epoch_dir = tmp_path / 'iteration' / 'epoch'
    with open(epoch_dir / 'epoch_info.csv') as f:
        rows = list(csv.reader(f))
    assert rows[0] == ['cost', 'gradient', 'tr_radius(1/lambda)']
    assert len(rows) > 1
    assert (epoch_dir / 'param_0.yaml').exists()

    assert 'spline' in viewer.calls and 'params' in viewer.calls
    # the viewer stays open once solving finished
    assert 'quit' not in viewer.calls


def test_close_quits_viewer_when_unsolved(tmp_path):
    viewer = RecordingViewer()
    with imu_only_solver(tmp_path, viewer=viewer):
        pass
    assert viewer.calls == ['quit']


# --- Visual data Tests ---

def test_prepare_and_load_visual_data(position_solver, tmp_path):
    info = position_solver.prepare_visual_data('/cam0')
    assert position_solver.state == SolverState.SFM_PREPARING
    ws = tmp_path / 'sfm' / 'cam0'
    assert (ws / 'matches.txt').exists()
    assert (ws / 'sfm-command-line.txt').exists()
    assert len(info.images) == len(position_solver.registry.get(Modality.CAMERA, '/cam0'))

    # the reconstruction has not been run yet
    assert position_solver.load_visual_data('/cam0') is None
    assert position_solver.state == SolverState.SFM_LOADING


def test_align_visual_structure(position_solver):
    solver = position_solver
    spline = solver.bundle.scale_spline
    for i in range(spline.num_knots):
        t = spline.knot_time(i)
        spline.set_knot(i, [t, t ** 2, 0.2 * t ** 3])

    # an up-to-scale reconstruction in its own frame
    R_s, t_s, s = so3_exp(np.array([0.3, -0.1, 0.7])), np.array([1.0, -2.0, 0.5]), 3.0
    structure = VisualStructure('/cam0')
    for v, t in enumerate(np.arange(0.2, 1.8, 0.2)):
        T_true = solver.evaluate_sensor_pose(t, '/cam0')
        structure.views[v] = View(v, t, 640, 480)
        structure.poses[v] = se3_from_rt(R_s.T @ T_true[:3, :3], R_s.T @ (T_true[:3, 3] - t_s) / s)
    X = np.array([2.0, 1.0, 5.0])
    structure.landmarks[0] = Landmark(R_s.T @ (X - t_s) / s)

    assert solver.align_visual_structure('/cam0', structure)
    for v, view in structure.views.items():
        T_true = solver.evaluate_sensor_pose(view.timestamp, '/cam0')
        assert np.allclose(structure.poses[v], T_true, atol=1e-6)
    assert np.allclose(structure.landmarks[0].position, X, atol=1e-6)


def test_align_visual_structure_needs_views(position_solver):
    structure = VisualStructure('/cam0')
    structure.views[0] = View(0, 0.5, 640, 480)
    structure.poses[0] = np.eye(4)
    assert not position_solver.align_visual_structure('/cam0', structure)


def test_add_visual_structure_notifies_viewer(position_solver):
    viewer = RecordingViewer()
    position_solver.viewer = viewer
    position_solver.add_visual_structure('/cam0', VisualStructure('/cam0'))
    assert ('structure', '/cam0') in viewer.calls
    assert '/cam0' in position_solver.visual_structures


def moving_scene(duration=1.2, rate=40.0, gravity=9.797):
    """IMU frames of a rotating, accelerating body plus the body pose at any time."""
    omega = np.array([0.05, -0.1, 0.2])
    v0, acce = np.array([0.5, 0.1, 0.0]), np.array([0.3, -0.2, 0.1])

    def pose(t):
        return se3_from_rt(so3_exp(omega * t), v0 * t + 0.5 * acce * t ** 2)

    frames = []
    for t in np.arange(0.0, duration, 1.0 / rate):
        R = pose(t)[:3, :3]
        frames.append(ImuFrame(t, R.T @ (acce + np.array([0.0, 0.0, gravity])), omega))
    return frames, pose


def reconstruct(topic, pose, times, points, intrinsics):
    """Up-to-scale reconstruction, in its own frame, of points seen from the camera at `times`."""
    R_s, t_s, s = so3_exp(np.array([0.2, 0.4, -0.3])), np.array([-1.0, 0.5, 2.0]), 0.5
    structure = VisualStructure(topic)
    for v, t in enumerate(times):
        T = pose(t)
        structure.views[v] = View(v, t, 640, 480)
        structure.poses[v] = se3_from_rt(R_s.T @ T[:3, :3], R_s.T @ (T[:3, 3] - t_s) / s)
    for k, X in enumerate(points):
        landmark = Landmark(R_s.T @ (X - t_s) / s)
        for v, t in enumerate(times):
            T = pose(t)
            landmark.observations[v] = Observation(intrinsics.project(T[:3, :3].T @ (X - T[:3, 3])), k)
        structure.landmarks[k] = landmark
    return structure


def test_solve_with_visual_structure(tmp_path):
    config = make_config(camera=('/cam0',), output_path=tmp_path, so3_knot_dt=0.1, scale_knot_dt=0.1)
    config.preference.max_iterations = 4
    config.preference.threads = 2
    frames, pose = moving_scene()
    registry = SensorStreamRegistry()
    registry.set_stream(Modality.IMU, '/imu0', frames)
    solver = CalibSolver(registry, TimeWindow(0.0, 1.2, 0.1), config)

    points = [np.array([x, y, 5.0]) for x, y in [(0.0, 0.0), (1.0, 0.5), (-1.0, 0.8), (0.5, -1.0), (-0.6, -0.4)]]
    times = np.arange(0.3, 0.95, 0.1)
    structure = reconstruct('/cam0', pose, times, points, solver.params.intrinsics('/cam0'))
    reconstructed = structure.landmarks[0].position.copy()
    solver.add_visual_structure('/cam0', structure)

    full = solver.build_problem('full')
    assert ('landmark', ('/cam0', 0)) in full.blocks
    assert full.num_residuals > len(points) * len(times)

    with solver:
        summary = solver.solve()
    assert list(solver.summaries) == ['rotation', 'inertial', 'full']
    assert solver.summaries['rotation'].final_cost < solver.summaries['rotation'].initial_cost
    assert solver.summaries['inertial'].final_cost < solver.summaries['inertial'].initial_cost
    assert summary.final_cost <= summary.initial_cost
    assert (tmp_path / 'iteration' / 'stage' / 'inertial.yaml').exists()
    # the landmarks were moved into the trajectory frame
    assert not np.allclose(structure.landmarks[0].position, reconstructed)
