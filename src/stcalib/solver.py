"""
Calibration solver: builds the least-squares problems over the trajectory
and the calibration parameters and refines them stage by stage.

    CONSTRUCTED --> (SFM_PREPARING | SFM_LOADING)* --> OPTIMIZING --> FINISHED
"""

import csv
import logging
import shutil
from enum import Enum
from pathlib import Path

import numpy as np

from . import residuals, sfm
from .config import Modality, ScaleSplineType
from .errors import ScaleSplineTypeError
from .geometry import se3_from_rt, umeyama_alignment
from .optimizer import Problem, ParameterBlock, So3Block, CauchyLoss, SolverOptions, solve
from .params import CalibParamSet
from .spline import SplineBundle

logger = logging.getLogger(__name__)


class SolverState(Enum):
    CONSTRUCTED = 0
    SFM_PREPARING = 1
    SFM_LOADING = 2
    OPTIMIZING = 3
    FINISHED = 4


class Viewer:
    """
    Interface of an interactive viewer fed by the solver.

    The base implementation ignores every update.
    """

    def update_spline(self, bundle):
        pass

    def update_params(self, params):
        pass

    def add_visual_structure(self, topic, structure):
        pass

    def quit(self):
        pass


class LogViewer(Viewer):
    """Viewer reporting updates to the log, for sessions without a display."""

    def __init__(self):
        self.updates = 0

    def update_spline(self, bundle):
        self.updates += 1
        logger.debug(f"viewer: spline update #{self.updates}, "
                     f"{bundle.so3_spline.num_knots} so3 knots, {bundle.scale_spline.num_knots} scale knots")

    def update_params(self, params):
        logger.debug(f"viewer: gravity {np.array2string(params.gravity, precision=4)}")

    def add_visual_structure(self, topic, structure):
        logger.debug(f"viewer: visual structure of '{topic}' with {len(structure.landmarks)} landmarks")

    def quit(self):
        logger.debug("viewer: quit")


class DebugCallback:
    """Writes a parameter snapshot and an epoch_info.csv line after every accepted iteration."""

    def __init__(self, params, output_path, fmt='yaml'):
        self.params = params
        self.fmt = fmt
        self.output_dir = Path(output_path) / 'iteration' / 'epoch'
        self.idx = 0
        self._file = None
        self._writer = None

        if self.output_dir.exists():
            shutil.rmtree(self.output_dir)
        try:
            self.output_dir.mkdir(parents=True)
        except OSError as e:
            logger.warning(f"create directory failed: '{self.output_dir}' ({e})")
            return
        self._file = open(self.output_dir / 'epoch_info.csv', 'w', newline='')
        self._writer = csv.writer(self._file)
        self._writer.writerow(['cost', 'gradient', 'tr_radius(1/lambda)'])

    def __call__(self, summary):
        if self._writer is None:
            return
        self.params.save(self.output_dir / f'param_{self.idx}.{self.fmt}', self.fmt)
        self._writer.writerow([summary.cost, summary.gradient_norm, summary.trust_region_radius])
        self._file.flush()
        self.idx += 1

    def close(self):
        if self._file is not None:
            self._file.close()
            self._file = None
            self._writer = None


class ViewerCallback:
    def __init__(self, viewer, solver):
        self.viewer = viewer
        self.solver = solver

    def __call__(self, summary):
        self.viewer.update_spline(self.solver.bundle)
        self.viewer.update_params(self.solver.params)


class CalibSolver:
    def __init__(self, registry, window, config, params=None, viewer=None):
        """
        Args:
            registry (SensorStreamRegistry): Aligned sensor streams.
            window (TimeWindow): Window returned by the alignment.
            config (Config): Session configuration.
            params (CalibParamSet): Initial parameters, identity ones when None.
            viewer (Viewer): Optional viewer updated after every accepted iteration.
        """
        self.registry = registry
        self.window = window
        self.config = config
        self.params = params if params is not None else CalibParamSet.from_config(config)
        self.viewer = viewer
        self.output_path = Path(config.data_stream.output_path)
        self.padding = config.prior.time_offset_padding

        self.bundle = SplineBundle.create(
            window.calib_start, window.calib_end,
            config.prior.so3_knot_dt, config.prior.scale_knot_dt, config.scale_spline_type(),
        )
        self.visual_structures = {}
        self.summaries = {}
        self.state = SolverState.CONSTRUCTED
        self.solve_finished = False
        self._debug_callback = None

    # -------
    # queries
    # -------

    def evaluate_body_pose(self, t):
        """Body to world pose at t (4x4), None outside the trajectory."""
        if self.bundle.scale_type != ScaleSplineType.LIN_POS_SPLINE:
            raise ScaleSplineTypeError(
                f"body poses need a position spline, the scale spline is a '{self.bundle.scale_type.name}'!"
            )
        R = self.bundle.evaluate_rotation(t)
        p = self.bundle.evaluate_scale(t)
        if R is None or p is None:
            return None
        return se3_from_rt(R, p)

    def evaluate_sensor_pose(self, t, topic):
        """Sensor to world pose at sensor time t (4x4), None outside the trajectory."""
        T_SensorToBody = self.params.se3_sensor_to_body(topic)
        T_BodyToWorld = self.evaluate_body_pose(t + self.params.offset(topic))
        if T_BodyToWorld is None:
            return None
        return T_BodyToWorld @ T_SensorToBody

    def export_trajectory(self, times=None, topic=None, dt=0.01):
        """
        Samples the trajectory.

        Returns:
            list: (t, 4x4 pose) pairs, body poses or the poses of `topic`.
        """
        if times is None:
            times = np.arange(self.bundle.min_time, self.bundle.max_time, dt)
        poses = []
        for t in times:
            T = self.evaluate_body_pose(t) if topic is None else self.evaluate_sensor_pose(t, topic)
            if T is not None:
                poses.append((float(t), T))
        return poses

    # -----------
    # visual data
    # -----------

    def sfm_workspace(self, topic):
        return sfm.sfm_workspace(self.output_path, topic)

    def prepare_visual_data(self, topic, matches=None):
        """Exports the images of a camera topic for an external reconstruction."""
        self.state = SolverState.SFM_PREPARING
        frames = self.registry.get(Modality.CAMERA, topic)
        if matches is None:
            matches = sfm.make_sequential_matches(frames, self.config.preference.sfm_match_overlap)
        return sfm.export_images_for_sfm(
            frames, self.params.intrinsics(topic), topic, self.sfm_workspace(topic), matches,
            fmt=self.config.preference.output_format,
        )

    def load_visual_data(self, topic, reproj_error_thd=None, track_len_thd=None):
        """Reads the reconstruction of a camera topic, None when it is not available yet."""
        self.state = SolverState.SFM_LOADING
        prior = self.config.prior
        return sfm.load_visual_structure(
            self.registry.get(Modality.CAMERA, topic), self.params.intrinsics(topic), topic,
            self.sfm_workspace(topic),
            prior.reproj_error_thd if reproj_error_thd is None else reproj_error_thd,
            prior.track_len_thd if track_len_thd is None else track_len_thd,
            fmt=self.config.preference.output_format,
        )

    @staticmethod
    def transform_visual_structure(structure, transform, scale=1.0):
        return sfm.transform_visual_structure(structure, transform, scale)

    def downsample_visual_structure(self, structure, max_landmarks=None, max_obs=None, rng=None):
        prior = self.config.prior
        return sfm.downsample_visual_structure(
            structure,
            prior.max_landmarks if max_landmarks is None else max_landmarks,
            prior.max_obs_per_landmark if max_obs is None else max_obs,
            rng=rng,
        )

    def add_visual_structure(self, topic, structure):
        """Registers a structure whose landmarks join the final stage."""
        self.visual_structures[topic] = structure
        if self.viewer is not None:
            self.viewer.add_visual_structure(topic, structure)

    def align_visual_structure(self, topic, structure):
        """
        Brings an up-to-scale reconstruction into the trajectory frame with the
        similarity between reconstructed and predicted camera positions.

        Returns:
            bool: False when fewer than three views fall inside the trajectory.
        """
        src, dst = [], []
        for view_id, view in structure.views.items():
            T = self.evaluate_sensor_pose(view.timestamp, topic)
            if T is None:
                continue
            src.append(structure.poses[view_id][:3, 3])
            dst.append(T[:3, 3])
        if len(src) < 3:
            logger.warning(f"not enough views of '{topic}' inside the trajectory to align its reconstruction.")
            return False
        R, t, s = umeyama_alignment(np.array(src), np.array(dst), with_scale=True)
        logger.info(f"align visual structure of '{topic}', scale: {s:.5f}")
        self.transform_visual_structure(structure, se3_from_rt(R, t), s)
        return True

    # ----------------
    # problem assembly
    # ----------------

    def _make_block(self, key):
        kind = key[0]
        params = self.params
        if kind == 'so3_knot':
            spline, i = self.bundle.so3_spline, key[1]
            return So3Block(spline.get_knot(i), setter=lambda v: spline.set_knot(i, v))
        if kind == 'scale_knot':
            spline, i = self.bundle.scale_spline, key[1]
            return ParameterBlock(spline.get_knot(i), setter=lambda v: spline.set_knot(i, v))

        if kind == 'gravity':
            norm = self.config.prior.gravity_norm

            def set_gravity(v):
                params.gravity = norm * v / np.linalg.norm(v)
            return ParameterBlock(params.gravity, setter=set_gravity)

        if kind == 'landmark':
            topic, lm_id = key[1]
            landmark = self.visual_structures[topic].landmarks[lm_id]

            def set_position(v):
                landmark.position = v.copy()
            return ParameterBlock(landmark.position, setter=set_position)

        topic = key[1]
        if kind == 'so3_ext':
            return So3Block(params.rotation(topic),
                            setter=lambda v: params.so3_sensor_to_body.__setitem__(topic, v.copy()))
        if kind == 'pos_ext':
            return ParameterBlock(params.translation(topic),
                                  setter=lambda v: params.pos_sensor_to_body.__setitem__(topic, v.copy()))
        if kind == 'time_offset':
            return ParameterBlock([params.offset(topic)], lower=-self.padding, upper=self.padding,
                                  setter=lambda v: params.time_offset.__setitem__(topic, float(v[0])))
        if kind == 'gyro_bias':
            imu = params.imu_intrinsics(topic)
            return ParameterBlock(imu.gyro_bias, setter=lambda v: setattr(imu, 'gyro_bias', v.copy()))
        if kind == 'acce_bias':
            imu = params.imu_intrinsics(topic)
            return ParameterBlock(imu.acce_bias, setter=lambda v: setattr(imu, 'acce_bias', v.copy()))
        raise KeyError(f"unknown parameter block {key}")

    def _add_residual(self, problem, func, keys, loss=None):
        for key in keys:
            if not problem.has_parameter_block(key):
                problem.add_parameter_block(key, self._make_block(key))
                # the reference imu defines the body frame and the reference clock
                if key[0] in ('so3_ext', 'pos_ext', 'time_offset') and key[1] == self.config.reference_imu:
                    problem.set_constant(key)
        problem.add_residual_block(func, keys, loss)

    def _support(self, spline, t, topic):
        """Knots reachable from sensor time t over the admissible time offsets, None if out of range."""
        pad = 0.0 if topic == self.config.reference_imu else self.padding
        if t - pad < spline.min_time or t + pad > spline.max_time:
            return None
        return spline.knot_indices(t - pad, t + pad)

    def _weight(self, modality, topic):
        return self.config.data_stream.topics(modality)[topic].weight

    def _add_gyro_residuals(self, problem):
        for topic, frames in self.registry.items(Modality.IMU):
            weight = self._weight(Modality.IMU, topic)
            for frame in frames:
                so3_idx = self._support(self.bundle.so3_spline, frame.timestamp, topic)
                if so3_idx is None:
                    continue
                self._add_residual(problem, *residuals.gyro_residual(self.bundle, topic, frame, so3_idx, weight))

    def _add_acce_residuals(self, problem):
        gravity_norm = self.config.prior.gravity_norm
        for topic, frames in self.registry.items(Modality.IMU):
            weight = self._weight(Modality.IMU, topic)
            for frame in frames:
                so3_idx = self._support(self.bundle.so3_spline, frame.timestamp, topic)
                scale_idx = self._support(self.bundle.scale_spline, frame.timestamp, topic)
                if so3_idx is None or scale_idx is None:
                    continue
                self._add_residual(problem, *residuals.acce_residual(
                    self.bundle, topic, frame, so3_idx, scale_idx, gravity_norm, weight))

    def _add_radar_residuals(self, problem):
        if not self.registry.is_integrated(Modality.RADAR):
            return
        if self.bundle.scale_type == ScaleSplineType.LIN_ACCE_SPLINE:
            raise ScaleSplineTypeError("radar residuals need a position or velocity scale spline!")
        for topic, arrays in self.registry.items(Modality.RADAR):
            weight = self._weight(Modality.RADAR, topic)
            for array in arrays:
                for target in array.targets:
                    so3_idx = self._support(self.bundle.so3_spline, target.timestamp, topic)
                    scale_idx = self._support(self.bundle.scale_spline, target.timestamp, topic)
                    if so3_idx is None or scale_idx is None:
                        continue
                    self._add_residual(problem, *residuals.radar_residual(
                        self.bundle, topic, target, so3_idx, scale_idx, weight))

    def _add_visual_residuals(self, problem):
        if not self.visual_structures:
            return
        if self.bundle.scale_type != ScaleSplineType.LIN_POS_SPLINE:
            raise ScaleSplineTypeError("visual residuals need a position scale spline!")
        loss = CauchyLoss(self.config.prior.visual_loss_scale)
        for topic, structure in self.visual_structures.items():
            weight = self._weight(Modality.CAMERA, topic)
            intrinsics = self.params.intrinsics(topic)
            for lm_id, landmark in structure.landmarks.items():
                for view_id, obs in landmark.observations.items():
                    t = structure.views[view_id].timestamp
                    so3_idx = self._support(self.bundle.so3_spline, t, topic)
                    scale_idx = self._support(self.bundle.scale_spline, t, topic)
                    if so3_idx is None or scale_idx is None:
                        continue
                    func, keys = residuals.reprojection_residual(
                        self.bundle, topic, intrinsics, t, (topic, lm_id), obs.xy, so3_idx, scale_idx, weight)
                    self._add_residual(problem, func, keys, loss)

    def build_problem(self, stage):
        """
        Assembles the problem of a stage:

            rotation: gyroscope residuals only
            inertial: gyroscope, accelerometer and radar residuals
            full:     inertial plus visual reprojection residuals
        """
        problem = Problem()
        self._add_gyro_residuals(problem)
        if stage in ('inertial', 'full'):
            self._add_acce_residuals(problem)
            self._add_radar_residuals(problem)
        if stage == 'full':
            self._add_visual_residuals(problem)
        logger.info(f"stage '{stage}': {len(problem.blocks)} parameter blocks, "
                    f"{problem.num_residuals} residual blocks")
        return problem

    # -------
    # solving
    # -------

    def save_stage_params(self, desc):
        param_dir = self.output_path / 'iteration' / 'stage'
        try:
            param_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"create directory failed: '{param_dir}' ({e})")
            return None
        path = param_dir / f"{desc}{self.config.format_extension()}"
        self.params.save(path, self.config.preference.output_format)
        return path

    def _callbacks(self):
        callbacks = []
        if self.config.preference.output_param_in_each_iter:
            if self._debug_callback is None:
                self._debug_callback = DebugCallback(
                    self.params, self.output_path, self.config.preference.output_format)
            callbacks.append(self._debug_callback)
        if self.viewer is not None:
            callbacks.append(ViewerCallback(self.viewer, self))
        return callbacks

    def _run_stage(self, stage, options, callbacks):
        problem = self.build_problem(stage)
        summary = solve(problem, options, callbacks)
        logger.info(f"stage '{stage}': {summary.brief_report()}")
        self.summaries[stage] = summary
        self.save_stage_params(stage)
        return summary

    def solve(self):
        """
        Runs the optimization stages, then optionally re-expresses everything in a
        gravity-aligned world frame.

        Returns:
            SolverSummary: Summary of the final stage.
        """
        self.state = SolverState.OPTIMIZING
        if self.registry.is_integrated(Modality.LIDAR):
            logger.info("lidar frames are aligned but contribute no residual.")

        options = SolverOptions.from_config(self.config)
        callbacks = self._callbacks()

        summary = self._run_stage('rotation', options, callbacks)
        if self.visual_structures:
            self._run_stage('inertial', options, callbacks)
            for topic, structure in self.visual_structures.items():
                self.align_visual_structure(topic, structure)
        summary = self._run_stage('full', options, callbacks)

        if self.config.preference.align_to_gravity:
            self.align_to_gravity()

        self.params.show()
        self.solve_finished = True
        self.state = SolverState.FINISHED
        return summary

    def align_to_gravity(self):
        R_ref_to_w, gravity = self.bundle.align_to_gravity(self.params.gravity)
        self.params.gravity = gravity
        T = se3_from_rt(R_ref_to_w, np.zeros(3))
        for structure in self.visual_structures.values():
            self.transform_visual_structure(structure, T)
        return R_ref_to_w

    def close(self):
        if self._debug_callback is not None:
            self._debug_callback.close()
            self._debug_callback = None
        if self.viewer is not None and not self.solve_finished:
            self.viewer.quit()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
