"""
Continuous-time trajectory as a bundle of two uniform cubic B-splines.

The rotation spline is a cumulative B-spline on SO(3):

    R(t) = R_i * prod_{j=1..3} exp(lambda_j(u) * log(R_{i+j-1}^T R_{i+j}))

and the scale spline is a plain B-spline on R^3 carrying position, velocity
or acceleration depending on the active sensors.

Every evaluation accepts an optional `knot` callable (index -> knot value) so
callers can evaluate a perturbed state without touching the stored knots.
"""

import logging
import math

import numpy as np

from .config import ScaleSplineType
from .errors import TimeRangeError, ScaleSplineTypeError
from .geometry import so3_exp, so3_log, gravity_aligned_world_to_ref

logger = logging.getLogger(__name__)

SPLINE_ORDER = 4

# uniform cubic B-spline basis: rows are powers of u, columns are control points
_BASIS = np.array([
    [1, 4, 1, 0],
    [-3, 0, 3, 0],
    [3, -6, 3, 0],
    [-1, 3, -3, 1],
]) / 6.0


def _powers(u, derivative):
    if derivative == 0:
        return np.array([1.0, u, u * u, u * u * u])
    if derivative == 1:
        return np.array([0.0, 1.0, 2.0 * u, 3.0 * u * u])
    if derivative == 2:
        return np.array([0.0, 0.0, 2.0, 6.0 * u])
    raise ValueError("only derivatives up to the second order are supported.")


def blending(u, derivative=0):
    """Weights of the four control points at normalized time u (d^k/du^k)."""
    return _BASIS.T @ _powers(u, derivative)


def cumulative_blending(u, derivative=0):
    """Cumulative weights: element j is the sum of the weights of control points j..3."""
    return np.cumsum(blending(u, derivative)[::-1])[::-1]


class _UniformSpline:
    def __init__(self, start_time, end_time, dt):
        if dt <= 0:
            raise ValueError("knot time distance must be positive.")
        if end_time < start_time:
            raise ValueError("end_time must not be before start_time.")
        self.start_time = float(start_time)
        self.dt = float(dt)
        # one segment per dt, enough to cover end_time
        self.num_segments = max(1, math.ceil((end_time - start_time) / dt - 1e-9))

    @property
    def num_knots(self):
        return self.num_segments + SPLINE_ORDER - 1

    @property
    def min_time(self):
        return self.start_time

    @property
    def max_time(self):
        return self.start_time + self.num_segments * self.dt

    def time_in_range(self, t):
        return self.min_time <= t <= self.max_time

    def knot_time(self, i):
        return self.start_time + (i - 1) * self.dt

    def locate(self, t):
        """
        Segment index and normalized time for t.

        Returns:
            tuple: (idx, u) where knots idx..idx+3 support t and 0 <= u <= 1.
        """
        if not self.time_in_range(t):
            raise TimeRangeError(
                f"time '{t:.6f}' is out of the spline range [{self.min_time:.6f}, {self.max_time:.6f}]."
            )
        s = (t - self.start_time) / self.dt
        idx = min(int(math.floor(s)), self.num_segments - 1)
        return idx, s - idx

    def knot_indices(self, t_lower, t_upper):
        """Indices of every knot supporting some time in [t_lower, t_upper] (clipped to range)."""
        lo = min(max(t_lower, self.min_time), self.max_time)
        hi = min(max(t_upper, self.min_time), self.max_time)
        return list(range(self.locate(lo)[0], self.locate(hi)[0] + SPLINE_ORDER))

    def get_knot(self, i):
        return self.knots[i]

    def set_knot(self, i, value):
        self.knots[i] = value


class So3Spline(_UniformSpline):
    def __init__(self, start_time, end_time, dt):
        super().__init__(start_time, end_time, dt)
        self.knots = np.tile(np.eye(3), (self.num_knots, 1, 1))

    def _deltas(self, idx, knot):
        Rs = [knot(idx + j) for j in range(SPLINE_ORDER)]
        return Rs[0], [so3_log(Rs[j - 1].T @ Rs[j]) for j in range(1, SPLINE_ORDER)]

    def evaluate(self, t, knot=None):
        """Orientation (body to reference) at time t."""
        knot = knot or self.get_knot
        idx, u = self.locate(t)
        R, deltas = self._deltas(idx, knot)
        lam = cumulative_blending(u)
        R = R.copy()
        for j, d in enumerate(deltas, start=1):
            R = R @ so3_exp(lam[j] * d)
        return R

    def angular_velocity(self, t, knot=None):
        """Angular velocity at time t, expressed in the body frame."""
        knot = knot or self.get_knot
        idx, u = self.locate(t)
        _, deltas = self._deltas(idx, knot)
        lam = cumulative_blending(u)
        dlam = cumulative_blending(u, 1) / self.dt
        omega = np.zeros(3)
        for j, d in enumerate(deltas, start=1):
            A = so3_exp(lam[j] * d)
            omega = A.T @ omega + dlam[j] * d
        return omega

    def angular_acceleration(self, t, knot=None):
        """Angular acceleration at time t, expressed in the body frame."""
        knot = knot or self.get_knot
        idx, u = self.locate(t)
        _, deltas = self._deltas(idx, knot)
        lam = cumulative_blending(u)
        dlam = cumulative_blending(u, 1) / self.dt
        ddlam = cumulative_blending(u, 2) / self.dt ** 2
        omega = np.zeros(3)
        omega_dot = np.zeros(3)
        for j, d in enumerate(deltas, start=1):
            A = so3_exp(lam[j] * d)
            omega = A.T @ omega + dlam[j] * d
            omega_dot = A.T @ omega_dot + ddlam[j] * d + np.cross(omega, dlam[j] * d)
        return omega_dot


class RdSpline(_UniformSpline):
    def __init__(self, start_time, end_time, dt, dim=3):
        super().__init__(start_time, end_time, dt)
        self.knots = np.zeros((self.num_knots, dim))

    def evaluate(self, t, derivative=0, knot=None):
        knot = knot or self.get_knot
        idx, u = self.locate(t)
        w = blending(u, derivative) / self.dt ** derivative
        return sum(w[j] * knot(idx + j) for j in range(SPLINE_ORDER))


class SplineBundle:
    def __init__(self, so3_spline, scale_spline, scale_type):
        self.so3_spline = so3_spline
        self.scale_spline = scale_spline
        self.scale_type = scale_type

    @classmethod
    def create(cls, start_time, end_time, so3_dt, scale_dt, scale_type=ScaleSplineType.LIN_POS_SPLINE):
        """Identity rotation knots and zero scale knots covering [start_time, end_time]."""
        logger.info(
            f"create spline bundle: start time: '{start_time:.5f}', end time: '{end_time:.5f}', "
            f"so3 dt : '{so3_dt:.5f}', scale dt: '{scale_dt:.5f}', scale type: '{scale_type.name}'"
        )
        return cls(
            So3Spline(start_time, end_time, so3_dt),
            RdSpline(start_time, end_time, scale_dt),
            scale_type,
        )

    @property
    def min_time(self):
        return max(self.so3_spline.min_time, self.scale_spline.min_time)

    @property
    def max_time(self):
        return min(self.so3_spline.max_time, self.scale_spline.max_time)

    def time_in_range(self, t):
        return self.so3_spline.time_in_range(t) and self.scale_spline.time_in_range(t)

    def evaluate_rotation(self, t):
        """Rotation at t, or None outside the rotation spline's support."""
        if not self.so3_spline.time_in_range(t):
            return None
        return self.so3_spline.evaluate(t)

    def evaluate_scale(self, t, derivative=0):
        """Scale spline value (or derivative) at t, or None outside its support."""
        if not self.scale_spline.time_in_range(t):
            return None
        return self.scale_spline.evaluate(t, derivative)

    def linear_state(self, t, order, knot=None):
        """
        Position (order 0), velocity (1) or acceleration (2) in the reference frame.

        Raises:
            ScaleSplineTypeError: the active scale spline carries a higher derivative
                                  than the one requested.
        """
        derivative = order - self.scale_type.value
        if derivative < 0:
            names = {0: "position", 1: "velocity", 2: "acceleration"}
            raise ScaleSplineTypeError(
                f"the scale spline is a '{self.scale_type.name}', it can not provide {names[order]}!"
            )
        return self.scale_spline.evaluate(t, derivative, knot=knot)

    def align_to_gravity(self, gravity):
        """
        Re-expresses all states in a gravity-aligned world frame.

        Rotation knots are left-multiplied and scale knots rotated by the same
        rotation, which holds for position, velocity and acceleration splines.

        Args:
            gravity (np.ndarray): (3,) gravity in the current reference frame.

        Returns:
            tuple: (R_ref_to_world (3,3), gravity in the world frame (3,))
        """
        R_b0 = self.so3_spline.evaluate(self.so3_spline.min_time)
        R_ref_to_w = gravity_aligned_world_to_ref(R_b0, gravity).T

        self.so3_spline.knots = np.einsum('ij,njk->nik', R_ref_to_w, self.so3_spline.knots)
        self.scale_spline.knots = self.scale_spline.knots @ R_ref_to_w.T
        return R_ref_to_w, R_ref_to_w @ np.asarray(gravity, dtype=float)
