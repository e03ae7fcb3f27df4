"""
Measurement models of the calibration problem.

Each factory returns ``(func, keys)``: ``func(*values)`` computes the weighted
residual from the values of the parameter blocks named by ``keys``, without
reading or writing any shared state. Parameter block keys are tuples:

    ("so3_knot", i)        rotation spline knot (3,3)
    ("scale_knot", i)      scale spline knot (3,)
    ("so3_ext", topic)     sensor to body rotation (3,3)
    ("pos_ext", topic)     sensor to body translation (3,)
    ("time_offset", topic) sensor clock to reference clock (1,)
    ("gyro_bias", topic)   (3,)
    ("acce_bias", topic)   (3,)
    ("gravity",)           gravity in the reference frame (3,), scaled to its norm
    ("landmark", id)       visual landmark position (3,)
"""

import numpy as np

from .geometry import so3_hat


def so3_knot_key(i):
    return ("so3_knot", i)


def scale_knot_key(i):
    return ("scale_knot", i)


GRAVITY_KEY = ("gravity",)


def _split(values, n_so3, n_scale):
    return values[:n_so3], values[n_so3:n_so3 + n_scale], values[n_so3 + n_scale:]


def _knot_lookup(indices, knots):
    table = dict(zip(indices, knots))
    return table.__getitem__


def _scaled_gravity(gravity, norm):
    return norm * gravity / np.linalg.norm(gravity)


def gyro_residual(bundle, topic, frame, so3_idx, weight=1.0):
    """
    R_ItoB^T * omega_B(t + offset) + b_g - gyro

    so3_idx must cover every knot the time offset can reach.
    """
    n = len(so3_idx)

    def func(*values):
        so3_knots, _, (R_ItoB, offset, gyro_bias) = _split(values, n, 0)
        t = frame.timestamp + offset[0]
        omega_b = bundle.so3_spline.angular_velocity(t, knot=_knot_lookup(so3_idx, so3_knots))
        return weight * (R_ItoB.T @ omega_b + gyro_bias - frame.gyro)

    keys = [so3_knot_key(i) for i in so3_idx]
    keys += [("so3_ext", topic), ("time_offset", topic), ("gyro_bias", topic)]
    return func, keys


def acce_residual(bundle, topic, frame, so3_idx, scale_idx, gravity_norm, weight=1.0):
    """
    Specific force of a lever-armed IMU:

        R_ItoB^T (R_BtoW^T (a_W - g) + ([alpha]x + [omega]x^2) p_ItoB) + b_a - acce

    a_W comes from the second, first or zeroth derivative of the scale spline,
    depending on what it carries.
    """
    n_so3, n_scale = len(so3_idx), len(scale_idx)

    def func(*values):
        so3_knots, scale_knots, (R_ItoB, p_ItoB, offset, acce_bias, gravity) = _split(values, n_so3, n_scale)
        t = frame.timestamp + offset[0]
        so3_knot = _knot_lookup(so3_idx, so3_knots)
        R_BtoW = bundle.so3_spline.evaluate(t, knot=so3_knot)
        omega = bundle.so3_spline.angular_velocity(t, knot=so3_knot)
        alpha = bundle.so3_spline.angular_acceleration(t, knot=so3_knot)
        a_w = bundle.linear_state(t, 2, knot=_knot_lookup(scale_idx, scale_knots))

        g = _scaled_gravity(gravity, gravity_norm)
        omega_hat = so3_hat(omega)
        lever = (so3_hat(alpha) + omega_hat @ omega_hat) @ p_ItoB
        force = R_ItoB.T @ (R_BtoW.T @ (a_w - g) + lever) + acce_bias
        return weight * (force - frame.acce)

    keys = [so3_knot_key(i) for i in so3_idx] + [scale_knot_key(i) for i in scale_idx]
    keys += [("so3_ext", topic), ("pos_ext", topic), ("time_offset", topic), ("acce_bias", topic), GRAVITY_KEY]
    return func, keys


def radar_residual(bundle, topic, target, so3_idx, scale_idx, weight=1.0):
    """
    Doppler velocity of a static target:

        d^T (R_RtoW^T v_R) + v_r,    v_R = v_B + R_BtoW (omega x p_RtoB)

    Needs the velocity of the body, so the scale spline must carry position
    or velocity.
    """
    n_so3, n_scale = len(so3_idx), len(scale_idx)
    direction = target.direction

    def func(*values):
        so3_knots, scale_knots, (R_RtoB, p_RtoB, offset) = _split(values, n_so3, n_scale)
        t = target.timestamp + offset[0]
        so3_knot = _knot_lookup(so3_idx, so3_knots)
        R_BtoW = bundle.so3_spline.evaluate(t, knot=so3_knot)
        omega = bundle.so3_spline.angular_velocity(t, knot=so3_knot)
        v_b = bundle.linear_state(t, 1, knot=_knot_lookup(scale_idx, scale_knots))

        v_r = v_b + R_BtoW @ np.cross(omega, p_RtoB)
        v_in_radar = R_RtoB.T @ (R_BtoW.T @ v_r)
        return np.array([weight * (direction @ v_in_radar + target.radial_velocity)])

    keys = [so3_knot_key(i) for i in so3_idx] + [scale_knot_key(i) for i in scale_idx]
    keys += [("so3_ext", topic), ("pos_ext", topic), ("time_offset", topic)]
    return func, keys


def reprojection_residual(bundle, topic, intrinsics, timestamp, landmark_id, pixel, so3_idx, scale_idx,
                          weight=1.0):
    """Pinhole reprojection error of a landmark observed at `pixel` (undistorted image)."""
    n_so3, n_scale = len(so3_idx), len(scale_idx)
    pixel = np.asarray(pixel, dtype=float)

    def func(*values):
        so3_knots, scale_knots, (R_CtoB, p_CtoB, offset, landmark) = _split(values, n_so3, n_scale)
        t = timestamp + offset[0]
        R_BtoW = bundle.so3_spline.evaluate(t, knot=_knot_lookup(so3_idx, so3_knots))
        p_BinW = bundle.linear_state(t, 0, knot=_knot_lookup(scale_idx, scale_knots))

        R_CtoW = R_BtoW @ R_CtoB
        p_CinW = R_BtoW @ p_CtoB + p_BinW
        p_c = R_CtoW.T @ (landmark - p_CinW)
        # points behind the camera keep a finite, large error
        p_c[2] = max(p_c[2], 1e-6)
        return weight * (intrinsics.project(p_c) - pixel)

    keys = [so3_knot_key(i) for i in so3_idx] + [scale_knot_key(i) for i in scale_idx]
    keys += [("so3_ext", topic), ("pos_ext", topic), ("time_offset", topic), ("landmark", landmark_id)]
    return func, keys
