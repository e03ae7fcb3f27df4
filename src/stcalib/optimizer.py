"""
Sparse Levenberg-Marquardt over heterogeneous parameter blocks.

A problem is a set of parameter blocks (Euclidean vectors with optional
bounds, or rotation matrices updated on the right, R <- R @ exp(delta)) and
residual blocks. A residual block is a pure function of the values of the
blocks it declares, so Jacobians are built by forward differences, block by
block, on a thread pool.

After every accepted step the new values are pushed through the blocks'
setters before the iteration callbacks run, so callbacks observe the
current estimate.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import spsolve

from .geometry import so3_exp, so3_log

logger = logging.getLogger(__name__)


class ParameterBlock:
    """Euclidean block with optional element-wise bounds."""

    def __init__(self, value, lower=None, upper=None, setter=None):
        self.value = np.array(value, dtype=float).reshape(-1)
        self.lower = None if lower is None else np.broadcast_to(np.asarray(lower, dtype=float), self.value.shape)
        self.upper = None if upper is None else np.broadcast_to(np.asarray(upper, dtype=float), self.value.shape)
        self.setter = setter
        self.constant = False

    @property
    def local_size(self):
        return self.value.size

    def plus(self, value, delta):
        new = value + delta
        if self.lower is not None:
            new = np.maximum(new, self.lower)
        if self.upper is not None:
            new = np.minimum(new, self.upper)
        return new

    def basis_step(self, value, k, h):
        """Perturbation of size h along local axis k, flipped when it would leave the bounds."""
        delta = np.zeros(self.local_size)
        if self.upper is not None and value[k] + h > self.upper[k]:
            h = -h
        delta[k] = h
        return delta

    def norm(self, value):
        return float(np.linalg.norm(value))

    def commit(self):
        if self.setter is not None:
            self.setter(self.value)


class So3Block(ParameterBlock):
    """Rotation matrix block with a 3-dof right-multiplicative update."""

    def __init__(self, value, setter=None):
        self.value = np.array(value, dtype=float).reshape(3, 3)
        self.lower = None
        self.upper = None
        self.setter = setter
        self.constant = False

    @property
    def local_size(self):
        return 3

    def plus(self, value, delta):
        return value @ so3_exp(delta)

    def norm(self, value):
        return float(np.linalg.norm(so3_log(value)))


class CauchyLoss:
    """rho(s) = c^2 log(1 + s / c^2) on the squared residual norm s."""

    def __init__(self, scale):
        self.c2 = float(scale) ** 2

    def rho(self, s):
        return self.c2 * np.log1p(s / self.c2)

    def weight(self, s):
        # first derivative of rho, used as an IRLS weight
        return 1.0 / (1.0 + s / self.c2)


class ResidualBlock:
    def __init__(self, func, keys, loss=None):
        """
        Args:
            func (callable): func(*values) -> (m,) residual, one value per key.
            keys (list): Parameter block keys, in the order func expects them.
            loss (CauchyLoss): Optional robust loss.
        """
        self.func = func
        self.keys = list(keys)
        self.loss = loss

    def evaluate(self, values):
        return np.atleast_1d(np.asarray(self.func(*[values[k] for k in self.keys]), dtype=float))

    def cost(self, values):
        r = self.evaluate(values)
        s = float(r @ r)
        return 0.5 * (self.loss.rho(s) if self.loss is not None else s)


class Problem:
    def __init__(self):
        self.blocks = {}
        self.residual_blocks = []

    def add_parameter_block(self, key, block):
        """Registers a block under key; an already registered key keeps its block."""
        return self.blocks.setdefault(key, block)

    def has_parameter_block(self, key):
        return key in self.blocks

    def add_residual_block(self, func, keys, loss=None):
        for key in keys:
            if key not in self.blocks:
                raise KeyError(f"parameter block {key} is not part of the problem.")
        block = ResidualBlock(func, keys, loss)
        self.residual_blocks.append(block)
        return block

    def set_constant(self, key):
        self.blocks[key].constant = True

    def set_variable(self, key):
        self.blocks[key].constant = False

    def values(self):
        return {key: block.value for key, block in self.blocks.items()}

    def cost(self, values=None):
        values = self.values() if values is None else values
        return sum(rb.cost(values) for rb in self.residual_blocks)

    @property
    def num_residuals(self):
        return len(self.residual_blocks)


@dataclass
class SolverOptions:
    max_iterations: int = 30
    function_tolerance: float = 1e-6
    gradient_tolerance: float = 1e-10
    parameter_tolerance: float = 1e-8
    num_threads: int = 4
    initial_trust_region_radius: float = 1e4
    min_relative_decrease: float = 1e-3
    jacobian_step: float = 1e-6

    @classmethod
    def from_config(cls, config):
        pref = config.preference
        return cls(
            max_iterations=pref.max_iterations,
            function_tolerance=pref.function_tolerance,
            gradient_tolerance=pref.gradient_tolerance,
            parameter_tolerance=pref.parameter_tolerance,
            num_threads=pref.threads,
        )


@dataclass
class IterationSummary:
    iteration: int
    cost: float
    gradient_norm: float
    trust_region_radius: float
    step_norm: float


@dataclass
class SolverSummary:
    initial_cost: float
    final_cost: float
    iterations: int
    termination: str
    message: str

    def brief_report(self):
        return (f"{self.termination}: initial cost {self.initial_cost:.6e}, final cost {self.final_cost:.6e}, "
                f"iterations {self.iterations} ({self.message})")


def _linearize(rb, values, offsets, step):
    """Residual, robust weight and Jacobian triplets of one residual block."""
    r = rb.evaluate(values)
    w = 1.0
    if rb.loss is not None:
        w = np.sqrt(rb.loss.weight(float(r @ r)))

    args = [values[k] for k in rb.keys]
    cols, jac = [], []
    for pos, key in enumerate(rb.keys):
        if key not in offsets:
            continue
        block, offset = offsets[key]
        for k in range(block.local_size):
            delta = block.basis_step(args[pos], k, step)
            perturbed = list(args)
            perturbed[pos] = block.plus(args[pos], delta)
            r_plus = np.atleast_1d(np.asarray(rb.func(*perturbed), dtype=float))
            jac.append((r_plus - r) / delta[k])
            cols.append(offset + k)
    J = np.column_stack(jac) if jac else np.zeros((r.size, 0))
    return w * r, w * J, cols


class LevenbergMarquardt:
    def __init__(self, problem, options=None, callbacks=()):
        self.problem = problem
        self.options = options or SolverOptions()
        self.callbacks = list(callbacks)

        self.offsets = {}
        n = 0
        for key, block in problem.blocks.items():
            if not block.constant:
                self.offsets[key] = (block, n)
                n += block.local_size
        self.num_params = n

    def _jacobian(self, values, executor):
        results = list(executor.map(
            lambda rb: _linearize(rb, values, self.offsets, self.options.jacobian_step),
            self.problem.residual_blocks,
        ))
        rows, cols, data, residuals = [], [], [], []
        row = 0
        for r, J, jcols in results:
            m = r.size
            if jcols:
                rr, cc = np.meshgrid(np.arange(row, row + m), jcols, indexing='ij')
                rows.append(rr.ravel())
                cols.append(cc.ravel())
                data.append(J.ravel())
            residuals.append(r)
            row += m
        if data:
            J = sp.csr_matrix(
                (np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))),
                shape=(row, self.num_params),
            )
        else:
            J = sp.csr_matrix((row, self.num_params))
        return np.concatenate(residuals) if residuals else np.zeros(0), J

    def _apply(self, values, delta):
        new = dict(values)
        for key, (block, offset) in self.offsets.items():
            new[key] = block.plus(values[key], delta[offset:offset + block.local_size])
        return new

    def _param_norm(self, values):
        return float(np.sqrt(sum(block.norm(values[key]) ** 2 for key, (block, _) in self.offsets.items())))

    def _commit(self, values):
        for key, (block, _) in self.offsets.items():
            block.value = values[key]
            block.commit()

    def solve(self):
        opt = self.options
        values = self.problem.values()
        cost = self.problem.cost(values)
        initial_cost = cost

        if self.num_params == 0 or self.problem.num_residuals == 0:
            return SolverSummary(initial_cost, cost, 0, "CONVERGENCE", "nothing to optimize")

        radius = opt.initial_trust_region_radius
        nu = 2.0
        termination, message = "NO_CONVERGENCE", "maximum number of iterations reached"
        iteration = 0

        with ThreadPoolExecutor(max_workers=max(1, opt.num_threads)) as executor:
            r, J = self._jacobian(values, executor)
            while iteration < opt.max_iterations:
                iteration += 1
                JtJ = (J.T @ J).tocsc()
                g = J.T @ r
                gradient_norm = float(np.max(np.abs(g))) if g.size else 0.0
                if gradient_norm <= opt.gradient_tolerance:
                    termination, message = "CONVERGENCE", "gradient tolerance reached"
                    break

                D = np.clip(JtJ.diagonal(), 1e-6, 1e32)
                A = JtJ + sp.diags(D / radius, format='csc')
                delta = np.atleast_1d(spsolve(A, -g))
                step_norm = float(np.linalg.norm(delta))

                if not np.all(np.isfinite(delta)):
                    radius /= nu
                    nu *= 2.0
                    continue

                x_norm = self._param_norm(values)
                if step_norm <= opt.parameter_tolerance * (x_norm + opt.parameter_tolerance):
                    termination, message = "CONVERGENCE", "parameter tolerance reached"
                    break

                candidate = self._apply(values, delta)
                new_cost = self.problem.cost(candidate)
                predicted = -(g @ delta) - 0.5 * (delta @ (JtJ @ delta))
                rho = (cost - new_cost) / predicted if predicted > 0 else -1.0

                if rho > opt.min_relative_decrease and np.isfinite(new_cost):
                    decrease = cost - new_cost
                    values, cost = candidate, new_cost
                    radius = radius / max(1.0 / 3.0, 1.0 - (2.0 * rho - 1.0) ** 3)
                    nu = 2.0
                    self._commit(values)

                    summary = IterationSummary(iteration, cost, gradient_norm, radius, step_norm)
                    logger.debug(
                        f"iter {iteration:3d}: cost {cost:.6e}, |g| {gradient_norm:.3e}, "
                        f"tr radius {radius:.3e}, |step| {step_norm:.3e}"
                    )
                    for callback in self.callbacks:
                        callback(summary)

                    if decrease <= opt.function_tolerance * cost or cost == 0.0:
                        termination, message = "CONVERGENCE", "function tolerance reached"
                        break
                    r, J = self._jacobian(values, executor)
                else:
                    radius /= nu
                    nu *= 2.0

        self._commit(values)
        return SolverSummary(initial_cost, cost, iteration, termination, message)


def solve(problem, options=None, callbacks=()):
    """Minimizes the problem in place and returns a SolverSummary."""
    return LevenbergMarquardt(problem, options, callbacks).solve()
