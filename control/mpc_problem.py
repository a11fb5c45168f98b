"""
MPC problem definition: variable layout, cost, dynamics constraints and bounds.

Everything here is a pure numpy function of (states, actuations, coefficients)
so it can be checked without any NLP backend.

Decision vector z is stacked as:
[x_0..x_{N-1}, y_*, psi_*, v_*, cte_*, epsi_*, delta_0..delta_{N-2}, a_0..a_{N-2}]
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Sequence, Tuple

import numpy as np

from control.mpc_config import CostWeights
from control.vehicle_model import ACTUATION_DIM, STATE_DIM
from trajectory.reference import poly_slope, poly_slope_derivative, polyeval

X, Y, PSI, V, CTE, EPSI = range(STATE_DIM)
DELTA, ACCEL = range(ACTUATION_DIM)


@dataclass(frozen=True)
class HorizonLayout:
    """Index bookkeeping for the stacked decision vector."""

    N: int

    @property
    def n_states(self) -> int:
        return STATE_DIM * self.N

    @property
    def n_actuations(self) -> int:
        return ACTUATION_DIM * (self.N - 1)

    @property
    def n_vars(self) -> int:
        return self.n_states + self.n_actuations

    @property
    def n_constraints(self) -> int:
        # Initial state pin plus one dynamics block per step pair.
        return STATE_DIM * self.N

    def state_start(self, field_index: int) -> int:
        return field_index * self.N

    def actuation_start(self, field_index: int) -> int:
        return self.n_states + field_index * (self.N - 1)

    def unpack(self, z: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Split z into states (N, 6) and actuations (N-1, 2)."""
        z = np.asarray(z, dtype=float)
        if z.shape != (self.n_vars,):
            raise ValueError(f"Expected decision vector of length {self.n_vars}, got {z.shape}")
        states = z[:self.n_states].reshape(STATE_DIM, self.N).T
        actuations = z[self.n_states:].reshape(ACTUATION_DIM, self.N - 1).T
        return states, actuations

    def pack(self, states: np.ndarray, actuations: np.ndarray) -> np.ndarray:
        states = np.asarray(states, dtype=float).reshape(self.N, STATE_DIM)
        actuations = np.asarray(actuations, dtype=float).reshape(self.N - 1, ACTUATION_DIM)
        return np.concatenate([states.T.ravel(), actuations.T.ravel()])


def cost_terms(states: np.ndarray, actuations: np.ndarray, ref_v: float,
               weights: CostWeights) -> Dict[str, float]:
    """Weighted value of each cost term."""
    delta = actuations[:, DELTA]
    accel = actuations[:, ACCEL]
    return {
        "cte": weights.cte * float(np.sum(states[:, CTE] ** 2)),
        "epsi": weights.epsi * float(np.sum(states[:, EPSI] ** 2)),
        "v": weights.v * float(np.sum((states[:, V] - ref_v) ** 2)),
        "delta": weights.delta * float(np.sum(delta ** 2)),
        "a": weights.a * float(np.sum(accel ** 2)),
        "delta_rate": weights.delta_rate * float(np.sum(np.diff(delta) ** 2)),
        "a_rate": weights.a_rate * float(np.sum(np.diff(accel) ** 2)),
    }


def total_cost(states: np.ndarray, actuations: np.ndarray, ref_v: float,
               weights: CostWeights) -> float:
    return float(sum(cost_terms(states, actuations, ref_v, weights).values()))


def _rate_gradient(u: np.ndarray, weight: float) -> np.ndarray:
    grad = np.zeros_like(u)
    if len(u) > 1:
        du = np.diff(u)
        grad[1:] += 2.0 * weight * du
        grad[:-1] -= 2.0 * weight * du
    return grad


def cost_gradient(states: np.ndarray, actuations: np.ndarray, ref_v: float,
                  weights: CostWeights, layout: HorizonLayout) -> np.ndarray:
    """Gradient of total_cost with respect to the stacked decision vector."""
    grad_states = np.zeros_like(states)
    grad_states[:, CTE] = 2.0 * weights.cte * states[:, CTE]
    grad_states[:, EPSI] = 2.0 * weights.epsi * states[:, EPSI]
    grad_states[:, V] = 2.0 * weights.v * (states[:, V] - ref_v)

    delta = actuations[:, DELTA]
    accel = actuations[:, ACCEL]
    grad_actuations = np.zeros_like(actuations)
    grad_actuations[:, DELTA] = 2.0 * weights.delta * delta + _rate_gradient(delta, weights.delta_rate)
    grad_actuations[:, ACCEL] = 2.0 * weights.a * accel + _rate_gradient(accel, weights.a_rate)
    return layout.pack(grad_states, grad_actuations)


def dynamics_residuals(states: np.ndarray, actuations: np.ndarray, coeffs: Sequence[float],
                       dt: float, lf: float) -> np.ndarray:
    """
    Residual of the kinematic model for every consecutive step pair.

    Returns:
        Array of shape (N-1, 6); all zeros when the trajectory obeys the model
    """
    cur = states[:-1]
    nxt = states[1:]
    x, y, psi, v = cur[:, X], cur[:, Y], cur[:, PSI], cur[:, V]
    delta = actuations[:, DELTA]
    accel = actuations[:, ACCEL]
    yaw_step = v / lf * delta * dt

    predicted = np.column_stack([
        x + v * np.cos(psi) * dt,
        y + v * np.sin(psi) * dt,
        psi + yaw_step,
        v + accel * dt,
        (polyeval(coeffs, x) - y) + v * np.sin(cur[:, EPSI]) * dt,
        (psi - np.arctan(poly_slope(coeffs, x))) + yaw_step,
    ])
    return nxt - predicted


def constraint_residuals(states: np.ndarray, actuations: np.ndarray, initial_state: np.ndarray,
                         coeffs: Sequence[float], dt: float, lf: float) -> np.ndarray:
    """
    Equality constraint vector: initial-state pin followed by dynamics residuals.

    Ordering matches the rows of constraint_jacobian: row block i holds state
    field i, first the pin at k=0, then steps k=1..N-1.
    """
    pin = states[0] - np.asarray(initial_state, dtype=float)
    dyn = dynamics_residuals(states, actuations, coeffs, dt, lf)
    return np.vstack([pin[np.newaxis, :], dyn]).T.ravel()


def constraint_jacobian(states: np.ndarray, actuations: np.ndarray, coeffs: Sequence[float],
                        dt: float, lf: float, layout: HorizonLayout) -> np.ndarray:
    """Dense Jacobian of constraint_residuals with respect to z."""
    N = layout.N
    jac = np.zeros((layout.n_constraints, layout.n_vars))

    def row(field_index: int, k: int) -> int:
        return field_index * N + k

    def scol(field_index: int, k: int) -> int:
        return layout.state_start(field_index) + k

    def acol(field_index: int, k: int) -> int:
        return layout.actuation_start(field_index) + k

    for i in range(STATE_DIM):
        jac[row(i, 0), scol(i, 0)] = 1.0

    for k in range(N - 1):
        x, y, psi, v, cte, epsi = states[k]
        delta = actuations[k, DELTA]
        slope = poly_slope(coeffs, x)
        dpsi_des = poly_slope_derivative(coeffs, x) / (1.0 + slope * slope)

        r = row(X, k + 1)
        jac[r, scol(X, k + 1)] = 1.0
        jac[r, scol(X, k)] = -1.0
        jac[r, scol(PSI, k)] = v * np.sin(psi) * dt
        jac[r, scol(V, k)] = -np.cos(psi) * dt

        r = row(Y, k + 1)
        jac[r, scol(Y, k + 1)] = 1.0
        jac[r, scol(Y, k)] = -1.0
        jac[r, scol(PSI, k)] = -v * np.cos(psi) * dt
        jac[r, scol(V, k)] = -np.sin(psi) * dt

        r = row(PSI, k + 1)
        jac[r, scol(PSI, k + 1)] = 1.0
        jac[r, scol(PSI, k)] = -1.0
        jac[r, scol(V, k)] = -delta * dt / lf
        jac[r, acol(DELTA, k)] = -v * dt / lf

        r = row(V, k + 1)
        jac[r, scol(V, k + 1)] = 1.0
        jac[r, scol(V, k)] = -1.0
        jac[r, acol(ACCEL, k)] = -dt

        r = row(CTE, k + 1)
        jac[r, scol(CTE, k + 1)] = 1.0
        jac[r, scol(X, k)] = -slope
        jac[r, scol(Y, k)] = 1.0
        jac[r, scol(V, k)] = -np.sin(epsi) * dt
        jac[r, scol(EPSI, k)] = -v * np.cos(epsi) * dt

        r = row(EPSI, k + 1)
        jac[r, scol(EPSI, k + 1)] = 1.0
        jac[r, scol(PSI, k)] = -1.0
        jac[r, scol(X, k)] = dpsi_des
        jac[r, scol(V, k)] = -delta * dt / lf
        jac[r, acol(DELTA, k)] = -v * dt / lf

    return jac


def variable_bounds(layout: HorizonLayout, max_steering: float,
                    max_acceleration: float) -> Tuple[np.ndarray, np.ndarray]:
    """Box bounds on z: states free, steering and acceleration limited."""
    lower = np.full(layout.n_vars, -np.inf)
    upper = np.full(layout.n_vars, np.inf)
    steer = slice(layout.actuation_start(DELTA), layout.actuation_start(DELTA) + layout.N - 1)
    accel = slice(layout.actuation_start(ACCEL), layout.actuation_start(ACCEL) + layout.N - 1)
    lower[steer], upper[steer] = -max_steering, max_steering
    lower[accel], upper[accel] = -max_acceleration, max_acceleration
    return lower, upper
