"""
Vehicle dynamics model (kinematic bicycle model).
Used for latency compensation, the MPC dynamics constraints and offline simulation.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from trajectory.reference import desired_heading, polyeval

STATE_FIELDS = ("x", "y", "psi", "v", "cte", "epsi")
STATE_DIM = len(STATE_FIELDS)
ACTUATION_DIM = 2


@dataclass(frozen=True)
class MPCState:
    """
    Optimization state in the vehicle frame.

    x, y: position (m), psi: heading (rad), v: speed,
    cte: cross-track error, epsi: heading error (rad).
    """

    x: float
    y: float
    psi: float
    v: float
    cte: float
    epsi: float

    def to_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.psi, self.v, self.cte, self.epsi], dtype=float)

    @classmethod
    def from_array(cls, values: Sequence[float]) -> "MPCState":
        if len(values) != STATE_DIM:
            raise ValueError(f"State needs {STATE_DIM} values, got {len(values)}")
        return cls(*(float(v) for v in values))

    def is_finite(self) -> bool:
        return bool(np.all(np.isfinite(self.to_array())))


class KinematicBicycleModel:
    """
    Kinematic bicycle model with tracking-error states.

    Positive steering turns toward +y (counter-clockwise yaw) in the vehicle frame.
    """

    def __init__(self, lf: float, yaw_rate_epsilon: float = 1e-4):
        """
        Initialize the model.

        Args:
            lf: Distance from the front axle to the center of gravity (meters)
            yaw_rate_epsilon: Yaw rate below which the straight-line
                approximation is used for latency prediction (rad/s)
        """
        if lf <= 0.0:
            raise ValueError(f"lf must be > 0, got {lf}")
        self.lf = lf
        self.yaw_rate_epsilon = yaw_rate_epsilon

    def step(self, state: np.ndarray, delta: float, a: float, dt: float,
             coeffs: Sequence[float]) -> np.ndarray:
        """
        Advance the 6-element state one step of length dt.

        cte and epsi follow the reference evaluated at the current x.
        """
        x, y, psi, v, cte, epsi = state
        yaw_step = v / self.lf * delta * dt
        return np.array([
            x + v * math.cos(psi) * dt,
            y + v * math.sin(psi) * dt,
            psi + yaw_step,
            v + a * dt,
            (polyeval(coeffs, x) - y) + v * math.sin(epsi) * dt,
            (psi - desired_heading(coeffs, x)) + yaw_step,
        ], dtype=float)

    def rollout(self, initial_state: Sequence[float], actuations: np.ndarray, dt: float,
                coeffs: Sequence[float]) -> np.ndarray:
        """
        Propagate the state through a sequence of (delta, a) pairs.

        Returns:
            Array of shape (len(actuations) + 1, 6), first row is the initial state
        """
        actuations = np.asarray(actuations, dtype=float).reshape(-1, ACTUATION_DIM)
        states = np.zeros((len(actuations) + 1, STATE_DIM))
        states[0] = np.asarray(initial_state, dtype=float)
        for k, (delta, a) in enumerate(actuations):
            states[k + 1] = self.step(states[k], delta, a, dt, coeffs)
        return states

    def yaw_rate(self, v: float, delta: float) -> float:
        return v * delta / self.lf

    def predict_latency_state(self, v: float, delta0: float, a0: float, latency: float,
                              coeffs: Sequence[float]) -> MPCState:
        """
        Predict the state at the moment a new actuation takes effect.

        The vehicle starts at the origin of its own frame with zero heading and
        keeps the last commanded steering (delta0, radians) and throttle (a0)
        for `latency` seconds. Speed is advanced linearly without saturation.

        Args:
            v: Current speed
            delta0: Last commanded steering angle (radians, model convention)
            a0: Last commanded throttle
            latency: Actuation latency (seconds)
            coeffs: Vehicle-frame reference cubic, ascending order

        Returns:
            Initial state for the optimizer
        """
        omega = self.yaw_rate(v, delta0)
        if abs(omega) < self.yaw_rate_epsilon:
            x = v * latency
            y = 0.0
            psi = 0.0
        else:
            x = v / omega * (math.sin(omega * latency) - math.sin(0.0))
            y = v / omega * (math.cos(0.0) - math.cos(omega * latency))
            psi = omega * latency

        return MPCState(
            x=x,
            y=y,
            psi=psi,
            v=v + latency * a0,
            cte=float(polyeval(coeffs, x)) - y,
            epsi=psi - float(desired_heading(coeffs, x)),
        )
