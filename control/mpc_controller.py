"""
MPC (Model Predictive Control) controller.

Solves a receding-horizon nonlinear program over the kinematic bicycle model
each tick and returns the first actuation plus the predicted trajectory.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

from control.mpc_config import MPCConfig
from control.mpc_problem import (
    ACCEL,
    DELTA,
    HorizonLayout,
    constraint_jacobian,
    constraint_residuals,
    cost_gradient,
    cost_terms,
    dynamics_residuals,
    total_cost,
    variable_bounds,
)
from control.nlp_solver import EqualityConstraints, NLPSolver, Objective, ScipyNLPSolver
from control.vehicle_model import KinematicBicycleModel, MPCState
from trajectory.reference import REFERENCE_POLY_ORDER

logger = logging.getLogger(__name__)


@dataclass
class MPCSolution:
    """Result of one MPC solve. Actuation fields are None unless success is True."""

    success: bool
    delta: Optional[float] = None
    a: Optional[float] = None
    x_trajectory: List[float] = field(default_factory=list)
    y_trajectory: List[float] = field(default_factory=list)
    states: Optional[np.ndarray] = None
    actuations: Optional[np.ndarray] = None
    cost: Optional[float] = None
    cost_breakdown: Dict[str, float] = field(default_factory=dict)
    iterations: int = 0
    solve_time_s: float = 0.0
    status: str = ""
    message: str = ""


class MPCController:
    """
    Model Predictive Control for lateral and longitudinal vehicle control.

    The controller holds only immutable configuration; every solve builds its
    own working arrays, so no state carries over between ticks.
    """

    def __init__(self, config: Optional[MPCConfig] = None, solver: Optional[NLPSolver] = None):
        """
        Initialize MPC controller.

        Args:
            config: Controller configuration (defaults used if None)
            solver: NLP backend (SciPy backend built from config.solver if None)
        """
        self.config = config or MPCConfig()
        self.layout = HorizonLayout(self.config.horizon.N)
        self.model = KinematicBicycleModel(self.config.horizon.Lf, self.config.yaw_rate_epsilon)
        if solver is None:
            solver_cfg = self.config.solver
            solver = ScipyNLPSolver(
                method=solver_cfg.method,
                max_iter=solver_cfg.max_iter,
                max_time_s=solver_cfg.max_time_s,
                tolerance=solver_cfg.tolerance,
            )
        self.solver = solver

    @property
    def N(self) -> int:
        return self.config.horizon.N

    @property
    def dt(self) -> float:
        return self.config.horizon.dt

    @property
    def Lf(self) -> float:
        return self.config.horizon.Lf

    @property
    def ref_v(self) -> float:
        return self.config.horizon.ref_v

    def _failure(self, status: str, message: str, **kwargs) -> MPCSolution:
        logger.warning("MPC solve failed (%s): %s", status, message)
        return MPCSolution(success=False, status=status, message=message, **kwargs)

    def initial_guess(self, state: np.ndarray, coeffs: np.ndarray) -> np.ndarray:
        """Zero-actuation rollout from the current state (dynamically feasible)."""
        actuations = np.zeros((self.N - 1, 2))
        states = self.model.rollout(state, actuations, self.dt, coeffs)
        return self.layout.pack(states, actuations)

    def solve(self, state: MPCState, coeffs: Sequence[float]) -> MPCSolution:
        """
        Solve the MPC problem for a latency-compensated state.

        Args:
            state: Initial state {x, y, psi, v, cte, epsi} in the vehicle frame
            coeffs: Reference cubic coefficients, ascending order (exactly 4)

        Returns:
            MPCSolution; on failure success is False and no actuation is set
        """
        coeffs = np.asarray(coeffs, dtype=float).ravel()
        if coeffs.shape != (REFERENCE_POLY_ORDER + 1,) or not np.all(np.isfinite(coeffs)):
            return self._failure(
                "malformed_coefficients",
                f"Expected {REFERENCE_POLY_ORDER + 1} finite coefficients, got {coeffs.tolist()}",
            )
        if not state.is_finite():
            return self._failure("malformed_state", f"Non-finite initial state: {state}")

        x0 = state.to_array()
        layout = self.layout
        horizon = self.config.horizon
        weights = self.config.weights

        initial_guess = self.initial_guess(x0, coeffs)
        guess_states, guess_actuations = layout.unpack(initial_guess)
        # Normalize the objective so the backend tolerance is scale free.
        cost_scale = max(1.0, total_cost(guess_states, guess_actuations, horizon.ref_v, weights))

        def objective(z: np.ndarray) -> float:
            states, actuations = layout.unpack(z)
            return total_cost(states, actuations, horizon.ref_v, weights) / cost_scale

        def objective_grad(z: np.ndarray) -> np.ndarray:
            states, actuations = layout.unpack(z)
            return cost_gradient(states, actuations, horizon.ref_v, weights, layout) / cost_scale

        def constraints(z: np.ndarray) -> np.ndarray:
            states, actuations = layout.unpack(z)
            return constraint_residuals(states, actuations, x0, coeffs, horizon.dt, horizon.Lf)

        def constraints_jac(z: np.ndarray) -> np.ndarray:
            states, actuations = layout.unpack(z)
            return constraint_jacobian(states, actuations, coeffs, horizon.dt, horizon.Lf, layout)

        bounds = variable_bounds(layout, self.config.max_steering_angle, self.config.max_acceleration)
        result = self.solver.solve(
            initial_guess,
            Objective(objective, objective_grad),
            EqualityConstraints(constraints, constraints_jac),
            bounds,
        )

        if not result.success or result.x is None:
            return self._failure(
                result.status or "failed",
                result.message,
                iterations=result.iterations,
                solve_time_s=result.solve_time_s,
            )

        states, actuations = layout.unpack(result.x)
        # The returned point must satisfy the model within feasibility_tolerance.
        lower, upper = bounds
        residual = max(
            float(np.max(np.abs(dynamics_residuals(states, actuations, coeffs, horizon.dt, horizon.Lf)))),
            float(np.max(np.abs(states[0] - x0))),
        )
        if residual > self.config.solver.feasibility_tolerance:
            return self._failure(
                "infeasible",
                f"Dynamics residual {residual:.3e} exceeds "
                f"{self.config.solver.feasibility_tolerance:.1e}",
                iterations=result.iterations,
                solve_time_s=result.solve_time_s,
            )
        # Tiny bound overshoots from the backend are clipped.
        actuations = np.clip(
            actuations,
            layout.unpack(lower)[1],
            layout.unpack(upper)[1],
        )

        breakdown = cost_terms(states, actuations, horizon.ref_v, weights)
        solution = MPCSolution(
            success=True,
            delta=float(actuations[0, DELTA]),
            a=float(actuations[0, ACCEL]),
            x_trajectory=states[1:, 0].tolist(),
            y_trajectory=states[1:, 1].tolist(),
            states=states,
            actuations=actuations,
            cost=float(sum(breakdown.values())),
            cost_breakdown=breakdown,
            iterations=result.iterations,
            solve_time_s=result.solve_time_s,
            status=result.status,
            message=result.message,
        )

        if result.solve_time_s > self.config.slow_solve_warn_s:
            logger.warning("[SLOW] MPC solve duration=%.3fs iterations=%d",
                           result.solve_time_s, result.iterations)
        logger.debug(
            "MPC solve ok: delta=%.4f a=%.3f cost=%.3f iterations=%d terms=%s",
            solution.delta, solution.a, solution.cost, solution.iterations,
            {k: round(v, 3) for k, v in breakdown.items()},
        )
        return solution
