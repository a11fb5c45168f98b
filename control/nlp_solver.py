"""
Nonlinear-programming backend for the MPC controller.

The controller only talks to the NLPSolver interface; the SciPy backend below
can be replaced without touching the model, cost or constraint definitions.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Tuple

import numpy as np
from scipy.optimize import Bounds, NonlinearConstraint, minimize

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Objective:
    """Scalar objective with analytic gradient."""

    fun: Callable[[np.ndarray], float]
    grad: Callable[[np.ndarray], np.ndarray]


@dataclass(frozen=True)
class EqualityConstraints:
    """Vector equality constraints fun(z) == 0 with analytic Jacobian."""

    fun: Callable[[np.ndarray], np.ndarray]
    jac: Callable[[np.ndarray], np.ndarray]


@dataclass
class NLPResult:
    """Outcome of one NLP solve."""

    x: Optional[np.ndarray]
    success: bool
    status: str  # "converged", "max_iter", "timeout", "failed", "error"
    iterations: int = 0
    solve_time_s: float = 0.0
    message: str = ""


class NLPSolver(Protocol):
    def solve(
        self,
        initial_guess: np.ndarray,
        objective: Objective,
        equality_constraints: EqualityConstraints,
        bounds: Tuple[np.ndarray, np.ndarray],
    ) -> NLPResult:
        ...


class SolveTimeout(Exception):
    """Raised from the iteration callback once the wall-clock cap is exceeded."""


class ScipyNLPSolver:
    """
    scipy.optimize.minimize backend.

    SLSQP (sequential quadratic programming) is the default; trust-constr
    (interior point for the bounds) is available for comparison runs. Each
    solve is capped by iteration count and wall-clock time.
    """

    def __init__(self, method: str = "SLSQP", max_iter: int = 300,
                 max_time_s: float = 1.1, tolerance: float = 1e-8):
        """
        Initialize the backend.

        Args:
            method: scipy minimize method ("SLSQP" or "trust-constr")
            max_iter: Iteration cap per solve
            max_time_s: Wall-clock cap per solve (seconds)
            tolerance: Convergence tolerance passed to the method
        """
        if method not in ("SLSQP", "trust-constr"):
            raise ValueError(f"Unsupported method: {method}")
        self.method = method
        self.max_iter = max_iter
        self.max_time_s = max_time_s
        self.tolerance = tolerance

    def _options(self) -> dict:
        if self.method == "SLSQP":
            return {"maxiter": self.max_iter, "ftol": self.tolerance, "disp": False}
        return {
            "maxiter": self.max_iter,
            "gtol": self.tolerance,
            "xtol": self.tolerance,
            "verbose": 0,
        }

    def _constraints(self, equality_constraints: EqualityConstraints):
        if self.method == "SLSQP":
            return [{
                "type": "eq",
                "fun": equality_constraints.fun,
                "jac": equality_constraints.jac,
            }]
        return [NonlinearConstraint(
            equality_constraints.fun, 0.0, 0.0, jac=equality_constraints.jac,
        )]

    def solve(
        self,
        initial_guess: np.ndarray,
        objective: Objective,
        equality_constraints: EqualityConstraints,
        bounds: Tuple[np.ndarray, np.ndarray],
    ) -> NLPResult:
        lower, upper = bounds
        start_time = time.perf_counter()
        deadline = start_time + self.max_time_s
        iterations = 0

        def _callback(*_args):
            nonlocal iterations
            iterations += 1
            if time.perf_counter() > deadline:
                raise SolveTimeout()

        x0 = np.clip(np.asarray(initial_guess, dtype=float), lower, upper)
        try:
            result = minimize(
                objective.fun,
                x0,
                jac=objective.grad,
                method=self.method,
                bounds=Bounds(lower, upper),
                constraints=self._constraints(equality_constraints),
                callback=_callback,
                options=self._options(),
            )
        except SolveTimeout:
            elapsed = time.perf_counter() - start_time
            return NLPResult(
                x=None,
                success=False,
                status="timeout",
                iterations=iterations,
                solve_time_s=elapsed,
                message=f"Wall-clock cap of {self.max_time_s:.3f}s exceeded",
            )
        except (ValueError, ArithmeticError, np.linalg.LinAlgError) as e:
            elapsed = time.perf_counter() - start_time
            logger.warning("NLP backend raised %s: %s", type(e).__name__, e)
            return NLPResult(
                x=None,
                success=False,
                status="error",
                iterations=iterations,
                solve_time_s=elapsed,
                message=str(e),
            )

        elapsed = time.perf_counter() - start_time
        iterations = int(getattr(result, "nit", iterations) or iterations)
        if result.success and np.all(np.isfinite(result.x)):
            status = "converged"
        elif iterations >= self.max_iter:
            status = "max_iter"
        else:
            status = "failed"
        return NLPResult(
            x=np.asarray(result.x, dtype=float) if status == "converged" else None,
            success=status == "converged",
            status=status,
            iterations=iterations,
            solve_time_s=elapsed,
            message=str(result.message),
        )
