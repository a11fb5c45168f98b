"""
Tests for the MPC controller (trajectory optimizer) with the SciPy backend.
"""

import math

import numpy as np
import pytest

from control.actuation import map_actuation
from control.mpc_config import MPCConfig, SolverConfig
from control.mpc_controller import MPCController
from control.mpc_problem import dynamics_residuals
from control.nlp_solver import NLPResult, ScipyNLPSolver
from control.vehicle_model import MPCState

SCENARIO_STATE = MPCState(x=0.0, y=0.0, psi=0.0, v=10.0, cte=0.5, epsi=0.1)
SCENARIO_COEFFS = [0.3, 0.05, -0.001, 0.0]
MAX_STEER = math.radians(25.0)


@pytest.fixture(scope="module")
def controller():
    return MPCController(MPCConfig())


@pytest.fixture(scope="module")
def scenario_solution(controller):
    return controller.solve(SCENARIO_STATE, SCENARIO_COEFFS)


class RecordingSolver:
    """NLP backend stub that records calls and returns a canned result."""

    def __init__(self, result_factory=None):
        self.calls = 0
        self.result_factory = result_factory

    def solve(self, initial_guess, objective, equality_constraints, bounds):
        self.calls += 1
        if self.result_factory is None:
            return NLPResult(x=None, success=False, status="failed", message="stub")
        return self.result_factory(initial_guess)


def test_exposes_horizon_constants(controller):
    assert controller.N == 10
    assert controller.dt == pytest.approx(0.1)
    assert controller.Lf == pytest.approx(2.67)
    assert controller.ref_v == pytest.approx(40.0)


def test_end_to_end_scenario(scenario_solution, controller):
    """Highway-like reference solves and maps into the actuator range."""
    solution = scenario_solution
    assert solution.success, solution.message

    command = map_actuation(solution.delta, solution.a, MAX_STEER)
    assert -1.0 <= command.steering_angle <= 1.0
    assert -1.0 <= command.throttle <= 1.0

    assert len(solution.x_trajectory) == controller.N - 1
    assert len(solution.y_trajectory) == controller.N - 1
    assert np.all(np.diff(solution.x_trajectory) >= 0.0)
    assert solution.x_trajectory[0] > 0.0


def test_solution_satisfies_dynamics(scenario_solution, controller):
    solution = scenario_solution
    assert solution.success
    residual = dynamics_residuals(solution.states, solution.actuations,
                                  SCENARIO_COEFFS, controller.dt, controller.Lf)
    assert np.max(np.abs(residual)) <= 1e-6
    np.testing.assert_allclose(solution.states[0], SCENARIO_STATE.to_array(), atol=1e-6)


def test_high_speed_curve_converges_with_default_caps(controller):
    """At simulator top speed SLSQP needs more than 150 iterations on a gentle curve."""
    state = MPCState(x=0.0, y=0.0, psi=0.0, v=90.0, cte=0.0, epsi=0.0)
    solution = controller.solve(state, [0.0, 0.0, 0.005, 0.0])

    assert solution.success, f"{solution.status}: {solution.message}"
    assert solution.iterations <= controller.config.solver.max_iter
    assert controller.config.solver.max_iter >= 300


def test_solution_respects_actuator_bounds(scenario_solution):
    actuations = scenario_solution.actuations
    assert actuations.shape == (9, 2)
    assert np.all(np.abs(actuations[:, 0]) <= MAX_STEER)
    assert np.all(np.abs(actuations[:, 1]) <= 1.0)


def test_first_step_matches_trajectory(scenario_solution):
    solution = scenario_solution
    assert solution.delta == solution.actuations[0, 0]
    assert solution.a == solution.actuations[0, 1]
    assert solution.x_trajectory == solution.states[1:, 0].tolist()
    assert solution.cost == pytest.approx(sum(solution.cost_breakdown.values()))


def test_accelerates_toward_reference_speed(scenario_solution):
    """Starting well below ref_v the first throttle is positive."""
    assert scenario_solution.a > 0.0


def test_resolve_from_predicted_state_is_consistent(scenario_solution, controller):
    """Feeding the predicted k=1 state back in keeps the propagation law intact."""
    next_state = MPCState.from_array(scenario_solution.states[1])
    solution = controller.solve(next_state, SCENARIO_COEFFS)

    assert solution.success, solution.message
    residual = dynamics_residuals(solution.states, solution.actuations,
                                  SCENARIO_COEFFS, controller.dt, controller.Lf)
    assert np.max(np.abs(residual)) <= 1e-6


def test_on_reference_at_cruise_speed_needs_no_actuation(controller):
    state = MPCState(x=0.0, y=0.0, psi=0.0, v=40.0, cte=0.0, epsi=0.0)
    solution = controller.solve(state, [0.0, 0.0, 0.0, 0.0])

    assert solution.success, solution.message
    assert solution.delta == pytest.approx(0.0, abs=1e-6)
    assert solution.a == pytest.approx(0.0, abs=1e-6)
    np.testing.assert_allclose(solution.y_trajectory, 0.0, atol=1e-6)


def test_left_curve_steers_left(controller):
    """Reference bending toward +y needs positive model steering (negative simulator value)."""
    state = MPCState(x=0.0, y=0.0, psi=0.0, v=20.0, cte=0.0, epsi=0.0)
    solution = controller.solve(state, [0.0, 0.0, 0.01, 0.0])

    assert solution.success, solution.message
    assert solution.delta > 0.0
    assert map_actuation(solution.delta, solution.a, MAX_STEER).steering_angle < 0.0


def test_malformed_coefficients_fail_before_solver():
    solver = RecordingSolver()
    controller = MPCController(MPCConfig(), solver=solver)
    solution = controller.solve(SCENARIO_STATE, [0.3, 0.05, -0.001])

    assert not solution.success
    assert solution.status == "malformed_coefficients"
    assert solution.delta is None and solution.a is None
    assert solver.calls == 0


def test_non_finite_state_fails_before_solver():
    solver = RecordingSolver()
    controller = MPCController(MPCConfig(), solver=solver)
    state = MPCState(x=0.0, y=0.0, psi=float("nan"), v=10.0, cte=0.0, epsi=0.0)
    solution = controller.solve(state, SCENARIO_COEFFS)

    assert not solution.success
    assert solver.calls == 0


def test_backend_failure_is_reported():
    solver = RecordingSolver()
    controller = MPCController(MPCConfig(), solver=solver)
    solution = controller.solve(SCENARIO_STATE, SCENARIO_COEFFS)

    assert solver.calls == 1
    assert not solution.success
    assert solution.delta is None
    assert solution.x_trajectory == []


def test_backend_claiming_success_on_infeasible_point_is_rejected():
    """A point that violates the dynamics is never turned into actuation."""
    def bad_point(initial_guess):
        z = initial_guess.copy()
        z[3] += 1.0  # move x_3 off the model
        return NLPResult(x=z, success=True, status="converged")

    controller = MPCController(MPCConfig(), solver=RecordingSolver(bad_point))
    solution = controller.solve(SCENARIO_STATE, SCENARIO_COEFFS)

    assert not solution.success
    assert solution.status == "infeasible"


def test_initial_guess_is_feasible_point(controller):
    guess = controller.initial_guess(SCENARIO_STATE.to_array(), np.array(SCENARIO_COEFFS))
    states, actuations = controller.layout.unpack(guess)
    residual = dynamics_residuals(states, actuations, SCENARIO_COEFFS, controller.dt, controller.Lf)
    assert np.max(np.abs(residual)) < 1e-12
    assert np.all(actuations == 0.0)


def test_iteration_cap_reports_failure():
    config = MPCConfig(solver=SolverConfig(max_iter=1))
    solution = MPCController(config).solve(SCENARIO_STATE, SCENARIO_COEFFS)
    assert not solution.success
    assert solution.delta is None


def test_time_cap_reports_failure():
    config = MPCConfig(solver=SolverConfig(max_time_s=1e-9))
    solution = MPCController(config).solve(SCENARIO_STATE, SCENARIO_COEFFS)
    assert not solution.success
    assert solution.status == "timeout"


def test_solves_do_not_share_state(controller):
    """The same inputs give the same answer regardless of what was solved before."""
    first = controller.solve(SCENARIO_STATE, SCENARIO_COEFFS)
    controller.solve(MPCState(0.0, 0.0, 0.0, 30.0, -1.0, 0.2), [0.0, 0.1, 0.01, 0.0])
    again = controller.solve(SCENARIO_STATE, SCENARIO_COEFFS)

    assert first.success and again.success
    assert again.delta == pytest.approx(first.delta, abs=1e-12)
    assert again.a == pytest.approx(first.a, abs=1e-12)


def test_unsupported_backend_method_rejected():
    with pytest.raises(ValueError):
        ScipyNLPSolver(method="Nelder-Mead")
