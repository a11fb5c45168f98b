"""
Tests for the per-tick MPC pipeline (reference fit -> latency prediction -> solve -> mapping).
"""

import math

import h5py
import numpy as np
import pytest

from control.mpc_config import MPCConfig
from control.mpc_controller import MPCController, MPCSolution
from data.recorder import TickRecorder
from mpc_stack import MPCStack, Telemetry, TelemetryError, load_config
from trajectory.reference import polyeval


def _straight_telemetry(**overrides):
    data = dict(
        ptsx=[-5.0, 10.0, 25.0, 40.0, 55.0, 70.0],
        ptsy=[0.5, 0.5, 0.5, 0.5, 0.5, 0.5],
        x=0.0,
        y=0.0,
        psi=0.0,
        speed=10.0,
        steering_angle=0.0,
        throttle=0.0,
    )
    data.update(overrides)
    return data


class CountingController(MPCController):
    """Controller that counts solves and can be told to fail."""

    def __init__(self, fail=False):
        super().__init__(MPCConfig())
        self.calls = 0
        self.fail = fail

    def solve(self, state, coeffs):
        self.calls += 1
        if self.fail:
            return MPCSolution(success=False, status="failed", message="forced")
        return super().solve(state, coeffs)


def test_tick_produces_steer_message():
    stack = MPCStack(MPCConfig())
    message = stack.process_message(_straight_telemetry())

    assert set(message) == {"steering_angle", "throttle", "mpc_x", "mpc_y", "next_x", "next_y"}
    assert -1.0 <= message["steering_angle"] <= 1.0
    assert -1.0 <= message["throttle"] <= 1.0
    assert len(message["mpc_x"]) == len(message["mpc_y"]) == 9
    assert message["next_x"] == message["mpc_x"]


def test_reference_resampled_at_predicted_x():
    stack = MPCStack(MPCConfig())
    result = stack.process_telemetry(Telemetry.from_dict(_straight_telemetry()))

    assert result.command.source == "mpc"
    expected = [float(polyeval(result.coeffs, x)) for x in result.mpc_x]
    np.testing.assert_allclose(result.next_y, expected)
    np.testing.assert_allclose(result.next_y, 0.5, atol=1e-6)


def test_offset_path_to_the_left_steers_left():
    """Path 0.5 to the left of the car gives a negative (left) simulator steering value."""
    stack = MPCStack(MPCConfig())
    result = stack.process_telemetry(Telemetry.from_dict(_straight_telemetry()))
    assert result.command.steering_angle < 0.0


def test_state_is_latency_compensated():
    stack = MPCStack(MPCConfig())
    result = stack.process_telemetry(Telemetry.from_dict(_straight_telemetry(throttle=0.5)))

    assert result.state.x == pytest.approx(10.0 * 0.1)
    assert result.state.v == pytest.approx(10.0 + 0.1 * 0.5)
    assert result.state.cte == pytest.approx(0.5, abs=1e-6)


def test_previous_steering_is_inverted_for_prediction():
    """A right-turn simulator value (+) is a negative model steering angle."""
    stack = MPCStack(MPCConfig())
    telemetry = Telemetry.from_dict(_straight_telemetry(steering_angle=0.5))
    coeffs = np.zeros(4)
    state = stack.predict_state(telemetry, coeffs)

    assert state.psi < 0.0
    assert state.y < 0.0
    expected_omega = 10.0 * (-0.5 * math.radians(25.0)) / 2.67
    assert state.psi == pytest.approx(expected_omega * 0.1)


def test_short_reference_rejected_before_optimizer():
    """Two waypoints never reach the optimizer and produce an explicit fallback."""
    controller = CountingController()
    stack = MPCStack(controller=controller)
    result = stack.process_telemetry(Telemetry.from_dict(
        _straight_telemetry(ptsx=[0.0, 10.0], ptsy=[0.0, 0.0])
    ))

    assert controller.calls == 0
    assert result.failure_reason.startswith("malformed_reference")
    assert result.command.source == "neutral"
    assert result.mpc_x == []


def test_extreme_waypoints_give_fallback_tick():
    """Waypoints that break the least-squares fit fall back instead of raising."""
    controller = CountingController()
    stack = MPCStack(controller=controller)
    result = stack.process_telemetry(Telemetry.from_dict(_straight_telemetry(
        ptsx=[1e200, 2e200, 3e200, 4e200, 5e200, 6e200],
        ptsy=[0.0, 1e200, 2e200, 3e200, 4e200, 5e200],
    )))

    assert controller.calls == 0
    assert result.failure_reason.startswith("malformed_reference")
    assert result.command.source == "neutral"


def test_solver_failure_holds_last_valid_command():
    controller = CountingController()
    stack = MPCStack(controller=controller)
    good = stack.process_telemetry(Telemetry.from_dict(_straight_telemetry()))
    assert good.command.source == "mpc"

    controller.fail = True
    held = stack.process_telemetry(Telemetry.from_dict(_straight_telemetry()))
    assert held.command.source == "hold"
    assert held.command.steering_angle == good.command.steering_angle
    assert held.failure_reason == "failed"

    for _ in range(stack.config.fallback.hold_ticks):
        last = stack.process_telemetry(Telemetry.from_dict(_straight_telemetry()))
    assert last.command.source == "neutral"
    assert last.command.throttle == stack.config.fallback.neutral_throttle


def test_missing_fields_rejected():
    data = _straight_telemetry()
    del data["psi"]
    with pytest.raises(TelemetryError):
        Telemetry.from_dict(data)


def test_bad_types_rejected():
    with pytest.raises(TelemetryError):
        Telemetry.from_dict(_straight_telemetry(speed="fast"))
    with pytest.raises(TelemetryError):
        Telemetry.from_dict(["telemetry"])


def test_string_waypoints_rejected():
    """A string is not split into per-character waypoints."""
    with pytest.raises(TelemetryError):
        Telemetry.from_dict(_straight_telemetry(ptsx="1234"))
    with pytest.raises(TelemetryError):
        Telemetry.from_dict(_straight_telemetry(ptsy="0000"))


def test_ticks_are_recorded(tmp_path):
    recorder = TickRecorder(str(tmp_path), horizon=10, recording_name="stack_test")
    stack = MPCStack(MPCConfig(), recorder=recorder)
    stack.process_telemetry(Telemetry.from_dict(_straight_telemetry()))
    stack.process_telemetry(Telemetry.from_dict(_straight_telemetry(ptsx=[0.0], ptsy=[0.0])))
    recorder.close()

    with h5py.File(tmp_path / "stack_test.h5", "r") as f:
        assert f["ticks/success"][:].tolist() == [True, False]
        assert f["ticks/source"][:].tolist() == [0, 1]
        assert np.all(np.isnan(f["ticks/state"][1]))
        assert np.all(np.isfinite(f["ticks/mpc_x"][0]))


def test_load_config_missing_file_returns_empty(tmp_path):
    assert load_config(str(tmp_path / "missing.yaml")) == {}


def test_load_config_reads_yaml(tmp_path):
    path = tmp_path / "mpc.yaml"
    path.write_text("mpc:\n  horizon:\n    N: 12\n")
    assert load_config(str(path)) == {"mpc": {"horizon": {"N": 12}}}
