"""
Main MPC stack integration script.
Connects all components: reference fitting, latency compensation, MPC solve and actuation mapping.
"""

import time
import math
import sys
from pathlib import Path
from typing import Optional
import logging
import yaml
from dataclasses import dataclass, field

import numpy as np

# Add paths
sys.path.insert(0, str(Path(__file__).parent))

from control.actuation import ActuationCommand, FallbackPolicy, map_actuation, normalized_to_steering_angle
from control.mpc_config import MPCConfig, build_mpc_config
from control.mpc_controller import MPCController, MPCSolution
from control.vehicle_model import MPCState
from data.recorder import TickRecord, TickRecorder
from trajectory.reference import MalformedReferenceError, fit_reference, polyeval

logger = logging.getLogger(__name__)

TELEMETRY_FIELDS = ("ptsx", "ptsy", "x", "y", "psi", "speed", "steering_angle", "throttle")


def configure_logging(level: int = logging.INFO) -> Path:
    """Configure root logging to stderr and tmp/logs/mpc_stack.log."""
    log_dir = Path(__file__).parent / 'tmp' / 'logs'
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / 'mpc_stack.log'

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(str(log_file))
        ]
    )
    return log_file


def load_config(config_path: Optional[str] = None) -> dict:
    """Load configuration from YAML file or use defaults."""
    if config_path is None:
        config_path = Path(__file__).parent / "config" / "mpc_config.yaml"
    else:
        config_path = Path(config_path)

    if config_path.exists():
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f) or {}
        logger.info(f"Loaded configuration from {config_path}")
        return config
    else:
        logger.warning(f"Config file not found at {config_path}, using defaults")
        return {}


class TelemetryError(ValueError):
    """Telemetry payload is missing fields or has wrong types."""


@dataclass
class Telemetry:
    """One telemetry sample from the simulator (world frame)."""

    ptsx: list
    ptsy: list
    x: float
    y: float
    psi: float
    speed: float
    steering_angle: float  # normalized [-1, 1], last command
    throttle: float        # normalized [-1, 1], last command

    @classmethod
    def from_dict(cls, data: dict) -> "Telemetry":
        if not isinstance(data, dict):
            raise TelemetryError(f"Telemetry must be an object, got {type(data).__name__}")
        missing = [name for name in TELEMETRY_FIELDS if name not in data]
        if missing:
            raise TelemetryError(f"Telemetry missing fields: {missing}")
        for name in ("ptsx", "ptsy"):
            if not isinstance(data[name], (list, tuple)):
                raise TelemetryError(
                    f"Telemetry field {name!r} must be a list, got {type(data[name]).__name__}"
                )
        try:
            return cls(
                ptsx=[float(v) for v in data["ptsx"]],
                ptsy=[float(v) for v in data["ptsy"]],
                x=float(data["x"]),
                y=float(data["y"]),
                psi=float(data["psi"]),
                speed=float(data["speed"]),
                steering_angle=float(data["steering_angle"]),
                throttle=float(data["throttle"]),
            )
        except (TypeError, ValueError) as e:
            raise TelemetryError(f"Bad telemetry value: {e}") from e


@dataclass
class TickResult:
    """Outcome of one control tick."""

    command: ActuationCommand
    mpc_x: list = field(default_factory=list)
    mpc_y: list = field(default_factory=list)
    next_x: list = field(default_factory=list)
    next_y: list = field(default_factory=list)
    state: Optional[MPCState] = None
    coeffs: Optional[np.ndarray] = None
    solution: Optional[MPCSolution] = None
    failure_reason: Optional[str] = None

    def to_message(self) -> dict:
        """Payload of the simulator's "steer" event."""
        return {
            "steering_angle": self.command.steering_angle,
            "throttle": self.command.throttle,
            "mpc_x": self.mpc_x,
            "mpc_y": self.mpc_y,
            "next_x": self.next_x,
            "next_y": self.next_y,
        }


class MPCStack:
    """
    Per-connection control pipeline.

    One telemetry sample produces one reference fit, one latency prediction,
    one MPC solve and one actuation mapping. Only the failure fallback keeps
    state between ticks.
    """

    def __init__(self, config: Optional[MPCConfig] = None,
                 controller: Optional[MPCController] = None,
                 recorder: Optional[TickRecorder] = None):
        """
        Initialize MPC stack.

        Args:
            config: Controller configuration (defaults used if None)
            controller: Pre-built controller (built from config if None)
            recorder: Optional tick recorder
        """
        self.config = config or (controller.config if controller is not None else MPCConfig())
        self.controller = controller or MPCController(self.config)
        self.fallback = FallbackPolicy(self.config.fallback)
        self.recorder = recorder
        self.tick_count = 0

    def predict_state(self, telemetry: Telemetry, coeffs: np.ndarray) -> MPCState:
        """Latency-compensated optimization state for this telemetry sample."""
        delta0 = normalized_to_steering_angle(telemetry.steering_angle, self.config.max_steering_angle)
        return self.controller.model.predict_latency_state(
            v=telemetry.speed,
            delta0=delta0,
            a0=telemetry.throttle,
            latency=self.config.latency_s,
            coeffs=coeffs,
        )

    def process_telemetry(self, telemetry: Telemetry) -> TickResult:
        """Run one control tick."""
        self.tick_count += 1
        try:
            coeffs, _, _ = fit_reference(
                telemetry.ptsx,
                telemetry.ptsy,
                telemetry.x,
                telemetry.y,
                telemetry.psi,
                order=self.config.poly_order,
                strict_lengths=self.config.strict_waypoint_lengths,
            )
        except MalformedReferenceError as e:
            result = TickResult(
                command=self.fallback.on_failure(f"malformed reference: {e}"),
                failure_reason=f"malformed_reference: {e}",
            )
            self._record(result)
            return result

        state = self.predict_state(telemetry, coeffs)
        solution = self.controller.solve(state, coeffs)

        if not solution.success:
            result = TickResult(
                command=self.fallback.on_failure(f"{solution.status}: {solution.message}"),
                state=state,
                coeffs=coeffs,
                solution=solution,
                failure_reason=solution.status,
            )
            self._record(result)
            return result

        command = self.fallback.on_success(
            map_actuation(solution.delta, solution.a, self.config.max_steering_angle)
        )
        next_x = list(solution.x_trajectory)
        next_y = [float(polyeval(coeffs, x)) for x in next_x]
        result = TickResult(
            command=command,
            mpc_x=list(solution.x_trajectory),
            mpc_y=list(solution.y_trajectory),
            next_x=next_x,
            next_y=next_y,
            state=state,
            coeffs=coeffs,
            solution=solution,
        )
        logger.debug(
            "Tick %d: state=%s steer=%.4f throttle=%.4f",
            self.tick_count, state, command.steering_angle, command.throttle,
        )
        self._record(result)
        return result

    def process_message(self, data: dict) -> dict:
        """Parse a telemetry payload and return the "steer" payload."""
        return self.process_telemetry(Telemetry.from_dict(data)).to_message()

    def _record(self, result: TickResult):
        if self.recorder is None:
            return
        solution = result.solution
        self.recorder.record_tick(TickRecord(
            timestamp=time.time(),
            state=result.state.to_array() if result.state is not None else None,
            coeffs=result.coeffs,
            steering_angle=result.command.steering_angle,
            throttle=result.command.throttle,
            source=result.command.source,
            success=bool(solution is not None and solution.success),
            solve_time_s=solution.solve_time_s if solution is not None else 0.0,
            iterations=solution.iterations if solution is not None else 0,
            cost=solution.cost if solution is not None and solution.cost is not None else math.nan,
            mpc_x=result.mpc_x,
            mpc_y=result.mpc_y,
        ))


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description='Run MPC stack bridge server')
    parser.add_argument('--config', type=str, default=None,
                        help='Path to configuration YAML file (default: config/mpc_config.yaml)')
    parser.add_argument('--host', type=str, default=None,
                        help='Bind address (default from config, 0.0.0.0)')
    parser.add_argument('--port', type=int, default=None,
                        help='Listen port (default from config, 4567)')
    parser.add_argument('--record', action='store_true', default=False,
                        help='Record ticks to HDF5')
    parser.add_argument('--recording_dir', type=str, default='data/recordings',
                        help='Directory for recordings')
    parser.add_argument('--log-level', type=str, default='INFO',
                        help='Logging level (DEBUG, INFO, WARNING, ERROR)')

    args = parser.parse_args()

    configure_logging(getattr(logging, args.log_level.upper(), logging.INFO))
    raw_config = load_config(args.config)
    try:
        mpc_config = build_mpc_config(raw_config)
    except ValueError as e:
        parser.error(f"Invalid configuration: {e}")

    from bridge.server import create_app, run_server

    bridge_cfg = raw_config.get('bridge', {}) or {}
    record = args.record or bool((raw_config.get('recording', {}) or {}).get('enabled', False))
    app = create_app(
        mpc_config,
        simulate_latency=bool(bridge_cfg.get('simulate_latency', True)),
        recording_dir=args.recording_dir if record else None,
    )
    run_server(
        app,
        host=args.host or bridge_cfg.get('host', '0.0.0.0'),
        port=args.port or int(bridge_cfg.get('port', 4567)),
    )


if __name__ == "__main__":
    main()
