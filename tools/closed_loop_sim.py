#!/usr/bin/env python3
"""
Closed-loop MPC simulation without the simulator.

Drives the MPC stack around a synthetic sinusoidal track, using the kinematic
bicycle model as the plant and delaying every command by the configured
latency. Reports cross-track statistics and optionally plots the run.

Usage:
    python tools/closed_loop_sim.py
    python tools/closed_loop_sim.py --ticks 300 --plot
    python tools/closed_loop_sim.py --bridge_url http://localhost:4567
"""

import argparse
import math
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import numpy as np

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from bridge.client import MPCBridgeClient
from control.actuation import normalized_to_steering_angle
from control.mpc_config import MPCConfig, build_mpc_config
from control.vehicle_model import KinematicBicycleModel
from mpc_stack import MPCStack, Telemetry, load_config


@dataclass
class SimulationResult:
    """Trace of one closed-loop run."""

    xs: List[float] = field(default_factory=list)
    ys: List[float] = field(default_factory=list)
    speeds: List[float] = field(default_factory=list)
    steering: List[float] = field(default_factory=list)
    throttle: List[float] = field(default_factory=list)
    cross_track: List[float] = field(default_factory=list)
    failed_ticks: int = 0

    @property
    def max_abs_cte(self) -> float:
        return float(np.max(np.abs(self.cross_track))) if self.cross_track else 0.0

    @property
    def mean_abs_cte(self) -> float:
        return float(np.mean(np.abs(self.cross_track))) if self.cross_track else 0.0


def sinusoidal_track(length: float = 3000.0, amplitude: float = 25.0,
                     wavelength: float = 600.0, spacing: float = 5.0) -> np.ndarray:
    """Centerline waypoints (M, 2) of a sinusoidal road along +x."""
    x = np.arange(0.0, length, spacing)
    y = amplitude * np.sin(2.0 * np.pi * x / wavelength)
    return np.column_stack([x, y])


def _project_onto_track(track: np.ndarray, px: float, py: float):
    """Distance from (px, py) to each track segment."""
    starts = track[:-1]
    seg = track[1:] - starts
    rel = np.array([px, py]) - starts
    t = np.clip(np.sum(rel * seg, axis=1) / np.sum(seg * seg, axis=1), 0.0, 1.0)
    closest = starts + seg * t[:, np.newaxis]
    return np.linalg.norm(closest - np.array([px, py]), axis=1)


def lateral_distance(track: np.ndarray, px: float, py: float) -> float:
    """Distance from (px, py) to the nearest track segment."""
    return float(np.min(_project_onto_track(track, px, py)))


def upcoming_waypoints(track: np.ndarray, px: float, py: float, count: int = 6) -> np.ndarray:
    """The `count` waypoints starting at the beginning of the segment the vehicle is on."""
    start = int(np.argmin(_project_onto_track(track, px, py)))
    return track[start:start + count]


def run_simulation(config: MPCConfig, ticks: int = 200, initial_speed: float = 10.0,
                   initial_offset: float = 1.0, client: Optional[MPCBridgeClient] = None,
                   track: Optional[np.ndarray] = None) -> SimulationResult:
    """
    Run the closed loop for a number of ticks.

    Each tick lasts config.latency_s; the command computed on a tick is
    applied during the next one.
    """
    track = sinusoidal_track() if track is None else track
    stack = MPCStack(config) if client is None else None
    plant = KinematicBicycleModel(config.horizon.Lf)
    tick_dt = max(config.latency_s, 0.05)
    no_reference = np.zeros(4)

    heading = math.atan2(track[1, 1] - track[0, 1], track[1, 0] - track[0, 0])
    state = np.array([
        track[0, 0] - initial_offset * math.sin(heading),
        track[0, 1] + initial_offset * math.cos(heading),
        heading, initial_speed, 0.0, 0.0,
    ])
    applied_steering, applied_throttle = 0.0, 0.0
    result = SimulationResult()

    for _ in range(ticks):
        waypoints = upcoming_waypoints(track, state[0], state[1])
        if len(waypoints) < 4:
            break
        telemetry = dict(
            ptsx=waypoints[:, 0].tolist(),
            ptsy=waypoints[:, 1].tolist(),
            x=state[0],
            y=state[1],
            psi=state[2],
            speed=state[3],
            steering_angle=applied_steering,
            throttle=applied_throttle,
        )
        if client is not None:
            response = client.send_telemetry(**telemetry)
            if response is None:
                result.failed_ticks += 1
                response = {"steering_angle": 0.0, "throttle": 0.0}
            steering, throttle = response["steering_angle"], response["throttle"]
        else:
            tick = stack.process_telemetry(Telemetry(**telemetry))
            if tick.command.source != "mpc":
                result.failed_ticks += 1
            steering, throttle = tick.command.steering_angle, tick.command.throttle

        # The previous command stays active while the new one is in flight.
        delta = normalized_to_steering_angle(applied_steering, config.max_steering_angle)
        state = plant.step(state, delta, applied_throttle, tick_dt, no_reference)
        applied_steering, applied_throttle = steering, throttle

        result.xs.append(float(state[0]))
        result.ys.append(float(state[1]))
        result.speeds.append(float(state[3]))
        result.steering.append(float(steering))
        result.throttle.append(float(throttle))
        result.cross_track.append(lateral_distance(track, state[0], state[1]))

    return result


def plot_result(track: np.ndarray, result: SimulationResult, output: Optional[str] = None):
    import matplotlib.pyplot as plt

    fig, axes = plt.subplots(3, 1, figsize=(10, 10))
    axes[0].plot(track[:, 0], track[:, 1], 'y-', label='reference')
    axes[0].plot(result.xs, result.ys, 'g-', label='vehicle')
    axes[0].set_aspect('equal', adjustable='datalim')
    axes[0].legend()
    axes[0].set_title('Path')
    axes[1].plot(result.cross_track)
    axes[1].set_ylabel('|cte|')
    axes[2].plot(result.steering, label='steering')
    axes[2].plot(result.throttle, label='throttle')
    axes[2].set_xlabel('tick')
    axes[2].legend()
    plt.tight_layout()
    if output:
        plt.savefig(output, dpi=120)
        print(f"Saved plot to {output}")
    else:
        plt.show()


def main():
    parser = argparse.ArgumentParser(description='Closed-loop MPC simulation on a synthetic track')
    parser.add_argument('--config', type=str, default=None,
                        help='Path to configuration YAML file (default: config/mpc_config.yaml)')
    parser.add_argument('--ticks', type=int, default=200, help='Number of control ticks')
    parser.add_argument('--speed', type=float, default=10.0, help='Initial speed')
    parser.add_argument('--offset', type=float, default=1.0, help='Initial lateral offset')
    parser.add_argument('--bridge_url', type=str, default=None,
                        help='Run ticks through a running bridge server instead of in-process')
    parser.add_argument('--plot', action='store_true', help='Plot the run')
    parser.add_argument('--plot_output', type=str, default=None, help='Save plot to this file')
    args = parser.parse_args()

    config = build_mpc_config(load_config(args.config))
    client = None
    if args.bridge_url:
        client = MPCBridgeClient(args.bridge_url)
        if not client.health_check():
            print(f"Bridge server not reachable at {args.bridge_url}")
            return 1

    track = sinusoidal_track()
    result = run_simulation(config, ticks=args.ticks, initial_speed=args.speed,
                            initial_offset=args.offset, client=client, track=track)

    print(f"Ticks: {len(result.cross_track)}  failed: {result.failed_ticks}")
    print(f"Cross-track: mean={result.mean_abs_cte:.3f} max={result.max_abs_cte:.3f}")
    if result.speeds:
        print(f"Speed: final={result.speeds[-1]:.2f} max={max(result.speeds):.2f}")

    if args.plot or args.plot_output:
        plot_result(track, result, args.plot_output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
