"""
Configuration for the MPC controller.

All tunables (horizon, vehicle geometry, cost weights, actuator bounds,
latency, solver caps, failure fallback) are grouped into one frozen
``MPCConfig`` value that is built once at startup and passed explicitly to
the controller.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional


SUPPORTED_SOLVER_METHODS = ("SLSQP", "trust-constr")


@dataclass(frozen=True)
class HorizonConfig:
    """Prediction horizon and vehicle constants."""

    N: int = 10
    dt: float = 0.1
    # Front axle to CoG. Tuned so that a constant steering circle in the
    # simulator matches the radius predicted by the kinematic model.
    Lf: float = 2.67
    # Target cruising speed, in the simulator's speed units.
    ref_v: float = 40.0


@dataclass(frozen=True)
class CostWeights:
    """Relative weights of the MPC cost terms."""

    cte: float = 100.0
    epsi: float = 100.0
    v: float = 1.0
    delta: float = 1000.0
    a: float = 10.0
    delta_rate: float = 5000.0
    a_rate: float = 10.0


@dataclass(frozen=True)
class SolverConfig:
    """NLP backend settings."""

    method: str = "SLSQP"
    max_iter: int = 300
    max_time_s: float = 1.1
    tolerance: float = 1e-8
    # Max |dynamics residual| accepted at the returned point.
    feasibility_tolerance: float = 1e-6


@dataclass(frozen=True)
class FallbackConfig:
    """Actuation policy for ticks without a valid solve."""

    hold_ticks: int = 2
    neutral_steering: float = 0.0
    neutral_throttle: float = -0.2


@dataclass(frozen=True)
class MPCConfig:
    """Complete controller configuration."""

    horizon: HorizonConfig = field(default_factory=HorizonConfig)
    weights: CostWeights = field(default_factory=CostWeights)
    solver: SolverConfig = field(default_factory=SolverConfig)
    fallback: FallbackConfig = field(default_factory=FallbackConfig)
    max_steering_angle_deg: float = 25.0
    max_acceleration: float = 1.0
    latency_s: float = 0.1
    yaw_rate_epsilon: float = 1e-4
    poly_order: int = 3
    strict_waypoint_lengths: bool = False
    slow_solve_warn_s: float = 0.1

    def __post_init__(self):
        validate_mpc_config(self)

    @property
    def max_steering_angle(self) -> float:
        """Maximum steering angle in radians."""
        return math.radians(self.max_steering_angle_deg)


def validate_mpc_config(config: MPCConfig) -> None:
    """Raise ValueError if the configuration cannot produce a well-posed problem."""
    horizon = config.horizon
    if int(horizon.N) < 2:
        raise ValueError(f"Horizon N must be >= 2, got {horizon.N}")
    if not horizon.dt > 0.0:
        raise ValueError(f"Horizon dt must be > 0, got {horizon.dt}")
    if not horizon.Lf > 0.0:
        raise ValueError(f"Lf must be > 0, got {horizon.Lf}")
    if not config.max_steering_angle_deg > 0.0:
        raise ValueError(
            f"max_steering_angle_deg must be > 0, got {config.max_steering_angle_deg}"
        )
    if not config.max_acceleration > 0.0:
        raise ValueError(f"max_acceleration must be > 0, got {config.max_acceleration}")
    if config.latency_s < 0.0:
        raise ValueError(f"latency_s must be >= 0, got {config.latency_s}")
    if config.poly_order != 3:
        raise ValueError(f"Only cubic reference fits are supported, got order {config.poly_order}")
    if config.solver.method not in SUPPORTED_SOLVER_METHODS:
        raise ValueError(
            f"Unknown solver method {config.solver.method!r}, "
            f"expected one of {SUPPORTED_SOLVER_METHODS}"
        )
    if config.solver.max_iter < 1:
        raise ValueError(f"solver.max_iter must be >= 1, got {config.solver.max_iter}")
    if not config.solver.max_time_s > 0.0:
        raise ValueError(f"solver.max_time_s must be > 0, got {config.solver.max_time_s}")
    if config.fallback.hold_ticks < 0:
        raise ValueError(f"fallback.hold_ticks must be >= 0, got {config.fallback.hold_ticks}")
    for name in ("cte", "epsi", "v", "delta", "a", "delta_rate", "a_rate"):
        if getattr(config.weights, name) < 0.0:
            raise ValueError(f"Cost weight {name!r} must be >= 0")


def build_mpc_config(config: Optional[dict] = None) -> MPCConfig:
    """Build an MPCConfig from the ``mpc`` section of the YAML config dictionary."""
    config = config or {}
    mpc_cfg = config.get("mpc", {}) or {}
    horizon_cfg = mpc_cfg.get("horizon", {}) or {}
    weights_cfg = mpc_cfg.get("weights", {}) or {}
    solver_cfg = mpc_cfg.get("solver", {}) or {}
    fallback_cfg = mpc_cfg.get("fallback", {}) or {}

    horizon_defaults = HorizonConfig()
    horizon = HorizonConfig(
        N=int(horizon_cfg.get("N", horizon_defaults.N)),
        dt=float(horizon_cfg.get("dt", horizon_defaults.dt)),
        Lf=float(horizon_cfg.get("Lf", horizon_defaults.Lf)),
        ref_v=float(horizon_cfg.get("ref_v", horizon_defaults.ref_v)),
    )

    weight_defaults = CostWeights()
    weights = CostWeights(**{
        name: float(weights_cfg.get(name, getattr(weight_defaults, name)))
        for name in ("cte", "epsi", "v", "delta", "a", "delta_rate", "a_rate")
    })

    solver_defaults = SolverConfig()
    solver = SolverConfig(
        method=str(solver_cfg.get("method", solver_defaults.method)),
        max_iter=int(solver_cfg.get("max_iter", solver_defaults.max_iter)),
        max_time_s=float(solver_cfg.get("max_time_s", solver_defaults.max_time_s)),
        tolerance=float(solver_cfg.get("tolerance", solver_defaults.tolerance)),
        feasibility_tolerance=float(
            solver_cfg.get("feasibility_tolerance", solver_defaults.feasibility_tolerance)
        ),
    )

    fallback_defaults = FallbackConfig()
    fallback = FallbackConfig(
        hold_ticks=int(fallback_cfg.get("hold_ticks", fallback_defaults.hold_ticks)),
        neutral_steering=float(
            fallback_cfg.get("neutral_steering", fallback_defaults.neutral_steering)
        ),
        neutral_throttle=float(
            fallback_cfg.get("neutral_throttle", fallback_defaults.neutral_throttle)
        ),
    )

    defaults = MPCConfig()
    return MPCConfig(
        horizon=horizon,
        weights=weights,
        solver=solver,
        fallback=fallback,
        max_steering_angle_deg=float(
            mpc_cfg.get("max_steering_angle_deg", defaults.max_steering_angle_deg)
        ),
        max_acceleration=float(mpc_cfg.get("max_acceleration", defaults.max_acceleration)),
        latency_s=float(mpc_cfg.get("latency_s", defaults.latency_s)),
        yaw_rate_epsilon=float(mpc_cfg.get("yaw_rate_epsilon", defaults.yaw_rate_epsilon)),
        poly_order=int(mpc_cfg.get("poly_order", defaults.poly_order)),
        strict_waypoint_lengths=bool(
            mpc_cfg.get("strict_waypoint_lengths", defaults.strict_waypoint_lengths)
        ),
        slow_solve_warn_s=float(mpc_cfg.get("slow_solve_warn_s", defaults.slow_solve_warn_s)),
    )
