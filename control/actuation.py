"""
Actuation mapping and failure fallback.

Maps optimizer output (steering in radians, acceleration) to the simulator's
normalized actuator range, and decides what to send on ticks without a valid solve.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

from control.mpc_config import FallbackConfig

logger = logging.getLogger(__name__)

DEFAULT_MAX_STEERING_ANGLE = math.radians(25.0)


@dataclass(frozen=True)
class ActuationCommand:
    """Normalized actuator command sent to the simulator."""

    steering_angle: float  # -1.0 to 1.0, positive turns right
    throttle: float        # -1.0 to 1.0
    source: str = "mpc"    # "mpc", "hold", "neutral"


def map_actuation(delta: float, a: float,
                  max_steering_angle: float = DEFAULT_MAX_STEERING_ANGLE) -> ActuationCommand:
    """
    Convert optimizer output to the simulator's actuator convention.

    The model's positive steering turns left; the simulator's positive
    steering value turns right, hence the sign inversion.
    """
    return ActuationCommand(steering_angle=-delta / max_steering_angle, throttle=a)


def normalized_to_steering_angle(steering_value: float,
                                 max_steering_angle: float = DEFAULT_MAX_STEERING_ANGLE) -> float:
    """Inverse of map_actuation for steering: simulator value to model radians."""
    return -steering_value * max_steering_angle


class FallbackPolicy:
    """
    Chooses the command for ticks whose solve failed or never ran.

    The last valid command is held for up to hold_ticks consecutive failures,
    after which a neutral command (straight wheels, mild braking) is sent until
    a solve succeeds again.
    """

    def __init__(self, config: Optional[FallbackConfig] = None):
        self.config = config or FallbackConfig()
        self.last_valid: Optional[ActuationCommand] = None
        self.failure_streak = 0

    @property
    def neutral(self) -> ActuationCommand:
        return ActuationCommand(
            steering_angle=self.config.neutral_steering,
            throttle=self.config.neutral_throttle,
            source="neutral",
        )

    def on_success(self, command: ActuationCommand) -> ActuationCommand:
        if self.failure_streak:
            logger.info("MPC recovered after %d failed ticks", self.failure_streak)
        self.failure_streak = 0
        self.last_valid = command
        return command

    def on_failure(self, reason: str) -> ActuationCommand:
        self.failure_streak += 1
        if self.last_valid is not None and self.failure_streak <= self.config.hold_ticks:
            logger.warning("Holding last command (failure %d/%d): %s",
                           self.failure_streak, self.config.hold_ticks, reason)
            return ActuationCommand(
                steering_angle=self.last_valid.steering_angle,
                throttle=self.last_valid.throttle,
                source="hold",
            )
        logger.warning("Sending neutral command (failure streak %d): %s",
                       self.failure_streak, reason)
        return self.neutral

    def reset(self) -> None:
        self.last_valid = None
        self.failure_streak = 0
