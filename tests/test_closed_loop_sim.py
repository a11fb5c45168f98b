"""
Closed-loop test: MPC stack driving the kinematic plant around a synthetic track.
"""

import math

import numpy as np

from control.mpc_config import MPCConfig
from tools.closed_loop_sim import (
    lateral_distance,
    run_simulation,
    sinusoidal_track,
    upcoming_waypoints,
)


def test_lateral_distance_to_straight_track():
    track = np.column_stack([np.arange(0.0, 50.0, 5.0), np.zeros(10)])
    assert lateral_distance(track, 12.0, 1.5) == 1.5


def test_upcoming_waypoints_start_at_current_segment():
    """The first waypoint is the start of the segment under the car, the second is ahead."""
    track = sinusoidal_track()
    py = 25.0 * math.sin(2.0 * math.pi * 51.0 / 600.0)
    waypoints = upcoming_waypoints(track, 51.0, py)
    assert len(waypoints) == 6
    assert waypoints[0, 0] < 51.0 < waypoints[1, 0]


def test_upcoming_waypoints_start_at_vertex_just_behind():
    """Just past a vertex, the window starts at that vertex rather than one further back."""
    track = np.column_stack([np.arange(0.0, 50.0, 5.0), np.zeros(10)])
    waypoints = upcoming_waypoints(track, 11.0, 0.5)
    assert waypoints[0, 0] == 10.0
    assert waypoints[1, 0] == 15.0


def test_closed_loop_converges_to_track():
    """Starting 1 m off the centerline, the car settles onto the track."""
    result = run_simulation(MPCConfig(), ticks=30, initial_speed=10.0, initial_offset=1.0)

    assert len(result.cross_track) == 30
    assert result.failed_ticks <= 3
    assert result.max_abs_cte < 2.0
    assert np.mean(np.abs(result.cross_track[-5:])) < 1.0
    assert result.speeds[-1] > 10.0
