"""
Reference path geometry.

Waypoints arrive in the world frame. They are moved into the vehicle frame
(origin at the car, x forward) and fitted with a cubic y = c0 + c1*x + c2*x^2 + c3*x^3.
Coefficients are stored in ascending order throughout the controller.
"""

from __future__ import annotations

import logging
import math
from typing import Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

REFERENCE_POLY_ORDER = 3


class MalformedReferenceError(ValueError):
    """Waypoints cannot produce a usable reference polynomial."""


def world_to_vehicle(
    ptsx: Sequence[float],
    ptsy: Sequence[float],
    px: float,
    py: float,
    psi: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Transform world-frame waypoints into the vehicle frame.

    Args:
        ptsx: Waypoint x coordinates (world frame)
        ptsy: Waypoint y coordinates (world frame), same length as ptsx
        px, py: Vehicle position (world frame)
        psi: Vehicle heading (radians, world frame)

    Returns:
        (xs, ys) in the vehicle frame
    """
    dx = np.asarray(ptsx, dtype=float) - px
    dy = np.asarray(ptsy, dtype=float) - py
    cos_psi = math.cos(-psi)
    sin_psi = math.sin(-psi)
    xs = cos_psi * dx - sin_psi * dy
    ys = sin_psi * dx + cos_psi * dy
    return xs, ys


def polyfit(xs: Sequence[float], ys: Sequence[float], order: int = REFERENCE_POLY_ORDER) -> np.ndarray:
    """Least-squares polynomial fit, coefficients in ascending order."""
    xs = np.asarray(xs, dtype=float)
    ys = np.asarray(ys, dtype=float)
    if xs.shape != ys.shape:
        raise MalformedReferenceError(
            f"x/y sample shapes differ: {xs.shape} vs {ys.shape}"
        )
    if order < 1 or len(xs) < order + 1:
        raise MalformedReferenceError(
            f"Need at least {order + 1} points for an order-{order} fit, got {len(xs)}"
        )
    try:
        coeffs = np.polyfit(xs, ys, deg=order)
    except np.linalg.LinAlgError as e:
        raise MalformedReferenceError(f"Least-squares fit failed: {e}") from e
    return coeffs[::-1].copy()


def polyeval(coeffs: Sequence[float], x):
    """Evaluate an ascending-order polynomial at x (scalar or array)."""
    return np.polyval(np.asarray(coeffs, dtype=float)[::-1], x)


def poly_slope(coeffs: Sequence[float], x):
    """First derivative dy/dx of the reference cubic."""
    c = coeffs
    return c[1] + 2.0 * c[2] * x + 3.0 * c[3] * x * x


def poly_slope_derivative(coeffs: Sequence[float], x):
    """Second derivative d2y/dx2 of the reference cubic."""
    return 2.0 * coeffs[2] + 6.0 * coeffs[3] * x


def desired_heading(coeffs: Sequence[float], x):
    """Heading of the reference curve at x (radians, vehicle frame)."""
    return np.arctan(poly_slope(coeffs, x))


def fit_reference(
    ptsx: Sequence[float],
    ptsy: Sequence[float],
    px: float,
    py: float,
    psi: float,
    order: int = REFERENCE_POLY_ORDER,
    strict_lengths: bool = False,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Fit the vehicle-frame reference polynomial from world-frame waypoints.

    Only the first min(len(ptsx), len(ptsy)) points are used. With
    strict_lengths, mismatched sequences are rejected instead.

    Returns:
        (coeffs, xs, ys) with coeffs in ascending order and the vehicle-frame
        waypoints used for the fit

    Raises:
        MalformedReferenceError: too few points, non-finite values or a failed fit
    """
    n_x, n_y = len(ptsx), len(ptsy)
    if n_x != n_y:
        if strict_lengths:
            raise MalformedReferenceError(
                f"Waypoint sequences differ in length: ptsx={n_x} ptsy={n_y}"
            )
        logger.warning("Waypoint length mismatch ptsx=%d ptsy=%d, using first %d",
                       n_x, n_y, min(n_x, n_y))
    dim = min(n_x, n_y)
    if dim < order + 1:
        raise MalformedReferenceError(
            f"Need at least {order + 1} waypoints for the reference fit, got {dim}"
        )

    xs, ys = world_to_vehicle(list(ptsx)[:dim], list(ptsy)[:dim], px, py, psi)
    if not (np.all(np.isfinite(xs)) and np.all(np.isfinite(ys))):
        raise MalformedReferenceError("Waypoints or vehicle pose contain non-finite values")

    coeffs = polyfit(xs, ys, order)
    if not np.all(np.isfinite(coeffs)):
        raise MalformedReferenceError("Reference fit produced non-finite coefficients")
    return coeffs, xs, ys
