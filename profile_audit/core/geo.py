"""Small-angle geometry helpers for rank-check grids.

Distances are converted to degrees with a fixed factor that is accurate
enough at city scale; nothing here attempts geodesic precision.
"""
from __future__ import annotations

import math

from profile_audit.core.schema import GRID_SIZES, Coordinate
from profile_audit.domain.errors import ValidationError

MILES_TO_DEGREES = 0.0145
EARTH_RADIUS_METERS = 6371e3


def grid_step_degrees(radius_miles: float, grid_size: int) -> float:
    """Angular spacing between neighbouring points of the lattice."""

    if grid_size not in GRID_SIZES:
        raise ValidationError(f"grid_size must be one of {GRID_SIZES}")
    if radius_miles <= 0:
        raise ValidationError("radius_miles must be positive")
    return (radius_miles * MILES_TO_DEGREES) / (grid_size // 2)


def build_grid(center: Coordinate, radius_miles: float, grid_size: int) -> list[Coordinate]:
    """Return ``grid_size * grid_size`` points spanning ``±radius`` around ``center``."""

    step = grid_step_degrees(radius_miles, grid_size)
    half = grid_size // 2
    points: list[Coordinate] = []
    for row in range(-half, half + 1):
        for col in range(-half, half + 1):
            points.append(Coordinate(lat=center.lat + row * step, lng=center.lng + col * step))
    return points


def haversine_meters(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
