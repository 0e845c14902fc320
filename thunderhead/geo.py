"""Coordinate projection and grid quantization.

Distances use a spherical, degree-based approximation: one degree of latitude
is taken as 111.0 km everywhere and east/west offsets are corrected by the
cosine of the origin latitude. This is a deliberate simplification, not
ellipsoidal geodesy; at the scan distances used (hundreds of km) the error is
well below the spatial resolution of the forecast model.
"""
from __future__ import annotations

import math

from thunderhead import config
from thunderhead.errors import DegenerateInputError
from thunderhead.models import Coordinate, Direction

# Sphere consistent with KM_PER_DEGREE, so N/S projections invert exactly
EARTH_RADIUS_KM = config.KM_PER_DEGREE * 180.0 / math.pi

# Below this |cos(lat)| an east/west offset is treated as undefined
POLAR_COS_EPSILON = 1e-6


def _wrap_longitude(lon: float) -> float:
    wrapped = (lon + 180.0) % 360.0 - 180.0
    # keep +180 rather than folding it to -180
    if wrapped == -180.0 and lon > 0:
        return 180.0
    return wrapped


def project(origin: Coordinate, direction: Direction, distance_km: float) -> Coordinate:
    """Offset ``origin`` by ``distance_km`` along a compass direction.

    Raises DegenerateInputError when the result is undefined: east/west near a
    pole (cos(lat) ~ 0, or an offset wrapping half the globe) and north/south
    offsets that would cross a pole.
    """
    if not distance_km > 0:
        raise ValueError(f"distance_km must be positive, got {distance_km}")

    lat, lon = origin.latitude, origin.longitude
    if direction in (Direction.NORTH, Direction.SOUTH):
        d_lat = distance_km / config.KM_PER_DEGREE
        new_lat = lat + d_lat if direction is Direction.NORTH else lat - d_lat
        if not -90.0 <= new_lat <= 90.0:
            raise DegenerateInputError(
                f"{direction.value} offset of {distance_km} km from {origin} crosses a pole"
            )
        return Coordinate(new_lat, lon)

    cos_lat = math.cos(math.radians(lat))
    if abs(cos_lat) < POLAR_COS_EPSILON:
        raise DegenerateInputError(f"east/west projection undefined at latitude {lat}")
    d_lon = distance_km / (config.KM_PER_DEGREE * cos_lat)
    if abs(d_lon) >= 180.0:
        raise DegenerateInputError(
            f"{direction.value} offset of {distance_km} km at latitude {lat} wraps the globe"
        )
    new_lon = lon + d_lon if direction is Direction.EAST else lon - d_lon
    return Coordinate(lat, _wrap_longitude(new_lon))


def great_circle_km(a: Coordinate, b: Coordinate) -> float:
    """Haversine distance on the same sphere ``project`` assumes."""
    phi1, phi2 = math.radians(a.latitude), math.radians(b.latitude)
    d_phi = phi2 - phi1
    d_lambda = math.radians(b.longitude - a.longitude)
    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))


def _cell_index(value: float, precision: int) -> int:
    # epsilon absorbs binary representation error, e.g. 35.68 * 100 = 3567.9999...
    return math.floor(value * 10 ** precision + 1e-9)


def grid_key(coordinate: Coordinate, precision: int = config.GRID_PRECISION) -> str:
    """Cache partition key for the cell containing ``coordinate``.

    Cells are floor-aligned, 10**-precision degrees on a side (0.01 deg ~ 1.1 km).
    """
    factor = 10 ** precision
    lat = _cell_index(coordinate.latitude, precision) / factor
    lon = _cell_index(coordinate.longitude, precision) / factor
    return f"weather_{lat:.{precision}f}_{lon:.{precision}f}"


def quantize(coordinate: Coordinate, precision: int = config.GRID_PRECISION) -> Coordinate:
    """Representative point (centre) of the grid cell containing ``coordinate``."""
    factor = 10 ** precision
    half = 0.5 / factor
    lat = _cell_index(coordinate.latitude, precision) / factor + half
    lon = _cell_index(coordinate.longitude, precision) / factor + half
    return Coordinate(min(lat, 90.0), min(lon, 180.0))
