"""Geometry helpers for route rendering and waypoint selection.

Polylines are sequences of ``(lat, lng)`` pairs in decimal degrees.
"""
from __future__ import annotations

import math
from typing import Callable, List, Sequence, Tuple

from errors import InvalidCoordinates

# ---------------------------
# Constants
# ---------------------------
R_EARTH_M = 6371e3
R_EARTH_KM = 6371.0
DEGREE_LENGTH_M = 111195.0
DEFAULT_SIMPLIFY_EPSILON = 0.0001

LatLng = Tuple[float, float]


def to_rad(d: float) -> float: return d * math.pi / 180.0


def _finite(*values) -> Tuple[float, ...]:
    out = []
    for value in values:
        try:
            num = float(value)
        except (TypeError, ValueError):
            raise InvalidCoordinates(f"coordenada não numérica: {value!r}")
        if not math.isfinite(num):
            raise InvalidCoordinates(f"coordenada inválida: {value!r}")
        out.append(num)
    return tuple(out)


def fast_distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Equirectangular distance in meters; good enough below ~50 km."""
    lat1, lon1, lat2, lon2 = _finite(lat1, lon1, lat2, lon2)
    if lat1 == lat2 and lon1 == lon2:
        return 0.0
    x = lat1 - lat2
    y = (lon1 - lon2) * math.cos(to_rad((lat1 + lat2) * 0.5))
    return DEGREE_LENGTH_M * math.sqrt(x * x + y * y)


def _haversine(lat1: float, lon1: float, lat2: float, lon2: float, radius: float) -> float:
    lat1, lon1, lat2, lon2 = _finite(lat1, lon1, lat2, lon2)
    dlat = to_rad(lat2 - lat1); dlon = to_rad(lon2 - lon1)
    s = math.sin(dlat/2)**2 + math.cos(to_rad(lat1))*math.cos(to_rad(lat2))*math.sin(dlon/2)**2
    return 2 * radius * math.atan2(math.sqrt(s), math.sqrt(1 - s))


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    return _haversine(lat1, lon1, lat2, lon2, R_EARTH_M)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    return _haversine(lat1, lon1, lat2, lon2, R_EARTH_KM)


def find_nearest_point_index(
    route: Sequence[LatLng],
    target: LatLng,
    distance: Callable[[float, float, float, float], float] = fast_distance_m,
) -> int:
    """Index of the route point closest to ``target``; -1 for an empty route.

    Ties keep the first (lowest index) minimum.
    """
    if not route:
        return -1
    t_lat, t_lng = target
    best_idx = 0
    best = math.inf
    for idx, (lat, lng) in enumerate(route):
        d = distance(lat, lng, t_lat, t_lng)
        if d < best:
            best = d
            best_idx = idx
    return best_idx


def _segment_distance_sq(point: Sequence[float], start: Sequence[float], end: Sequence[float]) -> float:
    x, y = point[0], point[1]
    x1, y1 = start[0], start[1]
    x2, y2 = end[0], end[1]
    c = x2 - x1
    d = y2 - y1
    len_sq = c * c + d * d
    param = ((x - x1) * c + (y - y1) * d) / len_sq if len_sq != 0 else -1.0
    if param < 0:
        xx, yy = x1, y1
    elif param > 1:
        xx, yy = x2, y2
    else:
        xx, yy = x1 + param * c, y1 + param * d
    dx = x - xx
    dy = y - yy
    return dx * dx + dy * dy


def simplify_route(points: Sequence[Sequence[float]], epsilon: float = DEFAULT_SIMPLIFY_EPSILON) -> List:
    """Ramer-Douglas-Peucker reduction of a polyline.

    ``epsilon`` is in degrees. The result is a subsequence of ``points`` that
    always keeps the first and last point. Splits are processed with an
    explicit stack so long GPS logs cannot hit the recursion limit; the kept
    indices are the same as the recursive formulation.
    """
    n = len(points)
    if n < 3:
        return list(points)

    epsilon_sq = epsilon * epsilon
    keep = [False] * n
    keep[0] = keep[n - 1] = True
    stack = [(0, n - 1)]
    while stack:
        first, last = stack.pop()
        if last - first < 2:
            continue
        dmax_sq = 0.0
        index = first
        for i in range(first + 1, last):
            d_sq = _segment_distance_sq(points[i], points[first], points[last])
            if d_sq > dmax_sq:
                index = i
                dmax_sq = d_sq
        if dmax_sq > epsilon_sq:
            keep[index] = True
            stack.append((index, last))
            stack.append((first, index))

    return [p for p, kept in zip(points, keep) if kept]


__all__ = [
    "DEFAULT_SIMPLIFY_EPSILON",
    "fast_distance_m",
    "haversine_m",
    "haversine_km",
    "find_nearest_point_index",
    "simplify_route",
]
