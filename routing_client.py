"""TomTom routing client with API-key pool rotation.

``calculateRoute`` takes the origin and waypoints as one path segment
(``lat,lng:lat,lng:...``) and returns a summary plus per-leg points.
"""
from __future__ import annotations

import os
import random
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Tuple

import httpx

from errors import RoutingUnavailable

TOMTOM_BASE_DEFAULT = "https://api.tomtom.com/routing/1/calculateRoute"


@dataclass
class RouteResult:
    coordinates: List[Tuple[float, float]]
    distance_meters: float
    travel_time_seconds: float


@dataclass
class KeyRotationPolicy:
    """Order in which pooled API keys are tried.

    Every key is tried at most once per call. The attempt budget is the
    pool size, optionally lowered by ``attempt_limit``. ``shuffle``
    reorders the list in place.
    """
    keys: Sequence[str]
    shuffle: Callable[[List[str]], None] = field(default=random.shuffle)
    attempt_limit: Optional[int] = None

    @property
    def max_attempts(self) -> int:
        pool = len([key for key in self.keys if key])
        if self.attempt_limit is None:
            return pool
        return max(0, min(pool, self.attempt_limit))

    def ordered_keys(self) -> List[str]:
        keys = [key for key in self.keys if key]
        self.shuffle(keys)
        return keys[: self.max_attempts]


def format_coordinates(points: Sequence[Tuple[float, float]]) -> str:
    return ":".join(f"{lat},{lng}" for lat, lng in points)


def extract_route(payload: Any) -> RouteResult:
    """Read summary and leg points from a ``calculateRoute`` response."""
    routes = payload.get("routes") if isinstance(payload, dict) else None
    first = routes[0] if isinstance(routes, list) and routes and isinstance(routes[0], dict) else {}
    summary = first.get("summary") if isinstance(first.get("summary"), dict) else {}

    coords: List[Tuple[float, float]] = []
    legs = first.get("legs")
    if isinstance(legs, list):
        for leg in legs:
            points = leg.get("points") if isinstance(leg, dict) else None
            if not isinstance(points, list):
                continue
            for point in points:
                if not isinstance(point, dict):
                    continue
                try:
                    coords.append((float(point["latitude"]), float(point["longitude"])))
                except (KeyError, TypeError, ValueError):
                    continue

    def _num(key: str) -> float:
        try:
            return float(summary.get(key) or 0)
        except (TypeError, ValueError):
            return 0.0

    return RouteResult(
        coordinates=coords,
        distance_meters=_num("lengthInMeters"),
        travel_time_seconds=_num("travelTimeInSeconds"),
    )


class RoutingClient:
    """Traffic-aware bus routing through a pool of interchangeable keys."""

    def __init__(
        self,
        policy: KeyRotationPolicy,
        base_url: str = TOMTOM_BASE_DEFAULT,
        timeout: float = 8.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.policy = policy
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_env(cls) -> "RoutingClient":
        """``TOMTOM_KEYS`` is a comma-separated key pool."""
        keys = [key.strip() for key in (os.getenv("TOMTOM_KEYS") or "").split(",") if key.strip()]
        limit_env = (os.getenv("ROUTING_MAX_ATTEMPTS") or "").strip()
        return cls(
            policy=KeyRotationPolicy(keys, attempt_limit=int(limit_env) if limit_env else None),
            base_url=(os.getenv("TOMTOM_BASE") or TOMTOM_BASE_DEFAULT).strip(),
            timeout=float(os.getenv("ROUTING_HTTP_TIMEOUT_S", "8")),
        )

    async def calculate_route(self, points: Sequence[Tuple[float, float]]) -> RouteResult:
        url = f"{self._base_url}/{format_coordinates(points)}/json"
        keys = self.policy.ordered_keys()
        if not keys:
            raise RoutingUnavailable("Nenhuma chave de roteamento configurada")

        last_error: Optional[Exception] = None
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            for attempt, key in enumerate(keys, start=1):
                params = {"key": key, "traffic": "true", "travelMode": "bus"}
                try:
                    response = await client.get(url, params=params)
                    response.raise_for_status()
                    return extract_route(response.json())
                except (httpx.HTTPError, ValueError) as exc:
                    last_error = exc
                    print(f"[routing] attempt {attempt}/{len(keys)} failed: {type(exc).__name__}")
                    continue

        # Error text may embed the request URL, which carries the key
        reason = type(last_error).__name__ if last_error else "unknown"
        raise RoutingUnavailable(f"Falha no serviço de roteamento (TomTom): {reason}")


__all__ = [
    "RouteResult",
    "KeyRotationPolicy",
    "RoutingClient",
    "extract_route",
    "format_coordinates",
]
