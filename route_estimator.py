"""On-demand route and arrival estimate for a single vehicle.

An estimate chains the tracker position, the owning trip from the upstream
snapshot, the trip's planned and executed geometry, and (for ``inicial``
requests) a traffic-aware routing call through the stops still ahead. The
resulting arrival time is written to the prediction cache so the fleet
board can show it.
"""
from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from caches import PredictionCache, SnapshotCache, normalize_plate
from errors import NoStopsDefined, TripNotFound, UpstreamUnavailable
from fleet_aggregator import SERVER_TZ, stop_type, trip_identifier, trip_plate
from fleet_api import FleetApiClient
from fleet_models import NOT_AVAILABLE, SNAPSHOT_GROUPS, StopMarker, TimeValue, TripType
from geometry import DEFAULT_SIMPLIFY_EPSILON, fast_distance_m, find_nearest_point_index, simplify_route
from routing_client import RoutingClient
from tracker_client import TrackerClient, VehiclePosition

# TomTom accepts at most this many waypoints per request
MAX_ROUTING_WAYPOINTS = 15


def _point(lat_raw: Any, lng_raw: Any) -> Optional[List[float]]:
    try:
        lat = float(lat_raw)
        lng = float(lng_raw)
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return None
    return [lat, lng]


def parse_path(raw: Sequence[Any]) -> List[List[float]]:
    """``[{latitude|lat, longitude|lng}, ...]`` -> ``[[lat, lng], ...]``."""
    path: List[List[float]] = []
    for item in raw or []:
        if not isinstance(item, Mapping):
            continue
        lat = item.get("latitude", item.get("lat"))
        lng = item.get("longitude", item.get("lng"))
        point = _point(lat, lng)
        if point is not None:
            path.append(point)
    return path


def stop_markers(stops: Sequence[Any]) -> Tuple[List[StopMarker], Optional[StopMarker]]:
    """Stops with usable coordinates, plus the trip's final stop among them."""
    markers: List[StopMarker] = []
    final: Optional[StopMarker] = None
    for stop in stops or []:
        if not isinstance(stop, Mapping):
            continue
        point = _point(stop.get("latitude"), stop.get("longitude"))
        if point is None or not point[0] or not point[1]:
            continue
        marker = StopMarker(
            lat=point[0],
            lng=point[1],
            passed=bool(stop.get("passou")),
            name=str(stop.get("descricao") or "Ponto"),
        )
        markers.append(marker)
        if stop_type(stop) == "Final":
            final = marker
    if final is None and markers:
        final = markers[-1]
    return markers, final


def select_waypoints(
    markers: Sequence[StopMarker],
    position: Tuple[float, float],
    destination: StopMarker,
    limit: int = MAX_ROUTING_WAYPOINTS,
) -> List[StopMarker]:
    """Stops still ahead of the vehicle, capped at ``limit``, ending at ``destination``.

    The nearest pending stop is the first waypoint; pending stops before it
    are behind the vehicle and are dropped so the route does not backtrack.
    """
    pending = [m for m in markers if not m.passed]
    forward: List[StopMarker] = []
    if pending:
        idx = find_nearest_point_index([m.point for m in pending], position, fast_distance_m)
        forward = pending[idx:]

    # The destination goes last exactly once, wherever it sits in stop order
    forward = [m for m in forward if m.point != destination.point]
    if len(forward) >= limit:
        forward = forward[: limit - 1]
    forward.append(destination)
    return forward


def format_duration(seconds: float) -> str:
    seconds = int(seconds)
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    return f"{hours}h {minutes}min" if hours > 0 else f"{minutes} min"


@dataclass
class RouteEstimate:
    trip_id: str
    plate: str
    trip_type: TripType
    position: VehiclePosition
    destination: StopMarker
    stops: List[StopMarker]
    official_path: List[List[float]] = field(default_factory=list)
    executed_path: List[List[float]] = field(default_factory=list)
    predicted_path: List[List[float]] = field(default_factory=list)
    waypoints: List[StopMarker] = field(default_factory=list)
    travel_time_seconds: Optional[float] = None
    distance_meters: Optional[float] = None
    arrival: TimeValue = field(default_factory=TimeValue.unknown)

    def to_dict(self) -> Dict[str, Any]:
        pos = self.position
        routed = self.travel_time_seconds is not None
        return {
            "id_linha": self.trip_id,
            "tipo": self.trip_type.value,
            "tempo": format_duration(self.travel_time_seconds) if routed else NOT_AVAILABLE,
            "distancia": f"{(self.distance_meters or 0) / 1000:.2f} km" if routed else NOT_AVAILABLE,
            "duracaoSegundos": self.travel_time_seconds,
            "origem_endereco": pos.address or f"Lat: {pos.lat:.4f}, Lng: {pos.lng:.4f}",
            "destino_endereco": self.destination.name,
            "veiculo_pos": [pos.lat, pos.lng],
            "rastro_oficial": self.official_path,
            "rastro_real": self.executed_path,
            "rastro_previsto": self.predicted_path,
            "waypoints_usados": [[w.lat, w.lng] for w in self.waypoints],
            "todos_pontos_visual": [m.to_dict() for m in self.stops],
            "previsao_chegada": str(self.arrival),
        }


class RouteEstimator:
    def __init__(
        self,
        api: FleetApiClient,
        tracker: TrackerClient,
        routing: RoutingClient,
        snapshot_cache: SnapshotCache,
        predictions: PredictionCache,
        tz: ZoneInfo = SERVER_TZ,
        max_waypoints: int = MAX_ROUTING_WAYPOINTS,
        simplify_epsilon: float = DEFAULT_SIMPLIFY_EPSILON,
        now_fn: Optional[Callable[[], datetime]] = None,
    ):
        self.api = api
        self.tracker = tracker
        self.routing = routing
        self.snapshot_cache = snapshot_cache
        self.predictions = predictions
        self.tz = tz
        self.max_waypoints = max_waypoints
        self.simplify_epsilon = simplify_epsilon
        self._now_fn = now_fn or (lambda: datetime.now(self.tz))

    async def find_trip(self, plate: str, trip_id_hint: Optional[str] = None) -> Mapping[str, Any]:
        clean = normalize_plate(plate)
        snapshot = await self.snapshot_cache.get(self.api.fetch_snapshot)
        for key, _category in SNAPSHOT_GROUPS:
            group = snapshot.get(key) or []
            for raw in group:
                if not isinstance(raw, Mapping):
                    continue
                if normalize_plate(trip_plate(raw)) != clean:
                    continue
                if trip_id_hint and trip_identifier(raw) != str(trip_id_hint):
                    continue
                return raw
        raise TripNotFound()

    async def _planned_geometry(self, trip_id: str) -> List[Any]:
        try:
            return await self.api.fetch_planned_geometry(trip_id)
        except UpstreamUnavailable as exc:
            print(f"[route] planned geometry unavailable for trip {trip_id}: {exc}")
            return []

    async def _executed_geometry(self, vehicle_id: Optional[str], trip_id: str) -> List[Any]:
        if not vehicle_id:
            return []
        try:
            return await self.api.fetch_executed_log(vehicle_id, trip_id)
        except UpstreamUnavailable as exc:
            print(f"[route] executed log unavailable for trip {trip_id}: {exc}")
            return []

    def _simplify(self, path: Sequence[Sequence[float]]) -> List[List[float]]:
        return [list(p) for p in simplify_route(path, self.simplify_epsilon)]

    async def estimate_route(
        self,
        plate: str,
        trip_type: TripType,
        trip_id_hint: Optional[str] = None,
    ) -> RouteEstimate:
        clean = normalize_plate(plate)
        position = await self.tracker.locate(clean)
        trip = await self.find_trip(clean, trip_id_hint)

        trip_id = trip_identifier(trip)
        vehicle = trip.get("veiculo") if isinstance(trip.get("veiculo"), Mapping) else {}
        vehicle_id = vehicle.get("id")

        planned_raw, executed_raw = await asyncio.gather(
            self._planned_geometry(trip_id),
            self._executed_geometry(str(vehicle_id) if vehicle_id else None, trip_id),
        )

        markers, destination = stop_markers(trip.get("pontoDeParadas") or [])
        if destination is None:
            raise NoStopsDefined()

        estimate = RouteEstimate(
            trip_id=trip_id,
            plate=clean,
            trip_type=trip_type,
            position=position,
            destination=destination,
            stops=markers,
            official_path=self._simplify(parse_path(planned_raw)),
            executed_path=self._simplify(parse_path(executed_raw)),
        )

        # Arrival at the final stop is produced by the inicial estimate and
        # served from the prediction cache; skip the routing call here.
        if trip_type is TripType.FINAL:
            return estimate

        waypoints = select_waypoints(markers, position.point, destination, self.max_waypoints)
        route_points = [position.point] + [w.point for w in waypoints]
        result = await self.routing.calculate_route(route_points)

        path = result.coordinates or route_points
        arrival_at = self._now_fn().astimezone(self.tz) + timedelta(seconds=result.travel_time_seconds)
        arrival = TimeValue.known(arrival_at.strftime("%H:%M"))
        self.predictions.record_arrival(clean, arrival.hhmm)

        estimate.waypoints = waypoints
        estimate.predicted_path = self._simplify(path)
        estimate.travel_time_seconds = result.travel_time_seconds
        estimate.distance_meters = result.distance_meters
        estimate.arrival = arrival
        print(
            f"[route] {clean} trip {trip_id}: {len(waypoints)} waypoints, "
            f"{result.travel_time_seconds:.0f}s, arrival {arrival}"
        )
        return estimate


__all__ = [
    "MAX_ROUTING_WAYPOINTS",
    "parse_path",
    "stop_markers",
    "select_waypoints",
    "format_duration",
    "RouteEstimate",
    "RouteEstimator",
]
