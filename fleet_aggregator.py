"""Fleet board aggregation.

Turns the upstream trip snapshot into one status record per live trip:
stop timestamps are normalized into scheduled/actual start and end times,
the latest routed ETA is merged in from the prediction cache, the vehicle
position is looked up and the trip is classified.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
from zoneinfo import ZoneInfo

from caches import PredictionCache, SnapshotCache, normalize_plate
from errors import FleetError, UpstreamUnavailable
from fleet_api import FleetApiClient, empty_snapshot
from fleet_models import (
    CATEGORY_ENGINE_OFF,
    NOT_AVAILABLE,
    PENDING_TIME,
    SNAPSHOT_GROUPS,
    FleetSnapshot,
    TimeValue,
    TripRecord,
    TripStatus,
)
from tracker_client import TrackerClient

SERVER_TZ = ZoneInfo("America/Sao_Paulo")

# Only the first few checkpoints may stand in for the departure
ACTUAL_START_MAX_STOP_INDEX = 4
# Actual starts further than this from the schedule are treated as bad data
ACTUAL_START_MAX_DRIFT_MIN = 40
LATE_THRESHOLD_MIN = 10
POSITION_LOOKUP_TIMEOUT_S = 5.0

REPORT_TIME_FORMATS = (
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
)

TimeLike = Union[TimeValue, str, None]


def stop_type(stop: Mapping[str, Any]) -> Optional[str]:
    tipo = stop.get("tipoPonto")
    if isinstance(tipo, Mapping):
        return tipo.get("tipo")
    return None


def _stop_coords(stop: Mapping[str, Any]) -> Optional[str]:
    lat = stop.get("latitude")
    lng = stop.get("longitude")
    if lat in (None, "") or lng in (None, ""):
        return None
    return f"{lat},{lng}"


def parse_time_difference(value: Any) -> Optional[int]:
    """Minutes from a ``tempoDiferenca`` field (``15``, ``"15"`` or ``"01:05"``)."""
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, (int, float)):
            return int(value)
        text = str(value).strip()
        if not text:
            return None
        if ":" in text:
            hours, minutes = text.split(":")[:2]
            return int(hours) * 60 + int(minutes)
        return int(float(text))
    except (ValueError, OverflowError):
        return None


def parse_report_time(value: Any, tz: ZoneInfo = SERVER_TZ) -> TimeValue:
    """Render an upstream report timestamp as ``HH:MM`` in the server zone."""
    if value in (None, ""):
        return TimeValue.unknown()
    text = str(value).strip()
    parsed: Optional[datetime] = None
    for fmt in REPORT_TIME_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
            break
        except ValueError:
            continue
    if parsed is None:
        iso = text[:-1] + "+00:00" if text.lower().endswith("z") else text
        try:
            parsed = datetime.fromisoformat(iso)
        except ValueError:
            return TimeValue.unknown()
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    try:
        local = parsed.astimezone(tz)
    except OverflowError:
        # Placeholder dates such as 0001-01-01T00:00:00Z
        return TimeValue.unknown()
    return TimeValue.known(local.strftime("%H:%M"))


@dataclass
class TripTimes:
    scheduled_start: TimeValue = field(default_factory=TimeValue.unknown)
    actual_start: TimeValue = field(default_factory=TimeValue.unknown)
    scheduled_end: TimeValue = field(default_factory=TimeValue.unknown)
    started: bool = False
    start_offset_min: int = 0
    initial_stop: Optional[str] = None
    final_stop: Optional[str] = None


def extract_trip_times(stops: Sequence[Mapping[str, Any]], tz: ZoneInfo = SERVER_TZ) -> TripTimes:
    """Derive scheduled/actual times from a trip's stop list.

    The actual start comes from the first of the first four stops that has
    been passed with a known schedule difference; when that stop is not the
    origin the value is tagged with its position, e.g. ``"08:12 (Pt 3)"``.
    """
    times = TripTimes()
    initial_passed_at: Any = None

    for idx, stop in enumerate(stops, start=1):
        if not isinstance(stop, Mapping):
            continue
        tipo = stop_type(stop)

        if tipo == "Inicial":
            times.initial_stop = _stop_coords(stop) or times.initial_stop
            scheduled = TimeValue.parse(stop.get("horario"))
            if scheduled.is_known:
                times.scheduled_start = scheduled
            if stop.get("passou"):
                initial_passed_at = stop.get("dataPassouGmt3")

        if (
            not times.actual_start.is_known
            and tipo != "Final"
            and stop.get("passou")
            and idx <= ACTUAL_START_MAX_STOP_INDEX
        ):
            diff = parse_time_difference(stop.get("tempoDiferenca"))
            if diff is not None:
                offset = diff if stop.get("atrasado") else -diff
                base = TimeValue.parse(stop.get("horario") or "00:00")
                shifted = base.shifted(offset)
                label = f"(Pt {idx})" if tipo != "Inicial" and idx > 1 else None
                if shifted.is_known:
                    times.actual_start = TimeValue.known(shifted.hhmm, label)
                    times.started = True
                    times.start_offset_min = offset

        if tipo == "Final":
            times.final_stop = _stop_coords(stop) or times.final_stop
            scheduled = TimeValue.parse(stop.get("horario"))
            if scheduled.is_known:
                times.scheduled_end = scheduled

    if not times.actual_start.is_known and initial_passed_at:
        passed = parse_report_time(initial_passed_at, tz)
        if passed.is_known:
            times.actual_start = passed
            times.started = True
            if times.scheduled_start.is_known:
                times.start_offset_min = (passed.minutes or 0) - (times.scheduled_start.minutes or 0)

    if times.actual_start.is_known and times.scheduled_start.is_known:
        drift = abs((times.actual_start.minutes or 0) - (times.scheduled_start.minutes or 0))
        if drift > ACTUAL_START_MAX_DRIFT_MIN:
            print(
                f"[fleet] discarding actual start {times.actual_start} "
                f"({drift} min from scheduled {times.scheduled_start})"
            )
            times.actual_start = TimeValue.unknown()
            times.started = False
            times.start_offset_min = 0

    return times


def resolve_predicted_end(times: TripTimes, cached_arrival: Optional[str]) -> TimeValue:
    if cached_arrival:
        cached = TimeValue.parse(cached_arrival)
        if cached.is_known:
            return cached
    if times.scheduled_end.is_known and times.started:
        return times.scheduled_end.shifted(times.start_offset_min)
    if times.scheduled_end.is_known:
        return TimeValue.pending()
    return TimeValue.unknown()


def _as_time(value: TimeLike) -> TimeValue:
    if isinstance(value, TimeValue):
        return value
    if value is None or value == NOT_AVAILABLE:
        return TimeValue.unknown()
    if value == PENDING_TIME:
        return TimeValue.pending()
    return TimeValue.parse(value)


def classify_status(
    category: str,
    scheduled_start: TimeLike,
    actual_start: TimeLike,
    scheduled_end: TimeLike,
    predicted_end: TimeLike,
    server_time: TimeLike,
    outbound: bool,
) -> TripStatus:
    """Classify a trip for the board. Rules are checked in order, first match wins:

    engine off -> DISABLED; no actual start -> UNDETERMINED / NOT_STARTED_LATE /
    EN_ROUTE_TO_START depending on the schedule; departure more than 10 min
    late -> LATE; outbound arrival estimate more than 10 min past the
    scheduled end -> LATE_ON_ROUTE; otherwise ON_TIME.
    """
    if category == CATEGORY_ENGINE_OFF:
        return TripStatus.DISABLED

    pi = _as_time(scheduled_start)
    ri = _as_time(actual_start)
    now = _as_time(server_time)

    if not ri.is_known:
        if not pi.is_known:
            return TripStatus.UNDETERMINED
        if now.is_known and (pi.minutes or 0) < (now.minutes or 0):
            return TripStatus.NOT_STARTED_LATE
        return TripStatus.EN_ROUTE_TO_START

    if pi.is_known and (ri.minutes or 0) - (pi.minutes or 0) > LATE_THRESHOLD_MIN:
        return TripStatus.LATE

    pf = _as_time(scheduled_end)
    pfn = _as_time(predicted_end)
    if outbound and pf.is_known and pfn.is_known:
        if (pfn.minutes or 0) - (pf.minutes or 0) > LATE_THRESHOLD_MIN:
            return TripStatus.LATE_ON_ROUTE

    return TripStatus.ON_TIME


def normalize_companies(allowed: Optional[Iterable[str]]) -> Optional[set]:
    if allowed is None:
        return None
    return {str(company).strip().upper() for company in allowed}


def trip_is_complete(stops: Any) -> bool:
    if not isinstance(stops, list):
        return False
    return any(
        isinstance(stop, Mapping) and stop_type(stop) == "Final" and stop.get("passou")
        for stop in stops
    )


def _company_name(raw: Mapping[str, Any]) -> str:
    empresa = raw.get("empresa")
    if isinstance(empresa, Mapping):
        return str(empresa.get("nome") or "")
    return ""


def _vehicle(raw: Mapping[str, Any]) -> Mapping[str, Any]:
    veiculo = raw.get("veiculo")
    return veiculo if isinstance(veiculo, Mapping) else {}


def trip_plate(raw: Mapping[str, Any]) -> str:
    return str(_vehicle(raw).get("veiculo") or raw.get("placa") or "")


def trip_identifier(raw: Mapping[str, Any]) -> str:
    return str(raw.get("idLinha") or raw.get("id") or "")


def is_outbound(raw: Mapping[str, Any]) -> bool:
    return bool(raw.get("sentidoIda") or raw.get("sentidoIDA"))


@dataclass
class TripOutcome:
    record: Optional[TripRecord] = None
    skip_reason: Optional[str] = None


def filter_trips(
    trips: Sequence[Dict[str, Any]],
    placa: Optional[str] = None,
    status: Optional[str] = None,
    empresa: Optional[str] = None,
    rota: Optional[str] = None,
    sentido: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Apply the external fleet endpoint's query filters to serialized trips."""
    result = list(trips)
    if placa:
        needle = str(placa).upper()
        result = [t for t in result if needle in str(t.get("v", "")).upper()]
    if status:
        wanted = str(status).upper()
        result = [t for t in result if t.get("status_api") == wanted]
    if empresa:
        needle = str(empresa).upper()
        result = [t for t in result if needle in str(t.get("e", "")).upper()]
    if rota:
        needle = str(rota).upper()
        result = [t for t in result if needle in str(t.get("r", "")).upper()]
    if sentido:
        direction = 1 if str(sentido).lower() == "ida" else 0
        result = [t for t in result if t.get("s") == direction]
    return result


class FleetAggregator:
    """Builds the live fleet board from the upstream snapshot."""

    def __init__(
        self,
        api: FleetApiClient,
        tracker: TrackerClient,
        snapshot_cache: SnapshotCache,
        predictions: PredictionCache,
        tz: ZoneInfo = SERVER_TZ,
        position_timeout: float = POSITION_LOOKUP_TIMEOUT_S,
        now_fn: Optional[Callable[[], datetime]] = None,
    ):
        self.api = api
        self.tracker = tracker
        self.snapshot_cache = snapshot_cache
        self.predictions = predictions
        self.tz = tz
        self.position_timeout = position_timeout
        self._now_fn = now_fn or (lambda: datetime.now(self.tz))

    async def load_snapshot(self) -> Dict[str, Any]:
        """Cached upstream snapshot; an empty one when upstream is down."""
        try:
            return await self.snapshot_cache.get(self.api.fetch_snapshot)
        except UpstreamUnavailable as exc:
            print(f"[fleet] snapshot unavailable, serving empty board: {exc}")
            return empty_snapshot()

    async def _position_for(self, plate: str) -> Optional[Tuple[float, float]]:
        if not normalize_plate(plate):
            return None
        try:
            position = await self.tracker.locate(plate, timeout=self.position_timeout)
        except FleetError as exc:
            print(f"[fleet] position lookup failed for {normalize_plate(plate)}: {exc}")
            return None
        return position.point

    async def _build_trip(
        self,
        raw: Mapping[str, Any],
        category: str,
        allowed: Optional[set],
        server_time: TimeValue,
    ) -> TripOutcome:
        company = _company_name(raw)
        if allowed is not None and company.strip().upper() not in allowed:
            return TripOutcome(skip_reason="company_not_allowed")

        stops = raw.get("pontoDeParadas")
        if trip_is_complete(stops):
            return TripOutcome(skip_reason="completed")

        times = extract_trip_times(stops if isinstance(stops, list) else [], self.tz)
        plate = trip_plate(raw)
        predicted_end = resolve_predicted_end(times, self.predictions.arrival_for(plate))

        vehicle = _vehicle(raw)
        last_report = parse_report_time(
            vehicle.get("dataHora") or vehicle.get("dataComunicacao") or raw.get("ultimaData"),
            self.tz,
        )
        outbound = is_outbound(raw)
        position = await self._position_for(plate)

        record = TripRecord(
            id=trip_identifier(raw),
            company=company,
            route=str(raw.get("descricaoLinha") or ""),
            plate=plate,
            outbound=outbound,
            scheduled_start=times.scheduled_start,
            actual_start=times.actual_start,
            scheduled_end=times.scheduled_end,
            predicted_end=predicted_end,
            last_report=last_report,
            category=category,
            status=classify_status(
                category,
                times.scheduled_start,
                times.actual_start,
                times.scheduled_end,
                predicted_end,
                server_time,
                outbound,
            ),
            initial_stop=times.initial_stop,
            final_stop=times.final_stop,
            position=position,
        )
        return TripOutcome(record=record)

    async def _safe_build_trip(self, raw: Any, category: str, allowed: Optional[set], server_time: TimeValue) -> TripOutcome:
        if not isinstance(raw, Mapping):
            return TripOutcome(skip_reason="malformed")
        try:
            return await self._build_trip(raw, category, allowed, server_time)
        except (KeyError, TypeError, ValueError, AttributeError, ArithmeticError) as exc:
            print(f"[fleet] skipping malformed trip {trip_identifier(raw) or '?'}: {exc}")
            return TripOutcome(skip_reason="malformed")

    async def get_fleet_snapshot(self, allowed_companies: Optional[Iterable[str]] = None) -> FleetSnapshot:
        """Build the board; ``allowed_companies=None`` is the unrestricted view."""
        snapshot = await self.load_snapshot()
        server_time = TimeValue.known(self._now_fn().astimezone(self.tz).strftime("%H:%M"))
        allowed = normalize_companies(allowed_companies)

        jobs = []
        for key, category in SNAPSHOT_GROUPS:
            group = snapshot.get(key) or []
            if not isinstance(group, list):
                continue
            for raw in group:
                jobs.append(self._safe_build_trip(raw, category, allowed, server_time))

        outcomes = await asyncio.gather(*jobs)

        trips: List[TripRecord] = []
        skipped: Dict[str, int] = {}
        for outcome in outcomes:
            if outcome.record is not None:
                trips.append(outcome.record)
            elif outcome.skip_reason:
                skipped[outcome.skip_reason] = skipped.get(outcome.skip_reason, 0) + 1

        if skipped.get("malformed"):
            print(f"[fleet] {len(trips)} trips on board, skipped {skipped}")
        return FleetSnapshot(trips=trips, server_time=str(server_time), skipped=skipped)


__all__ = [
    "SERVER_TZ",
    "stop_type",
    "parse_time_difference",
    "parse_report_time",
    "TripTimes",
    "extract_trip_times",
    "resolve_predicted_end",
    "classify_status",
    "trip_is_complete",
    "trip_plate",
    "trip_identifier",
    "is_outbound",
    "TripOutcome",
    "filter_trips",
    "FleetAggregator",
]
