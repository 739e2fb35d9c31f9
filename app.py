"""
Fleet ETA Dashboard Service (FastAPI)

Purpose
=======
Aggregate the upstream trip snapshot, the vehicle tracker and a traffic-aware
routing provider into a live delay/ETA board for fleet operators.

Key features
------------
- Fleet board with per-trip status classification, scoped by operator company.
- On-demand route + arrival estimate per vehicle (TomTom, pooled keys).
- Batch estimate refresh, optionally swept in the background.
- Partner feed with query filters behind a shared API key.
- Daily duty roster read from the scheduling spreadsheet.

Run
---
$ uvicorn app:app --reload --port 8080

Environment
-----------
- PYTHON >= 3.10
- pip install fastapi uvicorn httpx pydantic
"""

from __future__ import annotations
from typing import List, Dict, Optional, Tuple
import os, re, secrets
from datetime import datetime

from fastapi import FastAPI, HTTPException, Request, Query, Header
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from caches import (
    DASHBOARD_SNAPSHOT_TTL_S,
    MAP_SNAPSHOT_TTL_S,
    PREDICTION_TTL_S,
    PredictionCache,
    SnapshotCache,
)
from duty_roster import DutyRosterClient
from errors import FleetError
from eta_refresh import DEFAULT_BATCH_SIZE, EtaSweeper, RefreshTarget, refresh_predictions, sweep_targets
from fleet_aggregator import SERVER_TZ, FleetAggregator, filter_trips
from fleet_api import FleetApiClient
from fleet_models import TripType
from route_estimator import RouteEstimator
from routing_client import RoutingClient
from tracker_client import TrackerClient

# ---------------------------
# Config
# ---------------------------
API_EXTERNAL_SECRET = os.getenv("API_EXTERNAL_SECRET", "")
DASHBOARD_CACHE_TTL_S = float(os.getenv("DASHBOARD_CACHE_TTL_S", str(DASHBOARD_SNAPSHOT_TTL_S)))
MAP_CACHE_TTL_S = float(os.getenv("MAP_CACHE_TTL_S", str(MAP_SNAPSHOT_TTL_S)))
PREDICTION_CACHE_TTL_S = float(os.getenv("PREDICTION_CACHE_TTL_S", str(PREDICTION_TTL_S)))
POSITION_LOOKUP_TIMEOUT_S = float(os.getenv("POSITION_LOOKUP_TIMEOUT_S", "5"))
ETA_SWEEP_INTERVAL_S = float(os.getenv("ETA_SWEEP_INTERVAL_S", "0"))
ETA_SWEEP_BATCH_SIZE = int(os.getenv("ETA_SWEEP_BATCH_SIZE", str(DEFAULT_BATCH_SIZE)))
ETA_REFRESH_MAX_TARGETS = int(os.getenv("ETA_REFRESH_MAX_TARGETS", "60"))

OPERATOR_TOKEN_HEADER = "x-operator-token"
ROSTER_DATE_RE = re.compile(r"^\d{2}/\d{2}/\d{4}$")

# ---------------------------
# Operator access
# ---------------------------
# label -> token, label -> allowed companies (None = every company)
OPERATOR_TOKENS: Dict[str, str] = {}
OPERATOR_COMPANIES: Dict[str, Optional[List[str]]] = {}
_OPERATOR_TOKEN_CACHE: Optional[Tuple[Tuple[str, str, str], ...]] = None


def _refresh_operator_tokens(force: bool = False) -> None:
    """Load operator tokens from environment secrets.

    ``<LABEL>_OPERATOR_TOKEN`` grants access; ``<LABEL>_COMPANIES`` is an
    optional comma-separated company list. Absent or ``*`` means the
    operator sees every company.
    """

    global OPERATOR_TOKENS
    global OPERATOR_COMPANIES
    global _OPERATOR_TOKEN_CACHE

    entries: list[Tuple[str, str, str]] = []
    for key, value in os.environ.items():
        if key.upper() != key or not value:
            continue
        if not key.endswith("_OPERATOR_TOKEN"):
            continue
        raw_label = key[: -len("_OPERATOR_TOKEN")].strip()
        if not raw_label:
            continue
        companies = os.environ.get(f"{raw_label}_COMPANIES", "")
        entries.append((raw_label.lower(), value, companies))

    entries.sort()
    cache_state = tuple(entries)
    if not force and cache_state == _OPERATOR_TOKEN_CACHE:
        return

    OPERATOR_TOKENS = {label: token for label, token, _companies in entries}
    OPERATOR_COMPANIES = {}
    for label, _token, companies in entries:
        names = [name.strip() for name in companies.split(",") if name.strip()]
        OPERATOR_COMPANIES[label] = None if not names or "*" in names else names
    _OPERATOR_TOKEN_CACHE = cache_state


def _provided_operator_token(request: Request) -> Optional[str]:
    token = request.headers.get(OPERATOR_TOKEN_HEADER)
    if token:
        return token.strip()
    auth = request.headers.get("authorization") or ""
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return None


def _get_operator(request: Request) -> Optional[Tuple[str, Optional[List[str]]]]:
    _refresh_operator_tokens()
    provided = _provided_operator_token(request)
    if not provided:
        return None
    for label, token in OPERATOR_TOKENS.items():
        if secrets.compare_digest(provided, token):
            return label, OPERATOR_COMPANIES.get(label)
    return None


def _require_operator(request: Request) -> Optional[List[str]]:
    """Return the operator's allowed companies; raise 401 when unauthenticated."""
    operator = _get_operator(request)
    if operator is None:
        raise HTTPException(status_code=401, detail="operator auth required")
    _label, companies = operator
    return companies


# ---------------------------
# Clients & caches
# ---------------------------
fleet_api = FleetApiClient.from_env()
tracker = TrackerClient.from_env()
routing = RoutingClient.from_env()
roster_client = DutyRosterClient.from_env()

dashboard_cache = SnapshotCache(DASHBOARD_CACHE_TTL_S, name="dashboard_main")
map_cache = SnapshotCache(MAP_CACHE_TTL_S, name="dashboard_map")
predictions = PredictionCache(PREDICTION_CACHE_TTL_S, tz=SERVER_TZ)

aggregator = FleetAggregator(
    fleet_api,
    tracker,
    dashboard_cache,
    predictions,
    tz=SERVER_TZ,
    position_timeout=POSITION_LOOKUP_TIMEOUT_S,
)
estimator = RouteEstimator(fleet_api, tracker, routing, map_cache, predictions, tz=SERVER_TZ)

# ---------------------------
# App & state
# ---------------------------
app = FastAPI(title="Fleet ETA Dashboard")


@app.on_event("startup")
async def init_operator_tokens() -> None:
    _refresh_operator_tokens(force=True)
    if not OPERATOR_TOKENS:
        print("[auth] no operator tokens configured; dashboard endpoints will reject requests")


@app.on_event("startup")
async def start_eta_sweeper() -> None:
    app.state.eta_sweeper = None
    if ETA_SWEEP_INTERVAL_S <= 0:
        return
    sweeper = EtaSweeper(aggregator, estimator, ETA_SWEEP_INTERVAL_S, ETA_SWEEP_BATCH_SIZE)
    sweeper.start()
    app.state.eta_sweeper = sweeper
    print(f"[eta] background sweep every {ETA_SWEEP_INTERVAL_S:.0f}s")


@app.on_event("shutdown")
async def shutdown_clients() -> None:
    sweeper = getattr(app.state, "eta_sweeper", None)
    if sweeper is not None:
        await sweeper.stop()
    await tracker.aclose()
    await fleet_api.aclose()


@app.exception_handler(FleetError)
async def fleet_error_handler(request: Request, exc: FleetError):
    return JSONResponse({"message": str(exc)}, status_code=exc.status_code)


# ---------------------------
# Endpoints
# ---------------------------
@app.get("/health")
async def health():
    return {
        "ok": True,
        "hora": datetime.now(SERVER_TZ).strftime("%H:%M"),
        "previsoes_em_cache": len(predictions),
    }


@app.get("/api/dashboard")
async def api_dashboard(request: Request):
    companies = _require_operator(request)
    snapshot = await aggregator.get_fleet_snapshot(companies)
    return snapshot.to_dict()


@app.get("/api/rota/{tipo}/{placa}")
async def api_route_estimate(
    request: Request,
    tipo: str,
    placa: str,
    id_linha: Optional[str] = Query(None, alias="idLinha"),
):
    _require_operator(request)
    try:
        trip_type = TripType.parse(tipo)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"tipo inválido: {tipo}")
    estimate = await estimator.estimate_route(placa, trip_type, id_linha)
    return estimate.to_dict()


@app.get("/api/frota-externa")
async def api_external_fleet(
    placa: Optional[str] = None,
    status: Optional[str] = None,
    empresa: Optional[str] = None,
    rota: Optional[str] = None,
    sentido: Optional[str] = None,
    api_key: Optional[str] = Header(None, alias="x-api-key"),
):
    if not API_EXTERNAL_SECRET or not api_key or not secrets.compare_digest(api_key, API_EXTERNAL_SECRET):
        raise HTTPException(status_code=403, detail="Acesso negado: chave de API inválida")

    snapshot = await aggregator.get_fleet_snapshot(None)
    trips = filter_trips(
        [trip.to_dict() for trip in snapshot.trips],
        placa=placa,
        status=status,
        empresa=empresa,
        rota=rota,
        sentido=sentido,
    )
    filters = {"placa": placa, "status": status, "empresa": empresa, "rota": rota, "sentido": sentido}
    return {
        "meta": {
            "timestamp": datetime.now(SERVER_TZ).isoformat(),
            "total_registros": len(trips),
            "filtros_aplicados": {k: v for k, v in filters.items() if v},
        },
        "dados": trips,
    }


class RefreshItem(BaseModel):
    placa: str
    idLinha: Optional[str] = None


class RefreshRequest(BaseModel):
    veiculos: List[RefreshItem] = Field(default_factory=list)
    lote: int = Field(DEFAULT_BATCH_SIZE, ge=1, le=20)


@app.post("/api/previsoes/atualizar")
async def api_refresh_predictions(request: Request, payload: Optional[RefreshRequest] = None):
    companies = _require_operator(request)
    payload = payload or RefreshRequest()

    if payload.veiculos:
        targets = [RefreshTarget(plate=item.placa, trip_id=item.idLinha) for item in payload.veiculos]
    else:
        snapshot = await aggregator.get_fleet_snapshot(companies)
        targets = sweep_targets(snapshot)
    targets = targets[:ETA_REFRESH_MAX_TARGETS]

    async def _client_connected() -> bool:
        return not await request.is_disconnected()

    report = await refresh_predictions(estimator, targets, payload.lote, _client_connected)
    return report.to_dict()


@app.get("/api/escala")
async def api_duty_roster(request: Request, data: Optional[str] = None):
    _require_operator(request)
    if data is not None and not ROSTER_DATE_RE.match(data):
        raise HTTPException(status_code=400, detail="data deve estar no formato dd/mm/aaaa")
    return await roster_client.fetch(data)
