"""Error types raised by the fleet ETA pipeline.

Each error carries the HTTP status the API layer answers with, so the
FastAPI exception handler in ``app.py`` can render them uniformly.
"""
from __future__ import annotations


class FleetError(Exception):
    """Base class for user-visible pipeline failures."""

    status_code = 500
    default_message = "Erro interno ao calcular rota"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class VehicleNotFound(FleetError):
    status_code = 404
    default_message = "Veículo não localizado"


class InvalidCoordinates(FleetError, ValueError):
    status_code = 422
    default_message = "Coordenadas inválidas"


class TripNotFound(FleetError):
    status_code = 404
    default_message = "Linha não encontrada para este veículo"


class NoStopsDefined(FleetError):
    status_code = 400
    default_message = "Sem paradas definidas"


class RoutingUnavailable(FleetError):
    status_code = 503
    default_message = "Falha no serviço de roteamento"


class UpstreamUnavailable(FleetError):
    status_code = 502
    default_message = "Erro ao buscar dados externos"


class TrackerUnavailable(UpstreamUnavailable):
    default_message = "Erro ao comunicar com rastreador"


__all__ = [
    "FleetError",
    "VehicleNotFound",
    "InvalidCoordinates",
    "TripNotFound",
    "NoStopsDefined",
    "RoutingUnavailable",
    "UpstreamUnavailable",
    "TrackerUnavailable",
]
