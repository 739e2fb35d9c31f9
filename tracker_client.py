"""Async client for the vehicle tracking worker.

The worker answers ``GET <url>?placa=<PLATE>`` with a list of position
records. Records come in a few shapes:

* ``{"latitude": -23.5, "longitude": -46.6}``
* ``{"loc": [-23.5, -46.6]}``
* ``{"loc": "-23.5,-46.6"}``
"""
from __future__ import annotations

import math
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import httpx

from caches import normalize_plate
from errors import InvalidCoordinates, TrackerUnavailable, VehicleNotFound


@dataclass
class VehiclePosition:
    plate: str
    lat: float
    lng: float
    address: Optional[str] = None

    @property
    def point(self) -> Tuple[float, float]:
        return (self.lat, self.lng)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def normalize_position(record: Dict[str, Any]) -> Tuple[float, float]:
    """Extract a ``(lat, lng)`` pair from a tracker record.

    A zero latitude or longitude means "unset": the fleet never operates on
    the equator or the Greenwich meridian.
    """
    lat_raw = record.get("latitude", record.get("lat"))
    lng_raw = record.get("longitude", record.get("lng"))
    if _is_blank(lat_raw) or _is_blank(lng_raw):
        loc = record.get("loc")
        parts: Any = None
        if isinstance(loc, str):
            parts = [part.strip() for part in loc.split(",")]
        elif isinstance(loc, (list, tuple)):
            parts = loc
        if parts is not None and len(parts) >= 2:
            lat_raw, lng_raw = parts[0], parts[1]

    try:
        lat = float(lat_raw)
        lng = float(lng_raw)
    except (TypeError, ValueError):
        raise InvalidCoordinates()
    if not (math.isfinite(lat) and math.isfinite(lng)):
        raise InvalidCoordinates()
    if lat == 0 or lng == 0:
        raise InvalidCoordinates()
    return lat, lng


class TrackerClient:
    """Looks up the latest position of a vehicle by plate."""

    def __init__(
        self,
        url: str,
        token: str,
        timeout: float = 25.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = url
        self._token = token
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_env(cls) -> "TrackerClient":
        """Build a client from ``TRACKER_URL`` / ``TRACKER_TOKEN``."""
        url = (os.getenv("TRACKER_URL") or "https://testeservidor-wg1g.onrender.com").strip()
        token = (os.getenv("TRACKER_TOKEN") or "").strip()
        timeout = float(os.getenv("TRACKER_TIMEOUT_S", "25"))
        return cls(url=url, token=token, timeout=timeout)

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch_record(self, plate: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        clean = normalize_plate(plate)
        client = await self._ensure_client()
        try:
            response = await client.get(
                self._url,
                params={"placa": clean},
                headers={"X-Render-Token": self._token},
                timeout=timeout if timeout is not None else self._timeout,
            )
        except httpx.HTTPError as exc:
            raise TrackerUnavailable() from exc

        if response.status_code >= 400:
            message = None
            try:
                body = response.json()
                if isinstance(body, dict):
                    message = body.get("erro")
            except ValueError:
                pass
            raise TrackerUnavailable(message)

        try:
            data = response.json()
        except ValueError as exc:
            raise TrackerUnavailable() from exc

        if isinstance(data, dict):
            if data.get("erro"):
                raise VehicleNotFound(str(data["erro"]))
            data = [data]
        if not isinstance(data, list) or not data or not isinstance(data[0], dict):
            raise VehicleNotFound()
        return data[0]

    async def locate(self, plate: str, timeout: Optional[float] = None) -> VehiclePosition:
        record = await self.fetch_record(plate, timeout=timeout)
        lat, lng = normalize_position(record)
        address = record.get("endereco")
        return VehiclePosition(
            plate=normalize_plate(plate),
            lat=lat,
            lng=lng,
            address=str(address) if address else None,
        )


__all__ = ["VehiclePosition", "normalize_position", "TrackerClient"]
