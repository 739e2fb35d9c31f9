"""Async client for the upstream fleet/trip API.

Three endpoints are used:

* the dashboard snapshot, grouping today's trips into three lists;
* ``/api/linha/{id}``: trip detail holding the planned geometry;
* ``/api/rota/temporealmongo/{vehicleId}?idLinha={id}``: the executed
  position log of a vehicle for a trip.
"""
from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

import httpx

from errors import UpstreamUnavailable
from fleet_models import SNAPSHOT_GROUPS

UPSTREAM_BASE_DEFAULT = "https://abmbus.com.br:8181"
SNAPSHOT_PATH_DEFAULT = "/api/dashboard/mongo/95?naoVerificadas=false&agrupamentos="


def empty_snapshot() -> Dict[str, List[Any]]:
    return {key: [] for key, _category in SNAPSHOT_GROUPS}


class FleetApiClient:
    """Bearer-token client for the upstream fleet API."""

    def __init__(
        self,
        base_url: str,
        token: str,
        snapshot_path: str = SNAPSHOT_PATH_DEFAULT,
        snapshot_timeout: float = 30.0,
        detail_timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._snapshot_path = snapshot_path
        self._snapshot_timeout = snapshot_timeout
        self._detail_timeout = detail_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_env(cls) -> "FleetApiClient":
        """Build a client from environment configuration.

        * ``UPSTREAM_BASE`` - API root, e.g. ``https://abmbus.com.br:8181``
        * ``UPSTREAM_TOKEN`` - value sent in the ``Authorization`` header
        * ``UPSTREAM_SNAPSHOT_PATH`` - dashboard snapshot path and query
        """
        return cls(
            base_url=(os.getenv("UPSTREAM_BASE") or UPSTREAM_BASE_DEFAULT).strip(),
            token=(os.getenv("UPSTREAM_TOKEN") or "").strip(),
            snapshot_path=(os.getenv("UPSTREAM_SNAPSHOT_PATH") or SNAPSHOT_PATH_DEFAULT).strip(),
            snapshot_timeout=float(os.getenv("UPSTREAM_SNAPSHOT_TIMEOUT_S", "30")),
            detail_timeout=float(os.getenv("UPSTREAM_DETAIL_TIMEOUT_S", "15")),
        )

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json, text/plain, */*",
            "User-Agent": "FleetEtaDashboard/1.0",
        }
        if self._token:
            token = self._token
            if not token.lower().startswith("bearer "):
                token = f"Bearer {token}"
            headers["Authorization"] = token
        return headers

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._detail_timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get_json(self, path: str, timeout: float, params: Optional[Dict[str, Any]] = None) -> Any:
        client = await self._ensure_client()
        try:
            response = await client.get(path, params=params, headers=self._headers(), timeout=timeout)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise UpstreamUnavailable(f"{path}: {exc}") from exc

    async def fetch_snapshot(self) -> Dict[str, Any]:
        """Fetch today's trip snapshot; missing groups come back as empty lists."""
        data = await self._get_json(self._snapshot_path, self._snapshot_timeout)
        if not isinstance(data, dict):
            raise UpstreamUnavailable("snapshot payload is not an object")
        snapshot = dict(data)
        for key, _category in SNAPSHOT_GROUPS:
            if not isinstance(snapshot.get(key), list):
                snapshot[key] = []
        return snapshot

    async def fetch_planned_geometry(self, trip_id: str) -> List[Any]:
        data = await self._get_json(f"/api/linha/{trip_id}", self._detail_timeout)
        if isinstance(data, dict) and isinstance(data.get("desenhoRota"), list):
            return data["desenhoRota"]
        return []

    async def fetch_executed_log(self, vehicle_id: str, trip_id: str) -> List[Any]:
        data = await self._get_json(
            f"/api/rota/temporealmongo/{vehicle_id}",
            self._detail_timeout,
            params={"idLinha": trip_id},
        )
        if isinstance(data, list) and data and isinstance(data[0], dict):
            log = data[0].get("logRotaDiarias")
            if isinstance(log, list):
                return log
        return []


__all__ = ["FleetApiClient", "empty_snapshot"]
