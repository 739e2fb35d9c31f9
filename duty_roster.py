"""Daily duty roster (escala) from the scheduling spreadsheet.

The spreadsheet is published through an Apps Script endpoint that returns
the sheet as a list of rows, header first. Column positions drift between
sheet versions, so columns are located by keyword.
"""
from __future__ import annotations

import os
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo

import httpx

from caches import TTLStore
from errors import UpstreamUnavailable

ROSTER_TTL_S = 60.0
ROSTER_TZ = ZoneInfo("America/Sao_Paulo")

# Output field -> header keywords, matched by substring against lower-cased headers
COLUMN_KEYWORDS: Dict[str, Sequence[str]] = {
    "empresa": ("clientes", "cliente", "empresa"),
    "rota": ("rota", "linha", "itinerario"),
    "motorista": ("motorista", "condutor", "mot"),
    "reserva": ("reserva",),
    "escala": ("escala", "veiculo escala"),
    "enviada": ("enviada", "veiculo enviado"),
    "prog": ("ini", "inicio", "prog"),
    "real": ("real", "realizado", "chegada"),
    "obs": ("observação", "obs", "ocorrencia", "observações"),
    "manut": ("manutenção", "manut", "observações"),
    "carro": ("aguardando", "carro", "observações"),
    "ra": ("ra", "r.a", "registro"),
}

# Garage and own-company rows are internal movements, not customer trips
DEFAULT_BLOCKED_COMPANIES = ("VIACAO MIMO VARZEA", "VIACAO MIMO", "GARAGEM")


def _strip_accents(text: str) -> str:
    return "".join(
        ch for ch in unicodedata.normalize("NFD", text) if unicodedata.category(ch) != "Mn"
    )


def find_column(headers: Sequence[str], keywords: Sequence[str]) -> int:
    """Index of the first header containing any keyword, or -1."""
    for idx, header in enumerate(headers):
        for key in keywords:
            if key in header:
                return idx
    return -1


def _cell(row: Sequence[Any], idx: int) -> Any:
    if idx < 0 or idx >= len(row):
        return None
    value = row[idx]
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return value


def _clock(value: Any) -> str:
    return "" if not value else str(value).strip()[:5]


def parse_roster_rows(
    rows: Any,
    blocked_companies: Sequence[str] = DEFAULT_BLOCKED_COMPANIES,
) -> List[Dict[str, Any]]:
    """Turn raw sheet rows into roster entries sorted by scheduled time."""
    if not isinstance(rows, list) or len(rows) < 2 or not isinstance(rows[0], list):
        return []

    headers = [str(col).strip().lower() for col in rows[0]]
    cols = {name: find_column(headers, keywords) for name, keywords in COLUMN_KEYWORDS.items()}
    blocked = [_strip_accents(term).upper() for term in blocked_companies]

    entries: List[Dict[str, Any]] = []
    for row in rows[1:]:
        if not isinstance(row, list):
            continue
        empresa_raw = _cell(row, cols["empresa"])
        rota_raw = _cell(row, cols["rota"])
        if empresa_raw is None and rota_raw is None:
            continue

        empresa = str(empresa_raw).strip() if empresa_raw is not None else "---"
        rota = str(rota_raw).strip() if rota_raw is not None else "---"
        empresa_norm = _strip_accents(empresa).upper()
        if any(term in empresa_norm for term in blocked):
            continue

        manut = str(_cell(row, cols["manut"]) or "").lower()
        carro = str(_cell(row, cols["carro"]) or "").lower()

        entries.append({
            "empresa": empresa,
            "rota": rota,
            "motorista": _cell(row, cols["motorista"]) or "Não Definido",
            "reserva": _cell(row, cols["reserva"]) or "",
            "frota_escala": _cell(row, cols["escala"]) or "---",
            "frota_enviada": _cell(row, cols["enviada"]) or "---",
            "h_prog": _clock(_cell(row, cols["prog"])),
            "h_real": _clock(_cell(row, cols["real"])),
            "obs": _cell(row, cols["obs"]) or "",
            "ra_val": _cell(row, cols["ra"]) or "",
            "manutencao": "sim" in manut or "manuten" in manut,
            "aguardando": "sim" in carro or "aguard" in carro,
        })

    entries.sort(key=lambda entry: entry["h_prog"])
    return entries


class DutyRosterClient:
    """Fetches and caches the parsed roster per day."""

    def __init__(
        self,
        url: str,
        timeout: float = 20.0,
        ttl: float = ROSTER_TTL_S,
        blocked_companies: Sequence[str] = DEFAULT_BLOCKED_COMPANIES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._url = url
        self._timeout = timeout
        self._transport = transport
        self.blocked_companies = blocked_companies
        self.cache = TTLStore(ttl)

    @classmethod
    def from_env(cls) -> "DutyRosterClient":
        blocked_env = os.getenv("ROSTER_BLOCKED_COMPANIES")
        blocked = (
            tuple(term.strip() for term in blocked_env.split(",") if term.strip())
            if blocked_env is not None
            else DEFAULT_BLOCKED_COMPANIES
        )
        return cls(
            url=(os.getenv("ROSTER_URL") or "").strip(),
            timeout=float(os.getenv("ROSTER_HTTP_TIMEOUT_S", "20")),
            ttl=float(os.getenv("ROSTER_TTL_S", str(ROSTER_TTL_S))),
            blocked_companies=blocked,
        )

    @staticmethod
    def today() -> str:
        return datetime.now(ROSTER_TZ).strftime("%d/%m/%Y")

    async def fetch(self, day: Optional[str] = None) -> List[Dict[str, Any]]:
        day = day or self.today()
        cache_key = f"escala_v2_{day}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        if not self._url:
            raise UpstreamUnavailable("ROSTER_URL is not configured")

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, follow_redirects=True, transport=self._transport
            ) as client:
                response = await client.get(
                    self._url,
                    params={"action": "read", "data": day},
                    headers={"User-Agent": "Mozilla/5.0"},
                )
            response.raise_for_status()
            rows = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            print(f"[escala] fetch failed for {day}: {exc}")
            raise UpstreamUnavailable() from exc

        entries = parse_roster_rows(rows, self.blocked_companies)
        # Past days are never read again; drop them here
        self.cache.purge_expired()
        self.cache.set(cache_key, entries)
        return entries


__all__ = [
    "COLUMN_KEYWORDS",
    "DEFAULT_BLOCKED_COMPANIES",
    "find_column",
    "parse_roster_rows",
    "DutyRosterClient",
]
