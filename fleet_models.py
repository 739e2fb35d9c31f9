"""Data types for the fleet dashboard output contract."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

NOT_AVAILABLE = "N/D"
PENDING_TIME = "--:--"

CATEGORY_IN_PROGRESS = "Em andamento"
CATEGORY_ENGINE_OFF = "Carro desligado"
CATEGORY_NO_FIRST_STOP = "Começou sem ponto"

# Snapshot list name -> raw category label, in output order
SNAPSHOT_GROUPS: Tuple[Tuple[str, str], ...] = (
    ("linhasAndamento", CATEGORY_IN_PROGRESS),
    ("linhasCarroDesligado", CATEGORY_ENGINE_OFF),
    ("linhasComecaramSemPrimeiroPonto", CATEGORY_NO_FIRST_STOP),
)

_HHMM_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})")


class TimeKind(str, Enum):
    KNOWN = "known"
    UNKNOWN = "unknown"
    PENDING = "pending"


@dataclass(frozen=True)
class TimeValue:
    """A wall-clock ``HH:MM`` value or an explicit "not available" marker.

    ``UNKNOWN`` renders as ``"N/D"``; ``PENDING`` renders as ``"--:--"`` and
    means a scheduled time exists but nothing has been projected yet.
    ``label`` carries an optional annotation such as ``"(Pt 3)"``.
    """
    kind: TimeKind
    hhmm: Optional[str] = None
    label: Optional[str] = None

    @classmethod
    def known(cls, hhmm: str, label: Optional[str] = None) -> "TimeValue":
        return cls(TimeKind.KNOWN, hhmm, label)

    @classmethod
    def unknown(cls) -> "TimeValue":
        return cls(TimeKind.UNKNOWN)

    @classmethod
    def pending(cls) -> "TimeValue":
        return cls(TimeKind.PENDING)

    @classmethod
    def parse(cls, text: Any) -> "TimeValue":
        """Parse the leading ``HH:MM`` of ``text``; anything else is unknown."""
        if text is None:
            return cls.unknown()
        match = _HHMM_RE.match(str(text))
        if not match:
            return cls.unknown()
        hours, minutes = int(match.group(1)), int(match.group(2))
        if hours > 23 or minutes > 59:
            return cls.unknown()
        return cls.known(f"{hours:02d}:{minutes:02d}")

    @property
    def is_known(self) -> bool:
        return self.kind is TimeKind.KNOWN

    @property
    def minutes(self) -> Optional[int]:
        """Minutes since midnight, or ``None`` when not known."""
        if not self.is_known or not self.hhmm:
            return None
        hours, minutes = self.hhmm.split(":")
        return int(hours) * 60 + int(minutes)

    def shifted(self, minutes: int) -> "TimeValue":
        if not self.is_known:
            return self
        base = datetime(2000, 1, 1) + timedelta(minutes=self.minutes or 0)
        try:
            shifted = base + timedelta(minutes=minutes)
        except OverflowError:
            return TimeValue.unknown()
        return TimeValue.known(shifted.strftime("%H:%M"))

    def __str__(self) -> str:
        if self.kind is TimeKind.UNKNOWN:
            return NOT_AVAILABLE
        if self.kind is TimeKind.PENDING:
            return PENDING_TIME
        if self.label:
            return f"{self.hhmm} {self.label}"
        return self.hhmm or NOT_AVAILABLE


class TripStatus(str, Enum):
    DISABLED = "DISABLED"
    UNDETERMINED = "UNDETERMINED"
    EN_ROUTE_TO_START = "EN_ROUTE_TO_START"
    NOT_STARTED_LATE = "NOT_STARTED_LATE"
    LATE = "LATE"
    LATE_ON_ROUTE = "LATE_ON_ROUTE"
    ON_TIME = "ON_TIME"


class TripType(str, Enum):
    INITIAL = "inicial"
    FINAL = "final"

    @classmethod
    def parse(cls, value: str) -> "TripType":
        text = (value or "").strip().lower()
        if text in {"inicial", "initial"}:
            return cls.INITIAL
        if text == "final":
            return cls.FINAL
        raise ValueError(f"tipo de rota inválido: {value!r}")


@dataclass
class TripRecord:
    """One live trip on the board."""
    id: str
    company: str
    route: str
    plate: str
    outbound: bool
    scheduled_start: TimeValue
    actual_start: TimeValue
    scheduled_end: TimeValue
    predicted_end: TimeValue
    last_report: TimeValue
    category: str
    status: TripStatus
    initial_stop: Optional[str] = None  # "lat,lng"
    final_stop: Optional[str] = None
    position: Optional[Tuple[float, float]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "e": self.company,
            "r": self.route,
            "v": self.plate,
            "s": 1 if self.outbound else 0,
            "pi": str(self.scheduled_start),
            "ri": str(self.actual_start),
            "pf": str(self.scheduled_end),
            "pfn": str(self.predicted_end),
            "u": str(self.last_report),
            "c": self.category,
            "li": self.initial_stop or NOT_AVAILABLE,
            "lf": self.final_stop or NOT_AVAILABLE,
            "status_api": self.status.value,
            "veiculo_pos": list(self.position) if self.position else None,
        }


@dataclass
class FleetSnapshot:
    trips: List[TripRecord]
    server_time: str
    skipped: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "todas_linhas": [trip.to_dict() for trip in self.trips],
            "hora": self.server_time,
        }


@dataclass
class StopMarker:
    """A stop with usable coordinates, as drawn on the map."""
    lat: float
    lng: float
    passed: bool
    name: str

    @property
    def point(self) -> Tuple[float, float]:
        return (self.lat, self.lng)

    def to_dict(self) -> Dict[str, Any]:
        return {"lat": self.lat, "lng": self.lng, "passou": self.passed, "nome": self.name}


__all__ = [
    "NOT_AVAILABLE",
    "PENDING_TIME",
    "CATEGORY_IN_PROGRESS",
    "CATEGORY_ENGINE_OFF",
    "CATEGORY_NO_FIRST_STOP",
    "SNAPSHOT_GROUPS",
    "TimeKind",
    "TimeValue",
    "TripStatus",
    "TripType",
    "TripRecord",
    "FleetSnapshot",
    "StopMarker",
]
