"""Short-lived in-memory caches shared by request handlers.

Nothing here survives a restart. Writes are plain key replacements, so
concurrent handlers can read and write without coordination; the last
writer wins.
"""
from __future__ import annotations

import asyncio
import re
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
from zoneinfo import ZoneInfo

PREDICTION_TTL_S = 300.0
DASHBOARD_SNAPSHOT_TTL_S = 30.0
MAP_SNAPSHOT_TTL_S = 60.0

_PLATE_STRIP_RE = re.compile(r"[^A-Za-z0-9]")


def normalize_plate(plate: Optional[str]) -> str:
    """Strip non-alphanumerics and upper-case a vehicle plate."""
    if not plate:
        return ""
    return _PLATE_STRIP_RE.sub("", str(plate)).upper()


class TTLStore:
    """Key/value store whose entries expire ``ttl`` seconds after their last write."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[Any, Tuple[Any, float]] = {}

    def set(self, key: Any, value: Any) -> None:
        self._entries[key] = (value, self._clock() + self.ttl)

    def get(self, key: Any, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return default
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return default
        return value

    def delete(self, key: Any) -> None:
        self._entries.pop(key, None)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, (_value, exp) in self._entries.items() if now >= exp]
        for key in expired:
            self._entries.pop(key, None)
        return len(expired)

    def __contains__(self, key: Any) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        self.purge_expired()
        return len(self._entries)

    def __bool__(self) -> bool:
        # An empty store is still a store
        return True


class PredictionCache(TTLStore):
    """Latest routed arrival estimate per vehicle, keyed by normalized plate."""

    def __init__(
        self,
        ttl: float = PREDICTION_TTL_S,
        clock: Callable[[], float] = time.monotonic,
        tz: ZoneInfo = ZoneInfo("America/Sao_Paulo"),
    ):
        super().__init__(ttl, clock)
        self.tz = tz

    def record_arrival(self, plate: str, horario: str) -> None:
        self.set(
            normalize_plate(plate),
            {"horario": horario, "written_at": datetime.now(self.tz).isoformat()},
        )

    def arrival_for(self, plate: str) -> Optional[str]:
        entry = self.get(normalize_plate(plate))
        if isinstance(entry, dict) and entry.get("horario"):
            return str(entry["horario"])
        return None


class SnapshotCache:
    """Caches one upstream snapshot under a fixed name.

    Concurrent misses share a single in-flight fetch. A failed fetch is not
    cached; the exception reaches every waiter.
    """

    def __init__(
        self,
        ttl: float,
        name: str = "dashboard_main",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self._store = TTLStore(ttl, clock)
        self.lock = asyncio.Lock()
        self._inflight: Optional[asyncio.Task] = None

    @property
    def ttl(self) -> float:
        return self._store.ttl

    def peek(self) -> Any:
        return self._store.get(self.name)

    def invalidate(self) -> None:
        self._store.delete(self.name)

    async def get(self, fetcher: Callable[[], Awaitable[Any]]) -> Any:
        async with self.lock:
            value = self._store.get(self.name)
            if value is not None:
                return value
            # Singleflight: reuse in-flight fetch task
            if self._inflight is not None:
                inflight_task = self._inflight
            else:
                inflight_task = asyncio.create_task(fetcher())
                self._inflight = inflight_task

        try:
            data = await inflight_task
        except Exception:
            async with self.lock:
                if self._inflight is inflight_task:
                    self._inflight = None
            raise

        async with self.lock:
            if self._inflight is inflight_task:
                self._store.set(self.name, data)
                self._inflight = None
        return data


__all__ = [
    "PREDICTION_TTL_S",
    "DASHBOARD_SNAPSHOT_TTL_S",
    "MAP_SNAPSHOT_TTL_S",
    "normalize_plate",
    "TTLStore",
    "PredictionCache",
    "SnapshotCache",
]
