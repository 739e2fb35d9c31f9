"""Batched arrival-estimate refresh.

Estimates are refreshed one batch at a time so the number of concurrent
routing calls stays bounded. Before each batch the caller's liveness check
runs; when it reports false the remaining batches are abandoned. Estimates
already in flight always finish and land in the prediction cache.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from caches import normalize_plate
from fleet_aggregator import FleetAggregator
from fleet_models import FleetSnapshot, TripStatus, TripType
from route_estimator import RouteEstimator

DEFAULT_BATCH_SIZE = 5


@dataclass
class RefreshTarget:
    plate: str
    trip_id: Optional[str] = None


@dataclass
class RefreshReport:
    refreshed: Dict[str, str] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)
    batches: int = 0
    aborted: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            "atualizados": self.refreshed,
            "falhas": self.failed,
            "lotes": self.batches,
            "interrompido": self.aborted,
        }


async def refresh_predictions(
    estimator: RouteEstimator,
    targets: Sequence[RefreshTarget],
    batch_size: int = DEFAULT_BATCH_SIZE,
    is_alive: Optional[Callable[[], Awaitable[bool]]] = None,
) -> RefreshReport:
    report = RefreshReport()
    batch_size = max(1, int(batch_size))

    for start in range(0, len(targets), batch_size):
        if is_alive is not None and not await is_alive():
            report.aborted = True
            print(f"[eta] refresh aborted after {report.batches} batches")
            break

        batch = targets[start:start + batch_size]
        results = await asyncio.gather(
            *(estimator.estimate_route(t.plate, TripType.INITIAL, t.trip_id) for t in batch),
            return_exceptions=True,
        )
        report.batches += 1

        for target, result in zip(batch, results):
            key = normalize_plate(target.plate)
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                report.failed[key] = str(result) or type(result).__name__
            else:
                report.refreshed[key] = str(result.arrival)

    return report


def sweep_targets(snapshot: FleetSnapshot) -> List[RefreshTarget]:
    """Started outbound trips whose vehicles are reporting."""
    targets: List[RefreshTarget] = []
    for trip in snapshot.trips:
        if trip.status is TripStatus.DISABLED or not trip.outbound:
            continue
        if not trip.actual_start.is_known or not normalize_plate(trip.plate):
            continue
        targets.append(RefreshTarget(plate=trip.plate, trip_id=trip.id))
    return targets


class EtaSweeper:
    """Periodically refreshes estimates for every started outbound trip."""

    def __init__(
        self,
        aggregator: FleetAggregator,
        estimator: RouteEstimator,
        interval_s: float,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        self.aggregator = aggregator
        self.estimator = estimator
        self.interval_s = interval_s
        self.batch_size = batch_size
        self._stopped = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def _alive(self) -> bool:
        return not self._stopped.is_set()

    async def run_once(self) -> RefreshReport:
        snapshot = await self.aggregator.get_fleet_snapshot(None)
        targets = sweep_targets(snapshot)
        report = await refresh_predictions(self.estimator, targets, self.batch_size, self._alive)
        print(
            f"[eta] sweep: {len(report.refreshed)} refreshed, "
            f"{len(report.failed)} failed, {report.batches} batches"
        )
        return report

    async def _loop(self) -> None:
        while not self._stopped.is_set():
            try:
                await self.run_once()
            except Exception as exc:
                print(f"[eta] sweep failed: {exc}")
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                pass

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stopped.clear()
            self._task = asyncio.create_task(self._loop())
        return self._task

    async def stop(self) -> None:
        self._stopped.set()
        if self._task is not None:
            await self._task
            self._task = None


__all__ = [
    "DEFAULT_BATCH_SIZE",
    "RefreshTarget",
    "RefreshReport",
    "refresh_predictions",
    "sweep_targets",
    "EtaSweeper",
]
