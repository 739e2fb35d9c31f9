import asyncio
import sys
from pathlib import Path
from typing import List, Optional

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from errors import RoutingUnavailable  # noqa: E402
from eta_refresh import RefreshTarget, refresh_predictions, sweep_targets  # noqa: E402
from fleet_models import (  # noqa: E402
    CATEGORY_ENGINE_OFF,
    CATEGORY_IN_PROGRESS,
    FleetSnapshot,
    TimeValue,
    TripRecord,
    TripStatus,
    TripType,
)


class _Estimate:
    def __init__(self, arrival: str):
        self.arrival = TimeValue.known(arrival)


class FakeEstimator:
    def __init__(self, failing: Optional[set] = None):
        self.failing = failing or set()
        self.calls: List[tuple] = []
        self.max_in_flight = 0
        self._in_flight = 0

    async def estimate_route(self, plate, trip_type, trip_id=None):
        self.calls.append((plate, trip_type, trip_id))
        self._in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self._in_flight)
        await asyncio.sleep(0)
        self._in_flight -= 1
        if plate in self.failing:
            raise RoutingUnavailable()
        return _Estimate("09:00")


def _targets(count: int) -> List[RefreshTarget]:
    return [RefreshTarget(plate=f"AAA{i:04d}", trip_id=str(i)) for i in range(count)]


def test_refresh_runs_in_bounded_batches():
    estimator = FakeEstimator(failing={"AAA0003"})
    report = asyncio.run(refresh_predictions(estimator, _targets(7), batch_size=3))

    assert report.batches == 3
    assert estimator.max_in_flight <= 3
    assert len(report.refreshed) == 6
    assert report.failed == {"AAA0003": "Falha no serviço de roteamento"}
    assert all(call[1] is TripType.INITIAL for call in estimator.calls)
    assert report.aborted is False


def test_refresh_aborts_when_caller_goes_away():
    estimator = FakeEstimator()
    checks = []

    async def is_alive():
        checks.append(True)
        return len(checks) <= 2

    report = asyncio.run(refresh_predictions(estimator, _targets(10), batch_size=2, is_alive=is_alive))

    assert report.aborted is True
    assert report.batches == 2
    assert len(estimator.calls) == 4
    assert report.to_dict()["interrompido"] is True


def _record(trip_id, plate, status, actual_start, outbound=True):
    return TripRecord(
        id=trip_id,
        company="ACME",
        route="Linha",
        plate=plate,
        outbound=outbound,
        scheduled_start=TimeValue.known("08:00"),
        actual_start=actual_start,
        scheduled_end=TimeValue.known("09:00"),
        predicted_end=TimeValue.pending(),
        last_report=TimeValue.unknown(),
        category=CATEGORY_ENGINE_OFF if status is TripStatus.DISABLED else CATEGORY_IN_PROGRESS,
        status=status,
    )


def test_sweep_targets_pick_started_outbound_trips():
    snapshot = FleetSnapshot(
        trips=[
            _record("1", "ABC1234", TripStatus.ON_TIME, TimeValue.known("08:02")),
            _record("2", "DEF5678", TripStatus.ON_TIME, TimeValue.known("08:02"), outbound=False),
            _record("3", "GHI9012", TripStatus.EN_ROUTE_TO_START, TimeValue.unknown()),
            _record("4", "JKL3456", TripStatus.DISABLED, TimeValue.known("08:02")),
            _record("5", "", TripStatus.LATE, TimeValue.known("08:20")),
        ],
        server_time="08:30",
    )
    targets = sweep_targets(snapshot)
    assert [(t.plate, t.trip_id) for t in targets] == [("ABC1234", "1")]
