import asyncio
import sys
from pathlib import Path

import httpx
import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from errors import RoutingUnavailable  # noqa: E402
from routing_client import KeyRotationPolicy, RoutingClient, extract_route, format_coordinates  # noqa: E402

ROUTE_PAYLOAD = {
    "routes": [
        {
            "summary": {"lengthInMeters": 4200, "travelTimeInSeconds": 660},
            "legs": [
                {"points": [{"latitude": -23.5, "longitude": -46.6}, {"latitude": -23.51, "longitude": -46.61}]},
                {"points": [{"latitude": -23.52, "longitude": -46.62}]},
            ],
        }
    ]
}


def _no_shuffle(keys):
    return None


def _client(handler, keys=("k1", "k2", "k3")) -> RoutingClient:
    return RoutingClient(
        KeyRotationPolicy(list(keys), shuffle=_no_shuffle),
        base_url="https://routing.test/calculateRoute",
        transport=httpx.MockTransport(handler),
    )


def test_format_coordinates():
    assert format_coordinates([(-23.5, -46.6), (-23.6, -46.7)]) == "-23.5,-46.6:-23.6,-46.7"


def test_extract_route_flattens_legs():
    result = extract_route(ROUTE_PAYLOAD)
    assert result.distance_meters == 4200
    assert result.travel_time_seconds == 660
    assert result.coordinates == [(-23.5, -46.6), (-23.51, -46.61), (-23.52, -46.62)]


def test_extract_route_tolerates_empty_payload():
    result = extract_route({})
    assert result.coordinates == []
    assert result.travel_time_seconds == 0


def test_request_shape():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=ROUTE_PAYLOAD)

    asyncio.run(_client(handler).calculate_route([(-23.5, -46.6), (-23.52, -46.62)]))

    request = seen[0]
    assert request.url.path == "/calculateRoute/-23.5,-46.6:-23.52,-46.62/json"
    assert request.url.params["key"] == "k1"
    assert request.url.params["traffic"] == "true"
    assert request.url.params["travelMode"] == "bus"


def test_failed_key_falls_through_to_next():
    keys_tried = []

    def handler(request: httpx.Request) -> httpx.Response:
        key = request.url.params["key"]
        keys_tried.append(key)
        if key == "k1":
            return httpx.Response(403, json={"error": "quota"})
        return httpx.Response(200, json=ROUTE_PAYLOAD)

    result = asyncio.run(_client(handler).calculate_route([(-23.5, -46.6), (-23.52, -46.62)]))
    assert keys_tried == ["k1", "k2"]
    assert result.travel_time_seconds == 660


def test_every_key_tried_once_then_unavailable():
    keys_tried = []

    def handler(request: httpx.Request) -> httpx.Response:
        keys_tried.append(request.url.params["key"])
        return httpx.Response(500)

    with pytest.raises(RoutingUnavailable) as excinfo:
        asyncio.run(_client(handler).calculate_route([(-23.5, -46.6), (-23.52, -46.62)]))
    assert keys_tried == ["k1", "k2", "k3"]
    assert "k1" not in str(excinfo.value)


def test_no_keys_configured():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    with pytest.raises(RoutingUnavailable):
        asyncio.run(_client(handler, keys=()).calculate_route([(-23.5, -46.6), (-23.52, -46.62)]))


def test_policy_uses_pluggable_shuffle():
    policy = KeyRotationPolicy(["a", "", "b", "c"], shuffle=lambda keys: keys.reverse())
    assert policy.ordered_keys() == ["c", "b", "a"]
    assert policy.max_attempts == 3


def test_attempt_limit_bounds_retries():
    keys_tried = []

    def handler(request: httpx.Request) -> httpx.Response:
        keys_tried.append(request.url.params["key"])
        return httpx.Response(500)

    client = RoutingClient(
        KeyRotationPolicy(["k1", "k2", "k3"], shuffle=_no_shuffle, attempt_limit=2),
        base_url="https://routing.test/calculateRoute",
        transport=httpx.MockTransport(handler),
    )
    with pytest.raises(RoutingUnavailable):
        asyncio.run(client.calculate_route([(-23.5, -46.6), (-23.52, -46.62)]))
    assert keys_tried == ["k1", "k2"]
    assert client.policy.max_attempts == 2
