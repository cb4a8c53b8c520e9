from decimal import Decimal

import aiohttp
import pytest

from transfer_exchange.errors import ExternalDependencyError
from transfer_exchange.services.distance_oracle import (
    OSRMDistanceOracle,
    format_coordinates,
    parse_route,
)

PICKUP = (51.5014, -0.1419)
STOP = (51.4975, -0.1357)
DROPOFF = (51.4723, -0.4887)


def _route(*legs):
    return {
        "code": "Ok",
        "routes": [{"legs": [{"distance": d, "duration": s} for d, s in legs]}],
    }


def test_coordinates_are_lon_lat():
    assert format_coordinates([PICKUP, DROPOFF]) == "-0.1419,51.5014;-0.4887,51.4723"


def test_parse_route_sums_every_leg():
    result = parse_route(_route((16093.44, 600), (8046.72, 300)))

    assert result.miles == Decimal("15.00")
    assert result.minutes == 15


@pytest.mark.parametrize(
    "payload",
    [
        {"code": "NoRoute", "message": "Impossible route between points"},
        {"code": "Ok", "routes": []},
        {"code": "Ok", "routes": [{"legs": [{"distance": 100}]}]},
    ],
)
def test_parse_route_rejects_bad_payloads(payload):
    with pytest.raises(ExternalDependencyError):
        parse_route(payload)


@pytest.mark.asyncio
async def test_measure_routes_through_waypoints(monkeypatch):
    oracle = OSRMDistanceOracle(base_url="http://osrm.test/", profile="driving")
    seen = {}

    async def fake_get_json(url, params):
        seen["url"] = url
        seen["params"] = params
        return _route((1609.344, 120), (3218.688, 240))

    monkeypatch.setattr(oracle, "_get_json", fake_get_json)

    result = await oracle.measure(PICKUP, DROPOFF, [STOP])

    assert seen["url"] == (
        "http://osrm.test/route/v1/driving/"
        "-0.1419,51.5014;-0.1357,51.4975;-0.4887,51.4723"
    )
    assert seen["params"] == {"overview": "false", "steps": "false"}
    assert result.miles == Decimal("3.00")
    assert result.minutes == 6


@pytest.mark.asyncio
async def test_measure_wraps_transport_errors(monkeypatch):
    oracle = OSRMDistanceOracle(base_url="http://osrm.test")

    async def unreachable(url, params):
        raise aiohttp.ClientConnectionError("connection refused")

    monkeypatch.setattr(oracle, "_get_json", unreachable)

    with pytest.raises(ExternalDependencyError):
        await oracle.measure(PICKUP, DROPOFF)
