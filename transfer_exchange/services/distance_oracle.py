"""
Distance oracle backed by an OSRM routing server.

Only concern: turn an ordered list of (lat, lng) points into total road miles
and minutes. Pricing rules never live here.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional, Sequence

import aiohttp

from transfer_exchange.config import settings
from transfer_exchange.errors import ExternalDependencyError

logger = logging.getLogger("marketplace.distance")

LatLng = tuple[float, float]

METERS_PER_MILE = Decimal("1609.344")


@dataclass(frozen=True, slots=True)
class RouteDistance:
    miles: Decimal
    minutes: int


def format_coordinates(points: Sequence[LatLng]) -> str:
    """OSRM wants ``lon,lat;lon,lat``; callers hold (lat, lng)."""
    return ";".join(f"{lng},{lat}" for lat, lng in points)


def parse_route(payload: dict[str, Any]) -> RouteDistance:
    """Sum consecutive legs of the first route.

    With waypoints this is pickup->stop1->...->dropoff, never the direct
    pickup->dropoff distance.
    """
    if payload.get("code") != "Ok":
        raise ExternalDependencyError(
            f"OSRM error: {payload.get('message') or payload.get('code') or 'unknown'}"
        )
    try:
        route = payload["routes"][0]
        legs = route.get("legs") or [route]
        meters = sum(Decimal(str(leg["distance"])) for leg in legs)
        seconds = sum(Decimal(str(leg["duration"])) for leg in legs)
    except (KeyError, IndexError, TypeError, ValueError) as exc:
        raise ExternalDependencyError(f"OSRM returned a malformed route: {exc}") from exc
    miles = (meters / METERS_PER_MILE).quantize(Decimal("0.01"))
    minutes = int((seconds / 60).to_integral_value())
    return RouteDistance(miles=miles, minutes=minutes)


class OSRMDistanceOracle:
    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        profile: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
    ) -> None:
        self.base_url = (base_url or settings.osrm_base_url).rstrip("/")
        self.profile = profile or settings.osrm_profile
        self.timeout_seconds = timeout_seconds or settings.osrm_timeout_seconds
        if not self.base_url:
            raise ValueError("OSRM base URL is not configured (OSRM_BASE_URL)")

    async def _get_json(self, url: str, params: dict[str, str]) -> dict[str, Any]:
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as http:
            async with http.get(url, params=params) as response:
                return await response.json(content_type=None)

    async def measure(
        self,
        pickup: LatLng,
        dropoff: LatLng,
        waypoints: Sequence[LatLng] = (),
    ) -> RouteDistance:
        points = [pickup, *waypoints, dropoff]
        url = f"{self.base_url}/route/v1/{self.profile}/{format_coordinates(points)}"
        try:
            payload = await self._get_json(url, {"overview": "false", "steps": "false"})
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            logger.warning("[distance] OSRM request failed points=%s: %s", len(points), exc)
            raise ExternalDependencyError(f"distance lookup failed: {exc}") from exc
        if not isinstance(payload, dict):
            raise ExternalDependencyError("OSRM returned a non-object payload")
        result = parse_route(payload)
        logger.debug(
            "[distance] points=%s miles=%s minutes=%s", len(points), result.miles, result.minutes
        )
        return result
