from __future__ import annotations

import logging
import math
import random
import time
from dataclasses import dataclass, field
from typing import Any, Sequence

import httpx

from mealroute.utils.settings import get_settings


LOGGER = logging.getLogger(__name__)

PLAN_PATH = "/api/route/plan"
REOPTIMIZE_PATH = "/api/route/reoptimize"
HEALTH_PATH = "/api/health"


@dataclass
class PlannedStop:
    delivery_id: str
    address: str | None = None
    lat: float | None = None
    lng: float | None = None


@dataclass
class PlannedRoute:
    driver_id: int
    stops: list[PlannedStop]


@dataclass
class PlanResult:
    routes: list[PlannedRoute]
    warnings: list[str] = field(default_factory=list)


@dataclass
class TailStop:
    planned_stop_id: str
    delivery_id: str
    lat: float | None
    lng: float | None


class PlannerError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        code: str = "PLANNER_ERROR",
        status_code: int | None = None,
        retryable: bool = False,
        timed_out: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.retryable = retryable
        self.timed_out = timed_out
        self.details = details or {}


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    radius = 6371000.0
    p = math.pi / 180
    dlat = (lat2 - lat1) * p
    dlng = (lng2 - lng1) * p
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1 * p) * math.cos(lat2 * p) * math.sin(dlng / 2) ** 2
    return 2 * radius * math.asin(math.sqrt(a))


def _nearest_neighbour(start: tuple[float, float] | None, items: list[Any], coords) -> list[Any]:  # noqa: ANN001
    located = [item for item in items if coords(item) is not None]
    unlocated = [item for item in items if coords(item) is None]
    ordered: list[Any] = []
    cursor = start
    while located:
        if cursor is None:
            nxt = located[0]
        else:
            nxt = min(located, key=lambda item: haversine_m(cursor[0], cursor[1], *coords(item)))
        located.remove(nxt)
        ordered.append(nxt)
        cursor = coords(nxt)
    return ordered + unlocated


class RoutePlannerClient:
    """Client for the external route-optimization engine."""

    def __init__(self) -> None:
        self.settings = get_settings()
        self.http = httpx.Client(timeout=max(1, int(self.settings.planner_timeout_seconds)))

    @property
    def mock_mode(self) -> bool:
        return not self.settings.planner_base_url

    def _url(self, path: str) -> str:
        return f"{str(self.settings.planner_base_url).rstrip('/')}{path}"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.settings.planner_api_key:
            headers["Authorization"] = f"Bearer {self.settings.planner_api_key}"
        return headers

    @staticmethod
    def _sleep_backoff(attempt: int) -> None:
        time.sleep(min(4.0, (2**attempt) * 0.25 + random.random() * 0.15))

    def _request(self, method: str, path: str, *, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        max_attempts = max(1, int(self.settings.planner_max_attempts))
        url = self._url(path)
        last_error: PlannerError | None = None
        for attempt in range(max_attempts):
            try:
                response = self.http.request(method, url, json=payload, headers=self._headers())
            except httpx.TimeoutException as exc:
                last_error = PlannerError(
                    "Route planner timed out",
                    code="PLANNER_TIMEOUT",
                    retryable=True,
                    timed_out=True,
                    details={"url": url, "attempt": attempt + 1, "max_attempts": max_attempts},
                )
                if attempt == max_attempts - 1:
                    raise last_error from exc
                self._sleep_backoff(attempt)
                continue
            except httpx.RequestError as exc:
                last_error = PlannerError(
                    "Route planner request failed",
                    code="PLANNER_REQUEST_ERROR",
                    retryable=True,
                    details={"url": url, "error_type": exc.__class__.__name__, "error": str(exc), "attempt": attempt + 1},
                )
                if attempt == max_attempts - 1:
                    LOGGER.warning("PLANNER_REQUEST_FAILED url=%s details=%s", url, last_error.details)
                    raise last_error from exc
                self._sleep_backoff(attempt)
                continue

            if response.status_code in {429, 500, 502, 503, 504}:
                last_error = PlannerError(
                    "Route planner unavailable",
                    code="PLANNER_UNAVAILABLE",
                    status_code=response.status_code,
                    retryable=True,
                    details={"status_code": response.status_code},
                )
                if attempt == max_attempts - 1:
                    raise last_error
                self._sleep_backoff(attempt)
                continue

            try:
                body = response.json()
            except ValueError as exc:
                raise PlannerError(
                    "Route planner returned a non-JSON body",
                    code="PLANNER_INVALID_RESPONSE",
                    status_code=response.status_code,
                    details={"body": response.text[:300]},
                ) from exc

            if response.status_code >= 400 or (isinstance(body, dict) and body.get("success") is False):
                raise PlannerError(
                    str((body or {}).get("error") or (body or {}).get("message") or "Route planner rejected the request"),
                    code="PLANNER_REJECTED",
                    status_code=response.status_code,
                    details={"status_code": response.status_code, "warnings": (body or {}).get("warnings") or []},
                )
            if not isinstance(body, dict):
                raise PlannerError("Route planner response format invalid", code="PLANNER_INVALID_RESPONSE")
            return body

        if last_error:
            raise last_error
        raise PlannerError("Route planner request failed")

    @staticmethod
    def parse_plan_payload(payload: dict[str, Any]) -> PlanResult:
        routes_obj = payload.get("routes")
        if not isinstance(routes_obj, list):
            raise PlannerError("Route planner response has no routes list", code="PLANNER_INVALID_RESPONSE")

        routes: list[PlannedRoute] = []
        for item in routes_obj:
            if not isinstance(item, dict) or item.get("driver_id") is None:
                raise PlannerError("Route planner route format invalid", code="PLANNER_INVALID_RESPONSE")
            stops: list[PlannedStop] = []
            for raw in item.get("stops") or []:
                if not isinstance(raw, dict) or raw.get("delivery_id") is None:
                    raise PlannerError("Route planner stop format invalid", code="PLANNER_INVALID_RESPONSE")
                lat = raw.get("lat", raw.get("latitude"))
                lng = raw.get("lng", raw.get("lon", raw.get("longitude")))
                stops.append(
                    PlannedStop(
                        delivery_id=str(raw["delivery_id"]),
                        address=raw.get("address"),
                        lat=float(lat) if lat is not None else None,
                        lng=float(lng) if lng is not None else None,
                    )
                )
            routes.append(PlannedRoute(driver_id=int(item["driver_id"]), stops=stops))

        warnings = [str(w) for w in payload.get("warnings") or []]
        return PlanResult(routes=routes, warnings=warnings)

    def plan_routes(
        self,
        *,
        delivery_date: str,
        session: str,
        drivers: Sequence[dict[str, Any]],
        deliveries: Sequence[dict[str, Any]] | None,
        constraints: dict[str, Any],
    ) -> PlanResult:
        if self.mock_mode:
            return self._mock_plan(drivers=drivers, deliveries=deliveries or [])

        payload: dict[str, Any] = {
            "date": delivery_date,
            "session": session,
            "drivers": list(drivers),
            "constraints": constraints,
        }
        if deliveries is not None:
            payload["deliveries"] = list(deliveries)
        return self.parse_plan_payload(self._request("POST", PLAN_PATH, payload=payload))

    def reoptimize_tail(
        self,
        *,
        route_id: int,
        driver_id: int,
        start: tuple[float, float] | None,
        stops: Sequence[TailStop],
    ) -> list[str]:
        """Return the planned stop ids of `stops` in their new visiting order."""
        if not stops:
            return []
        if self.mock_mode:
            ordered = _nearest_neighbour(
                start,
                list(stops),
                lambda stop: (stop.lat, stop.lng) if stop.lat is not None and stop.lng is not None else None,
            )
            return [stop.planned_stop_id for stop in ordered]

        payload = {
            "route_id": route_id,
            "driver_id": driver_id,
            "start_location": {"lat": start[0], "lng": start[1]} if start else None,
            "stops": [
                {
                    "planned_stop_id": stop.planned_stop_id,
                    "delivery_id": stop.delivery_id,
                    "lat": stop.lat,
                    "lng": stop.lng,
                }
                for stop in stops
            ],
        }
        body = self._request("POST", REOPTIMIZE_PATH, payload=payload)
        ordered_ids = body.get("ordered_stop_ids")
        if not isinstance(ordered_ids, list):
            raise PlannerError("Route planner response has no ordered_stop_ids", code="PLANNER_INVALID_RESPONSE")
        return [str(item) for item in ordered_ids]

    def health(self) -> dict[str, Any]:
        if self.mock_mode:
            return {"status": "mock"}
        return self._request("GET", HEALTH_PATH)

    @staticmethod
    def _mock_plan(*, drivers: Sequence[dict[str, Any]], deliveries: Sequence[dict[str, Any]]) -> PlanResult:
        if not deliveries:
            return PlanResult(routes=[], warnings=["No deliveries supplied to the planner"])

        def coords(item: dict[str, Any]) -> tuple[float, float] | None:
            if item.get("lat") is None or item.get("lng") is None:
                return None
            return float(item["lat"]), float(item["lng"])

        chain = _nearest_neighbour(None, list(deliveries), coords)
        chunk = math.ceil(len(chain) / len(drivers))
        routes: list[PlannedRoute] = []
        for idx, driver in enumerate(drivers):
            part = chain[idx * chunk : (idx + 1) * chunk]
            routes.append(
                PlannedRoute(
                    driver_id=int(driver["driver_id"]),
                    stops=[
                        PlannedStop(
                            delivery_id=str(item["delivery_id"]),
                            address=item.get("address"),
                            lat=item.get("lat"),
                            lng=item.get("lng"),
                        )
                        for item in part
                    ],
                )
            )
        return PlanResult(routes=routes, warnings=[])


_client: RoutePlannerClient | None = None


def get_planner_client() -> RoutePlannerClient:
    global _client
    if _client is None:
        _client = RoutePlannerClient()
    return _client
