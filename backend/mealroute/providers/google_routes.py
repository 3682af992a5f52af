from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Sequence

import httpx

from mealroute.providers.planner import haversine_m
from mealroute.services.cache import get_cache
from mealroute.utils.settings import get_settings


LOGGER = logging.getLogger(__name__)

GOOGLE_COMPUTE_ROUTES_URL = "https://routes.googleapis.com/directions/v2:computeRoutes"
MAX_INTERMEDIATES_PER_REQUEST = 25
CACHE_BUCKET_MINUTES = 5
# Free-flow speed used for legs when live traffic is unavailable.
ESTIMATE_SPEED_MPS = 30_000 / 3600

SOURCE_GOOGLE = "google"
SOURCE_CACHE = "cache"
SOURCE_ESTIMATE = "estimate"


@dataclass
class TrafficLeg:
    distance_m: float
    duration_s: int
    static_duration_s: int
    source: str = SOURCE_GOOGLE

    @property
    def multiplier(self) -> float:
        return round(self.duration_s / max(1, self.static_duration_s), 3)


class GoogleRoutesError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        code: str = "GOOGLE_ROUTES_ERROR",
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


class _TokenBucketLimiter:
    def __init__(self, *, qps: float) -> None:
        self._rate = float(max(0.5, qps))
        self._capacity = max(1.0, self._rate)
        self._tokens = self._capacity
        self._updated_at = time.monotonic()
        self._lock = threading.Lock()

    def acquire(self) -> None:
        while True:
            with self._lock:
                now = time.monotonic()
                self._tokens = min(self._capacity, self._tokens + (now - self._updated_at) * self._rate)
                self._updated_at = now
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return
                wait_s = (1.0 - self._tokens) / self._rate
            time.sleep(min(0.25, max(0.01, wait_s)))


def parse_google_duration_seconds(value: str | int | float | None) -> int:
    if value is None:
        raise ValueError("Duration value is missing")
    if isinstance(value, (int, float)):
        return max(0, int(round(float(value))))
    text = str(value).strip()
    if text.endswith("s"):
        text = text[:-1]
    return max(0, int(round(float(text))))


def parse_compute_routes_legs(payload: dict[str, Any], *, expected_legs: int | None = None) -> list[TrafficLeg]:
    routes = payload.get("routes")
    if not isinstance(routes, list) or not routes or not isinstance(routes[0], dict):
        raise GoogleRoutesError("Google Routes response has no routes", code="GOOGLE_ROUTES_EMPTY")

    legs_obj = routes[0].get("legs")
    if not isinstance(legs_obj, list) or not legs_obj:
        raise GoogleRoutesError("Google Routes response has no legs", code="GOOGLE_LEGS_MISSING")
    if expected_legs is not None and len(legs_obj) != expected_legs:
        raise GoogleRoutesError(
            "Google Routes leg count mismatch",
            code="GOOGLE_LEG_COUNT_MISMATCH",
            details={"expected": expected_legs, "actual": len(legs_obj)},
        )

    legs: list[TrafficLeg] = []
    for leg in legs_obj:
        if not isinstance(leg, dict):
            raise GoogleRoutesError("Google Routes leg format invalid", code="GOOGLE_LEG_INVALID")
        try:
            duration_s = parse_google_duration_seconds(leg.get("duration"))
            static_raw = leg.get("staticDuration")
            static_s = parse_google_duration_seconds(static_raw) if static_raw is not None else duration_s
        except ValueError as exc:
            raise GoogleRoutesError("Google Routes leg duration invalid", code="GOOGLE_LEG_INVALID") from exc
        legs.append(
            TrafficLeg(
                distance_m=float(leg.get("distanceMeters") or 0.0),
                duration_s=max(1, duration_s),
                static_duration_s=max(1, static_s),
            )
        )
    return legs


def estimate_leg(origin: tuple[float, float], dest: tuple[float, float]) -> TrafficLeg:
    distance = haversine_m(origin[0], origin[1], dest[0], dest[1])
    seconds = max(1, int(round(distance / ESTIMATE_SPEED_MPS)))
    return TrafficLeg(distance_m=round(distance, 1), duration_s=seconds, static_duration_s=seconds, source=SOURCE_ESTIMATE)


class GoogleRoutesProvider:
    """Live per-leg traffic from Google Routes `computeRoutes`.

    A leg's multiplier compares the traffic-aware `duration` with the
    free-flow `staticDuration`. Without the feature flag or an API key the
    provider falls back to haversine estimates, which never report traffic.
    """

    def __init__(self) -> None:
        self.settings = get_settings()
        self.cache = get_cache()
        self.http = httpx.Client(timeout=max(1, int(self.settings.google_timeout_seconds)))
        self._limiter = _TokenBucketLimiter(qps=float(self.settings.google_rate_limit_qps))
        self._cache_ttl_seconds = max(30, int(self.settings.google_cache_ttl_seconds))

    @property
    def enabled(self) -> bool:
        return bool(self.settings.feature_google_traffic and self.settings.resolved_google_routes_api_key)

    @staticmethod
    def _round(v: float) -> float:
        return round(v, 5)

    def _leg_cache_key(self, origin: tuple[float, float], dest: tuple[float, float], departure: datetime) -> str:
        minute = (departure.minute // CACHE_BUCKET_MINUTES) * CACHE_BUCKET_MINUTES
        bucket = departure.replace(minute=minute, second=0, microsecond=0).strftime("%Y%m%dT%H%M")
        return (
            "traffic_leg:"
            f"{self._round(origin[0])}:{self._round(origin[1])}:"
            f"{self._round(dest[0])}:{self._round(dest[1])}:"
            f"{bucket}:{self.settings.resolved_google_routing_preference}"
        )

    def _headers(self) -> dict[str, str]:
        api_key = self.settings.resolved_google_routes_api_key
        if not api_key:
            raise GoogleRoutesError("Google Routes API key is not configured", code="GOOGLE_KEY_MISSING")
        return {
            "Content-Type": "application/json",
            "X-Goog-Api-Key": api_key,
            "X-Goog-FieldMask": "routes.legs.duration,routes.legs.staticDuration,routes.legs.distanceMeters",
        }

    @staticmethod
    def _sleep_backoff(attempt: int) -> None:
        time.sleep(min(3.0, (2**attempt) * 0.2 + 0.05))

    def _post(self, payload: dict[str, Any], *, max_attempts: int = 3) -> dict[str, Any]:
        last_error: GoogleRoutesError | None = None
        for attempt in range(max_attempts):
            self._limiter.acquire()
            try:
                response = self.http.post(GOOGLE_COMPUTE_ROUTES_URL, json=payload, headers=self._headers())
            except httpx.TimeoutException as exc:
                last_error = GoogleRoutesError(
                    "Google Routes request timed out",
                    code="GOOGLE_ROUTES_TIMEOUT",
                    retryable=True,
                    timed_out=True,
                    details={"attempt": attempt + 1, "max_attempts": max_attempts},
                )
            except httpx.RequestError as exc:
                last_error = GoogleRoutesError(
                    "Google Routes request failed",
                    code="GOOGLE_ROUTES_REQUEST_ERROR",
                    retryable=True,
                    details={"error_type": exc.__class__.__name__, "error": str(exc), "attempt": attempt + 1},
                )
            else:
                if response.status_code in {429, 500, 502, 503, 504}:
                    last_error = GoogleRoutesError(
                        "Google Routes unavailable",
                        code="GOOGLE_ROUTES_UNAVAILABLE",
                        status_code=response.status_code,
                        retryable=True,
                        details={"status_code": response.status_code},
                    )
                elif response.status_code >= 400:
                    raise GoogleRoutesError(
                        "Google Routes request rejected",
                        code="GOOGLE_ROUTES_REJECTED",
                        status_code=response.status_code,
                        details={"status_code": response.status_code, "body": response.text[:300]},
                    )
                else:
                    try:
                        return response.json()
                    except ValueError as exc:
                        raise GoogleRoutesError(
                            "Google Routes returned a non-JSON body",
                            code="GOOGLE_ROUTES_INVALID",
                            details={"body": response.text[:300]},
                        ) from exc

            if attempt < max_attempts - 1:
                self._sleep_backoff(attempt)

        LOGGER.warning("GOOGLE_ROUTES_FAILED code=%s details=%s", last_error.code, last_error.details)
        raise last_error

    @staticmethod
    def _waypoint(point: tuple[float, float]) -> dict[str, Any]:
        return {"location": {"latLng": {"latitude": float(point[0]), "longitude": float(point[1])}}}

    @staticmethod
    def _split_points(points: list[tuple[float, float]]) -> list[list[tuple[float, float]]]:
        max_points = MAX_INTERMEDIATES_PER_REQUEST + 2
        chunks: list[list[tuple[float, float]]] = []
        start = 0
        while start < len(points) - 1:
            end = min(len(points), start + max_points)
            chunks.append(points[start:end])
            start = end - 1
        return chunks

    def _cached_legs(self, points: list[tuple[float, float]], departure: datetime) -> list[TrafficLeg] | None:
        legs: list[TrafficLeg] = []
        for origin, dest in zip(points[:-1], points[1:]):
            hit = self.cache.get(self._leg_cache_key(origin, dest, departure))
            if not isinstance(hit, dict) or "duration_s" not in hit:
                return None
            legs.append(
                TrafficLeg(
                    distance_m=float(hit.get("distance_m") or 0.0),
                    duration_s=max(1, int(hit["duration_s"])),
                    static_duration_s=max(1, int(hit.get("static_duration_s") or hit["duration_s"])),
                    source=SOURCE_CACHE,
                )
            )
        return legs

    def leg_traffic(self, points: Sequence[tuple[float, float]], departure: datetime | None = None) -> list[TrafficLeg]:
        """Return one leg per consecutive pair of `points`."""
        points = [(float(lat), float(lng)) for lat, lng in points]
        if len(points) < 2:
            return []
        if not self.enabled:
            return [estimate_leg(origin, dest) for origin, dest in zip(points[:-1], points[1:])]

        departure = departure or datetime.now(timezone.utc)
        cached = self._cached_legs(points, departure)
        if cached is not None:
            return cached

        legs: list[TrafficLeg] = []
        for chunk in self._split_points(points):
            payload: dict[str, Any] = {
                "origin": self._waypoint(chunk[0]),
                "destination": self._waypoint(chunk[-1]),
                "travelMode": "DRIVE",
                "routingPreference": self.settings.resolved_google_routing_preference,
                "computeAlternativeRoutes": False,
                "units": "METRIC",
            }
            if len(chunk) > 2:
                payload["intermediates"] = [self._waypoint(point) for point in chunk[1:-1]]
            legs.extend(parse_compute_routes_legs(self._post(payload), expected_legs=len(chunk) - 1))

        for (origin, dest), leg in zip(zip(points[:-1], points[1:]), legs):
            self.cache.set(
                self._leg_cache_key(origin, dest, departure),
                {
                    "duration_s": leg.duration_s,
                    "static_duration_s": leg.static_duration_s,
                    "distance_m": leg.distance_m,
                },
                ttl_seconds=self._cache_ttl_seconds,
            )
        return legs


_PROVIDER: GoogleRoutesProvider | None = None


def get_google_routes_provider() -> GoogleRoutesProvider:
    global _PROVIDER
    if _PROVIDER is None:
        _PROVIDER = GoogleRoutesProvider()
    return _PROVIDER
