from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from mealroute.models import Route, Stop
from mealroute.models.states import (
    EVENT_ROUTE_REOPTIMIZED,
    EVENT_TRAFFIC_CHECKED,
    ROUTE_COMPLETED,
    ROUTE_IN_PROGRESS,
    STOP_PENDING,
)
from mealroute.providers.google_routes import GoogleRoutesError, TrafficLeg, get_google_routes_provider
from mealroute.providers.planner import PlannerError, TailStop, get_planner_client
from mealroute.services.locks import get_route_locks
from mealroute.services.route_store import (
    GeoPoint,
    apply_orders,
    current_stop,
    get_route_or_404,
    load_routes_for_update,
    ordered_stops,
    record_event,
    stop_payload,
)
from mealroute.utils.context import SYSTEM_CONTEXT, RequestContext
from mealroute.utils.db import atomic
from mealroute.utils.errors import ExternalServiceError, InvalidStateError, ValidationError, upstream_failure
from mealroute.utils.settings import get_settings

LOGGER = logging.getLogger(__name__)

REASON_HEAVY_TRAFFIC = "heavy_traffic"
REASON_NO_HEAVY_TRAFFIC = "no_heavy_traffic"
REASON_NO_PENDING_STOPS = "no_pending_stops"
REASON_NEXT_STOP_UNLOCATED = "next_stop_unlocated"
REASON_MANUAL = "manual"


def pending_tail(route: Route) -> list[Stop]:
    """PENDING stops at or after the current-stop pointer, in visiting order."""
    stops = ordered_stops(route)
    pointer = current_stop(stops)
    if pointer is None:
        return []
    return [stop for stop in stops if stop.planned_order >= pointer.planned_order and stop.status == STOP_PENDING]


def _tail_signature(stops: list[Stop]) -> list[tuple[str, int]]:
    return [(stop.id, stop.planned_order) for stop in stops]


def _route_location(route: Route, location: GeoPoint | None) -> GeoPoint | None:
    if location is not None:
        return location
    if route.last_lat is not None and route.last_lng is not None:
        return GeoPoint(lat=route.last_lat, lng=route.last_lng)
    return None


def _segment_payload(origin: dict[str, Any], stop: Stop, leg: TrafficLeg, threshold: float) -> dict[str, Any]:
    return {
        "from": origin,
        "to": {
            "planned_stop_id": stop.id,
            "delivery_id": stop.delivery_id,
            "stop_order": stop.planned_order,
            "lat": stop.lat,
            "lng": stop.lng,
        },
        "distance_m": leg.distance_m,
        "duration_s": leg.duration_s,
        "static_duration_s": leg.static_duration_s,
        "traffic_multiplier": leg.multiplier,
        "heavy_traffic": leg.multiplier >= threshold,
        "source": leg.source,
    }


def _measure_segments(
    location: GeoPoint,
    tail: list[Stop],
    *,
    check_all_segments: bool,
    threshold: float,
) -> list[dict[str, Any]]:
    candidates = tail if check_all_segments else tail[:1]
    located = [stop for stop in candidates if stop.lat is not None and stop.lng is not None]
    if not located:
        return []

    points = [(location.lat, location.lng), *[(stop.lat, stop.lng) for stop in located]]
    try:
        legs = get_google_routes_provider().leg_traffic(points)
    except GoogleRoutesError as exc:
        raise upstream_failure("traffic", exc) from exc

    segments: list[dict[str, Any]] = []
    origin: dict[str, Any] = {"type": "driver", "lat": location.lat, "lng": location.lng}
    for stop, leg in zip(located, legs):
        segments.append(_segment_payload(origin, stop, leg, threshold))
        origin = {"type": "stop", "planned_stop_id": stop.id, "lat": stop.lat, "lng": stop.lng}
    return segments


def _planner_order(route: Route, tail: list[Stop], start: GeoPoint | None) -> list[str]:
    submitted = [stop.id for stop in tail]
    try:
        ordered = get_planner_client().reoptimize_tail(
            route_id=route.id,
            driver_id=route.driver_id,
            start=(start.lat, start.lng) if start is not None else None,
            stops=[TailStop(planned_stop_id=stop.id, delivery_id=stop.delivery_id, lat=stop.lat, lng=stop.lng) for stop in tail],
        )
    except PlannerError as exc:
        raise upstream_failure("planner", exc) from exc

    if len(ordered) != len(set(ordered)) or set(ordered) != set(submitted):
        raise ExternalServiceError(
            message="Planner returned a different set of stops than it was given",
            details={"service": "planner", "submitted": submitted, "returned": ordered},
            stage="UPSTREAM",
            route_id=route.id,
        )
    return ordered


def _apply_tail_order(db: Session, route: Route, tail: list[Stop], ordered_ids: list[str]) -> bool:
    """Write the new tail order into the slots the tail already occupies."""
    slots = sorted(stop.planned_order for stop in tail)
    by_id = {stop.id: stop for stop in tail}
    if [stop.id for stop in sorted(tail, key=lambda item: item.planned_order)] == ordered_ids:
        return False
    apply_orders(db, [(by_id[stop_id], route, slot) for stop_id, slot in zip(ordered_ids, slots)])
    return True


def _ensure_unchanged(route: Route, expected_status: set[str], signature: list[tuple[str, int]]) -> list[Stop]:
    if route.status not in expected_status:
        raise InvalidStateError(
            message=f"Route {route.id} changed state during the traffic check",
            details={"route_id": route.id, "current_status": route.status},
            route_id=route.id,
        )
    tail = pending_tail(route)
    if _tail_signature(tail) != signature:
        raise InvalidStateError(
            message=f"Stops on route {route.id} changed during the traffic check; retry",
            error_code="CONCURRENT_MODIFICATION",
            details={"route_id": route.id},
            route_id=route.id,
        )
    return tail


def check_traffic(
    db: Session,
    *,
    route_id: int,
    current_location: GeoPoint | None = None,
    check_all_segments: bool = True,
    ctx: RequestContext = SYSTEM_CONTEXT,
) -> dict[str, Any]:
    threshold = float(get_settings().traffic_reoptimize_threshold)
    route = get_route_or_404(db, route_id)
    if route.status != ROUTE_IN_PROGRESS:
        raise InvalidStateError(
            message=f"Traffic checks need an in-progress route; route {route.id} is {route.status}",
            details={"route_id": route.id, "current_status": route.status},
            route_id=route.id,
        )
    location = _route_location(route, current_location)
    if location is None:
        raise ValidationError(
            message="current_location is required; no location has been recorded for this route yet",
            details={"route_id": route.id},
            route_id=route.id,
        )

    tail = pending_tail(route)
    signature = _tail_signature(tail)
    # Upstream calls run before any lock is taken and before anything is written.
    segments = _measure_segments(location, tail, check_all_segments=check_all_segments, threshold=threshold)
    max_multiplier = max((segment["traffic_multiplier"] for segment in segments), default=None)
    heavy = max_multiplier is not None and max_multiplier >= threshold

    ordered_ids: list[str] | None = None
    if heavy and len(tail) > 1:
        ordered_ids = _planner_order(route, tail, location)

    if not tail:
        reason = REASON_NO_PENDING_STOPS
    elif not segments and not check_all_segments:
        reason = REASON_NEXT_STOP_UNLOCATED
    elif heavy:
        reason = REASON_HEAVY_TRAFFIC
    else:
        reason = REASON_NO_HEAVY_TRAFFIC

    reoptimized = False
    with get_route_locks().hold(route_id), atomic(db):
        route = load_routes_for_update(db, [route_id])[route_id]
        # Only a reorder depends on the tail staying as it was measured.
        if ordered_ids is not None:
            tail = _ensure_unchanged(route, {ROUTE_IN_PROGRESS}, signature)
            reoptimized = _apply_tail_order(db, route, tail, ordered_ids)
        record_event(
            db,
            route,
            EVENT_TRAFFIC_CHECKED,
            actor_id=ctx.actor_id,
            location=location,
            payload={"max_traffic_multiplier": max_multiplier, "threshold": threshold, "segments": len(segments)},
        )
        if reoptimized:
            record_event(
                db,
                route,
                EVENT_ROUTE_REOPTIMIZED,
                actor_id=ctx.actor_id,
                payload={"reason": reason, "order": ordered_ids},
            )

    LOGGER.info(
        "TRAFFIC_CHECKED route_id=%s segments=%s max_multiplier=%s threshold=%s reoptimized=%s",
        route.id,
        len(segments),
        max_multiplier,
        threshold,
        reoptimized,
    )
    return {
        "route_id": route.id,
        "segments": segments,
        "heavy_traffic_detected": heavy,
        "max_traffic_multiplier": max_multiplier,
        "threshold": threshold,
        "reoptimized": reoptimized,
        "reason": reason,
        "updated_route_order": [stop_payload(stop) for stop in ordered_stops(route)],
    }


def reoptimize_route(
    db: Session,
    *,
    route_id: int,
    current_location: GeoPoint | None = None,
    ctx: RequestContext = SYSTEM_CONTEXT,
) -> dict[str, Any]:
    """Dispatcher-triggered reorder of the PENDING tail, regardless of traffic."""
    route = get_route_or_404(db, route_id)
    if route.status == ROUTE_COMPLETED:
        raise InvalidStateError(
            message=f"Route {route.id} is completed and cannot be reoptimized",
            details={"route_id": route.id, "current_status": route.status},
            route_id=route.id,
        )
    start = _route_location(route, current_location)
    if start is None and route.start_lat is not None and route.start_lng is not None:
        start = GeoPoint(lat=route.start_lat, lng=route.start_lng)

    status = route.status
    tail = pending_tail(route)
    signature = _tail_signature(tail)
    ordered_ids = _planner_order(route, tail, start) if len(tail) > 1 else None

    reoptimized = False
    with get_route_locks().hold(route_id), atomic(db):
        route = load_routes_for_update(db, [route_id])[route_id]
        tail = _ensure_unchanged(route, {status}, signature)
        if ordered_ids is not None:
            reoptimized = _apply_tail_order(db, route, tail, ordered_ids)
        if reoptimized:
            record_event(
                db,
                route,
                EVENT_ROUTE_REOPTIMIZED,
                actor_id=ctx.actor_id,
                location=current_location,
                payload={"reason": REASON_MANUAL, "order": ordered_ids},
            )

    LOGGER.info("ROUTE_REOPTIMIZED route_id=%s pending=%s changed=%s", route.id, len(tail), reoptimized)
    return {
        "route_id": route.id,
        "reoptimized": reoptimized,
        "reason": REASON_MANUAL if tail else REASON_NO_PENDING_STOPS,
        "updated_route_order": [stop_payload(stop) for stop in ordered_stops(route)],
    }
