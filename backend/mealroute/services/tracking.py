from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Sequence
from urllib.parse import quote, urlencode

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from mealroute.models import Route, Stop
from mealroute.models.states import EVENT_LOCATION, ROUTE_COMPLETED, ROUTE_IN_PROGRESS
from mealroute.services.journey import normalize_comments
from mealroute.services.locks import get_route_locks
from mealroute.services.route_store import (
    GeoPoint,
    current_stop,
    is_terminal,
    load_routes_for_update,
    ordered_stops,
    record_event,
    stop_payload,
    to_naive_utc,
    utcnow,
)
from mealroute.utils.context import SYSTEM_CONTEXT, RequestContext
from mealroute.utils.db import atomic
from mealroute.utils.errors import InvalidStateError, NotFoundError, ValidationError

LOGGER = logging.getLogger(__name__)

GOOGLE_MAPS_DIR_URL = "https://www.google.com/maps/dir/"
# Maps links accept at most this many intermediate points.
MAX_MAP_WAYPOINTS = 9


def _active_route_id(db: Session, driver_id: int, route_id: int | None) -> int:
    if route_id is not None:
        return route_id
    candidates = list(
        db.execute(
            select(Route.id).where(Route.driver_id == driver_id, Route.status == ROUTE_IN_PROGRESS).order_by(Route.id)
        )
        .scalars()
        .all()
    )
    if not candidates:
        raise NotFoundError(message=f"Driver {driver_id} has no journey in progress", details={"driver_id": driver_id})
    if len(candidates) > 1:
        raise ValidationError(
            message="Driver has more than one journey in progress; route_id is required",
            error_code="AMBIGUOUS_ROUTE",
            details={"driver_id": driver_id, "candidate_route_ids": candidates},
        )
    return candidates[0]


def record_points(
    db: Session,
    *,
    driver_id: int,
    points: Sequence[tuple[GeoPoint, datetime | None]],
    route_id: int | None = None,
    ctx: RequestContext = SYSTEM_CONTEXT,
) -> dict[str, Any]:
    if not points:
        raise ValidationError(message="At least one tracking point is required")
    route_id = _active_route_id(db, driver_id, route_id)
    now = utcnow()
    stamped = sorted(((point, to_naive_utc(recorded_at) or now) for point, recorded_at in points), key=lambda item: item[1])

    with get_route_locks().hold(route_id), atomic(db):
        route = load_routes_for_update(db, [route_id])[route_id]
        if route.driver_id != driver_id:
            raise ValidationError(
                message=f"Route {route.id} is not assigned to driver {driver_id}",
                error_code="DRIVER_MISMATCH",
                details={"route_id": route.id, "driver_id": driver_id, "assigned_driver_id": route.driver_id},
                route_id=route.id,
            )
        if route.status != ROUTE_IN_PROGRESS:
            raise InvalidStateError(
                message=f"Route {route.id} is not in progress",
                details={"route_id": route.id, "current_status": route.status},
                route_id=route.id,
            )
        for point, recorded_at in stamped:
            record_event(db, route, EVENT_LOCATION, actor_id=ctx.actor_id, location=point, created_at=recorded_at)

    LOGGER.debug("TRACKING_POINTS route_id=%s driver_id=%s count=%s", route.id, driver_id, len(stamped))
    return {
        "route_id": route.id,
        "accepted": len(stamped),
        "last_location": {
            "lat": route.last_lat,
            "lng": route.last_lng,
            "recorded_at": route.last_location_at.isoformat() if route.last_location_at else None,
        },
    }


def latest_locations(db: Session) -> list[dict[str, Any]]:
    routes = (
        db.execute(
            select(Route)
            .where(Route.status == ROUTE_IN_PROGRESS, Route.last_lat.is_not(None), Route.last_lng.is_not(None))
            .options(selectinload(Route.driver))
            .order_by(Route.id)
        )
        .scalars()
        .all()
    )
    return [
        {
            "route_id": route.id,
            "driver_id": route.driver_id,
            "driver_name": route.driver.name if route.driver is not None else None,
            "date": route.delivery_date.isoformat(),
            "session": route.session,
            "lat": route.last_lat,
            "lng": route.last_lng,
            "recorded_at": route.last_location_at.isoformat() if route.last_location_at else None,
        }
        for route in routes
    ]


def update_delivery_comment(
    db: Session,
    *,
    delivery_id: str,
    comments: str | None,
    route_id: int | None = None,
    ctx: RequestContext = SYSTEM_CONTEXT,
) -> dict[str, Any]:
    cleaned = normalize_comments(comments)
    stmt = select(Stop.id, Stop.route_id).where(Stop.delivery_id == delivery_id, Stop.route_id.is_not(None))
    if route_id is not None:
        stmt = stmt.where(Stop.route_id == route_id)
    matches = db.execute(stmt.join(Route).where(Route.status != ROUTE_COMPLETED)).all()
    if not matches:
        raise NotFoundError(
            message=f"Delivery {delivery_id} is not on any open route",
            details={"delivery_id": delivery_id, "route_id": route_id},
        )
    if len(matches) > 1:
        raise ValidationError(
            message="Delivery appears on more than one open route; route_id is required",
            details={"delivery_id": delivery_id, "candidate_route_ids": sorted({row.route_id for row in matches})},
        )
    stop_id, target_route_id = matches[0]

    with get_route_locks().hold(target_route_id), atomic(db):
        route = load_routes_for_update(db, [target_route_id])[target_route_id]
        stop = next((item for item in route.stops if item.id == stop_id), None)
        if stop is None:
            raise NotFoundError(
                message=f"Delivery {delivery_id} moved off route {route.id}; retry",
                details={"delivery_id": delivery_id, "route_id": route.id},
                route_id=route.id,
            )
        stop.comments = cleaned

    LOGGER.info(
        "DELIVERY_COMMENT_UPDATED delivery_id=%s route_id=%s cleared=%s actor=%s",
        delivery_id,
        route.id,
        cleaned is None,
        ctx.actor_id,
    )
    return {"route_id": route.id, "stop": stop_payload(stop)}


def _maps_url(
    destination: tuple[float, float],
    *,
    origin: tuple[float, float] | None = None,
    waypoints: Sequence[tuple[float, float]] = (),
) -> str:
    params = {"api": "1"}
    if origin is not None:
        params["origin"] = f"{origin[0]},{origin[1]}"
    params["destination"] = f"{destination[0]},{destination[1]}"
    if waypoints:
        params["waypoints"] = "|".join(f"{lat},{lng}" for lat, lng in waypoints)
    params["travelmode"] = "driving"
    return f"{GOOGLE_MAPS_DIR_URL}?{urlencode(params, safe=',|', quote_via=quote)}"


def _session_routes(db: Session, delivery_date: date, session: str) -> list[Route]:
    return list(
        db.execute(
            select(Route)
            .where(Route.delivery_date == delivery_date, Route.session == session, Route.status != ROUTE_COMPLETED)
            .options(selectinload(Route.driver), selectinload(Route.stops))
            .order_by(Route.id)
        )
        .scalars()
        .all()
    )


def _driver_fields(route: Route) -> dict[str, Any]:
    return {
        "route_id": route.id,
        "driver_id": route.driver_id,
        "driver_name": route.driver.name if route.driver is not None else None,
        "route_status": route.status,
    }


def _located(stop: Stop) -> tuple[float, float] | None:
    if stop.lat is None or stop.lng is None:
        return None
    return stop.lat, stop.lng


def _route_origin(route: Route) -> tuple[float, float] | None:
    if route.last_lat is not None and route.last_lng is not None:
        return route.last_lat, route.last_lng
    if route.start_lat is not None and route.start_lng is not None:
        return route.start_lat, route.start_lng
    return None


def driver_next_stop_maps(db: Session, *, delivery_date: date, session: str) -> list[dict[str, Any]]:
    """One navigation link per open route, pointing at the driver's current stop."""
    drivers: list[dict[str, Any]] = []
    for route in _session_routes(db, delivery_date, session):
        pointer = current_stop(ordered_stops(route))
        target = _located(pointer) if pointer is not None else None
        drivers.append(
            {
                **_driver_fields(route),
                "next_stop": stop_payload(pointer) if pointer is not None else None,
                "map_url": _maps_url(target, origin=_route_origin(route)) if target is not None else None,
                "missing_geolocation": pointer is not None and target is None,
            }
        )
    return drivers


def driver_route_overview_maps(db: Session, *, delivery_date: date, session: str) -> list[dict[str, Any]]:
    """Links covering every stop still to visit, split to respect the waypoint limit of a maps link."""
    drivers: list[dict[str, Any]] = []
    for route in _session_routes(db, delivery_date, session):
        remaining = [stop for stop in ordered_stops(route) if not is_terminal(stop)]
        points = [point for point in (_located(stop) for stop in remaining) if point is not None]
        origin = _route_origin(route)
        urls: list[str] = []
        for start in range(0, len(points), MAX_MAP_WAYPOINTS + 1):
            chunk = points[start : start + MAX_MAP_WAYPOINTS + 1]
            urls.append(_maps_url(chunk[-1], origin=origin, waypoints=chunk[:-1]))
            origin = chunk[-1]
        drivers.append(
            {
                **_driver_fields(route),
                "remaining_stops": len(remaining),
                "map_urls": urls,
                "missing_geolocation": [stop.delivery_id for stop in remaining if _located(stop) is None],
            }
        )
    return drivers
