from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from mealroute.models import Route
from mealroute.models.states import (
    EVENT_JOURNEY_ENDED,
    EVENT_JOURNEY_STARTED,
    EVENT_STOP_MARKED,
    ROUTE_COMPLETED,
    ROUTE_IN_PROGRESS,
    ROUTE_PLANNED,
    STOP_DELIVERED,
    STOP_PENDING,
    STOP_REACHED,
    STOP_TRANSITIONS,
)
from mealroute.services.locks import get_route_locks
from mealroute.services.route_store import (
    GeoPoint,
    StopRef,
    current_stop,
    get_route_or_404,
    is_terminal,
    load_routes_for_update,
    ordered_stops,
    record_event,
    route_payload,
    resolve_stop,
    stop_payload,
    to_naive_utc,
    utcnow,
)
from mealroute.utils.context import SYSTEM_CONTEXT, RequestContext
from mealroute.utils.db import atomic
from mealroute.utils.errors import (
    AlreadyTerminalError,
    IncompleteRouteError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from mealroute.utils.settings import get_settings

LOGGER = logging.getLogger(__name__)


def normalize_comments(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip()
    if not cleaned:
        return None
    max_chars = get_settings().stop_comment_max_chars
    if len(cleaned) > max_chars:
        raise ValidationError(
            message=f"comments must be at most {max_chars} characters",
            error_code="COMMENT_TOO_LONG",
            details={"length": len(cleaned), "max": max_chars},
        )
    return cleaned


def _ensure_driver(route: Route, driver_id: int | None) -> None:
    if driver_id is None or route.driver_id == driver_id:
        return
    raise ValidationError(
        message=f"Route {route.id} is not assigned to driver {driver_id}",
        error_code="DRIVER_MISMATCH",
        details={"route_id": route.id, "driver_id": driver_id, "assigned_driver_id": route.driver_id},
        route_id=route.id,
    )


def _state_details(route: Route, **extra: Any) -> dict[str, Any]:
    return {
        "route_id": route.id,
        "current_status": route.status,
        "started_at": route.started_at.isoformat() if route.started_at else None,
        "ended_at": route.ended_at.isoformat() if route.ended_at else None,
        **extra,
    }


def _find_planned_route_id(
    db: Session,
    *,
    driver_id: int,
    delivery_date: date | None,
    session: str | None,
) -> int:
    stmt = select(Route.id).where(Route.driver_id == driver_id, Route.status == ROUTE_PLANNED)
    if delivery_date is not None:
        stmt = stmt.where(Route.delivery_date == delivery_date)
    if session is not None:
        stmt = stmt.where(Route.session == session)
    candidates = list(db.execute(stmt.order_by(Route.id)).scalars().all())

    if not candidates:
        raise NotFoundError(
            message=f"No planned route found for driver {driver_id}",
            details={"driver_id": driver_id, "date": delivery_date, "session": session},
        )
    if len(candidates) > 1:
        raise ValidationError(
            message="Driver has more than one planned route; route_id is required",
            error_code="AMBIGUOUS_ROUTE",
            details={"driver_id": driver_id, "candidate_route_ids": candidates},
        )
    return candidates[0]


def start_journey(
    db: Session,
    *,
    driver_id: int,
    route_id: int | None = None,
    delivery_date: date | None = None,
    session: str | None = None,
    location: GeoPoint | None = None,
    ctx: RequestContext = SYSTEM_CONTEXT,
) -> dict[str, Any]:
    if route_id is None:
        route_id = _find_planned_route_id(db, driver_id=driver_id, delivery_date=delivery_date, session=session)

    with get_route_locks().hold(route_id), atomic(db):
        route = load_routes_for_update(db, [route_id])[route_id]
        _ensure_driver(route, driver_id)
        if route.status != ROUTE_PLANNED:
            raise InvalidStateError(
                message=f"Journey for route {route.id} cannot start from {route.status}",
                details=_state_details(route),
                route_id=route.id,
            )

        route.status = ROUTE_IN_PROGRESS
        route.started_at = utcnow()
        if location is not None:
            route.start_lat = location.lat
            route.start_lng = location.lng
        record_event(db, route, EVENT_JOURNEY_STARTED, actor_id=ctx.actor_id, location=location)

    LOGGER.info("JOURNEY_STARTED route_id=%s driver_id=%s actor=%s", route.id, driver_id, ctx.actor_id)
    pointer = current_stop(ordered_stops(route))
    return {
        "route_id": route.id,
        "driver_id": route.driver_id,
        "status": route.status,
        "started_at": route.started_at.isoformat(),
        "current_stop": stop_payload(pointer) if pointer is not None else None,
    }


def mark_stop(
    db: Session,
    *,
    route_id: int,
    stop_ref: StopRef,
    status: str = STOP_DELIVERED,
    completed_at: datetime | None = None,
    location: GeoPoint | None = None,
    comments: str | None = None,
    driver_id: int | None = None,
    ctx: RequestContext = SYSTEM_CONTEXT,
) -> dict[str, Any]:
    if status not in STOP_TRANSITIONS[STOP_PENDING]:
        raise ValidationError(
            message=f"Unsupported stop status {status}",
            details={"status": status, "allowed": sorted(STOP_TRANSITIONS[STOP_PENDING])},
            route_id=route_id,
        )
    cleaned_comments = normalize_comments(comments)

    with get_route_locks().hold(route_id), atomic(db):
        route = load_routes_for_update(db, [route_id])[route_id]
        _ensure_driver(route, driver_id)
        stop = resolve_stop(route, stop_ref)

        # Replays of an already-applied mark succeed without touching anything.
        idempotent = stop.status == status
        if not idempotent:
            if is_terminal(stop):
                raise AlreadyTerminalError(
                    message=f"Stop {stop.id} is already {stop.status}",
                    details={
                        "route_id": route.id,
                        "planned_stop_id": stop.id,
                        "current_status": stop.status,
                        "requested_status": status,
                    },
                    route_id=route.id,
                )
            if route.status != ROUTE_IN_PROGRESS:
                raise InvalidStateError(
                    message=f"Route {route.id} is not in progress",
                    details=_state_details(route),
                    route_id=route.id,
                )
            if status not in STOP_TRANSITIONS[stop.status]:
                raise InvalidStateError(
                    message=f"Stop {stop.id} cannot move from {stop.status} to {status}",
                    details={"planned_stop_id": stop.id, "current_status": stop.status, "requested_status": status},
                    route_id=route.id,
                )

            stamp = to_naive_utc(completed_at) or utcnow()
            if status == STOP_REACHED:
                stop.reached_at = stamp
            else:
                stop.completed_at = stamp
            stop.status = status
            if cleaned_comments is not None:
                stop.comments = cleaned_comments
            record_event(
                db,
                route,
                EVENT_STOP_MARKED,
                actor_id=ctx.actor_id,
                stop_id=stop.id,
                location=location,
                payload={"status": status, "stop_order": stop.planned_order, "delivery_id": stop.delivery_id},
            )

    if idempotent:
        LOGGER.info("STOP_MARK_REPLAYED route_id=%s stop_id=%s status=%s", route.id, stop.id, status)
    else:
        LOGGER.info("STOP_MARKED route_id=%s stop_id=%s status=%s", route.id, stop.id, status)

    stops = ordered_stops(route)
    pointer = current_stop(stops)
    return {
        "route_id": route.id,
        "route_status": route.status,
        "idempotent": idempotent,
        "stop": stop_payload(stop),
        "current_stop": stop_payload(pointer) if pointer is not None else None,
        "remaining_stops": sum(1 for item in stops if not is_terminal(item)),
    }


def end_journey(
    db: Session,
    *,
    route_id: int,
    driver_id: int | None = None,
    location: GeoPoint | None = None,
    ctx: RequestContext = SYSTEM_CONTEXT,
) -> dict[str, Any]:
    with get_route_locks().hold(route_id), atomic(db):
        route = load_routes_for_update(db, [route_id])[route_id]
        _ensure_driver(route, driver_id)
        if route.status != ROUTE_IN_PROGRESS:
            raise InvalidStateError(
                message=f"Journey for route {route.id} cannot end from {route.status}",
                details=_state_details(route),
                route_id=route.id,
            )

        unfinished = [stop for stop in ordered_stops(route) if not is_terminal(stop)]
        if unfinished:
            raise IncompleteRouteError(
                message=f"Route {route.id} still has {len(unfinished)} unfinished stop(s)",
                details={
                    "route_id": route.id,
                    "unfinished_stops": [
                        {
                            "planned_stop_id": stop.id,
                            "stop_order": stop.planned_order,
                            "delivery_id": stop.delivery_id,
                            "status": stop.status,
                        }
                        for stop in unfinished
                    ],
                },
                route_id=route.id,
            )

        route.status = ROUTE_COMPLETED
        route.ended_at = utcnow()
        if location is not None:
            route.end_lat = location.lat
            route.end_lng = location.lng
        record_event(db, route, EVENT_JOURNEY_ENDED, actor_id=ctx.actor_id, location=location)

    LOGGER.info("JOURNEY_ENDED route_id=%s driver_id=%s", route.id, route.driver_id)
    return {
        "route_id": route.id,
        "status": route.status,
        "started_at": route.started_at.isoformat() if route.started_at else None,
        "ended_at": route.ended_at.isoformat(),
    }


def get_route_status(db: Session, route_id: int) -> dict[str, Any]:
    return route_payload(get_route_or_404(db, route_id))


def get_route_order(db: Session, route_id: int) -> dict[str, Any]:
    route = get_route_or_404(db, route_id)
    stops = ordered_stops(route)
    pointer = current_stop(stops)
    return {
        "route_id": route.id,
        "status": route.status,
        "current_stop_order": pointer.planned_order if pointer is not None else None,
        "stops": [stop_payload(stop) for stop in stops],
    }


def get_journey_overview(db: Session, route_id: int) -> dict[str, Any]:
    """Journey status, stops the driver has already marked and the driver's finished sessions that day."""
    route = get_route_or_404(db, route_id)
    stops = ordered_stops(route)
    completed_routes = (
        db.execute(
            select(Route)
            .where(
                Route.driver_id == route.driver_id,
                Route.delivery_date == route.delivery_date,
                Route.status == ROUTE_COMPLETED,
            )
            .order_by(Route.ended_at)
        )
        .scalars()
        .all()
    )
    last_location = None
    if route.last_lat is not None and route.last_lng is not None:
        last_location = {
            "lat": route.last_lat,
            "lng": route.last_lng,
            "recorded_at": route.last_location_at.isoformat() if route.last_location_at else None,
        }
    return {
        "route_id": route.id,
        "driver_id": route.driver_id,
        "journey_status": route.status,
        "journey_started": route.started_at is not None,
        "journey_ended": route.ended_at is not None,
        "started_at": route.started_at.isoformat() if route.started_at else None,
        "ended_at": route.ended_at.isoformat() if route.ended_at else None,
        "marked_stops": [stop_payload(stop) for stop in stops if stop.status != STOP_PENDING],
        "total_stops": len(stops),
        "completed_sessions": [
            {
                "route_id": item.id,
                "session": item.session,
                "ended_at": item.ended_at.isoformat() if item.ended_at else None,
            }
            for item in completed_routes
        ],
        "last_location": last_location,
    }
