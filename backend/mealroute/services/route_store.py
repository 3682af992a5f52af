from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from mealroute.models import Route, RouteEvent, Stop
from mealroute.models.states import ROUTE_COMPLETED, STOP_REACHED, TERMINAL_STOP_STATUSES
from mealroute.utils.errors import NotFoundError, ValidationError


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float


@dataclass(frozen=True)
class StopRef:
    planned_stop_id: str | None = None
    stop_order: int | None = None
    delivery_id: str | None = None

    def describe(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


def utcnow() -> datetime:
    return datetime.utcnow()


def to_naive_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def get_route_or_404(db: Session, route_id: int) -> Route:
    route = db.execute(
        select(Route).where(Route.id == route_id).options(selectinload(Route.stops), selectinload(Route.driver))
    ).scalar_one_or_none()
    if route is None:
        raise NotFoundError(message=f"Route {route_id} not found", route_id=route_id)
    return route


def load_routes_for_update(db: Session, route_ids: Iterable[int]) -> dict[int, Route]:
    """Load and row-lock routes in ascending id order; every id must exist."""
    ordered = sorted({int(route_id) for route_id in route_ids})
    rows = (
        db.execute(
            select(Route)
            .where(Route.id.in_(ordered))
            .order_by(Route.id)
            .options(selectinload(Route.stops), selectinload(Route.driver))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        .scalars()
        .all()
    )
    routes = {route.id: route for route in rows}
    for route_id in ordered:
        if route_id not in routes:
            raise NotFoundError(message=f"Route {route_id} not found", route_id=route_id)
    return routes


def open_route_ids_for_driver(
    db: Session, driver_id: int, route: Route, *, exclude: Iterable[int] = ()
) -> list[int]:
    """Ids of the driver's unfinished routes sharing `route`'s date and session."""
    skip = {route.id, *exclude}
    rows = db.execute(
        select(Route.id).where(
            Route.driver_id == driver_id,
            Route.delivery_date == route.delivery_date,
            Route.session == route.session,
            Route.status != ROUTE_COMPLETED,
        )
    ).scalars()
    return sorted(route_id for route_id in rows if route_id not in skip)


def ordered_stops(route: Route) -> list[Stop]:
    return sorted(route.stops, key=lambda stop: stop.planned_order or 0)


def is_terminal(stop: Stop) -> bool:
    return stop.status in TERMINAL_STOP_STATUSES


def current_stop(stops: Sequence[Stop]) -> Stop | None:
    for stop in stops:
        if not is_terminal(stop):
            return stop
    return None


def resolve_stop(route: Route, ref: StopRef) -> Stop:
    stops = ordered_stops(route)
    stop: Stop | None = None

    if ref.planned_stop_id:
        stop = next((item for item in stops if item.id == ref.planned_stop_id), None)
        if stop is None:
            raise NotFoundError(
                message=f"Stop {ref.planned_stop_id} not found on route {route.id}",
                details=ref.describe(),
                route_id=route.id,
            )
        if ref.stop_order is not None and stop.planned_order != ref.stop_order:
            raise ValidationError(
                message="planned_stop_id and stop_order refer to different stops",
                details={**ref.describe(), "actual_stop_order": stop.planned_order},
                route_id=route.id,
            )
    elif ref.stop_order is not None:
        stop = next((item for item in stops if item.planned_order == ref.stop_order), None)
        if stop is None:
            raise NotFoundError(
                message=f"No stop at order {ref.stop_order} on route {route.id}",
                details=ref.describe(),
                route_id=route.id,
            )
    elif ref.delivery_id:
        matches = [item for item in stops if item.delivery_id == ref.delivery_id]
        if not matches:
            raise NotFoundError(
                message=f"Delivery {ref.delivery_id} is not on route {route.id}",
                details=ref.describe(),
                route_id=route.id,
            )
        if len(matches) > 1:
            raise ValidationError(
                message="delivery_id matches more than one stop; send planned_stop_id or stop_order",
                details={**ref.describe(), "candidates": [item.id for item in matches]},
                route_id=route.id,
            )
        stop = matches[0]
    else:
        raise ValidationError(message="A stop identifier is required", route_id=route.id)

    if ref.delivery_id and stop.delivery_id != ref.delivery_id:
        raise ValidationError(
            message="delivery_id does not match the identified stop",
            details={**ref.describe(), "actual_delivery_id": stop.delivery_id},
            route_id=route.id,
        )
    return stop


def apply_orders(db: Session, assignments: Sequence[tuple[Stop, Route, int]]) -> None:
    """Write (stop, route, planned_order) assignments without tripping the unique order constraint.

    Stops are first parked on distinct negative orders, then moved to their
    final slots, so no flush ever holds two stops on the same (route, order).
    """
    for idx, (stop, _route, _order) in enumerate(assignments, start=1):
        stop.planned_order = -idx
    db.flush()
    for stop, route, order in assignments:
        if stop.route is not route:
            stop.route = route
        stop.planned_order = order
    db.flush()


def sequence_assignments(route: Route, stops: Sequence[Stop]) -> list[tuple[Stop, Route, int]]:
    return [(stop, route, idx) for idx, stop in enumerate(stops, start=1)]


def record_event(
    db: Session,
    route: Route,
    event_type: str,
    *,
    actor_id: str | None = None,
    stop_id: str | None = None,
    location: GeoPoint | None = None,
    payload: dict[str, Any] | None = None,
    created_at: datetime | None = None,
) -> RouteEvent:
    event = RouteEvent(
        route_id=route.id,
        stop_id=stop_id,
        event_type=event_type,
        actor_id=actor_id,
        lat=location.lat if location else None,
        lng=location.lng if location else None,
        payload_json=json.dumps(payload, default=str) if payload else None,
        created_at=created_at or utcnow(),
    )
    db.add(event)
    # Late-arriving points are stored but never overwrite a newer position.
    if location is not None and (route.last_location_at is None or event.created_at >= route.last_location_at):
        route.last_lat = location.lat
        route.last_lng = location.lng
        route.last_location_at = event.created_at
    return event


def stop_payload(stop: Stop) -> dict[str, Any]:
    return {
        "planned_stop_id": stop.id,
        "delivery_id": stop.delivery_id,
        "stop_order": stop.planned_order,
        "address": stop.address,
        "lat": stop.lat,
        "lng": stop.lng,
        "status": stop.status,
        "is_terminal": is_terminal(stop),
        "reached": stop.status == STOP_REACHED or stop.reached_at is not None,
        "reached_at": _iso(stop.reached_at),
        "completed_at": _iso(stop.completed_at),
        "comments": stop.comments,
    }


def route_payload(route: Route) -> dict[str, Any]:
    stops = ordered_stops(route)
    pointer = current_stop(stops)
    return {
        "route_id": route.id,
        "plan_id": route.plan_id,
        "driver_id": route.driver_id,
        "driver_name": route.driver.name if route.driver is not None else None,
        "date": route.delivery_date.isoformat(),
        "session": route.session,
        "status": route.status,
        "started_at": _iso(route.started_at),
        "ended_at": _iso(route.ended_at),
        "current_stop": stop_payload(pointer) if pointer is not None else None,
        "current_stop_order": pointer.planned_order if pointer is not None else None,
        "stops": [stop_payload(stop) for stop in stops],
    }
