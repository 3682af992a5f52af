from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from mealroute.models import Driver, Route
from mealroute.models.states import (
    EVENT_DRIVER_REASSIGNED,
    EVENT_DRIVERS_EXCHANGED,
    EVENT_STOP_MOVED,
    ROUTE_COMPLETED,
    STOP_REACHED,
)
from mealroute.services.locks import get_route_locks
from mealroute.services.route_store import (
    StopRef,
    apply_orders,
    is_terminal,
    load_routes_for_update,
    open_route_ids_for_driver,
    ordered_stops,
    record_event,
    resolve_stop,
    route_payload,
    sequence_assignments,
)
from mealroute.utils.context import SYSTEM_CONTEXT, RequestContext
from mealroute.utils.db import atomic
from mealroute.utils.errors import (
    CrossSessionError,
    InvalidStateError,
    NotFoundError,
    TerminalStopError,
    ValidationError,
)

LOGGER = logging.getLogger(__name__)


def resolve_driver(db: Session, *, driver_id: int | None = None, driver_name: str | None = None) -> Driver:
    driver: Driver | None = None
    if driver_id is not None:
        driver = db.get(Driver, driver_id)
    elif driver_name:
        driver = db.execute(
            select(Driver).where(func.lower(Driver.name) == driver_name.strip().lower())
        ).scalar_one_or_none()
    else:
        raise ValidationError(message="new_driver_id or new_driver_name is required")

    if driver is None:
        raise NotFoundError(
            message="Driver not found",
            details={"driver_id": driver_id, "driver_name": driver_name},
        )
    if not driver.active:
        raise ValidationError(
            message=f"Driver {driver.name} is not active",
            error_code="DRIVER_INACTIVE",
            details={"driver_id": driver.id},
        )
    return driver


def _ensure_not_completed(route: Route, action: str) -> None:
    if route.status == ROUTE_COMPLETED:
        raise InvalidStateError(
            message=f"Cannot {action} on completed route {route.id}",
            details={"route_id": route.id, "current_status": route.status},
            route_id=route.id,
        )


def _ensure_driver_free(db: Session, driver: Driver, route: Route, *, exclude: tuple[int, ...] = ()) -> None:
    busy = open_route_ids_for_driver(db, driver.id, route, exclude=exclude)
    if busy:
        raise InvalidStateError(
            message=(
                f"Driver {driver.name} already has route {busy[0]} for "
                f"{route.delivery_date.isoformat()} {route.session}"
            ),
            error_code="DRIVER_BUSY",
            details={
                "driver_id": driver.id,
                "route_id": route.id,
                "open_route_ids": busy,
                "date": route.delivery_date.isoformat(),
                "session": route.session,
            },
            route_id=route.id,
        )


def reassign_driver(
    db: Session,
    *,
    route_id: int,
    new_driver_id: int | None = None,
    new_driver_name: str | None = None,
    ctx: RequestContext = SYSTEM_CONTEXT,
) -> dict[str, Any]:
    driver = resolve_driver(db, driver_id=new_driver_id, driver_name=new_driver_name)

    with get_route_locks().hold(route_id), atomic(db):
        route = load_routes_for_update(db, [route_id])[route_id]
        _ensure_not_completed(route, "reassign driver")
        previous_driver_id = route.driver_id
        changed = previous_driver_id != driver.id
        if changed:
            _ensure_driver_free(db, driver, route)
            route.driver = driver
            record_event(
                db,
                route,
                EVENT_DRIVER_REASSIGNED,
                actor_id=ctx.actor_id,
                payload={"from_driver_id": previous_driver_id, "to_driver_id": driver.id},
            )

    LOGGER.info(
        "DRIVER_REASSIGNED route_id=%s from_driver=%s to_driver=%s changed=%s",
        route.id,
        previous_driver_id,
        driver.id,
        changed,
    )
    return {"changed": changed, "route": route_payload(route)}


def exchange_drivers(
    db: Session,
    *,
    route_id_1: int,
    route_id_2: int,
    ctx: RequestContext = SYSTEM_CONTEXT,
) -> dict[str, Any]:
    if route_id_1 == route_id_2:
        raise ValidationError(
            message="Driver exchange needs two different routes",
            details={"route_id_1": route_id_1, "route_id_2": route_id_2},
        )

    with get_route_locks().hold(route_id_1, route_id_2), atomic(db):
        routes = load_routes_for_update(db, [route_id_1, route_id_2])
        first, second = routes[route_id_1], routes[route_id_2]
        # Both checks run before either route is touched.
        _ensure_not_completed(first, "exchange drivers")
        _ensure_not_completed(second, "exchange drivers")
        _ensure_driver_free(db, second.driver, first, exclude=(second.id,))
        _ensure_driver_free(db, first.driver, second, exclude=(first.id,))

        first_driver, second_driver = first.driver, second.driver
        first.driver, second.driver = second_driver, first_driver
        for route, other in ((first, second), (second, first)):
            record_event(
                db,
                route,
                EVENT_DRIVERS_EXCHANGED,
                actor_id=ctx.actor_id,
                payload={"with_route_id": other.id, "driver_id": route.driver.id},
            )

    LOGGER.info(
        "DRIVERS_EXCHANGED route_1=%s route_2=%s drivers=%s<->%s",
        first.id,
        second.id,
        first_driver.id,
        second_driver.id,
    )
    return {"routes": [route_payload(first), route_payload(second)]}


def _validate_insert_position(destination: Route, remaining: list, insert_at_order: int | None) -> int:
    slots = len(remaining) + 1
    if insert_at_order is None:
        return slots
    if insert_at_order < 1 or insert_at_order > slots:
        raise ValidationError(
            message=f"insert_at_order must be between 1 and {slots}",
            details={"route_id": destination.id, "insert_at_order": insert_at_order, "max": slots},
            route_id=destination.id,
        )
    # Stops the driver already reached or finished keep their position.
    fixed_orders = [idx for idx, stop in enumerate(remaining, start=1) if is_terminal(stop) or stop.status == STOP_REACHED]
    if fixed_orders and insert_at_order <= max(fixed_orders):
        raise ValidationError(
            message="Cannot insert a stop ahead of stops that were already reached or completed",
            details={
                "route_id": destination.id,
                "insert_at_order": insert_at_order,
                "min_allowed": max(fixed_orders) + 1,
            },
            route_id=destination.id,
        )
    return insert_at_order


def move_stop(
    db: Session,
    *,
    from_route_id: int,
    to_route_id: int,
    stop_ref: StopRef,
    insert_at_order: int | None = None,
    ctx: RequestContext = SYSTEM_CONTEXT,
) -> dict[str, Any]:
    with get_route_locks().hold(from_route_id, to_route_id), atomic(db):
        routes = load_routes_for_update(db, [from_route_id, to_route_id])
        source, destination = routes[from_route_id], routes[to_route_id]
        stop = resolve_stop(source, stop_ref)

        if is_terminal(stop):
            raise TerminalStopError(
                message=f"Stop {stop.id} is already {stop.status} and cannot be moved",
                details={"planned_stop_id": stop.id, "current_status": stop.status},
                route_id=source.id,
            )
        if stop.status == STOP_REACHED:
            raise InvalidStateError(
                message=f"Stop {stop.id} was already reached and cannot be moved",
                details={"planned_stop_id": stop.id, "current_status": stop.status},
                route_id=source.id,
            )
        _ensure_not_completed(destination, "move a stop")
        if (source.delivery_date, source.session) != (destination.delivery_date, destination.session):
            raise CrossSessionError(
                message="Stops can only move between routes of the same date and session",
                details={
                    "from": {"route_id": source.id, "date": source.delivery_date, "session": source.session},
                    "to": {"route_id": destination.id, "date": destination.delivery_date, "session": destination.session},
                },
                route_id=source.id,
            )

        source_sequence = [item for item in ordered_stops(source) if item is not stop]
        if destination is source:
            target_sequence = source_sequence
        else:
            target_sequence = ordered_stops(destination)
        position = _validate_insert_position(destination, target_sequence, insert_at_order)
        previous_order = stop.planned_order
        target_sequence = [*target_sequence[: position - 1], stop, *target_sequence[position - 1 :]]

        assignments = sequence_assignments(destination, target_sequence)
        if destination is not source:
            assignments = sequence_assignments(source, source_sequence) + assignments
        apply_orders(db, assignments)

        move_details = {
            "planned_stop_id": stop.id,
            "delivery_id": stop.delivery_id,
            "from_route_id": source.id,
            "from_order": previous_order,
            "to_route_id": destination.id,
            "to_order": position,
        }
        record_event(db, source, EVENT_STOP_MOVED, actor_id=ctx.actor_id, stop_id=stop.id, payload=move_details)
        if destination is not source:
            record_event(db, destination, EVENT_STOP_MOVED, actor_id=ctx.actor_id, stop_id=stop.id, payload=move_details)

    LOGGER.info(
        "STOP_MOVED stop_id=%s from_route=%s from_order=%s to_route=%s to_order=%s",
        stop.id,
        source.id,
        previous_order,
        destination.id,
        position,
    )
    routes_out = [route_payload(source)]
    if destination is not source:
        routes_out.append(route_payload(destination))
    return {"moved_stop": move_details, "routes": routes_out}
