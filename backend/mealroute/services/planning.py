from __future__ import annotations

import json
import logging
import threading
from datetime import date
from typing import Any, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from mealroute.models import Driver, Plan, Route, Stop
from mealroute.models.states import PLAN_PARTIAL, PLAN_PLANNED, ROUTE_COMPLETED
from mealroute.providers.planner import PlannerError, PlanResult, get_planner_client
from mealroute.services.route_store import route_payload
from mealroute.utils.context import SYSTEM_CONTEXT, RequestContext
from mealroute.utils.db import atomic
from mealroute.utils.errors import ExternalServiceError, ValidationError, upstream_failure

LOGGER = logging.getLogger(__name__)

# Serializes the busy-driver check with route creation.
_PLAN_LOCK = threading.Lock()


def _driver_warnings(db: Session, driver_ids: Sequence[int], delivery_date: date, session: str) -> tuple[list[Driver], list[str]]:
    drivers = {driver.id: driver for driver in db.execute(select(Driver).where(Driver.id.in_(driver_ids))).scalars()}
    warnings: list[str] = []
    for driver_id in driver_ids:
        driver = drivers.get(driver_id)
        if driver is None:
            warnings.append(f"Driver {driver_id} does not exist")
        elif not driver.active:
            warnings.append(f"Driver {driver.name} is not active")

    busy = db.execute(
        select(Route.driver_id, Route.id).where(
            Route.driver_id.in_(driver_ids),
            Route.delivery_date == delivery_date,
            Route.session == session,
            Route.status != ROUTE_COMPLETED,
        )
    ).all()
    for driver_id, route_id in busy:
        warnings.append(f"Driver {driver_id} already has route {route_id} for {delivery_date.isoformat()} {session}")
    return [drivers[driver_id] for driver_id in driver_ids if driver_id in drivers], warnings


def _check_plan_result(result: PlanResult, driver_ids: Sequence[int]) -> None:
    unknown = sorted({route.driver_id for route in result.routes} - set(driver_ids))
    seen: set[str] = set()
    duplicates: list[str] = []
    for planned in result.routes:
        for stop in planned.stops:
            if stop.delivery_id in seen:
                duplicates.append(stop.delivery_id)
            seen.add(stop.delivery_id)
    if unknown or duplicates:
        raise ExternalServiceError(
            message="Planner returned routes that do not match the request",
            details={"service": "planner", "unexpected_driver_ids": unknown, "duplicate_delivery_ids": duplicates},
            stage="UPSTREAM",
        )


def plan_routes(
    db: Session,
    *,
    delivery_date: date,
    session: str,
    driver_ids: Sequence[int],
    deliveries: Sequence[dict[str, Any]] | None = None,
    constraints: dict[str, Any] | None = None,
    ctx: RequestContext = SYSTEM_CONTEXT,
) -> dict[str, Any]:
    driver_ids = list(dict.fromkeys(int(item) for item in driver_ids))
    if not driver_ids:
        raise ValidationError(message="At least one driver is required")

    drivers, warnings = _driver_warnings(db, driver_ids, delivery_date, session)
    if warnings:
        raise ValidationError(
            message="Route planning rejected; check the driver list",
            details={"warnings": warnings},
        )

    try:
        result = get_planner_client().plan_routes(
            delivery_date=delivery_date.isoformat(),
            session=session,
            drivers=[{"driver_id": driver.id, "name": driver.name} for driver in drivers],
            deliveries=list(deliveries) if deliveries is not None else None,
            constraints=constraints or {},
        )
    except PlannerError as exc:
        raise upstream_failure("planner", exc) from exc

    planned_routes = [item for item in result.routes if item.stops]
    if not planned_routes:
        raise ValidationError(
            message="Planner produced no routes",
            error_code="NO_ROUTES",
            details={"warnings": result.warnings},
        )
    _check_plan_result(result, driver_ids)

    warnings = list(result.warnings)
    assigned = {item.driver_id for item in planned_routes}
    for driver in drivers:
        if driver.id not in assigned:
            warnings.append(f"Driver {driver.name} received no stops")

    with _PLAN_LOCK, atomic(db):
        _, busy = _driver_warnings(db, sorted(assigned), delivery_date, session)
        if busy:
            raise ValidationError(
                message="Route planning rejected; check the driver list",
                details={"warnings": busy},
            )
        plan = Plan(
            delivery_date=delivery_date,
            session=session,
            status=PLAN_PARTIAL if warnings else PLAN_PLANNED,
            warnings_json=json.dumps(warnings) if warnings else None,
        )
        db.add(plan)
        routes: list[Route] = []
        for planned in planned_routes:
            route = Route(plan=plan, driver_id=planned.driver_id, delivery_date=delivery_date, session=session)
            route.stops = [
                Stop(
                    delivery_id=stop.delivery_id,
                    planned_order=order,
                    address=stop.address,
                    lat=stop.lat,
                    lng=stop.lng,
                )
                for order, stop in enumerate(planned.stops, start=1)
            ]
            db.add(route)
            routes.append(route)
        db.flush()
        payloads = [route_payload(route) for route in routes]

    LOGGER.info(
        "ROUTES_PLANNED plan_id=%s date=%s session=%s routes=%s stops=%s warnings=%s actor=%s",
        plan.id,
        delivery_date.isoformat(),
        session,
        len(routes),
        sum(len(item["stops"]) for item in payloads),
        len(warnings),
        ctx.actor_id,
    )
    return {
        "plan_id": plan.id,
        "date": delivery_date.isoformat(),
        "session": session,
        "status": plan.status,
        "routes": payloads,
        "warnings": warnings,
    }
