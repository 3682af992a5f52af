from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from mealroute.schemas.api import MoveStopRequest, PlanRoutesRequest, ReassignDriverRequest, ReoptimizeRequest
from mealroute.services.journey import get_journey_overview
from mealroute.services.planning import plan_routes
from mealroute.services.reassignment import exchange_drivers, move_stop, reassign_driver
from mealroute.services.traffic_monitor import reoptimize_route
from mealroute.utils.context import RequestContext, get_request_context
from mealroute.utils.db import get_db

router = APIRouter(prefix="/api/v1/routes", tags=["routes"])


@router.post("/plan")
def plan(
    payload: PlanRoutesRequest,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    result = plan_routes(
        db,
        delivery_date=payload.date,
        session=payload.session,
        driver_ids=payload.drivers,
        deliveries=[item.to_planner() for item in payload.deliveries] if payload.deliveries is not None else None,
        constraints=payload.constraints,
        ctx=ctx,
    )
    return {"success": True, **result}


@router.post("/reassign-driver")
def reassign(
    payload: ReassignDriverRequest,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    if payload.exchange:
        result = exchange_drivers(db, route_id_1=payload.route_id_1, route_id_2=payload.route_id_2, ctx=ctx)
        return {"success": True, "exchange": True, **result}
    result = reassign_driver(
        db,
        route_id=payload.route_id,
        new_driver_id=payload.new_driver_id,
        new_driver_name=payload.new_driver_name,
        ctx=ctx,
    )
    return {"success": True, "exchange": False, **result}


@router.post("/move-stop")
def move(
    payload: MoveStopRequest,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    result = move_stop(
        db,
        from_route_id=payload.from_route_id,
        to_route_id=payload.to_route_id,
        stop_ref=payload.stop_ref(),
        insert_at_order=payload.insert_at_order,
        ctx=ctx,
    )
    return {"success": True, **result}


@router.post("/reoptimize")
def reoptimize(
    payload: ReoptimizeRequest,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    result = reoptimize_route(db, route_id=payload.route_id, current_location=payload.geo_point(), ctx=ctx)
    return {"success": True, **result}


@router.get("/{route_id}/status")
def journey_overview(route_id: int, db: Session = Depends(get_db)) -> dict:
    return {"success": True, **get_journey_overview(db, route_id)}
