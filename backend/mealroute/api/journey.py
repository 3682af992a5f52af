from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from mealroute.schemas.api import EndJourneyRequest, MarkStopRequest, StartJourneyRequest, TrafficCheckRequest
from mealroute.services.journey import end_journey, get_route_order, get_route_status, mark_stop, start_journey
from mealroute.services.traffic_monitor import check_traffic
from mealroute.utils.context import RequestContext, get_request_context
from mealroute.utils.db import get_db

router = APIRouter(prefix="/api/v1/journey", tags=["journey"])


@router.post("/start")
def start(
    payload: StartJourneyRequest,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    result = start_journey(
        db,
        driver_id=payload.driver_id,
        route_id=payload.route_id,
        delivery_date=payload.date,
        session=payload.session,
        location=payload.geo_point(),
        ctx=ctx,
    )
    return {"success": True, **result}


@router.post("/mark-stop")
def mark(
    payload: MarkStopRequest,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    result = mark_stop(
        db,
        route_id=payload.route_id,
        stop_ref=payload.stop_ref(),
        status=payload.status,
        completed_at=payload.completed_at,
        location=payload.geo_point(),
        comments=payload.comments,
        driver_id=payload.driver_id,
        ctx=ctx,
    )
    return {"success": True, **result}


@router.post("/end")
def end(
    payload: EndJourneyRequest,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    result = end_journey(
        db,
        route_id=payload.route_id,
        driver_id=payload.driver_id,
        location=payload.geo_point(),
        ctx=ctx,
    )
    return {"success": True, **result}


@router.get("/status/{route_id}")
def status(route_id: int, db: Session = Depends(get_db)) -> dict:
    return {"success": True, **get_route_status(db, route_id)}


@router.post("/check-traffic")
def traffic(
    payload: TrafficCheckRequest,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    result = check_traffic(
        db,
        route_id=payload.route_id,
        current_location=payload.geo_point(),
        check_all_segments=payload.check_all_segments,
        ctx=ctx,
    )
    return {"success": True, **result}


@router.get("/route-order/{route_id}")
def route_order(route_id: int, db: Session = Depends(get_db)) -> dict:
    return {"success": True, **get_route_order(db, route_id)}
