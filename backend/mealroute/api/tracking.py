from __future__ import annotations

import datetime as dt

from fastapi import APIRouter, Depends
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from mealroute.schemas.api import DeliveryCommentRequest, DriverMapsQuery, TrackingPointsRequest
from mealroute.services.tracking import (
    driver_next_stop_maps,
    driver_route_overview_maps,
    latest_locations,
    record_points,
    update_delivery_comment,
)
from mealroute.utils.context import RequestContext, get_request_context
from mealroute.utils.db import get_db

router = APIRouter(prefix="/api/v1", tags=["tracking"])


@router.post("/tracking/points")
def add_points(
    payload: TrackingPointsRequest,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    result = record_points(db, driver_id=payload.driver_id, route_id=payload.route_id, points=payload.samples(), ctx=ctx)
    return {"success": True, **result}


@router.get("/tracking/latest")
def latest(db: Session = Depends(get_db)) -> dict:
    locations = latest_locations(db)
    return {"success": True, "count": len(locations), "locations": locations}


@router.put("/deliveries/{delivery_id}/comments")
def update_comment(
    delivery_id: str,
    payload: DeliveryCommentRequest,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    result = update_delivery_comment(
        db,
        delivery_id=delivery_id,
        comments=payload.comments,
        route_id=payload.route_id,
        ctx=ctx,
    )
    return {"success": True, **result}


def driver_maps_query(date: dt.date, session: str) -> DriverMapsQuery:
    try:
        return DriverMapsQuery(date=date, session=session)
    except PydanticValidationError as exc:
        raise RequestValidationError(exc.errors()) from exc


@router.get("/drivers/next-stop-maps")
def next_stop_maps(query: DriverMapsQuery = Depends(driver_maps_query), db: Session = Depends(get_db)) -> dict:
    drivers = driver_next_stop_maps(db, delivery_date=query.date, session=query.session)
    return {"success": True, "date": query.date.isoformat(), "session": query.session, "drivers": drivers}


@router.get("/drivers/route-overview-maps")
def route_overview_maps(query: DriverMapsQuery = Depends(driver_maps_query), db: Session = Depends(get_db)) -> dict:
    drivers = driver_route_overview_maps(db, delivery_date=query.date, session=query.session)
    return {"success": True, "date": query.date.isoformat(), "session": query.session, "drivers": drivers}
