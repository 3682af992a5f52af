from __future__ import annotations

import logging
import traceback
import uuid

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mealroute.api import health, journey, routes, tracking
from mealroute.models import Base
from mealroute.utils.db import SessionLocal, engine
from mealroute.utils.errors import AppError, log_error
from mealroute.utils.settings import get_settings


settings = get_settings()
logging.basicConfig(
    level=settings.resolved_log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
LOGGER = logging.getLogger(__name__)

app = FastAPI(title="MealRoute Delivery Lifecycle API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup() -> None:
    Base.metadata.create_all(bind=engine)


def _error_body(*, error_code: str, message: str, details, correlation_id: str | None) -> dict:
    return jsonable_encoder(
        {
            "success": False,
            "error_code": error_code,
            "message": message,
            "details": details,
            "correlation_id": correlation_id,
        }
    )


@app.middleware("http")
async def structured_error_middleware(request: Request, call_next):
    correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
    request.state.correlation_id = correlation_id

    try:
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response
    except AppError as exc:
        LOGGER.info(
            "REQUEST_REJECTED path=%s error_code=%s status=%s correlation_id=%s",
            request.url.path,
            exc.error_code,
            exc.status_code,
            correlation_id,
        )
        _safe_log_error(stage=exc.stage, message=exc.message, route_id=exc.route_id, details=exc.details)
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(
                error_code=exc.error_code,
                message=exc.message,
                details=exc.details,
                correlation_id=correlation_id,
            ),
            headers={"X-Correlation-ID": correlation_id},
        )
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("REQUEST_FAILED path=%s correlation_id=%s", request.url.path, correlation_id)
        _safe_log_error(stage="API", message=str(exc), details={"traceback": traceback.format_exc()})
        return JSONResponse(
            status_code=500,
            content=_error_body(
                error_code="INTERNAL_ERROR",
                message="Unexpected server error",
                details={"type": type(exc).__name__},
                correlation_id=correlation_id,
            ),
            headers={"X-Correlation-ID": correlation_id},
        )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content=_error_body(
            error_code="VALIDATION_ERROR",
            message="Request body is invalid",
            details=exc.errors(),
            correlation_id=getattr(request.state, "correlation_id", None),
        ),
    )


app.include_router(health.router)
app.include_router(routes.router)
app.include_router(journey.router)
app.include_router(tracking.router)


def _safe_log_error(*, stage: str, message: str, route_id: int | None = None, details=None) -> None:
    db = SessionLocal()
    try:
        try:
            log_error(db, stage, message, route_id=route_id, details=details)
        except Exception:
            # Never allow best-effort error logging to mask/replace the original request failure.
            db.rollback()
    finally:
        db.close()
