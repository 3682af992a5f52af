from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from mealroute.providers.planner import PlannerError, get_planner_client
from mealroute.utils.db import engine
from mealroute.utils.settings import get_settings

router = APIRouter(tags=["health"])


def _check_database_ready() -> dict[str, Any]:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return {"status": "ready"}
    except Exception as exc:  # noqa: BLE001
        return {"status": "unready", "detail": str(exc)}


def _check_planner_ready() -> dict[str, Any]:
    client = get_planner_client()
    if client.mock_mode:
        return {"status": "skipped", "detail": "planner running in mock mode"}
    try:
        client.health()
    except PlannerError as exc:
        return {"status": "unready", "detail": str(exc), "code": exc.code}
    return {"status": "ready"}


def _check_traffic_ready() -> dict[str, Any]:
    settings = get_settings()
    if not settings.feature_google_traffic:
        return {"status": "skipped", "detail": "live traffic disabled; using free-flow estimates"}
    if not settings.resolved_google_routes_api_key:
        return {"status": "unready", "detail": "Google Routes API key is not configured"}
    return {"status": "ready", "routing_preference": settings.resolved_google_routing_preference}


def _build_readiness_report() -> dict[str, Any]:
    checks = {
        "database": _check_database_ready(),
        "planner": _check_planner_ready(),
        "traffic": _check_traffic_ready(),
    }
    ready = all(check["status"] in {"ready", "skipped"} for check in checks.values())
    return {"status": "ok" if ready else "degraded", "ready": ready, "checks": checks}


@router.get("/api/v1/health")
def health() -> dict[str, Any]:
    settings = get_settings()
    return {
        "success": True,
        "status": "ok",
        "env": settings.app_env,
        "feature_google_traffic": bool(settings.feature_google_traffic),
        "planner_mock_mode": get_planner_client().mock_mode,
        "traffic_reoptimize_threshold": settings.traffic_reoptimize_threshold,
    }


@router.get("/health/live")
def health_live() -> dict[str, Any]:
    settings = get_settings()
    return {"status": "ok", "env": settings.app_env}


@router.get("/health/ready")
def health_ready() -> JSONResponse:
    report = _build_readiness_report()
    status_code = 200 if report["ready"] else 503
    return JSONResponse(status_code=status_code, content=report)
