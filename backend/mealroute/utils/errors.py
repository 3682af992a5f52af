from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from mealroute.models import ErrorLog


@dataclass
class AppError(Exception):
    message: str
    error_code: str = "APP_ERROR"
    status_code: int = 400
    details: Any = None
    stage: str = "API"
    route_id: int | None = None

    def __str__(self) -> str:
        return self.message


@dataclass
class ValidationError(AppError):
    error_code: str = "VALIDATION_ERROR"
    status_code: int = 400


@dataclass
class NotFoundError(AppError):
    error_code: str = "NOT_FOUND"
    status_code: int = 404


@dataclass
class InvalidStateError(AppError):
    """Operation not permitted from the current state; `details` carries that state."""

    error_code: str = "INVALID_STATE"
    status_code: int = 409


@dataclass
class AlreadyTerminalError(InvalidStateError):
    error_code: str = "ALREADY_TERMINAL"
    status_code: int = 400


@dataclass
class TerminalStopError(InvalidStateError):
    error_code: str = "TERMINAL_STOP"
    status_code: int = 400


@dataclass
class IncompleteRouteError(InvalidStateError):
    error_code: str = "INCOMPLETE_ROUTE"
    status_code: int = 409


@dataclass
class CrossSessionError(InvalidStateError):
    error_code: str = "CROSS_SESSION"
    status_code: int = 409


@dataclass
class ExternalServiceError(AppError):
    error_code: str = "EXTERNAL_SERVICE_ERROR"
    status_code: int = 502


def log_error(
    db: Session,
    stage: str,
    message: str,
    route_id: int | None = None,
    details: Any = None,
) -> None:
    payload = {
        "message": message,
        "details": details,
        "timestamp": datetime.utcnow().isoformat(),
    }
    db.add(
        ErrorLog(
            route_id=route_id,
            stage=stage,
            payload_json=json.dumps(payload, default=str),
        )
    )
    db.commit()


def upstream_failure(service: str, exc: Exception) -> ExternalServiceError:
    """Wrap a provider exception; timeouts become 504, everything else 502."""
    timed_out = bool(getattr(exc, "timed_out", False))
    return ExternalServiceError(
        message=f"{service} request failed: {exc}",
        error_code="UPSTREAM_TIMEOUT" if timed_out else "EXTERNAL_SERVICE_ERROR",
        status_code=504 if timed_out else 502,
        details={
            "service": service,
            "upstream_code": getattr(exc, "code", None),
            "upstream_status": getattr(exc, "status_code", None),
            **(getattr(exc, "details", None) or {}),
        },
        stage="UPSTREAM",
    )
