from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request


@dataclass(frozen=True)
class RequestContext:
    """Caller identity for one request, handed to services explicitly.

    Authentication happens upstream; the gateway forwards the verified actor in
    `X-Actor-Id` / `X-Actor-Role`.
    """

    actor_id: str | None = None
    role: str | None = None
    correlation_id: str | None = None


SYSTEM_CONTEXT = RequestContext(actor_id="system", role="SYSTEM")


def get_request_context(request: Request) -> RequestContext:
    actor_id = (request.headers.get("X-Actor-Id") or "").strip() or None
    role = (request.headers.get("X-Actor-Role") or "").strip().upper() or None
    correlation_id = getattr(request.state, "correlation_id", None)
    return RequestContext(actor_id=actor_id, role=role, correlation_id=correlation_id)
