from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlmodel import Session
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from trailguard.domain.models import AuditLog, now_utc
from trailguard.infra.db import engine

logger = logging.getLogger(__name__)

WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
# checkpoint lookups are unauthenticated reads that still need a trail
AUDITED_READ_PATH_KEYWORDS = ("/validate/",)
SKIPPED_PATHS = {"/healthz", "/readyz"}
AUDIT_CONTEXT_STATE_KEY = "audit_context"


@dataclass
class AuditContext:
    action: str | None = None
    resource: str | None = None
    detail: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def explicit(self) -> bool:
        return self.action is not None or self.resource is not None or bool(self.detail)


def _context_for(request: Request) -> AuditContext:
    context = getattr(request.state, AUDIT_CONTEXT_STATE_KEY, None)
    if not isinstance(context, AuditContext):
        context = AuditContext()
        setattr(request.state, AUDIT_CONTEXT_STATE_KEY, context)
    return context


def set_audit_context(
    request: Request,
    *,
    action: str | None = None,
    resource: str | None = None,
    detail: dict[str, dict[str, Any]] | None = None,
) -> None:
    """Attach route-level facts to the audit record written for this request.

    ``detail`` is keyed by section (``who``, ``what``, ``result``...); each
    section is merged into what the middleware records.
    """
    context = _context_for(request)
    if action is not None:
        context.action = action
    if resource is not None:
        context.resource = resource
    for section, values in (detail or {}).items():
        context.detail.setdefault(section, {}).update(values)


def should_audit_request(method: str, path: str) -> bool:
    if method in WRITE_METHODS:
        return True
    return any(keyword in path for keyword in AUDITED_READ_PATH_KEYWORDS)


def _outcome(status_code: int) -> str:
    if status_code >= 500:
        return "error"
    if status_code in {401, 403, 404}:
        return "denied"
    if status_code >= 400:
        return "rejected"
    return "success"


def write_audit_log(
    *,
    actor_id: str | None,
    action: str,
    resource: str,
    method: str,
    status_code: int,
    detail: dict[str, Any] | None = None,
) -> None:
    with Session(engine) as session:
        session.add(
            AuditLog(
                actor_id=actor_id,
                action=action,
                resource=resource,
                method=method,
                status_code=status_code,
                detail=detail or {},
            )
        )
        session.commit()


def build_audit_detail(
    request: Request,
    response: Response,
    context: AuditContext,
    *,
    action: str,
    resource: str,
) -> dict[str, Any]:
    actor = getattr(request.state, "actor", None)
    route = request.scope.get("route")
    detail: dict[str, dict[str, Any]] = {
        "who": {
            "actor_id": getattr(actor, "user_id", None),
            "role": str(actor.role) if actor is not None else None,
        },
        "when": {"request_ts": now_utc().isoformat()},
        "where": {
            "path": request.url.path,
            "route": getattr(route, "path", request.url.path),
            "client_ip": request.client.host if request.client is not None else None,
        },
        "what": {"action": action, "resource": resource, "method": request.method},
        "result": {"status_code": response.status_code, "outcome": _outcome(response.status_code)},
    }
    for section, values in context.detail.items():
        detail.setdefault(section, {}).update(values)
    return detail


class AuditMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        path = request.url.path
        if path in SKIPPED_PATHS:
            return response
        context = _context_for(request)
        if not should_audit_request(request.method, path) and not context.explicit:
            return response

        action = context.action or f"{request.method}:{path}"
        resource = context.resource or path
        actor = getattr(request.state, "actor", None)
        try:
            write_audit_log(
                actor_id=getattr(actor, "user_id", None),
                action=action,
                resource=resource,
                method=request.method,
                status_code=response.status_code,
                detail=build_audit_detail(request, response, context, action=action, resource=resource),
            )
        except Exception:
            logger.exception("audit log write failed for %s %s", request.method, path)
        return response
