from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, status

from trailguard.api.deps import CurrentActor, Pagination
from trailguard.api.errors import handle_service_error
from trailguard.domain.errors import ServiceError
from trailguard.domain.models import PermitCreate, PermitPage, PermitRead
from trailguard.domain.state_machine import PermitStatus
from trailguard.infra.audit import set_audit_context
from trailguard.services.permit_service import PermitService

router = APIRouter()
public_router = APIRouter()


def get_permit_service() -> PermitService:
    return PermitService()


Service = Annotated[PermitService, Depends(get_permit_service)]


@public_router.get("/validate/{permit_number}", response_model=PermitRead)
def validate_permit(permit_number: str, request: Request, service: Service) -> PermitRead:
    set_audit_context(request, action="permit.validate", resource=f"permits/{permit_number}")
    try:
        permit = service.validate(permit_number)
    except ServiceError as exc:
        set_audit_context(request, detail={"result": {"reason": str(getattr(exc, "reason", type(exc).__name__))}})
        handle_service_error(exc)
    return PermitRead.model_validate(permit)


@router.post("", response_model=PermitRead, status_code=status.HTTP_201_CREATED)
def issue_permit(payload: PermitCreate, actor: CurrentActor, service: Service) -> PermitRead:
    try:
        permit = service.issue(actor, payload)
    except ServiceError as exc:
        handle_service_error(exc)
    return PermitRead.model_validate(permit)


@router.get("", response_model=PermitPage)
def list_permits(
    actor: CurrentActor,
    service: Service,
    page: Pagination,
    guide_id: str | None = None,
    status_filter: Annotated[PermitStatus | None, Query(alias="status")] = None,
) -> PermitPage:
    limit, offset = page
    try:
        rows, total = service.list(actor, guide_id=guide_id, status=status_filter, limit=limit, offset=offset)
    except ServiceError as exc:
        handle_service_error(exc)
    return PermitPage(
        items=[PermitRead.model_validate(item) for item in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/by-number/{permit_number}", response_model=PermitRead)
def get_permit_by_number(permit_number: str, actor: CurrentActor, service: Service) -> PermitRead:
    try:
        permit = service.get_by_number(actor, permit_number)
    except ServiceError as exc:
        handle_service_error(exc)
    return PermitRead.model_validate(permit)


@router.get("/{permit_id}", response_model=PermitRead)
def get_permit(permit_id: str, actor: CurrentActor, service: Service) -> PermitRead:
    try:
        permit = service.get(actor, permit_id)
    except ServiceError as exc:
        handle_service_error(exc)
    return PermitRead.model_validate(permit)


@router.post("/{permit_id}/revoke", response_model=PermitRead)
def revoke_permit(permit_id: str, actor: CurrentActor, service: Service) -> PermitRead:
    try:
        permit = service.revoke(actor, permit_id)
    except ServiceError as exc:
        handle_service_error(exc)
    return PermitRead.model_validate(permit)
