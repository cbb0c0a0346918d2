from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, status

from trailguard.api.deps import CurrentActor, Pagination
from trailguard.api.errors import handle_service_error
from trailguard.domain.errors import ServiceError
from trailguard.domain.models import (
    CheckInCreate,
    CheckInPage,
    CheckInRead,
    IncidentCreate,
    IncidentPage,
    IncidentRead,
    IncidentUpdate,
)
from trailguard.domain.state_machine import IncidentStatus
from trailguard.services.safety_service import SafetyService

router = APIRouter()


def get_safety_service() -> SafetyService:
    return SafetyService()


Service = Annotated[SafetyService, Depends(get_safety_service)]


@router.post("/check-ins", response_model=CheckInRead, status_code=status.HTTP_201_CREATED)
def create_check_in(payload: CheckInCreate, actor: CurrentActor, service: Service) -> CheckInRead:
    try:
        check_in = service.create_check_in(actor, payload)
    except ServiceError as exc:
        handle_service_error(exc)
    return CheckInRead.model_validate(check_in)


@router.get("/check-ins/{check_in_id}", response_model=CheckInRead)
def get_check_in(check_in_id: str, actor: CurrentActor, service: Service) -> CheckInRead:
    try:
        check_in = service.get_check_in(actor, check_in_id)
    except ServiceError as exc:
        handle_service_error(exc)
    return CheckInRead.model_validate(check_in)


@router.get("/guides/{guide_id}/check-ins", response_model=CheckInPage)
def list_check_ins(guide_id: str, actor: CurrentActor, service: Service, page: Pagination) -> CheckInPage:
    limit, offset = page
    try:
        rows, total = service.list_check_ins(actor, guide_id, limit=limit, offset=offset)
    except ServiceError as exc:
        handle_service_error(exc)
    return CheckInPage(
        items=[CheckInRead.model_validate(item) for item in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post("/incidents", response_model=IncidentRead, status_code=status.HTTP_201_CREATED)
def report_incident(payload: IncidentCreate, actor: CurrentActor, service: Service) -> IncidentRead:
    try:
        incident = service.report_incident(actor, payload)
    except ServiceError as exc:
        handle_service_error(exc)
    return IncidentRead.model_validate(incident)


@router.get("/incidents", response_model=IncidentPage)
def list_incidents(
    actor: CurrentActor,
    service: Service,
    page: Pagination,
    guide_id: str | None = None,
    status_filter: Annotated[IncidentStatus | None, Query(alias="status")] = None,
) -> IncidentPage:
    limit, offset = page
    try:
        rows, total = service.list_incidents(actor, status=status_filter, guide_id=guide_id, limit=limit, offset=offset)
    except ServiceError as exc:
        handle_service_error(exc)
    return IncidentPage(
        items=[IncidentRead.model_validate(item) for item in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/incidents/{incident_id}", response_model=IncidentRead)
def get_incident(incident_id: str, actor: CurrentActor, service: Service) -> IncidentRead:
    try:
        incident = service.get_incident(actor, incident_id)
    except ServiceError as exc:
        handle_service_error(exc)
    return IncidentRead.model_validate(incident)


@router.put("/incidents/{incident_id}", response_model=IncidentRead)
def update_incident(
    incident_id: str,
    payload: IncidentUpdate,
    actor: CurrentActor,
    service: Service,
) -> IncidentRead:
    try:
        incident = service.update_incident(actor, incident_id, payload)
    except ServiceError as exc:
        handle_service_error(exc)
    return IncidentRead.model_validate(incident)


@router.get("/guides/{guide_id}/sos", response_model=list[IncidentRead])
def active_sos(guide_id: str, actor: CurrentActor, service: Service) -> list[IncidentRead]:
    try:
        rows = service.active_sos(actor, guide_id)
    except ServiceError as exc:
        handle_service_error(exc)
    return [IncidentRead.model_validate(item) for item in rows]
