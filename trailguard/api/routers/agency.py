from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, status

from trailguard.api.deps import CurrentActor, Pagination
from trailguard.api.errors import handle_service_error
from trailguard.domain.errors import ServiceError
from trailguard.domain.models import AgencyCreate, AgencyPage, AgencyRead, AgencyUpdate
from trailguard.domain.state_machine import CredentialStatus
from trailguard.services.agency_service import AgencyService

router = APIRouter()


def get_agency_service() -> AgencyService:
    return AgencyService()


Service = Annotated[AgencyService, Depends(get_agency_service)]


@router.post("", response_model=AgencyRead, status_code=status.HTTP_201_CREATED)
def create_agency(payload: AgencyCreate, actor: CurrentActor, service: Service) -> AgencyRead:
    try:
        agency = service.create(actor, payload)
    except ServiceError as exc:
        handle_service_error(exc)
    return AgencyRead.model_validate(agency)


@router.get("", response_model=AgencyPage)
def list_agencies(
    actor: CurrentActor,
    service: Service,
    page: Pagination,
    status_filter: Annotated[CredentialStatus | None, Query(alias="status")] = None,
) -> AgencyPage:
    limit, offset = page
    try:
        rows, total = service.list(actor, status=status_filter, limit=limit, offset=offset)
    except ServiceError as exc:
        handle_service_error(exc)
    return AgencyPage(
        items=[AgencyRead.model_validate(item) for item in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{agency_id}", response_model=AgencyRead)
def get_agency(agency_id: str, actor: CurrentActor, service: Service) -> AgencyRead:
    try:
        agency = service.get(actor, agency_id)
    except ServiceError as exc:
        handle_service_error(exc)
    return AgencyRead.model_validate(agency)


@router.put("/{agency_id}", response_model=AgencyRead)
def update_agency(agency_id: str, payload: AgencyUpdate, actor: CurrentActor, service: Service) -> AgencyRead:
    try:
        agency = service.update(actor, agency_id, payload)
    except ServiceError as exc:
        handle_service_error(exc)
    return AgencyRead.model_validate(agency)


@router.post("/{agency_id}/verify", response_model=AgencyRead)
def verify_agency(agency_id: str, actor: CurrentActor, service: Service) -> AgencyRead:
    try:
        agency = service.verify(actor, agency_id)
    except ServiceError as exc:
        handle_service_error(exc)
    return AgencyRead.model_validate(agency)


@router.post("/{agency_id}/suspend", response_model=AgencyRead)
def suspend_agency(agency_id: str, actor: CurrentActor, service: Service) -> AgencyRead:
    try:
        agency = service.suspend(actor, agency_id)
    except ServiceError as exc:
        handle_service_error(exc)
    return AgencyRead.model_validate(agency)


@router.post("/{agency_id}/reject", response_model=AgencyRead)
def reject_agency(agency_id: str, actor: CurrentActor, service: Service) -> AgencyRead:
    try:
        agency = service.reject(actor, agency_id)
    except ServiceError as exc:
        handle_service_error(exc)
    return AgencyRead.model_validate(agency)
