from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, status

from trailguard.api.deps import CurrentActor, Pagination
from trailguard.api.errors import handle_service_error
from trailguard.domain.errors import ServiceError
from trailguard.domain.models import GuideCreate, GuidePage, GuideRead, GuideUpdate
from trailguard.domain.state_machine import CredentialStatus
from trailguard.services.guide_service import GuideService

router = APIRouter()


def get_guide_service() -> GuideService:
    return GuideService()


Service = Annotated[GuideService, Depends(get_guide_service)]


@router.post("", response_model=GuideRead, status_code=status.HTTP_201_CREATED)
def create_guide(payload: GuideCreate, actor: CurrentActor, service: Service) -> GuideRead:
    try:
        guide = service.create(actor, payload)
    except ServiceError as exc:
        handle_service_error(exc)
    return GuideRead.model_validate(guide)


@router.get("", response_model=GuidePage)
def list_guides(
    actor: CurrentActor,
    service: Service,
    page: Pagination,
    status_filter: Annotated[CredentialStatus | None, Query(alias="status")] = None,
    agency_id: str | None = None,
) -> GuidePage:
    limit, offset = page
    try:
        rows, total = service.list(actor, status=status_filter, agency_id=agency_id, limit=limit, offset=offset)
    except ServiceError as exc:
        handle_service_error(exc)
    return GuidePage(
        items=[GuideRead.model_validate(item) for item in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/by-user/{user_id}", response_model=GuideRead)
def get_guide_by_user(user_id: str, actor: CurrentActor, service: Service) -> GuideRead:
    try:
        guide = service.get_by_user(actor, user_id)
    except ServiceError as exc:
        handle_service_error(exc)
    return GuideRead.model_validate(guide)


@router.get("/{guide_id}", response_model=GuideRead)
def get_guide(guide_id: str, actor: CurrentActor, service: Service) -> GuideRead:
    try:
        guide = service.get(actor, guide_id)
    except ServiceError as exc:
        handle_service_error(exc)
    return GuideRead.model_validate(guide)


@router.put("/{guide_id}", response_model=GuideRead)
def update_guide(guide_id: str, payload: GuideUpdate, actor: CurrentActor, service: Service) -> GuideRead:
    try:
        guide = service.update(actor, guide_id, payload)
    except ServiceError as exc:
        handle_service_error(exc)
    return GuideRead.model_validate(guide)


@router.post("/{guide_id}/verify", response_model=GuideRead)
def verify_guide(guide_id: str, actor: CurrentActor, service: Service) -> GuideRead:
    try:
        guide = service.verify(actor, guide_id)
    except ServiceError as exc:
        handle_service_error(exc)
    return GuideRead.model_validate(guide)


@router.post("/{guide_id}/suspend", response_model=GuideRead)
def suspend_guide(guide_id: str, actor: CurrentActor, service: Service) -> GuideRead:
    try:
        guide = service.suspend(actor, guide_id)
    except ServiceError as exc:
        handle_service_error(exc)
    return GuideRead.model_validate(guide)


@router.post("/{guide_id}/reject", response_model=GuideRead)
def reject_guide(guide_id: str, actor: CurrentActor, service: Service) -> GuideRead:
    try:
        guide = service.reject(actor, guide_id)
    except ServiceError as exc:
        handle_service_error(exc)
    return GuideRead.model_validate(guide)
