from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta

import pytest
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from trailguard.domain.errors import (
    NotFoundError,
    PermissionDeniedError,
    PolicyError,
    PolicyReason,
    ValidationError,
)
from trailguard.domain.models import (
    CheckInCreate,
    EventRecord,
    Guide,
    GuideCreate,
    IncidentCreate,
    IncidentType,
    IncidentUpdate,
    PermitCreate,
    User,
)
from trailguard.domain.permissions import Actor, Role
from trailguard.domain.state_machine import IncidentStatus
from trailguard.services.guide_service import GuideService
from trailguard.services.permit_service import PermitService
from trailguard.services.safety_service import SafetyService, parse_incident_type


def _verified_guide(admin: Actor, make_user: Callable[..., User], guides: GuideService) -> Guide:
    user = make_user(Role.GUIDE)
    guide = guides.create(
        admin,
        GuideCreate(
            user_id=user.id,
            license_number=f"GL-{user.id[:8]}",
            phone_number="+977-980-000-0004",
            emergency_contact="Namche office",
        ),
    )
    return guides.verify(admin, guide.id)


def _incident(guide_id: str, incident_type: str = "sos", **overrides: object) -> IncidentCreate:
    data: dict[str, object] = {
        "incident_type": incident_type,
        "guide_id": guide_id,
        "latitude": 27.9881,
        "longitude": 86.9250,
        "location": "South Col",
        "description": "Client unable to descend",
    }
    data.update(overrides)
    return IncidentCreate.model_validate(data)


def test_parse_incident_type() -> None:
    assert parse_incident_type("medical") == IncidentType.MEDICAL
    with pytest.raises(ValidationError):
        parse_incident_type("avalanche")
    with pytest.raises(ValidationError):
        parse_incident_type("SOS")


def test_check_in_updates_guide_last_check_in(admin: Actor, clock, make_user: Callable[..., User]) -> None:
    guides = GuideService(clock=clock)
    service = SafetyService(clock=clock, guide_service=guides)
    guide = _verified_guide(admin, make_user, guides)
    guide_actor = Actor(user_id=guide.user_id, role=Role.GUIDE)

    check_in = service.create_check_in(
        guide_actor,
        CheckInCreate(guide_id=guide.id, latitude=27.80, longitude=86.71, location="Namche Bazaar"),
    )

    stored = guides.get(admin, guide.id)
    assert stored.last_check_in is not None
    assert stored.last_check_in.replace(tzinfo=None) == clock.now.replace(tzinfo=None)
    assert service.get_check_in(admin, check_in.id).location == "Namche Bazaar"

    clock.advance(hours=3)
    service.create_check_in(guide_actor, CheckInCreate(guide_id=guide.id, latitude=27.83, longitude=86.76))
    rows, total = service.list_check_ins(admin, guide.id)
    assert total == 2
    assert rows[0].check_in_time > rows[1].check_in_time


def test_check_in_validations(admin: Actor, clock, make_user: Callable[..., User]) -> None:
    guides = GuideService(clock=clock)
    permits = PermitService(clock=clock, guide_service=guides)
    service = SafetyService(clock=clock, guide_service=guides)
    guide = _verified_guide(admin, make_user, guides)
    other = _verified_guide(admin, make_user, guides)
    foreign_permit = permits.issue(
        admin,
        PermitCreate(
            guide_id=other.id,
            client_name="Ben",
            start_date=clock.now,
            end_date=clock.now + timedelta(days=4),
            route="Annapurna Circuit",
        ),
    )

    with pytest.raises(ValidationError):
        service.create_check_in(admin, CheckInCreate(guide_id=guide.id, latitude=91.0, longitude=0.0))
    with pytest.raises(ValidationError):
        service.create_check_in(admin, CheckInCreate(guide_id=guide.id, latitude=0.0, longitude=-181.0))
    with pytest.raises(NotFoundError):
        service.create_check_in(admin, CheckInCreate(guide_id="missing", latitude=0.0, longitude=0.0))
    with pytest.raises(NotFoundError):
        service.create_check_in(
            admin, CheckInCreate(guide_id=guide.id, permit_id="missing", latitude=0.0, longitude=0.0)
        )
    with pytest.raises(ValidationError):
        service.create_check_in(
            admin,
            CheckInCreate(guide_id=guide.id, permit_id=foreign_permit.id, latitude=0.0, longitude=0.0),
        )


def test_sos_report_and_resolution(
    admin: Actor,
    clock,
    make_user: Callable[..., User],
    test_engine: Engine,
) -> None:
    guides = GuideService(clock=clock)
    service = SafetyService(clock=clock, guide_service=guides)
    guide = _verified_guide(admin, make_user, guides)
    guide_actor = Actor(user_id=guide.user_id, role=Role.GUIDE)

    sos = service.report_incident(guide_actor, _incident(guide.id))
    assert sos.status == IncidentStatus.OPEN
    assert sos.incident_type == IncidentType.SOS
    service.report_incident(guide_actor, _incident(guide.id, "weather", description="Whiteout"))

    active = service.active_sos(admin, guide.id)
    assert [item.id for item in active] == [sos.id]

    with pytest.raises(PermissionDeniedError):
        service.update_incident(guide_actor, sos.id, IncidentUpdate(status=IncidentStatus.RESOLVED))

    clock.advance(hours=2)
    in_progress = service.update_incident(admin, sos.id, IncidentUpdate(status=IncidentStatus.IN_PROGRESS))
    assert in_progress.resolved_at is None
    assert [item.id for item in service.active_sos(admin, guide.id)] == [sos.id]

    resolved = service.update_incident(
        admin,
        sos.id,
        IncidentUpdate(status=IncidentStatus.RESOLVED, resolution_notes="Heli evacuation to Lukla"),
    )
    assert resolved.status == IncidentStatus.RESOLVED
    assert resolved.resolved_by == admin.user_id
    assert resolved.resolved_at is not None
    assert resolved.resolution_notes == "Heli evacuation to Lukla"
    assert service.active_sos(admin, guide.id) == []

    with Session(test_engine) as session:
        event_types = [row.event_type for row in session.exec(select(EventRecord)).all()]
    assert event_types.count("incident.sos") == 1
    assert event_types.count("incident.reported") == 2
    assert "incident.status_changed" in event_types


def test_incident_rejects_unknown_type(admin: Actor, clock, make_user: Callable[..., User]) -> None:
    guides = GuideService(clock=clock)
    service = SafetyService(clock=clock, guide_service=guides)
    guide = _verified_guide(admin, make_user, guides)

    with pytest.raises(ValidationError):
        service.report_incident(admin, _incident(guide.id, "landslide"))
    with pytest.raises(NotFoundError):
        service.report_incident(admin, _incident("missing"))


def test_incident_transitions_are_enforced(admin: Actor, clock, make_user: Callable[..., User]) -> None:
    guides = GuideService(clock=clock)
    service = SafetyService(clock=clock, guide_service=guides)
    guide = _verified_guide(admin, make_user, guides)
    incident = service.report_incident(admin, _incident(guide.id, "medical"))

    closed = service.update_incident(
        admin,
        incident.id,
        IncidentUpdate(status=IncidentStatus.CLOSED, resolved_by="ranger-7"),
    )
    assert closed.resolved_by == "ranger-7"

    for target in (IncidentStatus.OPEN, IncidentStatus.IN_PROGRESS, IncidentStatus.RESOLVED):
        with pytest.raises(PolicyError) as exc_info:
            service.update_incident(admin, incident.id, IncidentUpdate(status=target))
        assert exc_info.value.reason == PolicyReason.INVALID_TRANSITION

    noted = service.update_incident(admin, incident.id, IncidentUpdate(resolution_notes="Filed with park office"))
    assert noted.status == IncidentStatus.CLOSED
    assert noted.resolution_notes == "Filed with park office"


def test_incident_listing_filters(admin: Actor, clock, make_user: Callable[..., User]) -> None:
    guides = GuideService(clock=clock)
    service = SafetyService(clock=clock, guide_service=guides)
    first = _verified_guide(admin, make_user, guides)
    second = _verified_guide(admin, make_user, guides)
    opened = service.report_incident(admin, _incident(first.id, "other"))
    clock.advance(minutes=5)
    service.report_incident(admin, _incident(second.id, "check_in"))
    service.update_incident(admin, opened.id, IncidentUpdate(status=IncidentStatus.RESOLVED))

    rows, total = service.list_incidents(admin, guide_id=first.id)
    assert total == 1
    assert rows[0].id == opened.id

    rows, total = service.list_incidents(admin, status=IncidentStatus.OPEN)
    assert total == 1
    assert rows[0].guide_id == second.id

    assert service.get_incident(admin, opened.id).status == IncidentStatus.RESOLVED
    with pytest.raises(NotFoundError):
        service.get_incident(admin, "missing")
