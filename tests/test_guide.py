from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta

import pytest
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from trailguard.domain.errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    PolicyError,
    PolicyReason,
    ValidationError,
)
from trailguard.domain.models import AgencyCreate, EventRecord, GuideCreate, GuideUpdate, User
from trailguard.domain.permissions import Actor, Role
from trailguard.domain.state_machine import CredentialStatus
from trailguard.services.agency_service import AgencyService
from trailguard.services.guide_service import GuideService


def _guide_payload(user_id: str, license_number: str = "GL-1001", **overrides: object) -> GuideCreate:
    data: dict[str, object] = {
        "user_id": user_id,
        "license_number": license_number,
        "phone_number": "+977-980-000-0001",
        "emergency_contact": "Base camp +977-980-000-0002",
    }
    data.update(overrides)
    return GuideCreate.model_validate(data)


def test_guide_create_forces_pending(admin: Actor, make_user: Callable[..., User]) -> None:
    user = make_user(Role.GUIDE)

    guide = GuideService().create(admin, _guide_payload(user.id))

    assert guide.status == CredentialStatus.PENDING
    assert guide.user_id == user.id
    assert guide.verified_at is None
    assert guide.last_check_in is None


def test_guide_create_validations(admin: Actor, make_user: Callable[..., User]) -> None:
    service = GuideService()
    agency_user = make_user(Role.AGENCY)
    guide_user = make_user(Role.GUIDE)
    other_guide_user = make_user(Role.GUIDE)

    with pytest.raises(NotFoundError):
        service.create(admin, _guide_payload("missing-user"))
    with pytest.raises(ValidationError):
        service.create(admin, _guide_payload(agency_user.id))

    service.create(admin, _guide_payload(guide_user.id, "GL-2001"))
    with pytest.raises(ConflictError):
        service.create(admin, _guide_payload(other_guide_user.id, "GL-2001"))
    with pytest.raises(ConflictError):
        service.create(admin, _guide_payload(guide_user.id, "GL-2002"))


def test_guide_create_requires_verified_agency(admin: Actor, make_user: Callable[..., User]) -> None:
    agencies = AgencyService()
    agency = agencies.create(
        admin,
        AgencyCreate(
            name="Khumbu Treks",
            registration_number="REG-K1",
            license_number="AG-K1",
            contact_email="ops@khumbu.example",
            contact_phone="+977-1-555-0110",
        ),
    )
    service = GuideService(agency_service=agencies)
    user = make_user(Role.GUIDE)

    with pytest.raises(PolicyError) as exc_info:
        service.create(admin, _guide_payload(user.id, agency_id=agency.id))
    assert exc_info.value.reason == PolicyReason.AGENCY_NOT_VERIFIED

    agencies.verify(admin, agency.id)
    guide = service.create(admin, _guide_payload(user.id, agency_id=agency.id))
    assert guide.agency_id == agency.id

    rows, total = service.list(admin, agency_id=agency.id)
    assert total == 1
    assert rows[0].id == guide.id


def test_guide_verify_is_idempotent(admin: Actor, clock, make_user: Callable[..., User], test_engine: Engine) -> None:
    service = GuideService(clock=clock)
    guide = service.create(admin, _guide_payload(make_user(Role.GUIDE).id))

    verified = service.verify(admin, guide.id)
    assert verified.status == CredentialStatus.VERIFIED
    assert verified.verified_by == admin.user_id
    stamped_at = verified.verified_at

    clock.advance(minutes=30)
    again = service.verify(admin, guide.id)
    assert again.status == CredentialStatus.VERIFIED
    assert again.verified_at == stamped_at

    with Session(test_engine) as session:
        verified_events = session.exec(select(EventRecord).where(EventRecord.event_type == "guide.verified")).all()
    assert len(verified_events) == 1


def test_guide_review_requires_admin(admin: Actor, make_user: Callable[..., User]) -> None:
    service = GuideService()
    guide_user = make_user(Role.GUIDE)
    guide = service.create(admin, _guide_payload(guide_user.id))
    self_actor = Actor(user_id=guide_user.id, role=Role.GUIDE)

    for operation in (service.verify, service.suspend, service.reject):
        with pytest.raises(PermissionDeniedError):
            operation(self_actor, guide.id)

    assert service.get(admin, guide.id).status == CredentialStatus.PENDING


def test_guide_suspend_and_reject_from_any_state(admin: Actor, make_user: Callable[..., User]) -> None:
    service = GuideService()
    guide = service.create(admin, _guide_payload(make_user(Role.GUIDE).id))

    assert service.suspend(admin, guide.id).status == CredentialStatus.SUSPENDED
    assert service.verify(admin, guide.id).status == CredentialStatus.VERIFIED
    rejected = service.reject(admin, guide.id)
    assert rejected.status == CredentialStatus.REJECTED
    assert rejected.status_changed_by == admin.user_id
    assert service.verify(admin, guide.id).status == CredentialStatus.VERIFIED


def test_license_expiry_suspends_verified_guide_lazily(
    admin: Actor,
    clock,
    make_user: Callable[..., User],
    test_engine: Engine,
) -> None:
    service = GuideService(clock=clock)
    guide = service.create(
        admin,
        _guide_payload(make_user(Role.GUIDE).id, license_expiry=clock.now + timedelta(days=10)),
    )
    service.verify(admin, guide.id)

    assert service.check_license_expiry(guide.id) is True
    assert service.get(admin, guide.id).status == CredentialStatus.VERIFIED

    clock.advance(days=11)
    # nothing changes until someone asks
    assert service.get(admin, guide.id).status == CredentialStatus.VERIFIED

    assert service.check_license_expiry(guide.id) is False
    lapsed = service.get(admin, guide.id)
    assert lapsed.status == CredentialStatus.SUSPENDED
    assert lapsed.status_changed_by is None

    with Session(test_engine) as session:
        suspended_events = session.exec(
            select(EventRecord).where(EventRecord.event_type == "guide.suspended")
        ).all()
    assert len(suspended_events) == 1
    assert suspended_events[0].payload["reason"] == "license_expired"


def test_license_expiry_without_date_is_valid(admin: Actor, make_user: Callable[..., User]) -> None:
    service = GuideService()
    guide = service.create(admin, _guide_payload(make_user(Role.GUIDE).id))

    assert service.check_license_expiry(guide.id) is True


def test_guide_update_and_lookup_by_user(admin: Actor, make_user: Callable[..., User]) -> None:
    service = GuideService()
    user = make_user(Role.GUIDE)
    guide = service.create(admin, _guide_payload(user.id))

    updated = service.update(admin, guide.id, GuideUpdate(phone_number="+977-980-111-2222"))
    assert updated.phone_number == "+977-980-111-2222"
    assert updated.emergency_contact == guide.emergency_contact
    assert updated.status == CredentialStatus.PENDING

    assert service.get_by_user(admin, user.id).id == guide.id
    with pytest.raises(NotFoundError):
        service.get_by_user(admin, "nobody")


def test_update_rejected_by_agency_gate_leaves_guide_unchanged(
    admin: Actor,
    clock,
    make_user: Callable[..., User],
) -> None:
    agencies = AgencyService(clock=clock)
    agency = agencies.create(
        admin,
        AgencyCreate(
            name="Annapurna Ascents",
            registration_number="REG-A9",
            license_number="AG-A9",
            contact_email="ops@annapurna.example",
            contact_phone="+977-61-555-0190",
            license_expiry=clock.now + timedelta(days=1),
        ),
    )
    agencies.verify(admin, agency.id)
    service = GuideService(clock=clock, agency_service=agencies)
    guide = service.create(admin, _guide_payload(make_user(Role.GUIDE).id, phone_number="old"))

    clock.advance(days=3)
    with pytest.raises(PolicyError) as exc_info:
        service.update(admin, guide.id, GuideUpdate(phone_number="NEW", agency_id=agency.id))
    assert exc_info.value.reason == PolicyReason.LICENSE_EXPIRED

    stored = service.get(admin, guide.id)
    assert stored.phone_number == "old"
    assert stored.agency_id is None
    assert agencies.get(admin, agency.id).status == CredentialStatus.SUSPENDED
