from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, func, select

from trailguard.domain.errors import ConflictError, NotFoundError, PolicyError, PolicyReason, ValidationError
from trailguard.domain.models import Guide, GuideCreate, GuideUpdate, User, as_utc, now_utc
from trailguard.domain.permissions import (
    CAP_GUIDE_READ,
    CAP_GUIDE_REVIEW,
    CAP_GUIDE_WRITE,
    Actor,
    Role,
    ensure_capability,
)
from trailguard.domain.state_machine import CredentialStatus, can_credential_transition
from trailguard.infra.db import get_engine
from trailguard.infra.events import event_bus
from trailguard.services.agency_service import AgencyService

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class GuideService:
    def __init__(self, *, clock: Clock | None = None, agency_service: AgencyService | None = None) -> None:
        self._clock = clock or now_utc
        self._agencies = agency_service or AgencyService(clock=self._clock)

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_guide(self, session: Session, guide_id: str, *, for_update: bool = False) -> Guide:
        statement = select(Guide).where(Guide.id == guide_id)
        if for_update:
            statement = statement.with_for_update()
        guide = session.exec(statement).first()
        if guide is None:
            raise NotFoundError("guide not found")
        return guide

    def create(self, actor: Actor, payload: GuideCreate) -> Guide:
        ensure_capability(actor, CAP_GUIDE_WRITE)
        with self._session() as session:
            user = session.get(User, payload.user_id)
            if user is None:
                raise NotFoundError("user not found")
            if user.role != Role.GUIDE:
                raise ValidationError("guide profiles can only be attached to guide users")
            existing = session.exec(select(Guide).where(Guide.license_number == payload.license_number)).first()
            if existing is not None:
                raise ConflictError("guide with this license number already exists")
            existing = session.exec(select(Guide).where(Guide.user_id == payload.user_id)).first()
            if existing is not None:
                raise ConflictError("user already has a guide profile")
            if payload.agency_id is not None:
                self._agencies.ensure_verified(session, payload.agency_id)

            # status is never taken from the caller
            guide = Guide(
                user_id=payload.user_id,
                agency_id=payload.agency_id,
                license_number=payload.license_number,
                phone_number=payload.phone_number,
                emergency_contact=payload.emergency_contact,
                license_expiry=as_utc(payload.license_expiry) if payload.license_expiry else None,
                status=CredentialStatus.PENDING,
                created_at=self._clock(),
                updated_at=self._clock(),
            )
            session.add(guide)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("guide create conflict") from exc
            session.refresh(guide)

        logger.info("guide %s created for user %s", guide.id, guide.user_id)
        event_bus.publish_dict(
            "guide.created",
            {"guide_id": guide.id, "user_id": guide.user_id, "status": guide.status},
            actor_id=actor.user_id,
        )
        return guide

    def get(self, actor: Actor, guide_id: str) -> Guide:
        ensure_capability(actor, CAP_GUIDE_READ)
        with self._session() as session:
            return self._get_guide(session, guide_id)

    def get_by_user(self, actor: Actor, user_id: str) -> Guide:
        ensure_capability(actor, CAP_GUIDE_READ)
        with self._session() as session:
            guide = session.exec(select(Guide).where(Guide.user_id == user_id)).first()
            if guide is None:
                raise NotFoundError("guide not found")
            return guide

    def list(
        self,
        actor: Actor,
        *,
        status: CredentialStatus | None = None,
        agency_id: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Guide], int]:
        ensure_capability(actor, CAP_GUIDE_READ)
        statement = select(Guide)
        count_statement = select(func.count()).select_from(Guide)
        if status is not None:
            statement = statement.where(Guide.status == status)
            count_statement = count_statement.where(Guide.status == status)
        if agency_id is not None:
            statement = statement.where(Guide.agency_id == agency_id)
            count_statement = count_statement.where(Guide.agency_id == agency_id)
        with self._session() as session:
            total = session.exec(count_statement).one()
            rows = session.exec(
                statement.order_by(col(Guide.created_at).desc()).offset(offset).limit(limit)
            ).all()
            return list(rows), int(total)

    def update(self, actor: Actor, guide_id: str, payload: GuideUpdate) -> Guide:
        ensure_capability(actor, CAP_GUIDE_WRITE)
        with self._session() as session:
            guide = self._get_guide(session, guide_id, for_update=True)
            # agency gate runs before any field is touched
            if payload.agency_id is not None and payload.agency_id != guide.agency_id:
                self._agencies.ensure_verified(session, payload.agency_id)
                guide.agency_id = payload.agency_id
            if payload.phone_number is not None:
                guide.phone_number = payload.phone_number
            if payload.emergency_contact is not None:
                guide.emergency_contact = payload.emergency_contact
            if payload.license_expiry is not None:
                guide.license_expiry = as_utc(payload.license_expiry)
            guide.updated_at = self._clock()
            session.add(guide)
            session.commit()
            session.refresh(guide)
        return guide

    def _transition(
        self,
        actor: Actor,
        guide_id: str,
        target: CredentialStatus,
    ) -> Guide:
        ensure_capability(actor, CAP_GUIDE_REVIEW)
        with self._session() as session:
            guide = self._get_guide(session, guide_id, for_update=True)
            source = guide.status
            if source == target and target in {CredentialStatus.VERIFIED, CredentialStatus.REJECTED}:
                return guide
            if not can_credential_transition(source, target):
                raise PolicyError(
                    PolicyReason.INVALID_TRANSITION,
                    f"guide cannot move from {source} to {target}",
                )
            now = self._clock()
            guide.status = target
            if target == CredentialStatus.VERIFIED:
                guide.verified_at = now
                guide.verified_by = actor.user_id
            guide.status_changed_at = now
            guide.status_changed_by = actor.user_id
            guide.updated_at = now
            session.add(guide)
            session.commit()
            session.refresh(guide)

        logger.info("guide %s %s -> %s by %s", guide.id, source, target, actor.user_id)
        event_bus.publish_dict(
            f"guide.{target}",
            {"guide_id": guide.id, "from": source, "to": target},
            actor_id=actor.user_id,
        )
        return guide

    def verify(self, actor: Actor, guide_id: str) -> Guide:
        return self._transition(actor, guide_id, CredentialStatus.VERIFIED)

    def suspend(self, actor: Actor, guide_id: str) -> Guide:
        return self._transition(actor, guide_id, CredentialStatus.SUSPENDED)

    def reject(self, actor: Actor, guide_id: str) -> Guide:
        return self._transition(actor, guide_id, CredentialStatus.REJECTED)

    def check_license_expiry(self, guide_id: str) -> bool:
        """Report whether the guide's license is still valid.

        A verified guide whose license has lapsed is suspended in the same
        transaction. Expiry is only ever evaluated here, at the point of use.
        """
        with self._session() as session:
            guide = self._get_guide(session, guide_id, for_update=True)
            if guide.license_expiry is None:
                return True
            now = self._clock()
            expired = as_utc(guide.license_expiry) < now
            if expired and guide.status == CredentialStatus.VERIFIED:
                guide.status = CredentialStatus.SUSPENDED
                guide.status_changed_at = now
                guide.status_changed_by = None
                guide.updated_at = now
                session.add(guide)
                session.commit()
                logger.warning("guide %s suspended: license expired at %s", guide.id, guide.license_expiry)
                event_bus.publish_dict(
                    "guide.suspended",
                    {"guide_id": guide.id, "from": CredentialStatus.VERIFIED, "to": guide.status, "reason": "license_expired"},
                )
            return not expired

    def record_check_in(self, guide_id: str, at: datetime) -> Guide:
        with self._session() as session:
            guide = self._get_guide(session, guide_id, for_update=True)
            guide.last_check_in = at
            guide.updated_at = self._clock()
            session.add(guide)
            session.commit()
            session.refresh(guide)
            return guide
