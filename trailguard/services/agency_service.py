from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, func, or_, select

from trailguard.domain.errors import ConflictError, NotFoundError, PolicyError, PolicyReason
from trailguard.domain.models import Agency, AgencyCreate, AgencyUpdate, as_utc, now_utc
from trailguard.domain.permissions import (
    CAP_AGENCY_READ,
    CAP_AGENCY_REVIEW,
    CAP_AGENCY_WRITE,
    Actor,
    ensure_capability,
)
from trailguard.domain.state_machine import CredentialStatus, can_credential_transition
from trailguard.infra.db import get_engine
from trailguard.infra.events import event_bus

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class AgencyService:
    def __init__(self, *, clock: Clock | None = None) -> None:
        self._clock = clock or now_utc

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_agency(self, session: Session, agency_id: str, *, for_update: bool = False) -> Agency:
        statement = select(Agency).where(Agency.id == agency_id)
        if for_update:
            statement = statement.with_for_update()
        agency = session.exec(statement).first()
        if agency is None:
            raise NotFoundError("agency not found")
        return agency

    def create(self, actor: Actor, payload: AgencyCreate) -> Agency:
        ensure_capability(actor, CAP_AGENCY_WRITE)
        with self._session() as session:
            duplicate = session.exec(
                select(Agency).where(
                    or_(
                        Agency.registration_number == payload.registration_number,
                        Agency.license_number == payload.license_number,
                    )
                )
            ).first()
            if duplicate is not None:
                if duplicate.registration_number == payload.registration_number:
                    raise ConflictError("agency with this registration number already exists")
                raise ConflictError("agency with this license number already exists")

            agency = Agency(
                name=payload.name,
                registration_number=payload.registration_number,
                license_number=payload.license_number,
                contact_email=payload.contact_email,
                contact_phone=payload.contact_phone,
                address=payload.address,
                license_expiry=as_utc(payload.license_expiry) if payload.license_expiry else None,
                status=CredentialStatus.PENDING,
                created_at=self._clock(),
                updated_at=self._clock(),
            )
            session.add(agency)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("agency create conflict") from exc
            session.refresh(agency)

        logger.info("agency %s registered as %s", agency.id, agency.registration_number)
        event_bus.publish_dict(
            "agency.created",
            {"agency_id": agency.id, "status": agency.status},
            actor_id=actor.user_id,
        )
        return agency

    def get(self, actor: Actor, agency_id: str) -> Agency:
        ensure_capability(actor, CAP_AGENCY_READ)
        with self._session() as session:
            return self._get_agency(session, agency_id)

    def list(
        self,
        actor: Actor,
        *,
        status: CredentialStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Agency], int]:
        ensure_capability(actor, CAP_AGENCY_READ)
        statement = select(Agency)
        count_statement = select(func.count()).select_from(Agency)
        if status is not None:
            statement = statement.where(Agency.status == status)
            count_statement = count_statement.where(Agency.status == status)
        with self._session() as session:
            total = session.exec(count_statement).one()
            rows = session.exec(
                statement.order_by(col(Agency.created_at).desc()).offset(offset).limit(limit)
            ).all()
            return list(rows), int(total)

    def update(self, actor: Actor, agency_id: str, payload: AgencyUpdate) -> Agency:
        ensure_capability(actor, CAP_AGENCY_WRITE)
        with self._session() as session:
            agency = self._get_agency(session, agency_id, for_update=True)
            for field_name, value in payload.model_dump(exclude_none=True).items():
                if isinstance(value, datetime):
                    value = as_utc(value)
                setattr(agency, field_name, value)
            agency.updated_at = self._clock()
            session.add(agency)
            session.commit()
            session.refresh(agency)
        return agency

    def _transition(self, actor: Actor, agency_id: str, target: CredentialStatus) -> Agency:
        ensure_capability(actor, CAP_AGENCY_REVIEW)
        with self._session() as session:
            agency = self._get_agency(session, agency_id, for_update=True)
            source = agency.status
            if source == target and target in {CredentialStatus.VERIFIED, CredentialStatus.REJECTED}:
                return agency
            if not can_credential_transition(source, target):
                raise PolicyError(
                    PolicyReason.INVALID_TRANSITION,
                    f"agency cannot move from {source} to {target}",
                )
            now = self._clock()
            agency.status = target
            if target == CredentialStatus.VERIFIED:
                agency.verified_at = now
                agency.verified_by = actor.user_id
            agency.status_changed_at = now
            agency.status_changed_by = actor.user_id
            agency.updated_at = now
            session.add(agency)
            session.commit()
            session.refresh(agency)

        logger.info("agency %s %s -> %s by %s", agency.id, source, target, actor.user_id)
        event_bus.publish_dict(
            f"agency.{target}",
            {"agency_id": agency.id, "from": source, "to": target},
            actor_id=actor.user_id,
        )
        return agency

    def verify(self, actor: Actor, agency_id: str) -> Agency:
        return self._transition(actor, agency_id, CredentialStatus.VERIFIED)

    def suspend(self, actor: Actor, agency_id: str) -> Agency:
        return self._transition(actor, agency_id, CredentialStatus.SUSPENDED)

    def reject(self, actor: Actor, agency_id: str) -> Agency:
        return self._transition(actor, agency_id, CredentialStatus.REJECTED)

    def _lapse_if_expired(self, session: Session, agency: Agency) -> bool:
        if agency.license_expiry is None:
            return True
        now = self._clock()
        expired = as_utc(agency.license_expiry) < now
        if expired and agency.status == CredentialStatus.VERIFIED:
            agency.status = CredentialStatus.SUSPENDED
            agency.status_changed_at = now
            agency.status_changed_by = None
            agency.updated_at = now
            session.add(agency)
            session.commit()
            logger.warning("agency %s suspended: license expired at %s", agency.id, agency.license_expiry)
            event_bus.publish_dict(
                "agency.suspended",
                {"agency_id": agency.id, "from": CredentialStatus.VERIFIED, "to": agency.status, "reason": "license_expired"},
            )
        return not expired

    def check_license_expiry(self, agency_id: str) -> bool:
        with self._session() as session:
            agency = self._get_agency(session, agency_id, for_update=True)
            return self._lapse_if_expired(session, agency)

    def ensure_verified(self, session: Session, agency_id: str) -> Agency:
        """Gate for attaching guides or users to an agency.

        A lapse is committed in a session of its own; the caller's session is
        only read from, so a rejected association leaves its pending edits
        uncommitted.
        """
        if not self.check_license_expiry(agency_id):
            raise PolicyError(PolicyReason.LICENSE_EXPIRED, "agency license has expired")
        agency = self._get_agency(session, agency_id)
        if agency.status != CredentialStatus.VERIFIED:
            raise PolicyError(PolicyReason.AGENCY_NOT_VERIFIED, "agency must be verified")
        return agency
