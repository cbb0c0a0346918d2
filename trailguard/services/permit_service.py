from __future__ import annotations

import base64
import logging
from collections.abc import Callable
from datetime import datetime
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, func, select

from trailguard.domain.errors import ConflictError, NotFoundError, PolicyError, PolicyReason, ValidationError
from trailguard.domain.models import Guide, Permit, PermitCreate, as_utc, now_utc
from trailguard.domain.permissions import (
    CAP_PERMIT_ISSUE,
    CAP_PERMIT_READ,
    CAP_PERMIT_REVOKE,
    Actor,
    ensure_capability,
)
from trailguard.domain.state_machine import CredentialStatus, PermitStatus, can_permit_transition
from trailguard.infra.db import get_engine
from trailguard.infra.events import event_bus
from trailguard.services.guide_service import GuideService

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

PERMIT_NUMBER_PREFIX = "TG-"
PERMIT_NUMBER_ATTEMPTS = 5
VALIDATION_TOKEN_NAMESPACE = "trailguard:permit:"


def generate_permit_number() -> str:
    return f"{PERMIT_NUMBER_PREFIX}{uuid4().hex[:8].upper()}"


def derive_validation_token(permit_number: str) -> str:
    # Scannable and re-derivable; not a secret and never used for access control.
    raw = f"{VALIDATION_TOKEN_NAMESPACE}{permit_number}".encode()
    return base64.b64encode(raw).decode()


class PermitService:
    def __init__(
        self,
        *,
        clock: Clock | None = None,
        guide_service: GuideService | None = None,
        number_factory: Callable[[], str] | None = None,
    ) -> None:
        self._clock = clock or now_utc
        self._guides = guide_service or GuideService(clock=self._clock)
        self._number_factory = number_factory or generate_permit_number

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_permit(self, session: Session, permit_id: str, *, for_update: bool = False) -> Permit:
        statement = select(Permit).where(Permit.id == permit_id)
        if for_update:
            statement = statement.with_for_update()
        permit = session.exec(statement).first()
        if permit is None:
            raise NotFoundError("permit not found")
        return permit

    def _ensure_guide_can_issue(self, guide_id: str) -> None:
        with self._session() as session:
            guide = session.get(Guide, guide_id)
            if guide is None:
                raise NotFoundError("guide not found")
        if not self._guides.check_license_expiry(guide_id):
            raise PolicyError(PolicyReason.LICENSE_EXPIRED, "guide license has expired")
        with self._session() as session:
            guide = session.get(Guide, guide_id)
            if guide is None or guide.status != CredentialStatus.VERIFIED:
                raise PolicyError(
                    PolicyReason.GUIDE_NOT_VERIFIED,
                    "guide must be verified to issue permits",
                )

    def issue(self, actor: Actor, payload: PermitCreate) -> Permit:
        ensure_capability(actor, CAP_PERMIT_ISSUE)
        start_date = as_utc(payload.start_date)
        end_date = as_utc(payload.end_date)
        if start_date >= end_date:
            raise ValidationError("start_date must be before end_date")
        self._ensure_guide_can_issue(payload.guide_id)

        for attempt in range(1, PERMIT_NUMBER_ATTEMPTS + 1):
            permit_number = self._number_factory()
            permit = Permit(
                permit_number=permit_number,
                guide_id=payload.guide_id,
                client_id=payload.client_id,
                client_name=payload.client_name,
                client_email=payload.client_email,
                client_phone=payload.client_phone,
                start_date=start_date,
                end_date=end_date,
                route=payload.route,
                status=PermitStatus.ACTIVE,
                validation_token=derive_validation_token(permit_number),
                issued_by=actor.user_id,
                issued_at=self._clock(),
                updated_at=self._clock(),
            )
            with self._session() as session:
                session.add(permit)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    logger.info("permit number %s collided (attempt %d)", permit_number, attempt)
                    continue
                session.refresh(permit)
            break
        else:
            raise ConflictError("could not allocate a unique permit number")

        logger.info("permit %s issued to guide %s by %s", permit.permit_number, permit.guide_id, actor.user_id)
        event_bus.publish_dict(
            "permit.issued",
            {"permit_id": permit.id, "permit_number": permit.permit_number, "guide_id": permit.guide_id},
            actor_id=actor.user_id,
        )
        return permit

    def validate(self, permit_number: str) -> Permit:
        """Checkpoint validation; safe to expose without authentication.

        An active permit read after its end date is flipped to expired as a
        side effect of this call. Nothing else ever expires a permit.
        """
        with self._session() as session:
            permit = session.exec(
                select(Permit).where(Permit.permit_number == permit_number).with_for_update()
            ).first()
            if permit is None:
                raise NotFoundError("permit not found")
            if permit.status != PermitStatus.ACTIVE:
                raise PolicyError(PolicyReason.STATUS_NOT_ACTIVE, f"permit status is {permit.status}")
            now = self._clock()
            if now < as_utc(permit.start_date):
                raise PolicyError(PolicyReason.NOT_STARTED, "permit has not yet started")
            if now > as_utc(permit.end_date):
                permit.status = PermitStatus.EXPIRED
                permit.updated_at = now
                session.add(permit)
                session.commit()
                logger.warning("permit %s expired on validation", permit.permit_number)
                event_bus.publish_dict(
                    "permit.expired",
                    {"permit_id": permit.id, "permit_number": permit.permit_number},
                )
                raise PolicyError(PolicyReason.EXPIRED, "permit has expired")
            return permit

    def revoke(self, actor: Actor, permit_id: str) -> Permit:
        ensure_capability(actor, CAP_PERMIT_REVOKE)
        with self._session() as session:
            permit = self._get_permit(session, permit_id, for_update=True)
            if not can_permit_transition(permit.status, PermitStatus.REVOKED):
                raise PolicyError(PolicyReason.STATUS_NOT_ACTIVE, "permit is not active")
            now = self._clock()
            permit.status = PermitStatus.REVOKED
            permit.revoked_at = now
            permit.revoked_by = actor.user_id
            permit.updated_at = now
            session.add(permit)
            session.commit()
            session.refresh(permit)

        logger.info("permit %s revoked by %s", permit.permit_number, actor.user_id)
        event_bus.publish_dict(
            "permit.revoked",
            {"permit_id": permit.id, "permit_number": permit.permit_number},
            actor_id=actor.user_id,
        )
        return permit

    def get(self, actor: Actor, permit_id: str) -> Permit:
        ensure_capability(actor, CAP_PERMIT_READ)
        with self._session() as session:
            return self._get_permit(session, permit_id)

    def get_by_number(self, actor: Actor, permit_number: str) -> Permit:
        ensure_capability(actor, CAP_PERMIT_READ)
        with self._session() as session:
            permit = session.exec(select(Permit).where(Permit.permit_number == permit_number)).first()
            if permit is None:
                raise NotFoundError("permit not found")
            return permit

    def list(
        self,
        actor: Actor,
        *,
        guide_id: str | None = None,
        status: PermitStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Permit], int]:
        ensure_capability(actor, CAP_PERMIT_READ)
        statement = select(Permit)
        count_statement = select(func.count()).select_from(Permit)
        if guide_id is not None:
            statement = statement.where(Permit.guide_id == guide_id)
            count_statement = count_statement.where(Permit.guide_id == guide_id)
        if status is not None:
            statement = statement.where(Permit.status == status)
            count_statement = count_statement.where(Permit.status == status)
        with self._session() as session:
            total = session.exec(count_statement).one()
            rows = session.exec(
                statement.order_by(col(Permit.issued_at).desc()).offset(offset).limit(limit)
            ).all()
            return list(rows), int(total)
