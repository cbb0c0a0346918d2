from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlmodel import Session, col, func, select

from trailguard.domain.errors import NotFoundError, PolicyError, PolicyReason, ValidationError
from trailguard.domain.models import (
    CheckInCreate,
    Guide,
    Incident,
    IncidentCreate,
    IncidentType,
    IncidentUpdate,
    Permit,
    SafetyCheckIn,
    now_utc,
)
from trailguard.domain.permissions import (
    CAP_INCIDENT_MANAGE,
    CAP_SAFETY_READ,
    CAP_SAFETY_REPORT,
    Actor,
    ensure_capability,
)
from trailguard.domain.state_machine import (
    ACTIVE_INCIDENT_STATES,
    RESOLUTION_STATES,
    IncidentStatus,
    can_incident_transition,
)
from trailguard.infra.db import get_engine
from trailguard.infra.events import event_bus
from trailguard.services.guide_service import GuideService

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _ensure_coordinates(latitude: float, longitude: float) -> None:
    if not -90.0 <= latitude <= 90.0:
        raise ValidationError("latitude must be within [-90, 90]")
    if not -180.0 <= longitude <= 180.0:
        raise ValidationError("longitude must be within [-180, 180]")


def parse_incident_type(raw: str) -> IncidentType:
    try:
        return IncidentType(raw)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in IncidentType)
        raise ValidationError(f"invalid incident type {raw!r}; expected one of: {allowed}") from exc


class SafetyService:
    def __init__(self, *, clock: Clock | None = None, guide_service: GuideService | None = None) -> None:
        self._clock = clock or now_utc
        self._guides = guide_service or GuideService(clock=self._clock)

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _ensure_guide(self, session: Session, guide_id: str) -> Guide:
        guide = session.get(Guide, guide_id)
        if guide is None:
            raise NotFoundError("guide not found")
        return guide

    def _ensure_permit_for_guide(self, session: Session, permit_id: str, guide_id: str) -> Permit:
        permit = session.get(Permit, permit_id)
        if permit is None:
            raise NotFoundError("permit not found")
        if permit.guide_id != guide_id:
            raise ValidationError("permit does not belong to this guide")
        return permit

    def create_check_in(self, actor: Actor, payload: CheckInCreate) -> SafetyCheckIn:
        ensure_capability(actor, CAP_SAFETY_REPORT)
        _ensure_coordinates(payload.latitude, payload.longitude)
        with self._session() as session:
            self._ensure_guide(session, payload.guide_id)
            if payload.permit_id is not None:
                self._ensure_permit_for_guide(session, payload.permit_id, payload.guide_id)
            check_in = SafetyCheckIn(
                guide_id=payload.guide_id,
                permit_id=payload.permit_id,
                latitude=payload.latitude,
                longitude=payload.longitude,
                location=payload.location,
                notes=payload.notes,
                check_in_time=self._clock(),
            )
            session.add(check_in)
            session.commit()
            session.refresh(check_in)

        # last_check_in belongs to the guide record; the guide engine writes it.
        self._guides.record_check_in(payload.guide_id, check_in.check_in_time)
        event_bus.publish_dict(
            "check_in.created",
            {"check_in_id": check_in.id, "guide_id": check_in.guide_id, "permit_id": check_in.permit_id},
            actor_id=actor.user_id,
        )
        return check_in

    def get_check_in(self, actor: Actor, check_in_id: str) -> SafetyCheckIn:
        ensure_capability(actor, CAP_SAFETY_READ)
        with self._session() as session:
            check_in = session.get(SafetyCheckIn, check_in_id)
            if check_in is None:
                raise NotFoundError("check-in not found")
            return check_in

    def list_check_ins(
        self,
        actor: Actor,
        guide_id: str,
        *,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[SafetyCheckIn], int]:
        ensure_capability(actor, CAP_SAFETY_READ)
        with self._session() as session:
            total = session.exec(
                select(func.count()).select_from(SafetyCheckIn).where(SafetyCheckIn.guide_id == guide_id)
            ).one()
            rows = session.exec(
                select(SafetyCheckIn)
                .where(SafetyCheckIn.guide_id == guide_id)
                .order_by(col(SafetyCheckIn.check_in_time).desc())
                .offset(offset)
                .limit(limit)
            ).all()
            return list(rows), int(total)

    def report_incident(self, actor: Actor, payload: IncidentCreate) -> Incident:
        ensure_capability(actor, CAP_SAFETY_REPORT)
        incident_type = parse_incident_type(payload.incident_type)
        _ensure_coordinates(payload.latitude, payload.longitude)
        with self._session() as session:
            self._ensure_guide(session, payload.guide_id)
            if payload.permit_id is not None:
                self._ensure_permit_for_guide(session, payload.permit_id, payload.guide_id)
            incident = Incident(
                incident_type=incident_type,
                guide_id=payload.guide_id,
                permit_id=payload.permit_id,
                status=IncidentStatus.OPEN,
                latitude=payload.latitude,
                longitude=payload.longitude,
                location=payload.location,
                description=payload.description,
                reported_at=self._clock(),
                updated_at=self._clock(),
            )
            session.add(incident)
            session.commit()
            session.refresh(incident)

        event_payload = {
            "incident_id": incident.id,
            "incident_type": incident.incident_type,
            "guide_id": incident.guide_id,
            "latitude": incident.latitude,
            "longitude": incident.longitude,
        }
        if incident.incident_type == IncidentType.SOS:
            logger.warning(
                "SOS raised by guide %s at (%s, %s): incident %s",
                incident.guide_id,
                incident.latitude,
                incident.longitude,
                incident.id,
            )
            event_bus.publish_dict("incident.sos", event_payload, actor_id=actor.user_id)
        else:
            logger.info("incident %s (%s) reported for guide %s", incident.id, incident.incident_type, incident.guide_id)
        event_bus.publish_dict("incident.reported", event_payload, actor_id=actor.user_id)
        return incident

    def update_incident(self, actor: Actor, incident_id: str, payload: IncidentUpdate) -> Incident:
        ensure_capability(actor, CAP_INCIDENT_MANAGE)
        with self._session() as session:
            incident = session.exec(select(Incident).where(Incident.id == incident_id).with_for_update()).first()
            if incident is None:
                raise NotFoundError("incident not found")
            source = incident.status
            now = self._clock()
            if payload.status is not None:
                if not can_incident_transition(source, payload.status):
                    raise PolicyError(
                        PolicyReason.INVALID_TRANSITION,
                        f"incident cannot move from {source} to {payload.status}",
                    )
                incident.status = payload.status
                if payload.status in RESOLUTION_STATES:
                    incident.resolved_at = now
                    incident.resolved_by = payload.resolved_by or actor.user_id
            if payload.resolution_notes is not None:
                incident.resolution_notes = payload.resolution_notes
            incident.updated_at = now
            session.add(incident)
            session.commit()
            session.refresh(incident)

        if payload.status is not None:
            logger.info("incident %s %s -> %s by %s", incident.id, source, incident.status, actor.user_id)
            event_bus.publish_dict(
                "incident.status_changed",
                {"incident_id": incident.id, "from": source, "to": incident.status},
                actor_id=actor.user_id,
            )
        return incident

    def get_incident(self, actor: Actor, incident_id: str) -> Incident:
        ensure_capability(actor, CAP_SAFETY_READ)
        with self._session() as session:
            incident = session.get(Incident, incident_id)
            if incident is None:
                raise NotFoundError("incident not found")
            return incident

    def list_incidents(
        self,
        actor: Actor,
        *,
        status: IncidentStatus | None = None,
        guide_id: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Incident], int]:
        ensure_capability(actor, CAP_SAFETY_READ)
        statement = select(Incident)
        count_statement = select(func.count()).select_from(Incident)
        if status is not None:
            statement = statement.where(Incident.status == status)
            count_statement = count_statement.where(Incident.status == status)
        if guide_id is not None:
            statement = statement.where(Incident.guide_id == guide_id)
            count_statement = count_statement.where(Incident.guide_id == guide_id)
        with self._session() as session:
            total = session.exec(count_statement).one()
            rows = session.exec(
                statement.order_by(col(Incident.reported_at).desc()).offset(offset).limit(limit)
            ).all()
            return list(rows), int(total)

    def active_sos(self, actor: Actor, guide_id: str) -> list[Incident]:
        ensure_capability(actor, CAP_SAFETY_READ)
        with self._session() as session:
            rows = session.exec(
                select(Incident)
                .where(Incident.guide_id == guide_id)
                .where(Incident.incident_type == IncidentType.SOS)
                .where(col(Incident.status).in_(list(ACTIVE_INCIDENT_STATES)))
                .order_by(col(Incident.reported_at).desc())
            ).all()
            return list(rows)
