from __future__ import annotations

from enum import StrEnum


class CredentialStatus(StrEnum):
    PENDING = "pending"
    VERIFIED = "verified"
    SUSPENDED = "suspended"
    REJECTED = "rejected"


# Shared by guides and agencies. Self-loops mark idempotent re-stamps.
CREDENTIAL_TRANSITIONS: dict[CredentialStatus, set[CredentialStatus]] = {
    CredentialStatus.PENDING: {
        CredentialStatus.VERIFIED,
        CredentialStatus.SUSPENDED,
        CredentialStatus.REJECTED,
    },
    CredentialStatus.VERIFIED: {
        CredentialStatus.VERIFIED,
        CredentialStatus.SUSPENDED,
        CredentialStatus.REJECTED,
    },
    CredentialStatus.SUSPENDED: {
        CredentialStatus.VERIFIED,
        CredentialStatus.SUSPENDED,
        CredentialStatus.REJECTED,
    },
    CredentialStatus.REJECTED: {
        CredentialStatus.VERIFIED,
        CredentialStatus.SUSPENDED,
        CredentialStatus.REJECTED,
    },
}


def can_credential_transition(source: CredentialStatus, target: CredentialStatus) -> bool:
    return target in CREDENTIAL_TRANSITIONS.get(source, set())


class PermitStatus(StrEnum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


PERMIT_TRANSITIONS: dict[PermitStatus, set[PermitStatus]] = {
    PermitStatus.ACTIVE: {PermitStatus.EXPIRED, PermitStatus.REVOKED},
    PermitStatus.EXPIRED: set(),
    PermitStatus.REVOKED: set(),
}


def can_permit_transition(source: PermitStatus, target: PermitStatus) -> bool:
    return target in PERMIT_TRANSITIONS.get(source, set())


class IncidentStatus(StrEnum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


RESOLUTION_STATES: frozenset[IncidentStatus] = frozenset({IncidentStatus.RESOLVED, IncidentStatus.CLOSED})
ACTIVE_INCIDENT_STATES: frozenset[IncidentStatus] = frozenset({IncidentStatus.OPEN, IncidentStatus.IN_PROGRESS})

INCIDENT_TRANSITIONS: dict[IncidentStatus, set[IncidentStatus]] = {
    IncidentStatus.OPEN: {
        IncidentStatus.IN_PROGRESS,
        IncidentStatus.RESOLVED,
        IncidentStatus.CLOSED,
    },
    IncidentStatus.IN_PROGRESS: {IncidentStatus.RESOLVED, IncidentStatus.CLOSED},
    # re-resolving refreshes resolved_at
    IncidentStatus.RESOLVED: {IncidentStatus.RESOLVED, IncidentStatus.CLOSED},
    IncidentStatus.CLOSED: {IncidentStatus.CLOSED},
}


def can_incident_transition(source: IncidentStatus, target: IncidentStatus) -> bool:
    return target in INCIDENT_TRANSITIONS.get(source, set())
