from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from trailguard.domain.errors import PermissionDeniedError


class Role(StrEnum):
    ADMIN = "admin"
    AGENCY = "agency"
    GUIDE = "guide"


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: Role


CAP_USER_READ = "user.read"
CAP_USER_WRITE = "user.write"
CAP_GUIDE_READ = "guide.read"
CAP_GUIDE_WRITE = "guide.write"
CAP_GUIDE_REVIEW = "guide.review"
CAP_AGENCY_READ = "agency.read"
CAP_AGENCY_WRITE = "agency.write"
CAP_AGENCY_REVIEW = "agency.review"
CAP_PERMIT_READ = "permit.read"
CAP_PERMIT_ISSUE = "permit.issue"
CAP_PERMIT_REVOKE = "permit.revoke"
CAP_SAFETY_READ = "safety.read"
CAP_SAFETY_REPORT = "safety.report"
CAP_INCIDENT_MANAGE = "incident.manage"

ALL_ROLES: frozenset[Role] = frozenset(Role)
STAFF_ROLES: frozenset[Role] = frozenset({Role.ADMIN, Role.AGENCY})
ADMIN_ONLY: frozenset[Role] = frozenset({Role.ADMIN})

# Minimal roles allowed to invoke each engine operation.
CAPABILITIES: dict[str, frozenset[Role]] = {
    CAP_USER_READ: ADMIN_ONLY,
    CAP_USER_WRITE: ADMIN_ONLY,
    CAP_GUIDE_READ: ALL_ROLES,
    CAP_GUIDE_WRITE: ALL_ROLES,
    CAP_GUIDE_REVIEW: ADMIN_ONLY,
    CAP_AGENCY_READ: ALL_ROLES,
    CAP_AGENCY_WRITE: STAFF_ROLES,
    CAP_AGENCY_REVIEW: ADMIN_ONLY,
    CAP_PERMIT_READ: ALL_ROLES,
    CAP_PERMIT_ISSUE: ALL_ROLES,
    CAP_PERMIT_REVOKE: ADMIN_ONLY,
    CAP_SAFETY_READ: ALL_ROLES,
    CAP_SAFETY_REPORT: ALL_ROLES,
    CAP_INCIDENT_MANAGE: STAFF_ROLES,
}


def has_capability(actor: Actor, capability: str) -> bool:
    return actor.role in CAPABILITIES.get(capability, frozenset())


def ensure_capability(actor: Actor, capability: str) -> None:
    if not has_capability(actor, capability):
        raise PermissionDeniedError(f"role {actor.role} may not perform {capability}")
