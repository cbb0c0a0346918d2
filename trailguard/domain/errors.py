from __future__ import annotations

from enum import StrEnum


class PolicyReason(StrEnum):
    GUIDE_NOT_VERIFIED = "guide_not_verified"
    AGENCY_NOT_VERIFIED = "agency_not_verified"
    LICENSE_EXPIRED = "license_expired"
    STATUS_NOT_ACTIVE = "status_not_active"
    NOT_STARTED = "not_started"
    EXPIRED = "expired"
    INVALID_TRANSITION = "invalid_transition"


class AuthReason(StrEnum):
    INVALID_TOKEN = "invalid_token"
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_INACTIVE = "account_inactive"


class ServiceError(Exception):
    pass


class ValidationError(ServiceError):
    pass


class NotFoundError(ServiceError):
    pass


class ConflictError(ServiceError):
    pass


class PolicyError(ServiceError):
    def __init__(self, reason: PolicyReason, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class AuthError(ServiceError):
    def __init__(self, reason: AuthReason, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class PermissionDeniedError(ServiceError):
    pass
