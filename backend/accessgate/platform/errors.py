"""
Structured error classes for the authorization engine.

Two families:
- Mutation-path errors (RoleImmutableError, TenantMismatchError, ...) are
  raised synchronously to the caller of the mutation API.
- Decision-path failures (StoreUnavailableError, DecisionTimeoutError) are
  raised internally only; the Access Decision Service converts them into a
  deny decision so a careless caller can never turn them into an allow.

DenialReason is the closed set of reason codes attached to deny decisions.
"""

from enum import Enum
from typing import Any, Optional

from fastapi import status


class DenialReason(str, Enum):
    """Machine-readable reason attached to every deny decision."""

    PERMISSION_DENIED = "PermissionDenied"
    FEATURE_NOT_LICENSED = "FeatureNotLicensed"
    STORE_UNAVAILABLE = "StoreUnavailable"
    DECISION_TIMEOUT = "DecisionTimeout"
    TENANT_MISMATCH = "TenantMismatch"
    MAKER_CHECKER_VIOLATION = "MakerCheckerViolation"


class AccessGateError(Exception):
    """Base exception for engine errors."""

    code = "AccessGateError"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


# --- Role & permission store ---


class RoleNotFoundError(AccessGateError):
    code = "RoleNotFound"
    http_status = status.HTTP_404_NOT_FOUND


class RoleImmutableError(AccessGateError):
    code = "RoleImmutable"
    http_status = status.HTTP_409_CONFLICT


class DuplicateRoleError(AccessGateError):
    code = "DuplicateRole"
    http_status = status.HTTP_409_CONFLICT


class InvalidRoleError(AccessGateError):
    code = "InvalidRole"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


class UnknownPermissionError(AccessGateError):
    code = "UnknownPermission"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


class SeparationOfDutiesError(AccessGateError):
    """A single role would hold both the maker and checker side of a pair."""

    code = "SeparationOfDutiesViolation"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


class TenantMismatchError(AccessGateError):
    code = "TenantMismatch"
    http_status = status.HTTP_403_FORBIDDEN


class InvalidIdentifierError(AccessGateError):
    """A tenant or user id that collides with the reserved "*" scope."""

    code = "InvalidIdentifier"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


# --- Delegation ---


class DelegationNotFoundError(AccessGateError):
    code = "DelegationNotFound"
    http_status = status.HTTP_404_NOT_FOUND


class RoleNotDelegatableError(AccessGateError):
    code = "RoleNotDelegatable"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


class DelegatorLacksRoleError(AccessGateError):
    code = "DelegatorLacksRole"
    http_status = status.HTTP_403_FORBIDDEN


class DelegationExpiredOrRevokedError(AccessGateError):
    code = "DelegationExpiredOrRevoked"
    http_status = status.HTTP_409_CONFLICT


class InvalidDelegationError(AccessGateError):
    code = "InvalidDelegation"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


# --- Entitlements ---


class UnknownFeatureError(AccessGateError):
    code = "UnknownFeature"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


class UnknownPlanError(AccessGateError):
    code = "UnknownPlan"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


# --- Decision path ---


class AccessDeniedError(AccessGateError):
    """Raised by require_access() when a guarded operation is not permitted."""

    code = "AccessDenied"
    http_status = status.HTTP_403_FORBIDDEN

    def __init__(self, reason: DenialReason, permission: str, feature: Optional[str] = None):
        self.reason = reason
        super().__init__(
            "You do not have permission to perform this action"
            if reason != DenialReason.FEATURE_NOT_LICENSED
            else "This feature requires a plan upgrade",
            details={"reason": reason.value, "permission": permission, "feature": feature},
        )


class StoreUnavailableError(AccessGateError):
    code = "StoreUnavailable"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE


class DecisionTimeoutError(AccessGateError):
    code = "DecisionTimeout"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
