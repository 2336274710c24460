"""
Database models for the authorization engine.

Importing this package registers every table on Base.metadata.
"""

from accessgate.models.base import TimestampMixin
from accessgate.models.role import Permission, Role, RolePermission, RoleScope
from accessgate.models.user_role_assignment import UserRoleAssignment
from accessgate.models.delegation import Delegation, DelegationScope, DelegationStatus
from accessgate.models.entitlement import (
    FeatureBundle,
    FeatureBundleItem,
    FeatureCatalogEntry,
    FeaturePermission,
    GrantSource,
    LicenseStatus,
    TenantFeatureGrant,
    TenantLicense,
)
from accessgate.models.lifecycle_event import (
    LifecycleEventType,
    LifecycleOutcome,
    ProcessedLifecycleEvent,
)
from accessgate.models.access_epoch import AccessEpoch, GLOBAL_SCOPE
from accessgate.platform.audit import AuditLog

__all__ = [
    "TimestampMixin",
    # Role & permission store
    "Permission",
    "Role",
    "RolePermission",
    "RoleScope",
    "UserRoleAssignment",
    # Delegation
    "Delegation",
    "DelegationScope",
    "DelegationStatus",
    # Entitlements
    "FeatureBundle",
    "FeatureBundleItem",
    "FeatureCatalogEntry",
    "FeaturePermission",
    "GrantSource",
    "LicenseStatus",
    "TenantFeatureGrant",
    "TenantLicense",
    # Lifecycle
    "LifecycleEventType",
    "LifecycleOutcome",
    "ProcessedLifecycleEvent",
    # Invalidation
    "AccessEpoch",
    "GLOBAL_SCOPE",
    # Audit
    "AuditLog",
]
