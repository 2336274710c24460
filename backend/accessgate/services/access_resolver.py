"""
Effective-access resolver.

Pure computation over the three source stores:
1. UserRoleAssignment -> Role -> RolePermission        (direct roles)
2. Delegation (active, started, not past end) -> Role  (delegated roles)
3. TenantFeatureGrant (effective) -> FeaturePermission (licensed permissions)

No caching happens here. The projection cache stores what this module
returns and is checked against it; errors propagate to the caller, which
decides how to fail.

Every query is parameterised by tenant id; roles are accepted only when
tenant_id IS NULL (system) or equals the tenant being resolved.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from accessgate.models.base import as_utc, utcnow
from accessgate.models.delegation import Delegation, DelegationStatus
from accessgate.models.entitlement import FeaturePermission, TenantFeatureGrant
from accessgate.models.role import Permission, Role, RolePermission
from accessgate.models.user_role_assignment import UserRoleAssignment
from accessgate.platform.errors import DecisionTimeoutError
from accessgate.services.access_epochs import EpochVector

logger = logging.getLogger(__name__)


class Deadline:
    """Monotonic deadline checked between store reads."""

    def __init__(self, seconds: Optional[float]):
        self._expires = None if seconds is None else time.monotonic() + seconds
        self.seconds = seconds

    def check(self, stage: str) -> None:
        if self._expires is not None and time.monotonic() > self._expires:
            raise DecisionTimeoutError(
                "Access resolution exceeded its time budget",
                details={"stage": stage, "budget_seconds": self.seconds},
            )

    @classmethod
    def unbounded(cls) -> "Deadline":
        return cls(None)


def scope_key(scope_type: Optional[str], scope_id: Optional[str]) -> Optional[str]:
    """Key for scoped permissions; None means the tenant-wide scope."""
    if not scope_type or scope_type == "global":
        return None
    return f"{scope_type}:{scope_id}"


@dataclass
class AccessProjection:
    """
    Derived snapshot of one user's effective access inside one tenant.

    `permissions` holds tenant-wide permissions; `scoped_permissions` holds
    permissions that only apply under a unit/event scope. A projection is
    disposable and can always be rebuilt by EffectiveAccessResolver.
    """

    tenant_id: str
    user_id: str
    permissions: frozenset = frozenset()
    scoped_permissions: dict = field(default_factory=dict)
    role_ids: frozenset = frozenset()
    delegation_ids: frozenset = frozenset()
    licensed_features: frozenset = frozenset()
    licensed_permissions: frozenset = frozenset()
    epoch: tuple = (0, 0, 0)
    computed_at: datetime = field(default_factory=utcnow)
    valid_until: Optional[datetime] = None

    def permissions_for(self, scope: Optional[str] = None) -> frozenset:
        """Effective permissions under a scope (tenant-wide ones always apply)."""
        if scope is None:
            return self.permissions
        return self.permissions | self.scoped_permissions.get(scope, frozenset())

    def is_time_valid(self, now: Optional[datetime] = None) -> bool:
        """False once a contributing delegation or grant has changed state."""
        if self.valid_until is None:
            return True
        return (now or utcnow()) < self.valid_until

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or utcnow()) - self.computed_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "permissions": sorted(self.permissions),
            "scoped_permissions": {k: sorted(v) for k, v in self.scoped_permissions.items()},
            "role_ids": sorted(self.role_ids),
            "delegation_ids": sorted(self.delegation_ids),
            "licensed_features": sorted(self.licensed_features),
            "licensed_permissions": sorted(self.licensed_permissions),
            "epoch": list(self.epoch),
            "computed_at": self.computed_at.isoformat(),
            "valid_until": self.valid_until.isoformat() if self.valid_until else None,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, data: str) -> "AccessProjection":
        raw = json.loads(data)
        return cls(
            tenant_id=raw["tenant_id"],
            user_id=raw["user_id"],
            permissions=frozenset(raw["permissions"]),
            scoped_permissions={k: frozenset(v) for k, v in raw["scoped_permissions"].items()},
            role_ids=frozenset(raw["role_ids"]),
            delegation_ids=frozenset(raw.get("delegation_ids", [])),
            licensed_features=frozenset(raw["licensed_features"]),
            licensed_permissions=frozenset(raw["licensed_permissions"]),
            epoch=tuple(raw["epoch"]),
            computed_at=datetime.fromisoformat(raw["computed_at"]),
            valid_until=datetime.fromisoformat(raw["valid_until"]) if raw["valid_until"] else None,
        )


@dataclass
class _RoleResolution:
    role_ids: set = field(default_factory=set)
    scoped_role_ids: dict = field(default_factory=dict)
    delegation_ids: set = field(default_factory=set)
    next_change: Optional[datetime] = None

    def note_change(self, when: Optional[datetime]) -> None:
        if when is not None and (self.next_change is None or when < self.next_change):
            self.next_change = when


class EffectiveAccessResolver:
    """
    Computes AccessProjection values directly from the source stores.

    Usage:
        resolver = EffectiveAccessResolver(db)
        projection = resolver.resolve("tenant-1", "user-1")
        projection.permissions_for(None)
    """

    def __init__(self, db: Session, deadline: Optional[Deadline] = None):
        self.db = db
        self.deadline = deadline or Deadline.unbounded()

    def resolve(
        self,
        tenant_id: str,
        user_id: str,
        epoch: Optional[EpochVector] = None,
        now: Optional[datetime] = None,
    ) -> AccessProjection:
        now = now or utcnow()

        roles = self._resolve_roles(tenant_id, user_id, now)
        self.deadline.check("roles")

        all_role_ids = set(roles.role_ids)
        for ids in roles.scoped_role_ids.values():
            all_role_ids.update(ids)
        permissions_by_role = self.permissions_by_role(tenant_id, all_role_ids)
        self.deadline.check("role_permissions")

        permissions = self._union(permissions_by_role, roles.role_ids)
        scoped: dict[str, frozenset] = {}
        for key, ids in roles.scoped_role_ids.items():
            extra = self._union(permissions_by_role, ids) - permissions
            if extra:
                scoped[key] = frozenset(extra)

        features, grant_change = self._licensed_features(tenant_id, now)
        roles.note_change(grant_change)
        self.deadline.check("feature_grants")

        licensed_permissions = self.permissions_for_features(features)
        self.deadline.check("feature_permissions")

        return AccessProjection(
            tenant_id=tenant_id,
            user_id=user_id,
            permissions=frozenset(permissions),
            scoped_permissions=scoped,
            role_ids=frozenset(roles.role_ids),
            delegation_ids=frozenset(roles.delegation_ids),
            licensed_features=frozenset(features),
            licensed_permissions=frozenset(licensed_permissions),
            epoch=tuple(epoch) if epoch is not None else (0, 0, 0),
            computed_at=now,
            valid_until=roles.next_change,
        )

    # --- roles ---

    def direct_role_ids(self, tenant_id: str, user_id: str) -> set[str]:
        """Role ids held through active, direct assignments."""
        rows = (
            self.db.query(UserRoleAssignment.role_id)
            .join(Role, UserRoleAssignment.role_id == Role.id)
            .filter(
                UserRoleAssignment.tenant_id == tenant_id,
                UserRoleAssignment.user_id == user_id,
                UserRoleAssignment.is_active == True,  # noqa: E712
                Role.is_active == True,  # noqa: E712
                or_(Role.tenant_id.is_(None), Role.tenant_id == tenant_id),
            )
            .all()
        )
        return {row.role_id for row in rows}

    def _resolve_roles(self, tenant_id: str, user_id: str, now: datetime) -> _RoleResolution:
        result = _RoleResolution(role_ids=self.direct_role_ids(tenant_id, user_id))
        self.deadline.check("assignments")

        delegations = (
            self.db.query(Delegation)
            .join(Role, Delegation.role_id == Role.id)
            .filter(
                Delegation.tenant_id == tenant_id,
                Delegation.delegatee_user_id == user_id,
                Delegation.status == DelegationStatus.ACTIVE.value,
                Role.is_active == True,  # noqa: E712
                Role.is_delegatable == True,  # noqa: E712
                or_(Role.tenant_id.is_(None), Role.tenant_id == tenant_id),
            )
            .all()
        )
        if not delegations:
            return result

        # The delegator must still hold the role directly.
        delegator_roles = self._direct_holders(
            tenant_id, {(d.delegator_user_id, d.role_id) for d in delegations}
        )

        for delegation in delegations:
            starts_at = as_utc(delegation.starts_at)
            ends_at = as_utc(delegation.ends_at)
            if ends_at is not None and ends_at <= now:
                continue
            if starts_at > now:
                result.note_change(starts_at)
                continue
            if (delegation.delegator_user_id, delegation.role_id) not in delegator_roles:
                continue

            result.delegation_ids.add(delegation.id)
            result.note_change(ends_at)
            key = delegation.scope_key
            if key is None:
                result.role_ids.add(delegation.role_id)
            else:
                result.scoped_role_ids.setdefault(key, set()).add(delegation.role_id)

        return result

    def _direct_holders(self, tenant_id: str, pairs: set[tuple[str, str]]) -> set[tuple[str, str]]:
        if not pairs:
            return set()
        user_ids = {user for user, _ in pairs}
        rows = (
            self.db.query(UserRoleAssignment.user_id, UserRoleAssignment.role_id)
            .filter(
                UserRoleAssignment.tenant_id == tenant_id,
                UserRoleAssignment.user_id.in_(user_ids),
                UserRoleAssignment.is_active == True,  # noqa: E712
            )
            .all()
        )
        return {(row.user_id, row.role_id) for row in rows} & pairs

    def permissions_by_role(self, tenant_id: str, role_ids: Iterable[str]) -> dict[str, set[str]]:
        role_ids = set(role_ids)
        if not role_ids:
            return {}
        rows = (
            self.db.query(RolePermission.role_id, Permission.name)
            .join(Permission, RolePermission.permission_id == Permission.id)
            .join(Role, RolePermission.role_id == Role.id)
            .filter(
                RolePermission.role_id.in_(role_ids),
                or_(Role.tenant_id.is_(None), Role.tenant_id == tenant_id),
            )
            .all()
        )
        result: dict[str, set[str]] = {}
        for row in rows:
            result.setdefault(row.role_id, set()).add(row.name)
        return result

    @staticmethod
    def _union(permissions_by_role: dict[str, set[str]], role_ids: Iterable[str]) -> set[str]:
        permissions: set[str] = set()
        for role_id in role_ids:
            permissions.update(permissions_by_role.get(role_id, ()))
        return permissions

    # --- entitlements ---

    def _licensed_features(self, tenant_id: str, now: datetime) -> tuple[set[str], Optional[datetime]]:
        grants = (
            self.db.query(TenantFeatureGrant)
            .filter(
                TenantFeatureGrant.tenant_id == tenant_id,
                TenantFeatureGrant.is_granted == True,  # noqa: E712
            )
            .all()
        )
        features: set[str] = set()
        next_expiry: Optional[datetime] = None
        for grant in grants:
            if not grant.is_effective(now):
                continue
            features.add(grant.feature_name)
            expires_at = as_utc(grant.expires_at)
            if expires_at is not None and (next_expiry is None or expires_at < next_expiry):
                next_expiry = expires_at
        return features, next_expiry

    def licensed_features(self, tenant_id: str, now: Optional[datetime] = None) -> set[str]:
        features, _ = self._licensed_features(tenant_id, now or utcnow())
        return features

    def permissions_for_features(self, features: Iterable[str]) -> set[str]:
        features = set(features)
        if not features:
            return set()
        rows = (
            self.db.query(FeaturePermission.permission_name)
            .filter(FeaturePermission.feature_name.in_(features))
            .all()
        )
        return {row.permission_name for row in rows}
