"""
Role & Permission Store.

Roles, direct role->permission pairs and user->role assignments. System
roles (tenant_id IS NULL) reject every mutation with RoleImmutableError.
Every lookup is parameterised by tenant: a role id owned by another tenant
raises TenantMismatchError and is never returned.

Permission sets are replaced atomically: the old pairs are deleted and the
new ones inserted inside one transaction, so no reader observes a mix.
"""

import logging
import re
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from accessgate.config.catalog import Catalog
from accessgate.models.base import utcnow
from accessgate.models.delegation import Delegation, DelegationStatus
from accessgate.models.role import Permission, Role, RolePermission, RoleScope
from accessgate.models.user_role_assignment import UserRoleAssignment
from accessgate.platform.audit import AuditAction
from accessgate.platform.errors import (
    DuplicateRoleError,
    InvalidRoleError,
    RoleImmutableError,
    RoleNotFoundError,
    SeparationOfDutiesError,
    TenantMismatchError,
    UnknownPermissionError,
)
from accessgate.services.access_epochs import bump_tenant_epoch, bump_user_epoch
from accessgate.services.base import MutationService

logger = logging.getLogger(__name__)

REASON_DELEGATOR_LOST_ROLE = "delegator_lost_role"
REASON_ROLE_DELETED = "role_deleted"


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", name.strip().lower()).strip("_")


def load_tenant_role(
    db: Session, tenant_id: str, role_id: str, include_inactive: bool = False
) -> Role:
    """
    Load a role usable inside tenant_id: system-scoped or owned by it.

    Raises:
        TenantMismatchError: the role exists but belongs to another tenant
        RoleNotFoundError: no such role, or it is inactive
    """
    role = db.query(Role).filter(Role.id == role_id).first()
    if role is not None and role.tenant_id is not None and role.tenant_id != tenant_id:
        logger.warning(
            "role.tenant_mismatch",
            extra={"role_id": role_id, "tenant_id": tenant_id},
        )
        raise TenantMismatchError(
            "Role belongs to another tenant",
            details={"role_id": role_id, "tenant_id": tenant_id},
        )
    if role is None or (not include_inactive and not role.is_active):
        raise RoleNotFoundError(
            "Role not found", details={"role_id": role_id, "tenant_id": tenant_id}
        )
    return role


def role_snapshot(role: Role) -> dict:
    """Audit-friendly view of a role."""
    return {
        "id": role.id,
        "tenant_id": role.tenant_id,
        "scope": role.scope,
        "name": role.name,
        "slug": role.slug,
        "is_system": role.is_system,
        "is_delegatable": role.is_delegatable,
        "is_active": role.is_active,
        "permissions": role.permission_names,
    }


class RoleService(MutationService):
    """
    Mutation and query API for roles and role assignments.

    Usage:
        service = RoleService(db, catalog, cache=runtime.projection_cache)
        role = service.create_role("tenant-1", "Deacon", ["members:view"], actor_user_id="admin")
        service.assign_role("tenant-1", "user-7", role.id, actor_user_id="admin")
    """

    def __init__(self, db: Session, catalog: Catalog, **kwargs):
        super().__init__(db, **kwargs)
        self.catalog = catalog

    # --- lookups ---

    def get_role(self, tenant_id: str, role_id: str, include_inactive: bool = False) -> Role:
        return load_tenant_role(self.db, tenant_id, role_id, include_inactive=include_inactive)

    def _mutable_role(self, tenant_id: str, role_id: str) -> Role:
        role = self.get_role(tenant_id, role_id)
        if role.is_system or role.tenant_id is None:
            raise RoleImmutableError(
                "System roles cannot be modified",
                details={"role_id": role.id, "slug": role.slug},
            )
        return role

    def _load_permissions(self, permission_names: Iterable[str]) -> list[Permission]:
        names = sorted(set(permission_names))
        if not names:
            return []
        found = self.db.query(Permission).filter(Permission.name.in_(names)).all()
        missing = sorted(set(names) - {p.name for p in found})
        if missing:
            raise UnknownPermissionError(
                "Unknown permission(s)", details={"permissions": missing}
            )
        return found

    def _check_separation_of_duties(self, permission_names: Iterable[str]) -> None:
        conflicts = self.catalog.sod_conflicts(set(permission_names))
        if conflicts:
            raise SeparationOfDutiesError(
                "A role cannot hold both the maker and checker permission of a pair",
                details={
                    "conflicts": [
                        {"maker": pair.maker, "checker": pair.checker} for pair in conflicts
                    ]
                },
            )

    def list_tenant_roles(self, tenant_id: str) -> list[Role]:
        """System roles plus the tenant's own active roles."""
        return (
            self.db.query(Role)
            .filter(
                or_(Role.tenant_id.is_(None), Role.tenant_id == tenant_id),
                Role.is_active == True,  # noqa: E712
            )
            .order_by(Role.scope, Role.name)
            .all()
        )

    # --- role mutations ---

    def create_role(
        self,
        tenant_id: str,
        name: str,
        permission_names: Iterable[str],
        actor_user_id: Optional[str],
        slug: Optional[str] = None,
        description: Optional[str] = None,
        is_delegatable: bool = False,
    ) -> Role:
        permission_names = list(permission_names)
        slug = slug or slugify(name)
        if not slug:
            raise InvalidRoleError("Role name must contain letters or digits", details={"name": name})

        permissions = self._load_permissions(permission_names)
        self._check_separation_of_duties(permission_names)

        existing = (
            self.db.query(Role)
            .filter(Role.tenant_id == tenant_id, Role.slug == slug)
            .first()
        )
        if existing is not None:
            raise DuplicateRoleError(
                "A role with this slug already exists in the tenant",
                details={"slug": slug, "role_id": existing.id},
            )

        role = Role(
            tenant_id=tenant_id,
            scope=RoleScope.TENANT.value,
            name=name,
            slug=slug,
            description=description,
            is_system=False,
            is_delegatable=is_delegatable,
            created_by=actor_user_id,
        )
        role.permissions = [RolePermission(permission=p) for p in permissions]
        self.db.add(role)
        self.db.flush()

        bump_tenant_epoch(self.db, tenant_id)
        self._audit(
            tenant_id,
            AuditAction.ROLE_CREATED,
            actor_user_id,
            "role",
            role.id,
            after=role_snapshot(role),
        )
        self._commit(tenants=[tenant_id])

        logger.info(
            "rbac.role_created",
            extra={"tenant_id": tenant_id, "role_id": role.id, "slug": slug},
        )
        return role

    def update_role_permissions(
        self,
        tenant_id: str,
        role_id: str,
        permission_names: Iterable[str],
        actor_user_id: Optional[str],
    ) -> Role:
        """Replace the role's full permission set in one transaction."""
        role = self._mutable_role(tenant_id, role_id)
        permission_names = list(permission_names)
        permissions = self._load_permissions(permission_names)
        self._check_separation_of_duties(permission_names)

        before = role_snapshot(role)

        self.db.query(RolePermission).filter(RolePermission.role_id == role.id).delete(
            synchronize_session=False
        )
        self.db.expire(role, ["permissions"])
        for permission in permissions:
            self.db.add(RolePermission(role_id=role.id, permission_id=permission.id))
        self.db.flush()

        bump_tenant_epoch(self.db, tenant_id)
        self._audit(
            tenant_id,
            AuditAction.ROLE_PERMISSIONS_UPDATED,
            actor_user_id,
            "role",
            role.id,
            before=before,
            after=role_snapshot(role),
        )
        self._commit(tenants=[tenant_id])

        logger.info(
            "rbac.role_permissions_updated",
            extra={
                "tenant_id": tenant_id,
                "role_id": role.id,
                "permission_count": len(permissions),
            },
        )
        return role

    def delete_role(self, tenant_id: str, role_id: str, actor_user_id: Optional[str]) -> Role:
        """
        Soft-delete a tenant role.

        Its assignments are deactivated and every active delegation of it is
        revoked in the same transaction.
        """
        role = self._mutable_role(tenant_id, role_id)
        before = role_snapshot(role)

        role.is_active = False
        assignments = (
            self.db.query(UserRoleAssignment)
            .filter(
                UserRoleAssignment.tenant_id == tenant_id,
                UserRoleAssignment.role_id == role.id,
                UserRoleAssignment.is_active == True,  # noqa: E712
            )
            .all()
        )
        for assignment in assignments:
            assignment.deactivate(revoked_by=actor_user_id)

        revoked = self._revoke_delegations(
            tenant_id,
            role_id=role.id,
            actor_user_id=actor_user_id,
            reason=REASON_ROLE_DELETED,
        )
        self.db.flush()

        bump_tenant_epoch(self.db, tenant_id)
        self._audit(
            tenant_id,
            AuditAction.ROLE_DELETED,
            actor_user_id,
            "role",
            role.id,
            before=before,
            after=role_snapshot(role),
            metadata={
                "assignments_deactivated": len(assignments),
                "delegations_revoked": len(revoked),
            },
        )
        self._commit(tenants=[tenant_id])

        logger.info(
            "rbac.role_deleted",
            extra={
                "tenant_id": tenant_id,
                "role_id": role.id,
                "assignments_deactivated": len(assignments),
                "delegations_revoked": len(revoked),
            },
        )
        return role

    # --- assignments ---

    def assign_role(
        self,
        tenant_id: str,
        user_id: str,
        role_id: str,
        actor_user_id: Optional[str],
        source: str = "admin_grant",
    ) -> UserRoleAssignment:
        """Assign a role to a user. Idempotent for an already-active assignment."""
        role = self.get_role(tenant_id, role_id)

        assignment = (
            self.db.query(UserRoleAssignment)
            .filter(
                UserRoleAssignment.tenant_id == tenant_id,
                UserRoleAssignment.user_id == user_id,
                UserRoleAssignment.role_id == role.id,
            )
            .first()
        )
        if assignment is not None and assignment.is_active:
            return assignment

        if assignment is None:
            assignment = UserRoleAssignment(
                tenant_id=tenant_id,
                user_id=user_id,
                role_id=role.id,
                assigned_by=actor_user_id,
                source=source,
            )
            self.db.add(assignment)
        else:
            assignment.reactivate(assigned_by=actor_user_id)
            assignment.source = source
        self.db.flush()

        bump_user_epoch(self.db, tenant_id, user_id)
        self._audit(
            tenant_id,
            AuditAction.ROLE_ASSIGNED,
            actor_user_id,
            "user_role_assignment",
            assignment.id,
            after={"user_id": user_id, "role_id": role.id, "role_slug": role.slug, "source": source},
        )
        self._commit(users=[(tenant_id, user_id)])

        logger.info(
            "rbac.role_assigned",
            extra={"tenant_id": tenant_id, "user_id": user_id, "role_id": role.id},
        )
        return assignment

    def revoke_role(
        self,
        tenant_id: str,
        user_id: str,
        role_id: str,
        actor_user_id: Optional[str],
    ) -> UserRoleAssignment:
        """
        Remove a role from a user.

        Delegations of that role issued by the user are revoked too, so a
        delegator always holds the role they delegated.
        """
        assignment = (
            self.db.query(UserRoleAssignment)
            .join(Role, UserRoleAssignment.role_id == Role.id)
            .filter(
                UserRoleAssignment.tenant_id == tenant_id,
                UserRoleAssignment.user_id == user_id,
                UserRoleAssignment.role_id == role_id,
                UserRoleAssignment.is_active == True,  # noqa: E712
                or_(Role.tenant_id.is_(None), Role.tenant_id == tenant_id),
            )
            .first()
        )
        if assignment is None:
            raise RoleNotFoundError(
                "User does not hold this role",
                details={"user_id": user_id, "role_id": role_id},
            )

        assignment.deactivate(revoked_by=actor_user_id)
        revoked = self._revoke_delegations(
            tenant_id,
            role_id=role_id,
            actor_user_id=actor_user_id,
            reason=REASON_DELEGATOR_LOST_ROLE,
            delegator_user_id=user_id,
        )
        self.db.flush()

        bump_user_epoch(self.db, tenant_id, user_id)
        self._audit(
            tenant_id,
            AuditAction.ROLE_REVOKED,
            actor_user_id,
            "user_role_assignment",
            assignment.id,
            before={"user_id": user_id, "role_id": role_id, "is_active": True},
            after={"user_id": user_id, "role_id": role_id, "is_active": False},
            metadata={"delegations_revoked": [d.id for d in revoked]},
        )
        affected = [(tenant_id, user_id)] + [(tenant_id, d.delegatee_user_id) for d in revoked]
        self._commit(users=affected)

        logger.info(
            "rbac.role_revoked",
            extra={
                "tenant_id": tenant_id,
                "user_id": user_id,
                "role_id": role_id,
                "delegations_revoked": len(revoked),
            },
        )
        return assignment

    def _revoke_delegations(
        self,
        tenant_id: str,
        role_id: str,
        actor_user_id: Optional[str],
        reason: str,
        delegator_user_id: Optional[str] = None,
    ) -> list[Delegation]:
        query = self.db.query(Delegation).filter(
            Delegation.tenant_id == tenant_id,
            Delegation.role_id == role_id,
            Delegation.status == DelegationStatus.ACTIVE.value,
        )
        if delegator_user_id is not None:
            query = query.filter(Delegation.delegator_user_id == delegator_user_id)

        revoked = query.all()
        for delegation in revoked:
            delegation.revoke(revoked_by=actor_user_id, reason=reason)
            bump_user_epoch(self.db, tenant_id, delegation.delegatee_user_id)
            self._audit(
                tenant_id,
                AuditAction.DELEGATION_REVOKED,
                actor_user_id,
                "delegation",
                delegation.id,
                before={"status": DelegationStatus.ACTIVE.value},
                after={"status": DelegationStatus.REVOKED.value, "reason": reason},
            )
        return revoked

    def list_effective_roles_for_user(
        self,
        tenant_id: str,
        user_id: str,
        now: Optional[datetime] = None,
    ) -> list[dict]:
        """
        Roles the user currently holds, directly or through delegation.

        Each entry: {"role": Role, "source": "assignment"|"delegation",
        "delegation_id", "scope_type", "scope_id", "ends_at"}.
        """
        now = now or utcnow()
        result: list[dict] = []

        assignments = (
            self.db.query(UserRoleAssignment)
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
        held = {(user_id, a.role_id) for a in assignments}
        for assignment in assignments:
            result.append({
                "role": assignment.role,
                "source": "assignment",
                "delegation_id": None,
                "scope_type": "global",
                "scope_id": None,
                "ends_at": None,
            })

        delegations = (
            self.db.query(Delegation)
            .join(Role, Delegation.role_id == Role.id)
            .filter(
                Delegation.tenant_id == tenant_id,
                Delegation.delegatee_user_id == user_id,
                Delegation.status == DelegationStatus.ACTIVE.value,
                Role.is_active == True,  # noqa: E712
                or_(Role.tenant_id.is_(None), Role.tenant_id == tenant_id),
            )
            .all()
        )
        if delegations:
            delegator_ids = {d.delegator_user_id for d in delegations}
            rows = (
                self.db.query(UserRoleAssignment.user_id, UserRoleAssignment.role_id)
                .filter(
                    UserRoleAssignment.tenant_id == tenant_id,
                    UserRoleAssignment.user_id.in_(delegator_ids),
                    UserRoleAssignment.is_active == True,  # noqa: E712
                )
                .all()
            )
            held |= {(row.user_id, row.role_id) for row in rows}

        for delegation in delegations:
            if not delegation.is_effective(now):
                continue
            if (delegation.delegator_user_id, delegation.role_id) not in held:
                continue
            result.append({
                "role": delegation.role,
                "source": "delegation",
                "delegation_id": delegation.id,
                "scope_type": delegation.scope_type,
                "scope_id": delegation.scope_id,
                "ends_at": delegation.ends_at,
            })

        return result

    # --- provisioning ---

    def provision_default_roles(
        self,
        tenant_id: str,
        actor_user_id: Optional[str],
        admin_user_id: Optional[str] = None,
    ) -> list[Role]:
        """
        Create tenant-owned copies of the catalog's role templates.

        Idempotent: templates whose slug already exists in the tenant are
        skipped. When admin_user_id is given, that user is assigned the
        tenant_admin template role.
        """
        existing = {
            role.slug: role
            for role in self.db.query(Role).filter(Role.tenant_id == tenant_id).all()
        }

        created: list[Role] = []
        for template in self.catalog.role_templates.values():
            if template.slug in existing:
                continue
            permissions = self._load_permissions(template.permissions)
            role = Role(
                tenant_id=tenant_id,
                scope=RoleScope.TENANT.value,
                name=template.name,
                slug=template.slug,
                description=template.description,
                is_system=False,
                is_delegatable=template.is_delegatable,
                created_by=actor_user_id,
            )
            role.permissions = [RolePermission(permission=p) for p in permissions]
            self.db.add(role)
            created.append(role)
            existing[template.slug] = role
        self.db.flush()

        admin_role = existing.get("tenant_admin")
        admin_assigned = False
        if admin_user_id and admin_role is not None:
            assignment = (
                self.db.query(UserRoleAssignment)
                .filter(
                    UserRoleAssignment.tenant_id == tenant_id,
                    UserRoleAssignment.user_id == admin_user_id,
                    UserRoleAssignment.role_id == admin_role.id,
                )
                .first()
            )
            if assignment is None:
                self.db.add(UserRoleAssignment(
                    tenant_id=tenant_id,
                    user_id=admin_user_id,
                    role_id=admin_role.id,
                    assigned_by=actor_user_id,
                    source="provisioning",
                ))
                admin_assigned = True
            elif not assignment.is_active:
                assignment.reactivate(assigned_by=actor_user_id)
                admin_assigned = True
            if admin_assigned:
                self.db.flush()
                bump_user_epoch(self.db, tenant_id, admin_user_id)

        if not created and not admin_assigned:
            return []

        bump_tenant_epoch(self.db, tenant_id)
        self._audit(
            tenant_id,
            AuditAction.DEFAULT_ROLES_PROVISIONED,
            actor_user_id,
            "tenant",
            tenant_id,
            after={
                "roles_created": [role.slug for role in created],
                "admin_user_id": admin_user_id if admin_assigned else None,
            },
        )
        self._commit(tenants=[tenant_id])

        logger.info(
            "rbac.default_roles_provisioned",
            extra={"tenant_id": tenant_id, "roles_created": len(created)},
        )
        return created
