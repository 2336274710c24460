"""
Permission catalog and data-driven Role model.

Roles are either system-wide (tenant_id IS NULL, scope=system) or owned
by a tenant (scope=tenant). System roles are seeded from the catalog and
are immutable through the mutation API.

Permissions are a global, immutable catalog. RolePermission is a direct
(role, permission) pair; there is no grouping layer in between.
"""

import enum

from sqlalchemy import (
    Column,
    String,
    Boolean,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from accessgate.db_base import Base
from accessgate.models.base import TimestampMixin, generate_uuid


class RoleScope(str, enum.Enum):
    SYSTEM = "system"
    TENANT = "tenant"


class Permission(Base, TimestampMixin):
    """Catalog entry for a single permission string (e.g. 'finance:create')."""

    __tablename__ = "permissions"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key",
    )

    name = Column(
        String(100),
        nullable=False,
        unique=True,
        index=True,
        comment="Globally unique permission name, e.g. 'finance:approve'",
    )

    category = Column(
        String(50),
        nullable=False,
        default="general",
        comment="Grouping used by admin UIs (finance, members, ...)",
    )

    description = Column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<Permission(name={self.name})>"


class Role(Base, TimestampMixin):
    """
    Role definition.

    - scope=system, tenant_id IS NULL => system role (immutable, undeletable)
    - scope=tenant, tenant_id set     => tenant-owned custom or template role
    """

    __tablename__ = "roles"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key",
    )

    tenant_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Owning tenant ID. NULL for system roles.",
    )

    scope = Column(
        String(20),
        nullable=False,
        default=RoleScope.TENANT.value,
        comment="system | tenant",
    )

    name = Column(
        String(100),
        nullable=False,
        comment="Human-readable role name (e.g. 'Treasurer')",
    )

    slug = Column(
        String(100),
        nullable=False,
        comment="Machine-friendly role identifier (e.g. 'treasurer')",
    )

    description = Column(Text, nullable=True)

    is_system = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="System roles reject every mutation",
    )

    is_delegatable = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Whether holders may delegate this role to another user",
    )

    is_active = Column(
        Boolean,
        nullable=False,
        default=True,
        index=True,
        comment="Soft-delete flag",
    )

    created_by = Column(String(255), nullable=True)

    permissions = relationship(
        "RolePermission",
        back_populates="role",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    assignments = relationship(
        "UserRoleAssignment",
        back_populates="role",
        lazy="dynamic",
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "slug", name="uq_roles_tenant_slug"),
        Index("ix_roles_tenant_active", "tenant_id", "is_active"),
    )

    def __repr__(self) -> str:
        owner = f"tenant={self.tenant_id}" if self.tenant_id else "system"
        return f"<Role(id={self.id}, slug={self.slug}, {owner})>"

    @property
    def role_scope(self) -> RoleScope:
        return RoleScope(self.scope)

    @property
    def permission_names(self) -> list[str]:
        return sorted(rp.permission.name for rp in self.permissions)

    def belongs_to(self, tenant_id: str) -> bool:
        """True if this role may be used inside tenant_id."""
        return self.tenant_id is None or self.tenant_id == tenant_id


class RolePermission(Base, TimestampMixin):
    """Direct grant of one catalog permission to one role."""

    __tablename__ = "role_permissions"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
    )

    role_id = Column(
        String(255),
        ForeignKey("roles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    permission_id = Column(
        String(255),
        ForeignKey("permissions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    role = relationship("Role", back_populates="permissions")
    permission = relationship("Permission", lazy="joined")

    __table_args__ = (
        UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),
    )

    def __repr__(self) -> str:
        return f"<RolePermission(role_id={self.role_id}, permission_id={self.permission_id})>"
