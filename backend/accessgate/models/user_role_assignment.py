"""
UserRoleAssignment: links a user to a Role inside one tenant.

A user may hold several roles in the same tenant at once. The role must
either be owned by that tenant or be a system role.
"""

from typing import Optional

from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from accessgate.db_base import Base
from accessgate.models.base import TimestampMixin, generate_uuid, utcnow


class UserRoleAssignment(Base, TimestampMixin):
    """
    Maps a user to a Role for a specific tenant.

    - tenant_id is stored even for system roles (Role.tenant_id is NULL there)
    - Unique constraint prevents duplicate (user, role, tenant) triples;
      revoking deactivates the row and re-assigning reactivates it.
    """

    __tablename__ = "user_role_assignments"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
    )

    user_id = Column(
        String(255),
        nullable=False,
        index=True,
    )

    role_id = Column(
        String(255),
        ForeignKey("roles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    tenant_id = Column(
        String(255),
        nullable=False,
        index=True,
    )

    assigned_by = Column(
        String(255),
        nullable=True,
        comment="User ID of whoever granted this assignment",
    )

    assigned_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    source = Column(
        String(50),
        nullable=True,
        default="admin_grant",
        comment="admin_grant | provisioning | bootstrap",
    )

    is_active = Column(
        Boolean,
        nullable=False,
        default=True,
        index=True,
    )

    revoked_at = Column(DateTime(timezone=True), nullable=True)
    revoked_by = Column(String(255), nullable=True)

    role = relationship("Role", back_populates="assignments", lazy="joined")

    __table_args__ = (
        UniqueConstraint("user_id", "role_id", "tenant_id", name="uq_user_role_assignment"),
        Index("ix_user_role_assignments_tenant_user", "tenant_id", "user_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<UserRoleAssignment(user_id={self.user_id}, role_id={self.role_id}, "
            f"tenant_id={self.tenant_id}, is_active={self.is_active})>"
        )

    def deactivate(self, revoked_by: Optional[str] = None) -> None:
        """Soft-delete this assignment."""
        self.is_active = False
        self.revoked_at = utcnow()
        self.revoked_by = revoked_by

    def reactivate(self, assigned_by: Optional[str] = None) -> None:
        """Reactivate a previously revoked assignment."""
        self.is_active = True
        self.assigned_at = utcnow()
        self.revoked_at = None
        self.revoked_by = None
        if assigned_by:
            self.assigned_by = assigned_by
