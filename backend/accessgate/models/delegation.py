"""
Delegation model: a temporary, scope-bounded grant of a role from one
user (delegator) to another (delegatee) inside one tenant.

Lifecycle:
1. Created -> status=active
2. end date passes -> status=expired (lazily on read, eagerly by the sweep job)
3. OR explicit revocation -> status=revoked

expired and revoked are terminal.
"""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Column,
    String,
    DateTime,
    ForeignKey,
    Index,
    Text,
)
from sqlalchemy.orm import relationship

from accessgate.db_base import Base
from accessgate.models.base import TimestampMixin, as_utc, generate_uuid, utcnow


class DelegationStatus(str, enum.Enum):
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


class DelegationScope(str, enum.Enum):
    GLOBAL = "global"
    UNIT = "unit"
    EVENT = "event"


class Delegation(Base, TimestampMixin):
    __tablename__ = "delegations"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
    )

    tenant_id = Column(String(255), nullable=False, index=True)

    delegator_user_id = Column(
        String(255),
        nullable=False,
        index=True,
        comment="User who holds the role and hands it over",
    )

    delegatee_user_id = Column(
        String(255),
        nullable=False,
        index=True,
        comment="User who receives the role temporarily",
    )

    role_id = Column(
        String(255),
        ForeignKey("roles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    scope_type = Column(
        String(20),
        nullable=False,
        default=DelegationScope.GLOBAL.value,
        comment="global | unit | event",
    )

    scope_id = Column(
        String(255),
        nullable=True,
        comment="Unit or event identifier; NULL for global scope",
    )

    starts_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    ends_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="NULL = indefinite",
    )

    status = Column(
        String(20),
        nullable=False,
        default=DelegationStatus.ACTIVE.value,
        index=True,
    )

    reason = Column(Text, nullable=True)

    revoked_at = Column(DateTime(timezone=True), nullable=True)
    revoked_by = Column(String(255), nullable=True)
    revocation_reason = Column(String(100), nullable=True)

    expired_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When expiry was recorded (lazy read or sweep)",
    )

    role = relationship("Role", lazy="joined")

    __table_args__ = (
        Index("ix_delegations_tenant_delegatee_status", "tenant_id", "delegatee_user_id", "status"),
        Index("ix_delegations_status_ends", "status", "ends_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Delegation(id={self.id}, role_id={self.role_id}, "
            f"{self.delegator_user_id}->{self.delegatee_user_id}, status={self.status})>"
        )

    @property
    def scope_key(self) -> Optional[str]:
        """Key under which scoped permissions are stored in a projection."""
        if self.scope_type == DelegationScope.GLOBAL.value:
            return None
        return f"{self.scope_type}:{self.scope_id}"

    def is_past_end(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.ends_at is not None and as_utc(self.ends_at) <= now

    def is_effective(self, now: Optional[datetime] = None) -> bool:
        """Active, started and not yet past its end date."""
        now = now or utcnow()
        return (
            self.status == DelegationStatus.ACTIVE.value
            and as_utc(self.starts_at) <= now
            and not self.is_past_end(now)
        )

    def effective_status(self, now: Optional[datetime] = None) -> DelegationStatus:
        """Status as observed at `now`, applying lazy expiry."""
        if self.status == DelegationStatus.ACTIVE.value and self.is_past_end(now):
            return DelegationStatus.EXPIRED
        return DelegationStatus(self.status)

    def mark_expired(self) -> None:
        self.status = DelegationStatus.EXPIRED.value
        self.expired_at = utcnow()

    def revoke(self, revoked_by: Optional[str], reason: str) -> None:
        self.status = DelegationStatus.REVOKED.value
        self.revoked_at = utcnow()
        self.revoked_by = revoked_by
        self.revocation_reason = reason
