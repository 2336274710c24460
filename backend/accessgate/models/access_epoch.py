"""
AccessEpoch: monotonically increasing invalidation counters.

One row per (tenant_id, subject):
- ("*", "*")         global counter (catalog seeding, system roles)
- (tenant, "*")      tenant-wide counter (tenant roles, grants, licenses)
- (tenant, user_id)  per-user counter (assignments, delegations)

A projection records the (global, tenant, user) vector it was computed
under; any increment makes it stale.
"""

from sqlalchemy import Column, String, BigInteger, DateTime, func

from accessgate.db_base import Base

GLOBAL_SCOPE = "*"


class AccessEpoch(Base):
    __tablename__ = "access_epochs"

    tenant_id = Column(String(255), primary_key=True)
    subject = Column(String(255), primary_key=True)

    value = Column(BigInteger, nullable=False, default=0)

    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"<AccessEpoch(tenant_id={self.tenant_id}, subject={self.subject}, value={self.value})>"
