"""
ProcessedLifecycleEvent: ledger of consumed license lifecycle events.

Used for idempotency - each external event id is processed exactly once.
The unique constraint on event_id also settles concurrent duplicate
deliveries: the losing insert raises IntegrityError.
"""

import enum

from sqlalchemy import Column, String, DateTime, Index, Text, func

from accessgate.db_base import Base
from accessgate.models.base import generate_uuid, utcnow


class LifecycleEventType(str, enum.Enum):
    LICENSE_ACTIVATED = "licenseActivated"
    LICENSE_UPGRADED = "licenseUpgraded"
    LICENSE_EXPIRED = "licenseExpired"
    LICENSE_CANCELLED = "licenseCancelled"


class LifecycleOutcome(str, enum.Enum):
    APPLIED = "applied"
    STALE = "stale"
    REJECTED = "rejected"


class ProcessedLifecycleEvent(Base):
    __tablename__ = "processed_lifecycle_events"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
    )

    event_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="External event id supplied by the billing collaborator",
    )

    tenant_id = Column(String(255), nullable=False, index=True)

    event_type = Column(String(50), nullable=False)

    plan_name = Column(String(50), nullable=True)

    effective_at = Column(DateTime(timezone=True), nullable=False)

    outcome = Column(
        String(20),
        nullable=False,
        comment="applied | stale | rejected",
    )

    detail = Column(Text, nullable=True)

    payload_hash = Column(
        String(64),
        nullable=True,
        comment="SHA-256 of the canonical event payload",
    )

    processed_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("idx_lifecycle_events_tenant_processed", "tenant_id", "processed_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ProcessedLifecycleEvent(event_id={self.event_id}, "
            f"type={self.event_type}, outcome={self.outcome})>"
        )
