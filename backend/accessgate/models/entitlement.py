"""
Entitlement models: feature catalog, plan bundles, feature->permission
bridge, per-tenant feature grants and the tenant's current license.

The feature catalog, bundles and permission map are GLOBAL (seeded from
config/catalog.yml). TenantFeatureGrant and TenantLicense are tenant-scoped.
"""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from accessgate.db_base import Base
from accessgate.models.base import TimestampMixin, as_utc, generate_uuid, utcnow


class GrantSource(str, enum.Enum):
    """Who produced a feature grant."""

    SYSTEM = "system"      # plan provisioning
    UPGRADE = "upgrade"    # plan upgrade event
    ADMIN = "admin"        # manual override

    @property
    def is_plan_sourced(self) -> bool:
        return self in (GrantSource.SYSTEM, GrantSource.UPGRADE)


PLAN_SOURCES = (GrantSource.SYSTEM.value, GrantSource.UPGRADE.value)


class LicenseStatus(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class FeatureCatalogEntry(Base, TimestampMixin):
    __tablename__ = "feature_catalog"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    name = Column(
        String(100),
        nullable=False,
        unique=True,
        index=True,
        comment="Machine-readable feature identifier (e.g. basic_donations)",
    )
    category = Column(String(50), nullable=False, default="general")
    tier = Column(String(50), nullable=True, comment="Lowest plan tier that ships the feature")
    description = Column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<FeatureCatalogEntry(name={self.name}, tier={self.tier})>"


class FeatureBundle(Base, TimestampMixin):
    """A plan's entitlement template: plan name -> included features."""

    __tablename__ = "feature_bundles"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    plan_name = Column(
        String(50),
        nullable=False,
        unique=True,
        index=True,
        comment="Plan identifier (essential, professional, enterprise)",
    )
    display_name = Column(String(100), nullable=False)
    tier = Column(Integer, nullable=False, default=0)

    items = relationship(
        "FeatureBundleItem",
        back_populates="bundle",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<FeatureBundle(plan_name={self.plan_name})>"

    @property
    def feature_names(self) -> list[str]:
        return sorted(item.feature_name for item in self.items)


class FeatureBundleItem(Base):
    __tablename__ = "feature_bundle_items"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    bundle_id = Column(
        String(36),
        ForeignKey("feature_bundles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    feature_name = Column(
        String(100),
        ForeignKey("feature_catalog.name", ondelete="CASCADE"),
        nullable=False,
    )

    bundle = relationship("FeatureBundle", back_populates="items")

    __table_args__ = (
        UniqueConstraint("bundle_id", "feature_name", name="uq_bundle_feature"),
    )


class FeaturePermission(Base):
    """Bridge row: holding `feature_name` licenses `permission_name`."""

    __tablename__ = "feature_permissions"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    feature_name = Column(
        String(100),
        ForeignKey("feature_catalog.name", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    permission_name = Column(
        String(100),
        ForeignKey("permissions.name", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    __table_args__ = (
        UniqueConstraint("feature_name", "permission_name", name="uq_feature_permission"),
    )

    def __repr__(self) -> str:
        return f"<FeaturePermission({self.feature_name} -> {self.permission_name})>"


class TenantFeatureGrant(Base, TimestampMixin):
    """
    Tenant-level record that a feature is licensed.

    Effective iff is_granted and (expires_at is NULL or expires_at > now).
    One row per (tenant, feature); revocation flips is_granted.
    """

    __tablename__ = "tenant_feature_grants"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    tenant_id = Column(String(255), nullable=False, index=True)

    feature_name = Column(
        String(100),
        ForeignKey("feature_catalog.name", ondelete="CASCADE"),
        nullable=False,
    )

    is_granted = Column(Boolean, nullable=False, default=True)

    granted_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    granted_by = Column(
        String(20),
        nullable=False,
        default=GrantSource.ADMIN.value,
        comment="system | upgrade | admin",
    )

    granted_by_user_id = Column(
        String(255),
        nullable=True,
        comment="Admin user for manual grants",
    )

    plan_name = Column(
        String(50),
        nullable=True,
        comment="Plan that produced a plan-sourced grant",
    )

    expires_at = Column(DateTime(timezone=True), nullable=True)

    revoked_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "feature_name", name="uq_tenant_feature"),
        Index("ix_tenant_feature_grants_tenant_granted", "tenant_id", "is_granted"),
    )

    def __repr__(self) -> str:
        return (
            f"<TenantFeatureGrant(tenant_id={self.tenant_id}, feature={self.feature_name}, "
            f"is_granted={self.is_granted}, source={self.granted_by})>"
        )

    @property
    def is_plan_sourced(self) -> bool:
        return self.granted_by in PLAN_SOURCES

    def is_effective(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        if not self.is_granted:
            return False
        return self.expires_at is None or as_utc(self.expires_at) > now


class TenantLicense(Base, TimestampMixin):
    """Current license state per tenant, maintained by lifecycle events."""

    __tablename__ = "tenant_licenses"

    tenant_id = Column(String(255), primary_key=True)

    plan_name = Column(String(50), nullable=True)

    status = Column(
        String(20),
        nullable=False,
        default=LicenseStatus.ACTIVE.value,
    )

    effective_at = Column(
        DateTime(timezone=True),
        nullable=False,
        comment="effectiveAt of the last applied lifecycle event",
    )

    last_event_id = Column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<TenantLicense(tenant_id={self.tenant_id}, plan={self.plan_name}, status={self.status})>"
