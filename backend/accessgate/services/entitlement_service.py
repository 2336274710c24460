"""
Entitlement Store.

Feature catalog and plan bundles are global; tenant feature grants are
tenant-scoped. A grant is effective iff is_granted and it has not expired.

Plan provisioning is an idempotent upsert:
- features in the plan with no grant row are inserted
- ineffective rows (revoked or expired) are reactivated as plan-sourced
- effective rows are left as they are, including manual (admin) grants
- grants for features outside the plan are never touched

Plan-sourced grants (source system/upgrade) are the only ones withdrawn
when a license expires or is cancelled.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from accessgate.models.base import as_utc, utcnow
from accessgate.models.entitlement import (
    FeatureBundle,
    FeatureCatalogEntry,
    GrantSource,
    PLAN_SOURCES,
    TenantFeatureGrant,
)
from accessgate.platform.audit import AuditAction
from accessgate.platform.errors import UnknownFeatureError, UnknownPlanError
from accessgate.services.access_epochs import bump_tenant_epoch
from accessgate.services.access_resolver import EffectiveAccessResolver
from accessgate.services.base import MutationService

logger = logging.getLogger(__name__)


@dataclass
class PlanGrantSummary:
    """Result of grant_features_for_plan()."""
    tenant_id: str
    plan_name: str
    features_added: list[str] = field(default_factory=list)
    features_reactivated: list[str] = field(default_factory=list)
    features_already_granted: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.features_added or self.features_reactivated)

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "plan_name": self.plan_name,
            "features_added": self.features_added,
            "features_reactivated": self.features_reactivated,
            "features_already_granted": self.features_already_granted,
        }


def grant_snapshot(grant: TenantFeatureGrant) -> dict:
    return {
        "feature_name": grant.feature_name,
        "is_granted": grant.is_granted,
        "granted_by": grant.granted_by,
        "plan_name": grant.plan_name,
        "expires_at": as_utc(grant.expires_at).isoformat() if grant.expires_at else None,
    }


class EntitlementService(MutationService):
    """
    Usage:
        service = EntitlementService(db, cache=runtime.projection_cache)
        summary = service.grant_features_for_plan("tenant-1", "professional")
        service.tenant_has_feature("tenant-1", "donation_approvals")
    """

    # --- catalog ---

    def get_plan_features(self, plan_name: str) -> list[str]:
        bundle = (
            self.db.query(FeatureBundle)
            .filter(FeatureBundle.plan_name == plan_name)
            .first()
        )
        if bundle is None:
            raise UnknownPlanError("Unknown plan", details={"plan_name": plan_name})
        return bundle.feature_names

    def _require_feature(self, feature_name: str) -> None:
        exists = (
            self.db.query(FeatureCatalogEntry.id)
            .filter(FeatureCatalogEntry.name == feature_name)
            .first()
        )
        if exists is None:
            raise UnknownFeatureError("Unknown feature", details={"feature_name": feature_name})

    def _grants_by_feature(self, tenant_id: str) -> dict[str, TenantFeatureGrant]:
        grants = (
            self.db.query(TenantFeatureGrant)
            .filter(TenantFeatureGrant.tenant_id == tenant_id)
            .all()
        )
        return {grant.feature_name: grant for grant in grants}

    # --- plan provisioning ---

    def grant_features_for_plan(
        self,
        tenant_id: str,
        plan_name: str,
        actor_user_id: Optional[str] = None,
        source: GrantSource = GrantSource.SYSTEM,
        commit: bool = True,
        audit: bool = True,
    ) -> PlanGrantSummary:
        """
        Upsert the plan's features for a tenant. Safe to call repeatedly.

        With commit=False the caller owns the transaction (the lifecycle
        controller commits the ledger row, license and grants together).
        audit=False leaves the audit row to that caller as well.
        """
        source = GrantSource(source)
        if not source.is_plan_sourced:
            raise ValueError("plan grants must use a plan source (system or upgrade)")

        features = self.get_plan_features(plan_name)
        existing = self._grants_by_feature(tenant_id)
        now = utcnow()
        summary = PlanGrantSummary(tenant_id=tenant_id, plan_name=plan_name)

        for feature_name in features:
            grant = existing.get(feature_name)
            if grant is None:
                self.db.add(TenantFeatureGrant(
                    tenant_id=tenant_id,
                    feature_name=feature_name,
                    is_granted=True,
                    granted_at=now,
                    granted_by=source.value,
                    plan_name=plan_name,
                ))
                summary.features_added.append(feature_name)
            elif not grant.is_effective(now):
                grant.is_granted = True
                grant.granted_at = now
                grant.granted_by = source.value
                grant.granted_by_user_id = None
                grant.plan_name = plan_name
                grant.expires_at = None
                grant.revoked_at = None
                summary.features_reactivated.append(feature_name)
            else:
                if grant.is_plan_sourced and grant.plan_name != plan_name:
                    # Re-home onto the current plan so a later expiry withdraws it.
                    grant.plan_name = plan_name
                summary.features_already_granted.append(feature_name)

        if summary.changed:
            self.db.flush()
            bump_tenant_epoch(self.db, tenant_id)
            if audit:
                self._audit(
                    tenant_id,
                    AuditAction.PLAN_FEATURES_GRANTED,
                    actor_user_id,
                    "plan",
                    plan_name,
                    after=summary.to_dict(),
                    metadata={"source": source.value},
                )

        if commit:
            self._commit(tenants=[tenant_id])

        logger.info(
            "entitlement.plan_features_granted",
            extra={
                "tenant_id": tenant_id,
                "plan_name": plan_name,
                "added": len(summary.features_added),
                "reactivated": len(summary.features_reactivated),
                "already_granted": len(summary.features_already_granted),
            },
        )
        return summary

    def withdraw_plan_grants(
        self,
        tenant_id: str,
        actor_user_id: Optional[str] = None,
        reason: Optional[str] = None,
        commit: bool = True,
        audit: bool = True,
    ) -> list[str]:
        """Mark every plan-sourced grant as not granted. Manual grants survive."""
        grants = (
            self.db.query(TenantFeatureGrant)
            .filter(
                TenantFeatureGrant.tenant_id == tenant_id,
                TenantFeatureGrant.is_granted == True,  # noqa: E712
                TenantFeatureGrant.granted_by.in_(PLAN_SOURCES),
            )
            .all()
        )
        now = utcnow()
        withdrawn = []
        for grant in grants:
            grant.is_granted = False
            grant.revoked_at = now
            withdrawn.append(grant.feature_name)

        if withdrawn:
            self.db.flush()
            bump_tenant_epoch(self.db, tenant_id)
            if audit:
                self._audit(
                    tenant_id,
                    AuditAction.PLAN_FEATURES_WITHDRAWN,
                    actor_user_id,
                    "tenant",
                    tenant_id,
                    after={"features_withdrawn": sorted(withdrawn)},
                    metadata={"reason": reason},
                )

        if commit:
            self._commit(tenants=[tenant_id])

        logger.info(
            "entitlement.plan_features_withdrawn",
            extra={"tenant_id": tenant_id, "count": len(withdrawn), "reason": reason},
        )
        return sorted(withdrawn)

    # --- manual grants ---

    def grant_feature(
        self,
        tenant_id: str,
        feature_name: str,
        granted_by: GrantSource = GrantSource.ADMIN,
        expires_at: Optional[datetime] = None,
        actor_user_id: Optional[str] = None,
    ) -> TenantFeatureGrant:
        self._require_feature(feature_name)
        granted_by = GrantSource(granted_by)
        expires_at = as_utc(expires_at)
        now = utcnow()

        grant = (
            self.db.query(TenantFeatureGrant)
            .filter(
                TenantFeatureGrant.tenant_id == tenant_id,
                TenantFeatureGrant.feature_name == feature_name,
            )
            .first()
        )
        before = grant_snapshot(grant) if grant is not None else None

        if grant is None:
            grant = TenantFeatureGrant(tenant_id=tenant_id, feature_name=feature_name)
            self.db.add(grant)
        grant.is_granted = True
        grant.granted_at = now
        grant.granted_by = granted_by.value
        grant.granted_by_user_id = actor_user_id
        grant.plan_name = None if granted_by == GrantSource.ADMIN else grant.plan_name
        grant.expires_at = expires_at
        grant.revoked_at = None
        self.db.flush()

        bump_tenant_epoch(self.db, tenant_id)
        self._audit(
            tenant_id,
            AuditAction.FEATURE_GRANTED,
            actor_user_id,
            "feature_grant",
            grant.id,
            before=before,
            after=grant_snapshot(grant),
        )
        self._commit(tenants=[tenant_id])

        logger.info(
            "entitlement.feature_granted",
            extra={"tenant_id": tenant_id, "feature": feature_name, "source": granted_by.value},
        )
        return grant

    def revoke_feature(
        self,
        tenant_id: str,
        feature_name: str,
        actor_user_id: Optional[str] = None,
    ) -> Optional[TenantFeatureGrant]:
        """Flip the grant to not-granted. Returns None if nothing was granted."""
        self._require_feature(feature_name)
        grant = (
            self.db.query(TenantFeatureGrant)
            .filter(
                TenantFeatureGrant.tenant_id == tenant_id,
                TenantFeatureGrant.feature_name == feature_name,
            )
            .first()
        )
        if grant is None or not grant.is_granted:
            return None

        before = grant_snapshot(grant)
        grant.is_granted = False
        grant.revoked_at = utcnow()
        self.db.flush()

        bump_tenant_epoch(self.db, tenant_id)
        self._audit(
            tenant_id,
            AuditAction.FEATURE_REVOKED,
            actor_user_id,
            "feature_grant",
            grant.id,
            before=before,
            after=grant_snapshot(grant),
        )
        self._commit(tenants=[tenant_id])

        logger.info(
            "entitlement.feature_revoked",
            extra={"tenant_id": tenant_id, "feature": feature_name},
        )
        return grant

    # --- queries ---

    def tenant_has_feature(self, tenant_id: str, feature_name: str) -> bool:
        grant = (
            self.db.query(TenantFeatureGrant)
            .filter(
                TenantFeatureGrant.tenant_id == tenant_id,
                TenantFeatureGrant.feature_name == feature_name,
            )
            .first()
        )
        return grant is not None and grant.is_effective()

    def list_tenant_grants(self, tenant_id: str) -> list[TenantFeatureGrant]:
        return (
            self.db.query(TenantFeatureGrant)
            .filter(TenantFeatureGrant.tenant_id == tenant_id)
            .order_by(TenantFeatureGrant.feature_name)
            .all()
        )

    def licensed_features(self, tenant_id: str) -> set[str]:
        return EffectiveAccessResolver(self.db).licensed_features(tenant_id)

    def licensed_permissions(self, tenant_id: str) -> set[str]:
        resolver = EffectiveAccessResolver(self.db)
        return resolver.permissions_for_features(resolver.licensed_features(tenant_id))

    def find_expiring_grants(
        self,
        tenant_id: str,
        within_days: int = 30,
        now: Optional[datetime] = None,
    ) -> list[TenantFeatureGrant]:
        """Effective grants whose expiry falls inside the warning window."""
        now = now or utcnow()
        horizon = now + timedelta(days=within_days)
        grants = (
            self.db.query(TenantFeatureGrant)
            .filter(
                TenantFeatureGrant.tenant_id == tenant_id,
                TenantFeatureGrant.is_granted == True,  # noqa: E712
                TenantFeatureGrant.expires_at.isnot(None),
            )
            .all()
        )
        expiring = [
            g for g in grants
            if g.is_effective(now) and as_utc(g.expires_at) <= horizon
        ]
        return sorted(expiring, key=lambda g: as_utc(g.expires_at))
