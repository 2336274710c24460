"""
Apply the YAML catalog to the database.

Idempotent upsert of the global (tenant-less) rows:
- permissions
- feature catalog, plan bundles and the feature -> permission map
- system roles (tenant_id IS NULL, immutable through the mutation API)

Every run that changes something bumps the global epoch, so every cached
projection is recomputed on its next read.
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from accessgate.config.catalog import Catalog
from accessgate.models.access_epoch import GLOBAL_SCOPE
from accessgate.models.entitlement import (
    FeatureBundle,
    FeatureBundleItem,
    FeatureCatalogEntry,
    FeaturePermission,
)
from accessgate.models.role import Permission, Role, RolePermission, RoleScope
from accessgate.platform.audit import AuditAction, AuditEvent, record_audit_event
from accessgate.services.access_epochs import bump_global_epoch

logger = logging.getLogger(__name__)


@dataclass
class SeedResult:
    permissions_created: list[str] = field(default_factory=list)
    features_created: list[str] = field(default_factory=list)
    bundles_updated: list[str] = field(default_factory=list)
    feature_permissions_changed: list[str] = field(default_factory=list)
    system_roles_updated: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return any((
            self.permissions_created,
            self.features_created,
            self.bundles_updated,
            self.feature_permissions_changed,
            self.system_roles_updated,
        ))

    def to_dict(self) -> dict:
        return {
            "permissions_created": self.permissions_created,
            "features_created": self.features_created,
            "bundles_updated": self.bundles_updated,
            "feature_permissions_changed": self.feature_permissions_changed,
            "system_roles_updated": self.system_roles_updated,
        }


def _seed_permissions(db: Session, catalog: Catalog, result: SeedResult) -> dict[str, Permission]:
    existing = {p.name: p for p in db.query(Permission).all()}
    for spec in catalog.permissions.values():
        permission = existing.get(spec.name)
        if permission is None:
            permission = Permission(name=spec.name, category=spec.category, description=spec.description)
            db.add(permission)
            existing[spec.name] = permission
            result.permissions_created.append(spec.name)
        else:
            permission.category = spec.category
            permission.description = spec.description
    db.flush()
    return existing


def _seed_features(db: Session, catalog: Catalog, result: SeedResult) -> None:
    existing = {f.name: f for f in db.query(FeatureCatalogEntry).all()}
    for spec in catalog.features.values():
        entry = existing.get(spec.name)
        if entry is None:
            db.add(FeatureCatalogEntry(
                name=spec.name,
                category=spec.category,
                tier=spec.tier,
                description=spec.description,
            ))
            result.features_created.append(spec.name)
        else:
            entry.category = spec.category
            entry.tier = spec.tier
            entry.description = spec.description
    db.flush()


def _seed_bundles(db: Session, catalog: Catalog, result: SeedResult) -> None:
    existing = {b.plan_name: b for b in db.query(FeatureBundle).all()}
    for plan in catalog.plans.values():
        bundle = existing.get(plan.name)
        if bundle is None:
            bundle = FeatureBundle(plan_name=plan.name, display_name=plan.display_name, tier=plan.tier)
            bundle.items = [FeatureBundleItem(feature_name=name) for name in plan.features]
            db.add(bundle)
            result.bundles_updated.append(plan.name)
            continue

        bundle.display_name = plan.display_name
        bundle.tier = plan.tier
        if bundle.feature_names != sorted(plan.features):
            # Delete before insert: the unit of work would otherwise insert first
            # and trip uq_bundle_feature.
            db.query(FeatureBundleItem).filter(FeatureBundleItem.bundle_id == bundle.id).delete(
                synchronize_session=False
            )
            db.expire(bundle, ["items"])
            for name in plan.features:
                db.add(FeatureBundleItem(bundle_id=bundle.id, feature_name=name))
            result.bundles_updated.append(plan.name)
    db.flush()


def _seed_feature_permissions(db: Session, catalog: Catalog, result: SeedResult) -> None:
    current: dict[str, set[str]] = {}
    for row in db.query(FeaturePermission).all():
        current.setdefault(row.feature_name, set()).add(row.permission_name)

    for feature_name in catalog.features:
        wanted = set(catalog.feature_permissions.get(feature_name, ()))
        have = current.get(feature_name, set())
        if wanted == have:
            continue
        for name in have - wanted:
            db.query(FeaturePermission).filter(
                FeaturePermission.feature_name == feature_name,
                FeaturePermission.permission_name == name,
            ).delete(synchronize_session=False)
        for name in sorted(wanted - have):
            db.add(FeaturePermission(feature_name=feature_name, permission_name=name))
        result.feature_permissions_changed.append(feature_name)
    db.flush()


def _seed_system_roles(
    db: Session,
    catalog: Catalog,
    permissions: dict[str, Permission],
    result: SeedResult,
) -> None:
    existing = {
        r.slug: r for r in db.query(Role).filter(Role.tenant_id.is_(None)).all()
    }
    for template in catalog.system_roles.values():
        wanted = sorted(template.permissions)
        role = existing.get(template.slug)
        if role is None:
            role = Role(
                tenant_id=None,
                scope=RoleScope.SYSTEM.value,
                name=template.name,
                slug=template.slug,
                description=template.description,
                is_system=True,
                is_delegatable=template.is_delegatable,
                created_by="system",
            )
            role.permissions = [RolePermission(permission=permissions[name]) for name in wanted]
            db.add(role)
            result.system_roles_updated.append(template.slug)
            continue

        changed = role.is_delegatable != template.is_delegatable or not role.is_active
        role.name = template.name
        role.description = template.description
        role.is_delegatable = template.is_delegatable
        role.is_active = True

        if role.permission_names != wanted:
            db.query(RolePermission).filter(RolePermission.role_id == role.id).delete(
                synchronize_session=False
            )
            db.expire(role, ["permissions"])
            for name in wanted:
                db.add(RolePermission(role_id=role.id, permission_id=permissions[name].id))
            changed = True

        if changed:
            result.system_roles_updated.append(template.slug)
    db.flush()


def seed_catalog(db: Session, catalog: Catalog, commit: bool = True) -> SeedResult:
    """
    Upsert the catalog's global rows.

    Returns what changed. Unchanged runs write nothing, not even an audit row.
    """
    result = SeedResult()
    permissions = _seed_permissions(db, catalog, result)
    _seed_features(db, catalog, result)
    _seed_bundles(db, catalog, result)
    _seed_feature_permissions(db, catalog, result)
    _seed_system_roles(db, catalog, permissions, result)

    if result.changed:
        bump_global_epoch(db)
        record_audit_event(
            db,
            AuditEvent(
                tenant_id=GLOBAL_SCOPE,
                action=AuditAction.CATALOG_SEEDED,
                resource_type="catalog",
                after_state=result.to_dict(),
                source="system",
            ),
        )

    if commit:
        db.commit()

    logger.info("catalog.seeded", extra=result.to_dict())
    return result
