"""
Tests for the YAML catalog and the seeder that applies it.

Tests cover:
- Loading and cross-validation of config/catalog.yml
- Dangling references and maker/checker conflicts rejected at load time
- Seeder idempotency (second run writes nothing)
- Global epoch bump on a changed catalog
"""

import copy

import pytest
import yaml

from accessgate.config.catalog import Catalog, CatalogError, CatalogLoader
from accessgate.models.entitlement import FeatureBundle, FeaturePermission
from accessgate.models.role import Permission, Role
from accessgate.platform.audit import AuditAction, AuditLog
from accessgate.services.access_epochs import read_epochs
from accessgate.services.catalog_seeder import seed_catalog
from accessgate.tests.helpers import CATALOG_PATH


@pytest.fixture
def raw_catalog():
    with open(CATALOG_PATH, "r", encoding="utf-8") as f:
        return yaml.safe_load(f)


class TestCatalogLoading:

    def test_loads_shipped_catalog(self, catalog):
        assert set(catalog.plans) == {"essential", "professional", "enterprise"}
        assert "super_admin" in catalog.system_roles
        assert "treasurer" in catalog.role_templates

    def test_plan_tiers_are_ordered(self, catalog):
        tiers = [catalog.plans[name].tier for name in ("essential", "professional", "enterprise")]
        assert tiers == sorted(tiers)

    def test_checker_permissions_map(self, catalog):
        assert catalog.checker_permissions() == {"finance:approve": "finance:create"}

    def test_sod_conflicts_detects_pair(self, catalog):
        conflicts = catalog.sod_conflicts({"finance:create", "finance:approve", "finance:view"})
        assert len(conflicts) == 1
        assert conflicts[0].maker == "finance:create"

    def test_sod_conflicts_empty_for_one_side(self, catalog):
        assert catalog.sod_conflicts({"finance:create", "finance:view"}) == []

    def test_missing_file_raises(self, tmp_path):
        loader = CatalogLoader(str(tmp_path / "missing.yml"))
        with pytest.raises(CatalogError):
            loader.catalog

    def test_reload_picks_up_changes(self, tmp_path, raw_catalog):
        path = tmp_path / "catalog.yml"
        path.write_text(yaml.safe_dump(raw_catalog))
        loader = CatalogLoader(str(path))
        assert "enterprise" in loader.catalog.plans

        changed = copy.deepcopy(raw_catalog)
        del changed["plans"]["enterprise"]
        path.write_text(yaml.safe_dump(changed))

        assert "enterprise" not in loader.reload().plans


class TestCatalogValidation:

    def test_plan_with_unknown_feature_rejected(self, raw_catalog):
        raw_catalog["plans"]["essential"]["features"].append("teleportation")
        with pytest.raises(CatalogError, match="teleportation"):
            Catalog.from_dict(raw_catalog)

    def test_feature_mapping_unknown_permission_rejected(self, raw_catalog):
        raw_catalog["feature_permissions"]["member_directory"].append("members:delete")
        with pytest.raises(CatalogError, match="members:delete"):
            Catalog.from_dict(raw_catalog)

    def test_template_holding_both_sides_rejected(self, raw_catalog):
        raw_catalog["role_templates"]["treasurer"]["permissions"].append("finance:approve")
        with pytest.raises(CatalogError, match="treasurer"):
            Catalog.from_dict(raw_catalog)

    def test_catalog_error_is_value_error(self, raw_catalog):
        raw_catalog["system_roles"]["super_admin"]["permissions"].append("nope:nope")
        with pytest.raises(ValueError):
            Catalog.from_dict(raw_catalog)


class TestCatalogSeeder:

    def test_seed_creates_global_rows(self, seeded_db, catalog):
        assert seeded_db.query(Permission).count() == len(catalog.permissions)
        assert seeded_db.query(FeatureBundle).count() == len(catalog.plans)

        super_admin = seeded_db.query(Role).filter(Role.slug == "super_admin").one()
        assert super_admin.tenant_id is None
        assert super_admin.is_system is True
        assert set(super_admin.permission_names) == set(catalog.system_roles["super_admin"].permissions)

    def test_seed_maps_features_to_permissions(self, seeded_db):
        rows = (
            seeded_db.query(FeaturePermission.permission_name)
            .filter(FeaturePermission.feature_name == "basic_donations")
            .all()
        )
        assert {row.permission_name for row in rows} == {"finance:view", "finance:create"}

    def test_seed_bumps_global_epoch(self, seeded_db):
        assert read_epochs(seeded_db, "any-tenant", "any-user").global_epoch >= 1

    def test_second_run_is_noop(self, seeded_db, catalog):
        before = read_epochs(seeded_db, "any-tenant", "any-user")
        audit_rows = seeded_db.query(AuditLog).filter(
            AuditLog.action == AuditAction.CATALOG_SEEDED.value
        ).count()

        result = seed_catalog(seeded_db, catalog)

        assert result.changed is False
        assert read_epochs(seeded_db, "any-tenant", "any-user") == before
        assert seeded_db.query(AuditLog).filter(
            AuditLog.action == AuditAction.CATALOG_SEEDED.value
        ).count() == audit_rows

    def test_changed_system_role_is_reapplied(self, seeded_db, raw_catalog):
        raw_catalog["system_roles"]["super_admin"]["permissions"].remove("audit:view")
        changed = Catalog.from_dict(raw_catalog)
        before = read_epochs(seeded_db, "any-tenant", "any-user").global_epoch

        result = seed_catalog(seeded_db, changed)

        assert result.system_roles_updated == ["super_admin"]
        super_admin = seeded_db.query(Role).filter(Role.slug == "super_admin").one()
        seeded_db.refresh(super_admin)
        assert "audit:view" not in super_admin.permission_names
        assert read_epochs(seeded_db, "any-tenant", "any-user").global_epoch == before + 1
