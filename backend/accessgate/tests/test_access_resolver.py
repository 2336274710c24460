"""
Tests for the effective-access resolver.

Tests cover:
- Default deny
- Union of direct roles, delegated roles and system roles
- Licensed features and the permissions they license
- valid_until tracks the next delegation/grant change
- Tenant isolation
- Projection JSON round trip used by the Redis backend
"""

from datetime import timedelta

from accessgate.models.base import utcnow
from accessgate.models.role import Role
from accessgate.services.access_epochs import read_epochs
from accessgate.services.access_resolver import AccessProjection, EffectiveAccessResolver, scope_key
from accessgate.tests.helpers import OTHER_TENANT, TENANT


class TestResolve:

    def test_default_deny(self, seeded_db):
        projection = EffectiveAccessResolver(seeded_db).resolve(TENANT, "nobody")

        assert projection.permissions == frozenset()
        assert projection.licensed_features == frozenset()
        assert projection.valid_until is None

    def test_union_of_roles(self, role_service, provisioned_roles, seeded_db):
        role_service.assign_role(TENANT, "user-1", provisioned_roles["member"].id, actor_user_id="admin-1")
        role_service.assign_role(TENANT, "user-1", provisioned_roles["treasurer"].id, actor_user_id="admin-1")

        projection = EffectiveAccessResolver(seeded_db).resolve(TENANT, "user-1")

        assert projection.permissions == frozenset({
            "members:view", "events:view", "finance:view", "finance:create", "finance:report",
        })
        assert len(projection.role_ids) == 2

    def test_system_role_applies_in_any_tenant(self, role_service, seeded_db):
        super_admin = seeded_db.query(Role).filter(Role.slug == "super_admin").one()
        role_service.assign_role(OTHER_TENANT, "root", super_admin.id, actor_user_id="system:seed")

        projection = EffectiveAccessResolver(seeded_db).resolve(OTHER_TENANT, "root")

        assert "rbac:manage" in projection.permissions
        assert EffectiveAccessResolver(seeded_db).resolve(TENANT, "root").permissions == frozenset()

    def test_licensed_features_and_permissions(self, entitlement_service, seeded_db):
        entitlement_service.grant_features_for_plan(TENANT, "essential")

        projection = EffectiveAccessResolver(seeded_db).resolve(TENANT, "anyone")

        assert "basic_donations" in projection.licensed_features
        assert "donation_approvals" not in projection.licensed_features
        assert "finance:create" in projection.licensed_permissions
        assert "finance:approve" not in projection.licensed_permissions

    def test_epoch_is_carried(self, role_service, provisioned_roles, seeded_db):
        role_service.assign_role(TENANT, "user-1", provisioned_roles["member"].id, actor_user_id="admin-1")
        epoch = read_epochs(seeded_db, TENANT, "user-1")

        projection = EffectiveAccessResolver(seeded_db).resolve(TENANT, "user-1", epoch=epoch)

        assert projection.epoch == tuple(epoch)

    def test_valid_until_tracks_grant_expiry(self, entitlement_service, seeded_db):
        expires = utcnow() + timedelta(hours=6)
        entitlement_service.grant_feature(TENANT, "care_management", expires_at=expires)
        entitlement_service.grant_feature(TENANT, "advanced_reporting", expires_at=expires + timedelta(days=1))

        projection = EffectiveAccessResolver(seeded_db).resolve(TENANT, "anyone")

        assert abs((projection.valid_until - expires).total_seconds()) < 1
        assert projection.is_time_valid(expires - timedelta(minutes=1)) is True
        assert projection.is_time_valid(expires) is False

    def test_delegation_needs_delegator_to_hold_role(
        self, role_service, delegation_service, provisioned_roles, seeded_db
    ):
        staff = provisioned_roles["staff"]
        assignment = role_service.assign_role(TENANT, "alice", staff.id, actor_user_id="admin-1")
        delegation_service.delegate_role(TENANT, "alice", "bob", staff.id, ends_at=utcnow() + timedelta(days=1))

        # Deactivated out-of-band, without the cascading revoke_role path.
        assignment.is_active = False
        seeded_db.commit()

        assert "care:manage" not in EffectiveAccessResolver(seeded_db).resolve(TENANT, "bob").permissions


class TestProjection:

    def test_scope_key(self):
        assert scope_key(None, None) is None
        assert scope_key("global", None) is None
        assert scope_key("unit", "youth") == "unit:youth"

    def test_json_round_trip(self):
        projection = AccessProjection(
            tenant_id=TENANT,
            user_id="user-1",
            permissions=frozenset({"members:view"}),
            scoped_permissions={"unit:youth": frozenset({"care:manage"})},
            role_ids=frozenset({"r1"}),
            licensed_features=frozenset({"member_directory"}),
            licensed_permissions=frozenset({"members:view", "members:manage"}),
            epoch=(3, 2, 1),
            valid_until=utcnow() + timedelta(hours=1),
        )

        restored = AccessProjection.from_json(projection.to_json())

        assert restored == projection
        assert restored.permissions_for("unit:youth") == frozenset({"members:view", "care:manage"})
