"""
Tests for the Delegation Manager.

Tests cover:
- Creation rules (delegatable role, delegator holds it directly, no self-delegation)
- Scope and time-window validation
- Re-delegation of a delegated role is refused
- Scoped and future-dated delegations in the resolved projection
- Revocation (terminal, synchronous)
- Lazy expiry on read and the eager expiry sweep
"""

from datetime import timedelta

import pytest

from accessgate.models.base import utcnow
from accessgate.models.delegation import DelegationScope, DelegationStatus
from accessgate.platform.audit import AuditAction, AuditLog
from accessgate.platform.errors import (
    DelegationExpiredOrRevokedError,
    DelegationNotFoundError,
    DelegatorLacksRoleError,
    InvalidDelegationError,
    RoleNotDelegatableError,
    RoleNotFoundError,
    TenantMismatchError,
)
from accessgate.services.access_epochs import read_epochs
from accessgate.services.access_resolver import EffectiveAccessResolver
from accessgate.tests.helpers import OTHER_TENANT, TENANT


@pytest.fixture
def alice_staff(role_service, provisioned_roles):
    """alice directly holds the delegatable staff role."""
    staff = provisioned_roles["staff"]
    role_service.assign_role(TENANT, "alice", staff.id, actor_user_id="admin-1")
    return staff


def _week():
    return utcnow() + timedelta(days=7)


class TestDelegateRole:

    def test_delegation_grants_role_permissions(self, delegation_service, alice_staff, seeded_db):
        delegation = delegation_service.delegate_role(
            TENANT, "alice", "bob", alice_staff.id, ends_at=_week(), reason="vacation"
        )

        assert delegation.status == DelegationStatus.ACTIVE.value
        projection = EffectiveAccessResolver(seeded_db).resolve(TENANT, "bob")
        assert "care:manage" in projection.permissions
        assert delegation.id in projection.delegation_ids

    def test_delegation_bumps_delegatee_epoch(self, delegation_service, alice_staff, seeded_db):
        before = read_epochs(seeded_db, TENANT, "bob").user_epoch
        delegation_service.delegate_role(TENANT, "alice", "bob", alice_staff.id, ends_at=_week())
        assert read_epochs(seeded_db, TENANT, "bob").user_epoch == before + 1

    def test_delegation_is_audited(self, delegation_service, alice_staff, seeded_db):
        delegation = delegation_service.delegate_role(TENANT, "alice", "bob", alice_staff.id, ends_at=_week())
        row = seeded_db.query(AuditLog).filter(
            AuditLog.action == AuditAction.DELEGATION_CREATED.value,
            AuditLog.resource_id == delegation.id,
        ).one()
        assert row.user_id == "alice"
        assert row.after_state["delegatee_user_id"] == "bob"

    def test_open_ended_global_delegation_allowed(self, delegation_service, alice_staff):
        delegation = delegation_service.delegate_role(TENANT, "alice", "bob", alice_staff.id)
        assert delegation.ends_at is None

    def test_self_delegation_rejected(self, delegation_service, alice_staff):
        with pytest.raises(InvalidDelegationError):
            delegation_service.delegate_role(TENANT, "alice", "alice", alice_staff.id, ends_at=_week())

    def test_non_delegatable_role_rejected(self, delegation_service, role_service, provisioned_roles):
        auditor = provisioned_roles["auditor"]
        role_service.assign_role(TENANT, "alice", auditor.id, actor_user_id="admin-1")
        with pytest.raises(RoleNotDelegatableError):
            delegation_service.delegate_role(TENANT, "alice", "bob", auditor.id, ends_at=_week())

    def test_delegator_must_hold_role(self, delegation_service, provisioned_roles):
        with pytest.raises(DelegatorLacksRoleError):
            delegation_service.delegate_role(
                TENANT, "alice", "bob", provisioned_roles["treasurer"].id, ends_at=_week()
            )

    def test_unknown_role_rejected(self, delegation_service, seeded_db):
        with pytest.raises(RoleNotFoundError):
            delegation_service.delegate_role(TENANT, "alice", "bob", "no-such-role", ends_at=_week())

    def test_other_tenants_role_rejected(self, delegation_service, role_service, alice_staff):
        foreign = role_service.create_role(
            OTHER_TENANT, "Helper", ["members:view"], actor_user_id="admin-2", is_delegatable=True
        )
        with pytest.raises(TenantMismatchError):
            delegation_service.delegate_role(TENANT, "alice", "bob", foreign.id, ends_at=_week())

        assert delegation_service.list_delegations(TENANT) == []

    def test_delegated_role_cannot_be_redelegated(self, delegation_service, alice_staff):
        delegation_service.delegate_role(TENANT, "alice", "bob", alice_staff.id, ends_at=_week())
        with pytest.raises(DelegatorLacksRoleError):
            delegation_service.delegate_role(TENANT, "bob", "carol", alice_staff.id, ends_at=_week())


class TestDelegationWindow:

    def test_end_before_start_rejected(self, delegation_service, alice_staff):
        start = utcnow() + timedelta(days=5)
        with pytest.raises(InvalidDelegationError):
            delegation_service.delegate_role(
                TENANT, "alice", "bob", alice_staff.id,
                starts_at=start, ends_at=start - timedelta(days=1),
            )

    def test_end_in_past_rejected(self, delegation_service, alice_staff):
        with pytest.raises(InvalidDelegationError):
            delegation_service.delegate_role(
                TENANT, "alice", "bob", alice_staff.id,
                starts_at=utcnow() - timedelta(days=3), ends_at=utcnow() - timedelta(days=1),
            )

    def test_unit_scope_requires_id(self, delegation_service, alice_staff):
        with pytest.raises(InvalidDelegationError):
            delegation_service.delegate_role(
                TENANT, "alice", "bob", alice_staff.id, scope_type=DelegationScope.UNIT, ends_at=_week()
            )

    def test_global_scope_rejects_id(self, delegation_service, alice_staff):
        with pytest.raises(InvalidDelegationError):
            delegation_service.delegate_role(
                TENANT, "alice", "bob", alice_staff.id, scope_id="youth", ends_at=_week()
            )

    def test_event_scope_requires_end(self, delegation_service, alice_staff):
        with pytest.raises(InvalidDelegationError):
            delegation_service.delegate_role(
                TENANT, "alice", "bob", alice_staff.id,
                scope_type=DelegationScope.EVENT, scope_id="retreat-2026",
            )

    def test_scoped_delegation_only_applies_in_scope(self, delegation_service, alice_staff, seeded_db):
        delegation_service.delegate_role(
            TENANT, "alice", "bob", alice_staff.id,
            scope_type=DelegationScope.UNIT, scope_id="youth", ends_at=_week(),
        )

        projection = EffectiveAccessResolver(seeded_db).resolve(TENANT, "bob")

        assert "care:manage" not in projection.permissions_for(None)
        assert "care:manage" in projection.permissions_for("unit:youth")
        assert "care:manage" not in projection.permissions_for("unit:music")

    def test_future_delegation_not_yet_effective(self, delegation_service, alice_staff, seeded_db):
        starts = utcnow() + timedelta(days=2)
        delegation_service.delegate_role(
            TENANT, "alice", "bob", alice_staff.id, starts_at=starts, ends_at=starts + timedelta(days=1)
        )
        resolver = EffectiveAccessResolver(seeded_db)

        now_projection = resolver.resolve(TENANT, "bob")
        assert "care:manage" not in now_projection.permissions
        assert now_projection.valid_until is not None

        later = resolver.resolve(TENANT, "bob", now=starts + timedelta(hours=1))
        assert "care:manage" in later.permissions

        after = resolver.resolve(TENANT, "bob", now=starts + timedelta(days=2))
        assert "care:manage" not in after.permissions


class TestRevokeDelegation:

    def test_revoke_removes_access(self, delegation_service, alice_staff, seeded_db):
        delegation = delegation_service.delegate_role(TENANT, "alice", "bob", alice_staff.id, ends_at=_week())

        revoked = delegation_service.revoke_delegation(TENANT, delegation.id, actor_user_id="alice")

        assert revoked.status == DelegationStatus.REVOKED.value
        assert revoked.revoked_by == "alice"
        assert "care:manage" not in EffectiveAccessResolver(seeded_db).resolve(TENANT, "bob").permissions

    def test_grant_then_revoke_restores_exact_permission_set(
        self, delegation_service, role_service, alice_staff, provisioned_roles, projection_cache, seeded_db
    ):
        role_service.assign_role(TENANT, "bob", provisioned_roles["member"].id, actor_user_id="admin-1")
        before, _ = projection_cache.get_projection(seeded_db, TENANT, "bob")

        delegation = delegation_service.delegate_role(TENANT, "alice", "bob", alice_staff.id, ends_at=_week())
        during, from_cache = projection_cache.get_projection(seeded_db, TENANT, "bob")
        assert from_cache is False
        assert during.permissions > before.permissions

        delegation_service.revoke_delegation(TENANT, delegation.id, actor_user_id="alice")
        after, from_cache = projection_cache.get_projection(seeded_db, TENANT, "bob")

        assert from_cache is False
        assert after.permissions == before.permissions
        assert after.scoped_permissions == before.scoped_permissions
        assert after.role_ids == before.role_ids
        assert after.delegation_ids == frozenset()

    def test_revoked_is_terminal(self, delegation_service, alice_staff):
        delegation = delegation_service.delegate_role(TENANT, "alice", "bob", alice_staff.id, ends_at=_week())
        delegation_service.revoke_delegation(TENANT, delegation.id, actor_user_id="alice")

        with pytest.raises(DelegationExpiredOrRevokedError):
            delegation_service.revoke_delegation(TENANT, delegation.id, actor_user_id="alice")

    def test_revoke_from_other_tenant_not_found(self, delegation_service, alice_staff):
        delegation = delegation_service.delegate_role(TENANT, "alice", "bob", alice_staff.id, ends_at=_week())
        with pytest.raises(DelegationNotFoundError):
            delegation_service.revoke_delegation(OTHER_TENANT, delegation.id, actor_user_id="mallory")


class TestExpiry:

    def _expire_in_store(self, db, delegation):
        delegation.starts_at = utcnow() - timedelta(days=3)
        delegation.ends_at = utcnow() - timedelta(minutes=1)
        db.commit()

    def test_lazy_expiry_on_read(self, delegation_service, alice_staff, seeded_db):
        delegation = delegation_service.delegate_role(TENANT, "alice", "bob", alice_staff.id, ends_at=_week())
        self._expire_in_store(seeded_db, delegation)

        assert delegation.status == DelegationStatus.ACTIVE.value
        assert delegation.effective_status() == DelegationStatus.EXPIRED
        assert delegation_service.list_delegations(TENANT, "bob", DelegationStatus.ACTIVE) == []
        assert [d.id for d in delegation_service.list_delegations(TENANT, "bob", DelegationStatus.EXPIRED)] == [
            delegation.id
        ]
        assert "care:manage" not in EffectiveAccessResolver(seeded_db).resolve(TENANT, "bob").permissions

    def test_expired_cannot_be_revoked(self, delegation_service, alice_staff, seeded_db):
        delegation = delegation_service.delegate_role(TENANT, "alice", "bob", alice_staff.id, ends_at=_week())
        self._expire_in_store(seeded_db, delegation)

        with pytest.raises(DelegationExpiredOrRevokedError):
            delegation_service.revoke_delegation(TENANT, delegation.id, actor_user_id="alice")

    def test_sweep_marks_due_delegations(self, delegation_service, alice_staff, seeded_db):
        due = delegation_service.delegate_role(TENANT, "alice", "bob", alice_staff.id, ends_at=_week())
        current = delegation_service.delegate_role(TENANT, "alice", "carol", alice_staff.id, ends_at=_week())
        self._expire_in_store(seeded_db, due)
        bob_epoch = read_epochs(seeded_db, TENANT, "bob").user_epoch

        expired = delegation_service.expire_due_delegations()

        assert [d.id for d in expired] == [due.id]
        seeded_db.refresh(due)
        seeded_db.refresh(current)
        assert due.status == DelegationStatus.EXPIRED.value
        assert due.expired_at is not None
        assert current.status == DelegationStatus.ACTIVE.value
        assert read_epochs(seeded_db, TENANT, "bob").user_epoch == bob_epoch + 1
        assert seeded_db.query(AuditLog).filter(
            AuditLog.action == AuditAction.DELEGATION_EXPIRED.value
        ).count() == 1

    def test_sweep_is_idempotent(self, delegation_service, alice_staff, seeded_db):
        due = delegation_service.delegate_role(TENANT, "alice", "bob", alice_staff.id, ends_at=_week())
        self._expire_in_store(seeded_db, due)

        delegation_service.expire_due_delegations()
        assert delegation_service.expire_due_delegations() == []


class TestListDelegations:

    def test_list_by_user_matches_either_side(self, delegation_service, alice_staff):
        delegation_service.delegate_role(TENANT, "alice", "bob", alice_staff.id, ends_at=_week())

        assert len(delegation_service.list_delegations(TENANT, "alice")) == 1
        assert len(delegation_service.list_delegations(TENANT, "bob")) == 1
        assert delegation_service.list_delegations(TENANT, "carol") == []

    def test_list_is_tenant_scoped(self, delegation_service, alice_staff):
        delegation_service.delegate_role(TENANT, "alice", "bob", alice_staff.id, ends_at=_week())
        assert delegation_service.list_delegations(OTHER_TENANT) == []
