"""
Tests for the Access Decision Service.

Tests cover:
- Evaluation order: permission, then feature, then maker-checker
- Treasurer / auditor walkthrough across a plan expiry
- Maker-checker denial for checker permissions only
- Scoped checks against unit delegations
- Fail-closed behaviour on store outage and timeout, always audited
- Denial auditing toggle
- Caller sessions left untouched by denials and store failures
- Statement budget on PostgreSQL and reserved "*" identifiers
- require_access raising AccessDeniedError
"""

from contextlib import nullcontext
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from accessgate.config.settings import Settings
from accessgate.database.session import statement_timeout
from accessgate.models.base import utcnow
from accessgate.models.delegation import DelegationScope
from accessgate.models.entitlement import TenantFeatureGrant
from accessgate.models.lifecycle_event import LifecycleEventType
from accessgate.platform.audit import AuditAction, AuditLog, AuditOutcome
from accessgate.platform.errors import (
    AccessDeniedError,
    DecisionTimeoutError,
    DenialReason,
    InvalidIdentifierError,
)
from accessgate.services.access_decision_service import AccessDecisionService
from accessgate.services.access_epochs import read_epochs
from accessgate.services.access_resolver import Deadline
from accessgate.services.license_lifecycle_handler import LicenseLifecycleHandler, LifecycleEvent
from accessgate.tests.helpers import OTHER_TENANT, TENANT


@pytest.fixture
def finance_team(role_service, provisioned_roles):
    """treasurer "tina" and auditor "otto" in TENANT."""
    role_service.assign_role(TENANT, "tina", provisioned_roles["treasurer"].id, actor_user_id="admin-1")
    role_service.assign_role(TENANT, "otto", provisioned_roles["auditor"].id, actor_user_id="admin-1")
    return provisioned_roles


def _audit_rows(db, action, user_id=None):
    query = db.query(AuditLog).filter(AuditLog.action == action.value)
    if user_id:
        query = query.filter(AuditLog.user_id == user_id)
    return query.all()


class TestEvaluationOrder:

    def test_no_roles_is_permission_denied(self, decision_service):
        decision = decision_service.check_access(TENANT, "nobody", "members:view")

        assert decision.granted is False
        assert decision.reason == DenialReason.PERMISSION_DENIED

    def test_permission_checked_before_feature(self, decision_service, finance_team):
        # Neither the permission nor the feature: the permission wins.
        decision = decision_service.check_access(
            TENANT, "tina", "finance:approve", feature="donation_approvals"
        )
        assert decision.reason == DenialReason.PERMISSION_DENIED

    def test_feature_checked_when_permission_held(self, decision_service, finance_team):
        decision = decision_service.check_access(TENANT, "tina", "finance:create", feature="basic_donations")
        assert decision.reason == DenialReason.FEATURE_NOT_LICENSED

    def test_permission_only_check_ignores_license(self, decision_service, finance_team):
        assert decision_service.check_access(TENANT, "tina", "finance:create").granted is True

    def test_feature_checked_before_maker_checker(self, decision_service, finance_team, entitlement_service):
        entitlement_service.grant_features_for_plan(TENANT, "essential")

        decision = decision_service.check_access(
            TENANT, "otto", "finance:approve", feature="donation_approvals", maker_user_id="otto"
        )

        assert decision.reason == DenialReason.FEATURE_NOT_LICENSED


class TestFinanceWalkthrough:

    def test_treasurer_and_auditor_across_plan_lifecycle(
        self, decision_service, finance_team, seeded_db, projection_cache
    ):
        handler = LicenseLifecycleHandler(seeded_db, cache=projection_cache)
        activated_at = utcnow()
        handler.handle_event(LifecycleEvent(
            event_id="evt-1",
            tenant_id=TENANT,
            event_type=LifecycleEventType.LICENSE_ACTIVATED,
            plan_name="essential",
            effective_at=activated_at,
        ))

        assert decision_service.check_access(
            TENANT, "tina", "finance:create", feature="basic_donations"
        ).granted is True
        assert decision_service.check_access(
            TENANT, "tina", "finance:approve", feature="donation_approvals"
        ).reason == DenialReason.PERMISSION_DENIED
        assert decision_service.check_access(
            TENANT, "otto", "finance:approve", feature="donation_approvals"
        ).reason == DenialReason.FEATURE_NOT_LICENSED

        handler.handle_event(LifecycleEvent(
            event_id="evt-2",
            tenant_id=TENANT,
            event_type=LifecycleEventType.LICENSE_EXPIRED,
            effective_at=activated_at + timedelta(days=30),
        ))

        decision = decision_service.check_access(TENANT, "tina", "finance:create", feature="basic_donations")
        assert decision.granted is False
        assert decision.reason == DenialReason.FEATURE_NOT_LICENSED
        assert decision.from_cache is False

    def test_upgrade_unlocks_approvals(self, decision_service, finance_team, entitlement_service):
        entitlement_service.grant_features_for_plan(TENANT, "essential")
        assert decision_service.check_access(
            TENANT, "otto", "finance:approve", feature="donation_approvals"
        ).granted is False

        entitlement_service.grant_features_for_plan(TENANT, "professional")

        assert decision_service.check_access(
            TENANT, "otto", "finance:approve", feature="donation_approvals"
        ).granted is True


class TestMakerChecker:

    @pytest.fixture(autouse=True)
    def professional(self, entitlement_service):
        entitlement_service.grant_features_for_plan(TENANT, "professional")

    def test_checker_cannot_approve_own_record(self, decision_service, finance_team):
        decision = decision_service.check_access(
            TENANT, "otto", "finance:approve", feature="donation_approvals", maker_user_id="otto"
        )
        assert decision.reason == DenialReason.MAKER_CHECKER_VIOLATION

    def test_checker_approves_someone_elses_record(self, decision_service, finance_team):
        decision = decision_service.check_access(
            TENANT, "otto", "finance:approve", feature="donation_approvals", maker_user_id="tina"
        )
        assert decision.granted is True

    def test_maker_permission_not_restricted(self, decision_service, finance_team):
        decision = decision_service.check_access(
            TENANT, "tina", "finance:create", feature="basic_donations", maker_user_id="tina"
        )
        assert decision.granted is True


class TestScopesAndTenants:

    def test_unit_delegation_grants_only_in_unit(
        self, decision_service, delegation_service, role_service, provisioned_roles
    ):
        staff = provisioned_roles["staff"]
        role_service.assign_role(TENANT, "alice", staff.id, actor_user_id="admin-1")
        delegation_service.delegate_role(
            TENANT, "alice", "bob", staff.id,
            scope_type=DelegationScope.UNIT, scope_id="youth", ends_at=utcnow() + timedelta(days=2),
        )

        assert decision_service.check_access(
            TENANT, "bob", "care:manage", scope_type="unit", scope_id="youth"
        ).granted is True
        assert decision_service.check_access(
            TENANT, "bob", "care:manage", scope_type="unit", scope_id="music"
        ).granted is False
        assert decision_service.check_access(TENANT, "bob", "care:manage").granted is False

    def test_role_does_not_leak_across_tenants(self, decision_service, finance_team):
        decision = decision_service.check_access(OTHER_TENANT, "tina", "finance:create")
        assert decision.reason == DenialReason.PERMISSION_DENIED

    def test_repeat_decision_served_from_cache(self, decision_service, finance_team):
        first = decision_service.check_access(TENANT, "tina", "finance:view")
        second = decision_service.check_access(TENANT, "tina", "finance:view")

        assert first.from_cache is False
        assert second.from_cache is True
        assert second.epoch == first.epoch

    def test_decision_after_mutation_is_fresh(self, decision_service, role_service, provisioned_roles):
        assert decision_service.check_access(TENANT, "user-9", "members:view").granted is False

        role_service.assign_role(TENANT, "user-9", provisioned_roles["member"].id, actor_user_id="admin-1")

        assert decision_service.check_access(TENANT, "user-9", "members:view").granted is True


class TestFailClosed:

    def test_store_outage_denies_and_audits(self, decision_service, finance_team, seeded_db):
        outage = OperationalError("SELECT", {}, Exception("connection refused"))
        with patch.object(seeded_db, "query", side_effect=outage):
            decision = decision_service.check_access(TENANT, "tina", "finance:view")

        assert decision.granted is False
        assert decision.reason == DenialReason.STORE_UNAVAILABLE
        rows = _audit_rows(seeded_db, AuditAction.ACCESS_CHECK_FAILED, "tina")
        assert len(rows) == 1
        assert rows[0].outcome == AuditOutcome.FAILURE.value
        assert rows[0].error_code == DenialReason.STORE_UNAVAILABLE.value

    def test_timeout_denies_and_audits(self, decision_service, finance_team, seeded_db):
        with patch.object(Deadline, "check", side_effect=DecisionTimeoutError("too slow")):
            decision = decision_service.check_access(TENANT, "tina", "finance:view")

        assert decision.granted is False
        assert decision.reason == DenialReason.DECISION_TIMEOUT
        assert len(_audit_rows(seeded_db, AuditAction.ACCESS_CHECK_FAILED, "tina")) == 1

    def test_failures_audited_even_when_denials_are_not(
        self, seeded_db, projection_cache, catalog, finance_team
    ):
        service = AccessDecisionService(
            seeded_db, cache=projection_cache, catalog=catalog, settings=Settings(audit_denials=False)
        )
        with patch.object(Deadline, "check", side_effect=DecisionTimeoutError("too slow")):
            service.check_access(TENANT, "tina", "finance:view")

        assert len(_audit_rows(seeded_db, AuditAction.ACCESS_CHECK_FAILED, "tina")) == 1

    def test_require_access_raises_on_outage(self, decision_service, finance_team, seeded_db):
        outage = OperationalError("SELECT", {}, Exception("connection refused"))
        with patch.object(seeded_db, "query", side_effect=outage):
            with pytest.raises(AccessDeniedError) as exc_info:
                decision_service.require_access(TENANT, "tina", "finance:view")

        assert exc_info.value.reason == DenialReason.STORE_UNAVAILABLE


class TestDenialAudit:

    def test_plain_denial_is_audited(self, decision_service, seeded_db):
        decision_service.check_access(TENANT, "nobody", "rbac:manage")

        rows = _audit_rows(seeded_db, AuditAction.ACCESS_DENIED, "nobody")
        assert len(rows) == 1
        assert rows[0].resource_id == "rbac:manage"
        assert rows[0].outcome == AuditOutcome.DENIED.value
        assert rows[0].error_code == DenialReason.PERMISSION_DENIED.value

    def test_denial_audit_can_be_disabled(self, seeded_db, projection_cache, catalog):
        service = AccessDecisionService(
            seeded_db, cache=projection_cache, catalog=catalog, settings=Settings(audit_denials=False)
        )
        service.check_access(TENANT, "nobody", "rbac:manage")

        assert _audit_rows(seeded_db, AuditAction.ACCESS_DENIED, "nobody") == []

    def test_grants_are_not_audited(self, decision_service, finance_team, seeded_db):
        decision_service.check_access(TENANT, "tina", "finance:view")
        assert _audit_rows(seeded_db, AuditAction.ACCESS_DENIED, "tina") == []


class TestRequireAccess:

    def test_returns_decision_when_granted(self, decision_service, finance_team):
        assert decision_service.require_access(TENANT, "tina", "finance:view").granted is True

    def test_raises_with_reason(self, decision_service, finance_team):
        with pytest.raises(AccessDeniedError) as exc_info:
            decision_service.require_access(TENANT, "tina", "finance:create", feature="basic_donations")

        error = exc_info.value
        assert error.http_status == 403
        assert error.details == {
            "reason": "FeatureNotLicensed",
            "permission": "finance:create",
            "feature": "basic_donations",
        }

    def test_works_without_cache(self, seeded_db, catalog, finance_team):
        service = AccessDecisionService(seeded_db, catalog=catalog)
        decision = service.require_access(TENANT, "tina", "finance:view")
        assert decision.from_cache is False


class TestCallerSession:
    """A check made inside a caller's unit of work leaves that work alone."""

    def _pending_grant(self, db):
        grant = TenantFeatureGrant(tenant_id=TENANT, feature_name="care_management", granted_by="admin")
        db.add(grant)
        return grant

    def _grant_count(self, db):
        return (
            db.query(TenantFeatureGrant)
            .filter(
                TenantFeatureGrant.tenant_id == TENANT,
                TenantFeatureGrant.feature_name == "care_management",
            )
            .count()
        )

    def test_denial_does_not_commit_pending_work(self, decision_service, seeded_db):
        self._pending_grant(seeded_db)

        decision = decision_service.check_access(TENANT, "nobody", "rbac:manage")

        assert decision.reason == DenialReason.PERMISSION_DENIED
        assert len(_audit_rows(seeded_db, AuditAction.ACCESS_DENIED, "nobody")) == 1
        seeded_db.rollback()
        assert self._grant_count(seeded_db) == 0

    def test_store_outage_does_not_discard_pending_work(self, decision_service, finance_team, seeded_db):
        self._pending_grant(seeded_db)
        outage = OperationalError("SELECT", {}, Exception("connection refused"))
        with patch.object(seeded_db, "query", side_effect=outage):
            decision = decision_service.check_access(TENANT, "tina", "finance:view")

        assert decision.reason == DenialReason.STORE_UNAVAILABLE
        seeded_db.commit()
        assert self._grant_count(seeded_db) == 1
        assert len(_audit_rows(seeded_db, AuditAction.ACCESS_CHECK_FAILED, "tina")) == 1

    def test_caller_session_never_committed_or_rolled_back(
        self, seeded_db, projection_cache, catalog, settings
    ):
        caller = MagicMock(wraps=seeded_db)
        service = AccessDecisionService(caller, cache=projection_cache, catalog=catalog, settings=settings)

        assert service.check_access(TENANT, "nobody", "rbac:manage").granted is False

        caller.commit.assert_not_called()
        caller.rollback.assert_not_called()
        caller.flush.assert_not_called()


class TestStatementBudget:

    @pytest.fixture
    def pg_db(self):
        db = MagicMock()
        db.get_bind.return_value.dialect.name = "postgresql"
        db.execute.return_value.scalar.return_value = "30s"
        return db

    def _set_config_values(self, db):
        return [c.args[1]["value"] for c in db.execute.call_args_list if len(c.args) > 1]

    def test_postgresql_statements_bounded_then_restored(self, pg_db):
        with statement_timeout(pg_db, 250):
            pg_db.execute.assert_called()

        assert "current_setting('statement_timeout')" in str(pg_db.execute.call_args_list[0].args[0])
        assert self._set_config_values(pg_db) == ["250ms", "30s"]

    def test_failed_statement_skips_restore(self, pg_db):
        with pytest.raises(OperationalError):
            with statement_timeout(pg_db, 250):
                raise OperationalError("SELECT", {}, Exception("canceling statement"))

        assert self._set_config_values(pg_db) == ["250ms"]

    def test_other_dialects_and_zero_budget_untouched(self, pg_db):
        with statement_timeout(pg_db, 0):
            pass
        sqlite_db = MagicMock()
        sqlite_db.get_bind.return_value.dialect.name = "sqlite"
        with statement_timeout(sqlite_db, 250):
            pass

        pg_db.execute.assert_not_called()
        sqlite_db.execute.assert_not_called()

    def test_check_runs_under_the_configured_budget(self, decision_service, finance_team, seeded_db):
        with patch(
            "accessgate.services.access_decision_service.statement_timeout",
            side_effect=lambda db, ms: nullcontext(),
        ) as bounded:
            assert decision_service.check_access(TENANT, "tina", "finance:view").granted is True

        bounded.assert_called_once_with(seeded_db, 250)

    def test_cancelled_statement_is_decision_timeout(self, decision_service, finance_team, seeded_db):
        cancelled = Exception("canceling statement due to statement timeout")
        cancelled.pgcode = "57014"
        with patch.object(seeded_db, "query", side_effect=OperationalError("SELECT", {}, cancelled)):
            decision = decision_service.check_access(TENANT, "tina", "finance:view")

        assert decision.granted is False
        assert decision.reason == DenialReason.DECISION_TIMEOUT
        rows = _audit_rows(seeded_db, AuditAction.ACCESS_CHECK_FAILED, "tina")
        assert [row.error_code for row in rows] == [DenialReason.DECISION_TIMEOUT.value]


@pytest.mark.security
class TestReservedIdentifiers:

    def test_star_tenant_is_denied_without_reading_global_counter(self, decision_service, seeded_db):
        decision = decision_service.check_access("*", "user-1", "members:view")

        assert decision.granted is False
        assert decision.reason == DenialReason.PERMISSION_DENIED
        assert seeded_db.query(AuditLog).filter(AuditLog.action == AuditAction.ACCESS_DENIED.value).count() == 0

    def test_star_ids_rejected_by_epoch_store(self, seeded_db):
        with pytest.raises(InvalidIdentifierError):
            read_epochs(seeded_db, "*", "user-1")
        with pytest.raises(InvalidIdentifierError):
            read_epochs(seeded_db, TENANT, "*")

    def test_star_tenant_mutation_rejected(self, entitlement_service):
        with pytest.raises(InvalidIdentifierError):
            entitlement_service.grant_feature("*", "care_management")
