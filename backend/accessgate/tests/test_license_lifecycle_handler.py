"""
Tests for the Entitlement Lifecycle Controller.

Tests cover:
- Activation, upgrade, expiry and cancellation
- Deduplication on the external event id
- Out-of-order (stale) events recorded but not applied
- Unknown plans rejected and recorded
- Exactly one audit row per processed event
- Manual grants survive expiry
"""

from datetime import timedelta

import pytest

from accessgate.models.base import utcnow
from accessgate.models.entitlement import GrantSource, LicenseStatus, TenantFeatureGrant, TenantLicense
from accessgate.models.lifecycle_event import (
    LifecycleEventType,
    LifecycleOutcome,
    ProcessedLifecycleEvent,
)
from accessgate.platform.audit import AuditLog
from accessgate.platform.errors import UnknownPlanError
from accessgate.services.entitlement_service import EntitlementService
from accessgate.services.license_lifecycle_handler import LicenseLifecycleHandler, LifecycleEvent
from accessgate.tests.helpers import TENANT


@pytest.fixture
def handler(seeded_db, projection_cache):
    return LicenseLifecycleHandler(seeded_db, cache=projection_cache, correlation_id="corr-1")


@pytest.fixture
def t0():
    return utcnow() - timedelta(days=90)


def _event(event_id, event_type, effective_at, plan_name=None, tenant_id=TENANT):
    return LifecycleEvent(
        event_id=event_id,
        tenant_id=tenant_id,
        event_type=event_type,
        effective_at=effective_at,
        plan_name=plan_name,
    )


def _license(db, tenant_id=TENANT):
    return db.query(TenantLicense).filter(TenantLicense.tenant_id == tenant_id).one()


def _lifecycle_audit_rows(db, event_id):
    return db.query(AuditLog).filter(
        AuditLog.resource_type == "lifecycle_event",
        AuditLog.resource_id == event_id,
    ).all()


def _licensed(db, tenant_id=TENANT):
    return EntitlementService(db).licensed_features(tenant_id)


class TestApplyEvents:

    def test_activation_grants_plan(self, handler, seeded_db, catalog, t0):
        result = handler.handle_event(_event("evt-1", LifecycleEventType.LICENSE_ACTIVATED, t0, "essential"))

        assert result.processed is True
        assert result.outcome == LifecycleOutcome.APPLIED
        assert sorted(result.features_granted) == sorted(catalog.plans["essential"].features)
        assert _licensed(seeded_db) == set(catalog.plans["essential"].features)

        tenant_license = _license(seeded_db)
        assert tenant_license.plan_name == "essential"
        assert tenant_license.status == LicenseStatus.ACTIVE.value
        assert tenant_license.last_event_id == "evt-1"

    def test_upgrade_adds_features(self, handler, seeded_db, t0):
        handler.handle_event(_event("evt-1", LifecycleEventType.LICENSE_ACTIVATED, t0, "essential"))

        result = handler.handle_event(
            _event("evt-2", LifecycleEventType.LICENSE_UPGRADED, t0 + timedelta(days=1), "professional")
        )

        assert set(result.features_granted) == {"donation_approvals", "financial_reports", "mass_communications"}
        assert _license(seeded_db).plan_name == "professional"
        grant = seeded_db.query(TenantFeatureGrant).filter(
            TenantFeatureGrant.tenant_id == TENANT,
            TenantFeatureGrant.feature_name == "donation_approvals",
        ).one()
        assert grant.granted_by == GrantSource.UPGRADE.value

    def test_expiry_withdraws_plan_grants(self, handler, seeded_db, t0):
        handler.handle_event(_event("evt-1", LifecycleEventType.LICENSE_ACTIVATED, t0, "professional"))

        result = handler.handle_event(_event("evt-2", LifecycleEventType.LICENSE_EXPIRED, t0 + timedelta(days=30)))

        assert len(result.features_withdrawn) == 7
        assert _licensed(seeded_db) == set()
        tenant_license = _license(seeded_db)
        assert tenant_license.status == LicenseStatus.EXPIRED.value
        assert tenant_license.plan_name == "professional"

    def test_cancellation_withdraws_plan_grants(self, handler, seeded_db, t0):
        handler.handle_event(_event("evt-1", LifecycleEventType.LICENSE_ACTIVATED, t0, "essential"))
        handler.handle_event(_event("evt-2", LifecycleEventType.LICENSE_CANCELLED, t0 + timedelta(days=3)))

        assert _licensed(seeded_db) == set()
        assert _license(seeded_db).status == LicenseStatus.CANCELLED.value

    def test_manual_grant_survives_expiry(self, handler, entitlement_service, seeded_db, t0):
        handler.handle_event(_event("evt-1", LifecycleEventType.LICENSE_ACTIVATED, t0, "essential"))
        entitlement_service.grant_feature(TENANT, "care_management", actor_user_id="admin-1")

        handler.handle_event(_event("evt-2", LifecycleEventType.LICENSE_EXPIRED, t0 + timedelta(days=30)))

        assert _licensed(seeded_db) == {"care_management"}

    def test_reactivation_after_expiry(self, handler, seeded_db, t0):
        handler.handle_event(_event("evt-1", LifecycleEventType.LICENSE_ACTIVATED, t0, "essential"))
        handler.handle_event(_event("evt-2", LifecycleEventType.LICENSE_EXPIRED, t0 + timedelta(days=30)))

        result = handler.handle_event(
            _event("evt-3", LifecycleEventType.LICENSE_ACTIVATED, t0 + timedelta(days=31), "essential")
        )

        assert len(result.features_granted) == 4
        assert "basic_donations" in _licensed(seeded_db)


class TestIdempotency:

    def test_duplicate_event_is_skipped(self, handler, seeded_db, t0):
        event = _event("evt-1", LifecycleEventType.LICENSE_ACTIVATED, t0, "essential")
        handler.handle_event(event)

        result = handler.handle_event(event)

        assert result.processed is False
        assert result.duplicate is True
        assert seeded_db.query(ProcessedLifecycleEvent).filter(
            ProcessedLifecycleEvent.event_id == "evt-1"
        ).count() == 1
        assert len(_lifecycle_audit_rows(seeded_db, "evt-1")) == 1

    def test_stale_event_is_recorded_not_applied(self, handler, seeded_db, t0):
        handler.handle_event(_event("evt-2", LifecycleEventType.LICENSE_ACTIVATED, t0 + timedelta(days=1), "essential"))

        result = handler.handle_event(_event("evt-1", LifecycleEventType.LICENSE_EXPIRED, t0))

        assert result.processed is False
        assert result.outcome == LifecycleOutcome.STALE
        assert "basic_donations" in _licensed(seeded_db)
        assert _license(seeded_db).last_event_id == "evt-2"

        ledger = seeded_db.query(ProcessedLifecycleEvent).filter(
            ProcessedLifecycleEvent.event_id == "evt-1"
        ).one()
        assert ledger.outcome == LifecycleOutcome.STALE.value
        assert len(_lifecycle_audit_rows(seeded_db, "evt-1")) == 1

    def test_stale_event_redelivered_is_duplicate(self, handler, t0):
        handler.handle_event(_event("evt-2", LifecycleEventType.LICENSE_ACTIVATED, t0 + timedelta(days=1), "essential"))
        handler.handle_event(_event("evt-1", LifecycleEventType.LICENSE_EXPIRED, t0))

        assert handler.handle_event(_event("evt-1", LifecycleEventType.LICENSE_EXPIRED, t0)).duplicate is True

    def test_unknown_plan_rejected_and_recorded(self, handler, seeded_db, t0):
        with pytest.raises(UnknownPlanError):
            handler.handle_event(_event("evt-1", LifecycleEventType.LICENSE_ACTIVATED, t0, "platinum"))

        ledger = seeded_db.query(ProcessedLifecycleEvent).filter(
            ProcessedLifecycleEvent.event_id == "evt-1"
        ).one()
        assert ledger.outcome == LifecycleOutcome.REJECTED.value
        assert seeded_db.query(TenantLicense).count() == 0
        rows = _lifecycle_audit_rows(seeded_db, "evt-1")
        assert len(rows) == 1
        assert rows[0].action == "lifecycle.event_rejected"

    def test_one_audit_row_per_applied_event(self, handler, seeded_db, t0):
        handler.handle_event(_event("evt-1", LifecycleEventType.LICENSE_ACTIVATED, t0, "essential"))
        handler.handle_event(_event("evt-2", LifecycleEventType.LICENSE_UPGRADED, t0 + timedelta(days=1), "enterprise"))
        handler.handle_event(_event("evt-3", LifecycleEventType.LICENSE_EXPIRED, t0 + timedelta(days=2)))

        tenant_rows = seeded_db.query(AuditLog).filter(AuditLog.tenant_id == TENANT).all()
        assert len(tenant_rows) == 3
        assert {row.resource_id for row in tenant_rows} == {"evt-1", "evt-2", "evt-3"}
        assert all(row.correlation_id == "corr-1" for row in tenant_rows)
        assert all(row.source == "webhook" for row in tenant_rows)

    def test_events_do_not_cross_tenants(self, handler, seeded_db, t0):
        handler.handle_event(_event("evt-1", LifecycleEventType.LICENSE_ACTIVATED, t0, "enterprise"))
        handler.handle_event(_event("evt-2", LifecycleEventType.LICENSE_EXPIRED, t0 + timedelta(days=1), tenant_id="tenant-b"))

        assert len(_licensed(seeded_db)) == 9
