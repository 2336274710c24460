"""
Entitlement Lifecycle Controller.

Consumes license lifecycle events from the billing collaborator (already
signature-verified at that boundary) with:
- Event deduplication on the external event id (processed-events ledger)
- Out-of-order protection using effectiveAt
- One audit row per processed event
- Ledger row, license state and grant changes committed together

licenseActivated / licenseUpgraded -> grant_features_for_plan
licenseExpired / licenseCancelled  -> withdraw plan-sourced grants
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from accessgate.models.base import as_utc, utcnow
from accessgate.models.entitlement import GrantSource, LicenseStatus, TenantLicense
from accessgate.models.lifecycle_event import (
    LifecycleEventType,
    LifecycleOutcome,
    ProcessedLifecycleEvent,
)
from accessgate.platform.audit import AuditAction
from accessgate.platform.errors import UnknownPlanError
from accessgate.services.base import MutationService
from accessgate.services.entitlement_service import EntitlementService

logger = logging.getLogger(__name__)

GRANTING_EVENTS = {
    LifecycleEventType.LICENSE_ACTIVATED: GrantSource.SYSTEM,
    LifecycleEventType.LICENSE_UPGRADED: GrantSource.UPGRADE,
}

WITHDRAWING_EVENTS = {
    LifecycleEventType.LICENSE_EXPIRED: LicenseStatus.EXPIRED,
    LifecycleEventType.LICENSE_CANCELLED: LicenseStatus.CANCELLED,
}

_AUDIT_ACTIONS = {
    LifecycleOutcome.APPLIED: AuditAction.LIFECYCLE_EVENT_APPLIED,
    LifecycleOutcome.STALE: AuditAction.LIFECYCLE_EVENT_STALE,
    LifecycleOutcome.REJECTED: AuditAction.LIFECYCLE_EVENT_REJECTED,
}


@dataclass
class LifecycleEvent:
    """Inbound license lifecycle event."""
    event_id: str
    tenant_id: str
    event_type: LifecycleEventType
    effective_at: datetime
    plan_name: Optional[str] = None

    def payload_hash(self) -> str:
        payload = json.dumps(
            {
                "event_id": self.event_id,
                "tenant_id": self.tenant_id,
                "event_type": LifecycleEventType(self.event_type).value,
                "plan_name": self.plan_name,
                "effective_at": as_utc(self.effective_at).isoformat(),
            },
            sort_keys=True,
        )
        return hashlib.sha256(payload.encode()).hexdigest()


@dataclass
class LifecycleProcessingResult:
    """Result of lifecycle event processing."""
    processed: bool
    message: str
    event_id: str
    outcome: Optional[LifecycleOutcome] = None
    duplicate: bool = False
    features_granted: list[str] = field(default_factory=list)
    features_withdrawn: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "message": self.message,
            "event_id": self.event_id,
            "outcome": self.outcome.value if self.outcome else None,
            "duplicate": self.duplicate,
            "features_granted": self.features_granted,
            "features_withdrawn": self.features_withdrawn,
        }


class LicenseLifecycleHandler(MutationService):
    """
    Handler for license lifecycle events with idempotency.

    Ensures each event is processed exactly once using:
    - the external event id (unique ledger row, claimed before any mutation)
    - effectiveAt comparison against the tenant license for out-of-order delivery
    """

    def __init__(self, db: Session, **kwargs):
        kwargs.setdefault("source", "webhook")
        super().__init__(db, **kwargs)
        self.entitlements = EntitlementService(db, source=self.source, correlation_id=self.correlation_id)

    def _is_duplicate(self, event_id: str) -> bool:
        """
        Check if the event has already been processed.

        Args:
            event_id: External lifecycle event ID

        Returns:
            True if duplicate, False otherwise
        """
        existing = self.db.query(ProcessedLifecycleEvent.id).filter(
            ProcessedLifecycleEvent.event_id == event_id
        ).first()
        return existing is not None

    def _claim_event(self, event: LifecycleEvent) -> Optional[ProcessedLifecycleEvent]:
        """
        Insert the ledger row inside a savepoint.

        Returns None when a concurrent delivery of the same event id won the
        insert; nothing has been mutated at that point.
        """
        ledger = ProcessedLifecycleEvent(
            event_id=event.event_id,
            tenant_id=event.tenant_id,
            event_type=LifecycleEventType(event.event_type).value,
            plan_name=event.plan_name,
            effective_at=as_utc(event.effective_at),
            outcome=LifecycleOutcome.APPLIED.value,
            payload_hash=event.payload_hash(),
            processed_at=utcnow(),
        )
        try:
            with self.db.begin_nested():
                self.db.add(ledger)
                self.db.flush()
        except IntegrityError:
            logger.info(
                "lifecycle.duplicate_race",
                extra={"event_id": event.event_id, "tenant_id": event.tenant_id},
            )
            return None
        return ledger

    def _duplicate_result(self, event: LifecycleEvent) -> LifecycleProcessingResult:
        logger.info(
            "lifecycle.duplicate_event",
            extra={"event_id": event.event_id, "tenant_id": event.tenant_id},
        )
        return LifecycleProcessingResult(
            processed=False,
            message="Event already processed",
            event_id=event.event_id,
            duplicate=True,
        )

    def _is_stale(self, tenant_license: Optional[TenantLicense], event: LifecycleEvent) -> bool:
        if tenant_license is None or tenant_license.effective_at is None:
            return False
        return as_utc(event.effective_at) < as_utc(tenant_license.effective_at)

    def _log_audit_event(
        self,
        event: LifecycleEvent,
        outcome: LifecycleOutcome,
        before: Optional[dict] = None,
        after: Optional[dict] = None,
        detail: Optional[str] = None,
    ) -> None:
        self._audit(
            event.tenant_id,
            _AUDIT_ACTIONS[outcome],
            None,
            "lifecycle_event",
            event.event_id,
            before=before,
            after=after,
            metadata={
                "event_type": LifecycleEventType(event.event_type).value,
                "plan_name": event.plan_name,
                "effective_at": as_utc(event.effective_at).isoformat(),
                "detail": detail,
            },
        )

    def handle_event(self, event: LifecycleEvent) -> LifecycleProcessingResult:
        """
        Process one lifecycle event.

        Args:
            event: Inbound lifecycle event

        Returns:
            LifecycleProcessingResult

        Raises:
            UnknownPlanError: activation/upgrade names a plan with no bundle
                (the event is recorded as rejected before raising)
        """
        event_type = LifecycleEventType(event.event_type)

        if self._is_duplicate(event.event_id):
            return self._duplicate_result(event)

        ledger = self._claim_event(event)
        if ledger is None:
            return self._duplicate_result(event)

        tenant_license = self.db.query(TenantLicense).filter(
            TenantLicense.tenant_id == event.tenant_id
        ).first()
        before = _license_snapshot(tenant_license)

        if self._is_stale(tenant_license, event):
            ledger.outcome = LifecycleOutcome.STALE.value
            ledger.detail = f"older than license effective_at {as_utc(tenant_license.effective_at).isoformat()}"
            self._log_audit_event(event, LifecycleOutcome.STALE, before=before, detail=ledger.detail)
            self._commit()
            logger.warning(
                "lifecycle.stale_event",
                extra={"event_id": event.event_id, "tenant_id": event.tenant_id},
            )
            return LifecycleProcessingResult(
                processed=False,
                message="Event is older than the current license state",
                event_id=event.event_id,
                outcome=LifecycleOutcome.STALE,
            )

        result = LifecycleProcessingResult(
            processed=True,
            message="Event applied",
            event_id=event.event_id,
            outcome=LifecycleOutcome.APPLIED,
        )

        if event_type in GRANTING_EVENTS:
            try:
                summary = self.entitlements.grant_features_for_plan(
                    event.tenant_id,
                    event.plan_name,
                    source=GRANTING_EVENTS[event_type],
                    commit=False,
                    audit=False,
                )
            except UnknownPlanError:
                ledger.outcome = LifecycleOutcome.REJECTED.value
                ledger.detail = f"unknown plan {event.plan_name!r}"
                self._log_audit_event(event, LifecycleOutcome.REJECTED, before=before, detail=ledger.detail)
                self._commit()
                logger.warning(
                    "lifecycle.rejected_unknown_plan",
                    extra={"event_id": event.event_id, "plan_name": event.plan_name},
                )
                raise
            result.features_granted = summary.features_added + summary.features_reactivated
            tenant_license = self._upsert_license(tenant_license, event, LicenseStatus.ACTIVE, event.plan_name)
        else:
            result.features_withdrawn = self.entitlements.withdraw_plan_grants(
                event.tenant_id,
                reason=event_type.value,
                commit=False,
                audit=False,
            )
            plan_name = tenant_license.plan_name if tenant_license is not None else event.plan_name
            tenant_license = self._upsert_license(tenant_license, event, WITHDRAWING_EVENTS[event_type], plan_name)

        self._log_audit_event(
            event,
            LifecycleOutcome.APPLIED,
            before=before,
            after={
                **_license_snapshot(tenant_license),
                "features_granted": result.features_granted,
                "features_withdrawn": result.features_withdrawn,
            },
        )
        self._commit(tenants=[event.tenant_id])

        logger.info(
            "lifecycle.event_applied",
            extra={
                "event_id": event.event_id,
                "tenant_id": event.tenant_id,
                "event_type": event_type.value,
                "granted": len(result.features_granted),
                "withdrawn": len(result.features_withdrawn),
            },
        )
        return result

    def _upsert_license(
        self,
        tenant_license: Optional[TenantLicense],
        event: LifecycleEvent,
        status: LicenseStatus,
        plan_name: Optional[str],
    ) -> TenantLicense:
        if tenant_license is None:
            tenant_license = TenantLicense(tenant_id=event.tenant_id)
            self.db.add(tenant_license)
        tenant_license.plan_name = plan_name
        tenant_license.status = status.value
        tenant_license.effective_at = as_utc(event.effective_at)
        tenant_license.last_event_id = event.event_id
        self.db.flush()
        return tenant_license


def _license_snapshot(tenant_license: Optional[TenantLicense]) -> Optional[dict]:
    if tenant_license is None:
        return None
    return {
        "plan_name": tenant_license.plan_name,
        "status": tenant_license.status,
        "effective_at": as_utc(tenant_license.effective_at).isoformat() if tenant_license.effective_at else None,
    }
