"""
Delegation Manager.

Temporary, scope- and time-bounded role grants between users in one tenant.

State machine:
    active -> expired  (time-based; lazily on read, eagerly by the sweep job)
    active -> revoked  (explicit action, or delegator lost the role)
Both targets are terminal.

Rules enforced on creation:
- the role is delegatable
- the delegator holds the role through a direct, active assignment
  (a delegated role cannot be delegated onward)
- delegator != delegatee
- scope/time window is well formed: end >= start; unit/event scopes
  need a scope id; event scopes also need an end date
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from accessgate.models.base import as_utc, utcnow
from accessgate.models.delegation import Delegation, DelegationScope, DelegationStatus
from accessgate.models.user_role_assignment import UserRoleAssignment
from accessgate.platform.audit import AuditAction
from accessgate.platform.errors import (
    DelegationExpiredOrRevokedError,
    DelegationNotFoundError,
    DelegatorLacksRoleError,
    InvalidDelegationError,
    RoleNotDelegatableError,
)
from accessgate.services.access_epochs import bump_user_epoch
from accessgate.services.base import MutationService
from accessgate.services.role_service import load_tenant_role

logger = logging.getLogger(__name__)


def delegation_snapshot(delegation: Delegation, now: Optional[datetime] = None) -> dict:
    return {
        "id": delegation.id,
        "tenant_id": delegation.tenant_id,
        "delegator_user_id": delegation.delegator_user_id,
        "delegatee_user_id": delegation.delegatee_user_id,
        "role_id": delegation.role_id,
        "scope_type": delegation.scope_type,
        "scope_id": delegation.scope_id,
        "starts_at": as_utc(delegation.starts_at).isoformat() if delegation.starts_at else None,
        "ends_at": as_utc(delegation.ends_at).isoformat() if delegation.ends_at else None,
        "status": delegation.effective_status(now).value,
        "revocation_reason": delegation.revocation_reason,
    }


class DelegationService(MutationService):
    """
    Usage:
        service = DelegationService(db, cache=runtime.projection_cache)
        d = service.delegate_role("t1", "alice", "bob", role_id, ends_at=friday)
        service.revoke_delegation("t1", d.id, actor_user_id="alice")
    """

    def _validate_window(
        self,
        scope_type: DelegationScope,
        scope_id: Optional[str],
        starts_at: datetime,
        ends_at: Optional[datetime],
    ) -> None:
        if ends_at is not None and ends_at < starts_at:
            raise InvalidDelegationError(
                "Delegation end must not be before its start",
                details={"starts_at": starts_at.isoformat(), "ends_at": ends_at.isoformat()},
            )
        if scope_type == DelegationScope.GLOBAL and scope_id:
            raise InvalidDelegationError("Global delegations take no scope id")
        if scope_type in (DelegationScope.UNIT, DelegationScope.EVENT) and not scope_id:
            raise InvalidDelegationError(
                f"{scope_type.value} delegations require a scope id",
                details={"scope_type": scope_type.value},
            )
        if scope_type == DelegationScope.EVENT and ends_at is None:
            raise InvalidDelegationError(
                "Event delegations are time-boxed and require an end date",
                details={"scope_type": scope_type.value},
            )

    def delegate_role(
        self,
        tenant_id: str,
        delegator_user_id: str,
        delegatee_user_id: str,
        role_id: str,
        scope_type: DelegationScope = DelegationScope.GLOBAL,
        scope_id: Optional[str] = None,
        starts_at: Optional[datetime] = None,
        ends_at: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> Delegation:
        now = utcnow()
        scope_type = DelegationScope(scope_type)
        starts_at = as_utc(starts_at) or now
        ends_at = as_utc(ends_at)

        if delegator_user_id == delegatee_user_id:
            raise InvalidDelegationError("A user cannot delegate a role to themselves")
        self._validate_window(scope_type, scope_id, starts_at, ends_at)
        if ends_at is not None and ends_at <= now:
            raise InvalidDelegationError(
                "Delegation end date is already in the past",
                details={"ends_at": ends_at.isoformat()},
            )

        role = load_tenant_role(self.db, tenant_id, role_id)
        if not role.is_delegatable:
            raise RoleNotDelegatableError(
                "This role cannot be delegated", details={"role_id": role.id, "slug": role.slug}
            )

        holds_directly = (
            self.db.query(UserRoleAssignment.id)
            .filter(
                UserRoleAssignment.tenant_id == tenant_id,
                UserRoleAssignment.user_id == delegator_user_id,
                UserRoleAssignment.role_id == role.id,
                UserRoleAssignment.is_active == True,  # noqa: E712
            )
            .first()
        )
        if holds_directly is None:
            raise DelegatorLacksRoleError(
                "Delegator does not currently hold this role",
                details={"user_id": delegator_user_id, "role_id": role.id},
            )

        delegation = Delegation(
            tenant_id=tenant_id,
            delegator_user_id=delegator_user_id,
            delegatee_user_id=delegatee_user_id,
            role_id=role.id,
            scope_type=scope_type.value,
            scope_id=scope_id,
            starts_at=starts_at,
            ends_at=ends_at,
            status=DelegationStatus.ACTIVE.value,
            reason=reason,
        )
        self.db.add(delegation)
        self.db.flush()

        bump_user_epoch(self.db, tenant_id, delegatee_user_id)
        self._audit(
            tenant_id,
            AuditAction.DELEGATION_CREATED,
            delegator_user_id,
            "delegation",
            delegation.id,
            after=delegation_snapshot(delegation, now),
        )
        self._commit(users=[(tenant_id, delegatee_user_id)])

        logger.info(
            "delegation.created",
            extra={
                "tenant_id": tenant_id,
                "delegation_id": delegation.id,
                "role_id": role.id,
                "scope_type": scope_type.value,
            },
        )
        return delegation

    def get_delegation(self, tenant_id: str, delegation_id: str) -> Delegation:
        delegation = (
            self.db.query(Delegation)
            .filter(Delegation.id == delegation_id, Delegation.tenant_id == tenant_id)
            .first()
        )
        if delegation is None:
            raise DelegationNotFoundError(
                "Delegation not found", details={"delegation_id": delegation_id}
            )
        return delegation

    def revoke_delegation(
        self,
        tenant_id: str,
        delegation_id: str,
        actor_user_id: Optional[str],
        reason: str = "revoked",
    ) -> Delegation:
        """
        Revoke an active delegation.

        Synchronous: the delegatee's counter is bumped in the same transaction,
        so no decision after this returns can use the delegation.
        """
        delegation = self.get_delegation(tenant_id, delegation_id)
        now = utcnow()
        status = delegation.effective_status(now)
        if status != DelegationStatus.ACTIVE:
            raise DelegationExpiredOrRevokedError(
                f"Delegation is already {status.value}",
                details={"delegation_id": delegation.id, "status": status.value},
            )

        before = delegation_snapshot(delegation, now)
        delegation.revoke(revoked_by=actor_user_id, reason=reason)
        self.db.flush()

        bump_user_epoch(self.db, tenant_id, delegation.delegatee_user_id)
        self._audit(
            tenant_id,
            AuditAction.DELEGATION_REVOKED,
            actor_user_id,
            "delegation",
            delegation.id,
            before=before,
            after=delegation_snapshot(delegation, now),
        )
        self._commit(users=[(tenant_id, delegation.delegatee_user_id)])

        logger.info(
            "delegation.revoked",
            extra={"tenant_id": tenant_id, "delegation_id": delegation.id, "reason": reason},
        )
        return delegation

    def list_delegations(
        self,
        tenant_id: str,
        user_id: Optional[str] = None,
        status: Optional[DelegationStatus] = None,
    ) -> list[Delegation]:
        """
        Delegations in a tenant, optionally for one user (either side).

        Status filtering uses the lazily-expired view, so an active row past
        its end date is reported as expired.
        """
        query = self.db.query(Delegation).filter(Delegation.tenant_id == tenant_id)
        if user_id:
            query = query.filter(
                or_(
                    Delegation.delegator_user_id == user_id,
                    Delegation.delegatee_user_id == user_id,
                )
            )
        delegations = query.order_by(Delegation.starts_at.desc()).all()

        if status is None:
            return delegations
        now = utcnow()
        status = DelegationStatus(status)
        return [d for d in delegations if d.effective_status(now) == status]

    def expire_due_delegations(self, now: Optional[datetime] = None) -> list[Delegation]:
        """
        Mark every active delegation past its end date as expired.

        Called by the delegation_expiry_sweep job. Resolution already ignores
        these rows; this makes the stored status match.
        """
        now = now or utcnow()
        candidates = (
            self.db.query(Delegation)
            .filter(
                Delegation.status == DelegationStatus.ACTIVE.value,
                Delegation.ends_at.isnot(None),
            )
            .all()
        )

        expired = [d for d in candidates if d.is_past_end(now)]
        for delegation in expired:
            before = delegation_snapshot(delegation, now)
            before["status"] = DelegationStatus.ACTIVE.value
            delegation.mark_expired()
            bump_user_epoch(self.db, delegation.tenant_id, delegation.delegatee_user_id)
            self._audit(
                delegation.tenant_id,
                AuditAction.DELEGATION_EXPIRED,
                None,
                "delegation",
                delegation.id,
                before=before,
                after=delegation_snapshot(delegation, now),
            )

        if expired:
            self.db.flush()
            self._commit(
                users=[(d.tenant_id, d.delegatee_user_id) for d in expired]
            )

        logger.info("delegation.expiry_sweep", extra={"expired": len(expired)})
        return expired
