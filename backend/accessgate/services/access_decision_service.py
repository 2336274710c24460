"""
Access Decision Service.

CRITICAL SECURITY:
- Evaluation order is fixed: permission, then feature, then maker-checker.
  A user without the permission is told PermissionDenied, never asked to
  upgrade a plan they could not use anyway.
- Fails closed: store failures and timeouts become deny decisions with a
  StoreUnavailable / DecisionTimeout reason. They never surface as an
  exception a caller could catch and treat as an allow.
- Decisions gating mutations use STRICT consistency (the default).
- The caller's session is only read from. Denial and failure audit rows
  are written through a separate session, so a check made in the middle
  of a mutation neither commits nor discards that mutation's pending work.
- On PostgreSQL the store reads run under a statement_timeout equal to
  the check budget, so a blocked query is cancelled instead of outliving it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from accessgate.config.catalog import Catalog
from accessgate.config.settings import Settings
from accessgate.database.session import is_statement_timeout, statement_timeout
from accessgate.models.base import utcnow
from accessgate.platform.audit import (
    AuditAction,
    AuditEvent,
    AuditOutcome,
    write_audit_log_isolated,
)
from accessgate.platform.errors import (
    AccessDeniedError,
    DecisionTimeoutError,
    DenialReason,
    InvalidIdentifierError,
    StoreUnavailableError,
)
from accessgate.services.access_epochs import read_epochs
from accessgate.services.access_resolver import (
    AccessProjection,
    Deadline,
    EffectiveAccessResolver,
    scope_key,
)
from accessgate.services.projection_cache import Consistency, ProjectionCache

logger = logging.getLogger(__name__)

_FAILURE_REASONS = (DenialReason.STORE_UNAVAILABLE, DenialReason.DECISION_TIMEOUT)


@dataclass
class AccessDecision:
    """Result of check_access()."""
    granted: bool
    tenant_id: str
    user_id: str
    permission: str
    feature: Optional[str] = None
    reason: Optional[DenialReason] = None
    epoch: Optional[tuple] = None
    from_cache: bool = False
    decided_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "granted": self.granted,
            "reason": self.reason.value if self.reason else None,
            "permission": self.permission,
            "feature": self.feature,
            "epoch": list(self.epoch) if self.epoch is not None else None,
            "from_cache": self.from_cache,
            "decided_at": self.decided_at.isoformat(),
        }


class AccessDecisionService:
    """
    Usage:
        service = AccessDecisionService(db, runtime.projection_cache, runtime.catalog, runtime.settings)
        decision = service.check_access("t1", "u1", "finance:create", feature="basic_donations")
        if not decision.granted:
            ...

        # In-process guard for a mutation
        service.require_access("t1", "u1", "rbac:manage")
    """

    def __init__(
        self,
        db: Session,
        cache: Optional[ProjectionCache] = None,
        catalog: Optional[Catalog] = None,
        settings: Optional[Settings] = None,
        correlation_id: Optional[str] = None,
    ):
        self.db = db
        self.cache = cache
        self.catalog = catalog
        self.settings = settings
        self.correlation_id = correlation_id

    def _deadline(self) -> Deadline:
        if self.settings is None:
            return Deadline.unbounded()
        return Deadline(self.settings.access_check_timeout_seconds)

    def _statement_budget_ms(self) -> int:
        if self.settings is None:
            return 0
        return self.settings.access_check_timeout_ms

    def _load_projection(
        self,
        tenant_id: str,
        user_id: str,
        consistency: Consistency,
        deadline: Deadline,
    ) -> tuple[AccessProjection, bool]:
        with statement_timeout(self.db, self._statement_budget_ms()):
            if self.cache is not None:
                return self.cache.get_projection(
                    self.db, tenant_id, user_id, consistency=consistency, deadline=deadline
                )
            epoch = read_epochs(self.db, tenant_id, user_id)
            deadline.check("epoch")
            return EffectiveAccessResolver(self.db, deadline=deadline).resolve(
                tenant_id, user_id, epoch=epoch
            ), False

    def _is_checker_permission(self, permission: str) -> bool:
        if self.catalog is None:
            return False
        return permission in self.catalog.checker_permissions()

    def check_access(
        self,
        tenant_id: str,
        user_id: str,
        permission: str,
        feature: Optional[str] = None,
        scope_type: Optional[str] = None,
        scope_id: Optional[str] = None,
        maker_user_id: Optional[str] = None,
        consistency: Consistency = Consistency.STRICT,
    ) -> AccessDecision:
        """Decide whether user_id may exercise `permission` in tenant_id."""
        decision = AccessDecision(
            granted=False,
            tenant_id=tenant_id,
            user_id=user_id,
            permission=permission,
            feature=feature,
        )

        try:
            projection, from_cache = self._load_projection(
                tenant_id, user_id, Consistency(consistency), self._deadline()
            )
        except DecisionTimeoutError as e:
            logger.error(
                "access.decision_timeout",
                extra={
                    "tenant_id": tenant_id,
                    "user_id": user_id,
                    "permission": permission,
                    "details": e.details,
                },
            )
            decision.reason = DenialReason.DECISION_TIMEOUT
            return self._finish(decision, error=str(e))
        except InvalidIdentifierError as e:
            # No role or grant can exist under a reserved id.
            logger.warning(
                "access.invalid_identifier",
                extra={"tenant_id": tenant_id, "user_id": user_id, "details": e.details},
            )
            decision.reason = DenialReason.PERMISSION_DENIED
            return decision
        except (SQLAlchemyError, StoreUnavailableError) as e:
            if isinstance(e, SQLAlchemyError) and is_statement_timeout(e):
                logger.error(
                    "access.decision_timeout",
                    extra={
                        "tenant_id": tenant_id,
                        "user_id": user_id,
                        "permission": permission,
                        "details": {"stage": "statement"},
                    },
                )
                decision.reason = DenialReason.DECISION_TIMEOUT
                return self._finish(decision, error=str(e))
            logger.error(
                "access.decision_store_unavailable",
                extra={"tenant_id": tenant_id, "user_id": user_id, "permission": permission},
                exc_info=True,
            )
            decision.reason = DenialReason.STORE_UNAVAILABLE
            return self._finish(decision, error=str(e))

        decision.epoch = tuple(projection.epoch)
        decision.from_cache = from_cache

        if permission not in projection.permissions_for(scope_key(scope_type, scope_id)):
            decision.reason = DenialReason.PERMISSION_DENIED
        elif feature is not None and feature not in projection.licensed_features:
            decision.reason = DenialReason.FEATURE_NOT_LICENSED
        elif (
            maker_user_id is not None
            and maker_user_id == user_id
            and self._is_checker_permission(permission)
        ):
            decision.reason = DenialReason.MAKER_CHECKER_VIOLATION
        else:
            decision.granted = True

        return self._finish(decision)

    def require_access(self, tenant_id: str, user_id: str, permission: str, **kwargs) -> AccessDecision:
        """check_access() that raises AccessDeniedError on deny."""
        decision = self.check_access(tenant_id, user_id, permission, **kwargs)
        if not decision.granted:
            raise AccessDeniedError(decision.reason, permission, kwargs.get("feature"))
        return decision

    def effective_access(
        self,
        tenant_id: str,
        user_id: str,
        consistency: Consistency = Consistency.STRICT,
    ) -> AccessProjection:
        """
        The user's current projection, for display surfaces.

        Store failures are raised as StoreUnavailableError (503): a read
        surface has no allow to fail into.
        """
        try:
            projection, _ = self._load_projection(
                tenant_id, user_id, Consistency(consistency), self._deadline()
            )
        except SQLAlchemyError as e:
            logger.error(
                "access.effective_access_store_unavailable",
                extra={"tenant_id": tenant_id, "user_id": user_id},
                exc_info=True,
            )
            raise StoreUnavailableError("Authorization store unavailable") from e
        return projection

    def _finish(self, decision: AccessDecision, error: Optional[str] = None) -> AccessDecision:
        if decision.granted:
            logger.debug(
                "access.granted",
                extra={
                    "tenant_id": decision.tenant_id,
                    "user_id": decision.user_id,
                    "permission": decision.permission,
                    "from_cache": decision.from_cache,
                },
            )
            return decision

        logger.info(
            "access.denied",
            extra={
                "tenant_id": decision.tenant_id,
                "user_id": decision.user_id,
                "permission": decision.permission,
                "feature": decision.feature,
                "reason": decision.reason.value,
            },
        )

        failed = decision.reason in _FAILURE_REASONS
        # Decision-path failures are always audited; plain denials only on request.
        if failed or self.settings is None or self.settings.audit_denials:
            write_audit_log_isolated(
                self.db,
                AuditEvent(
                    tenant_id=decision.tenant_id,
                    action=AuditAction.ACCESS_CHECK_FAILED if failed else AuditAction.ACCESS_DENIED,
                    user_id=decision.user_id,
                    resource_type="permission",
                    resource_id=decision.permission,
                    metadata={
                        "feature": decision.feature,
                        "epoch": list(decision.epoch) if decision.epoch else None,
                        "from_cache": decision.from_cache,
                        "error": error,
                    },
                    correlation_id=self.correlation_id,
                    source="api",
                    outcome=AuditOutcome.FAILURE if failed else AuditOutcome.DENIED,
                    error_code=decision.reason.value,
                ),
            )
        return decision
