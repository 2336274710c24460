"""
Shared plumbing for services that mutate a source store.

Each mutation:
1. validates and writes its rows
2. bumps the affected invalidation counters (same transaction)
3. adds its audit row (same transaction)
4. commits, then evicts affected entries from the local projection cache
"""

import logging
from typing import Any, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from accessgate.platform.audit import AuditAction, AuditEvent, record_audit_event

logger = logging.getLogger(__name__)


class MutationService:
    def __init__(
        self,
        db: Session,
        cache=None,
        correlation_id: Optional[str] = None,
        source: str = "api",
    ):
        self.db = db
        self.cache = cache
        self.correlation_id = correlation_id
        self.source = source

    def _audit(
        self,
        tenant_id: str,
        action: AuditAction,
        actor_user_id: Optional[str],
        resource_type: str,
        resource_id: Optional[str],
        before: Optional[dict[str, Any]] = None,
        after: Optional[dict[str, Any]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        record_audit_event(
            self.db,
            AuditEvent(
                tenant_id=tenant_id,
                action=action,
                user_id=actor_user_id,
                resource_type=resource_type,
                resource_id=resource_id,
                before_state=before,
                after_state=after,
                metadata=metadata or {},
                correlation_id=self.correlation_id,
                source=self.source,
            ),
        )

    def _commit(
        self,
        tenants: Iterable[str] = (),
        users: Iterable[tuple[str, str]] = (),
        everything: bool = False,
    ) -> None:
        """Commit the unit of work, then evict affected cached projections."""
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error("mutation.commit_failed", exc_info=True)
            raise

        if self.cache is None:
            return
        if everything:
            self.cache.invalidate_all()
            return
        for tenant_id in set(tenants):
            self.cache.invalidate_tenant(tenant_id)
        for tenant_id, user_id in set(users):
            self.cache.invalidate_user(tenant_id, user_id)
