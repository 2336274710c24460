"""
Invalidation counters for cached access projections.

Every mutation of a source store bumps the relevant counter inside the
SAME transaction as the mutation, so there is no window in which mutated
data is committed but the cache has not been signalled stale.

Counters:
- global:  ("*", "*")         catalog seeding, system role changes
- tenant:  (tenant, "*")      tenant roles, feature grants, licenses
- user:    (tenant, user_id)  role assignments, delegations

A tenant or user id of "*" would alias the global or tenant counter and is
rejected with InvalidIdentifierError.
"""

import logging
from typing import NamedTuple, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from accessgate.models.access_epoch import AccessEpoch, GLOBAL_SCOPE
from accessgate.platform.errors import InvalidIdentifierError

logger = logging.getLogger(__name__)


class EpochVector(NamedTuple):
    """(global, tenant, user) counters a projection was computed under."""

    global_epoch: int
    tenant_epoch: int
    user_epoch: int

    def as_list(self) -> list[int]:
        return [self.global_epoch, self.tenant_epoch, self.user_epoch]


def validate_subject_ids(tenant_id: str, user_id: Optional[str] = None) -> None:
    """Reject ids that would alias one of the "*" counters."""
    if not tenant_id or tenant_id == GLOBAL_SCOPE:
        raise InvalidIdentifierError("Invalid tenant id", details={"tenant_id": tenant_id})
    if user_id is not None and (not user_id or user_id == GLOBAL_SCOPE):
        raise InvalidIdentifierError("Invalid user id", details={"user_id": user_id})


def read_epochs(db: Session, tenant_id: str, user_id: str) -> EpochVector:
    """Read the current epoch vector for (tenant, user) in one query."""
    validate_subject_ids(tenant_id, user_id)
    rows = (
        db.query(AccessEpoch.tenant_id, AccessEpoch.subject, AccessEpoch.value)
        .filter(
            ((AccessEpoch.tenant_id == GLOBAL_SCOPE) & (AccessEpoch.subject == GLOBAL_SCOPE))
            | ((AccessEpoch.tenant_id == tenant_id) & (AccessEpoch.subject.in_([GLOBAL_SCOPE, user_id])))
        )
        .all()
    )
    values = {(row.tenant_id, row.subject): row.value for row in rows}
    return EpochVector(
        global_epoch=values.get((GLOBAL_SCOPE, GLOBAL_SCOPE), 0),
        tenant_epoch=values.get((tenant_id, GLOBAL_SCOPE), 0),
        user_epoch=values.get((tenant_id, user_id), 0),
    )


def _bump(db: Session, tenant_id: str, subject: str) -> None:
    updated = (
        db.query(AccessEpoch)
        .filter(AccessEpoch.tenant_id == tenant_id, AccessEpoch.subject == subject)
        .update({AccessEpoch.value: AccessEpoch.value + 1}, synchronize_session=False)
    )
    if updated:
        return

    # First bump for this counter; a concurrent writer may insert it first.
    try:
        with db.begin_nested():
            db.add(AccessEpoch(tenant_id=tenant_id, subject=subject, value=1))
    except IntegrityError:
        db.query(AccessEpoch).filter(
            AccessEpoch.tenant_id == tenant_id, AccessEpoch.subject == subject
        ).update({AccessEpoch.value: AccessEpoch.value + 1}, synchronize_session=False)


def bump_global_epoch(db: Session) -> None:
    _bump(db, GLOBAL_SCOPE, GLOBAL_SCOPE)
    logger.debug("epoch.bumped", extra={"scope": "global"})


def bump_tenant_epoch(db: Session, tenant_id: str) -> None:
    validate_subject_ids(tenant_id)
    _bump(db, tenant_id, GLOBAL_SCOPE)
    logger.debug("epoch.bumped", extra={"scope": "tenant", "tenant_id": tenant_id})


def bump_user_epoch(db: Session, tenant_id: str, user_id: str) -> None:
    validate_subject_ids(tenant_id, user_id)
    _bump(db, tenant_id, user_id)
    logger.debug(
        "epoch.bumped",
        extra={"scope": "user", "tenant_id": tenant_id, "user_id": user_id},
    )
