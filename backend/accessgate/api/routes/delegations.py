"""
Delegation routes.

Any authenticated tenant member may delegate a role they hold directly; the
Delegation Manager enforces the rules. Revoking someone else's delegation
needs delegations:manage.
"""

import logging
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from accessgate.api.dependencies.access import (
    get_decision_service,
    get_delegation_service,
    require_tenant_member,
)
from accessgate.constants.permissions import AdminPermission
from accessgate.models.base import as_utc
from accessgate.models.delegation import Delegation, DelegationScope, DelegationStatus
from accessgate.platform.tenant_context import TenantContext
from accessgate.services.access_decision_service import AccessDecisionService
from accessgate.services.delegation_service import DelegationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tenants/{tenant_id}/delegations", tags=["delegations"])


class CreateDelegationRequest(BaseModel):
    """Request to delegate a role the caller holds."""
    delegatee_user_id: str = Field(..., min_length=1, max_length=255)
    role_id: str = Field(..., min_length=1, max_length=255)
    scope_type: DelegationScope = DelegationScope.GLOBAL
    scope_id: Optional[str] = Field(None, max_length=255)
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    reason: Optional[str] = Field(None, max_length=2000)


class RevokeDelegationRequest(BaseModel):
    reason: str = Field("revoked", max_length=100)


class DelegationResponse(BaseModel):
    id: str
    tenant_id: str
    delegator_user_id: str
    delegatee_user_id: str
    role_id: str
    scope_type: str
    scope_id: Optional[str] = None
    starts_at: datetime
    ends_at: Optional[datetime] = None
    status: str
    reason: Optional[str] = None
    revocation_reason: Optional[str] = None


class DelegationsListResponse(BaseModel):
    delegations: List[DelegationResponse]
    total: int


def _delegation_response(delegation: Delegation) -> DelegationResponse:
    return DelegationResponse(
        id=delegation.id,
        tenant_id=delegation.tenant_id,
        delegator_user_id=delegation.delegator_user_id,
        delegatee_user_id=delegation.delegatee_user_id,
        role_id=delegation.role_id,
        scope_type=delegation.scope_type,
        scope_id=delegation.scope_id,
        starts_at=as_utc(delegation.starts_at),
        ends_at=as_utc(delegation.ends_at),
        status=delegation.effective_status().value,
        reason=delegation.reason,
        revocation_reason=delegation.revocation_reason,
    )


@router.post("", response_model=DelegationResponse, status_code=status.HTTP_201_CREATED)
async def create_delegation(
    tenant_id: str,
    body: CreateDelegationRequest,
    ctx: TenantContext = Depends(require_tenant_member),
    service: DelegationService = Depends(get_delegation_service),
):
    """The caller is always the delegator."""
    delegation = service.delegate_role(
        tenant_id,
        delegator_user_id=ctx.user_id,
        delegatee_user_id=body.delegatee_user_id,
        role_id=body.role_id,
        scope_type=body.scope_type,
        scope_id=body.scope_id,
        starts_at=body.starts_at,
        ends_at=body.ends_at,
        reason=body.reason,
    )
    return _delegation_response(delegation)


@router.post("/{delegation_id}/revoke", response_model=DelegationResponse)
async def revoke_delegation(
    tenant_id: str,
    delegation_id: str,
    body: RevokeDelegationRequest,
    ctx: TenantContext = Depends(require_tenant_member),
    service: DelegationService = Depends(get_delegation_service),
    decisions: AccessDecisionService = Depends(get_decision_service),
):
    """Delegators revoke their own delegations; anyone else needs delegations:manage."""
    delegation = service.get_delegation(tenant_id, delegation_id)
    if delegation.delegator_user_id != ctx.user_id:
        decisions.require_access(tenant_id, ctx.user_id, AdminPermission.DELEGATIONS_MANAGE.value)

    delegation = service.revoke_delegation(
        tenant_id, delegation_id, actor_user_id=ctx.user_id, reason=body.reason
    )
    return _delegation_response(delegation)


@router.get("", response_model=DelegationsListResponse)
async def list_delegations(
    tenant_id: str,
    user_id: Optional[str] = Query(None, description="Delegator or delegatee"),
    delegation_status: Optional[DelegationStatus] = Query(None, alias="status"),
    ctx: TenantContext = Depends(require_tenant_member),
    service: DelegationService = Depends(get_delegation_service),
    decisions: AccessDecisionService = Depends(get_decision_service),
):
    """Members see their own delegations; listing others needs rbac:view."""
    if user_id != ctx.user_id:
        decisions.require_access(tenant_id, ctx.user_id, AdminPermission.RBAC_VIEW.value)

    delegations = service.list_delegations(tenant_id, user_id=user_id, status=delegation_status)
    return DelegationsListResponse(
        delegations=[_delegation_response(d) for d in delegations],
        total=len(delegations),
    )
