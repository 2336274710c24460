"""
Access Decision API.

POST /api/access/check answers "may this user do X here?" for surrounding
CRUD/UI code. Deny decisions are returned as 200 with granted=false and a
machine-readable reason; consuming layers render "access denied" or
"feature requires upgrade" from the reason code.
"""

import logging
from datetime import datetime
from typing import Optional, List, Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from accessgate.constants.permissions import AdminPermission
from accessgate.models.base import utcnow
from accessgate.platform.errors import DenialReason
from accessgate.platform.tenant_context import TenantContext, get_tenant_context
from accessgate.api.dependencies.access import get_decision_service
from accessgate.services.access_decision_service import AccessDecisionService
from accessgate.services.projection_cache import Consistency

logger = logging.getLogger(__name__)

router = APIRouter(tags=["access"])


class AccessCheckRequest(BaseModel):
    """
    Request to check access.

    Accepts the camelCase wire names (userId, tenantId, ...) as well as the
    snake_case field names.
    """
    user_id: str = Field(..., alias="userId", min_length=1, max_length=255)
    tenant_id: str = Field(..., alias="tenantId", min_length=1, max_length=255)
    permission: str = Field(..., min_length=1, max_length=100, description="e.g. finance:create")
    feature: Optional[str] = Field(None, max_length=100, description="e.g. basic_donations")
    scope_type: Optional[str] = Field(None, alias="scopeType", description="unit | event")
    scope_id: Optional[str] = Field(None, alias="scopeId", max_length=255)
    maker_user_id: Optional[str] = Field(
        None, alias="makerUserId", description="Creator of the record being checked (maker-checker)"
    )
    consistency: Consistency = Consistency.STRICT

    model_config = ConfigDict(populate_by_name=True)


class AccessCheckResponse(BaseModel):
    granted: bool
    reason: Optional[str] = None
    decided_at: str
    epoch: Optional[List[int]] = None
    from_cache: bool = False


class EffectiveAccessResponse(BaseModel):
    tenant_id: str
    user_id: str
    permissions: List[str]
    scoped_permissions: Dict[str, List[str]]
    licensed_features: List[str]
    licensed_permissions: List[str]
    role_ids: List[str]
    delegation_ids: List[str]
    epoch: List[int]
    computed_at: str
    valid_until: Optional[str] = None


def _tenant_mismatch(decided_at: datetime) -> AccessCheckResponse:
    return AccessCheckResponse(
        granted=False,
        reason=DenialReason.TENANT_MISMATCH.value,
        decided_at=decided_at.isoformat(),
    )


@router.post("/api/access/check", response_model=AccessCheckResponse)
async def check_access(
    body: AccessCheckRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    decisions: AccessDecisionService = Depends(get_decision_service),
):
    """
    Decide a single permission (and optional feature) for a user.

    The tenant in the body must be the caller's tenant; anything else is
    denied with TenantMismatch before any store is read.
    """
    if body.tenant_id != ctx.tenant_id:
        logger.warning(
            "access.check_cross_tenant",
            extra={"token_tenant_id": ctx.tenant_id, "requested_tenant_id": body.tenant_id},
        )
        return _tenant_mismatch(utcnow())

    decision = None
    if body.user_id != ctx.user_id:
        # Checking someone else's access needs rbac:view.
        guard = decisions.check_access(ctx.tenant_id, ctx.user_id, AdminPermission.RBAC_VIEW.value)
        if not guard.granted:
            decision = guard
    if decision is None:
        decision = decisions.check_access(
            body.tenant_id,
            body.user_id,
            body.permission,
            feature=body.feature,
            scope_type=body.scope_type,
            scope_id=body.scope_id,
            maker_user_id=body.maker_user_id,
            consistency=body.consistency,
        )

    return AccessCheckResponse(
        granted=decision.granted,
        reason=decision.reason.value if decision.reason else None,
        decided_at=decision.decided_at.isoformat(),
        epoch=list(decision.epoch) if decision.epoch is not None else None,
        from_cache=decision.from_cache,
    )


@router.get(
    "/api/tenants/{tenant_id}/users/{user_id}/effective-access",
    response_model=EffectiveAccessResponse,
)
async def get_effective_access(
    tenant_id: str,
    user_id: str,
    consistency: Consistency = Consistency.BOUNDED,
    ctx: TenantContext = Depends(get_tenant_context),
    decisions: AccessDecisionService = Depends(get_decision_service),
):
    """
    A user's effective permissions and licensed features.

    Display surface: defaults to BOUNDED consistency.
    """
    ctx.assert_tenant(tenant_id)
    if user_id != ctx.user_id:
        decisions.require_access(ctx.tenant_id, ctx.user_id, AdminPermission.RBAC_VIEW.value)

    projection = decisions.effective_access(tenant_id, user_id, consistency=consistency)
    return EffectiveAccessResponse(**projection.to_dict())
