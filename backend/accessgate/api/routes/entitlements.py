"""
Entitlement routes: plan catalog, tenant feature grants, license monitoring.

SECURITY: Grants and plan provisioning require licensing:manage; listings
require licensing:view. Plan contents are public to any authenticated caller.
"""

import logging
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from accessgate.api.dependencies.access import (
    get_entitlement_service,
    get_runtime,
    require_permission,
)
from accessgate.constants.permissions import AdminPermission
from accessgate.models.base import as_utc
from accessgate.models.entitlement import GrantSource, TenantFeatureGrant, TenantLicense
from accessgate.platform.tenant_context import TenantContext, get_tenant_context
from accessgate.runtime import AccessRuntime
from accessgate.services.entitlement_service import EntitlementService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["entitlements"])


class PlanFeaturesResponse(BaseModel):
    plan_name: str
    features: List[str]


class ProvisionPlanRequest(BaseModel):
    plan_name: str = Field(..., min_length=1, max_length=50)
    source: GrantSource = GrantSource.SYSTEM


class ProvisionPlanResponse(BaseModel):
    tenant_id: str
    plan_name: str
    features_added: List[str]
    features_reactivated: List[str]
    features_already_granted: List[str]


class GrantFeatureRequest(BaseModel):
    expires_at: Optional[datetime] = None


class FeatureGrantResponse(BaseModel):
    feature_name: str
    is_granted: bool
    is_effective: bool
    granted_by: str
    plan_name: Optional[str] = None
    granted_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class TenantFeaturesResponse(BaseModel):
    tenant_id: str
    grants: List[FeatureGrantResponse]
    licensed_features: List[str]


class ExpiringLicensesResponse(BaseModel):
    tenant_id: str
    within_days: int
    plan_name: Optional[str] = None
    license_status: Optional[str] = None
    expiring: List[FeatureGrantResponse]


def _grant_response(grant: TenantFeatureGrant) -> FeatureGrantResponse:
    return FeatureGrantResponse(
        feature_name=grant.feature_name,
        is_granted=grant.is_granted,
        is_effective=grant.is_effective(),
        granted_by=grant.granted_by,
        plan_name=grant.plan_name,
        granted_at=as_utc(grant.granted_at),
        expires_at=as_utc(grant.expires_at),
    )


@router.get("/api/plans/{plan_name}/features", response_model=PlanFeaturesResponse)
async def get_plan_features(
    plan_name: str,
    ctx: TenantContext = Depends(get_tenant_context),
    service: EntitlementService = Depends(get_entitlement_service),
):
    return PlanFeaturesResponse(plan_name=plan_name, features=service.get_plan_features(plan_name))


@router.post("/api/tenants/{tenant_id}/features/provision", response_model=ProvisionPlanResponse)
async def provision_plan_features(
    tenant_id: str,
    body: ProvisionPlanRequest,
    ctx: TenantContext = Depends(require_permission(AdminPermission.LICENSING_MANAGE)),
    service: EntitlementService = Depends(get_entitlement_service),
):
    """Idempotently grant every feature in the plan."""
    summary = service.grant_features_for_plan(
        tenant_id, body.plan_name, actor_user_id=ctx.user_id, source=body.source
    )
    return ProvisionPlanResponse(**summary.to_dict())


@router.post("/api/tenants/{tenant_id}/features/{feature_name}/grant", response_model=FeatureGrantResponse)
async def grant_feature(
    tenant_id: str,
    feature_name: str,
    body: GrantFeatureRequest,
    ctx: TenantContext = Depends(require_permission(AdminPermission.LICENSING_MANAGE)),
    service: EntitlementService = Depends(get_entitlement_service),
):
    """Manual (admin) grant; survives plan expiry and re-provisioning."""
    grant = service.grant_feature(
        tenant_id,
        feature_name,
        granted_by=GrantSource.ADMIN,
        expires_at=body.expires_at,
        actor_user_id=ctx.user_id,
    )
    return _grant_response(grant)


@router.post("/api/tenants/{tenant_id}/features/{feature_name}/revoke", response_model=Optional[FeatureGrantResponse])
async def revoke_feature(
    tenant_id: str,
    feature_name: str,
    ctx: TenantContext = Depends(require_permission(AdminPermission.LICENSING_MANAGE)),
    service: EntitlementService = Depends(get_entitlement_service),
):
    grant = service.revoke_feature(tenant_id, feature_name, actor_user_id=ctx.user_id)
    return _grant_response(grant) if grant is not None else None


@router.get("/api/tenants/{tenant_id}/features", response_model=TenantFeaturesResponse)
async def list_tenant_features(
    tenant_id: str,
    ctx: TenantContext = Depends(require_permission(AdminPermission.LICENSING_VIEW)),
    service: EntitlementService = Depends(get_entitlement_service),
):
    grants = service.list_tenant_grants(tenant_id)
    return TenantFeaturesResponse(
        tenant_id=tenant_id,
        grants=[_grant_response(g) for g in grants],
        licensed_features=sorted(g.feature_name for g in grants if g.is_effective()),
    )


@router.get("/api/tenants/{tenant_id}/licenses/expiring", response_model=ExpiringLicensesResponse)
async def list_expiring_licenses(
    tenant_id: str,
    within_days: Optional[int] = Query(None, ge=1, le=365),
    ctx: TenantContext = Depends(require_permission(AdminPermission.LICENSING_VIEW)),
    service: EntitlementService = Depends(get_entitlement_service),
    runtime: AccessRuntime = Depends(get_runtime),
):
    """Effective grants whose expiry falls inside the warning window."""
    days = within_days or runtime.settings.license_expiry_warning_days
    tenant_license = service.db.query(TenantLicense).filter(TenantLicense.tenant_id == tenant_id).first()
    expiring = service.find_expiring_grants(tenant_id, within_days=days)
    return ExpiringLicensesResponse(
        tenant_id=tenant_id,
        within_days=days,
        plan_name=tenant_license.plan_name if tenant_license else None,
        license_status=tenant_license.status if tenant_license else None,
        expiring=[_grant_response(g) for g in expiring],
    )
