"""
Authorization dependencies for routes.

Admin permissions are checked through the Access Decision Service itself
(STRICT consistency), so the engine guards its own mutation APIs. The
bootstrap super_admin role is seeded by scripts/seed_catalog.py outside
this flow.
"""

import logging
from typing import Callable, Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from accessgate.constants.permissions import AdminPermission
from accessgate.database.session import get_db_session
from accessgate.platform.tenant_context import TenantContext, get_tenant_context
from accessgate.runtime import AccessRuntime
from accessgate.services.access_decision_service import AccessDecisionService
from accessgate.services.delegation_service import DelegationService
from accessgate.services.entitlement_service import EntitlementService
from accessgate.services.role_service import RoleService

logger = logging.getLogger(__name__)


def get_runtime(request: Request) -> AccessRuntime:
    return request.app.state.runtime


def get_decision_service(
    runtime: AccessRuntime = Depends(get_runtime),
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db_session),
) -> AccessDecisionService:
    return AccessDecisionService(
        db,
        cache=runtime.projection_cache,
        catalog=runtime.catalog,
        settings=runtime.settings,
        correlation_id=ctx.correlation_id,
    )


def require_permission(permission: AdminPermission, feature: Optional[str] = None) -> Callable:
    """
    Factory for a dependency that authorizes the caller inside the path tenant.

    Args:
        permission: Administrative permission the caller must hold
        feature: Optional feature the tenant must be licensed for

    Returns:
        A FastAPI dependency returning the caller's TenantContext
    """

    def check_permission(
        tenant_id: str,
        ctx: TenantContext = Depends(get_tenant_context),
        decisions: AccessDecisionService = Depends(get_decision_service),
    ) -> TenantContext:
        ctx.assert_tenant(tenant_id)
        decisions.require_access(ctx.tenant_id, ctx.user_id, permission.value, feature=feature)
        return ctx

    return check_permission


def require_tenant_member(
    tenant_id: str,
    ctx: TenantContext = Depends(get_tenant_context),
) -> TenantContext:
    """Authenticated caller acting inside their own tenant."""
    ctx.assert_tenant(tenant_id)
    return ctx


def get_role_service(
    runtime: AccessRuntime = Depends(get_runtime),
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db_session),
) -> RoleService:
    return RoleService(
        db,
        runtime.catalog,
        cache=runtime.projection_cache,
        correlation_id=ctx.correlation_id,
    )


def get_delegation_service(
    runtime: AccessRuntime = Depends(get_runtime),
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db_session),
) -> DelegationService:
    return DelegationService(db, cache=runtime.projection_cache, correlation_id=ctx.correlation_id)


def get_entitlement_service(
    runtime: AccessRuntime = Depends(get_runtime),
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db_session),
) -> EntitlementService:
    return EntitlementService(db, cache=runtime.projection_cache, correlation_id=ctx.correlation_id)
