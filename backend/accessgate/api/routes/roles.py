"""
Role & permission management routes.

SECURITY: Mutations require rbac:manage in the path tenant, checked through
the Access Decision Service. System roles are listed but never mutable.
"""

import logging
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from accessgate.api.dependencies.access import get_role_service, require_permission
from accessgate.constants.permissions import AdminPermission
from accessgate.models.role import Role
from accessgate.models.base import as_utc
from accessgate.platform.tenant_context import TenantContext
from accessgate.services.role_service import RoleService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tenants/{tenant_id}", tags=["roles"])


# Request/Response models

class CreateRoleRequest(BaseModel):
    """Request to create a tenant role."""
    name: str = Field(..., min_length=1, max_length=100)
    permissions: List[str] = Field(default_factory=list, description="Permission names")
    slug: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=2000)
    is_delegatable: bool = False


class UpdateRolePermissionsRequest(BaseModel):
    """Full replacement permission set."""
    permissions: List[str]


class AssignRoleRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=255)
    role_id: str = Field(..., min_length=1, max_length=255)


class ProvisionDefaultRolesRequest(BaseModel):
    admin_user_id: Optional[str] = Field(
        None, description="User to receive the tenant_admin role"
    )


class RoleResponse(BaseModel):
    id: str
    tenant_id: Optional[str]
    scope: str
    name: str
    slug: str
    description: Optional[str] = None
    is_system: bool
    is_delegatable: bool
    permissions: List[str]


class RolesListResponse(BaseModel):
    roles: List[RoleResponse]
    total: int


class AssignmentResponse(BaseModel):
    id: str
    tenant_id: str
    user_id: str
    role_id: str
    is_active: bool


class EffectiveRoleResponse(BaseModel):
    role: RoleResponse
    source: str
    delegation_id: Optional[str] = None
    scope_type: Optional[str] = None
    scope_id: Optional[str] = None
    ends_at: Optional[datetime] = None


class UserRolesResponse(BaseModel):
    user_id: str
    roles: List[EffectiveRoleResponse]


def _role_response(role: Role) -> RoleResponse:
    return RoleResponse(
        id=role.id,
        tenant_id=role.tenant_id,
        scope=role.scope,
        name=role.name,
        slug=role.slug,
        description=role.description,
        is_system=role.is_system,
        is_delegatable=role.is_delegatable,
        permissions=role.permission_names,
    )


# Routes

@router.get("/roles", response_model=RolesListResponse)
async def list_roles(
    tenant_id: str,
    ctx: TenantContext = Depends(require_permission(AdminPermission.RBAC_VIEW)),
    service: RoleService = Depends(get_role_service),
):
    """System roles plus the tenant's own roles."""
    roles = service.list_tenant_roles(tenant_id)
    return RolesListResponse(roles=[_role_response(r) for r in roles], total=len(roles))


@router.post("/roles", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
async def create_role(
    tenant_id: str,
    body: CreateRoleRequest,
    ctx: TenantContext = Depends(require_permission(AdminPermission.RBAC_MANAGE)),
    service: RoleService = Depends(get_role_service),
):
    role = service.create_role(
        tenant_id,
        body.name,
        body.permissions,
        actor_user_id=ctx.user_id,
        slug=body.slug,
        description=body.description,
        is_delegatable=body.is_delegatable,
    )
    return _role_response(role)


@router.put("/roles/{role_id}/permissions", response_model=RoleResponse)
async def update_role_permissions(
    tenant_id: str,
    role_id: str,
    body: UpdateRolePermissionsRequest,
    ctx: TenantContext = Depends(require_permission(AdminPermission.RBAC_MANAGE)),
    service: RoleService = Depends(get_role_service),
):
    """Replace the role's permission set atomically."""
    role = service.update_role_permissions(tenant_id, role_id, body.permissions, actor_user_id=ctx.user_id)
    return _role_response(role)


@router.delete("/roles/{role_id}", response_model=RoleResponse)
async def delete_role(
    tenant_id: str,
    role_id: str,
    ctx: TenantContext = Depends(require_permission(AdminPermission.RBAC_MANAGE)),
    service: RoleService = Depends(get_role_service),
):
    role = service.delete_role(tenant_id, role_id, actor_user_id=ctx.user_id)
    return _role_response(role)


@router.post("/roles/provision-defaults", response_model=RolesListResponse)
async def provision_default_roles(
    tenant_id: str,
    body: ProvisionDefaultRolesRequest,
    ctx: TenantContext = Depends(require_permission(AdminPermission.RBAC_MANAGE)),
    service: RoleService = Depends(get_role_service),
):
    """Create the catalog's template roles in this tenant (idempotent)."""
    created = service.provision_default_roles(
        tenant_id, actor_user_id=ctx.user_id, admin_user_id=body.admin_user_id
    )
    return RolesListResponse(roles=[_role_response(r) for r in created], total=len(created))


@router.post(
    "/role-assignments",
    response_model=AssignmentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def assign_role(
    tenant_id: str,
    body: AssignRoleRequest,
    ctx: TenantContext = Depends(require_permission(AdminPermission.RBAC_MANAGE)),
    service: RoleService = Depends(get_role_service),
):
    assignment = service.assign_role(tenant_id, body.user_id, body.role_id, actor_user_id=ctx.user_id)
    return AssignmentResponse(
        id=assignment.id,
        tenant_id=assignment.tenant_id,
        user_id=assignment.user_id,
        role_id=assignment.role_id,
        is_active=assignment.is_active,
    )


@router.delete("/role-assignments/{user_id}/{role_id}", response_model=AssignmentResponse)
async def revoke_role(
    tenant_id: str,
    user_id: str,
    role_id: str,
    ctx: TenantContext = Depends(require_permission(AdminPermission.RBAC_MANAGE)),
    service: RoleService = Depends(get_role_service),
):
    assignment = service.revoke_role(tenant_id, user_id, role_id, actor_user_id=ctx.user_id)
    return AssignmentResponse(
        id=assignment.id,
        tenant_id=assignment.tenant_id,
        user_id=assignment.user_id,
        role_id=assignment.role_id,
        is_active=assignment.is_active,
    )


@router.get("/users/{user_id}/roles", response_model=UserRolesResponse)
async def list_user_roles(
    tenant_id: str,
    user_id: str,
    ctx: TenantContext = Depends(require_permission(AdminPermission.RBAC_VIEW)),
    service: RoleService = Depends(get_role_service),
):
    """Roles held directly or through active delegations."""
    entries = service.list_effective_roles_for_user(tenant_id, user_id)
    return UserRolesResponse(
        user_id=user_id,
        roles=[
            EffectiveRoleResponse(
                role=_role_response(entry["role"]),
                source=entry["source"],
                delegation_id=entry["delegation_id"],
                scope_type=entry["scope_type"],
                scope_id=entry["scope_id"],
                ends_at=as_utc(entry["ends_at"]),
            )
            for entry in entries
        ],
    )
