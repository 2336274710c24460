"""
Administrative permissions checked by the engine's own mutation APIs.

Domain permissions (finance:*, members:*, ...) live in config/catalog.yml;
only the permissions the engine itself enforces are named here. They must
also be present in the catalog so they can be granted to roles.
"""

from enum import Enum


class AdminPermission(str, Enum):
    """
    Permissions guarding the mutation and export routes.

    Naming convention: resource:action
    """
    RBAC_VIEW = "rbac:view"
    RBAC_MANAGE = "rbac:manage"
    DELEGATIONS_MANAGE = "delegations:manage"
    LICENSING_VIEW = "licensing:view"
    LICENSING_MANAGE = "licensing:manage"
    AUDIT_VIEW = "audit:view"


# Role slug assigned to the bootstrap platform administrator.
SUPER_ADMIN_ROLE = "super_admin"
