"""
Audit log query and export.

SECURITY: Requires audit:view in the path tenant. The tenant filter comes
from the path (already checked against the token) and is always applied.
"""

import logging
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from pydantic import BaseModel
from sqlalchemy.orm import Session

from accessgate.api.dependencies.access import require_permission
from accessgate.constants.permissions import AdminPermission
from accessgate.database.session import get_db_session
from accessgate.platform.audit import AuditExportFormat, AuditExportService, AuditQuery
from accessgate.platform.tenant_context import TenantContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tenants/{tenant_id}/audit", tags=["audit"])


class AuditEntryResponse(BaseModel):
    id: str
    timestamp: Optional[str] = None
    tenant_id: str
    user_id: Optional[str] = None
    action: str
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    source: str
    outcome: str
    error_code: Optional[str] = None
    correlation_id: str
    before_state: Optional[dict] = None
    after_state: Optional[dict] = None
    metadata: Optional[dict] = None


class AuditLogsResponse(BaseModel):
    audit_logs: List[AuditEntryResponse]
    count: int
    total: int
    limit: int
    offset: int


@router.get("")
async def query_audit_logs(
    tenant_id: str,
    user_id: Optional[str] = Query(None),
    action: Optional[List[str]] = Query(None, description="Repeat to filter on several actions"),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=AuditExportService.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    export_format: AuditExportFormat = Query(AuditExportFormat.JSON, alias="format"),
    ctx: TenantContext = Depends(require_permission(AdminPermission.AUDIT_VIEW)),
    db: Session = Depends(get_db_session),
):
    """
    Filter the tenant's audit trail.

    JSON responses carry paging totals; CSV is returned as an attachment.
    """
    params = AuditQuery(
        tenant_id=tenant_id,
        user_id=user_id,
        actions=action,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )
    service = AuditExportService(db)
    logs = service.query_audit_logs(params)

    logger.info(
        "audit.queried",
        extra={
            "tenant_id": tenant_id,
            "requested_by": ctx.user_id,
            "format": export_format.value,
            "rows": len(logs),
        },
    )

    if export_format == AuditExportFormat.CSV:
        return Response(
            content=service.format_csv(logs),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="audit-{tenant_id}.csv"'},
        )

    return AuditLogsResponse(
        audit_logs=[AuditEntryResponse(**log.to_dict()) for log in logs],
        count=len(logs),
        total=service.count_audit_logs(params),
        limit=limit,
        offset=offset,
    )
