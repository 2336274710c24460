"""
Health check endpoint.

Does not require authentication. Reports database reachability so load
balancers can take an instance without a store out of rotation.
"""

import logging

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from accessgate import __version__
from accessgate.api.dependencies.access import get_runtime
from accessgate.runtime import AccessRuntime

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(response: Response, runtime: AccessRuntime = Depends(get_runtime)):
    database = "not_configured"
    if runtime.session_factory is not None:
        try:
            with runtime.session() as db:
                db.execute(text("SELECT 1"))
            database = "ok"
        except SQLAlchemyError:
            logger.exception("health.database_unreachable")
            database = "unreachable"

    healthy = database == "ok"
    if not healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return {
        "status": "healthy" if healthy else "unhealthy",
        "version": __version__,
        "database": database,
        "catalog_plans": sorted(runtime.catalog.plans),
    }
