"""
Caller identity and tenant isolation.

CRITICAL SECURITY REQUIREMENTS:
- user_id and tenant_id are ALWAYS taken from the verified JWT, never from
  the request body or query
- Requests without a valid bearer token return 401
- A path tenant that differs from the token tenant is rejected with
  TenantMismatch (403) before any store is read

JWT claims (HS256, shared secret ACCESSGATE_JWT_SECRET):
- sub: User ID
- tenant_id: Tenant the token was issued for
- aud: optional, verified when ACCESSGATE_JWT_AUDIENCE is set
"""

import logging
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt.exceptions import InvalidTokenError

from accessgate.config.settings import Settings
from accessgate.models.access_epoch import GLOBAL_SCOPE
from accessgate.platform.errors import TenantMismatchError

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"

# Security scheme for extracting Bearer token
security = HTTPBearer(auto_error=False)


class TenantContext:
    """
    Immutable caller context extracted from the JWT.
    """

    def __init__(self, tenant_id: str, user_id: str, correlation_id: Optional[str] = None):
        if not tenant_id:
            raise ValueError("tenant_id cannot be empty")
        if not user_id:
            raise ValueError("user_id cannot be empty")
        if GLOBAL_SCOPE in (tenant_id, user_id):
            raise ValueError(f"{GLOBAL_SCOPE!r} is reserved and cannot be used as an id")
        self.tenant_id = tenant_id
        self.user_id = user_id
        self.correlation_id = correlation_id

    def __repr__(self) -> str:
        return f"TenantContext(tenant_id={self.tenant_id}, user_id={self.user_id})"

    def assert_tenant(self, tenant_id: str) -> None:
        """Reject cross-tenant access."""
        if tenant_id != self.tenant_id:
            logger.warning(
                "tenant_context.cross_tenant_denied",
                extra={
                    "token_tenant_id": self.tenant_id,
                    "requested_tenant_id": tenant_id,
                    "user_id": self.user_id,
                },
            )
            raise TenantMismatchError(
                "Requested tenant does not match the authenticated tenant",
                details={"tenant_id": tenant_id},
            )


def decode_token(token: str, settings: Settings) -> TenantContext:
    """
    Verify a bearer token and build the caller context.

    Raises:
        HTTPException 401: token missing claims, expired or badly signed
    """
    if not settings.jwt_secret:
        logger.error("tenant_context.jwt_secret_missing")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication is not configured",
        )

    options = {"require": ["sub", "tenant_id"]}
    try:
        if settings.jwt_audience:
            payload = jwt.decode(
                token,
                settings.jwt_secret,
                algorithms=[JWT_ALGORITHM],
                audience=settings.jwt_audience,
                options=options,
            )
        else:
            payload = jwt.decode(
                token,
                settings.jwt_secret,
                algorithms=[JWT_ALGORITHM],
                options={**options, "verify_aud": False},
            )
    except InvalidTokenError as e:
        logger.warning("tenant_context.invalid_token", extra={"error": str(e)})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return TenantContext(tenant_id=str(payload["tenant_id"]), user_id=str(payload["sub"]))
    except ValueError as e:
        logger.warning("tenant_context.invalid_claims", extra={"error": str(e)})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_tenant_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> TenantContext:
    """
    FastAPI dependency: authenticate the caller.

    Also attaches the context to request.state for logging and audit.
    """
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    runtime = request.app.state.runtime
    context = decode_token(credentials.credentials, runtime.settings)
    context.correlation_id = getattr(request.state, "correlation_id", None) or request.headers.get(
        "X-Correlation-ID"
    )
    request.state.tenant_context = context
    return context
