"""
License lifecycle webhook.

The billing collaborator posts licenseActivated / licenseUpgraded /
licenseExpired / licenseCancelled events here.

SECURITY: Every delivery MUST carry a valid HMAC signature before the body is
parsed. The collaborator signs the raw body with HMAC-SHA256 using the shared
LIFECYCLE_WEBHOOK_SECRET and sends it base64-encoded in X-AccessGate-Signature.
"""

import base64
import hashlib
import hmac
import json
import logging
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from sqlalchemy.orm import Session

from accessgate.api.dependencies.access import get_runtime
from accessgate.database.session import get_db_session
from accessgate.models.lifecycle_event import LifecycleEventType
from accessgate.runtime import AccessRuntime
from accessgate.services.license_lifecycle_handler import (
    GRANTING_EVENTS,
    LicenseLifecycleHandler,
    LifecycleEvent,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/lifecycle-events", tags=["lifecycle"])

SIGNATURE_HEADER = "X-AccessGate-Signature"


class LifecycleEventPayload(BaseModel):
    """Wire format of a lifecycle event."""
    event_id: str = Field(..., alias="eventId", min_length=1, max_length=255)
    tenant_id: str = Field(..., alias="tenantId", min_length=1, max_length=255)
    event_type: LifecycleEventType = Field(..., alias="eventType")
    plan_name: Optional[str] = Field(None, alias="planName", max_length=50)
    effective_at: datetime = Field(..., alias="effectiveAt")

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def require_plan_for_grants(self):
        if self.event_type in GRANTING_EVENTS and not self.plan_name:
            raise ValueError(f"planName is required for {self.event_type.value}")
        return self


class LifecycleEventResponse(BaseModel):
    processed: bool
    message: str
    event_id: str
    outcome: Optional[str] = None
    duplicate: bool = False
    features_granted: List[str] = []
    features_withdrawn: List[str] = []


def verify_signature(data: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """
    Verify a lifecycle webhook HMAC signature.

    Args:
        data: Raw request body bytes
        signature: Base64 HMAC-SHA256 digest from the signature header
        secret: Shared webhook secret

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature or not secret:
        return False
    computed = base64.b64encode(
        hmac.new(secret.encode("utf-8"), data, hashlib.sha256).digest()
    ).decode("utf-8")
    return hmac.compare_digest(computed, signature)


async def get_verified_event(
    request: Request,
    runtime: AccessRuntime = Depends(get_runtime),
) -> LifecycleEventPayload:
    """Check the signature on the raw body, then parse it."""
    secret = runtime.settings.lifecycle_webhook_secret
    if not secret:
        logger.error("lifecycle.webhook_secret_missing")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook verification not configured",
        )

    body = await request.body()
    if not verify_signature(body, request.headers.get(SIGNATURE_HEADER), secret):
        logger.warning("lifecycle.invalid_signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        )

    try:
        return LifecycleEventPayload.model_validate(json.loads(body))
    except json.JSONDecodeError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=json.loads(e.json()),
        )


@router.post("", response_model=LifecycleEventResponse)
async def receive_lifecycle_event(
    request: Request,
    payload: LifecycleEventPayload = Depends(get_verified_event),
    runtime: AccessRuntime = Depends(get_runtime),
    db: Session = Depends(get_db_session),
):
    """
    Apply one lifecycle event.

    Duplicates and out-of-order deliveries are acknowledged with 200 so the
    collaborator stops retrying. An unknown plan is recorded and answered 422.
    """
    handler = LicenseLifecycleHandler(
        db,
        cache=runtime.projection_cache,
        correlation_id=request.headers.get("X-Correlation-ID"),
    )
    result = handler.handle_event(
        LifecycleEvent(
            event_id=payload.event_id,
            tenant_id=payload.tenant_id,
            event_type=payload.event_type,
            effective_at=payload.effective_at,
            plan_name=payload.plan_name,
        )
    )
    return LifecycleEventResponse(**result.to_dict())
