"""Shared constants and token helpers for the test suite."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import jwt

CATALOG_PATH = Path(__file__).resolve().parents[3] / "config" / "catalog.yml"
JWT_SECRET = "test-secret-for-accessgate-tests-only"
WEBHOOK_SECRET = "test-webhook-secret"

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"


def make_token(
    user_id: str,
    tenant_id: str = TENANT,
    secret: str = JWT_SECRET,
    expires_in: timedelta = timedelta(hours=1),
    **claims,
) -> str:
    now = datetime.now(timezone.utc)
    payload = {"sub": user_id, "tenant_id": tenant_id, "iat": now, "exp": now + expires_in, **claims}
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_headers(user_id: str, tenant_id: str = TENANT) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, tenant_id)}"}
