"""
Tests for caller identity extraction and tenant isolation.

SECURITY CRITICAL: tenant_id and user_id must only ever come from a
verified token.
"""

from datetime import timedelta

import jwt
import pytest
from fastapi import HTTPException

from accessgate.config.settings import Settings
from accessgate.platform.errors import TenantMismatchError
from accessgate.platform.tenant_context import TenantContext, decode_token
from accessgate.tests.helpers import JWT_SECRET, TENANT, make_token


@pytest.fixture
def auth_settings():
    return Settings(jwt_secret=JWT_SECRET)


@pytest.mark.security
class TestDecodeToken:

    def test_valid_token(self, auth_settings):
        ctx = decode_token(make_token("user-1"), auth_settings)

        assert ctx.tenant_id == TENANT
        assert ctx.user_id == "user-1"

    def test_wrong_secret_rejected(self, auth_settings):
        token = make_token("user-1", secret="someone-elses-secret-value-for-signing")
        with pytest.raises(HTTPException) as exc_info:
            decode_token(token, auth_settings)
        assert exc_info.value.status_code == 401

    def test_expired_token_rejected(self, auth_settings):
        token = make_token("user-1", expires_in=timedelta(minutes=-5))
        with pytest.raises(HTTPException) as exc_info:
            decode_token(token, auth_settings)
        assert exc_info.value.status_code == 401

    def test_missing_tenant_claim_rejected(self, auth_settings):
        token = jwt.encode({"sub": "user-1"}, JWT_SECRET, algorithm="HS256")
        with pytest.raises(HTTPException) as exc_info:
            decode_token(token, auth_settings)
        assert exc_info.value.status_code == 401

    def test_none_algorithm_rejected(self, auth_settings):
        token = jwt.encode({"sub": "user-1", "tenant_id": TENANT}, key=None, algorithm="none")
        with pytest.raises(HTTPException):
            decode_token(token, auth_settings)

    def test_audience_enforced_when_configured(self):
        settings = Settings(jwt_secret=JWT_SECRET, jwt_audience="accessgate")

        assert decode_token(make_token("user-1", aud="accessgate"), settings).user_id == "user-1"
        with pytest.raises(HTTPException):
            decode_token(make_token("user-1", aud="another-service"), settings)

    def test_reserved_tenant_claim_rejected(self, auth_settings):
        with pytest.raises(HTTPException) as exc_info:
            decode_token(make_token("user-1", tenant_id="*"), auth_settings)
        assert exc_info.value.status_code == 401

    def test_unconfigured_secret_is_unavailable(self):
        with pytest.raises(HTTPException) as exc_info:
            decode_token(make_token("user-1"), Settings())
        assert exc_info.value.status_code == 503


@pytest.mark.security
class TestTenantContext:

    def test_empty_ids_rejected(self):
        with pytest.raises(ValueError):
            TenantContext(tenant_id="", user_id="user-1")
        with pytest.raises(ValueError):
            TenantContext(tenant_id=TENANT, user_id="")

    def test_reserved_star_id_rejected(self):
        with pytest.raises(ValueError):
            TenantContext(tenant_id="*", user_id="user-1")
        with pytest.raises(ValueError):
            TenantContext(tenant_id=TENANT, user_id="*")

    def test_assert_tenant_passes_for_own_tenant(self):
        TenantContext(tenant_id=TENANT, user_id="user-1").assert_tenant(TENANT)

    def test_assert_tenant_rejects_other_tenant(self):
        ctx = TenantContext(tenant_id=TENANT, user_id="user-1")
        with pytest.raises(TenantMismatchError) as exc_info:
            ctx.assert_tenant("tenant-b")
        assert exc_info.value.http_status == 403
