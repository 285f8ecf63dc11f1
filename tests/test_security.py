"""Tests for session token verification."""
import jwt
import pytest

from studio365.core.config import settings
from studio365.core.security import (
    ALGORITHM,
    Principal,
    TokenExpiredError,
    TokenValidationError,
    create_access_token,
    decode_token,
    principal_from_token,
)


class TestTokens:
    def test_access_token_roundtrip(self):
        token = create_access_token("user:42", "studio-9", role="admin")
        payload = decode_token(token)
        assert payload["sub"] == "user:42"
        assert payload["studio_id"] == "studio-9"
        assert payload["role"] == "admin"

    def test_expired_token_raises(self):
        token = create_access_token("user:1", "studio-1", expires_minutes=-1)
        with pytest.raises(TokenExpiredError, match="expired"):
            decode_token(token)

    def test_invalid_token_raises(self):
        with pytest.raises(TokenValidationError, match="invalid"):
            decode_token("not.a.real.token")

    def test_wrong_signature_raises(self):
        token = jwt.encode({"sub": "user:1", "studio_id": "s"}, "another-secret", algorithm=ALGORITHM)
        with pytest.raises(TokenValidationError):
            decode_token(token)


class TestPrincipal:
    def test_principal_from_token(self):
        principal = principal_from_token(create_access_token("user:7", "studio-3"))
        assert principal == Principal(user_id="user:7", studio_id="studio-3", role="member")
        assert principal.is_admin is False

    def test_admin_role(self):
        assert principal_from_token(create_access_token("u", "s", role="admin")).is_admin

    def test_studio_claim_required(self):
        token = jwt.encode({"sub": "user:1"}, settings.JWT_SECRET, algorithm=ALGORITHM)
        with pytest.raises(TokenValidationError, match="studio"):
            principal_from_token(token)
