"""Session token handling.

Sessions are issued by the studio's auth backend; this service only verifies
them. Claims: ``sub`` (user id), ``studio_id`` (tenant), optional ``role``.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
from jwt import ExpiredSignatureError
from jwt import InvalidTokenError as PyJWTInvalidTokenError

from studio365.core.config import settings

ALGORITHM = "HS256"


class TokenValidationError(Exception):
    """Raised when a token cannot be validated."""


class TokenExpiredError(TokenValidationError):
    """Raised when a token is expired."""


@dataclass(frozen=True)
class Principal:
    user_id: str
    studio_id: str
    role: str = "member"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def create_access_token(
    subject: str,
    studio_id: str,
    role: str = "member",
    expires_minutes: int = 60,
) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "studio_id": studio_id,
        "role": role,
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=ALGORITHM)


def decode_token(token: str) -> dict[str, Any]:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[ALGORITHM])
    except ExpiredSignatureError as exc:
        raise TokenExpiredError("Token has expired") from exc
    except PyJWTInvalidTokenError as exc:
        raise TokenValidationError("Token is invalid") from exc


def principal_from_token(token: str) -> Principal:
    payload = decode_token(token)
    user_id = payload.get("sub")
    studio_id = payload.get("studio_id")
    if not user_id or not studio_id:
        raise TokenValidationError("Token is missing subject or studio")
    return Principal(user_id=str(user_id), studio_id=str(studio_id), role=str(payload.get("role") or "member"))
