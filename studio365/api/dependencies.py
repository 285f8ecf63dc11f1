"""Common dependencies: authenticated principal, admin gate, database, M365 service."""
from typing import Annotated, Callable, TypeAlias

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from studio365.core.audit import log_failure
from studio365.core.security import (
    Principal,
    TokenExpiredError,
    TokenValidationError,
    principal_from_token,
)
from studio365.db.session import get_db
from studio365.services.m365 import M365Integration, create_m365_service

DbDep: TypeAlias = Annotated[Session, Depends(get_db)]


def get_current_principal(authorization: str = Header(None)) -> Principal:
    if not authorization or not authorization.lower().startswith("bearer "):
        log_failure("auth.token.parse", error="missing_token")
        raise HTTPException(status_code=401, detail="Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        return principal_from_token(token)
    except TokenExpiredError as exc:
        log_failure("auth.token.expired", error="expired")
        raise HTTPException(status_code=401, detail="Token expired") from exc
    except TokenValidationError as exc:
        log_failure("auth.token.invalid", error="invalid")
        raise HTTPException(status_code=401, detail="Invalid token") from exc


PrincipalDep: TypeAlias = Annotated[Principal, Depends(get_current_principal)]


def require_admin(principal: PrincipalDep) -> Principal:
    """Studio configuration and diagnostics are admin-only."""
    if not principal.is_admin:
        log_failure("auth.role", user_id=principal.user_id, studio_id=principal.studio_id, error="admin_required")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "role_restricted",
                "message": "Only studio admins can perform this action",
                "required_role": "admin",
                "current_role": principal.role,
            },
        )
    return principal


AdminDep: TypeAlias = Annotated[Principal, Depends(require_admin)]


M365ServiceFactory: TypeAlias = Callable[[], M365Integration]


def get_m365_service_factory(db: DbDep) -> M365ServiceFactory:
    """Deferred wiring, for handlers that must report wiring failures themselves."""
    return lambda: create_m365_service(db)


M365ServiceFactoryDep: TypeAlias = Annotated[M365ServiceFactory, Depends(get_m365_service_factory)]


def get_m365_service(factory: M365ServiceFactoryDep) -> M365Integration:
    return factory()


M365ServiceDep: TypeAlias = Annotated[M365Integration, Depends(get_m365_service)]
