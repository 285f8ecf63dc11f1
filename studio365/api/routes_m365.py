"""
Microsoft 365 integration routes.

Endpoints:
- POST /m365/connect            Start the delegated OAuth flow (sets state cookie)
- GET  /m365/callback           Provider redirect target; always redirects to the status page
- GET  /m365/status             Connection state of the calling user
- POST /m365/disconnect         Revoke (or purge) the calling user's tokens; idempotent
- GET  /m365/config             Studio configuration without the secret
- PUT  /m365/config             Save studio configuration (admin)
- POST /m365/test-connection    App-only token + Graph /organization (admin)
- GET  /m365/teams              Teams of the organisation (app-only, paged)
- GET  /m365/test-delegated     Caller's delegated token + Graph /me
- GET  /m365/diagnose-decrypt   Does the stored secret open under the current key (admin)

HTTP layer only; logic lives in M365Integration.
"""

import logging
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from fastapi import APIRouter, Query, Request
from fastapi.responses import RedirectResponse, Response

from studio365.api.dependencies import AdminDep, M365ServiceDep, M365ServiceFactoryDep, PrincipalDep
from studio365.core.config import settings
from studio365.core.exceptions import Studio365Exception
from studio365.models import schemas

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/m365", tags=["m365"])

COOKIE_PATH = "/m365"


def _status_redirect(params: dict[str, str]) -> str:
    """Append query parameters to the frontend status page URL."""
    parsed = urlparse(settings.M365_STATUS_PAGE)
    existing = dict(parse_qsl(parsed.query, keep_blank_values=True))
    existing.update(params)
    return urlunparse(parsed._replace(query=urlencode(existing)))


def _set_state_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=settings.OAUTH_STATE_COOKIE_NAME,
        value=token,
        max_age=settings.OAUTH_STATE_TTL_SECONDS,
        path=COOKIE_PATH,
        httponly=True,
        secure=settings.ENV.lower() == "prod",
        # lax: the cookie must ride along on the top-level redirect from Microsoft
        samesite="lax",
    )


@router.post("/connect", response_model=schemas.ConnectResponse)
async def connect(principal: PrincipalDep, service: M365ServiceDep, response: Response) -> dict:
    """
    Start connecting the caller's Microsoft 365 account.

    Returns:
        {"authorize_url": "https://login.microsoftonline.com/<tenant>/oauth2/v2.0/authorize?..."}
    """
    request = await service.start_connect(principal.studio_id, principal.user_id)
    _set_state_cookie(response, request.transaction_token)
    return {"authorize_url": request.authorize_url}


@router.get("/callback")
async def callback(
    request: Request,
    service_factory: M365ServiceFactoryDep,
    code: str | None = Query(None),
    state: str | None = Query(None),
    error: str | None = Query(None),
    error_description: str | None = Query(None),
) -> RedirectResponse:
    """
    Provider redirect target. Never renders an error body; the browser is
    sent back to the status page with ``m365=connected`` or ``m365=error&reason=...``.
    """
    try:
        service = service_factory()
        await service.complete_connect(
            code=code,
            state=state,
            transaction_token=request.cookies.get(settings.OAUTH_STATE_COOKIE_NAME),
            error=error,
            error_description=error_description,
        )
        target = _status_redirect({"m365": "connected"})
    except Studio365Exception as e:
        logger.info("M365 callback finished with error code=%s", e.code)
        target = _status_redirect({"m365": "error", "reason": e.code.lower()})
    except Exception:
        logger.exception("Unexpected error during M365 callback")
        target = _status_redirect({"m365": "error", "reason": "internal_error"})

    redirect = RedirectResponse(url=target, status_code=302)
    # Single use, whatever the outcome
    redirect.delete_cookie(settings.OAUTH_STATE_COOKIE_NAME, path=COOKIE_PATH)
    return redirect


@router.get("/status", response_model=schemas.StatusResponse)
async def status(principal: PrincipalDep, service: M365ServiceDep) -> dict:
    return await service.status(principal.studio_id, principal.user_id)


@router.post("/disconnect", response_model=schemas.DisconnectResponse)
async def disconnect(
    principal: PrincipalDep,
    service: M365ServiceDep,
    purge: bool = Query(False, description="Delete the token row instead of revoking it"),
) -> dict:
    await service.disconnect(principal.studio_id, principal.user_id, purge=purge)
    return {"disconnected": True, "purged": purge}


def _config_out(config) -> dict:
    return {
        "tenant_id": config.tenant_id,
        "client_id": config.client_id,
        "enabled": config.enabled,
        "has_client_secret": config.has_client_secret,
        "organizer_email": config.organizer_email,
        "teams_team_id": config.teams_team_id,
        "teams_channel_id": config.teams_channel_id,
        "updated_at": config.updated_at,
    }


@router.get("/config", response_model=schemas.ConfigOut)
async def get_config(principal: PrincipalDep, service: M365ServiceDep) -> dict:
    return _config_out(await service.get_config(principal.studio_id))


@router.put("/config", response_model=schemas.ConfigOut)
async def save_config(payload: schemas.SaveConfigRequest, admin: AdminDep, service: M365ServiceDep) -> dict:
    config = await service.save_config(
        admin.studio_id,
        admin.user_id,
        tenant_id=payload.tenant_id.strip(),
        client_id=payload.client_id.strip(),
        client_secret=payload.client_secret,
        enabled=payload.enabled,
        organizer_email=payload.organizer_email,
        teams_team_id=payload.teams_team_id,
        teams_channel_id=payload.teams_channel_id,
    )
    return _config_out(config)


@router.post("/test-connection", response_model=schemas.TestConnectionResponse)
async def test_connection(admin: AdminDep, service: M365ServiceDep) -> dict:
    return await service.test_connection(admin.studio_id)


@router.get("/teams", response_model=schemas.TeamsOut)
async def list_teams(
    principal: PrincipalDep,
    service: M365ServiceDep,
    next_link: str | None = Query(None, description="Continuation link from a previous page"),
) -> dict:
    page = await service.list_teams(principal.studio_id, next_link=next_link)
    teams = [
        {"id": item.get("id"), "display_name": item.get("displayName"), "description": item.get("description")}
        for item in page.items
        if item.get("id")
    ]
    return {"teams": teams, "next_link": page.next_link}


@router.get("/diagnose-decrypt", response_model=schemas.DecryptDiagnosisOut)
async def diagnose_decrypt(admin: AdminDep, service: M365ServiceDep) -> dict:
    return await service.diagnose_decrypt(admin.studio_id)


@router.get("/test-delegated", response_model=schemas.DelegatedTestResponse)
async def test_delegated(principal: PrincipalDep, service: M365ServiceDep) -> dict:
    """Exercise the caller's own token against Graph /me (refreshing if needed)."""
    return await service.test_delegated(principal.studio_id, principal.user_id)
