"""
QuickBooks OAuth2 connect flow.

`/connect` binds a signed state to the calling organization and sets it in a
secure HttpOnly cookie; `/callback` accepts the code only when the query
state equals the cookie, the token is valid and its nonce is unused.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from qbosync.auth.dependencies import get_current_org_id
from qbosync.auth.oauth_state import OAuthStateError, issue_state, validate_state
from qbosync.connectors.qbo_client import QBOAuthError
from qbosync.models.enums import ConnectionStatus
from qbosync.services import SyncServices, get_sync_services
from qbosync.sync.errors import ConflictError, SyncError
from qbosync.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()

COOKIE_PATH = "/api/v1/oauth"


@router.get("/connect")
async def connect_quickbooks(
    response: Response,
    org_id: str = Depends(get_current_org_id),
    services: SyncServices = Depends(get_sync_services),
):
    """
    Start the QuickBooks connect flow.
    Returns the Intuit authorization URL for user redirection.
    """
    settings = services.settings
    state = issue_state(org_id, settings.oauth_state_ttl_seconds)

    response.set_cookie(
        key=settings.oauth_state_cookie_name,
        value=state,
        max_age=settings.oauth_state_ttl_seconds,
        path=COOKIE_PATH,
        secure=settings.oauth_state_cookie_secure,
        httponly=True,
        samesite="lax",
    )

    logger.info("oauth_connect_initiated", org_id=org_id)
    return {
        "success": True,
        "data": {"authorization_url": services.qbo_client.get_authorization_url(state)},
    }


@router.get("/callback")
async def oauth_callback(
    request: Request,
    response: Response,
    code: Optional[str] = Query(default=None, description="Authorization code from Intuit"),
    state: Optional[str] = Query(default=None, description="State issued by /connect"),
    realm_id: Optional[str] = Query(default=None, alias="realmId", description="QuickBooks company ID"),
    error: Optional[str] = Query(default=None, description="Error returned by Intuit"),
    services: SyncServices = Depends(get_sync_services),
):
    """
    OAuth2 callback.
    Validates state, exchanges the code and stores the connection.
    """
    settings = services.settings
    cookie_value = request.cookies.get(settings.oauth_state_cookie_name)

    try:
        oauth_state = validate_state(state, cookie_value, services.storage)
    except OAuthStateError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    org_id = oauth_state.org_id
    response.delete_cookie(settings.oauth_state_cookie_name, path=COOKIE_PATH)

    if error:
        logger.warning("oauth_consent_denied", org_id=org_id, oauth_error=error)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Authorization failed: {error}")
    if not code or not realm_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing code or realmId")

    try:
        tokens = await services.qbo_client.exchange_code(code)
    except QBOAuthError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    company_name = None
    try:
        info = await services.qbo_client.company(realm_id, tokens.access_token).get_company_info()
        company_name = (info or {}).get("CompanyName")
    except SyncError as e:
        logger.warning("oauth_company_info_unavailable", org_id=org_id, failure_reason=e.reason.value)

    previous = services.store.find_connection(org_id)
    try:
        connection = services.store.save_initial_connection(org_id, tokens, realm_id, company_name)
    except ConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    # Reauthorization: resume the jobs the broken connection halted
    retried = []
    if previous is not None and previous.status == ConnectionStatus.ERROR:
        retried = services.queue.retry_failed_jobs(org_id)

    logger.info("oauth_connected", org_id=org_id, realm_id=realm_id, retried_jobs=len(retried))
    return {
        "success": True,
        "data": {
            "connection_id": connection.connection_id,
            "realm_id": connection.realm_id,
            "company_name": connection.company_name,
            "status": connection.status.value,
            "retried_jobs": len(retried),
        },
    }
