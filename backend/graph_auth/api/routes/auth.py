"""
OAuth routes for the Graph authorization code flow.

GET /auth/instagram           - redirect to the provider consent dialog
GET /auth/instagram/callback  - complete the flow and store the credential
GET /auth/tokens              - masked listing of stored credentials

SECURITY:
- The flow id is bound to the browser with an HttpOnly cookie
- Authorization codes are single-use; a replayed callback is rejected
- Credentials are only ever returned as masked previews
"""

import logging
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Query
from fastapi.responses import JSONResponse, RedirectResponse

from graph_auth.api.dependencies import get_credential_service
from graph_auth.api.errors import HANDLED_ERRORS, error_response
from graph_auth.api.schemas.auth import (
    CredentialListResponse,
    CredentialSummary,
    ErrorResponse,
    OAuthCallbackResponse,
    ResolvedAccountResponse,
)
from graph_auth.services.credential_service import CredentialService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

FLOW_COOKIE_NAME = "oauth_flow_id"

_ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid, denied or replayed callback"},
    403: {"model": ErrorResponse, "description": "Missing provider permission"},
    429: {"model": ErrorResponse, "description": "Provider rate limit"},
    502: {"model": ErrorResponse, "description": "Provider unreachable"},
    503: {"model": ErrorResponse, "description": "Credential store unavailable"},
    504: {"model": ErrorResponse, "description": "Exchange timed out"},
}


# =============================================================================
# Routes
# =============================================================================

@router.get("/instagram", status_code=302)
async def start_instagram_auth(
    service: CredentialService = Depends(get_credential_service),
):
    """
    Redirect the browser to the provider consent dialog.

    A fresh state is issued per flow; the flow id is set as an HttpOnly
    cookie so the callback can be matched to the flow that started it.
    """
    try:
        flow = service.start_auth_flow()
    except HANDLED_ERRORS as e:
        return error_response(e)

    response = RedirectResponse(url=flow.authorize_url, status_code=302)
    response.set_cookie(
        FLOW_COOKIE_NAME,
        flow.flow_id,
        max_age=int(service.replay_guard.state_ttl.total_seconds()),
        httponly=True,
        secure=service.secure_cookies,
        samesite="lax",
    )
    return response


@router.get(
    "/instagram/callback",
    response_model=OAuthCallbackResponse,
    responses=_ERROR_RESPONSES,
)
async def instagram_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_reason: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    flow_id: Optional[str] = Cookie(None, alias=FLOW_COOKIE_NAME),
    service: CredentialService = Depends(get_credential_service),
):
    """
    Complete the authorization flow.

    Validates the callback, exchanges the code for a long-lived credential,
    stores it, and resolves the business account behind it.
    """
    try:
        credential = await service.complete_auth_flow(
            code,
            state,
            flow_id,
            error=error,
            error_reason=error_reason,
            error_description=error_description,
        )
    except HANDLED_ERRORS as e:
        return error_response(e)

    attempt = service.get_attempt(flow_id) if flow_id else None
    account = attempt.account if attempt is not None else None

    body = OAuthCallbackResponse(
        success=True,
        flow_id=attempt.flow_id if attempt is not None else None,
        status=attempt.status.value if attempt is not None else "complete",
        credential_kind=credential.kind.value,
        preview=credential.preview,
        expires_at=credential.expires_at.isoformat(),
        account=ResolvedAccountResponse(**account.to_dict()) if account else None,
        resolution_error=attempt.resolution_error if attempt is not None else None,
    )
    response = JSONResponse(content=body.model_dump())
    response.delete_cookie(FLOW_COOKIE_NAME)
    return response


@router.get(
    "/tokens",
    response_model=CredentialListResponse,
    responses={503: {"model": ErrorResponse}},
)
async def list_tokens(
    service: CredentialService = Depends(get_credential_service),
):
    """List stored credentials with masked previews, newest first."""
    try:
        credentials = await service.list_credentials()
    except HANDLED_ERRORS as e:
        return error_response(e)

    return CredentialListResponse(
        credentials=[CredentialSummary(**c) for c in credentials],
        total=len(credentials),
    )
